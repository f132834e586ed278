"""
Outgoing email through SendGrid.
"""

import os
from typing import Dict, Any, List, Union
from celery.utils.log import get_task_logger
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

logger = get_task_logger(__name__)

DEFAULT_FROM_EMAIL = "no-reply@voxtro.io"
DEFAULT_FROM_NAME = "Voxtro"


def send_email(to: Union[str, List[str]], subject: str, html: str, from_name: str = None,
               from_email: str = None) -> Dict[str, Any]:
    """
    Send one HTML email.

    Returns:
        {'success': True, 'status_code': int} or {'success': False, 'error': str}
    """
    api_key = os.getenv("SENDGRID_API_KEY")
    if not api_key:
        logger.error("[Email] ❌ SENDGRID_API_KEY not configured")
        return {'success': False, 'error': 'Email service not configured'}

    from_email = from_email or os.getenv("SENDGRID_FROM_EMAIL", DEFAULT_FROM_EMAIL)
    sender_name = from_name or os.getenv("SENDGRID_FROM_NAME", DEFAULT_FROM_NAME)

    try:
        message = Mail(
            from_email=(from_email, sender_name),
            to_emails=to,
            subject=subject,
            html_content=html,
        )
        response = SendGridAPIClient(api_key).send(message)
        logger.info(f"[Email] ✅ Sent '{subject}' to {to} (status {response.status_code})")
        return {'success': True, 'status_code': response.status_code}
    except Exception as e:
        body = getattr(e, 'body', None)
        logger.error(f"[Email] ❌ Failed to send '{subject}' to {to}: {e} {body or ''}")
        return {'success': False, 'error': str(e)}
