"""
Chatbot form submissions from the widget.
"""

from dotenv import load_dotenv
load_dotenv()

import requests
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from celery.utils.log import get_task_logger

from tasks.email_template_utils import escape_html
from tasks.notifications import notify_owner
from tasks.utils.db import get_db_connection, fetch_one, as_json
from tasks.utils.email_client import send_email
from tasks.utils.errors import HandlerError

logger = get_task_logger(__name__)

WEBHOOK_TIMEOUT = 15


def format_submission_html(form: Dict[str, Any], submitted_data: Dict[str, Any]) -> str:
    subject = escape_html(form.get('email_subject') or 'New Form Submission')
    lines = '<br>'.join(
        f"<strong>{escape_html(str(key))}:</strong> {escape_html(str(value))}"
        for key, value in submitted_data.items()
    )
    return (
        f"<h2>{subject}</h2>"
        f"<p>A new form submission has been received for <strong>{escape_html(form.get('form_title'))}</strong> "
        f"on chatbot <strong>{escape_html(form.get('chatbot_name'))}</strong>.</p>"
        "<h3>Submitted Information:</h3>"
        f'<div style="background-color: #f5f5f5; padding: 15px; border-radius: 5px; margin: 10px 0;">{lines}</div>'
        '<p style="color: #666; font-size: 12px; margin-top: 20px;">'
        "This email was sent automatically by Voxtro when a form was submitted.</p>"
    )


def _post_webhook(form: Dict[str, Any], submission: Dict[str, Any], submitted_data: Dict[str, Any],
                  conversation_id: Optional[str], visitor_id: Optional[str]) -> None:
    submitted_at = submission.get('submitted_at')
    payload = {
        'form_id': form['id'],
        'form_name': form.get('form_name'),
        'form_title': form.get('form_title'),
        'chatbot_name': form.get('chatbot_name'),
        'submission_id': str(submission['id']),
        'submitted_data': submitted_data,
        'visitor_id': visitor_id,
        'conversation_id': conversation_id,
        'submitted_at': submitted_at.isoformat() if hasattr(submitted_at, 'isoformat') else submitted_at,
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }
    try:
        resp = requests.post(
            form['webhook_url'],
            json=payload,
            headers={'User-Agent': 'Voxtro-Webhook/1.0'},
            timeout=WEBHOOK_TIMEOUT,
        )
        if resp.ok:
            logger.info(f"[Forms] ✅ Webhook delivered ({resp.status_code})")
        else:
            logger.error(f"[Forms] ❌ Webhook failed: HTTP {resp.status_code} {resp.text[:300]}")
    except requests.RequestException as e:
        logger.error(f"[Forms] ❌ Webhook request error: {e}")


def submit_form(form_id: str, submitted_data: Dict[str, Any], conversation_id: Optional[str] = None,
                visitor_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Store a widget form submission and fan it out.

    The owner email, webhook and owner notification are best effort: the
    submission is already saved when they run.
    """
    if not form_id or not submitted_data:
        raise HandlerError("Missing required fields: formId, submittedData", success=False)

    conn = get_db_connection()
    try:
        with conn:
            form = fetch_one(
                conn,
                """
                SELECT f.*, c.user_id AS chatbot_user_id, c.name AS chatbot_name
                FROM chatbot_forms f
                JOIN chatbots c ON c.id = f.chatbot_id
                WHERE f.id = %s AND f.is_active = true
                """,
                (form_id,),
            )
            if not form:
                raise HandlerError("Form not found or inactive", success=False)

            submission = fetch_one(
                conn,
                """
                INSERT INTO form_submissions (form_id, conversation_id, submitted_data, visitor_id, status)
                VALUES (%s, %s, %s, %s, 'submitted')
                RETURNING id, submitted_at
                """,
                (form_id, conversation_id, as_json(submitted_data), visitor_id),
            )
    finally:
        conn.close()

    logger.info(f"[Forms] ✅ Saved submission {submission['id']} for form {form.get('form_name')}")

    if form.get('notify_email') and form.get('notification_email'):
        result = send_email(
            form['notification_email'],
            form.get('email_subject') or 'New Form Submission',
            format_submission_html(form, submitted_data),
        )
        if not result.get('success'):
            logger.error(f"[Forms] ❌ Submission email failed: {result.get('error')}")

    if form.get('webhook_enabled') and form.get('webhook_url'):
        _post_webhook(form, submission, submitted_data, conversation_id, visitor_id)

    notify_owner(form.get('chatbot_user_id'), 'form_submission', form.get('chatbot_name'), conversation_id)

    return {
        'success': True,
        'submissionId': str(submission['id']),
        'message': form.get('success_message') or 'Thank you for submitting the form!',
    }
