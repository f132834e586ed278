"""
Support tickets: creation from chatbot tools and the customer portal, and
the two reply notification emails.
"""

from dotenv import load_dotenv
load_dotenv()

from datetime import datetime
from typing import Dict, Any, Optional
from celery.utils.log import get_task_logger

from tasks.email_template_utils import render_template_with_data, escape_html, short_ticket_id, format_ticket_date
from tasks.customers import find_assigning_admin
from tasks.utils.db import get_db_connection, fetch_one, execute
from tasks.utils.email_client import send_email
from tasks.utils.errors import HandlerError

logger = get_task_logger(__name__)

SUPPORT_SENDER_NAME = "Voxtro Support"
ADMIN_TICKETS_URL = "https://voxtro.io/support-tickets"
CUSTOMER_TICKETS_URL = "https://voxtro.io/customer/support-tickets"

PRIORITIES = ('low', 'medium', 'high', 'urgent')
PRIORITY_SYNONYMS = {
    'moderate': 'medium',
    'normal': 'medium',
    'mid': 'medium',
    'average': 'medium',
    'critical': 'urgent',
    'asap': 'urgent',
    'immediate': 'urgent',
    'emergency': 'urgent',
}


def normalize_priority(priority: Optional[str]) -> str:
    value = (priority or '').strip().lower()
    if value in PRIORITIES:
        return value
    return PRIORITY_SYNONYMS.get(value, 'medium')


def unwrap_ticket_body(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Chatbot tool calls wrap the fields in {parameters, _metadata: {chatbotId}}."""
    if raw and isinstance(raw.get('parameters'), dict):
        body = dict(raw['parameters'])
        body['chatbot_id'] = (raw.get('_metadata') or {}).get('chatbotId')
        return body
    return dict(raw or {})


def resolve_ticket_owner(conn, chatbot_id: Optional[str], customer_id: Optional[str],
                         fallback_user_id: Optional[str] = None) -> Optional[str]:
    """
    Work out which admin user a ticket belongs to.

    A chatbot id always wins over a caller-supplied user id. Without one the
    customer's first assignment (chatbot, then voice, then WhatsApp) decides.
    """
    if chatbot_id:
        chatbot = fetch_one(conn, "SELECT user_id FROM chatbots WHERE id = %s", (chatbot_id,))
        if not chatbot:
            raise HandlerError("Invalid chatbot_id")
        return chatbot['user_id']

    if fallback_user_id:
        return fallback_user_id

    if customer_id:
        return find_assigning_admin(conn, customer_id)
    return None


def create_support_ticket(raw_body: Dict[str, Any]) -> Dict[str, Any]:
    body = unwrap_ticket_body(raw_body)
    chatbot_id = body.get('chatbot_id') or None
    customer_id = body.get('customer_id') or None

    conn = get_db_connection()
    try:
        with conn:
            user_id = resolve_ticket_owner(conn, chatbot_id, customer_id, body.get('user_id'))

            if not all([user_id, body.get('subject'), body.get('description'),
                        body.get('customer_name'), body.get('customer_email')]):
                raise HandlerError(
                    "Missing required fields: subject, description, customer_name, customer_email "
                    "(and either user_id or chatbot_id)"
                )

            ticket = fetch_one(
                conn,
                """
                INSERT INTO support_tickets
                    (user_id, subject, description, customer_name, customer_email, priority,
                     chatbot_id, customer_id, source, status)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 'chatbot', 'open')
                RETURNING id
                """,
                (user_id, body['subject'], body['description'], body['customer_name'], body['customer_email'],
                 normalize_priority(body.get('priority')), chatbot_id, customer_id),
            )
    finally:
        conn.close()

    ticket_id = ticket['id']
    logger.info(f"[Tickets] ✅ Created ticket {ticket_id} for user {user_id}")

    # The ticket stands even if the opening message cannot be stored
    conn = get_db_connection()
    try:
        with conn:
            execute(
                conn,
                """
                INSERT INTO support_ticket_messages (ticket_id, content, sender_type, sender_name)
                VALUES (%s, %s, 'customer', %s)
                """,
                (ticket_id, body['description'], body['customer_name']),
            )
    except Exception as e:
        logger.error(f"[Tickets] ❌ Failed to store initial message for ticket {ticket_id}: {e}")
    finally:
        conn.close()

    return {'success': True, 'ticket_id': str(ticket_id), 'message': 'Support ticket created successfully'}


def send_admin_ticket_notification(body: Dict[str, Any]) -> Dict[str, Any]:
    """Tell the ticket owner that a customer replied."""
    admin_email = body.get('admin_email')
    subject = body.get('ticket_subject')
    reply = body.get('reply_content')
    if not admin_email or not subject or not reply:
        raise HandlerError("Missing required fields: admin_email, ticket_subject, reply_content")

    short_id = short_ticket_id(body.get('ticket_id'))
    html = render_template_with_data(
        'ticket_customer_reply.html',
        short_ticket_id=short_id,
        customer_name=escape_html(body.get('customer_name') or 'Customer'),
        customer_email=escape_html(body.get('customer_email') or ''),
        message_timestamp=format_ticket_date(),
        reply_content=escape_html(reply),
        ticket_url=ADMIN_TICKETS_URL,
        current_year=datetime.now().year,
    )
    result = send_email(admin_email, f"Customer Reply: {subject} [{short_id}]", html, from_name=SUPPORT_SENDER_NAME)
    if not result.get('success'):
        raise HandlerError(f"Failed to send notification: {result.get('error')}", 500)
    return {'success': True, 'message': 'Admin notification sent'}


def send_ticket_reply_notification(body: Dict[str, Any]) -> Dict[str, Any]:
    """Tell the customer that support replied."""
    customer_email = body.get('customer_email')
    subject = body.get('ticket_subject')
    reply = body.get('reply_content')
    if not customer_email or not subject or not reply:
        raise HandlerError("Missing required fields: customer_email, ticket_subject, reply_content")

    html = render_template_with_data(
        'ticket_support_reply.html',
        short_ticket_id=short_ticket_id(body.get('ticket_id')),
        customer_name=escape_html(body.get('customer_name') or 'there'),
        ticket_subject=escape_html(subject),
        agent_name=escape_html(body.get('agent_name') or 'Support Team'),
        message_timestamp=format_ticket_date(),
        reply_content=escape_html(reply),
        ticket_url=CUSTOMER_TICKETS_URL,
        current_year=datetime.now().year,
    )
    result = send_email(customer_email, f"Re: {subject} - New Reply from Support", html,
                        from_name=SUPPORT_SENDER_NAME)
    if not result.get('success'):
        raise HandlerError(f"Failed to send notification: {result.get('error')}", 500)
    return {'success': True, 'message': 'Reply notification sent'}
