"""
Owner notifications and transactional emails.

Chatbot owners opt into per-event emails through notification_preferences.
Team invites, customer portal links and plain messages go out through the
same SendGrid sender.
"""

from dotenv import load_dotenv
load_dotenv()

import os
from typing import Dict, Any, Optional
from celery.utils.log import get_task_logger

from tasks.email_template_utils import render_template_with_data, escape_html
from tasks.utils.db import get_db_connection, fetch_one
from tasks.utils.email_client import send_email
from tasks.utils.errors import HandlerError

logger = get_task_logger(__name__)

APP_BASE_URL = os.getenv("APP_BASE_URL", "https://app.voxtro.io")

NOTIFICATION_TYPES: Dict[str, Dict[str, str]] = {
    'chat_started': {
        'subject': "New conversation started with {name}",
        'heading': "New Conversation Started",
        'color': "#2563eb",
        'intro': "A new conversation has started with your chatbot <strong>{name}</strong>.",
        'label': "chat started",
    },
    'chat_ended': {
        'subject': "Conversation ended with {name}",
        'heading': "Conversation Ended",
        'color': "#16a34a",
        'intro': "A conversation with your chatbot <strong>{name}</strong> has ended.",
        'label': "chat ended",
    },
    'chat_error': {
        'subject': "Error occurred in {name}",
        'heading': "Chatbot Error",
        'color': "#dc2626",
        'intro': "An error occurred in your chatbot <strong>{name}</strong>.",
        'label': "error",
    },
    'form_submission': {
        'subject': "New form submission for {name}",
        'heading': "New Form Submission",
        'color': "#9333ea",
        'intro': "A visitor submitted a form through your chatbot <strong>{name}</strong>.",
        'label': "form submission",
    },
}


def _load_preferences(user_id: str) -> Optional[Dict[str, Any]]:
    conn = get_db_connection()
    try:
        with conn:
            return fetch_one(conn, "SELECT * FROM notification_preferences WHERE user_id = %s", (user_id,))
    finally:
        conn.close()


def _load_profile_email(user_id: str) -> Optional[str]:
    conn = get_db_connection()
    try:
        with conn:
            row = fetch_one(conn, "SELECT email FROM profiles WHERE id = %s", (user_id,))
    finally:
        conn.close()
    return row.get('email') if row else None


def render_notification(notification_type: str, chatbot_name: str, conversation_id: Optional[str],
                        error_message: Optional[str] = None):
    """Return (subject, html) for an owner notification."""
    kind = NOTIFICATION_TYPES[notification_type]
    details = f"<strong>Error:</strong> {escape_html(error_message)}" if error_message else ''
    html = render_template_with_data(
        'notification.html',
        sections={'details_section': bool(details)},
        heading=kind['heading'],
        heading_color=kind['color'],
        intro=kind['intro'].format(name=escape_html(chatbot_name)),
        details=details,
        conversation_id=conversation_id or 'N/A',
        preference_label=kind['label'],
    )
    return kind['subject'].format(name=chatbot_name), html


def send_notification(user_id: str, notification_type: str, chatbot_name: str, conversation_id: Optional[str] = None,
                      user_email: Optional[str] = None, error_message: Optional[str] = None) -> Dict[str, Any]:
    """
    Email a chatbot owner about a conversation event, if they opted in.

    form_submission has no dedicated preference column yet, so it is on
    unless the row explicitly disables it.
    """
    if not user_id or not notification_type:
        raise HandlerError("Missing required fields: userId, type")
    if notification_type not in NOTIFICATION_TYPES:
        raise HandlerError("Invalid notification type")

    prefs = _load_preferences(user_id)
    if not prefs:
        logger.info(f"[Notify] No notification preferences for user {user_id}")
        return {'message': 'No preferences found'}

    if not prefs.get(notification_type, notification_type == 'form_submission'):
        logger.info(f"[Notify] {notification_type} disabled for user {user_id}")
        return {'message': 'Notification disabled'}

    recipient = prefs.get('notification_email') or user_email or _load_profile_email(user_id)
    if not recipient:
        raise HandlerError("User email not found")

    subject, html = render_notification(notification_type, chatbot_name or 'your chatbot', conversation_id, error_message)
    result = send_email(recipient, subject, html)
    if not result.get('success'):
        raise HandlerError(f"Failed to send notification: {result.get('error')}", 500)

    logger.info(f"[Notify] ✅ {notification_type} notification sent to {recipient}")
    return {'success': True, 'message': 'Notification sent successfully'}


def notify_owner(user_id: Optional[str], notification_type: str, chatbot_name: str,
                 conversation_id: Optional[str] = None, error_message: Optional[str] = None) -> None:
    """Best-effort send_notification for callers that must not fail on it."""
    if not user_id:
        return
    try:
        send_notification(user_id, notification_type, chatbot_name, conversation_id, error_message=error_message)
    except Exception as e:
        logger.warning(f"[Notify] ⚠️ {notification_type} notification for user {user_id} failed: {e}")


def send_team_invite(email: str, team_name: str, invite_url: str, inviter_name: Optional[str] = None) -> Dict[str, Any]:
    if not email or not team_name or not invite_url:
        raise HandlerError("Missing required fields: email, teamName, inviteUrl")

    html = render_template_with_data(
        'team_invite.html',
        inviter_line=escape_html(inviter_name or 'Someone'),
        team_name=escape_html(team_name),
        invite_url=invite_url,
    )
    result = send_email(email, f"You've been invited to join {team_name} on Voxtro", html)
    if not result.get('success'):
        raise HandlerError(f"Failed to send invite: {result.get('error')}", 500)
    return {'success': True, 'message': 'Invitation sent successfully'}


def send_customer_login_link(email: str, full_name: str, chatbot_name: Optional[str] = None) -> Dict[str, Any]:
    """Send a customer the link to their analytics portal."""
    if not email or not full_name:
        raise HandlerError("Missing required fields: email, full_name")

    html = render_template_with_data(
        'customer_login.html',
        full_name=escape_html(full_name),
        email=escape_html(email),
        login_url=f"{APP_BASE_URL.rstrip('/')}/customer-login",
    )
    result = send_email(email, "Access Your Chatbot Analytics Dashboard", html,
                        from_name=chatbot_name or None)
    if not result.get('success'):
        raise HandlerError(f"Failed to send login link: {result.get('error')}", 500)
    return {'success': True, 'message': 'Login link sent successfully'}


def send_basic_email(email: str, subject: str, message: str) -> Dict[str, Any]:
    if not email or not subject or not message:
        raise HandlerError("Missing required fields: email, subject, message")

    html = f'<div style="font-family: Arial, sans-serif; line-height: 1.6;">{escape_html(message)}</div>'
    result = send_email(email, subject, html)
    if not result.get('success'):
        raise HandlerError(f"Failed to send email: {result.get('error')}", 500)
    return {'success': True, 'message': 'Email sent successfully'}
