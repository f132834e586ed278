"""
Chatbot actions (tools) triggered from a chat turn.

Every run is recorded in action_execution_logs: a pending row first, then
success or failed with the executor's output.
"""

from dotenv import load_dotenv
load_dotenv()

from tasks.celery_app import app
from celery.utils.log import get_task_logger

import re
import json
import time
import secrets
import requests
from datetime import datetime, timedelta, timezone
from urllib.parse import urlparse
from typing import Dict, Any, List, Optional

from tasks.conversations import extract_parameters, load_messages
from tasks.email_template_utils import escape_html
from tasks.utils.db import get_db_connection, fetch_one, execute, as_json
from tasks.utils.email_client import send_email
from tasks.utils.errors import HandlerError

logger = get_task_logger(__name__)

WEBHOOK_TIMEOUT = 15
DEFAULT_BOOKING_MINUTES = 30

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _require_url(url: Optional[str], missing_message: str) -> str:
    if not url:
        raise ValueError(missing_message)
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValueError('Invalid webhook URL format')
    return url


def _response_body(resp: requests.Response) -> Any:
    if 'application/json' in (resp.headers.get('content-type') or ''):
        try:
            return resp.json()
        except ValueError:
            pass
    return {'message': resp.text, 'contentType': resp.headers.get('content-type') or 'unknown'}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def run_calendar_booking(action: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    date, booking_time, name = data.get('date'), data.get('time'), data.get('attendeeName')
    email = data.get('attendeeEmail')
    if not date or not booking_time or not name:
        raise ValueError('Missing required booking fields: date, time, and attendeeName are required')
    if not _DATE_RE.match(date):
        raise ValueError('Invalid date format. Please use YYYY-MM-DD format (e.g., 2024-03-15)')
    if not _TIME_RE.match(booking_time):
        raise ValueError('Invalid time format. Please use HH:MM format (e.g., 14:30)')

    try:
        start = datetime.strptime(f"{date} {booking_time}", "%Y-%m-%d %H:%M").replace(tzinfo=timezone.utc)
    except ValueError:
        raise ValueError('Invalid date format. Please use YYYY-MM-DD format (e.g., 2024-03-15)')
    if start < _utc_now():
        raise ValueError('Cannot book appointments in the past. Please select a future date and time.')
    if email and not _EMAIL_RE.match(email):
        raise ValueError('Invalid email address format')

    configuration = action.get('configuration') or {}
    duration = int(data.get('duration') or configuration.get('defaultDuration') or DEFAULT_BOOKING_MINUTES)
    booking_id = f"apt-{int(time.time() * 1000)}-{secrets.token_hex(3)}"
    end = start + timedelta(minutes=duration)

    return {
        'success': True,
        'bookingId': booking_id,
        'message': f"✅ Perfect! Your appointment is confirmed for {name} on {date} at {booking_time}. "
                   f"Booking reference: {booking_id}",
        'details': {
            'bookingId': booking_id,
            'date': date,
            'time': booking_time,
            'endTime': end.strftime('%H:%M'),
            'duration': duration,
            'attendee': {'name': name, 'email': email or 'Not provided'},
            'description': data.get('description') or 'Appointment scheduled via chatbot',
            'status': 'confirmed',
            'provider': 'direct',
        },
    }


def run_email_send(action: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    to, subject, body = data.get('to'), data.get('subject'), data.get('body')
    if not to or not subject or not body:
        raise ValueError('Missing required email fields: to, subject, and body are required')
    from_email = (action.get('configuration') or {}).get('fromEmail')
    if not from_email:
        raise ValueError('Email action not properly configured: missing fromEmail in configuration')

    from_name = data.get('fromName') or 'Chatbot Assistant'
    result = send_email(to, subject, escape_html(body), from_name=from_name, from_email=from_email)
    if not result.get('success'):
        raise RuntimeError(f"Failed to send email: {result.get('error')}")

    return {
        'success': True,
        'message': f"Email sent successfully to {to}",
        'details': {'to': to, 'from': f"{from_name} <{from_email}>", 'subject': subject, 'body': body},
    }


def run_webhook_call(action: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    configuration = action.get('configuration') or {}
    url = _require_url(configuration.get('webhookUrl'), 'Webhook URL not configured')
    method = (configuration.get('method') or 'POST').upper()

    extra_headers = configuration.get('headers') or {}
    if isinstance(extra_headers, str):
        extra_headers = json.loads(extra_headers) if extra_headers.strip() else {}

    payload = {
        **data,
        '_metadata': {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'source': 'chatbot_action',
            'actionId': action['id'],
        },
    }
    headers = {'Content-Type': 'application/json', 'User-Agent': 'Voxtro-Webhook/1.0', **extra_headers}

    resp = requests.request(method, url, json=payload, headers=headers, timeout=WEBHOOK_TIMEOUT)
    body = _response_body(resp)
    if not resp.ok:
        raise RuntimeError(f"Webhook returned status {resp.status_code}: {json.dumps(body, default=str)[:500]}")

    return {
        'success': True,
        'message': 'Webhook called successfully',
        'statusCode': resp.status_code,
        'response': body,
        'url': url,
        'method': method,
    }


def run_zapier_trigger(action: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    configuration = action.get('configuration') or {}
    hook = configuration.get('zapierWebhook')
    if not hook:
        raise ValueError('Zapier webhook URL not configured')
    if 'hooks.zapier.com' not in hook:
        raise ValueError('Invalid Zapier webhook URL. Must be a valid Zapier webhook endpoint.')

    event = configuration.get('eventName') or 'chatbot_action'
    payload = {
        'event': event,
        'data': data,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'chatbot_action_id': action['id'],
        'source': 'chatbot',
    }
    resp = requests.post(hook, json=payload, headers={'User-Agent': 'Voxtro-Zapier/1.0'}, timeout=WEBHOOK_TIMEOUT)
    if not resp.ok:
        raise RuntimeError(f"Zapier webhook returned status {resp.status_code}")

    try:
        zapier_response = resp.json() if resp.text else {'message': 'Trigger sent to Zapier'}
    except ValueError:
        zapier_response = {'message': 'Trigger sent to Zapier', 'rawResponse': resp.text}

    return {
        'success': True,
        'message': 'Zapier trigger executed successfully',
        'statusCode': resp.status_code,
        'event': event,
        'zapierResponse': zapier_response,
    }


def missing_required_parameters(parameters: Optional[List[Dict[str, Any]]], data: Dict[str, Any]) -> List[str]:
    return [
        p['name'] for p in parameters or []
        if p.get('required') and not str(data.get(p['name']) or '').strip()
    ]


def fill_tool_template(template: str, variables: Dict[str, Any]) -> str:
    """{{key}} substitution; {{parameters}} expands to 'key: value' lines of the tool input."""
    for key, value in variables.items():
        template = template.replace(f"{{{{{key}}}}}", '' if value is None else str(value))
    if '{{parameters}}' in template:
        lines = '\n'.join(
            f"{k}: {v}" for k, v in variables.items() if k not in ('bot_name', 'tool_name', 'timestamp')
        )
        template = template.replace('{{parameters}}', lines)
    return template


def send_tool_email(action: Dict[str, Any], data: Dict[str, Any], automation: Dict[str, Any],
                    bot_name: Optional[str]) -> Dict[str, Any]:
    variables = {
        **data,
        'bot_name': bot_name or 'Chatbot',
        'tool_name': action['name'],
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }
    subject = fill_tool_template(automation.get('subject') or 'Tool Execution: {{tool_name}}', variables)
    body = fill_tool_template(
        automation.get('body') or 'Tool "{{tool_name}}" was executed with the following data:\n\n{{parameters}}',
        variables,
    )
    recipients = [
        r for r in (fill_tool_template(part.strip(), variables) for part in (automation.get('recipients') or '').split(','))
        if r and _EMAIL_RE.match(r)
    ]
    if not recipients:
        raise ValueError('No valid recipient emails found')

    result = send_email(recipients, subject, escape_html(body), from_name=bot_name or 'Chatbot Assistant')
    if not result.get('success'):
        raise RuntimeError(f"Email sending failed: {result.get('error')}")
    return {'success': True, 'recipients': recipients, 'subject': subject}


def run_custom_tool(action: Dict[str, Any], data: Dict[str, Any], conversation_id: Optional[str] = None,
                    bot_name: Optional[str] = None) -> Dict[str, Any]:
    configuration = action.get('configuration') or {}
    url = _require_url(configuration.get('webhookUrl'), 'Webhook URL not configured for custom tool')
    parameters = configuration.get('parameters') or []

    missing = missing_required_parameters(parameters, data)
    if missing:
        raise ValueError(f"Required parameter '{missing[0]}' is missing")

    payload = {
        'tool_name': action['name'],
        'tool_description': action.get('description'),
        'parameters': data,
        '_metadata': {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'source': 'custom_tool',
            'actionId': action['id'],
            'chatbotId': action.get('chatbot_id'),
        },
    }
    try:
        resp = requests.post(url, json=payload, headers={'User-Agent': 'Voxtro-CustomTool/1.0'},
                             timeout=WEBHOOK_TIMEOUT)
        if not resp.ok:
            logger.error(f"[Actions] ❌ Custom tool webhook {action['name']} returned {resp.status_code}")
    except requests.RequestException as e:
        logger.error(f"[Actions] ❌ Custom tool webhook {action['name']} failed: {e}")

    email_result = None
    automation = configuration.get('emailAutomation') or {}
    if automation.get('enabled'):
        try:
            email_result = send_tool_email(action, data, automation, bot_name)
        except (ValueError, RuntimeError) as e:
            logger.error(f"[Actions] ❌ Email automation for {action['name']} failed: {e}")
            email_result = {'error': str(e)}

    if conversation_id:
        try:
            conn = get_db_connection()
            try:
                with conn:
                    messages = load_messages(conn, conversation_id)
            finally:
                conn.close()
            extract_parameters(conversation_id, messages)
        except Exception as e:
            logger.error(f"[Actions] ❌ Parameter extraction after {action['name']} failed: {e}")

    return {
        'success': True,
        'message': f'Custom tool "{action["name"]}" executed successfully',
        'statusCode': 200,
        'response': {'message': 'Webhook sent successfully'},
        'url': url,
        'toolName': action['name'],
        'emailResult': email_result,
    }


def execute_action(action_id: str, input_data: Optional[Dict[str, Any]],
                   conversation_id: Optional[str] = None) -> Dict[str, Any]:
    if not action_id or input_data is None:
        raise HandlerError("Missing actionId or inputData")

    conn = get_db_connection()
    try:
        with conn:
            action = fetch_one(
                conn,
                """
                SELECT a.*, c.name AS chatbot_name
                FROM chatbot_actions a
                LEFT JOIN chatbots c ON c.id = a.chatbot_id
                WHERE a.id = %s AND a.is_active = true
                """,
                (action_id,),
            )
            if not action:
                raise HandlerError("Action not found or inactive", 404)
            log_entry = fetch_one(
                conn,
                """
                INSERT INTO action_execution_logs (chatbot_action_id, conversation_id, status, input_data)
                VALUES (%s, %s, 'pending', %s)
                RETURNING id
                """,
                (action_id, conversation_id, as_json(input_data)),
            )

        action_type = action.get('action_type')
        logger.info(f"[Actions] Running {action_type} action {action['name']} ({action_id})")
        try:
            if action_type == 'calendar_booking':
                result = run_calendar_booking(action, input_data)
            elif action_type == 'email_send':
                result = run_email_send(action, input_data)
            elif action_type == 'webhook_call':
                result = run_webhook_call(action, input_data)
            elif action_type == 'zapier_trigger':
                result = run_zapier_trigger(action, input_data)
            elif action_type == 'custom_tool':
                result = run_custom_tool(action, input_data, conversation_id, action.get('chatbot_name'))
            else:
                raise ValueError(f"Unknown action type: {action_type}")
            status, error_message = 'success', None
        except Exception as e:
            logger.error(f"[Actions] ❌ Action {action['name']} failed: {e}")
            status, error_message = 'failed', str(e)
            result = {'error': error_message}

        if log_entry:
            with conn:
                execute(
                    conn,
                    "UPDATE action_execution_logs SET status = %s, output_data = %s, error_message = %s WHERE id = %s",
                    (status, as_json(result), error_message, log_entry['id']),
                )
    finally:
        conn.close()

    return {'success': status == 'success', 'result': result, 'error': error_message}


@app.task
def execute_action_task(action_id: str, input_data: Dict[str, Any], conversation_id: Optional[str] = None):
    """Queued form of execute_action used by the chat turn so the reply is not held up."""
    try:
        return execute_action(action_id, input_data, conversation_id)
    except HandlerError as e:
        logger.error(f"[Actions] ❌ {e.message} ({action_id})")
        return {'success': False, 'error': e.message}
