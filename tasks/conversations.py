"""
Chatbot conversation bookkeeping: custom parameter extraction, email
condition evaluation and the end-of-conversation sweep.
"""

from dotenv import load_dotenv
load_dotenv()

from tasks.celery_app import app
from celery.utils.log import get_task_logger

import re
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

from tasks.email_template_utils import (
    escape_html,
    format_ticket_date,
    render_template_with_data,
    substitute_placeholders,
)
from tasks.utils.db import get_db_connection, fetch_all, fetch_one, execute
from tasks.utils.email_client import send_email
from tasks.utils.errors import HandlerError

logger = get_task_logger(__name__)

DEFAULT_SESSION_TIMEOUT_MINUTES = 30

NAME_FILLER_WORDS = {
    'espanol', 'spanish', 'español', 'name', 'nombre', 'llamar', 'call', 'hello', 'hola',
    'hi', 'my', 'me', 'is', 'soy', 'this', 'and', 'y',
}
_NAME_WORD_RE = re.compile(r"^[a-zA-ZÀ-ÿñÑ'\-.]+$")
_LETTERS = r"(?:[^\W\d_]|[\s\-'.])"
_NAME_HINT_RE = re.compile(
    r"(?:my name is|name is|i'm|i am|this is|call me|name:)\s+([^\W\d_]+(?:\s+[^\W\d_]+){0,3})",
    re.IGNORECASE,
)
_PHONE_RE = re.compile(r"(\+?\d[\d\s().\-]{8,}\d)")
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}")
_TEN_DIGITS_RE = re.compile(r"\d{10}")


def _builtin_kind(parameter_name: str) -> Optional[str]:
    lowered = parameter_name.lower()
    if 'email' in lowered:
        return 'email'
    if 'phone' in lowered:
        return 'phone'
    if lowered == 'name' or lowered.endswith('_name'):
        return 'name'
    return None


def clean_name(value: Optional[str]) -> Optional[str]:
    """Strip digits and filler words; a name is one to four words of letters."""
    if not value:
        return None
    words = [
        w for w in re.sub(r'\d+', '', value).split()
        if len(w) >= 2 and w.lower() not in NAME_FILLER_WORDS and _NAME_WORD_RE.match(w)
    ]
    if not words or len(words) > 4:
        return None
    return ' '.join(words)


def clean_phone(value: Optional[str]) -> Optional[str]:
    digits = re.sub(r'\D', '', value or '')
    return digits if len(digits) >= 10 else None


def _clean_value(kind: Optional[str], value: Optional[str]) -> Optional[str]:
    if kind == 'name':
        return clean_name(value)
    if kind == 'phone':
        return clean_phone(value)
    value = (value or '').strip()
    return value or None


def _passes_validation(value: str, rules: Dict[str, Any]) -> bool:
    pattern = rules.get('validation_regex')
    if not pattern:
        return True
    try:
        return re.search(pattern, value) is not None
    except re.error as e:
        logger.warning(f"[Params] Invalid validation_regex {pattern!r}: {e}")
        return True


def _wildcard_regex(pattern: str) -> re.Pattern:
    """'my name is *' -> regex capturing the words standing in for '*'."""
    return re.compile(re.escape(pattern.lower()).replace(r'\*', f"({_LETTERS}*)"), re.IGNORECASE)


def extract_parameter_value(text: str, rules: Optional[Dict[str, Any]], parameter_name: str) -> Optional[str]:
    """
    Pull one custom parameter out of free text.

    Configured `regex` entries and `patterns` are tried first. A pattern with
    `*` captures the words in its place; a pattern without one is a literal
    keyword and returns itself when present. When nothing configured matches,
    name/phone/email parameters fall back to built-in heuristics. Every
    candidate must pass `validation_regex`.
    """
    if not text:
        return None
    rules = rules or {}
    kind = _builtin_kind(parameter_name)

    for pattern in rules.get('regex') or []:
        try:
            match = re.search(pattern, text, re.IGNORECASE)
        except re.error as e:
            logger.warning(f"[Params] Invalid regex pattern {pattern!r}: {e}")
            continue
        if not match:
            continue
        raw = next((g for g in match.groups() if g), None) if match.groups() else match.group(0)
        value = _clean_value(kind, raw)
        if value and _passes_validation(value, rules):
            return value

    lowered = text.lower()
    for pattern in rules.get('patterns') or []:
        if '*' in pattern:
            match = _wildcard_regex(pattern).search(text)
            if not match or not match.group(1):
                continue
            raw = re.split(r'\s*\d{10}|\s+y\s+|\s+and\s+', match.group(1).strip(), flags=re.IGNORECASE)[0]
            value = _clean_value(kind or 'name', raw)
            if value and _passes_validation(value, rules):
                return value
        elif pattern.lower() in lowered:
            return pattern

    if kind == 'name':
        match = _NAME_HINT_RE.search(text)
        value = clean_name(match.group(1)) if match else None
    elif kind == 'phone':
        match = _PHONE_RE.search(text)
        value = clean_phone(match.group(1)) if match else None
    elif kind == 'email':
        match = _EMAIL_RE.search(text)
        value = match.group(0) if match else None
    else:
        value = None

    if value and _passes_validation(value, rules):
        return value
    return None


def load_messages(conn, conversation_id: str) -> List[Dict[str, Any]]:
    return fetch_all(
        conn,
        "SELECT role, content, created_at FROM messages WHERE conversation_id = %s ORDER BY created_at ASC",
        (conversation_id,),
    )


def extract_parameters(conversation_id: str, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    if not conversation_id or messages is None:
        raise HandlerError("Missing conversationId or messages")

    conn = get_db_connection()
    try:
        with conn:
            conversation = fetch_one(conn, "SELECT chatbot_id FROM conversations WHERE id = %s", (conversation_id,))
            if not conversation:
                raise HandlerError("Conversation not found", 404)
            parameters = fetch_all(
                conn,
                "SELECT parameter_name, extraction_rules FROM chatbot_custom_parameters WHERE chatbot_id = %s",
                (conversation['chatbot_id'],),
            )

        if not parameters:
            return {'message': 'No custom parameters defined', 'extracted': {}, 'totalParameters': 0}

        all_text = ' '.join(m.get('content') or '' for m in messages)
        # newest first: contact details are usually restated in the latest message
        contact_messages = [
            m.get('content') or '' for m in reversed(messages)
            if m.get('role') == 'user' and re.search(r'[a-zA-Z]', m.get('content') or '')
            and _TEN_DIGITS_RE.search(m.get('content') or '')
        ]

        extracted = {}
        for param in parameters:
            name = param['parameter_name']
            rules = param.get('extraction_rules') or {}
            value = None
            if name in ('name', 'phone_number'):
                for content in contact_messages:
                    value = extract_parameter_value(content, rules, name)
                    if value:
                        break
            if not value:
                value = extract_parameter_value(all_text, rules, name)
            if not value:
                continue

            extracted[name] = value
            try:
                with conn:
                    execute(
                        conn,
                        """
                        INSERT INTO conversation_parameters (conversation_id, parameter_name, parameter_value)
                        VALUES (%s, %s, %s)
                        ON CONFLICT (conversation_id, parameter_name)
                        DO UPDATE SET parameter_value = EXCLUDED.parameter_value
                        """,
                        (conversation_id, name, value),
                    )
            except Exception as e:
                logger.error(f"[Params] ❌ Error storing parameter {name}: {e}")
    finally:
        conn.close()

    logger.info(f"[Params] Conversation {conversation_id}: extracted {len(extracted)}/{len(parameters)} parameters")
    return {'message': 'Parameter extraction complete', 'extracted': extracted, 'totalParameters': len(parameters)}


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if value == '':
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_value(field_value: Any, operator: str, value: Any, case_sensitive: bool = False) -> bool:
    field_text = '' if field_value is None else str(field_value)
    value_text = '' if value is None else str(value)
    if not case_sensitive:
        field_text = field_text.lower()
        value_text = value_text.lower()

    if operator == 'equals':
        return field_text == value_text
    if operator == 'not_equals':
        return field_text != value_text
    if operator == 'contains':
        return value_text in field_text
    if operator == 'not_contains':
        return value_text not in field_text
    if operator == 'starts_with':
        return field_text.startswith(value_text)
    if operator == 'ends_with':
        return field_text.endswith(value_text)

    left, right = _to_number(field_value), _to_number(value)
    if left is None or right is None:
        return False
    if operator == 'greater_than':
        return left > right
    if operator == 'less_than':
        return left < right
    if operator == 'greater_than_equal':
        return left >= right
    if operator == 'less_than_equal':
        return left <= right
    return False


def _message_content_matches(rule: Dict[str, Any], data: Dict[str, Any]) -> bool:
    messages = data.get('messages') or []
    field = rule.get('field')
    if field == 'user_message':
        messages = [m for m in messages if m.get('role') == 'user']
    elif field == 'bot_message':
        messages = [m for m in messages if m.get('role') == 'assistant']
    case_sensitive = bool(rule.get('case_sensitive'))
    return any(
        evaluate_value(m.get('content') or '', rule.get('operator'), rule.get('value'), case_sensitive)
        for m in messages
    )


def _custom_parameter_value(field: str, data: Dict[str, Any]) -> Any:
    if field == 'conversation_length':
        return data.get('message_count') or len(data.get('messages') or [])
    if field == 'conversation_duration':
        return data.get('duration_minutes') or 0
    if field == 'user_rating':
        return data.get('user_rating') or 0
    if field == 'summary_sentiment':
        return data.get('summary_sentiment') or ''
    if field == 'agent_name':
        return data.get('bot_name') or ''
    source = data.get('tool_parameters') if field.startswith('tool_') else data.get('custom_parameters')
    return (source or {}).get(field) or data.get(field)


def evaluate_rule(rule: Dict[str, Any], data: Dict[str, Any]) -> bool:
    rule_type = rule.get('type')
    if rule_type == 'basic' or rule.get('field') == 'always':
        return rule.get('value') == 'true'
    if rule_type == 'message_content':
        return _message_content_matches(rule, data)
    if rule_type == 'custom_parameter':
        return evaluate_value(_custom_parameter_value(rule.get('field') or '', data),
                              rule.get('operator'), rule.get('value'))
    if rule_type == 'parameter_exists':
        name = rule.get('parameter_name') or ''
        source = data.get('tool_parameters') if name.startswith('tool_') else data.get('custom_parameters')
        exists = name in (source or {})
        return exists if rule.get('operator') == 'exists' else not exists
    return evaluate_value(data.get(rule.get('field')), rule.get('operator'), rule.get('value'))


def _combine(results: List[bool], logic: Optional[str]) -> bool:
    return all(results) if (logic or 'AND') == 'AND' else any(results)


def evaluate_conditions(conditions: Optional[Dict[str, Any]], data: Dict[str, Any]) -> bool:
    """
    Decide whether an end-of-chat email goes out.

    Accepts the legacy flat form {rules, logic} and the grouped form
    {groups: [{rules, logic}], logic}. No conditions means send.
    """
    if not conditions:
        return True

    if conditions.get('rules') and not conditions.get('groups'):
        return _combine([evaluate_rule(r, data) for r in conditions['rules']], conditions.get('logic'))

    groups = conditions.get('groups') or []
    if not groups:
        return True
    return _combine(
        [_combine([evaluate_rule(r, data) for r in g.get('rules') or []], g.get('logic')) for g in groups],
        conditions.get('logic'),
    )


def render_email_template(template: Optional[str], data: Dict[str, Any]) -> str:
    if not template:
        return render_template_with_data(
            'conversation_ended.html',
            bot_name=escape_html(data.get('bot_name')),
            timestamp=escape_html(data.get('timestamp')),
            timeout_minutes=data.get('timeout_minutes'),
            conversation_summary=escape_html(data.get('conversation_summary')),
            first_message=escape_html(data.get('first_message')),
            last_message=escape_html(data.get('last_message')),
        )

    variables = {
        'user_name': data.get('user_name') or 'Unknown User',
        'bot_name': data.get('bot_name') or 'Chatbot',
        'conversation_summary': data.get('conversation_summary') or 'No summary available',
        'timestamp': data.get('timestamp') or datetime.now(timezone.utc).isoformat(),
        'first_message': data.get('first_message') or 'No first message',
        'last_message': data.get('last_message') or 'No last message',
        **(data.get('custom_parameters') or {}),
        **(data.get('tool_parameters') or {}),
    }
    return substitute_placeholders(template, variables)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _tool_parameters(conn, conversation_id: str) -> Dict[str, Any]:
    rows = fetch_all(
        conn,
        """
        SELECT l.input_data
        FROM action_execution_logs l
        JOIN chatbot_actions a ON a.id = l.chatbot_action_id
        WHERE l.conversation_id = %s AND l.status = 'success' AND a.action_type = 'custom_tool'
        """,
        (conversation_id,),
    )
    params = {}
    for row in rows:
        for key, value in (row.get('input_data') or {}).items():
            params[f"tool_{key}"] = value
    return params


def _end_conversation(conn, conv: Dict[str, Any], now: datetime) -> bool:
    """End one timed-out conversation; True when the notification email went out."""
    timeout_minutes = conv.get('session_timeout_minutes') or DEFAULT_SESSION_TIMEOUT_MINUTES

    with conn:
        messages = load_messages(conn, conv['id'])
    if not messages:
        return False
    last = messages[-1]
    if now < _aware(last['created_at']) + timedelta(minutes=timeout_minutes):
        return False

    try:
        extract_parameters(conv['id'], messages)
    except Exception as e:
        logger.error(f"[ConvEnd] ❌ Error extracting parameters for {conv['id']}: {e}")

    with conn:
        custom_parameters = {
            row['parameter_name']: row['parameter_value']
            for row in fetch_all(conn, "SELECT parameter_name, parameter_value FROM conversation_parameters "
                                       "WHERE conversation_id = %s", (conv['id'],))
        }
        tool_parameters = _tool_parameters(conn, conv['id'])
        execute(conn, "UPDATE conversations SET status = 'ended', ended_at = %s WHERE id = %s", (now, conv['id']))

    summary = (
        f"Conversation with {len(messages)} messages. "
        f"Started: {format_ticket_date(messages[0]['created_at'])}. "
        f"Ended: {format_ticket_date(last['created_at'])}."
    )
    data = {
        'user_name': 'Valued Customer',
        'bot_name': conv['name'],
        'conversation_summary': summary,
        'timestamp': format_ticket_date(last['created_at']),
        'first_message': messages[0].get('content') or '',
        'last_message': last.get('content') or '',
        'timeout_minutes': timeout_minutes,
        'messages': messages,
        'message_count': len(messages),
        'duration_minutes': timeout_minutes,
        'user_rating': 0,
        'summary_sentiment': 'neutral',
        'custom_parameters': custom_parameters,
        'tool_parameters': tool_parameters,
    }

    if not evaluate_conditions(conv.get('email_conditions'), data):
        logger.info(f"[ConvEnd] Conditions not met for {conv['id']}, no email")
        return False

    result = send_email(
        conv['end_chat_notification_email'],
        f"Chat session ended - {conv['name']}",
        render_email_template(conv.get('email_template'), data),
    )
    if not result.get('success'):
        logger.error(f"[ConvEnd] ❌ Error sending email for {conv['id']}: {result.get('error')}")
        return False
    return True


@app.task
def detect_conversation_end(force_end: bool = False, chatbot_id: Optional[str] = None,
                            visitor_id: Optional[str] = None) -> Dict[str, Any]:
    """
    End idle chatbot conversations and send the owner's end-of-chat email.

    With force_end the visitor's active conversation is closed immediately
    (the widget calls this when the visitor closes the chat).
    """
    conn = get_db_connection()
    try:
        if force_end and chatbot_id and visitor_id:
            with conn:
                execute(
                    conn,
                    """
                    UPDATE conversations SET status = 'ended', ended_at = now()
                    WHERE chatbot_id = %s AND visitor_id = %s AND status = 'active'
                    """,
                    (chatbot_id, visitor_id),
                )
            return {'success': True, 'message': 'Conversation force ended'}

        with conn:
            conversations = fetch_all(
                conn,
                """
                SELECT c.id, c.chatbot_id, c.visitor_id, b.name, b.user_id, b.session_timeout_minutes,
                       b.end_chat_notification_email, b.email_template, b.email_conditions
                FROM conversations c
                JOIN chatbots b ON b.id = c.chatbot_id
                WHERE c.status = 'active'
                  AND b.end_chat_notification_enabled = true
                  AND b.end_chat_notification_email IS NOT NULL
                """,
            )

        if not conversations:
            return {'message': 'No conversations with notifications enabled found', 'processed': 0,
                    'total_checked': 0}

        now = datetime.now(timezone.utc)
        processed = 0
        for conv in conversations:
            try:
                if _end_conversation(conn, conv, now):
                    processed += 1
            except Exception as e:
                logger.error(f"[ConvEnd] ❌ Error processing conversation {conv['id']}: {e}")
    finally:
        conn.close()

    logger.info(f"[ConvEnd] ✅ Processed {processed} of {len(conversations)} conversations")
    return {'message': f"Processed {processed} conversations", 'processed': processed,
            'total_checked': len(conversations)}
