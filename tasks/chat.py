"""
One chatbot conversation turn for the website widget and the dashboard
preview.

Order of answers: response cache, exact FAQ match, form trigger, then an
OpenAI completion. A completion may carry an action call as a JSON line,
which is stripped from the visible reply and queued for execution.
"""

from dotenv import load_dotenv
load_dotenv()

import re
import json
import openai
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo
from typing import Dict, Any, List, Optional, Tuple
from celery.utils.log import get_task_logger

from tasks.actions import execute_action_task
from tasks.notifications import notify_owner
from tasks.utils.db import get_db_connection, fetch_all, fetch_one, execute
from tasks.utils.errors import HandlerError
from tasks.utils.llm_utils import get_openai_client, estimate_tokens, calculate_cost

logger = get_task_logger(__name__)

HISTORY_LIMIT = 20
MAX_COMPLETION_TOKENS = 4000
DEFAULT_CACHE_HOURS = 168
DEFAULT_SYSTEM_PROMPT = 'You are a helpful assistant.'
FORM_PROMPT = "I'd be happy to help you with that! Please fill out this form:"
ACTION_DONE_REPLY = "Got it! I've processed that for you."
CONTEXT_TIMEZONE = ZoneInfo('America/New_York')

FORMATTING_RULES = """

--- RESPONSE FORMATTING RULES (strictly follow these) ---
- NEVER use markdown formatting such as asterisks (*), bold (**text**), italic (*text*), bullet points, or numbered lists
- Write in a natural, conversational tone as if you are a real person texting or messaging
- Keep responses friendly, helpful, and human-like
- Use plain text only - no special formatting characters
- Break up long responses into shorter, digestible paragraphs when needed"""

ACTIONS_HEADER = (
    "\n\nAVAILABLE ACTIONS:\n"
    "CRITICAL: You MUST use these tools when the conversation context requires them. "
    "Do not ask for permission - execute the action immediately when appropriate.\n\n"
    "RESPONSE FORMAT RULE: When calling an action:\n"
    "1. Keep your message to the user brief, natural, and conversational - "
    "DO NOT list or summarize the collected parameters\n"
    '2. Add the JSON action call on a separate line: {"action": "action_name", "parameters": {...}}\n'
    "The action call will be processed automatically and invisibly to the user - "
    "they will only see your brief acknowledgment.\n\n"
)

ACTIONS_PROTOCOL = (
    "\n\n=== ACTION EXECUTION PROTOCOL ===\n"
    'When the user confirms to proceed (says "yes", "correct", "okay", "confirm", etc.):\n'
    "STEP 1: Output your confirmation message to the user\n"
    "STEP 2: On the VERY NEXT LINE output ONLY the action JSON with NO other text\n"
    '{"action": "action_name", "parameters": {all_required_params}}\n'
)


def question_hash(question: str) -> str:
    """Cache key for a question: 32-bit rolling hash of the normalized text, as a signed decimal."""
    normalized = re.sub(r'\s+', ' ', (question or '').lower().strip())
    h = 0
    for ch in normalized:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return str(h)


def date_context(now: Optional[datetime] = None) -> str:
    local = (now or datetime.now(timezone.utc)).astimezone(CONTEXT_TIMEZONE)
    hour = local.hour % 12 or 12
    return (
        "\n\n--- SYSTEM CONTEXT (do not mention this to users) ---\n"
        f"Current date: {local.strftime('%B')} {local.day}, {local.year}\n"
        f"Current time: {hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}\n"
        f"Day of the week: {local.strftime('%A')}"
    )


def _example_value(param: Dict[str, Any]) -> str:
    return {'email': 'example@email.com', 'number': '123', 'date': '2024-03-15'}.get(
        param.get('type'), f"example {param.get('name')}")


def describe_action(action: Dict[str, Any]) -> str:
    name = action['name']
    lines = [
        f"ACTION: {name}",
        f"Description: {action.get('description') or 'Execute this action when relevant to the conversation'}",
        f"Type: {action['action_type']}",
        "TRIGGER: Use this action immediately when the description criteria are met",
    ]
    action_type = action['action_type']
    if action_type == 'calendar_booking':
        lines.append('Required Parameters: {date: "YYYY-MM-DD", time: "HH:MM", attendeeName: "Name"}')
        lines.append('Optional Parameters: {duration: 30, attendeeEmail: "email@example.com", '
                     'description: "Meeting details"}')
    elif action_type == 'email_send':
        lines.append('Required Parameters: {to: "recipient@email.com", subject: "Email subject", body: "Email content"}')
        lines.append('Optional Parameters: {fromName: "Sender Name"}')
    elif action_type == 'webhook_call':
        lines.append('Parameters: {data: {...}} (any JSON object with the data to send)')
    elif action_type == 'custom_tool':
        params = (action.get('configuration') or {}).get('parameters') or []
        if params:
            required = [p for p in params if p.get('required')]
            optional = [p for p in params if not p.get('required')]
            if required:
                lines.append('Required Parameters: {' + ', '.join(
                    f'{p["name"]}: "{p.get("description") or p["name"]}"' for p in required) + '}')
            if optional:
                lines.append('Optional Parameters: {' + ', '.join(
                    f'{p["name"]}: "{p.get("description") or p["name"]}"' for p in optional) + '}')
            example = {p['name']: _example_value(p) for p in params}
        else:
            lines.append('Parameters: {} (no specific parameters required)')
            example = {}
        lines.append(f'Example: {{"action": "{name}", "parameters": {json.dumps(example)}}}')
    return '\n'.join(lines) + '\n\n'


def build_system_prompt(chatbot: Dict[str, Any], actions: List[Dict[str, Any]],
                        now: Optional[datetime] = None) -> str:
    prompt = (chatbot.get('system_prompt') or DEFAULT_SYSTEM_PROMPT) + FORMATTING_RULES + date_context(now)
    if chatbot.get('website_content'):
        prompt += f"\n\nAdditional context from the company website:\n{chatbot['website_content']}"
    if actions:
        prompt += ACTIONS_HEADER + ''.join(describe_action(a) for a in actions) + ACTIONS_PROTOCOL
    return prompt


def _balanced_object(text: str, start: int) -> Optional[str]:
    depth = 0
    for i in range(start, len(text)):
        if text[i] == '{':
            depth += 1
        elif text[i] == '}':
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def find_action_call(text: str, action_names: List[str]) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """
    Locate an {"action": ..., "parameters": ...} object inside a reply.

    Returns:
        (parsed call, the exact JSON text) or (None, None)
    """
    if not text or '{' not in text or '}' not in text:
        return None, None

    anchors = []
    for marker in ('"action":', "'action':", '"action"'):
        idx = text.find(marker)
        if idx != -1:
            anchors.append(idx)
            break
    for name in action_names:
        idx = text.find(f'"{name}"')
        if idx != -1:
            anchors.append(idx)

    candidates = []
    for anchor in anchors:
        start = text.rfind('{', 0, anchor + 1)
        if start != -1:
            candidates.append(_balanced_object(text, start))
    first = _balanced_object(text, text.find('{'))
    if first and any(k in first for k in ('action', 'name', 'phone')):
        candidates.append(first)

    for raw in candidates:
        if not raw:
            continue
        try:
            call = json.loads(raw)
        except ValueError:
            continue
        if isinstance(call, dict) and call.get('action'):
            return call, raw
    return None, None


def strip_action_call(text: str, raw: str) -> str:
    visible = text.replace(raw, '', 1).strip()
    visible = re.sub(r'[.,;:]\s*$', '', visible).strip()
    return visible if len(visible) >= 3 else ACTION_DONE_REPLY


def _load_chatbot(conn, chatbot_id: str, preview: bool, preview_config: Optional[Dict[str, Any]]):
    actions = fetch_all(
        conn,
        """
        SELECT id, action_type, name, description, configuration, is_active
        FROM chatbot_actions WHERE chatbot_id = %s AND is_active = true
        """,
        (chatbot_id,),
    )
    if preview and preview_config:
        chatbot = {
            'name': 'Preview',
            'system_prompt': preview_config.get('system_prompt'),
            'model': preview_config.get('model'),
            'temperature': preview_config.get('temperature'),
            'max_tokens': preview_config.get('max_tokens'),
        }
        return chatbot, actions

    chatbot = fetch_one(conn, "SELECT * FROM chatbots WHERE id = %s", (chatbot_id,))
    if not chatbot or not chatbot.get('is_active'):
        raise HandlerError("Chatbot not found or inactive", 404)
    return chatbot, actions


def _resolve_conversation(conn, chatbot_id: str, visitor_id: Optional[str],
                          conversation_id: Optional[str]) -> Tuple[str, bool]:
    if conversation_id:
        return conversation_id, False
    if visitor_id:
        existing = fetch_one(
            conn,
            """
            SELECT id FROM conversations
            WHERE chatbot_id = %s AND visitor_id = %s AND status <> 'ended'
            ORDER BY created_at DESC LIMIT 1
            """,
            (chatbot_id, visitor_id),
        )
        if existing:
            return existing['id'], False

    visitor = visitor_id or f"anon_{int(datetime.now(timezone.utc).timestamp() * 1000)}"
    row = fetch_one(
        conn,
        "INSERT INTO conversations (chatbot_id, visitor_id) VALUES (%s, %s) RETURNING id",
        (chatbot_id, visitor),
    )
    return row['id'], True


def _load_history(conn, conversation_id: str) -> List[Dict[str, str]]:
    rows = fetch_all(
        conn,
        "SELECT role, content FROM messages WHERE conversation_id = %s ORDER BY created_at DESC LIMIT %s",
        (conversation_id, HISTORY_LIMIT),
    )
    return [{'role': r['role'], 'content': r['content']} for r in reversed(rows)]


def _save_message(conn, conversation_id: str, role: str, content: str) -> None:
    execute(conn, "INSERT INTO messages (conversation_id, role, content) VALUES (%s, %s, %s)",
            (conversation_id, role, content))


def _log_usage(conn, chatbot_id: str, conversation_id: Optional[str], model: str, input_tokens: int,
               output_tokens: int, cache_hit: bool) -> None:
    execute(
        conn,
        """
        INSERT INTO token_usage
            (chatbot_id, conversation_id, model_used, input_tokens, output_tokens, total_cost, cache_hit)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        """,
        (chatbot_id, conversation_id, model, input_tokens, output_tokens,
         calculate_cost(model, input_tokens, output_tokens), cache_hit),
    )


def check_token_limits(conn, chatbot: Dict[str, Any], chatbot_id: str, conversation_id: Optional[str],
                       now: Optional[datetime] = None) -> None:
    """Raise 429 when the chatbot has spent its daily or monthly token allowance."""
    daily_limit = chatbot.get('daily_token_limit')
    monthly_limit = chatbot.get('monthly_token_limit')
    if not daily_limit and not monthly_limit:
        return

    now = now or datetime.now(timezone.utc)
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = day_start.replace(day=1)
    usage = fetch_one(
        conn,
        """
        SELECT
            COALESCE(SUM(input_tokens + output_tokens) FILTER (WHERE created_at >= %s), 0) AS daily,
            COALESCE(SUM(input_tokens + output_tokens), 0) AS monthly
        FROM token_usage
        WHERE chatbot_id = %s AND created_at >= %s
        """,
        (day_start, chatbot_id, month_start),
    ) or {}

    if daily_limit and (usage.get('daily') or 0) >= daily_limit:
        raise HandlerError('Daily token limit reached. Please try again tomorrow.', 429,
                           conversationId=conversation_id)
    if monthly_limit and (usage.get('monthly') or 0) >= monthly_limit:
        raise HandlerError('Monthly token limit reached. Please upgrade your plan.', 429,
                           conversationId=conversation_id)


def _cached_answer(conn, chatbot_id: str, model: str, question: str) -> Optional[Dict[str, Any]]:
    execute(conn, "DELETE FROM response_cache WHERE expires_at < now()")
    cached = fetch_one(
        conn,
        """
        SELECT * FROM response_cache
        WHERE chatbot_id = %s AND question_hash = %s AND model_used = %s AND expires_at > now()
        LIMIT 1
        """,
        (chatbot_id, question_hash(question), model),
    )
    if cached:
        execute(conn, "UPDATE response_cache SET hit_count = hit_count + 1, updated_at = now() WHERE id = %s",
                (cached['id'],))
    return cached


def _faq_answer(conn, chatbot_id: str, question: str) -> Optional[str]:
    wanted = question.strip().lower()
    for faq in fetch_all(conn, "SELECT question, answer FROM chatbot_faqs WHERE chatbot_id = %s AND is_active = true",
                         (chatbot_id,)):
        if (faq.get('question') or '').lower() == wanted and faq.get('answer'):
            return faq['answer']
    return None


def _triggered_form(conn, chatbot_id: str, question: str) -> Optional[Dict[str, Any]]:
    lowered = question.lower()
    for form in fetch_all(conn, "SELECT * FROM chatbot_forms WHERE chatbot_id = %s AND is_active = true",
                          (chatbot_id,)):
        if any(k and k.lower() in lowered for k in form.get('trigger_keywords') or []):
            return {
                'id': form['id'],
                'form_title': form.get('form_title'),
                'form_description': form.get('form_description'),
                'fields': form.get('fields'),
                'success_message': form.get('success_message'),
                'terms_and_conditions': form.get('terms_and_conditions'),
                'require_terms_acceptance': bool(form.get('require_terms_acceptance')),
            }
    return None


def complete(chatbot: Dict[str, Any], openai_messages: List[Dict[str, str]]) -> str:
    client = get_openai_client()
    if not client:
        raise RuntimeError('OpenAI API key not configured')
    try:
        temperature = float(chatbot.get('temperature'))
    except (TypeError, ValueError):
        temperature = 0.7
    try:
        response = client.chat.completions.create(
            model=chatbot['model'],
            messages=openai_messages,
            temperature=temperature,
            max_tokens=min(chatbot.get('max_tokens') or 1000, MAX_COMPLETION_TOKENS),
        )
    except openai.APIStatusError as e:
        raise RuntimeError(f"OpenAI error: {e.message}") from e
    return response.choices[0].message.content or ''


def _turn(conn, chatbot_id: str, messages: List[Dict[str, str]], visitor_id: Optional[str],
          conversation_id: Optional[str], preview: bool, preview_config: Optional[Dict[str, Any]],
          state: Dict[str, Any]) -> Dict[str, Any]:
    with conn:
        chatbot, actions = _load_chatbot(conn, chatbot_id, preview, preview_config)
    state['chatbot_name'] = chatbot.get('name')
    state['owner_id'] = chatbot.get('user_id')

    last = messages[-1] if messages else {}
    question = last.get('content') if last.get('role') == 'user' else None
    history = []

    if not preview:
        with conn:
            conversation_id, is_new = _resolve_conversation(conn, chatbot_id, visitor_id, conversation_id)
            state['conversation_id'] = conversation_id
            history = _load_history(conn, conversation_id)
            if question:
                _save_message(conn, conversation_id, 'user', question)
        if is_new:
            notify_owner(state['owner_id'], 'chat_started', chatbot['name'], conversation_id)

        with conn:
            check_token_limits(conn, chatbot, chatbot_id, conversation_id)

        if question:
            with conn:
                if chatbot.get('cache_enabled') and not history:
                    cached = _cached_answer(conn, chatbot_id, chatbot['model'], question)
                    if cached:
                        _log_usage(conn, chatbot_id, conversation_id, chatbot['model'], cached['input_tokens'],
                                   cached['output_tokens'], True)
                        _save_message(conn, conversation_id, 'assistant', cached['response_text'])
                        return {'response': cached['response_text'], 'conversationId': conversation_id,
                                'cached': True}

                answer = _faq_answer(conn, chatbot_id, question)
                if answer:
                    _save_message(conn, conversation_id, 'assistant', answer)
                    return {'response': answer, 'conversationId': conversation_id}

                form = _triggered_form(conn, chatbot_id, question)
                if form:
                    _save_message(conn, conversation_id, 'assistant', FORM_PROMPT)
                    return {'response': FORM_PROMPT, 'conversationId': conversation_id, 'formData': form}

    openai_messages = [{'role': 'system', 'content': build_system_prompt(chatbot, actions)}, *history, *messages]
    input_tokens = estimate_tokens(json.dumps(openai_messages, separators=(',', ':')))
    reply = complete(chatbot, openai_messages)
    output_tokens = estimate_tokens(reply)

    action_result = None
    call, raw = find_action_call(reply, [a['name'] for a in actions])
    action = next((a for a in actions if call and a['name'] == call.get('action')), None)
    if action:
        try:
            execute_action_task.delay(action['id'], call.get('parameters') or {}, conversation_id)
            action_result = {'success': True, 'message': 'Action triggered'}
        except Exception as e:
            logger.error(f"[Chat] ❌ Could not queue action {action['name']}: {e}")
            action_result = {'success': False, 'message': 'Action could not be queued'}
        reply = strip_action_call(reply, raw)

    if not preview and reply.strip():
        with conn:
            _save_message(conn, conversation_id, 'assistant', reply)
            if chatbot.get('cache_enabled') and question:
                expires_at = datetime.now(timezone.utc) + timedelta(
                    hours=chatbot.get('cache_duration_hours') or DEFAULT_CACHE_HOURS)
                execute(
                    conn,
                    """
                    INSERT INTO response_cache
                        (chatbot_id, question_hash, question_text, response_text, model_used,
                         input_tokens, output_tokens, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (chatbot_id, question_hash(question), question, reply, chatbot['model'],
                     input_tokens, output_tokens, expires_at),
                )
            _log_usage(conn, chatbot_id, conversation_id, chatbot['model'], input_tokens, output_tokens, False)

    return {'response': reply, 'conversationId': conversation_id, 'actionResult': action_result}


def handle_chat(chatbot_id: str, messages: List[Dict[str, str]], visitor_id: Optional[str] = None,
                conversation_id: Optional[str] = None, preview: bool = False,
                preview_config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    if not chatbot_id or not isinstance(messages, list):
        raise HandlerError("Missing required fields: chatbotId, messages")

    state = {'conversation_id': conversation_id}
    conn = get_db_connection()
    try:
        return _turn(conn, chatbot_id, messages, visitor_id, conversation_id, preview, preview_config, state)
    except HandlerError:
        raise
    except Exception as e:
        logger.error(f"[Chat] ❌ Chat turn failed for chatbot {chatbot_id}: {e}")
        if state.get('owner_id') and state.get('conversation_id'):
            notify_owner(state['owner_id'], 'chat_error', state.get('chatbot_name') or 'Unknown Chatbot',
                         state['conversation_id'], error_message=str(e))
        raise HandlerError(str(e), 500) from e
    finally:
        conn.close()
