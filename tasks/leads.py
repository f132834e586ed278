"""
Lead extraction from chatbot conversations, voice calls and WhatsApp
conversations.

Each transcript is sent to OpenAI once; a conversation is stamped with
lead_analyzed_at whatever the verdict so the sweep never re-reads it unless a
re-analysis is forced. Valid leads (a real name plus a phone number) are
upserted into leads keyed on conversation_id.
"""

from dotenv import load_dotenv
load_dotenv()

from tasks.celery_app import app
from celery.utils.log import get_task_logger

import os
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Dict, Any, Optional

from openai import APIStatusError

from tasks.utils.db import get_db_connection, fetch_all, execute, as_json
from tasks.utils.llm_utils import get_openai_client, parse_model_json_output

logger = get_task_logger(__name__)

OPENAI_LEAD_MODEL = os.getenv("OPENAI_LEAD_MODEL", "gpt-4o-mini")
TRANSCRIPT_CHAR_LIMIT = 4000
BATCH_SIZE = 5
CRON_LIMIT_PER_SOURCE = 50

LEAD_SYSTEM_PROMPT = """You are a lead qualification expert. Analyze conversation transcripts to determine if a person is a valid sales lead.

A VALID LEAD must have BOTH:
1. A clear, real person's name (first name at minimum, full name preferred)
2. A valid phone number (at least 10 digits)

Email is optional but should be extracted if present.

IMPORTANT CRITERIA:
- The name must be a real person's name, not a placeholder like "user", "customer", "caller", or generic terms
- The phone number must be explicitly provided in the conversation, not just the caller ID or system metadata
- Names like "test", "asdf", random characters are NOT valid
- Be strict - only mark as valid if you're confident the person intentionally provided their contact info

Respond ONLY with valid JSON in this exact format:
{
  "is_valid_lead": true/false,
  "name": "extracted name or null",
  "phone_number": "extracted phone or null",
  "email": "extracted email or null",
  "confidence": 0-100,
  "reason": "brief explanation"
}"""

# Per-source tables. Conversation rows are selected with a common shape:
# id, agent_id, occurred_at, agent_name, agent_user_id, plus `extra` columns.
SOURCES: Dict[str, Dict[str, Any]] = {
    'chatbot': {
        'agent_table': 'chatbots',
        'conversation_table': 'conversations',
        'agent_fk': 'chatbot_id',
        'occurred_column': 'created_at',
        'extra': '',
        'assignment_table': 'customer_chatbot_assignments',
        'assignment_fk': 'chatbot_id',
        'messages_sql': "SELECT role, content FROM messages WHERE conversation_id = %s ORDER BY created_at",
        'default_name': 'Unknown Chatbot',
        'phone_prefix': None,
    },
    'voice': {
        'agent_table': 'voice_assistants',
        'conversation_table': 'voice_assistant_calls',
        'agent_fk': 'assistant_id',
        'occurred_column': 'started_at',
        'extra': ', c.phone_number, c.status, c.duration_seconds',
        'assignment_table': 'customer_assistant_assignments',
        'assignment_fk': 'assistant_id',
        'messages_sql': "SELECT role, content FROM voice_assistant_transcripts WHERE call_id = %s ORDER BY timestamp",
        'default_name': 'Unknown Assistant',
        'phone_prefix': 'Caller phone number from system',
    },
    'whatsapp': {
        'agent_table': 'whatsapp_agents',
        'conversation_table': 'whatsapp_conversations',
        'agent_fk': 'agent_id',
        'occurred_column': 'started_at',
        'extra': ', c.phone_number, c.summary, c.sentiment',
        'assignment_table': 'customer_whatsapp_agent_assignments',
        'assignment_fk': 'agent_id',
        'messages_sql': "SELECT role, content FROM whatsapp_messages WHERE conversation_id = %s ORDER BY timestamp",
        'default_name': 'Unknown Agent',
        'phone_prefix': 'WhatsApp user phone number',
    },
}

CONTACT_PARAMETERS = ('name', 'email', 'phone_number')


def _verdict(reason: str, **fields) -> Dict[str, Any]:
    result = {
        'is_valid_lead': False,
        'name': None,
        'phone_number': None,
        'email': None,
        'confidence': 0,
        'reason': reason,
    }
    result.update(fields)
    return result


def analyze_transcript_for_lead(transcript: str) -> Dict[str, Any]:
    """
    Ask OpenAI whether a transcript contains a qualified lead.

    A malformed JSON answer is retried once before giving up.

    Returns:
        {is_valid_lead, name, phone_number, email, confidence, reason}
    """
    client = get_openai_client()
    if client is None:
        logger.error("[Leads] ❌ OPENAI_API_KEY not configured")
        return _verdict("OpenAI not configured")

    messages = [
        {'role': 'system', 'content': LEAD_SYSTEM_PROMPT},
        {'role': 'user', 'content': "Analyze this conversation transcript and extract lead information:\n\n"
                                    + transcript[:TRANSCRIPT_CHAR_LIMIT]},
    ]

    for attempt in (1, 2):
        try:
            resp = client.chat.completions.create(
                model=OPENAI_LEAD_MODEL,
                messages=messages,
                temperature=0.1,
                max_tokens=500,
            )
        except APIStatusError as e:
            logger.error(f"[Leads] ❌ OpenAI API error {e.status_code}: {e.message}")
            return _verdict(f"OpenAI error: {e.status_code}")
        except Exception as e:
            logger.error(f"[Leads] ❌ OpenAI call failed: {e}")
            return _verdict(f"Error: {e}")

        content = resp.choices[0].message.content if resp.choices else None
        if not content:
            return _verdict("No AI response")

        parsed, raw = parse_model_json_output(content)
        if isinstance(parsed, dict):
            return _verdict(
                parsed.get('reason') or 'Unknown',
                is_valid_lead=parsed.get('is_valid_lead') is True,
                name=parsed.get('name') or None,
                phone_number=parsed.get('phone_number') or None,
                email=parsed.get('email') or None,
                confidence=parsed.get('confidence') or 0,
            )
        logger.warning(f"[Leads] ⚠️ Unparseable AI response (attempt {attempt}): {(raw or '')[:200]}")

    return _verdict("Failed to parse AI response")


def build_transcript(messages: List[Dict[str, Any]], prefix: Optional[str] = None) -> str:
    transcript = '\n'.join(f"{m.get('role')}: {m.get('content')}" for m in messages)
    if prefix:
        transcript = f"{prefix}\n\n{transcript}"
    return transcript


def _conversation_sql(source: Dict[str, Any], where: str, order_limit: str = '') -> str:
    return f"""
        SELECT c.id, c.{source['agent_fk']} AS agent_id, c.{source['occurred_column']} AS occurred_at,
               c.lead_analyzed_at, a.name AS agent_name, a.user_id AS agent_user_id{source['extra']}
        FROM {source['conversation_table']} c
        JOIN {source['agent_table']} a ON a.id = c.{source['agent_fk']}
        WHERE {where}
        {order_limit}
    """


def _load_agent_ids(conn, source: Dict[str, Any], user_id: Optional[str], customer_id: Optional[str]) -> List[str]:
    if customer_id:
        rows = fetch_all(
            conn,
            f"SELECT {source['assignment_fk']} AS id FROM {source['assignment_table']} WHERE customer_id = %s",
            (customer_id,),
        )
    else:
        rows = fetch_all(conn, f"SELECT id FROM {source['agent_table']} WHERE user_id = %s", (user_id,))
    return [row['id'] for row in rows]


def _additional_data(conn, source_type: str, conv: Dict[str, Any], verdict: Dict[str, Any]) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if source_type == 'chatbot':
        params = fetch_all(
            conn,
            "SELECT parameter_name, parameter_value FROM conversation_parameters WHERE conversation_id = %s",
            (conv['id'],),
        )
        for param in params:
            if param.get('parameter_value') and param['parameter_name'] not in CONTACT_PARAMETERS:
                data[param['parameter_name']] = param['parameter_value']
    elif source_type == 'voice':
        data['status'] = conv.get('status')
        data['duration_seconds'] = str(conv.get('duration_seconds') or 0)
    elif source_type == 'whatsapp':
        if conv.get('summary'):
            data['summary'] = conv['summary']
        if conv.get('sentiment'):
            data['sentiment'] = conv['sentiment']
    data['ai_confidence'] = str(verdict.get('confidence'))
    data['ai_reason'] = verdict.get('reason')
    return data


def _process_conversations(conn, source_type: str, conversations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Analyze conversations in batches of BATCH_SIZE and return lead rows.

    Transcripts are read and conversations stamped on the calling thread;
    only the OpenAI calls of a batch run concurrently.
    """
    source = SOURCES[source_type]
    leads: List[Dict[str, Any]] = []

    for start in range(0, len(conversations), BATCH_SIZE):
        batch = conversations[start:start + BATCH_SIZE]
        pending = []
        with conn:
            for conv in batch:
                messages = fetch_all(conn, source['messages_sql'], (conv['id'],))
                execute(
                    conn,
                    f"UPDATE {source['conversation_table']} SET lead_analyzed_at = now() WHERE id = %s",
                    (conv['id'],),
                )
                if not messages:
                    continue
                prefix = None
                if source['phone_prefix'] and conv.get('phone_number'):
                    prefix = f"[{source['phone_prefix']}: {conv['phone_number']}]"
                pending.append((conv, build_transcript(messages, prefix)))

        if not pending:
            continue

        with ThreadPoolExecutor(max_workers=BATCH_SIZE) as executor:
            verdicts = list(executor.map(analyze_transcript_for_lead, [t for _, t in pending]))

        with conn:
            for (conv, _), verdict in zip(pending, verdicts):
                if not (verdict['is_valid_lead'] and verdict['name'] and verdict['phone_number']):
                    continue
                leads.append({
                    'source_type': source_type,
                    'source_id': conv['agent_id'],
                    'source_name': conv.get('agent_name') or source['default_name'],
                    'conversation_id': conv['id'],
                    'phone_number': verdict['phone_number'],
                    'email': verdict['email'],
                    'name': verdict['name'],
                    'additional_data': _additional_data(conn, source_type, conv, verdict),
                    'extracted_at': conv.get('occurred_at'),
                    'user_id': conv.get('agent_user_id'),
                })

    logger.info(f"[Leads] {source_type}: {len(conversations)} analyzed, {len(leads)} valid leads")
    return leads


def save_leads(conn, leads: List[Dict[str, Any]]) -> None:
    with conn:
        for lead in leads:
            execute(
                conn,
                """
                INSERT INTO leads
                    (source_type, source_id, source_name, conversation_id, phone_number, email, name,
                     additional_data, extracted_at, user_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (conversation_id) DO UPDATE SET
                    source_type = EXCLUDED.source_type,
                    source_id = EXCLUDED.source_id,
                    source_name = EXCLUDED.source_name,
                    phone_number = EXCLUDED.phone_number,
                    email = EXCLUDED.email,
                    name = EXCLUDED.name,
                    additional_data = EXCLUDED.additional_data,
                    extracted_at = EXCLUDED.extracted_at,
                    user_id = EXCLUDED.user_id
                """,
                (lead['source_type'], lead['source_id'], lead['source_name'], lead['conversation_id'],
                 lead['phone_number'], lead['email'], lead['name'], as_json(lead['additional_data']),
                 lead['extracted_at'], lead['user_id']),
            )


def extract_leads(user_id: Optional[str] = None, customer_id: Optional[str] = None,
                  source_type: Optional[str] = None, force_reanalyze: bool = False) -> Dict[str, Any]:
    """
    Extract leads for one admin (every agent they own) or one customer
    (only the agents assigned to them).
    """
    source_types = [source_type] if source_type else list(SOURCES)
    all_leads: List[Dict[str, Any]] = []
    total_processed = 0
    skipped = 0

    conn = get_db_connection()
    try:
        for kind in source_types:
            source = SOURCES.get(kind)
            if source is None:
                logger.warning(f"[Leads] ⚠️ Unknown source type {kind}")
                continue

            with conn:
                agent_ids = _load_agent_ids(conn, source, user_id, customer_id)
                if not agent_ids:
                    continue
                where = f"c.{source['agent_fk']} = ANY(%s)"
                rows = fetch_all(conn, _conversation_sql(source, where), (agent_ids,))

            to_process = rows if force_reanalyze else [r for r in rows if not r.get('lead_analyzed_at')]
            skipped += len(rows) - len(to_process)
            total_processed += len(to_process)
            all_leads.extend(_process_conversations(conn, kind, to_process))

        if all_leads:
            save_leads(conn, all_leads)
    finally:
        conn.close()

    valid = len(all_leads)
    if skipped > 0:
        message = (f"Analyzed {total_processed} new conversations ({skipped} already analyzed), "
                   f"found {valid} valid leads")
    else:
        message = f"Analyzed {total_processed} conversations, found {valid} valid leads"

    logger.info(f"[Leads] ✅ {message}")
    return {
        'success': True,
        'leads_extracted': valid,
        'total_processed': total_processed,
        'skipped_already_analyzed': skipped,
        'valid_leads_found': valid,
        'message': message,
    }


@app.task
def extract_leads_cron():
    """Sweep every source for conversations that were never analyzed, newest first."""
    start_ts = time.time()
    by_source: Dict[str, Dict[str, int]] = {}
    all_leads: List[Dict[str, Any]] = []

    conn = get_db_connection()
    try:
        for kind, source in SOURCES.items():
            order_limit = f"ORDER BY c.{source['occurred_column']} DESC LIMIT {CRON_LIMIT_PER_SOURCE}"
            try:
                with conn:
                    rows = fetch_all(conn, _conversation_sql(source, "c.lead_analyzed_at IS NULL", order_limit))
                leads = _process_conversations(conn, kind, rows)
            except Exception as e:
                logger.error(f"[Leads] ❌ Cron sweep failed for {kind}: {e}")
                by_source[kind] = {'processed': 0, 'valid': 0, 'error': str(e)}
                continue
            by_source[kind] = {'processed': len(rows), 'valid': len(leads)}
            all_leads.extend(leads)

        if all_leads:
            save_leads(conn, all_leads)
    finally:
        conn.close()

    summary = {
        'totalAnalyzed': sum(s['processed'] for s in by_source.values()),
        'validLeadsExtracted': len(all_leads),
        'durationMs': int((time.time() - start_ts) * 1000),
        'bySource': by_source,
    }
    logger.info(f"[Leads] ✅ Cron sweep done: {summary}")
    return {'success': True, 'summary': summary}
