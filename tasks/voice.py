"""
Vapi voice assistants: call ingestion (webhook and on-demand pull), assistant
sync with change tracking, and assistant updates.

The local voice_assistants.id is the Vapi assistant id.
"""

from dotenv import load_dotenv
load_dotenv()

import os
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from celery.utils.log import get_task_logger

from dateutil import parser as date_parser

from tasks.utils import vapi_client
from tasks.utils.db import get_db_connection, fetch_all, fetch_one, execute, as_json
from tasks.utils.errors import HandlerError

logger = get_task_logger(__name__)

VAPI_WEBHOOK_URL = os.getenv("VAPI_WEBHOOK_URL")

TRACKED_FIELDS = (
    'name', 'first_message', 'voice_provider', 'voice_id',
    'model_provider', 'model', 'transcriber_provider', 'phone_number',
)


def _parse_time(value: Any) -> Optional[datetime]:
    """Vapi sends ISO strings for call bounds and epoch milliseconds for message times."""
    if value is None or value == '':
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return date_parser.isoparse(str(value))


def call_duration_seconds(call: Dict[str, Any], use_costs: bool = True) -> int:
    if use_costs:
        for cost in call.get('costs') or []:
            if cost.get('type') == 'call' and cost.get('durationSeconds'):
                return int(round(cost['durationSeconds']))
    started = _parse_time(call.get('startedAt'))
    ended = _parse_time(call.get('endedAt'))
    if started and ended:
        return int(round((ended - started).total_seconds()))
    return 0


def call_phone_number(call: Dict[str, Any]) -> Optional[str]:
    return (call.get('customer') or {}).get('number') or (call.get('phoneNumber') or {}).get('number') or None


def transcript_rows(artifact: Optional[Dict[str, Any]], default_time: Optional[datetime]) -> List[Dict[str, Any]]:
    """User/assistant messages of a call artifact (Vapi calls the assistant 'bot')."""
    rows = []
    for msg in (artifact or {}).get('messages') or []:
        role = 'assistant' if msg.get('role') == 'bot' else msg.get('role')
        if role not in ('user', 'assistant') or not msg.get('message'):
            continue
        rows.append({
            'role': role,
            'content': msg['message'],
            'timestamp': _parse_time(msg.get('time')) or default_time,
        })
    return rows


def _first_assigned_customer(conn, assistant_id: str) -> Optional[str]:
    row = fetch_one(
        conn,
        "SELECT customer_id FROM customer_assistant_assignments WHERE assistant_id = %s LIMIT 1",
        (assistant_id,),
    )
    return row['customer_id'] if row else None


def _active_connection(conn, user_id: str, columns: str = 'id, api_key, org_id') -> Optional[Dict[str, Any]]:
    return fetch_one(
        conn,
        f"SELECT {columns} FROM voice_connections WHERE user_id = %s AND is_active = true LIMIT 1",
        (user_id,),
    )


def _upsert_call(conn, call: Dict[str, Any], assistant_id: str, customer_id: Optional[str],
                 duration: int, call_type: str) -> None:
    execute(
        conn,
        """
        INSERT INTO voice_assistant_calls
            (id, assistant_id, customer_id, phone_number, started_at, ended_at, duration_seconds, status, call_type)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET
            assistant_id = EXCLUDED.assistant_id,
            customer_id = EXCLUDED.customer_id,
            phone_number = EXCLUDED.phone_number,
            started_at = EXCLUDED.started_at,
            ended_at = EXCLUDED.ended_at,
            duration_seconds = EXCLUDED.duration_seconds,
            status = EXCLUDED.status,
            call_type = EXCLUDED.call_type
        """,
        (call['id'], assistant_id, customer_id, call_phone_number(call), _parse_time(call.get('startedAt')),
         _parse_time(call.get('endedAt')), duration, call.get('status') or 'completed', call_type),
    )


def handle_vapi_webhook(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Store an end-of-call report. Every other event is acknowledged and ignored."""
    message = (payload or {}).get('message') or {}
    if message.get('type') != 'end-of-call-report':
        return {'received': True}

    call = message.get('call') or {}
    artifact = message.get('artifact') or {}
    assistant_id = call.get('assistantId')

    conn = get_db_connection()
    try:
        with conn:
            assistant = fetch_one(conn, "SELECT user_id FROM voice_assistants WHERE id = %s", (assistant_id,))
            if not assistant:
                logger.info(f"[Vapi] Webhook for unknown assistant {assistant_id}, ignoring")
                return {'received': True}

            customer_id = _first_assigned_customer(conn, assistant_id)
            _upsert_call(conn, call, assistant_id, customer_id, call_duration_seconds(call), 'inbound')

            now = datetime.now(timezone.utc)
            rows = transcript_rows(artifact, now)
            for row in rows:
                execute(
                    conn,
                    "INSERT INTO voice_assistant_transcripts (call_id, role, content, timestamp) VALUES (%s, %s, %s, %s)",
                    (call['id'], row['role'], row['content'], row['timestamp']),
                )
            if artifact.get('recordingUrl'):
                execute(
                    conn,
                    "INSERT INTO voice_assistant_recordings (call_id, recording_url) VALUES (%s, %s)",
                    (call['id'], artifact['recordingUrl']),
                )
    finally:
        conn.close()

    logger.info(f"[Vapi] ✅ Stored call {call.get('id')} for assistant {assistant_id} ({len(rows)} transcript lines)")
    return {'received': True}


def fetch_vapi_calls(user_id: str, assistant_id: str) -> Dict[str, Any]:
    """
    Pull the full call history of an assistant from Vapi with the owner's key.

    The caller may be the owner or one of their customers, so the key is
    looked up through the assistant rather than the caller.
    """
    if not assistant_id:
        raise HandlerError("assistantId is required")

    conn = get_db_connection()
    try:
        with conn:
            assistant = fetch_one(conn, "SELECT user_id, name FROM voice_assistants WHERE id = %s", (assistant_id,))
            if not assistant:
                raise HandlerError("Voice assistant not found", 404)
            connection = _active_connection(conn, assistant['user_id'])
            if not connection:
                raise HandlerError("No active voice connection found for this assistant owner", 404)

        try:
            calls = vapi_client.list_all_calls(connection['api_key'], assistant_id)
        except RuntimeError as e:
            logger.error(f"[Vapi] ❌ Call fetch failed for {assistant_id} (requested by {user_id}): {e}")
            raise HandlerError("Failed to fetch calls from voice service", 500)

        with conn:
            customer_id = _first_assigned_customer(conn, assistant_id)

        synced = 0
        for call in calls:
            try:
                with conn:
                    _upsert_call(conn, call, assistant_id, customer_id,
                                 call_duration_seconds(call, use_costs=False), call.get('type') or 'inbound')
                    artifact = call.get('artifact') or {}
                    for row in transcript_rows(artifact, _parse_time(call.get('startedAt'))):
                        exists = fetch_one(
                            conn,
                            """
                            SELECT id FROM voice_assistant_transcripts
                            WHERE call_id = %s AND content = %s AND role = %s LIMIT 1
                            """,
                            (call['id'], row['content'], row['role']),
                        )
                        if not exists:
                            execute(
                                conn,
                                """
                                INSERT INTO voice_assistant_transcripts (call_id, role, content, timestamp)
                                VALUES (%s, %s, %s, %s)
                                """,
                                (call['id'], row['role'], row['content'], row['timestamp']),
                            )
                    if artifact.get('recordingUrl'):
                        if not fetch_one(conn, "SELECT id FROM voice_assistant_recordings WHERE call_id = %s LIMIT 1",
                                         (call['id'],)):
                            execute(
                                conn,
                                "INSERT INTO voice_assistant_recordings (call_id, recording_url) VALUES (%s, %s)",
                                (call['id'], artifact['recordingUrl']),
                            )
                synced += 1
            except Exception as e:
                logger.error(f"[Vapi] ❌ Failed to store call {call.get('id')}: {e}")
    finally:
        conn.close()

    logger.info(f"[Vapi] ✅ Synced {synced}/{len(calls)} calls for {assistant['name']}")
    return {
        'success': True,
        'totalFromVapi': len(calls),
        'syncedCount': synced,
        'assistantName': assistant['name'],
    }


def assistant_row(assistant: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    """Local voice_assistants columns for a Vapi assistant object."""
    voice = assistant.get('voice') or {}
    model = assistant.get('model') or {}
    transcriber = assistant.get('transcriber') or {}
    return {
        'id': assistant['id'],
        'user_id': user_id,
        'name': assistant.get('name') or 'Unnamed Assistant',
        'first_message': assistant.get('firstMessage'),
        'voice_provider': voice.get('provider'),
        'voice_id': voice.get('voiceId'),
        'model_provider': model.get('provider'),
        'model': model.get('model'),
        'transcriber_provider': transcriber.get('provider'),
        'org_id': assistant.get('orgId'),
        'phone_number': (assistant.get('phoneNumber') or {}).get('number') or assistant.get('phoneNumberId') or None,
        'created_at': assistant.get('createdAt') or datetime.now(timezone.utc).isoformat(),
    }


def changelog_entry(user_id: str, existing: Optional[Dict[str, Any]], row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Describe what a sync changed, or None when nothing tracked changed."""
    base = {'user_id': user_id, 'entity_type': 'voice_assistant', 'entity_id': row['id'], 'source': 'vapi_sync'}
    if existing is None:
        return {
            **base,
            'change_type': 'create',
            'title': f"Assistant synced: {row['name']}",
            'description': f"New voice assistant \"{row['name']}\" synced from Vapi",
            'previous_values': {},
            'new_values': {'name': row['name'], 'model': row['model'], 'voice_provider': row['voice_provider']},
        }

    changes = {f: row[f] for f in TRACKED_FIELDS if existing.get(f) != row[f]}
    if not changes:
        return None
    return {
        **base,
        'change_type': 'update',
        'title': f"Configuration updated: {', '.join(changes)}",
        'description': f"Detected changes from Vapi sync for assistant \"{row['name']}\"",
        'previous_values': {f: existing.get(f) for f in changes},
        'new_values': changes,
    }


def sync_voice_assistants(user_id: str) -> Dict[str, Any]:
    conn = get_db_connection()
    try:
        with conn:
            connection = _active_connection(conn, user_id)
            if not connection:
                raise HandlerError("No active voice connection found", 404)
            existing = {row['id']: row for row in fetch_all(conn, "SELECT * FROM voice_assistants WHERE user_id = %s",
                                                            (user_id,))}

        try:
            assistants = vapi_client.list_assistants(connection['api_key'])
        except RuntimeError:
            raise HandlerError("Failed to fetch assistants from voice service", 500)

        entries = []
        org_id = connection.get('org_id')
        for assistant in assistants:
            if VAPI_WEBHOOK_URL and assistant.get('serverUrl') != VAPI_WEBHOOK_URL:
                try:
                    vapi_client.update_assistant(connection['api_key'], assistant['id'], {'serverUrl': VAPI_WEBHOOK_URL})
                except RuntimeError as e:
                    logger.warning(f"[Vapi] ⚠️ Could not set serverUrl on {assistant['id']}: {e}")

            row = assistant_row(assistant, user_id)
            entry = changelog_entry(user_id, existing.get(row['id']), row)
            if entry:
                entries.append(entry)

            with conn:
                execute(
                    conn,
                    """
                    INSERT INTO voice_assistants
                        (id, user_id, name, first_message, voice_provider, voice_id, model_provider, model,
                         transcriber_provider, org_id, phone_number, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, now())
                    ON CONFLICT (id) DO UPDATE SET
                        user_id = EXCLUDED.user_id,
                        name = EXCLUDED.name,
                        first_message = EXCLUDED.first_message,
                        voice_provider = EXCLUDED.voice_provider,
                        voice_id = EXCLUDED.voice_id,
                        model_provider = EXCLUDED.model_provider,
                        model = EXCLUDED.model,
                        transcriber_provider = EXCLUDED.transcriber_provider,
                        org_id = EXCLUDED.org_id,
                        phone_number = EXCLUDED.phone_number,
                        updated_at = now()
                    """,
                    (row['id'], user_id, row['name'], row['first_message'], row['voice_provider'], row['voice_id'],
                     row['model_provider'], row['model'], row['transcriber_provider'], row['org_id'],
                     row['phone_number'], row['created_at']),
                )
                if row['org_id'] and not org_id:
                    execute(conn, "UPDATE voice_connections SET org_id = %s WHERE id = %s",
                            (row['org_id'], connection['id']))
                    org_id = row['org_id']

        if entries:
            try:
                with conn:
                    for entry in entries:
                        execute(
                            conn,
                            """
                            INSERT INTO changelog_entries
                                (user_id, entity_type, entity_id, change_type, title, description,
                                 previous_values, new_values, status, source)
                            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, NULL, %s)
                            """,
                            (entry['user_id'], entry['entity_type'], entry['entity_id'], entry['change_type'],
                             entry['title'], entry['description'], as_json(entry['previous_values']),
                             as_json(entry['new_values']), entry['source']),
                        )
            except Exception as e:
                logger.error(f"[Vapi] ❌ Failed to write changelog entries: {e}")
    finally:
        conn.close()

    logger.info(f"[Vapi] ✅ Synced {len(assistants)} assistants for user {user_id}, {len(entries)} changelog entries")
    return {
        'success': True,
        'count': len(assistants),
        'changelogEntriesCreated': len(entries),
        'assistants': [{'id': a['id'], 'name': a.get('name') or 'Unnamed Assistant'} for a in assistants],
    }


def update_voice_assistant(user_id: str, assistant_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    if not assistant_id or not updates:
        raise HandlerError("Assistant ID and updates are required")

    conn = get_db_connection()
    try:
        with conn:
            connection = _active_connection(conn, user_id)
        if not connection:
            raise HandlerError("No active voice connection found", 404)

        payload = dict(updates)
        if VAPI_WEBHOOK_URL:
            payload['serverUrl'] = VAPI_WEBHOOK_URL
        try:
            updated = vapi_client.update_assistant(connection['api_key'], assistant_id, payload)
        except RuntimeError:
            raise HandlerError("Failed to update assistant", 500)

        row = assistant_row({**updated, 'id': updated.get('id') or assistant_id}, user_id)
        with conn:
            execute(
                conn,
                """
                UPDATE voice_assistants
                SET name = %s, first_message = %s, voice_provider = %s, voice_id = %s, model_provider = %s,
                    model = %s, transcriber_provider = %s, updated_at = now()
                WHERE id = %s AND user_id = %s
                """,
                (row['name'], row['first_message'], row['voice_provider'], row['voice_id'], row['model_provider'],
                 row['model'], row['transcriber_provider'], assistant_id, user_id),
            )
    finally:
        conn.close()

    return {
        'success': True,
        'assistant': {'id': updated.get('id'), 'name': updated.get('name'), 'firstMessage': updated.get('firstMessage')},
    }


def validate_voice_connection(api_key: str) -> Dict[str, Any]:
    if not api_key:
        raise HandlerError("API key is required", valid=False)

    resp = vapi_client.check_api_key(api_key)
    if resp.status_code == 401:
        return {'valid': False, 'error': 'Invalid API key'}
    if not resp.ok:
        logger.error(f"[Vapi] ❌ Key validation failed: HTTP {resp.status_code} {resp.text[:300]}")
        raise HandlerError("Failed to validate API key", 500, valid=False)

    assistants = resp.json()
    return {'valid': True, 'assistantCount': len(assistants) if isinstance(assistants, list) else 0}


def get_vapi_web_token(user_id: str) -> Dict[str, Any]:
    conn = get_db_connection()
    try:
        with conn:
            connection = _active_connection(conn, user_id, 'api_key, public_key, org_name')
    finally:
        conn.close()

    if not connection:
        raise HandlerError(
            "No active voice connection found. Please go to Settings to connect your Vapi account first.",
            404, needsConnection=True,
        )
    if not connection.get('public_key'):
        raise HandlerError(
            "Public key not configured. Please add your Vapi public key in Settings → Voice Connection "
            "to enable testing.",
            400, needsPublicKey=True,
        )
    return {'success': True, 'publicKey': connection['public_key'], 'hasConnection': True}
