"""
WhatsApp agents hosted on ElevenLabs Conversational AI.

Agents and conversations are mirrored into whatsapp_agents,
whatsapp_conversations and whatsapp_messages so customers can browse them
without an ElevenLabs key. The local ids are the ElevenLabs ids.
"""

from dotenv import load_dotenv
load_dotenv()

from tasks.celery_app import app
from celery.utils.log import get_task_logger

import os
import redis
import requests
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Tuple

from tasks.utils import elevenlabs_client
from tasks.utils.db import get_db_connection, fetch_all, fetch_one, execute, as_json
from tasks.utils.errors import HandlerError

logger = get_task_logger(__name__)

REDIS_URL = os.getenv("REDIS_URL")

# Redis key prefix for sync tracking
SYNC_REDIS_KEY_PREFIX = "whatsapp_sync:last_sync"
SYNC_REDIS_TTL = 15552000  # 180 days in seconds


def get_redis_client():
    """Get Redis client for sync tracking."""
    return redis.Redis.from_url(REDIS_URL, decode_responses=True)


def get_last_sync_time(user_id: str) -> Optional[datetime]:
    """
    Get last sync timestamp from Redis cache.

    Args:
        user_id: Owner of the ElevenLabs connection

    Returns:
        Last sync datetime in UTC (or None if not cached)
    """
    try:
        last_sync_str = get_redis_client().get(f"{SYNC_REDIS_KEY_PREFIX}:{user_id}")
        if last_sync_str:
            return datetime.fromisoformat(str(last_sync_str))
        return None
    except Exception as e:
        logger.warning(f"[WhatsApp] Failed to read last sync time from Redis: {e}")
        return None


def update_last_sync_time(user_id: str, sync_time: datetime) -> None:
    try:
        get_redis_client().setex(f"{SYNC_REDIS_KEY_PREFIX}:{user_id}", SYNC_REDIS_TTL, sync_time.isoformat())
        logger.info(f"[WhatsApp] Updated last sync time for user {user_id}: {sync_time.isoformat()}")
    except Exception as e:
        logger.warning(f"[WhatsApp] Failed to update last sync time in Redis: {e}")


def _unix_to_datetime(seconds: Optional[float]) -> Optional[datetime]:
    if not seconds:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _dig(data: Dict[str, Any], *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def conversation_phone_number(detail: Dict[str, Any]) -> Optional[str]:
    """Caller number from a conversation detail; ElevenLabs puts it in a different place per channel."""
    candidates = (
        ('metadata', 'whatsapp', 'whatsapp_user_id'),
        ('conversation_initiation_client_data', 'dynamic_variables', 'system__caller_id'),
        ('metadata', 'phone_number'),
        ('metadata', 'caller_id'),
        ('metadata', 'from'),
        ('call_metadata', 'from_number'),
        ('call_metadata', 'caller_id'),
        ('call_metadata', 'phone_number'),
        ('conversation_initiation_client_data', 'phone_number'),
        ('conversation_initiation_client_data', 'dynamic_variables', 'phone_number'),
        ('analysis', 'data_collection', 'phone_number', 'value'),
    )
    for path in candidates:
        value = _dig(detail, *path)
        if value:
            return str(value)
    return None


def message_rows(conversation_id: str, transcript: List[Dict[str, Any]], started_at: datetime) -> List[Dict[str, Any]]:
    rows = []
    for i, msg in enumerate(transcript or []):
        content = msg.get('message') or msg.get('text') or msg.get('content') or ''
        if not content.strip():
            continue
        offset = msg.get('time_in_call_secs')
        rows.append({
            'id': f"{conversation_id}_{i}_{offset or 0}",
            'conversation_id': conversation_id,
            'role': 'assistant' if msg.get('role') == 'agent' else (msg.get('role') or 'unknown'),
            'content': content,
            'timestamp': started_at + timedelta(seconds=offset) if offset else started_at,
            'metadata': {'time_in_call_secs': offset, 'original_role': msg.get('role')},
        })
    return rows


def _active_connection(conn, user_id: str) -> Optional[Dict[str, Any]]:
    return fetch_one(
        conn,
        "SELECT * FROM elevenlabs_connections WHERE user_id = %s AND is_active = true LIMIT 1",
        (user_id,),
    )


def _require_connection(user_id: str) -> Dict[str, Any]:
    conn = get_db_connection()
    try:
        with conn:
            connection = _active_connection(conn, user_id)
    finally:
        conn.close()
    if not connection:
        raise HandlerError("No active ElevenLabs connection found", 404, needsConnection=True)
    return connection


def _upsert_conversation(conn, conv: Dict[str, Any], agent_id: str) -> datetime:
    started_at = _unix_to_datetime(conv.get('start_time_unix_secs')) or datetime.now(timezone.utc)
    analysis = conv.get('analysis') or {}
    execute(
        conn,
        """
        INSERT INTO whatsapp_conversations (id, agent_id, status, started_at, ended_at, summary, sentiment)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET
            agent_id = EXCLUDED.agent_id,
            status = EXCLUDED.status,
            started_at = EXCLUDED.started_at,
            ended_at = EXCLUDED.ended_at,
            summary = EXCLUDED.summary,
            sentiment = EXCLUDED.sentiment
        """,
        (conv['conversation_id'], agent_id, conv.get('status') or 'unknown', started_at,
         _unix_to_datetime(conv.get('end_time_unix_secs')), analysis.get('summary'),
         analysis.get('user_sentiment')),
    )
    return started_at


def sync_agent_conversations(conn, api_key: str, agent_id: str,
                             last_sync: Optional[datetime] = None) -> Tuple[int, int]:
    """
    Mirror one agent's conversations and their transcripts.

    Transcripts are written once per conversation. Conversations that started
    before `last_sync` and already have a phone number and messages skip the
    detail fetch.

    Returns:
        (conversations synced, messages inserted)
    """
    conversations = elevenlabs_client.list_conversations(api_key, agent_id)
    synced = 0
    inserted = 0

    for conv in conversations:
        conversation_id = conv.get('conversation_id')
        if not conversation_id:
            continue

        try:
            with conn:
                started_at = _upsert_conversation(conn, conv, agent_id)
                state = fetch_one(
                    conn,
                    """
                    SELECT c.phone_number,
                           EXISTS (SELECT 1 FROM whatsapp_messages m WHERE m.conversation_id = c.id) AS has_messages
                    FROM whatsapp_conversations c WHERE c.id = %s
                    """,
                    (conversation_id,),
                ) or {}
            synced += 1
        except Exception as e:
            logger.error(f"[WhatsApp] ❌ Error upserting conversation {conversation_id}: {e}")
            continue

        if last_sync and state.get('has_messages') and state.get('phone_number') and started_at < last_sync:
            continue

        try:
            detail = elevenlabs_client.get_conversation_details(api_key, conversation_id)
        except requests.RequestException as e:
            logger.error(f"[WhatsApp] ❌ Error fetching conversation details for {conversation_id}: {e}")
            continue

        with conn:
            phone_number = conversation_phone_number(detail)
            if phone_number:
                execute(conn, "UPDATE whatsapp_conversations SET phone_number = %s WHERE id = %s",
                        (phone_number, conversation_id))

            if not state.get('has_messages'):
                for row in message_rows(conversation_id, detail.get('transcript') or [], started_at):
                    execute(
                        conn,
                        """
                        INSERT INTO whatsapp_messages (id, conversation_id, role, content, timestamp, metadata)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        ON CONFLICT (id) DO UPDATE SET content = EXCLUDED.content
                        """,
                        (row['id'], row['conversation_id'], row['role'], row['content'], row['timestamp'],
                         as_json(row['metadata'])),
                    )
                    inserted += 1

    return synced, inserted


def sync_whatsapp_agents(user_id: str) -> Dict[str, Any]:
    connection = _require_connection(user_id)
    api_key = connection['api_key']

    try:
        agents = elevenlabs_client.list_agents(api_key)
    except requests.RequestException:
        raise HandlerError("Failed to fetch agents from ElevenLabs", 500)

    try:
        phone_map = elevenlabs_client.build_agent_phone_map(elevenlabs_client.list_phone_numbers(api_key))
    except requests.RequestException as e:
        logger.warning(f"[WhatsApp] ⚠️ Could not load phone numbers: {e}")
        phone_map = {}

    synced = 0
    conn = get_db_connection()
    try:
        for agent in agents:
            try:
                with conn:
                    execute(
                        conn,
                        """
                        INSERT INTO whatsapp_agents (id, user_id, name, phone_number, status)
                        VALUES (%s, %s, %s, %s, 'active')
                        ON CONFLICT (id) DO UPDATE SET
                            user_id = EXCLUDED.user_id,
                            name = EXCLUDED.name,
                            phone_number = EXCLUDED.phone_number,
                            status = EXCLUDED.status
                        """,
                        (agent['agent_id'], user_id, agent.get('name') or 'Unnamed Agent',
                         phone_map.get(agent['agent_id'])),
                    )
                synced += 1
            except Exception as e:
                logger.error(f"[WhatsApp] ❌ Error upserting agent {agent.get('agent_id')}: {e}")
    finally:
        conn.close()

    logger.info(f"[WhatsApp] ✅ Synced {synced}/{len(agents)} agents for user {user_id}")
    return {
        'success': True,
        'count': synced,
        'agents': [
            {'id': a['agent_id'], 'name': a.get('name'), 'phone_number': phone_map.get(a['agent_id'])}
            for a in agents
        ],
    }


@app.task
def sync_whatsapp_conversations(user_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Pull conversations for every WhatsApp agent of every active ElevenLabs
    connection (or only `user_id`'s) into the local mirror.
    """
    conn = get_db_connection()
    try:
        with conn:
            if user_id:
                connections = fetch_all(
                    conn, "SELECT * FROM elevenlabs_connections WHERE is_active = true AND user_id = %s", (user_id,))
            else:
                connections = fetch_all(conn, "SELECT * FROM elevenlabs_connections WHERE is_active = true")

        if not connections:
            return {'success': True, 'message': 'No active connections'}

        total_synced = 0
        messages_synced = 0
        for connection in connections:
            owner = connection['user_id']
            sync_started = datetime.now(timezone.utc)
            last_sync = get_last_sync_time(owner)
            failed = False

            with conn:
                agents = fetch_all(conn, "SELECT id FROM whatsapp_agents WHERE user_id = %s", (owner,))

            for agent in agents:
                try:
                    synced, inserted = sync_agent_conversations(conn, connection['api_key'], agent['id'], last_sync)
                    total_synced += synced
                    messages_synced += inserted
                except Exception as e:
                    failed = True
                    logger.error(f"[WhatsApp] ❌ Error processing agent {agent['id']}: {e}")

            if not failed:
                update_last_sync_time(owner, sync_started)
    finally:
        conn.close()

    logger.info(f"[WhatsApp] ✅ Synced {total_synced} conversations and {messages_synced} messages")
    return {
        'success': True,
        'synced': total_synced,
        'messages': messages_synced,
        'message': f"Synced {total_synced} conversations and {messages_synced} messages",
    }


def agent_config(agent: Dict[str, Any], phone_number: Optional[str]) -> Dict[str, Any]:
    conversation_config = agent.get('conversation_config') or {}
    agent_section = conversation_config.get('agent') or {}
    prompt = agent_section.get('prompt') or {}
    tts = conversation_config.get('tts') or {}
    return {
        'agent_id': agent.get('agent_id'),
        'name': agent.get('name'),
        'phone_number': phone_number,
        'conversation_config': conversation_config,
        'metadata': agent.get('metadata') or {},
        'platform_settings': agent.get('platform_settings') or {},
        'system_prompt': prompt.get('prompt') or '',
        'first_message': agent_section.get('first_message') or '',
        'language': agent_section.get('language') or 'en',
        'voice_id': tts.get('voice_id') or '',
        'model_id': tts.get('model_id') or '',
        'llm_model': prompt.get('llm') or '',
        'temperature': prompt['temperature'] if prompt.get('temperature') is not None else 0.7,
        'max_tokens': prompt['max_tokens'] if prompt.get('max_tokens') is not None else -1,
        'tools': prompt.get('tools') or [],
        'data_collection': prompt.get('data_collection') or {},
        'max_duration_seconds': (conversation_config.get('conversation') or {}).get('max_duration_seconds'),
    }


def get_whatsapp_agent(user_id: str, agent_id: str) -> Dict[str, Any]:
    if not agent_id:
        raise HandlerError("Agent ID is required")

    connection = _require_connection(user_id)
    api_key = connection['api_key']

    try:
        agent = elevenlabs_client.get_agent_config(api_key, agent_id)
    except requests.RequestException:
        raise HandlerError("Failed to fetch agent from ElevenLabs", 500)

    phone_number = None
    try:
        for phone in elevenlabs_client.list_phone_numbers(api_key):
            if elevenlabs_client.phone_number_agent_id(phone) == agent_id:
                phone_number = elevenlabs_client.phone_number_value(phone)
                break
    except requests.RequestException as e:
        logger.warning(f"[WhatsApp] ⚠️ Could not load phone numbers: {e}")

    conversations = []
    conn = get_db_connection()
    try:
        sync_agent_conversations(conn, api_key, agent_id)
        with conn:
            conversations = fetch_all(
                conn,
                "SELECT * FROM whatsapp_conversations WHERE agent_id = %s ORDER BY started_at DESC",
                (agent_id,),
            )
    except requests.RequestException as e:
        logger.warning(f"[WhatsApp] ⚠️ Conversation refresh for agent {agent_id} failed: {e}")
    finally:
        conn.close()

    return {'success': True, 'agent': agent_config(agent, phone_number), 'conversations': conversations, 'raw': agent}


# update key -> path inside conversation_config
AGENT_UPDATE_PATHS = {
    'system_prompt': ('agent', 'prompt', 'prompt'),
    'first_message': ('agent', 'first_message'),
    'language': ('agent', 'language'),
    'llm_model': ('agent', 'prompt', 'llm'),
    'temperature': ('agent', 'prompt', 'temperature'),
    'max_tokens': ('agent', 'prompt', 'max_tokens'),
    'voice_id': ('tts', 'voice_id'),
    'model_id': ('tts', 'model_id'),
    'max_duration_seconds': ('conversation', 'max_duration_seconds'),
}


def build_agent_update(current: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Merge flat editor fields into the agent's nested conversation_config."""
    conversation_config = current.get('conversation_config') or {}
    payload = {'conversation_config': conversation_config}
    if 'name' in updates:
        payload['name'] = updates['name']
    for key, path in AGENT_UPDATE_PATHS.items():
        if key not in updates:
            continue
        node = conversation_config
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = updates[key]
    return payload


def update_whatsapp_agent(user_id: str, agent_id: str, updates: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not agent_id:
        raise HandlerError("Agent ID is required")
    updates = updates or {}

    connection = _require_connection(user_id)
    api_key = connection['api_key']

    try:
        current = elevenlabs_client.get_agent_config(api_key, agent_id)
    except requests.RequestException:
        raise HandlerError("Failed to fetch current agent config", 500)

    try:
        updated = elevenlabs_client.patch_agent(api_key, agent_id, build_agent_update(current, updates))
    except requests.RequestException as e:
        raise HandlerError(f"Failed to update agent: {e}", 500)

    conn = get_db_connection()
    try:
        with conn:
            execute(
                conn,
                "UPDATE whatsapp_agents SET name = %s, updated_at = now() WHERE id = %s AND user_id = %s",
                (updates.get('name') or current.get('name'), agent_id, user_id),
            )
    finally:
        conn.close()

    return {'success': True, 'agent': updated}


def get_whatsapp_conversation(user_id: str, conversation_id: str) -> Dict[str, Any]:
    if not conversation_id:
        raise HandlerError("Conversation ID is required")

    connection = _require_connection(user_id)
    try:
        data = elevenlabs_client.get_conversation_details(connection['api_key'], conversation_id)
    except requests.RequestException:
        raise HandlerError("Failed to fetch conversation from ElevenLabs", 500)

    analysis = data.get('analysis') or {}
    return {
        'success': True,
        'conversation': {
            'id': data.get('conversation_id'),
            'agent_id': data.get('agent_id'),
            'status': data.get('status'),
            'start_time': data.get('start_time_unix_secs'),
            'end_time': data.get('end_time_unix_secs'),
            'duration_seconds': data.get('call_duration_secs'),
            'transcript': data.get('transcript') or [],
            'analysis': analysis,
            'metadata': data.get('metadata') or {},
            'summary': analysis.get('summary'),
            'sentiment': analysis.get('user_sentiment'),
            'data_collected': analysis.get('data_collection_results') or {},
        },
        'raw': data,
    }


def validate_elevenlabs_connection(api_key: str) -> Dict[str, Any]:
    if not api_key:
        raise HandlerError("API key is required", valid=False)

    resp = elevenlabs_client.get_user(api_key)
    if resp.status_code == 401:
        return {'valid': False, 'error': 'Invalid API key'}
    if not resp.ok:
        logger.error(f"[WhatsApp] ❌ Key validation failed: HTTP {resp.status_code} {resp.text[:300]}")
        raise HandlerError("Failed to validate API key", 500, valid=False)

    user = resp.json()
    return {
        'valid': True,
        'userName': user.get('first_name') or 'User',
        'subscription': (user.get('subscription') or {}).get('tier') or 'free',
    }
