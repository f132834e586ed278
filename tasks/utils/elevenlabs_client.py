"""
ElevenLabs API client for WhatsApp conversational agents.

This module wraps the ElevenLabs Conversational AI endpoints used to list
agents and their phone numbers, read and patch agent configuration, and pull
conversation history. Each tenant brings their own key, stored in
elevenlabs_connections.api_key, so every call takes the key explicitly.
"""

import requests
from typing import Dict, Any, List, Optional
from celery.utils.log import get_task_logger

logger = get_task_logger(__name__)

# ElevenLabs API Configuration
ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1"
ELEVENLABS_BASE_URL = f"{ELEVENLABS_API_URL}/convai"


def _get_headers(api_key: str) -> Dict[str, str]:
    """Get headers for ElevenLabs API requests."""
    if not api_key:
        error_msg = "ElevenLabs API key is missing - Cannot make API calls"
        logger.error(f"[ElevenLabs] ❌ {error_msg}")
        raise RuntimeError(error_msg)

    return {
        "xi-api-key": api_key,
        "Content-Type": "application/json",
    }


def _get(url: str, api_key: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    try:
        response = requests.get(url, headers=_get_headers(api_key), params=params, timeout=30)
        response.raise_for_status()
        return response.json()
    except requests.HTTPError as e:
        error_msg = f"ElevenLabs API error (HTTP {e.response.status_code}): {e.response.text[:500]}"
        logger.error(f"[ElevenLabs] ❌ GET {url} failed: {error_msg}")
        raise requests.HTTPError(error_msg, response=e.response) from e
    except requests.RequestException as e:
        logger.error(f"[ElevenLabs] ❌ GET {url} request failed: {e}")
        raise


def list_agents(api_key: str) -> List[Dict[str, Any]]:
    """
    List every conversational agent visible to the key.

    Returns:
        List of agent summaries (agent_id, name, ...)
    """
    data = _get(f"{ELEVENLABS_BASE_URL}/agents", api_key)
    agents = data.get('agents', []) if isinstance(data, dict) else []
    logger.info(f"[ElevenLabs] Found {len(agents)} agents")
    return agents


def list_phone_numbers(api_key: str) -> List[Dict[str, Any]]:
    """List phone numbers; the API answers with either a bare list or {phone_numbers: [...]}."""
    data = _get(f"{ELEVENLABS_BASE_URL}/phone-numbers", api_key)
    if isinstance(data, list):
        return data
    return data.get('phone_numbers') or []


def phone_number_agent_id(phone: Dict[str, Any]) -> Optional[str]:
    return (
        phone.get('agent_id')
        or (phone.get('assigned_agent') or {}).get('agent_id')
        or (phone.get('assignedAgent') or {}).get('agent_id')
        or phone.get('assigned_agent_id')
    )


def phone_number_value(phone: Dict[str, Any]) -> Optional[str]:
    return phone.get('phone_number') or phone.get('phoneNumber') or phone.get('number') or phone.get('e164')


def build_agent_phone_map(phone_numbers: List[Dict[str, Any]]) -> Dict[str, str]:
    """Map agent_id -> phone number for every number that has an agent assigned."""
    phone_map = {}
    for phone in phone_numbers:
        agent_id = phone_number_agent_id(phone)
        number = phone_number_value(phone)
        if agent_id and number:
            phone_map[agent_id] = number
    return phone_map


def get_agent_config(api_key: str, agent_id: str) -> Dict[str, Any]:
    """
    Fetch the current configuration of an ElevenLabs agent.

    Args:
        api_key: Tenant ElevenLabs key
        agent_id: ElevenLabs agent ID

    Returns:
        Full agent configuration as a dictionary

    Raises:
        requests.HTTPError: If API call fails
    """
    return _get(f"{ELEVENLABS_BASE_URL}/agents/{agent_id}", api_key)


def patch_agent(api_key: str, agent_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    PATCH an agent (name and/or conversation_config).

    Returns:
        Updated agent configuration

    Raises:
        requests.HTTPError: If API call fails
    """
    url = f"{ELEVENLABS_BASE_URL}/agents/{agent_id}"
    logger.info(f"[ElevenLabs] 📤 PATCH {url} keys={sorted(payload.keys())}")

    try:
        response = requests.patch(url, headers=_get_headers(api_key), json=payload, timeout=30)
        response.raise_for_status()
    except requests.HTTPError as e:
        error_msg = f"Failed to update agent {agent_id}: HTTP {e.response.status_code} - {e.response.text[:500]}"
        logger.error(f"[ElevenLabs] ❌ API CALL FAILED: {error_msg}")
        raise requests.HTTPError(error_msg, response=e.response) from e

    logger.info(f"[ElevenLabs] ✅ Agent {agent_id} updated")
    return response.json()


def list_conversations(api_key: str, agent_id: str) -> List[Dict[str, Any]]:
    """
    List conversations for an agent.

    Returns:
        List of conversation summaries (conversation_id, status,
        start_time_unix_secs, analysis, ...)
    """
    data = _get(f"{ELEVENLABS_BASE_URL}/conversations", api_key, params={'agent_id': agent_id})
    conversations = data.get('conversations', [])
    logger.info(f"[ElevenLabs] Agent {agent_id}: {len(conversations)} conversations")
    return conversations


def get_conversation_details(api_key: str, conversation_id: str) -> Dict[str, Any]:
    """
    Get full conversation details including transcript, analysis and metadata.

    Raises:
        requests.HTTPError: If API call fails
    """
    return _get(f"{ELEVENLABS_BASE_URL}/conversations/{conversation_id}", api_key)


def get_user(api_key: str) -> requests.Response:
    """Call GET /v1/user and hand back the raw response so callers can inspect 401s."""
    return requests.get(f"{ELEVENLABS_API_URL}/user", headers=_get_headers(api_key), timeout=30)
