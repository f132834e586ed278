"""
Vapi API client for voice assistants and call history.

Every function takes the tenant's own Vapi private key, which lives in
voice_connections.api_key.
"""

import requests
from typing import Dict, Any, List, Optional
from celery.utils.log import get_task_logger

logger = get_task_logger(__name__)

VAPI_BASE_URL = "https://api.vapi.ai"
VAPI_TIMEOUT = 30
CALL_PAGE_LIMIT = 100
MAX_CALL_PAGES = 500


def _get_headers(api_key: str) -> Dict[str, str]:
    if not api_key:
        raise RuntimeError("Vapi API key is missing")
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def _request(method: str, path: str, api_key: str, **kwargs) -> Any:
    url = f"{VAPI_BASE_URL}{path}"
    try:
        response = requests.request(method, url, headers=_get_headers(api_key), timeout=VAPI_TIMEOUT, **kwargs)
        response.raise_for_status()
    except requests.HTTPError as e:
        status = e.response.status_code if e.response is not None else None
        body = e.response.text[:500] if e.response is not None else ''
        logger.error(f"[Vapi] ❌ {method} {path} failed ({status}): {body}")
        raise RuntimeError(f"Vapi API error {status} on {method} {path}") from e
    except requests.RequestException as e:
        logger.error(f"[Vapi] ❌ {method} {path} request error: {e}")
        raise RuntimeError(f"Vapi request failed: {e}") from e
    return response.json() if response.content else {}


def list_assistants(api_key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    params = {"limit": limit} if limit else None
    return _request("GET", "/assistant", api_key, params=params)


def get_assistant(api_key: str, assistant_id: str) -> Dict[str, Any]:
    return _request("GET", f"/assistant/{assistant_id}", api_key)


def update_assistant(api_key: str, assistant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(f"[Vapi] ✏️ Updating assistant {assistant_id} fields: {sorted(payload.keys())}")
    return _request("PATCH", f"/assistant/{assistant_id}", api_key, json=payload)


def list_calls_page(api_key: str, assistant_id: str, cursor: Optional[str] = None,
                    limit: int = CALL_PAGE_LIMIT) -> Any:
    params = {"assistantId": assistant_id, "limit": limit}
    if cursor:
        params["cursor"] = cursor
    return _request("GET", "/call", api_key, params=params)


def list_all_calls(api_key: str, assistant_id: str) -> List[Dict[str, Any]]:
    """
    Page through every call for an assistant.

    Vapi answers either with a bare list (keep going while the page is full,
    using the last call id as cursor) or with {results, nextCursor}.
    Paging stops when the cursor stops moving or after MAX_CALL_PAGES pages.
    """
    calls: List[Dict[str, Any]] = []
    cursor = None

    for _ in range(MAX_CALL_PAGES):
        page = list_calls_page(api_key, assistant_id, cursor=cursor)
        previous_cursor = cursor

        if isinstance(page, list):
            calls.extend(page)
            if len(page) < CALL_PAGE_LIMIT or not page:
                break
            cursor = page[-1].get("id")
            if not cursor or cursor == previous_cursor:
                break
        elif isinstance(page, dict) and "results" in page:
            calls.extend(page.get("results") or [])
            cursor = page.get("nextCursor")
            if not cursor or cursor == previous_cursor:
                break
        else:
            if isinstance(page, dict) and page.get("id"):
                calls.append(page)
            break
    else:
        logger.warning(f"[Vapi] ⚠️ Stopped paging calls for assistant {assistant_id} after {MAX_CALL_PAGES} pages")

    logger.info(f"[Vapi] 📞 Fetched {len(calls)} calls for assistant {assistant_id}")
    return calls


def check_api_key(api_key: str) -> requests.Response:
    """Probe the key with a one-item assistant listing and hand back the raw response."""
    return requests.get(
        f"{VAPI_BASE_URL}/assistant",
        headers=_get_headers(api_key),
        params={"limit": 1},
        timeout=VAPI_TIMEOUT,
    )
