"""
Firecrawl API client: single-page scrape, site map, and crawl jobs.
"""

import os
import time
import requests
from typing import Dict, Any, List, Optional
from celery.utils.log import get_task_logger

logger = get_task_logger(__name__)

FIRECRAWL_BASE_URL = "https://api.firecrawl.dev/v1"
CRAWL_POLL_INTERVAL_S = 10
CRAWL_MAX_POLLS = 30


class CrawlTimeout(Exception):
    """Raised when a Firecrawl crawl job does not finish within the polling window."""


class CrawlRejected(RuntimeError):
    """Raised when Firecrawl answers a crawl request with a non-OK status."""


def _get_headers() -> Dict[str, str]:
    api_key = os.getenv("FIRECRAWL_API_KEY")
    if not api_key:
        raise RuntimeError("FIRECRAWL_API_KEY not configured")
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def scrape_page(url: str) -> Dict[str, Optional[str]]:
    """
    Scrape one URL to markdown.

    Returns:
        {'content': str | None, 'title': str | None, 'error': str | None}
    """
    try:
        resp = requests.post(
            f"{FIRECRAWL_BASE_URL}/scrape",
            headers=_get_headers(),
            json={"url": url, "formats": ["markdown"], "onlyMainContent": True},
            timeout=60,
        )
        if not resp.ok:
            logger.warning(f"[Firecrawl] ⚠️ Scrape failed for {url}: HTTP {resp.status_code}")
            return {"content": None, "title": None, "error": f"Firecrawl API error: {resp.status_code}"}

        data = resp.json()
        if not data.get("success") or not data.get("data"):
            return {"content": None, "title": None, "error": data.get("error") or "No content returned"}

        page = data["data"]
        return {
            "content": page.get("markdown") or "",
            "title": (page.get("metadata") or {}).get("title") or url,
            "error": None,
        }
    except requests.RequestException as e:
        logger.error(f"[Firecrawl] ❌ Scrape request error for {url}: {e}")
        return {"content": None, "title": None, "error": str(e)}


def map_site(url: str, limit: int = 50) -> List[str]:
    """Return the links Firecrawl finds for a site (empty list on failure)."""
    resp = requests.post(
        f"{FIRECRAWL_BASE_URL}/map",
        headers=_get_headers(),
        json={"url": url, "search": url, "limit": limit},
        timeout=60,
    )
    if not resp.ok:
        logger.warning(f"[Firecrawl] ⚠️ Map failed for {url}: HTTP {resp.status_code}")
        return []
    data = resp.json()
    if not data.get("success"):
        return []
    links = []
    for link in data.get("links") or []:
        if isinstance(link, dict):
            link = link.get("url")
        if link:
            links.append(link)
    return links


def start_crawl(url: str, limit: int, *, max_depth: Optional[int] = None,
                only_main_content: bool = True, formats: Optional[List[str]] = None) -> Dict[str, Any]:
    """POST /crawl. The answer either carries an async job id or the pages inline."""
    scrape_options: Dict[str, Any] = {"onlyMainContent": only_main_content}
    if formats:
        scrape_options["formats"] = formats
    payload: Dict[str, Any] = {"url": url, "limit": limit, "scrapeOptions": scrape_options}
    if max_depth is not None:
        payload["maxDepth"] = max_depth

    resp = requests.post(f"{FIRECRAWL_BASE_URL}/crawl", headers=_get_headers(), json=payload, timeout=60)
    if not resp.ok:
        logger.error(f"[Firecrawl] ❌ Crawl start failed for {url}: HTTP {resp.status_code} {resp.text[:300]}")
        raise CrawlRejected("Failed to crawl website")
    return resp.json()


def wait_for_crawl(job_id: str, *, poll_interval_s: float = CRAWL_POLL_INTERVAL_S,
                   max_polls: int = CRAWL_MAX_POLLS) -> List[Dict[str, Any]]:
    """
    Poll a crawl job until it completes.

    Returns the crawled pages. Raises RuntimeError when the job fails and
    CrawlTimeout when it is still running after max_polls checks.
    """
    for attempt in range(1, max_polls + 1):
        resp = requests.get(f"{FIRECRAWL_BASE_URL}/crawl/{job_id}", headers=_get_headers(), timeout=30)
        if resp.ok:
            data = resp.json()
            status = data.get("status")
            logger.info(f"[Firecrawl] Crawl {job_id} poll {attempt}/{max_polls}: {status}")
            if status == "completed":
                return data.get("data") or []
            if status == "failed":
                raise RuntimeError("Crawl failed")
        time.sleep(poll_interval_s)

    raise CrawlTimeout(f"Crawl {job_id} timed out after {max_polls} polls")
