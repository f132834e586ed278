"""
Website crawling.

Two flows share the Firecrawl client:
- crawl_website: a chatbot owner crawls their site into chatbots.website_content
  (discover mode lists candidate pages first).
- daily_crawl_urls: the recurring sweep over customer_crawl_urls that pushes
  fresh page content into the system prompt of the linked Vapi assistant.
"""

from dotenv import load_dotenv
load_dotenv()

from tasks.celery_app import app
from celery.utils.log import get_task_logger

import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional
from urllib.parse import urlparse

from dateutil import parser as date_parser

from tasks.utils import firecrawl_client, vapi_client
from tasks.utils.db import get_db_connection, fetch_all, fetch_one, execute
from tasks.utils.errors import HandlerError

logger = get_task_logger(__name__)

FREQUENCY_HOURS = {
    'daily': 24,
    'weekly': 24 * 7,
    'monthly': 24 * 30,
}

KNOWLEDGE_START_MARKER = '<!-- CUSTOMER_CRAWLED_KNOWLEDGE_START -->'
KNOWLEDGE_END_MARKER = '<!-- CUSTOMER_CRAWLED_KNOWLEDGE_END -->'
KNOWLEDGE_HEADING = '## Customer-Provided Knowledge Sources'
KNOWLEDGE_CHARS_PER_SOURCE = 5000

DISCOVER_LIMIT = 50
DEFAULT_CRAWL_LIMIT = 10
DELAY_BETWEEN_URLS_S = 1


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    dt = value if isinstance(value, datetime) else date_parser.isoparse(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def needs_crawl(crawl_url: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """True when a customer crawl URL is due according to its crawl_frequency."""
    last_crawled = _as_datetime(crawl_url.get('last_crawled_at'))
    if last_crawled is None:
        return True

    threshold = FREQUENCY_HOURS.get(crawl_url.get('crawl_frequency'))
    if threshold is None:
        return False

    now = now or datetime.now(timezone.utc)
    hours_since = (now - last_crawled).total_seconds() / 3600
    return hours_since >= threshold


def content_hash(text: str) -> str:
    """32-bit rolling hash (h*31 + c, signed) over UTF-16 code units, in hex, for change detection."""
    data = (text or '').encode('utf-16-le')
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(h, 'x') if h >= 0 else f"-{format(-h, 'x')}"


def build_knowledge_section(results: List[Dict[str, Any]]) -> str:
    return '\n\n'.join(
        f"--- Knowledge from: {r['title']} ({r['url']}) ---\n{r['content'][:KNOWLEDGE_CHARS_PER_SOURCE]}"
        for r in results if r.get('content')
    )


def merge_knowledge_into_prompt(prompt: str, knowledge: str) -> str:
    """Replace the crawled-knowledge block of a system prompt, or append one."""
    block = f"{KNOWLEDGE_START_MARKER}\n\n{KNOWLEDGE_HEADING}\n\n{knowledge}\n\n{KNOWLEDGE_END_MARKER}"
    prompt = prompt or ''
    start = prompt.find(KNOWLEDGE_START_MARKER)
    end = prompt.find(KNOWLEDGE_END_MARKER)
    if start != -1 and end > start:
        return prompt[:start] + block + prompt[end + len(KNOWLEDGE_END_MARKER):]
    return f"{prompt}\n\n{block}"


def update_assistant_knowledge(conn, assistant_id: str, results: List[Dict[str, Any]]) -> bool:
    """
    Push crawled content into a Vapi assistant's system message.

    Returns:
        True when the assistant was patched.
    """
    knowledge = build_knowledge_section(results)
    if not knowledge:
        return False

    with conn:
        assistant = fetch_one(conn, "SELECT user_id, name FROM voice_assistants WHERE id = %s", (assistant_id,))
        if not assistant:
            logger.error(f"[Crawl] ❌ Assistant not found: {assistant_id}")
            return False
        connection = fetch_one(
            conn,
            "SELECT api_key FROM voice_connections WHERE user_id = %s AND is_active = true LIMIT 1",
            (assistant['user_id'],),
        )
    if not connection:
        logger.error(f"[Crawl] ❌ No active voice connection for user {assistant['user_id']}")
        return False

    vapi_assistant = vapi_client.get_assistant(connection['api_key'], assistant_id)
    model = dict(vapi_assistant.get('model') or {})
    messages = list(model.get('messages') or [])

    system_index = next((i for i, m in enumerate(messages) if m.get('role') == 'system'), None)
    if system_index is None:
        messages.insert(0, {'role': 'system', 'content': merge_knowledge_into_prompt('', knowledge)})
    else:
        current = messages[system_index].get('content') or ''
        messages[system_index] = {**messages[system_index], 'content': merge_knowledge_into_prompt(current, knowledge)}

    model['messages'] = messages
    vapi_client.update_assistant(connection['api_key'], assistant_id, {'model': model})
    logger.info(f"[Crawl] ✅ Updated knowledge of assistant {assistant.get('name')} ({assistant_id}) "
                f"from {len(results)} sources")
    return True


def _crawl_one_url(conn, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Scrape one customer URL and record the outcome. Returns the stored result or None."""
    with conn:
        execute(conn, "UPDATE customer_crawl_urls SET last_crawl_status = 'pending' WHERE id = %s", (record['id'],))

    try:
        page = firecrawl_client.scrape_page(record['url'])
    except Exception as e:
        page = {'content': None, 'title': None, 'error': str(e)}

    if page.get('error'):
        logger.error(f"[Crawl] ❌ Failed to crawl {record['url']}: {page['error']}")
        with conn:
            execute(
                conn,
                """
                UPDATE customer_crawl_urls
                SET last_crawled_at = now(), last_crawl_status = 'failed', last_crawl_error = %s
                WHERE id = %s
                """,
                (page['error'], record['id']),
            )
        return None

    content = page.get('content') or ''
    title = page.get('title') or record['url']
    with conn:
        execute(
            conn,
            """
            UPDATE customer_crawl_urls
            SET last_crawled_at = now(), last_crawl_status = 'success', last_crawl_error = NULL,
                crawl_count = %s
            WHERE id = %s
            """,
            ((record.get('crawl_count') or 0) + 1, record['id']),
        )
        stored = fetch_one(
            conn,
            """
            INSERT INTO customer_crawl_results
                (crawl_url_id, crawled_content, content_hash, page_title, content_length)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (record['id'], content, content_hash(content), title, len(content)),
        )
    logger.info(f"[Crawl] ✅ Crawled {record['url']} ({len(content)} chars)")
    return {'result_id': stored['id'], 'url': record['url'], 'title': title, 'content': content}


@app.task
def daily_crawl_urls():
    """Crawl every due customer URL and refresh the linked assistants' knowledge."""
    conn = get_db_connection()
    try:
        with conn:
            crawl_urls = fetch_all(conn, "SELECT * FROM customer_crawl_urls WHERE status = 'active'")

        if not crawl_urls:
            logger.info("[Crawl] No active crawl URLs to process")
            return {'success': True, 'message': 'No active crawl URLs to process', 'processed': 0}

        now = datetime.now(timezone.utc)
        by_assistant: Dict[str, List[Dict[str, Any]]] = OrderedDict()
        for record in crawl_urls:
            if needs_crawl(record, now):
                by_assistant.setdefault(record['assistant_id'], []).append(record)

        processed = succeeded = failed = 0
        for assistant_id, records in by_assistant.items():
            results = []
            for record in records:
                processed += 1
                result = _crawl_one_url(conn, record)
                if result:
                    succeeded += 1
                    results.append(result)
                else:
                    failed += 1
                time.sleep(DELAY_BETWEEN_URLS_S)

            if not results:
                continue
            try:
                pushed = update_assistant_knowledge(conn, assistant_id, results)
            except Exception as e:
                logger.error(f"[Crawl] ❌ Knowledge update failed for assistant {assistant_id}: {e}")
                continue
            if pushed:
                with conn:
                    execute(
                        conn,
                        "UPDATE customer_crawl_results SET sent_to_assistant = true, sent_at = now() WHERE id = ANY(%s)",
                        ([r['result_id'] for r in results],),
                    )
    finally:
        conn.close()

    stats = {'totalActive': len(crawl_urls), 'processed': processed, 'success': succeeded, 'failed': failed}
    logger.info(f"[Crawl] ✅ Daily crawl completed: {stats}")
    return {'success': True, 'message': 'Daily crawl completed', 'stats': stats}


def _page_paths(urls: List[str]) -> List[str]:
    paths = set()
    for url in urls:
        if not url:
            continue
        path = urlparse(url).path
        paths.add(url if path in ('', '/') else path)
    return sorted(paths)[:DISCOVER_LIMIT]


def discover_pages(website_url: str) -> List[str]:
    pages = firecrawl_client.map_site(website_url, limit=DISCOVER_LIMIT)
    if not pages:
        try:
            data = firecrawl_client.start_crawl(website_url, 20, max_depth=2, only_main_content=False)
        except firecrawl_client.CrawlRejected:
            logger.warning(f"[Crawl] ⚠️ Discovery crawl rejected for {website_url}, no pages found")
            return []
        pages = [
            (page.get('metadata') or {}).get('url') or page.get('url')
            for page in data.get('data') or []
        ]
    return _page_paths(pages)


def combine_pages(pages: List[Dict[str, Any]]) -> str:
    combined = ''
    for page in pages:
        if page.get('markdown'):
            metadata = page.get('metadata') or {}
            combined += f"\n\n--- Page: {metadata.get('title') or metadata.get('url') or 'Unknown'} ---\n\n"
            combined += page['markdown']
    return combined


def _set_crawl_status(chatbot_id: str, status: str) -> None:
    conn = get_db_connection()
    try:
        with conn:
            execute(conn, "UPDATE chatbots SET crawl_status = %s WHERE id = %s", (status, chatbot_id))
    finally:
        conn.close()


def crawl_website(user_id: str, chatbot_id: str, website_url: str, discover_only: bool = False,
                  selected_pages: Optional[List[str]] = None) -> Dict[str, Any]:
    if not chatbot_id or not website_url:
        raise HandlerError("Missing chatbotId or websiteUrl")

    conn = get_db_connection()
    try:
        with conn:
            chatbot = fetch_one(conn, "SELECT id FROM chatbots WHERE id = %s AND user_id = %s", (chatbot_id, user_id))
            if not chatbot:
                raise HandlerError("Chatbot not found or unauthorized", 404)
            execute(
                conn,
                "UPDATE chatbots SET crawl_status = 'crawling', website_url = %s WHERE id = %s",
                (website_url, chatbot_id),
            )
    finally:
        conn.close()

    if discover_only:
        try:
            pages = discover_pages(website_url)
        except Exception as e:
            logger.error(f"[Crawl] ❌ Page discovery failed for {website_url}: {e}")
            raise HandlerError("Failed to discover pages", 500)
        logger.info(f"[Crawl] Discovered {len(pages)} pages on {website_url}")
        return {'pages': pages}

    try:
        crawl = firecrawl_client.start_crawl(
            website_url, len(selected_pages or []) or DEFAULT_CRAWL_LIMIT, formats=['markdown'],
        )
        if not crawl.get('success', True):
            raise RuntimeError(crawl.get('error') or 'Crawl failed')
        pages = firecrawl_client.wait_for_crawl(crawl['id']) if crawl.get('id') else (crawl.get('data') or [])
    except firecrawl_client.CrawlTimeout:
        _set_crawl_status(chatbot_id, 'failed')
        raise HandlerError("Crawl timeout", 408)
    except Exception as e:
        _set_crawl_status(chatbot_id, 'failed')
        raise HandlerError(str(e) or 'Crawl failed', 500)

    combined = combine_pages(pages)
    conn = get_db_connection()
    try:
        with conn:
            execute(
                conn,
                """
                UPDATE chatbots
                SET website_content = %s, crawl_status = 'completed', last_crawled_at = now()
                WHERE id = %s
                """,
                (combined, chatbot_id),
            )
    finally:
        conn.close()

    logger.info(f"[Crawl] ✅ Crawled {website_url}: {len(pages)} pages, {len(combined)} chars")
    return {
        'success': True,
        'message': 'Website crawled successfully',
        'pagesCount': len(pages),
        'contentLength': len(combined),
    }


@app.task(bind=True)
def crawl_website_task(self, user_id, chatbot_id, website_url, selected_pages=None):
    """Full crawl in the background; the outcome lands in the task result."""
    try:
        return crawl_website(user_id, chatbot_id, website_url, selected_pages=selected_pages)
    except HandlerError as e:
        logger.error(f"[Crawl] ❌ Task {self.request.id} failed: {e.message}")
        return {'success': False, 'status_code': e.status_code, **e.to_dict()}
