"""
Dispatch script for the recurring customer crawl sweep.

Runs daily via Render.com cron. The task itself decides which
customer_crawl_urls are due from their crawl_frequency and last_crawled_at.

Usage:
    PYTHONPATH=. python dispatch/daily_crawl_dispatch.py
"""

from datetime import datetime
from dotenv import load_dotenv

load_dotenv()

from tasks.crawl import daily_crawl_urls


if __name__ == "__main__":
    print(f"[DISPATCH] Daily crawl sweep at {datetime.now().isoformat()}")
    result = daily_crawl_urls.delay()
    print(f"[DISPATCHED] daily_crawl_urls: Task ID = {result.id}")
