"""
Dispatch script for the weekly customer summary emails.

Runs Mondays via Render.com cron. A single task sends every email so the
email provider's rate limit is respected between sends.

Usage:
    PYTHONPATH=. python dispatch/weekly_summary_dispatch.py [customer_email]
"""

import sys
from datetime import datetime
from dotenv import load_dotenv

load_dotenv()

from tasks.weekly_summary import send_weekly_summary


if __name__ == "__main__":
    customer_email = sys.argv[1] if len(sys.argv) > 1 else None
    print(f"[DISPATCH] Weekly summaries at {datetime.now().isoformat()}"
          + (f" for {customer_email}" if customer_email else ""))
    result = send_weekly_summary.delay(customer_email=customer_email)
    print(f"[DISPATCHED] send_weekly_summary: Task ID = {result.id}")
