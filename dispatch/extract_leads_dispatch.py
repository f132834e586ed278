"""
Dispatch script for the lead extraction sweep over not-yet-analyzed
chatbot conversations, voice calls and WhatsApp conversations.

Usage:
    PYTHONPATH=. python dispatch/extract_leads_dispatch.py
"""

from datetime import datetime
from dotenv import load_dotenv

load_dotenv()

from tasks.leads import extract_leads_cron


if __name__ == "__main__":
    print(f"[DISPATCH] Lead extraction at {datetime.now().isoformat()}")
    result = extract_leads_cron.delay()
    print(f"[DISPATCHED] extract_leads_cron: Task ID = {result.id}")
