"""
Dispatch script for ending idle chatbot conversations.

Runs every few minutes via Render.com cron; each chatbot's session_timeout_minutes
decides which of its active conversations are closed.

Usage:
    PYTHONPATH=. python dispatch/detect_conversation_end_dispatch.py
"""

from datetime import datetime
from dotenv import load_dotenv

load_dotenv()

from tasks.conversations import detect_conversation_end


if __name__ == "__main__":
    print(f"[DISPATCH] Conversation end sweep at {datetime.now().isoformat()}")
    result = detect_conversation_end.delay()
    print(f"[DISPATCHED] detect_conversation_end: Task ID = {result.id}")
