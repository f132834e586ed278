"""
Dispatch script for syncing WhatsApp agent conversations from ElevenLabs.

Queries every user with an active ElevenLabs connection and dispatches one
Celery task per user, so one slow or failing account does not hold up the
others.

Usage:
    PYTHONPATH=. python dispatch/sync_whatsapp_conversations_dispatch.py
"""

from datetime import datetime
from dotenv import load_dotenv

load_dotenv()

from tasks.utils.db import get_db_connection, fetch_all
from tasks.whatsapp import sync_whatsapp_conversations


def fetch_connected_users():
    """Return the user ids that own an active ElevenLabs connection."""
    try:
        conn = get_db_connection()
    except Exception as e:
        print(f"[ERROR] Failed to connect to database: {e}")
        raise

    try:
        with conn:
            rows = fetch_all(conn, """
                SELECT DISTINCT user_id
                FROM elevenlabs_connections
                WHERE is_active = true
                ORDER BY user_id
            """)
        return [row['user_id'] for row in rows]
    except Exception as e:
        print(f"[ERROR] Failed to fetch connections from database: {e}")
        return []
    finally:
        conn.close()


def dispatch_sync_tasks():
    print("=" * 80)
    print("[DISPATCH] WhatsApp Conversation Sync")
    print(f"[DISPATCH] Started at: {datetime.now().isoformat()}")
    print("=" * 80)

    user_ids = fetch_connected_users()
    if not user_ids:
        print("[WARN] No users with an active ElevenLabs connection found")
        return

    print(f"[INFO] Found {len(user_ids)} users to sync")
    print()

    dispatched = 0
    failed = 0
    for user_id in user_ids:
        try:
            result = sync_whatsapp_conversations.delay(user_id=user_id)
            print(f"[DISPATCHED] User {user_id}: Task ID = {result.id}")
            dispatched += 1
        except Exception as e:
            print(f"[ERROR] Failed to dispatch task for user {user_id}: {e}")
            failed += 1

    print()
    print("=" * 80)
    print("[DISPATCH] Summary:")
    print(f"  Total users: {len(user_ids)}")
    print(f"  Tasks dispatched: {dispatched}")
    print(f"  Failed: {failed}")
    print(f"[DISPATCH] Completed at: {datetime.now().isoformat()}")
    print("=" * 80)


if __name__ == "__main__":
    dispatch_sync_tasks()
