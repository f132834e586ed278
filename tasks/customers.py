"""
Customer accounts: portal users that an admin assigns agents to.
"""

from dotenv import load_dotenv
load_dotenv()

from typing import Dict, Any, List, Optional
from celery.utils.log import get_task_logger

from tasks.utils import supabase_auth
from tasks.utils.db import get_db_connection, fetch_one, execute
from tasks.utils.errors import HandlerError

logger = get_task_logger(__name__)

# Tables searched, in order, for the admin who assigned a customer
ASSIGNMENT_TABLES = (
    'customer_chatbot_assignments',
    'customer_assistant_assignments',
    'customer_whatsapp_agent_assignments',
)


def find_assigning_admin(conn, customer_id: str) -> Optional[str]:
    """Return the assigned_by of the customer's first chatbot, voice or WhatsApp assignment."""
    for table in ASSIGNMENT_TABLES:
        row = fetch_one(conn, f"SELECT assigned_by FROM {table} WHERE customer_id = %s LIMIT 1", (customer_id,))
        if row and row.get('assigned_by'):
            return row['assigned_by']
    return None


def _ensure_auth_user(email: str, password: str, full_name: str) -> bool:
    """
    Create the customer's auth user, or tag an existing one as a customer.

    Returns:
        True when a new auth user was created.
    """
    metadata = {'full_name': full_name, 'is_customer': True, 'customer_email': email}
    created, body = supabase_auth.create_user(email, password, metadata)
    if created:
        return True

    message = supabase_auth.error_message(body)
    if 'already been registered' not in message and 'already registered' not in message:
        raise RuntimeError(f"Failed to create auth user: {message}")

    existing = supabase_auth.find_user_by_email(email)
    if not existing:
        raise RuntimeError(f"Failed to find existing auth user: {message}")
    supabase_auth.update_user_metadata(existing['id'], metadata)
    logger.info(f"[Customers] Updated existing auth user {existing['id']} as customer")
    return False


def create_customer_with_auth(email: str, full_name: str, password: str, company_name: Optional[str] = None,
                              assigned_chatbots: Optional[List[str]] = None,
                              assigned_by: Optional[str] = None) -> Dict[str, Any]:
    if not email or not full_name or not password:
        raise HandlerError("Missing required fields: email, full_name, and password are required")

    conn = get_db_connection()
    try:
        with conn:
            if fetch_one(conn, "SELECT id FROM customers WHERE email = %s", (email,)):
                raise HandlerError(f"Customer with email {email} already exists")

            customer = fetch_one(
                conn,
                "INSERT INTO customers (email, full_name, company_name) VALUES (%s, %s, %s) RETURNING *",
                (email, full_name, company_name or None),
            )
        logger.info(f"[Customers] ✅ Created customer {customer['id']} ({email})")

        try:
            auth_created = _ensure_auth_user(email, password, full_name)
        except Exception:
            with conn:
                execute(conn, "DELETE FROM customers WHERE id = %s", (customer['id'],))
            logger.warning(f"[Customers] ⚠️ Removed customer {customer['id']} after auth user setup failed")
            raise

        if assigned_chatbots:
            with conn:
                for chatbot_id in assigned_chatbots:
                    execute(
                        conn,
                        """
                        INSERT INTO customer_chatbot_assignments (customer_id, chatbot_id, assigned_by)
                        VALUES (%s, %s, %s)
                        """,
                        (customer['id'], chatbot_id, assigned_by),
                    )
            logger.info(f"[Customers] Assigned {len(assigned_chatbots)} chatbots to {customer['id']}")
    finally:
        conn.close()

    return {'success': True, 'customer': customer, 'auth_created': auth_created}
