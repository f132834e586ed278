"""
White-label branding lookups for custom domains and the customer portal.
"""

from typing import Dict, Any, Optional
from celery.utils.log import get_task_logger

from tasks.customers import find_assigning_admin
from tasks.utils.db import get_db_connection, fetch_all, fetch_one
from tasks.utils.errors import HandlerError

logger = get_task_logger(__name__)

DEFAULT_BRANDING = {
    'logo_url': None,
    'primary_color': '#f97316',
    'secondary_color': '#ea580c',
}


def normalize_domain(domain: Optional[str]) -> str:
    value = (domain or '').strip().lower()
    return value[:-1] if value.endswith('/') else value


def get_branding_by_domain(domain: Optional[str]) -> Dict[str, Any]:
    """Resolve a verified custom domain to its owner's branding."""
    if not domain:
        raise HandlerError("Domain parameter is required")

    conn = get_db_connection()
    try:
        with conn:
            rows = fetch_all(conn, "SELECT * FROM get_branding_by_domain(%s)", (normalize_domain(domain),))
    finally:
        conn.close()

    if not rows:
        raise HandlerError("Domain not found or not verified", 404, found=False,
                           message='Domain not found or not verified')

    branding = rows[0]
    return {
        'found': True,
        'user_id': branding.get('user_id'),
        'branding': {
            'logo_url': branding.get('logo_url'),
            'primary_color': branding.get('primary_color'),
            'secondary_color': branding.get('secondary_color'),
        },
    }


def get_customer_branding(email: Optional[str]) -> Dict[str, Any]:
    """
    Branding of the admin who manages this customer.

    Never fails: anything that cannot be resolved yields the default palette.
    """
    if not email or '@' not in email:
        return dict(DEFAULT_BRANDING)

    try:
        conn = get_db_connection()
        try:
            with conn:
                customer = fetch_one(conn, "SELECT id FROM customers WHERE email = %s", (email,))
                if not customer:
                    return dict(DEFAULT_BRANDING)

                admin_id = find_assigning_admin(conn, customer['id'])
                if not admin_id:
                    return dict(DEFAULT_BRANDING)

                settings = fetch_one(
                    conn,
                    "SELECT logo_url, primary_color, secondary_color FROM branding_settings WHERE user_id = %s",
                    (admin_id,),
                )
        finally:
            conn.close()
    except Exception as e:
        logger.error(f"[Branding] ❌ Customer branding lookup failed for {email}: {e}")
        return dict(DEFAULT_BRANDING)

    if not settings:
        return dict(DEFAULT_BRANDING)

    return {
        'logo_url': settings.get('logo_url'),
        'primary_color': settings.get('primary_color') or DEFAULT_BRANDING['primary_color'],
        'secondary_color': settings.get('secondary_color') or DEFAULT_BRANDING['secondary_color'],
    }
