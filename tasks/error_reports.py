"""
Error reports from the frontend and other services: persisted to error_logs
and pushed to Discord and/or a custom webhook.
"""

from dotenv import load_dotenv
load_dotenv()

import os
import json
import requests
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from celery.utils.log import get_task_logger

from tasks.utils.db import get_db_connection, fetch_one, execute, as_json
from tasks.utils.errors import HandlerError

logger = get_task_logger(__name__)

ERROR_DISCORD_WEBHOOK = os.getenv("ERROR_DISCORD_WEBHOOK")
ERROR_CUSTOM_WEBHOOK = os.getenv("ERROR_CUSTOM_WEBHOOK")

SEVERITY_COLORS = {
    'critical': 0xFF0000,
    'error': 0xFFA500,
    'warning': 0xFFFF00,
}
WEBHOOK_TIMEOUT = 10


def build_discord_embed(report: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    severity = report.get('severity') or 'error'
    embed = {
        'title': f"🚨 {severity.upper()}: {report['error_source']}",
        'description': report['error_message'][:2000],
        'color': SEVERITY_COLORS.get(severity, SEVERITY_COLORS['error']),
        'fields': [
            {'name': 'Type', 'value': report['error_type'], 'inline': True},
            {'name': 'Source', 'value': report['error_source'], 'inline': True},
            {'name': 'Timestamp', 'value': now.isoformat(), 'inline': True},
        ],
        'footer': {'text': 'Voxtro Error Monitor'},
    }
    if report.get('error_stack'):
        embed['fields'].append({
            'name': 'Stack Trace',
            'value': f"```{report['error_stack'][:1000]}```",
            'inline': False,
        })
    if report.get('metadata'):
        metadata = json.dumps(report['metadata'], indent=2, default=str)[:1000]
        embed['fields'].append({
            'name': 'Metadata',
            'value': f"```json\n{metadata}\n```",
            'inline': False,
        })
    return embed


def _deliver(url: str, payload: Dict[str, Any], channel: str) -> bool:
    try:
        resp = requests.post(url, json=payload, timeout=WEBHOOK_TIMEOUT)
        resp.raise_for_status()
        return True
    except requests.RequestException as e:
        logger.error(f"[ErrorReport] ❌ {channel} delivery failed: {e}")
        return False


def report_error(report: Dict[str, Any]) -> Dict[str, Any]:
    if not report.get('error_type') or not report.get('error_source') or not report.get('error_message'):
        raise HandlerError("Missing required fields")

    report = dict(report)
    report['severity'] = report.get('severity') or 'error'

    log_id = None
    conn = get_db_connection()
    try:
        with conn:
            row = fetch_one(
                conn,
                """
                INSERT INTO error_logs
                    (error_type, error_source, error_message, error_stack, metadata, severity, notified)
                VALUES (%s, %s, %s, %s, %s, %s, false)
                RETURNING id
                """,
                (report['error_type'], report['error_source'], report['error_message'],
                 report.get('error_stack'), as_json(report.get('metadata')), report['severity']),
            )
            log_id = row['id'] if row else None
    except Exception as e:
        logger.error(f"[ErrorReport] ❌ Failed to log to database: {e}")
    finally:
        conn.close()

    delivered = False
    if ERROR_DISCORD_WEBHOOK:
        delivered |= _deliver(ERROR_DISCORD_WEBHOOK, {'embeds': [build_discord_embed(report)]}, 'Discord')
    if ERROR_CUSTOM_WEBHOOK:
        payload = {'timestamp': datetime.now(timezone.utc).isoformat(), **report}
        delivered |= _deliver(ERROR_CUSTOM_WEBHOOK, payload, 'Custom webhook')

    if delivered and log_id:
        conn = get_db_connection()
        try:
            with conn:
                execute(conn, "UPDATE error_logs SET notified = true WHERE id = %s", (log_id,))
        finally:
            conn.close()

    logger.info(f"[ErrorReport] {report['severity']} from {report['error_source']} recorded (notified={delivered})")
    return {'success': True, 'message': 'Error reported'}
