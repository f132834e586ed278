"""
Weekly activity email for portal customers who opted in.

Covers the last 7 days of every chatbot, voice assistant and WhatsApp agent
assigned to the customer.
"""

from dotenv import load_dotenv
load_dotenv()

from tasks.celery_app import app
from celery.utils.log import get_task_logger

import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

from tasks.email_template_utils import escape_html, render_template_with_data
from tasks.notifications import APP_BASE_URL
from tasks.utils.db import get_db_connection, fetch_all
from tasks.utils.email_client import send_email

logger = get_task_logger(__name__)

SUMMARY_DAYS = 7
SEND_DELAY_S = 0.6  # email provider rate limit


def format_duration(seconds: float) -> str:
    seconds = int(seconds or 0)
    hours, minutes = seconds // 3600, (seconds % 3600) // 60
    return f"{hours}h {minutes}m" if hours > 0 else f"{minutes}m"


def _short_date(value: datetime) -> str:
    return f"{value.strftime('%b')} {value.day}"


def week_range(start: datetime, end: datetime) -> str:
    return f"{_short_date(start)} - {_short_date(end)}, {end.year}"


def collect_customer_stats(conn, customer: Dict[str, Any], start: datetime, end: datetime) -> Optional[Dict[str, Any]]:
    """Per-agent counts for one customer; None when nothing is assigned to them."""
    window = {'customer_id': customer['id'], 'start': start, 'end': end}

    chatbots = fetch_all(
        conn,
        """
        SELECT b.id, b.name,
               (SELECT COUNT(*) FROM conversations c
                 WHERE c.chatbot_id = b.id AND c.created_at BETWEEN %(start)s AND %(end)s) AS conversations_count,
               (SELECT COUNT(*) FROM messages m JOIN conversations c ON c.id = m.conversation_id
                 WHERE c.chatbot_id = b.id AND c.created_at BETWEEN %(start)s AND %(end)s) AS messages_count,
               (SELECT COALESCE(SUM(COALESCE(t.input_tokens, 0) + COALESCE(t.output_tokens, 0)), 0)
                  FROM token_usage t
                 WHERE t.chatbot_id = b.id AND t.created_at BETWEEN %(start)s AND %(end)s) AS tokens_used
        FROM customer_chatbot_assignments a
        JOIN chatbots b ON b.id = a.chatbot_id
        WHERE a.customer_id = %(customer_id)s
        """,
        window,
    )
    voice_assistants = fetch_all(
        conn,
        """
        SELECT v.id, COALESCE(v.name, 'Unnamed Assistant') AS name, v.phone_number,
               COUNT(c.id) AS total_calls,
               COALESCE(SUM(c.duration_seconds), 0) AS total_duration_seconds
        FROM customer_assistant_assignments a
        JOIN voice_assistants v ON v.id = a.assistant_id
        LEFT JOIN voice_assistant_calls c
               ON c.assistant_id = v.id AND c.started_at BETWEEN %(start)s AND %(end)s
        WHERE a.customer_id = %(customer_id)s
        GROUP BY v.id, v.name, v.phone_number
        """,
        window,
    )
    whatsapp_agents = fetch_all(
        conn,
        """
        SELECT w.id, COALESCE(w.name, 'Unnamed Agent') AS name, w.phone_number,
               (SELECT COUNT(*) FROM whatsapp_conversations c
                 WHERE c.agent_id = w.id AND c.started_at BETWEEN %(start)s AND %(end)s) AS conversations_count,
               (SELECT COUNT(*) FROM whatsapp_messages m JOIN whatsapp_conversations c ON c.id = m.conversation_id
                 WHERE c.agent_id = w.id AND c.started_at BETWEEN %(start)s AND %(end)s) AS messages_count
        FROM customer_whatsapp_agent_assignments a
        JOIN whatsapp_agents w ON w.id = a.agent_id
        WHERE a.customer_id = %(customer_id)s
        """,
        window,
    )

    if not chatbots and not voice_assistants and not whatsapp_agents:
        return None

    chatbot_conversations = sum(b['conversations_count'] for b in chatbots)
    chatbot_messages = sum(b['messages_count'] for b in chatbots)
    voice_calls = sum(v['total_calls'] for v in voice_assistants)
    whatsapp_conversations = sum(w['conversations_count'] for w in whatsapp_agents)
    whatsapp_messages = sum(w['messages_count'] for w in whatsapp_agents)

    return {
        'customer_id': customer['id'],
        'customer_email': customer['email'],
        'customer_name': customer.get('full_name'),
        'chatbots': chatbots,
        'total_chatbot_conversations': chatbot_conversations,
        'total_chatbot_messages': chatbot_messages,
        'total_tokens': sum(int(b['tokens_used'] or 0) for b in chatbots),
        'voice_assistants': voice_assistants,
        'total_voice_calls': voice_calls,
        'total_voice_duration_seconds': sum(int(v['total_duration_seconds'] or 0) for v in voice_assistants),
        'whatsapp_agents': whatsapp_agents,
        'total_whatsapp_conversations': whatsapp_conversations,
        'total_whatsapp_messages': whatsapp_messages,
        'total_interactions': chatbot_conversations + voice_calls + whatsapp_conversations,
        'total_messages': chatbot_messages + whatsapp_messages,
    }


def _section(title: str, rows: List[str]) -> str:
    return (
        f'<h3 style="color: #18181b; font-size: 16px; margin: 24px 0 8px 0;">{title}</h3>'
        '<table role="presentation" width="100%" cellpadding="8" cellspacing="0" '
        'style="border-collapse: collapse; font-size: 14px; color: #3f3f46;">'
        + ''.join(rows) + '</table>'
    )


def _row(name: str, detail: str) -> str:
    return (
        '<tr style="border-bottom: 1px solid #f4f4f5;">'
        f'<td style="font-weight: 600;">{escape_html(name)}</td>'
        f'<td style="text-align: right;">{detail}</td></tr>'
    )


def build_agent_sections(stats: Dict[str, Any]) -> str:
    sections = []
    if stats['chatbots']:
        sections.append(_section('Chatbots', [
            _row(b['name'], f"{b['conversations_count']:,} conversations · {b['messages_count']:,} messages · "
                            f"{int(b['tokens_used'] or 0):,} tokens")
            for b in stats['chatbots']
        ]))
    if stats['voice_assistants']:
        sections.append(_section('Voice Assistants', [
            _row(v['name'], f"{v['total_calls']:,} calls · {format_duration(v['total_duration_seconds'])}")
            for v in stats['voice_assistants']
        ]))
    if stats['whatsapp_agents']:
        sections.append(_section('WhatsApp Agents', [
            _row(w['name'], f"{w['conversations_count']:,} conversations · {w['messages_count']:,} messages")
            for w in stats['whatsapp_agents']
        ]))
    return ''.join(sections)


def send_summary_email(stats: Dict[str, Any], start: datetime, end: datetime) -> Dict[str, Any]:
    html = render_template_with_data(
        'weekly_summary.html',
        customer_name=escape_html(stats.get('customer_name') or 'there'),
        period_start=_short_date(start),
        period_end=f"{_short_date(end)}, {end.year}",
        total_interactions=f"{stats['total_interactions']:,}",
        total_messages=f"{stats['total_messages']:,}",
        agent_sections=build_agent_sections(stats),
        dashboard_url=f"{APP_BASE_URL}/customer-login",
    )
    return send_email(stats['customer_email'], f"Weekly Agent Summary | {week_range(start, end)}", html,
                      from_name='Voxtro')


@app.task
def send_weekly_summary(customer_email: Optional[str] = None) -> Dict[str, Any]:
    end = datetime.now(timezone.utc)
    start = end - timedelta(days=SUMMARY_DAYS)

    conn = get_db_connection()
    try:
        with conn:
            if customer_email:
                customers = fetch_all(
                    conn,
                    "SELECT id, email, full_name FROM customers WHERE weekly_summary_enabled = true AND email = %s",
                    (customer_email,),
                )
            else:
                customers = fetch_all(
                    conn, "SELECT id, email, full_name FROM customers WHERE weekly_summary_enabled = true")

        if not customers:
            return {'success': True, 'message': 'No customers with weekly summaries enabled',
                    'summaries_generated': 0, 'emails_sent': 0, 'errors': []}

        summaries = []
        for customer in customers:
            try:
                with conn:
                    stats = collect_customer_stats(conn, customer, start, end)
            except Exception as e:
                logger.error(f"[WeeklySummary] ❌ Error processing customer {customer['email']}: {e}")
                continue
            if stats:
                summaries.append(stats)
            else:
                logger.info(f"[WeeklySummary] Skipping {customer['email']}: no agents assigned")
    finally:
        conn.close()

    emails_sent = 0
    errors = []
    for i, stats in enumerate(summaries):
        if i:
            time.sleep(SEND_DELAY_S)
        result = send_summary_email(stats, start, end)
        if result.get('success'):
            emails_sent += 1
        else:
            message = f"Failed to send email to {stats['customer_email']}: {result.get('error')}"
            logger.error(f"[WeeklySummary] ❌ {message}")
            errors.append(message)

    logger.info(f"[WeeklySummary] ✅ {emails_sent}/{len(summaries)} summaries sent")
    return {
        'success': True,
        'message': f"Weekly summaries processed. {emails_sent} emails sent successfully.",
        'summaries_generated': len(summaries),
        'emails_sent': emails_sent,
        'errors': errors,
    }
