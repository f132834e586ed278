from datetime import datetime, timezone
from unittest.mock import patch

from tasks import weekly_summary
from tasks.weekly_summary import (
    build_agent_sections,
    collect_customer_stats,
    format_duration,
    send_summary_email,
    send_weekly_summary,
    week_range,
)

START = datetime(2025, 2, 24, 9, 0, tzinfo=timezone.utc)
END = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)
CUSTOMER = {'id': 'cust-1', 'email': 'ann@example.com', 'full_name': 'Ann Lee'}


def test_format_duration():
    assert format_duration(0) == '0m'
    assert format_duration(59 * 60) == '59m'
    assert format_duration(3600 + 5 * 60 + 30) == '1h 5m'
    assert format_duration(None) == '0m'


def test_week_range():
    assert week_range(START, END) == 'Feb 24 - Mar 3, 2025'


def test_collect_stats_totals(db_conn):
    chatbots = [{'id': 'b1', 'name': 'Shop Bot', 'conversations_count': 4, 'messages_count': 30, 'tokens_used': 1200}]
    voice = [{'id': 'v1', 'name': 'Desk', 'phone_number': None, 'total_calls': 3, 'total_duration_seconds': 600}]
    whatsapp = [{'id': 'w1', 'name': 'Concierge', 'phone_number': '+1555', 'conversations_count': 2,
                 'messages_count': 12}]
    with patch.object(weekly_summary, 'fetch_all', side_effect=[chatbots, voice, whatsapp]):
        stats = collect_customer_stats(db_conn, CUSTOMER, START, END)

    assert stats['total_interactions'] == 9
    assert stats['total_messages'] == 42
    assert stats['total_tokens'] == 1200
    assert stats['total_voice_duration_seconds'] == 600


def test_collect_stats_without_assignments(db_conn):
    with patch.object(weekly_summary, 'fetch_all', return_value=[]):
        assert collect_customer_stats(db_conn, CUSTOMER, START, END) is None


def test_agent_sections_only_for_assigned_kinds():
    stats = {'chatbots': [], 'whatsapp_agents': [],
             'voice_assistants': [{'name': 'Desk <1>', 'total_calls': 1200, 'total_duration_seconds': 7260}]}
    html = build_agent_sections(stats)
    assert 'Voice Assistants' in html
    assert 'Chatbots' not in html
    assert 'Desk &lt;1&gt;' in html
    assert '1,200 calls · 2h 1m' in html


def test_summary_email():
    stats = {'customer_email': 'ann@example.com', 'customer_name': None, 'total_interactions': 1500,
             'total_messages': 20, 'chatbots': [], 'voice_assistants': [], 'whatsapp_agents': []}
    with patch.object(weekly_summary, 'send_email', return_value={'success': True}) as mock_send:
        send_summary_email(stats, START, END)

    to, subject, html = mock_send.call_args[0]
    assert to == 'ann@example.com'
    assert subject == 'Weekly Agent Summary | Feb 24 - Mar 3, 2025'
    assert '1,500' in html
    assert 'there' in html


class TestWeeklySummaryTask:
    def test_no_customers(self, db_conn):
        with patch.object(weekly_summary, 'get_db_connection', return_value=db_conn), \
                patch.object(weekly_summary, 'fetch_all', return_value=[]):
            result = send_weekly_summary()
        assert result['emails_sent'] == 0
        assert result['message'] == 'No customers with weekly summaries enabled'

    def test_sends_and_collects_errors(self, db_conn):
        customers = [CUSTOMER, {'id': 'cust-2', 'email': 'bob@example.com'}, {'id': 'cust-3', 'email': 'c@x.io'}]
        stats = [{'customer_email': 'ann@example.com'}, None, {'customer_email': 'c@x.io'}]
        sends = [{'success': True}, {'success': False, 'error': 'bounced'}]
        with patch.object(weekly_summary, 'get_db_connection', return_value=db_conn), \
                patch.object(weekly_summary, 'fetch_all', return_value=customers), \
                patch.object(weekly_summary, 'collect_customer_stats', side_effect=stats), \
                patch.object(weekly_summary, 'send_summary_email', side_effect=sends), \
                patch.object(weekly_summary.time, 'sleep') as mock_sleep:
            result = send_weekly_summary()

        assert result['summaries_generated'] == 2
        assert result['emails_sent'] == 1
        assert result['errors'] == ['Failed to send email to c@x.io: bounced']
        mock_sleep.assert_called_once_with(weekly_summary.SEND_DELAY_S)

    def test_single_customer_filter(self, db_conn):
        with patch.object(weekly_summary, 'get_db_connection', return_value=db_conn), \
                patch.object(weekly_summary, 'fetch_all', return_value=[]) as mock_fetch:
            send_weekly_summary(customer_email='ann@example.com')
        assert mock_fetch.call_args[0][2] == ('ann@example.com',)
