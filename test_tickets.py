from datetime import datetime
from unittest.mock import patch

import pytest

from tasks import tickets
from tasks.email_template_utils import (
    escape_html,
    format_ticket_date,
    render_template_with_data,
    short_ticket_id,
    substitute_placeholders,
    toggle_section,
)
from tasks.tickets import (
    create_support_ticket,
    normalize_priority,
    resolve_ticket_owner,
    send_admin_ticket_notification,
    send_ticket_reply_notification,
    unwrap_ticket_body,
)
from tasks.utils.errors import HandlerError

TICKET = {'subject': 'Refund', 'description': 'I was charged twice', 'customer_name': 'Ann',
          'customer_email': 'ann@example.com'}


@pytest.mark.parametrize('raw, expected', [
    ('HIGH', 'high'),
    (' urgent ', 'urgent'),
    ('moderate', 'medium'),
    ('ASAP', 'urgent'),
    ('whenever', 'medium'),
    (None, 'medium'),
])
def test_normalize_priority(raw, expected):
    assert normalize_priority(raw) == expected


def test_unwrap_tool_call_body():
    body = unwrap_ticket_body({'parameters': dict(TICKET), '_metadata': {'chatbotId': 'bot-1'}})
    assert body['chatbot_id'] == 'bot-1'
    assert body['subject'] == 'Refund'
    assert unwrap_ticket_body({'subject': 'x'}) == {'subject': 'x'}


class TestResolveOwner:
    def test_chatbot_wins_over_user_id(self, db_conn):
        with patch.object(tickets, 'fetch_one', return_value={'user_id': 'owner-1'}):
            assert resolve_ticket_owner(db_conn, 'bot-1', None, 'someone-else') == 'owner-1'

    def test_unknown_chatbot(self, db_conn):
        with patch.object(tickets, 'fetch_one', return_value=None):
            with pytest.raises(HandlerError, match='Invalid chatbot_id'):
                resolve_ticket_owner(db_conn, 'bot-x', None)

    def test_customer_assignment_lookup(self, db_conn):
        with patch.object(tickets, 'find_assigning_admin', return_value='admin-7') as mock_find:
            assert resolve_ticket_owner(db_conn, None, 'cust-1') == 'admin-7'
        mock_find.assert_called_once_with(db_conn, 'cust-1')


class TestCreateTicket:
    def test_missing_fields(self, db_conn):
        with patch.object(tickets, 'get_db_connection', return_value=db_conn):
            with pytest.raises(HandlerError) as exc:
                create_support_ticket({'subject': 'Refund', 'user_id': 'owner-1'})
        assert exc.value.status_code == 400
        db_conn.close.assert_called_once()

    def test_tool_call_creates_ticket_and_first_message(self, db_conn):
        raw = {'parameters': {**TICKET, 'priority': 'critical'}, '_metadata': {'chatbotId': 'bot-1'}}
        with patch.object(tickets, 'get_db_connection', return_value=db_conn), \
                patch.object(tickets, 'fetch_one', side_effect=[{'user_id': 'owner-1'}, {'id': 42}]) as mock_fetch, \
                patch.object(tickets, 'execute') as mock_execute:
            result = create_support_ticket(raw)

        assert result == {'success': True, 'ticket_id': '42', 'message': 'Support ticket created successfully'}
        insert_params = mock_fetch.call_args[0][2]
        assert insert_params[0] == 'owner-1'
        assert insert_params[5] == 'urgent'
        assert insert_params[6] == 'bot-1'
        assert mock_execute.call_args[0][2] == (42, 'I was charged twice', 'Ann')

    def test_message_failure_keeps_ticket(self, db_conn):
        with patch.object(tickets, 'get_db_connection', return_value=db_conn), \
                patch.object(tickets, 'fetch_one', return_value={'id': 7}), \
                patch.object(tickets, 'execute', side_effect=RuntimeError('db down')):
            result = create_support_ticket({**TICKET, 'user_id': 'owner-1'})
        assert result['ticket_id'] == '7'


class TestReplyNotifications:
    def test_admin_notification(self):
        body = {'admin_email': 'owner@shop.com', 'ticket_subject': 'Refund', 'reply_content': 'Any news?\nThanks',
                'ticket_id': 'abcdef123456', 'customer_name': 'Ann <script>'}
        with patch.object(tickets, 'send_email', return_value={'success': True}) as mock_send:
            assert send_admin_ticket_notification(body)['success'] is True

        to, subject, html = mock_send.call_args[0]
        assert to == 'owner@shop.com'
        assert subject == 'Customer Reply: Refund [ABCDEF12]'
        assert 'Any news?<br>Thanks' in html
        assert 'Ann &lt;script&gt;' in html
        assert '{{' not in html
        assert mock_send.call_args.kwargs['from_name'] == 'Voxtro Support'

    def test_admin_notification_missing_fields(self):
        with pytest.raises(HandlerError):
            send_admin_ticket_notification({'admin_email': 'owner@shop.com'})

    def test_customer_notification_send_failure(self):
        body = {'customer_email': 'ann@example.com', 'ticket_subject': 'Refund', 'reply_content': 'Done'}
        with patch.object(tickets, 'send_email', return_value={'success': False, 'error': 'quota'}):
            with pytest.raises(HandlerError) as exc:
                send_ticket_reply_notification(body)
        assert exc.value.status_code == 500
        assert exc.value.message == 'Failed to send notification: quota'

    def test_customer_notification_subject(self):
        body = {'customer_email': 'ann@example.com', 'ticket_subject': 'Refund', 'reply_content': 'Done'}
        with patch.object(tickets, 'send_email', return_value={'success': True}) as mock_send:
            send_ticket_reply_notification(body)
        assert mock_send.call_args[0][1] == 'Re: Refund - New Reply from Support'
        assert 'Support Team' in mock_send.call_args[0][2]


class TestTemplateHelpers:
    def test_escape_html(self):
        assert escape_html('a < b\n"c"') == 'a &lt; b<br>&quot;c&quot;'
        assert escape_html(None) == ''

    def test_short_ticket_id(self):
        assert short_ticket_id('3f2a9c1b-0000') == '3F2A9C1B'
        assert short_ticket_id(None) == 'N/A'

    def test_format_ticket_date(self):
        assert format_ticket_date(datetime(2025, 3, 4, 15, 7)) == 'Mar 4, 2025, 3:07 PM'
        assert format_ticket_date('2025-03-04T00:30:00') == 'Mar 4, 2025, 12:30 AM'
        assert format_ticket_date('not a date') == 'not a date'

    def test_substitute_keeps_unknown_placeholders(self):
        assert substitute_placeholders('{{a}} {{ b }} {{c}}', {'a': 1, 'b': None}) == '1  {{c}}'

    def test_toggle_section(self):
        text = 'x{{#extra}}y{{/extra}}z'
        assert toggle_section(text, 'extra', True) == 'xyz'
        assert toggle_section(text, 'extra', False) == 'xz'

    def test_missing_template_renders_empty(self):
        assert render_template_with_data('does_not_exist.html', name='x') == ''
