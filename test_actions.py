from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from tasks import actions
from tasks.actions import (
    execute_action,
    fill_tool_template,
    missing_required_parameters,
    run_calendar_booking,
    run_custom_tool,
    run_email_send,
    run_webhook_call,
    run_zapier_trigger,
)
from tasks.utils.errors import HandlerError


def _response(status=200, json_body=None, text='', content_type='application/json'):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.headers = {'content-type': content_type}
    resp.json.return_value = json_body if json_body is not None else {}
    resp.text = text or ('{}' if json_body is not None else '')
    return resp


class TestCalendarBooking:
    def test_future_booking(self):
        day = (datetime.now(timezone.utc) + timedelta(days=3)).strftime('%Y-%m-%d')
        result = run_calendar_booking({'configuration': {'defaultDuration': 45}},
                                      {'date': day, 'time': '14:30', 'attendeeName': 'Ann',
                                       'attendeeEmail': 'ann@example.com'})
        assert result['success'] is True
        assert result['bookingId'].startswith('apt-')
        assert result['details']['endTime'] == '15:15'
        assert result['details']['duration'] == 45

    def test_past_booking_rejected(self):
        with pytest.raises(ValueError, match='past'):
            run_calendar_booking({}, {'date': '2020-01-01', 'time': '10:00', 'attendeeName': 'Ann'})

    def test_past_check_uses_utc(self):
        now = datetime(2030, 1, 1, 10, 30, tzinfo=timezone.utc)
        with patch.object(actions, '_utc_now', return_value=now):
            with pytest.raises(ValueError, match='past'):
                run_calendar_booking({}, {'date': '2030-01-01', 'time': '10:00', 'attendeeName': 'Ann'})
            result = run_calendar_booking({}, {'date': '2030-01-01', 'time': '11:00', 'attendeeName': 'Ann'})
        assert result['details']['endTime'] == '11:30'

    @pytest.mark.parametrize('data, message', [
        ({'date': '2030-01-01', 'time': '10:00'}, 'Missing required booking fields'),
        ({'date': '01/02/2030', 'time': '10:00', 'attendeeName': 'Ann'}, 'Invalid date format'),
        ({'date': '2030-01-01', 'time': '25:00', 'attendeeName': 'Ann'}, 'Invalid time format'),
        ({'date': '2030-01-01', 'time': '10:00', 'attendeeName': 'Ann', 'attendeeEmail': 'nope'}, 'Invalid email'),
    ])
    def test_validation(self, data, message):
        with pytest.raises(ValueError, match=message):
            run_calendar_booking({}, data)


class TestEmailSend:
    def test_requires_from_email(self):
        with pytest.raises(ValueError, match='fromEmail'):
            run_email_send({'configuration': {}}, {'to': 'a@b.co', 'subject': 'Hi', 'body': 'Hello'})

    def test_sends_from_configured_address(self):
        with patch.object(actions, 'send_email', return_value={'success': True}) as mock_send:
            result = run_email_send({'configuration': {'fromEmail': 'bot@shop.com'}},
                                    {'to': 'a@b.co', 'subject': 'Hi', 'body': 'Hello'})
        assert result['details']['from'] == 'Chatbot Assistant <bot@shop.com>'
        assert mock_send.call_args.kwargs['from_email'] == 'bot@shop.com'


class TestWebhookCall:
    def test_configured_method_and_headers(self):
        action = {'id': 'act-1', 'configuration': {'webhookUrl': 'https://hooks.example.com/x', 'method': 'put',
                                                   'headers': '{"X-Token": "abc"}'}}
        with patch.object(actions.requests, 'request', return_value=_response(json_body={'ok': True})) as mock_req:
            result = run_webhook_call(action, {'email': 'a@b.co'})

        method, url = mock_req.call_args[0]
        assert (method, url) == ('PUT', 'https://hooks.example.com/x')
        kwargs = mock_req.call_args.kwargs
        assert kwargs['headers']['X-Token'] == 'abc'
        assert kwargs['headers']['User-Agent'] == 'Voxtro-Webhook/1.0'
        assert kwargs['json']['_metadata']['actionId'] == 'act-1'
        assert result['response'] == {'ok': True}

    def test_invalid_url(self):
        with pytest.raises(ValueError, match='Invalid webhook URL'):
            run_webhook_call({'id': 'a', 'configuration': {'webhookUrl': 'ftp://x'}}, {})

    def test_error_status_raises(self):
        action = {'id': 'a', 'configuration': {'webhookUrl': 'https://x.example.com'}}
        with patch.object(actions.requests, 'request',
                          return_value=_response(status=502, text='bad gateway', content_type='text/plain')):
            with pytest.raises(RuntimeError, match='502'):
                run_webhook_call(action, {})


class TestZapier:
    def test_rejects_non_zapier_hook(self):
        with pytest.raises(ValueError, match='Zapier'):
            run_zapier_trigger({'id': 'a', 'configuration': {'zapierWebhook': 'https://example.com/hook'}}, {})

    def test_posts_event(self):
        action = {'id': 'a', 'configuration': {'zapierWebhook': 'https://hooks.zapier.com/hooks/catch/1/2',
                                               'eventName': 'lead_captured'}}
        with patch.object(actions.requests, 'post', return_value=_response(json_body={'status': 'success'})) as post:
            result = run_zapier_trigger(action, {'name': 'Ann'})
        assert post.call_args.kwargs['json']['event'] == 'lead_captured'
        assert result['zapierResponse'] == {'status': 'success'}


class TestCustomTool:
    def test_required_parameter_missing(self):
        action = {'id': 'a', 'name': 'lookup', 'configuration': {
            'webhookUrl': 'https://x.example.com', 'parameters': [{'name': 'order_id', 'required': True}]}}
        with pytest.raises(ValueError, match="order_id"):
            run_custom_tool(action, {'order_id': '  '})

    def test_webhook_failure_does_not_fail_tool(self):
        action = {'id': 'a', 'name': 'lookup', 'configuration': {'webhookUrl': 'https://x.example.com'}}
        with patch.object(actions.requests, 'post', side_effect=actions.requests.ConnectionError('down')):
            result = run_custom_tool(action, {'order_id': '1'})
        assert result['success'] is True
        assert result['toolName'] == 'lookup'

    def test_email_automation_and_parameter_extraction(self, db_conn):
        action = {'id': 'a', 'name': 'book_tour', 'configuration': {
            'webhookUrl': 'https://x.example.com',
            'emailAutomation': {'enabled': True, 'recipients': 'sales@shop.com, {{email}}, not-an-email',
                                'subject': 'New {{tool_name}} from {{name}}'},
        }}
        messages = [{'role': 'user', 'content': 'hi'}]
        with patch.object(actions.requests, 'post', return_value=_response()), \
                patch.object(actions, 'send_email', return_value={'success': True}) as mock_send, \
                patch.object(actions, 'get_db_connection', return_value=db_conn), \
                patch.object(actions, 'load_messages', return_value=messages), \
                patch.object(actions, 'extract_parameters') as mock_extract:
            result = run_custom_tool(action, {'name': 'Ann', 'email': 'ann@example.com'}, 'conv-1', 'Shop Bot')

        assert result['emailResult']['recipients'] == ['sales@shop.com', 'ann@example.com']
        assert mock_send.call_args[0][1] == 'New book_tour from Ann'
        mock_extract.assert_called_once_with('conv-1', messages)


def test_missing_required_parameters():
    params = [{'name': 'a', 'required': True}, {'name': 'b', 'required': False}, {'name': 'c', 'required': True}]
    assert missing_required_parameters(params, {'a': 'x', 'c': ''}) == ['c']


def test_fill_tool_template_expands_parameters():
    text = fill_tool_template('{{tool_name}}:\n{{parameters}}',
                              {'city': 'Austin', 'bot_name': 'Bot', 'tool_name': 'lookup', 'timestamp': 'now'})
    assert text == 'lookup:\ncity: Austin'


class TestExecuteAction:
    def test_missing_fields(self):
        with pytest.raises(HandlerError):
            execute_action('', {})

    def test_unknown_action(self, db_conn):
        with patch.object(actions, 'get_db_connection', return_value=db_conn), \
                patch.object(actions, 'fetch_one', return_value=None):
            with pytest.raises(HandlerError) as exc:
                execute_action('act-1', {})
        assert exc.value.status_code == 404

    def test_failed_executor_is_logged_as_failed(self, db_conn):
        action = {'id': 'act-1', 'name': 'hook', 'action_type': 'zapier_trigger', 'configuration': {}}
        with patch.object(actions, 'get_db_connection', return_value=db_conn), \
                patch.object(actions, 'fetch_one', side_effect=[action, {'id': 'log-1'}]), \
                patch.object(actions, 'execute') as mock_execute:
            result = execute_action('act-1', {'x': 1}, 'conv-1')

        assert result['success'] is False
        assert result['error'] == 'Zapier webhook URL not configured'
        params = mock_execute.call_args[0][2]
        assert params[0] == 'failed'
        assert params[3] == 'log-1'

    def test_successful_executor(self, db_conn):
        action = {'id': 'act-1', 'name': 'book', 'action_type': 'calendar_booking', 'configuration': {}}
        day = (datetime.now() + timedelta(days=1)).strftime('%Y-%m-%d')
        with patch.object(actions, 'get_db_connection', return_value=db_conn), \
                patch.object(actions, 'fetch_one', side_effect=[action, {'id': 'log-1'}]), \
                patch.object(actions, 'execute') as mock_execute:
            result = execute_action('act-1', {'date': day, 'time': '23:59', 'attendeeName': 'Ann'})

        assert result['success'] is True
        assert result['error'] is None
        assert mock_execute.call_args[0][2][0] == 'success'
