from unittest.mock import patch

import pytest

from tasks import notifications
from tasks.notifications import (
    notify_owner,
    render_notification,
    send_basic_email,
    send_customer_login_link,
    send_notification,
    send_team_invite,
)
from tasks.utils.errors import HandlerError

SENT = {'success': True, 'status_code': 202}


class TestSendNotification:
    def test_validation(self):
        with pytest.raises(HandlerError, match='Missing required fields'):
            send_notification('', 'chat_started', 'Bot')
        with pytest.raises(HandlerError, match='Invalid notification type'):
            send_notification('user-1', 'chat_exploded', 'Bot')

    def test_without_preferences(self):
        with patch.object(notifications, '_load_preferences', return_value=None), \
                patch.object(notifications, 'send_email') as mock_send:
            assert send_notification('user-1', 'chat_started', 'Bot') == {'message': 'No preferences found'}
        mock_send.assert_not_called()

    def test_disabled_event(self):
        with patch.object(notifications, '_load_preferences', return_value={'chat_started': False}):
            assert send_notification('user-1', 'chat_started', 'Bot') == {'message': 'Notification disabled'}

    def test_form_submission_defaults_on(self):
        prefs = {'notification_email': 'alerts@shop.com'}
        with patch.object(notifications, '_load_preferences', return_value=prefs), \
                patch.object(notifications, 'send_email', return_value=SENT) as mock_send:
            assert send_notification('user-1', 'form_submission', 'Shop Bot')['success'] is True
        assert mock_send.call_args[0][:2] == ('alerts@shop.com', 'New form submission for Shop Bot')

    def test_falls_back_to_profile_email(self):
        with patch.object(notifications, '_load_preferences', return_value={'chat_ended': True}), \
                patch.object(notifications, '_load_profile_email', return_value='owner@shop.com'), \
                patch.object(notifications, 'send_email', return_value=SENT) as mock_send:
            send_notification('user-1', 'chat_ended', 'Shop Bot', 'conv-1')
        assert mock_send.call_args[0][0] == 'owner@shop.com'

    def test_no_recipient(self):
        with patch.object(notifications, '_load_preferences', return_value={'chat_ended': True}), \
                patch.object(notifications, '_load_profile_email', return_value=None):
            with pytest.raises(HandlerError, match='User email not found'):
                send_notification('user-1', 'chat_ended', 'Shop Bot')

    def test_send_failure(self):
        with patch.object(notifications, '_load_preferences', return_value={'chat_error': True}), \
                patch.object(notifications, 'send_email', return_value={'success': False, 'error': 'quota'}):
            with pytest.raises(HandlerError) as exc:
                send_notification('user-1', 'chat_error', 'Bot', user_email='owner@shop.com')
        assert exc.value.status_code == 500


def test_render_error_notification_shows_details():
    subject, html = render_notification('chat_error', 'Shop <Bot>', 'conv-1', 'Token limit')
    assert subject == 'Error occurred in Shop <Bot>'
    assert 'Shop &lt;Bot&gt;' in html
    assert '<strong>Error:</strong> Token limit' in html
    assert 'conv-1' in html
    assert '{{' not in html


def test_render_notification_drops_empty_details():
    _, html = render_notification('chat_started', 'Bot', None)
    assert 'Error:' not in html
    assert 'N/A' in html


def test_notify_owner_swallows_failures():
    with patch.object(notifications, 'send_notification', side_effect=HandlerError('User email not found')):
        notify_owner('user-1', 'chat_error', 'Bot', 'conv-1', error_message='boom')
    with patch.object(notifications, 'send_notification') as mock_send:
        notify_owner(None, 'chat_error', 'Bot')
    mock_send.assert_not_called()


class TestTransactionalEmails:
    def test_team_invite(self):
        with patch.object(notifications, 'send_email', return_value=SENT) as mock_send:
            result = send_team_invite('new@shop.com', 'Support', 'https://app.voxtro.io/invite/abc', 'Dana')
        assert result['message'] == 'Invitation sent successfully'
        to, subject, html = mock_send.call_args[0]
        assert subject == "You've been invited to join Support on Voxtro"
        assert 'https://app.voxtro.io/invite/abc' in html
        assert 'Dana' in html

    def test_team_invite_missing_fields(self):
        with pytest.raises(HandlerError):
            send_team_invite('new@shop.com', '', 'https://x')

    def test_customer_login_link_uses_chatbot_as_sender(self):
        with patch.object(notifications, 'send_email', return_value=SENT) as mock_send:
            send_customer_login_link('ann@example.com', 'Ann', 'Shop Bot')
        assert mock_send.call_args.kwargs['from_name'] == 'Shop Bot'
        assert '/customer-login' in mock_send.call_args[0][2]

    def test_basic_email(self):
        with patch.object(notifications, 'send_email', return_value=SENT) as mock_send:
            send_basic_email('ann@example.com', 'Hello', 'Line one\nLine two')
        assert 'Line one<br>Line two' in mock_send.call_args[0][2]

    def test_basic_email_failure(self):
        with patch.object(notifications, 'send_email', return_value={'success': False, 'error': 'bad key'}):
            with pytest.raises(HandlerError, match='Failed to send email: bad key'):
                send_basic_email('ann@example.com', 'Hello', 'Hi')
