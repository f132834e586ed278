from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from tasks import forms
from tasks.forms import format_submission_html, submit_form
from tasks.utils.errors import HandlerError

FORM = {
    'id': 'form-1', 'form_name': 'contact', 'form_title': 'Contact us', 'chatbot_name': 'Shop Bot',
    'chatbot_user_id': 'owner-1', 'email_subject': 'New lead', 'success_message': 'Thanks!',
    'notify_email': True, 'notification_email': 'sales@shop.com',
    'webhook_enabled': True, 'webhook_url': 'https://hooks.example.com/forms',
}
SUBMISSION = {'id': 99, 'submitted_at': datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)}


def test_validation():
    with pytest.raises(HandlerError) as exc:
        submit_form('form-1', {})
    assert exc.value.to_dict()['success'] is False


def test_inactive_form(db_conn):
    with patch.object(forms, 'get_db_connection', return_value=db_conn), \
            patch.object(forms, 'fetch_one', return_value=None):
        with pytest.raises(HandlerError, match='Form not found or inactive'):
            submit_form('form-1', {'name': 'Ann'})


def test_submission_fans_out(db_conn):
    with patch.object(forms, 'get_db_connection', return_value=db_conn), \
            patch.object(forms, 'fetch_one', side_effect=[dict(FORM), SUBMISSION]) as mock_fetch, \
            patch.object(forms, 'send_email', return_value={'success': True}) as mock_send, \
            patch.object(forms.requests, 'post', return_value=MagicMock(ok=True, status_code=200)) as mock_post, \
            patch.object(forms, 'notify_owner') as mock_notify:
        result = submit_form('form-1', {'name': 'Ann', 'email': 'ann@example.com'}, 'conv-1', 'visitor-1')

    assert result == {'success': True, 'submissionId': '99', 'message': 'Thanks!'}
    assert mock_fetch.call_args[0][2][2].adapted == {'name': 'Ann', 'email': 'ann@example.com'}
    assert mock_send.call_args[0][:2] == ('sales@shop.com', 'New lead')

    payload = mock_post.call_args.kwargs['json']
    assert payload['submission_id'] == '99'
    assert payload['submitted_at'] == '2025-01-01T10:00:00+00:00'
    assert payload['visitor_id'] == 'visitor-1'
    mock_notify.assert_called_once_with('owner-1', 'form_submission', 'Shop Bot', 'conv-1')


def test_webhook_failure_does_not_fail_submission(db_conn):
    form = {**FORM, 'notify_email': False}
    with patch.object(forms, 'get_db_connection', return_value=db_conn), \
            patch.object(forms, 'fetch_one', side_effect=[form, SUBMISSION]), \
            patch.object(forms.requests, 'post', side_effect=requests.ConnectionError('down')), \
            patch.object(forms, 'notify_owner'):
        assert submit_form('form-1', {'name': 'Ann'})['success'] is True


def test_submission_html_escapes_values():
    html = format_submission_html(FORM, {'name': '<b>Ann</b>'})
    assert '<strong>name:</strong> &lt;b&gt;Ann&lt;/b&gt;' in html
    assert '<h2>New lead</h2>' in html
