from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from tasks import leads
from tasks.leads import analyze_transcript_for_lead, build_transcript, extract_leads, extract_leads_cron


def _completion(content):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


def test_build_transcript_with_phone_prefix():
    messages = [{'role': 'user', 'content': 'Hi'}, {'role': 'assistant', 'content': 'Hello'}]
    assert build_transcript(messages, '[WhatsApp user phone number: +15551234567]') == \
        '[WhatsApp user phone number: +15551234567]\n\nuser: Hi\nassistant: Hello'


class TestAnalyzeTranscript:
    def test_not_configured(self):
        with patch.object(leads, 'get_openai_client', return_value=None):
            verdict = analyze_transcript_for_lead('user: hi')
        assert verdict['is_valid_lead'] is False
        assert verdict['reason'] == 'OpenAI not configured'

    def test_fenced_json_answer(self):
        client = MagicMock()
        client.chat.completions.create.return_value = _completion(
            '```json\n{"is_valid_lead": true, "name": "Ann Lee", "phone_number": "5551234567", '
            '"email": null, "confidence": 92, "reason": "Gave name and number"}\n```'
        )
        with patch.object(leads, 'get_openai_client', return_value=client):
            verdict = analyze_transcript_for_lead('user: I am Ann Lee, 5551234567')

        assert verdict == {'is_valid_lead': True, 'name': 'Ann Lee', 'phone_number': '5551234567', 'email': None,
                           'confidence': 92, 'reason': 'Gave name and number'}
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs['temperature'] == 0.1
        assert kwargs['max_tokens'] == 500

    def test_malformed_answer_is_retried_once(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = [
            _completion('Sure! Here is the analysis'),
            _completion('{"is_valid_lead": false, "reason": "No phone"}'),
        ]
        with patch.object(leads, 'get_openai_client', return_value=client):
            verdict = analyze_transcript_for_lead('user: hi')
        assert client.chat.completions.create.call_count == 2
        assert verdict['reason'] == 'No phone'

    def test_gives_up_after_two_bad_answers(self):
        client = MagicMock()
        client.chat.completions.create.return_value = _completion('not json')
        with patch.object(leads, 'get_openai_client', return_value=client):
            verdict = analyze_transcript_for_lead('user: hi')
        assert verdict['reason'] == 'Failed to parse AI response'


def test_extract_leads_for_admin(db_conn):
    now = datetime.now(timezone.utc)
    rows = [
        {'id': 'conv-1', 'agent_id': 'bot-1', 'occurred_at': now, 'lead_analyzed_at': None,
         'agent_name': 'Shop Bot', 'agent_user_id': 'user-1'},
        {'id': 'conv-2', 'agent_id': 'bot-1', 'occurred_at': now, 'lead_analyzed_at': now,
         'agent_name': 'Shop Bot', 'agent_user_id': 'user-1'},
    ]
    fetch_results = [
        [{'id': 'bot-1'}],
        rows,
        [{'role': 'user', 'content': 'I am Ann Lee, call 5551234567'}],
        [{'parameter_name': 'budget', 'parameter_value': '500'},
         {'parameter_name': 'name', 'parameter_value': 'Ann Lee'}],
    ]
    verdict = {'is_valid_lead': True, 'name': 'Ann Lee', 'phone_number': '5551234567', 'email': None,
               'confidence': 90, 'reason': 'ok'}
    with patch.object(leads, 'get_db_connection', return_value=db_conn), \
            patch.object(leads, 'fetch_all', side_effect=fetch_results), \
            patch.object(leads, 'execute') as mock_execute, \
            patch.object(leads, 'analyze_transcript_for_lead', return_value=verdict):
        result = extract_leads(user_id='user-1', source_type='chatbot')

    assert result['leads_extracted'] == 1
    assert result['total_processed'] == 1
    assert result['skipped_already_analyzed'] == 1
    assert result['message'] == 'Analyzed 1 new conversations (1 already analyzed), found 1 valid leads'

    insert_params = mock_execute.call_args[0][2]
    assert insert_params[0] == 'chatbot'
    assert insert_params[3] == 'conv-1'
    assert insert_params[7].adapted == {'budget': '500', 'ai_confidence': '90', 'ai_reason': 'ok'}


def test_extract_leads_without_agents(db_conn):
    with patch.object(leads, 'get_db_connection', return_value=db_conn), \
            patch.object(leads, 'fetch_all', return_value=[]):
        result = extract_leads(customer_id='cust-1')
    assert result['total_processed'] == 0
    assert result['message'] == 'Analyzed 0 conversations, found 0 valid leads'


def test_cron_sweep_records_per_source_failures(db_conn):
    def fake_fetch_all(conn, sql, params=None):
        if 'voice_assistant_calls' in sql:
            raise RuntimeError('relation missing')
        return []

    with patch.object(leads, 'get_db_connection', return_value=db_conn), \
            patch.object(leads, 'fetch_all', side_effect=fake_fetch_all):
        result = extract_leads_cron()

    by_source = result['summary']['bySource']
    assert by_source['chatbot'] == {'processed': 0, 'valid': 0}
    assert by_source['voice']['error'] == 'relation missing'
    assert by_source['whatsapp'] == {'processed': 0, 'valid': 0}
    assert result['summary']['validLeadsExtracted'] == 0


def test_llm_helpers():
    from tasks.utils.llm_utils import calculate_cost, estimate_tokens, parse_model_json_output

    assert parse_model_json_output('```\n{"a": 1}\n```') == ({'a': 1}, '```\n{"a": 1}\n```')
    assert parse_model_json_output('nope')[0] is None
    assert estimate_tokens('abcde') == 2
    assert calculate_cost('gpt-4o', 1000, 1000) == pytest.approx(0.0125)
    assert calculate_cost('unknown-model', 1000, 0) == pytest.approx(0.00015)
