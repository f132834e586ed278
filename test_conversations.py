from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from tasks import conversations
from tasks.conversations import (
    clean_name,
    clean_phone,
    detect_conversation_end,
    evaluate_conditions,
    evaluate_rule,
    evaluate_value,
    extract_parameter_value,
    extract_parameters,
    render_email_template,
)
from tasks.utils.errors import HandlerError


class TestCleaning:
    def test_clean_name_drops_filler_and_digits(self):
        assert clean_name("my name is John Smith 555") == "John Smith"

    def test_clean_name_rejects_long_phrases(self):
        assert clean_name("I would really like to book a table") is None

    def test_clean_phone_needs_ten_digits(self):
        assert clean_phone("(555) 123-4567") == "5551234567"
        assert clean_phone("555-1234") is None


class TestExtractParameterValue:
    def test_builtin_name_heuristic(self):
        text = "Hi there, my name is John Smith and my phone is 5551234567"
        assert extract_parameter_value(text, {}, 'name') == "John Smith"

    def test_builtin_phone_heuristic(self):
        assert extract_parameter_value("call me on 555-123-4567 today", {}, 'phone_number') == "5551234567"

    def test_builtin_email_heuristic(self):
        assert extract_parameter_value("reach me at jane@example.com please", {}, 'customer_email') == \
            "jane@example.com"

    def test_wildcard_pattern_captures_words(self):
        rules = {'patterns': ['my name is *']}
        assert extract_parameter_value("Hello, my name is Maria Lopez 5551234567", rules, 'customer') == \
            "Maria Lopez"

    def test_literal_pattern_returns_keyword(self):
        rules = {'patterns': ['premium']}
        assert extract_parameter_value("I want the Premium plan", rules, 'plan') == 'premium'

    def test_regex_rule_uses_capture_group(self):
        rules = {'regex': [r'order #(\d+)']}
        assert extract_parameter_value("my order #12345 is late", rules, 'order_id') == "12345"

    def test_validation_regex_rejects_candidate(self):
        rules = {'regex': [r'code (\w+)'], 'validation_regex': r'^\d+$'}
        assert extract_parameter_value("the code abc", rules, 'promo') is None

    def test_invalid_regex_is_skipped(self):
        rules = {'regex': ['(unclosed', r'ref (\w+)']}
        assert extract_parameter_value("ref XY12", rules, 'reference') == "XY12"

    def test_empty_text(self):
        assert extract_parameter_value('', {'patterns': ['*']}, 'name') is None


class TestEvaluateValue:
    def test_string_operators_ignore_case_by_default(self):
        assert evaluate_value("Hello World", 'contains', 'world')
        assert not evaluate_value("Hello World", 'contains', 'world', case_sensitive=True)
        assert evaluate_value("Hello", 'starts_with', 'he')
        assert evaluate_value("Hello", 'not_equals', 'bye')

    def test_numeric_operators(self):
        assert evaluate_value('5', 'greater_than', '3')
        assert evaluate_value('', 'less_than', 1)
        assert not evaluate_value('abc', 'greater_than', '1')

    def test_unknown_operator(self):
        assert not evaluate_value('a', 'matches', 'a')


class TestConditions:
    def test_no_conditions_means_send(self):
        assert evaluate_conditions(None, {})
        assert evaluate_conditions({'groups': []}, {})

    def test_flat_rules_with_logic(self):
        rules = [{'type': 'basic', 'value': 'true'}, {'type': 'basic', 'value': 'false'}]
        assert evaluate_conditions({'rules': rules, 'logic': 'OR'}, {})
        assert not evaluate_conditions({'rules': rules, 'logic': 'AND'}, {})

    def test_grouped_rules(self):
        data = {
            'messages': [{'role': 'user', 'content': 'I need a refund'}, {'role': 'assistant', 'content': 'Sure'}],
            'custom_parameters': {'plan': 'premium'},
        }
        conditions = {
            'logic': 'AND',
            'groups': [
                {'logic': 'AND', 'rules': [
                    {'type': 'message_content', 'field': 'user_message', 'operator': 'contains', 'value': 'refund'},
                ]},
                {'logic': 'OR', 'rules': [
                    {'type': 'custom_parameter', 'field': 'plan', 'operator': 'equals', 'value': 'basic'},
                    {'type': 'custom_parameter', 'field': 'plan', 'operator': 'equals', 'value': 'Premium'},
                ]},
            ],
        }
        assert evaluate_conditions(conditions, data)

    def test_message_content_respects_role(self):
        data = {'messages': [{'role': 'assistant', 'content': 'refund issued'}]}
        rule = {'type': 'message_content', 'field': 'user_message', 'operator': 'contains', 'value': 'refund'}
        assert not evaluate_rule(rule, data)

    def test_parameter_exists_reads_tool_parameters(self):
        data = {'tool_parameters': {'tool_email': 'a@b.co'}, 'custom_parameters': {}}
        assert evaluate_rule({'type': 'parameter_exists', 'parameter_name': 'tool_email', 'operator': 'exists'}, data)
        assert evaluate_rule({'type': 'parameter_exists', 'parameter_name': 'name', 'operator': 'not_exists'}, data)


class TestRenderEmailTemplate:
    def test_custom_template_substitutes_parameters(self):
        data = {'bot_name': 'Support Bot', 'custom_parameters': {'name': 'Ann'},
                'tool_parameters': {'tool_order': 'A-1'}}
        html = render_email_template("{{bot_name}} spoke with {{name}} about {{tool_order}} ({{user_name}})", data)
        assert html == "Support Bot spoke with Ann about A-1 (Unknown User)"

    def test_default_template_escapes_values(self):
        html = render_email_template(None, {'bot_name': '<b>Bot</b>', 'first_message': 'hi', 'last_message': 'bye',
                                            'timeout_minutes': 30})
        assert '&lt;b&gt;Bot&lt;/b&gt;' in html
        assert '<b>Bot</b>' not in html


class TestExtractParameters:
    def test_missing_fields(self):
        with pytest.raises(HandlerError) as exc:
            extract_parameters('', [])
        assert exc.value.status_code == 400

    def test_unknown_conversation(self, db_conn):
        with patch.object(conversations, 'get_db_connection', return_value=db_conn), \
                patch.object(conversations, 'fetch_one', return_value=None):
            with pytest.raises(HandlerError) as exc:
                extract_parameters('conv-1', [])
        assert exc.value.status_code == 404

    def test_no_parameters_defined(self, db_conn):
        with patch.object(conversations, 'get_db_connection', return_value=db_conn), \
                patch.object(conversations, 'fetch_one', return_value={'chatbot_id': 'bot-1'}), \
                patch.object(conversations, 'fetch_all', return_value=[]):
            result = extract_parameters('conv-1', [{'role': 'user', 'content': 'hi'}])
        assert result == {'message': 'No custom parameters defined', 'extracted': {}, 'totalParameters': 0}

    def test_contact_message_is_preferred_for_name(self, db_conn):
        messages = [
            {'role': 'user', 'content': 'this is Robert speaking'},
            {'role': 'assistant', 'content': 'Thanks! Can I get your details?'},
            {'role': 'user', 'content': 'my name is Alice Wong 5551234567'},
        ]
        params = [
            {'parameter_name': 'name', 'extraction_rules': {}},
            {'parameter_name': 'phone_number', 'extraction_rules': {}},
            {'parameter_name': 'budget', 'extraction_rules': {'regex': [r'budget of \$?(\d+)']}},
        ]
        with patch.object(conversations, 'get_db_connection', return_value=db_conn), \
                patch.object(conversations, 'fetch_one', return_value={'chatbot_id': 'bot-1'}), \
                patch.object(conversations, 'fetch_all', return_value=params), \
                patch.object(conversations, 'execute') as mock_execute:
            result = extract_parameters('conv-1', messages)

        assert result['extracted'] == {'name': 'Alice Wong', 'phone_number': '5551234567'}
        assert result['totalParameters'] == 3
        assert mock_execute.call_count == 2
        db_conn.close.assert_called_once()


class TestDetectConversationEnd:
    def test_force_end(self, db_conn):
        with patch.object(conversations, 'get_db_connection', return_value=db_conn), \
                patch.object(conversations, 'execute') as mock_execute:
            result = detect_conversation_end(force_end=True, chatbot_id='bot-1', visitor_id='v-1')
        assert result == {'success': True, 'message': 'Conversation force ended'}
        assert mock_execute.call_args[0][2] == ('bot-1', 'v-1')

    def test_nothing_to_check(self, db_conn):
        with patch.object(conversations, 'get_db_connection', return_value=db_conn), \
                patch.object(conversations, 'fetch_all', return_value=[]):
            result = detect_conversation_end()
        assert result['processed'] == 0
        assert result['total_checked'] == 0

    def test_idle_conversation_is_ended_and_emailed(self, db_conn):
        now = datetime.now(timezone.utc)
        conv = {
            'id': 'conv-1', 'chatbot_id': 'bot-1', 'visitor_id': 'v-1', 'name': 'Support Bot', 'user_id': 'user-1',
            'session_timeout_minutes': 30, 'end_chat_notification_email': 'owner@example.com',
            'email_template': None, 'email_conditions': None,
        }
        messages = [
            {'role': 'user', 'content': 'hi', 'created_at': now - timedelta(hours=2)},
            {'role': 'assistant', 'content': 'hello', 'created_at': now - timedelta(minutes=90)},
        ]
        fetch_results = [[conv], messages, [{'parameter_name': 'name', 'parameter_value': 'Ann'}], []]
        with patch.object(conversations, 'get_db_connection', return_value=db_conn), \
                patch.object(conversations, 'fetch_all', side_effect=fetch_results), \
                patch.object(conversations, 'extract_parameters') as mock_extract, \
                patch.object(conversations, 'execute') as mock_execute, \
                patch.object(conversations, 'send_email', return_value={'success': True}) as mock_send:
            result = detect_conversation_end()

        assert result['processed'] == 1
        assert result['total_checked'] == 1
        mock_extract.assert_called_once_with('conv-1', messages)
        assert "status = 'ended'" in mock_execute.call_args[0][1]
        to, subject, _ = mock_send.call_args[0]
        assert to == 'owner@example.com'
        assert subject == 'Chat session ended - Support Bot'

    def test_recent_conversation_is_left_open(self, db_conn):
        now = datetime.now(timezone.utc)
        conv = {'id': 'conv-1', 'name': 'Bot', 'session_timeout_minutes': 30,
                'end_chat_notification_email': 'owner@example.com'}
        messages = [{'role': 'user', 'content': 'hi', 'created_at': now - timedelta(minutes=5)}]
        with patch.object(conversations, 'get_db_connection', return_value=db_conn), \
                patch.object(conversations, 'fetch_all', side_effect=[[conv], messages]), \
                patch.object(conversations, 'send_email') as mock_send:
            result = detect_conversation_end()
        assert result['processed'] == 0
        mock_send.assert_not_called()
