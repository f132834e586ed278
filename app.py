import os
import secrets
from datetime import datetime
from functools import wraps
from flask import Flask, g, request, jsonify
from tasks.celery_app import app as celery_app
from tasks.utils.errors import HandlerError
from tasks.utils.supabase_auth import get_user_from_token
from tasks.leads import extract_leads, extract_leads_cron
from tasks.crawl import crawl_website, crawl_website_task, daily_crawl_urls
from tasks.voice import (
    handle_vapi_webhook, fetch_vapi_calls, sync_voice_assistants,
    update_voice_assistant, validate_voice_connection, get_vapi_web_token,
)
from tasks.whatsapp import (
    sync_whatsapp_agents, sync_whatsapp_conversations, get_whatsapp_agent,
    update_whatsapp_agent, get_whatsapp_conversation, validate_elevenlabs_connection,
)
from tasks.chat import handle_chat
from tasks.actions import execute_action
from tasks.conversations import extract_parameters, detect_conversation_end
from tasks.tickets import create_support_ticket, send_admin_ticket_notification, send_ticket_reply_notification
from tasks.forms import submit_form
from tasks.notifications import send_notification, send_team_invite, send_customer_login_link, send_basic_email
from tasks.branding import get_branding_by_domain, get_customer_branding
from tasks.customers import create_customer_with_auth
from tasks.weekly_summary import send_weekly_summary
from tasks.error_reports import report_error

app = Flask(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type, x-api-key',
    'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
}


@app.before_request
def handle_preflight():
    if request.method == 'OPTIONS':
        return '', 200


@app.after_request
def add_cors_headers(response):
    for header, value in CORS_HEADERS.items():
        response.headers[header] = value
    return response


@app.errorhandler(HandlerError)
def handle_handler_error(e):
    return jsonify(e.to_dict()), e.status_code


def _api_key_error():
    """Return an error response when the X-API-Key check fails, else None."""
    api_key = request.headers.get('X-API-Key')
    expected_key = os.getenv('API_SECRET_KEY')

    if not api_key or not expected_key:
        return jsonify({'error': 'API key required', 'code': 'MISSING_API_KEY'}), 401

    if not secrets.compare_digest(api_key, expected_key):
        return jsonify({'error': 'Unauthorized', 'code': 'INVALID_API_KEY'}), 401

    # Optional: Check allowed origins (if needed)
    origin = request.headers.get('Origin')
    allowed_origins = os.getenv('ALLOWED_ORIGINS', '').split(',')
    if allowed_origins and allowed_origins != [''] and origin not in allowed_origins:
        return jsonify({'error': 'Forbidden origin'}), 403
    return None


def _bearer_user():
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None
    return get_user_from_token(auth_header[len('Bearer '):].strip())


def require_api_key(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        error = _api_key_error()
        if error:
            return error
        return f(*args, **kwargs)
    return decorated_function


def require_user(f):
    """Resolve the Supabase user behind the bearer token onto g.user."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not request.headers.get('Authorization'):
            return jsonify({'error': 'No authorization header'}), 401
        user = _bearer_user()
        if not user:
            return jsonify({'error': 'Unauthorized'}), 401
        g.user = user
        return f(*args, **kwargs)
    return decorated_function


def require_user_or_api_key(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if request.headers.get('X-API-Key'):
            error = _api_key_error()
            if error:
                return error
            g.user = None
            return f(*args, **kwargs)
        return require_user(f)(*args, **kwargs)
    return decorated_function


def _json_body():
    return request.get_json(silent=True) or {}


def _server_error(route: str, e: Exception):
    app.logger.error(f"[{route}] ❌ {e}")
    return jsonify({'error': 'Internal server error', 'message': str(e)}), 500


def _queued(message: str, task, **data):
    return jsonify({
        'success': True,
        'message': message,
        'data': {**data, 'celery_task_id': task.id},
    }), 202


# ----------------------------
# Ops
# ----------------------------

@app.route('/api/health', methods=['GET'])
def health_check():
    return jsonify({
        'status': 'healthy',
        'service': 'voxtro-api',
        'timestamp': datetime.utcnow().isoformat(),
    }), 200


@app.route('/api/task/<task_id>', methods=['GET'])
@require_api_key
def api_task_status(task_id):
    """Poll a Celery task started by one of the enqueue routes."""
    try:
        result = celery_app.AsyncResult(task_id)
        response = {
            'task_id': task_id,
            'status': result.status,
            'ready': result.ready(),
        }
        if result.ready():
            if result.successful():
                response['result'] = result.result
                response['success'] = True
            else:
                response['error'] = str(result.info)
                response['success'] = False
        else:
            response['message'] = 'Task is still processing'
        return jsonify(response), 200
    except Exception as e:
        return jsonify({'error': 'Internal server error', 'message': str(e), 'task_id': task_id}), 500


# ----------------------------
# Leads
# ----------------------------

@app.route('/api/leads/extract', methods=['POST'])
@require_user
def api_extract_leads():
    data = _json_body()
    customer_id = data.get('customerId')
    try:
        result = extract_leads(
            user_id=None if customer_id else g.user['id'],
            customer_id=customer_id,
            source_type=data.get('sourceType'),
            force_reanalyze=bool(data.get('forceReanalyze')),
        )
        return jsonify(result), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Leads', e)


@app.route('/api/leads/extract-cron', methods=['POST'])
@require_api_key
def api_extract_leads_cron():
    try:
        task = extract_leads_cron.delay()
        return _queued('Lead extraction task started', task)
    except Exception as e:
        return _server_error('Leads', e)


# ----------------------------
# Crawl
# ----------------------------

@app.route('/api/crawl/website', methods=['POST'])
@require_user
def api_crawl_website():
    """
    Crawl a chatbot's website into its knowledge base.

    Expected JSON payload:
    {
      "chatbotId": "...",          // required
      "websiteUrl": "https://...", // required
      "discoverOnly": false,       // optional, list pages without scraping
      "selectedPages": ["..."]     // optional, scrape only these URLs
    }

    Discover mode answers inline. A full crawl returns 202 with celery_task_id.
    """
    data = _json_body()
    chatbot_id = data.get('chatbotId')
    website_url = data.get('websiteUrl')
    if not chatbot_id or not website_url:
        return jsonify({'error': 'Missing required fields: chatbotId, websiteUrl'}), 400

    try:
        if data.get('discoverOnly'):
            result = crawl_website(g.user['id'], chatbot_id, website_url, discover_only=True)
            return jsonify(result), 200

        task = crawl_website_task.delay(g.user['id'], chatbot_id, website_url,
                                        selected_pages=data.get('selectedPages'))
        return _queued('Website crawl started', task, chatbot_id=chatbot_id, website_url=website_url)
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Crawl', e)


@app.route('/api/crawl/daily', methods=['POST'])
@require_api_key
def api_daily_crawl():
    try:
        task = daily_crawl_urls.delay()
        return _queued('Daily crawl task started', task)
    except Exception as e:
        return _server_error('Crawl', e)


# ----------------------------
# Voice (Vapi)
# ----------------------------

@app.route('/webhook/vapi', methods=['POST'])
def vapi_webhook():
    try:
        return jsonify(handle_vapi_webhook(_json_body())), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Vapi', e)


@app.route('/api/voice/calls/fetch', methods=['POST'])
@require_user
def api_fetch_vapi_calls():
    data = _json_body()
    try:
        return jsonify(fetch_vapi_calls(g.user['id'], data.get('assistantId'))), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Vapi', e)


@app.route('/api/voice/assistants/sync', methods=['POST'])
@require_user
def api_sync_voice_assistants():
    try:
        return jsonify(sync_voice_assistants(g.user['id'])), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Vapi', e)


@app.route('/api/voice/assistants/update', methods=['POST'])
@require_user
def api_update_voice_assistant():
    data = _json_body()
    try:
        result = update_voice_assistant(g.user['id'], data.get('assistantId'), data.get('updates') or {})
        return jsonify(result), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Vapi', e)


@app.route('/api/voice/connection/validate', methods=['POST'])
@require_user
def api_validate_voice_connection():
    data = _json_body()
    try:
        return jsonify(validate_voice_connection(data.get('apiKey'))), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Vapi', e)


@app.route('/api/voice/web-token', methods=['GET'])
@require_user
def api_vapi_web_token():
    try:
        return jsonify(get_vapi_web_token(g.user['id'])), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Vapi', e)


# ----------------------------
# WhatsApp (ElevenLabs)
# ----------------------------

@app.route('/api/whatsapp/agents/sync', methods=['POST'])
@require_user
def api_sync_whatsapp_agents():
    try:
        return jsonify(sync_whatsapp_agents(g.user['id'])), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('WhatsApp', e)


@app.route('/api/whatsapp/agents/get', methods=['POST'])
@require_user
def api_get_whatsapp_agent():
    data = _json_body()
    try:
        return jsonify(get_whatsapp_agent(g.user['id'], data.get('agentId'))), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('WhatsApp', e)


@app.route('/api/whatsapp/agents/update', methods=['POST'])
@require_user
def api_update_whatsapp_agent():
    data = _json_body()
    if not data.get('agentId'):
        return jsonify({'error': 'Agent ID is required'}), 400
    try:
        return jsonify(update_whatsapp_agent(g.user['id'], data['agentId'], data.get('updates'))), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('WhatsApp', e)


@app.route('/api/whatsapp/conversations/get', methods=['POST'])
@require_user
def api_get_whatsapp_conversation():
    data = _json_body()
    if not data.get('conversationId'):
        return jsonify({'error': 'Conversation ID is required'}), 400
    try:
        return jsonify(get_whatsapp_conversation(g.user['id'], data['conversationId'])), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('WhatsApp', e)


@app.route('/api/whatsapp/connection/validate', methods=['POST'])
@require_user
def api_validate_elevenlabs_connection():
    data = _json_body()
    try:
        return jsonify(validate_elevenlabs_connection(data.get('apiKey'))), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('WhatsApp', e)


@app.route('/api/whatsapp/conversations/sync', methods=['POST'])
@require_api_key
def api_sync_whatsapp_conversations():
    data = _json_body()
    try:
        task = sync_whatsapp_conversations.delay(user_id=data.get('userId'))
        return _queued('WhatsApp conversation sync started', task)
    except Exception as e:
        return _server_error('WhatsApp', e)


# ----------------------------
# Chat and actions
# ----------------------------

@app.route('/api/chat', methods=['POST'])
def api_chat():
    """
    One chat turn for the embeddable widget or the dashboard preview.

    Expected JSON payload:
    {
      "chatbotId": "...",                        // required
      "messages": [{"role": "user", "content": "..."}], // required
      "visitorId": "...",                        // optional
      "conversationId": "...",                   // optional
      "preview": false,                          // optional
      "previewConfig": {...}                     // optional, unsaved chatbot settings
    }
    """
    data = _json_body()
    try:
        result = handle_chat(
            data.get('chatbotId'),
            data.get('messages'),
            visitor_id=data.get('visitorId'),
            conversation_id=data.get('conversationId'),
            preview=bool(data.get('preview')),
            preview_config=data.get('previewConfig'),
        )
        return jsonify(result), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Chat', e)


@app.route('/api/actions/execute', methods=['POST'])
def api_execute_action():
    data = _json_body()
    try:
        result = execute_action(data.get('actionId'), data.get('inputData'), data.get('conversationId'))
        return jsonify(result), 200 if result.get('success') else 500
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Actions', e)


# ----------------------------
# Conversations
# ----------------------------

@app.route('/api/conversations/extract-parameters', methods=['POST'])
def api_extract_parameters():
    data = _json_body()
    try:
        return jsonify(extract_parameters(data.get('conversationId'), data.get('messages'))), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Parameters', e)


@app.route('/api/conversations/detect-end', methods=['POST'])
def api_detect_conversation_end():
    """Force-end one visitor's conversation (widget), or sweep idle ones (cron, api key)."""
    data = _json_body()
    force_end = bool(data.get('forceEnd'))
    if not force_end:
        error = _api_key_error()
        if error:
            return error
    elif not data.get('chatbotId') or not data.get('visitorId'):
        return jsonify({'error': 'chatbotId and visitorId are required to force end'}), 400

    try:
        result = detect_conversation_end(
            force_end=force_end,
            chatbot_id=data.get('chatbotId'),
            visitor_id=data.get('visitorId'),
        )
        return jsonify(result), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('ConversationEnd', e)


# ----------------------------
# Tickets
# ----------------------------

@app.route('/api/tickets', methods=['POST'])
def api_create_ticket():
    try:
        return jsonify(create_support_ticket(_json_body())), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Tickets', e)


@app.route('/api/tickets/notify-admin', methods=['POST'])
@require_user
def api_notify_admin_ticket():
    try:
        return jsonify(send_admin_ticket_notification(_json_body())), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Tickets', e)


@app.route('/api/tickets/notify-reply', methods=['POST'])
@require_user
def api_notify_ticket_reply():
    try:
        return jsonify(send_ticket_reply_notification(_json_body())), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Tickets', e)


# ----------------------------
# Forms
# ----------------------------

@app.route('/api/forms/submit', methods=['POST'])
def api_submit_form():
    data = _json_body()
    try:
        result = submit_form(
            data.get('formId'),
            data.get('submittedData'),
            conversation_id=data.get('conversationId'),
            visitor_id=data.get('visitorId'),
        )
        return jsonify(result), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Forms', e)


# ----------------------------
# Notifications
# ----------------------------

@app.route('/api/notifications/send', methods=['POST'])
@require_user_or_api_key
def api_send_notification():
    data = _json_body()
    user_id = data.get('userId') or (g.user or {}).get('id')
    if not user_id or not data.get('type'):
        return jsonify({'error': 'Missing required fields: userId, type'}), 400
    try:
        result = send_notification(
            user_id,
            data['type'],
            data.get('chatbotName') or 'your chatbot',
            conversation_id=data.get('conversationId'),
            user_email=data.get('userEmail'),
            error_message=data.get('errorMessage'),
        )
        return jsonify(result), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Notifications', e)


@app.route('/api/notifications/team-invite', methods=['POST'])
@require_user
def api_send_team_invite():
    data = _json_body()
    try:
        result = send_team_invite(data.get('email'), data.get('teamName'), data.get('inviteUrl'),
                                  inviter_name=data.get('inviterName'))
        return jsonify(result), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Notifications', e)


@app.route('/api/notifications/customer-login-link', methods=['POST'])
@require_user
def api_send_customer_login_link():
    data = _json_body()
    try:
        result = send_customer_login_link(data.get('email'), data.get('full_name'),
                                          chatbot_name=data.get('chatbot_name'))
        return jsonify(result), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Notifications', e)


@app.route('/api/notifications/basic-email', methods=['POST'])
@require_user
def api_send_basic_email():
    data = _json_body()
    try:
        result = send_basic_email(data.get('email'), data.get('subject'), data.get('message'))
        return jsonify(result), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Notifications', e)


# ----------------------------
# Branding
# ----------------------------

@app.route('/api/branding/domain', methods=['GET', 'POST'])
def api_branding_by_domain():
    domain = request.args.get('domain') if request.method == 'GET' else _json_body().get('domain')
    try:
        return jsonify(get_branding_by_domain(domain)), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Branding', e)


@app.route('/api/branding/customer', methods=['POST'])
def api_customer_branding():
    return jsonify(get_customer_branding(_json_body().get('email'))), 200


# ----------------------------
# Customers
# ----------------------------

@app.route('/api/customers', methods=['POST'])
@require_user
def api_create_customer():
    data = _json_body()
    try:
        result = create_customer_with_auth(
            data.get('email'),
            data.get('full_name'),
            data.get('password'),
            company_name=data.get('company_name'),
            assigned_chatbots=data.get('chatbot_ids') or data.get('assigned_chatbots'),
            assigned_by=g.user['id'],
        )
        return jsonify(result), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('Customers', e)


# ----------------------------
# Weekly summaries and error reports
# ----------------------------

@app.route('/api/summaries/weekly', methods=['POST'])
@require_api_key
def api_weekly_summary():
    data = _json_body()
    try:
        task = send_weekly_summary.delay(customer_email=data.get('customerEmail'))
        return _queued('Weekly summary task started', task)
    except Exception as e:
        return _server_error('WeeklySummary', e)


@app.route('/api/errors/report', methods=['POST'])
def api_report_error():
    try:
        return jsonify(report_error(_json_body())), 200
    except HandlerError:
        raise
    except Exception as e:
        return _server_error('ErrorReports', e)


if __name__ == '__main__':
    app.run(debug=os.getenv('FLASK_DEBUG') == '1', port=int(os.getenv('PORT', '5000')))
