import os

os.environ['API_SECRET_KEY'] = 'test-secret'
os.environ['ALLOWED_ORIGINS'] = ''
os.environ['CELERY_BROKER_URL'] = 'memory://'
os.environ['CELERY_RESULT_BACKEND'] = 'cache+memory://'
os.environ['SUPABASE_URL'] = 'https://project.supabase.co'
os.environ['SUPABASE_SERVICE_ROLE_KEY'] = 'service-role-key'
os.environ['DATABASE_URL'] = 'postgresql://localhost/voxtro_test'
os.environ['APP_BASE_URL'] = 'https://app.voxtro.io'
os.environ.pop('SENDGRID_API_KEY', None)
os.environ.pop('OPENAI_API_KEY', None)
os.environ.pop('REDIS_URL', None)

import pytest
from unittest.mock import MagicMock, patch

TEST_USER = {'id': 'user-1', 'email': 'owner@example.com'}


@pytest.fixture
def client():
    from app import app
    app.config['TESTING'] = True
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def api_headers():
    return {'X-API-Key': 'test-secret'}


@pytest.fixture
def user_headers():
    with patch('app.get_user_from_token', return_value=dict(TEST_USER)):
        yield {'Authorization': 'Bearer good-token'}


@pytest.fixture
def db_conn():
    """A connection stand-in that supports `with conn:` and close()."""
    return MagicMock()
