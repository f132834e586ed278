from unittest.mock import patch

import pytest

from tasks import branding
from tasks.branding import DEFAULT_BRANDING, get_branding_by_domain, get_customer_branding, normalize_domain
from tasks.utils.errors import HandlerError


def test_normalize_domain():
    assert normalize_domain('  Chat.Shop.COM/ ') == 'chat.shop.com'


class TestByDomain:
    def test_requires_domain(self):
        with pytest.raises(HandlerError, match='Domain parameter is required'):
            get_branding_by_domain('')

    def test_unknown_domain(self, db_conn):
        with patch.object(branding, 'get_db_connection', return_value=db_conn), \
                patch.object(branding, 'fetch_all', return_value=[]):
            with pytest.raises(HandlerError) as exc:
                get_branding_by_domain('chat.shop.com')
        assert exc.value.status_code == 404
        assert exc.value.to_dict()['found'] is False

    def test_found(self, db_conn):
        row = {'user_id': 'owner-1', 'logo_url': 'https://cdn/logo.png', 'primary_color': '#000',
               'secondary_color': '#111'}
        with patch.object(branding, 'get_db_connection', return_value=db_conn), \
                patch.object(branding, 'fetch_all', return_value=[row]) as mock_fetch:
            result = get_branding_by_domain('Chat.Shop.com/')
        assert result == {'found': True, 'user_id': 'owner-1',
                          'branding': {'logo_url': 'https://cdn/logo.png', 'primary_color': '#000',
                                       'secondary_color': '#111'}}
        assert mock_fetch.call_args[0][2] == ('chat.shop.com',)


class TestCustomerBranding:
    def test_bad_email_gets_defaults(self):
        assert get_customer_branding('not-an-email') == DEFAULT_BRANDING

    def test_unassigned_customer_gets_defaults(self, db_conn):
        with patch.object(branding, 'get_db_connection', return_value=db_conn), \
                patch.object(branding, 'fetch_one', return_value={'id': 'cust-1'}), \
                patch.object(branding, 'find_assigning_admin', return_value=None):
            assert get_customer_branding('ann@example.com') == DEFAULT_BRANDING

    def test_admin_settings_fill_missing_colors(self, db_conn):
        settings = {'logo_url': 'https://cdn/logo.png', 'primary_color': '#123456', 'secondary_color': None}
        with patch.object(branding, 'get_db_connection', return_value=db_conn), \
                patch.object(branding, 'fetch_one', side_effect=[{'id': 'cust-1'}, settings]), \
                patch.object(branding, 'find_assigning_admin', return_value='admin-1'):
            assert get_customer_branding('ann@example.com') == {
                'logo_url': 'https://cdn/logo.png', 'primary_color': '#123456',
                'secondary_color': DEFAULT_BRANDING['secondary_color'],
            }

    def test_database_failure_gets_defaults(self):
        with patch.object(branding, 'get_db_connection', side_effect=RuntimeError('DATABASE_URL not set')):
            assert get_customer_branding('ann@example.com') == DEFAULT_BRANDING
