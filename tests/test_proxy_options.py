"""
Tests for ProxyOptions validation and URL resolution.
"""

import logging

import pytest

from core.proxy import ProxiedRequest, ProxyConfigError, ProxyOptions


class TestValidation:

    def test_defaults(self):
        options = ProxyOptions(target='http://localhost:3000')
        assert options.path_rewrite == {'^/proxy': ''}
        assert options.change_origin is True
        assert options.xfwd is False
        assert callable(options.on_proxy_req)

    @pytest.mark.parametrize("target", [
        '',
        'localhost:3000',
        'ftp://localhost',
        'http://',
        None,
    ])
    def test_invalid_target(self, target):
        with pytest.raises(ProxyConfigError):
            ProxyOptions(target=target)

    def test_invalid_pattern(self):
        with pytest.raises(ProxyConfigError, match="path_rewrite"):
            ProxyOptions(target='http://localhost:3000', path_rewrite={'(': ''})

    def test_invalid_replacement(self):
        with pytest.raises(ProxyConfigError):
            ProxyOptions(target='http://localhost:3000', path_rewrite={'^/proxy': 1})

    def test_observer_must_be_callable(self):
        with pytest.raises(ProxyConfigError):
            ProxyOptions(target='http://localhost:3000', on_proxy_req='log')

    def test_config_error_is_value_error(self):
        assert issubclass(ProxyConfigError, ValueError)

    def test_frozen(self):
        options = ProxyOptions(target='http://localhost:3000')
        with pytest.raises(AttributeError):
            options.target = 'http://example.com'


class TestResolution:

    def test_trailing_slash_stripped(self):
        options = ProxyOptions(target='http://localhost:3000/')
        assert options.target == 'http://localhost:3000'
        assert options.resolve_url('/api/users') == 'http://localhost:3000/api/users'

    def test_query_appended(self):
        options = ProxyOptions(target='http://localhost:3000')
        assert options.resolve_url('/search', 'q=1') == 'http://localhost:3000/search?q=1'

    def test_target_host(self):
        assert ProxyOptions(target='https://example.com:8443/base').target_host == 'example.com:8443'

    def test_target_base_path_kept(self):
        options = ProxyOptions(target='https://example.com/base')
        assert options.resolve_url('/x') == 'https://example.com/base/x'


class TestFromConfig:

    def test_from_config_section(self):
        options = ProxyOptions.from_config({
            'target': 'http://backend:8080',
            'path_rewrite': {'^/api': ''},
            'change_origin': False,
            'xfwd': True,
        })
        assert options.target == 'http://backend:8080'
        assert options.path_rewrite == {'^/api': ''}
        assert options.change_origin is False
        assert options.xfwd is True

    def test_missing_target_rejected(self):
        with pytest.raises(ProxyConfigError):
            ProxyOptions.from_config({})

    def test_overrides(self):
        options = ProxyOptions.from_config({'target': 'http://a'}, target='http://b')
        assert options.target == 'http://b'


def test_default_observer_logs_resolved_url(caplog):
    options = ProxyOptions(target='http://localhost:3000')
    proxied = ProxiedRequest(
        method='GET',
        original_path='/proxy/api/users',
        rewritten_path='/api/users',
        query_string='page=2',
        url='http://localhost:3000/api/users?page=2',
        headers={},
    )

    with caplog.at_level(logging.INFO, logger='core.proxy.options'):
        options.on_proxy_req(proxied)

    assert "Proxying request to: http://localhost:3000/api/users?page=2" in caplog.text
