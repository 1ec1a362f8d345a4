"""
Tests for the command line entry point.
"""

import logging
import sys
from unittest.mock import patch

import pytest

import main
from core.config_manager import ConfigManager
from core.proxy_manager import ProxyServer
from core.tunnel_manager import TunnelError


class TestOverrides:

    def test_cli_values_override_config(self, tmp_path):
        config = ConfigManager(tmp_path / 'config.json')
        args = main.parse_args([
            '--port', '4000',
            '--target', 'http://backend:9000',
            '--subdomain', 'my-app',
            '--print-requests',
        ])
        main.apply_overrides(config, args)

        assert config.get('server.port') == 4000
        assert config.get('proxy.target') == 'http://backend:9000'
        assert config.get('tunnel.subdomain') == 'my-app'
        assert config.get('tunnel.print_requests') is True
        assert config.get('tunnel.enabled') is True

    def test_no_tunnel(self, tmp_path):
        config = ConfigManager(tmp_path / 'config.json')
        main.apply_overrides(config, main.parse_args(['--no-tunnel', '--debug']))

        assert config.get('tunnel.enabled') is False
        assert config.get('logging.level') == 'DEBUG'

    def test_overrides_not_saved(self, tmp_path):
        path = tmp_path / 'config.json'
        config = ConfigManager(path)
        main.apply_overrides(config, main.parse_args(['--port', '4000']))
        assert not path.exists()


class TestServerFromConfig:

    def test_tunnel_options_follow_server_port(self, tmp_path):
        config = ConfigManager(tmp_path / 'config.json')
        config.set('server.port', 4100)
        config.set('tunnel.subdomain', 'demo')

        server = ProxyServer.from_config(config)

        assert server.port == 4100
        assert server.route_prefix == '/proxy'
        assert server.proxy_options.target == 'http://localhost:3000'
        assert server.tunnel_manager.options.port == 4100
        assert server.tunnel_manager.options.subdomain == 'demo'

    def test_tunnel_disabled(self, tmp_path):
        config = ConfigManager(tmp_path / 'config.json')
        config.set('tunnel.enabled', False)

        assert ProxyServer.from_config(config).tunnel_manager is None


def test_exception_hook_logs_critical(caplog):
    original = sys.excepthook
    try:
        main.setup_exception_handler()
        try:
            raise TunnelError("tunnel server offline")
        except TunnelError:
            exc_info = sys.exc_info()

        with caplog.at_level(logging.CRITICAL):
            sys.excepthook(*exc_info)
    finally:
        sys.excepthook = original

    assert "Unhandled exception" in caplog.text
    assert "tunnel server offline" in caplog.text


def test_tunnel_failure_propagates_from_main(app_home):
    async def failing(self):
        raise TunnelError("tunnel server offline")

    with patch.object(ProxyServer, 'serve_forever', failing), \
            patch.object(main, 'setup_logging'), \
            patch.object(main, 'setup_exception_handler'):
        with pytest.raises(TunnelError):
            main.main(['--port', '4000'])


def test_clean_shutdown_returns_zero(app_home):
    async def serve(self):
        return None

    with patch.object(ProxyServer, 'serve_forever', serve), \
            patch.object(main, 'setup_logging'), \
            patch.object(main, 'setup_exception_handler'):
        assert main.main(['--no-tunnel']) == 0
