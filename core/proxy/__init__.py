# core/proxy/__init__.py
"""
Proxy modules package.

Note: the forwarder is a plain pass-through. No caching or content
rewriting happens here, only the path rewrite and the per-request log line.
"""

from core.proxy.options import ProxiedRequest, ProxyConfigError, ProxyOptions, log_proxy_request
from core.proxy.path_rewriter import PathRewriter

__all__ = [
    'PathRewriter',
    'ProxiedRequest',
    'ProxyConfigError',
    'ProxyOptions',
    'log_proxy_request',
]
