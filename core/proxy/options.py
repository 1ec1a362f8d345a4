# core/proxy/options.py
"""Настройки reverse proxy, проверяются один раз при создании"""

import re
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional
from urllib.parse import urlsplit

from core.proxy.path_rewriter import PathRewriter

logger = logging.getLogger(__name__)


class ProxyConfigError(ValueError):
    """Неверные настройки прокси"""


@dataclass(frozen=True)
class ProxiedRequest:
    """Снимок запроса непосредственно перед отправкой на target"""
    method: str
    original_path: str
    rewritten_path: str
    query_string: str
    url: str
    headers: Dict[str, str]


def log_proxy_request(target: str) -> Callable[[ProxiedRequest], None]:
    """Стандартный observer: одна строка лога на каждый запрос"""

    def on_proxy_req(proxied: ProxiedRequest) -> None:
        path_qs = proxied.rewritten_path
        if proxied.query_string:
            path_qs = f"{path_qs}?{proxied.query_string}"
        logger.info(f"Proxying request to: {target}{path_qs}")

    return on_proxy_req


@dataclass(frozen=True)
class ProxyOptions:
    """
    Неизменяемые настройки прокси.

    Args:
        target: адрес, на который уходят все запросы (обязателен)
        path_rewrite: упорядоченные правила {regex: замена}
        change_origin: подменять Host на host:port target
        xfwd: добавлять заголовки X-Forwarded-*
        on_proxy_req: вызывается один раз на запрос перед отправкой;
            None означает стандартную строку в логе
    """
    target: str
    path_rewrite: Dict[str, str] = field(default_factory=lambda: {'^/proxy': ''})
    change_origin: bool = True
    xfwd: bool = False
    on_proxy_req: Optional[Callable[[ProxiedRequest], None]] = None

    def __post_init__(self):
        if not isinstance(self.target, str) or not self.target:
            raise ProxyConfigError("Proxy target is required")

        parsed = urlsplit(self.target)
        if parsed.scheme not in ('http', 'https'):
            raise ProxyConfigError(
                f"Proxy target must be an http(s) URL, got {self.target!r}"
            )
        if not parsed.hostname:
            raise ProxyConfigError(f"Proxy target has no host: {self.target!r}")

        # Путь target без завершающего '/', к нему дописывается переписанный путь
        object.__setattr__(self, 'target', self.target.rstrip('/'))

        try:
            rewriter = PathRewriter(dict(self.path_rewrite))
        except re.error as e:
            raise ProxyConfigError(f"Invalid path_rewrite pattern: {e}") from e
        except TypeError as e:
            raise ProxyConfigError(str(e)) from e
        object.__setattr__(self, '_rewriter', rewriter)

        if self.on_proxy_req is None:
            object.__setattr__(self, 'on_proxy_req', log_proxy_request(self.target))
        elif not callable(self.on_proxy_req):
            raise ProxyConfigError("on_proxy_req must be callable")

    @property
    def rewriter(self) -> PathRewriter:
        return self._rewriter

    @property
    def target_host(self) -> str:
        """host[:port] для заголовка Host"""
        return urlsplit(self.target).netloc

    def resolve_url(self, rewritten_path: str, query_string: str = "") -> str:
        url = f"{self.target}{rewritten_path}"
        if query_string:
            url = f"{url}?{query_string}"
        return url

    @classmethod
    def from_config(cls, proxy_config: Dict, **overrides) -> "ProxyOptions":
        """Создаёт настройки из секции 'proxy' конфигурации"""
        values = {
            'target': proxy_config.get('target'),
            'path_rewrite': proxy_config.get('path_rewrite', {'^/proxy': ''}),
            'change_origin': proxy_config.get('change_origin', True),
            'xfwd': proxy_config.get('xfwd', False),
        }
        values.update(overrides)
        return cls(**values)
