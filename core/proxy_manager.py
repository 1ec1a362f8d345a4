# proxy_manager.py
import asyncio
import logging
import signal
from typing import Optional

from aiohttp import web, ClientSession, ClientConnectorError, ClientError, ServerTimeoutError
from yarl import URL

from core.proxy import ProxiedRequest, ProxyOptions
from core.tunnel_manager import TunnelManager, TunnelOptions
from utils.port_utils import check_port_availability

logger = logging.getLogger(__name__)

# Заголовки, которые относятся к конкретному соединению и не пересылаются
HOP_BY_HOP_HEADERS = frozenset({
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'proxy-connection',
    'te',
    'trailer',
    'transfer-encoding',
    'upgrade',
})


class ReverseProxy:
    def __init__(self, options: ProxyOptions):
        """
        Args:
            options: проверенные настройки прокси (target, path_rewrite, ...)
        """
        self.options = options
        self.session: Optional[ClientSession] = None

    async def initialize(self):
        """Создаёт клиентскую сессию к target"""
        if self.session is None:
            # Тело ответа пересылается как есть, без распаковки
            self.session = ClientSession(auto_decompress=False)

    async def cleanup(self):
        """Очистка ресурсов"""
        if self.session:
            await self.session.close()
            self.session = None

    def _build_headers(self, request: web.Request) -> list:
        headers = []
        for key, value in request.headers.items():
            key_lower = key.lower()
            if key_lower in HOP_BY_HOP_HEADERS or key_lower == 'content-length':
                continue
            if key_lower == 'host' and self.options.change_origin:
                continue
            headers.append((key, value))

        if self.options.change_origin:
            headers.append(('Host', self.options.target_host))

        if self.options.xfwd:
            peer = request.remote or ''
            forwarded_for = request.headers.get('X-Forwarded-For')
            headers = [(k, v) for k, v in headers if not k.lower().startswith('x-forwarded-')]
            headers.extend([
                ('X-Forwarded-For', f"{forwarded_for}, {peer}" if forwarded_for else peer),
                ('X-Forwarded-Host', request.host),
                ('X-Forwarded-Proto', request.scheme),
            ])

        return headers

    async def handle_http(self, request: web.Request) -> web.StreamResponse:
        """Проксирует запрос на target и возвращает его ответ без изменений"""
        original_path = request.rel_url.raw_path
        query_string = request.rel_url.raw_query_string
        rewritten_path = self.options.rewriter.rewrite(original_path)
        upstream_url = self.options.resolve_url(rewritten_path, query_string)
        headers = self._build_headers(request)

        self.options.on_proxy_req(ProxiedRequest(
            method=request.method,
            original_path=original_path,
            rewritten_path=rewritten_path,
            query_string=query_string,
            url=upstream_url,
            headers=dict(headers),
        ))

        try:
            body = await request.read()
            await self.initialize()

            async with self.session.request(
                method=request.method,
                url=URL(upstream_url, encoded=True),
                headers=headers,
                data=body or None,
                allow_redirects=False,
                skip_auto_headers=('User-Agent', 'Accept-Encoding', 'Content-Type'),
            ) as upstream_response:
                content = await upstream_response.read()

                # Для HEAD тела нет, поэтому длину берём у target, а не считаем заново
                keep_length = request.method == 'HEAD'
                response_headers = [
                    (key, value)
                    for key, value in upstream_response.headers.items()
                    if key.lower() not in HOP_BY_HOP_HEADERS
                    and (keep_length or key.lower() != 'content-length')
                ]

                logger.debug(f"Upstream response: {upstream_response.status} for {upstream_url}")

                return web.Response(
                    body=content,
                    status=upstream_response.status,
                    reason=upstream_response.reason,
                    headers=response_headers,
                )

        except ClientConnectorError as e:
            logger.error(f"❌ Proxy target unreachable: {upstream_url}: {e}")
            return web.Response(
                text=f"Proxy error: cannot connect to {self.options.target}\n\n{e}",
                status=502,
            )

        except (ServerTimeoutError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Proxy target timed out: {upstream_url}: {e}")
            return web.Response(
                text=f"Proxy error: {self.options.target} did not respond in time",
                status=504,
            )

        except ClientError as e:
            logger.error(f"❌ Proxy error for {upstream_url}: {e}", exc_info=True)
            return web.Response(text=f"Proxy error: {e}", status=502)


class ProxyServer:
    """aiohttp сервер с маршрутом прокси и (опционально) публичным туннелем"""

    def __init__(
            self,
            proxy_options: ProxyOptions,
            port: int = 3000,
            host: str = '0.0.0.0',
            route_prefix: str = '/proxy',
            tunnel_options: Optional[TunnelOptions] = None,
    ):
        self.proxy_options = proxy_options
        self.port = port
        self.host = host
        self.route_prefix = '/' + route_prefix.strip('/')
        self.tunnel_manager = TunnelManager(tunnel_options) if tunnel_options else None

        self.proxy: Optional[ReverseProxy] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self.is_running = False

    @classmethod
    def from_config(cls, config) -> "ProxyServer":
        """Создаёт сервер из ConfigManager"""
        server_config = config.get_server_config()
        proxy_config = config.get_proxy_config()
        tunnel_config = config.get_tunnel_config()
        port = int(server_config.get('port', 3000))

        tunnel_options = None
        if tunnel_config.get('enabled', True):
            tunnel_options = TunnelOptions(
                port=port,
                host=tunnel_config.get('host') or 'https://localtunnel.me',
                subdomain=tunnel_config.get('subdomain'),
                local_host=tunnel_config.get('local_host') or 'localhost',
                print_requests=bool(tunnel_config.get('print_requests', False)),
            )

        return cls(
            proxy_options=ProxyOptions.from_config(proxy_config),
            port=port,
            host=server_config.get('host', '0.0.0.0'),
            route_prefix=proxy_config.get('route_prefix', '/proxy'),
            tunnel_options=tunnel_options,
        )

    def create_app(self) -> web.Application:
        """Создаёт aiohttp приложение с маршрутами прокси"""
        if self.proxy is None:
            self.proxy = ReverseProxy(self.proxy_options)

        app = web.Application()
        app.router.add_route('*', self.route_prefix, self.proxy.handle_http)
        app.router.add_route('*', self.route_prefix + '/{tail:.*}', self.proxy.handle_http)
        return app

    @property
    def public_url(self) -> Optional[str]:
        return self.tunnel_manager.url if self.tunnel_manager else None

    async def start(self):
        """
        Запуск сервера: runner, затем туннель, затем TCP site.

        Ошибка открытия туннеля пробрасывается, порт при этом не открывается.
        """
        if self.is_running:
            logger.warning("⚠️ Server is already running")
            return

        port_available, port_message = check_port_availability(self.port, self.host)
        if not port_available:
            logger.warning(f"⚠️ {port_message}")

        app = self.create_app()
        await self.proxy.initialize()

        self.runner = web.AppRunner(app, access_log=None)
        await self.runner.setup()

        if self.tunnel_manager:
            try:
                await self.tunnel_manager.start()
            except Exception:
                logger.error("❌ Failed to open tunnel, aborting startup")
                await self._cleanup()
                raise

        self.site = web.TCPSite(self.runner, host=self.host, port=self.port)
        try:
            await self.site.start()
        except OSError as e:
            logger.error(f"❌ Failed to bind {self.host}:{self.port}: {e}")
            await self._cleanup()
            raise

        self.is_running = True
        logger.info("=" * 60)
        logger.info(f"🚀 Server listening on http://{self.host}:{self.port}")
        logger.info(f"🌐 {self.route_prefix}/* is proxied to {self.proxy_options.target}")
        if self.public_url:
            logger.info(f"🔗 Public URL: {self.public_url}")
        logger.info("=" * 60)

    async def _cleanup(self):
        if self.tunnel_manager:
            await self.tunnel_manager.stop()
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
        if self.proxy:
            await self.proxy.cleanup()

    async def stop(self):
        """Остановка сервера"""
        if not self.is_running:
            return

        logger.info("🛑 Stopping server...")
        self.is_running = False
        await self._cleanup()
        logger.info("✅ Server stopped")

    async def serve_forever(self):
        """Запускает сервер и ждёт SIGINT/SIGTERM"""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                # Windows: остаётся KeyboardInterrupt
                pass

        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()
