# core/tunnel_manager.py
"""
Клиент LocalTunnel.

Регистрируется на relay-сервере localtunnel, держит небольшой пул исходящих
TCP соединений к нему и связывает каждое с локальным сервером.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Set
from urllib.parse import urlsplit

from aiohttp import ClientSession, ClientError, ClientTimeout

logger = logging.getLogger(__name__)

DEFAULT_TUNNEL_HOST = 'https://localtunnel.me'
LOCAL_RETRY_DELAY = 1.0
READ_CHUNK_SIZE = 16 * 1024
REQUEST_LINE_RE = re.compile(rb'^(\w+) (\S+)')


class TunnelError(Exception):
    """Не удалось открыть туннель"""


@dataclass(frozen=True)
class TunnelOptions:
    port: int
    host: str = DEFAULT_TUNNEL_HOST
    subdomain: Optional[str] = None
    local_host: str = 'localhost'
    print_requests: bool = False

    def __post_init__(self):
        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise ValueError(f"Invalid local port: {self.port!r}")
        parsed = urlsplit(self.host)
        if parsed.scheme not in ('http', 'https') or not parsed.hostname:
            raise ValueError(f"Invalid tunnel host: {self.host!r}")


@dataclass(frozen=True)
class TunnelInfo:
    """Ответ relay-сервера на регистрацию"""
    id: str
    url: str
    cached_url: Optional[str]
    max_conn: int
    remote_host: str
    remote_ip: Optional[str]
    remote_port: int

    @classmethod
    def from_response(cls, body: dict, host: str) -> "TunnelInfo":
        try:
            return cls(
                id=body['id'],
                url=body['url'],
                cached_url=body.get('cached_url'),
                max_conn=int(body.get('max_conn_count') or 1),
                remote_host=urlsplit(host).hostname,
                remote_ip=body.get('ip'),
                remote_port=int(body['port']),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TunnelError(f"Malformed response from tunnel server: {body!r}") from e


async def pipe(
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        on_chunk: Optional[Callable[[bytes], None]] = None,
):
    """
    Копирует данные из reader в writer до EOF или ошибки

    На EOF закрывается только запись (half-close), чтобы другая сторона
    могла дописать ответ. При ошибке соединение закрывается полностью.
    """
    try:
        while True:
            data = await reader.read(READ_CHUNK_SIZE)
            if not data:
                break
            if on_chunk:
                on_chunk(data)
            writer.write(data)
            await writer.drain()

        if writer.can_write_eof():
            writer.write_eof()
        else:
            writer.close()
    except OSError as e:
        logger.debug(f"Pipe closed: {e}")
        writer.close()


class Tunnel:
    """
    Открытая сессия localtunnel.

    Держит info.max_conn соединений к relay. Завершившееся соединение
    заменяется новым, пока туннель открыт; если соединение с relay
    установить не удалось, туннель закрывается.
    """

    def __init__(self, info: TunnelInfo, options: TunnelOptions):
        self.info = info
        self.options = options
        self.closed = False
        self._close_callbacks: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._writers: Set[asyncio.StreamWriter] = set()

    @property
    def url(self) -> str:
        return self.info.url

    def on_close(self, callback: Callable[[], None]):
        """Регистрирует однократный обработчик закрытия туннеля"""
        if self.closed:
            callback()
            return
        self._close_callbacks.append(callback)

    def start(self):
        for _ in range(self.info.max_conn):
            self._spawn_connection()

    def _spawn_connection(self):
        task = asyncio.get_running_loop().create_task(self._run_connection())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _track(self, writer: asyncio.StreamWriter):
        self._writers.add(writer)

    def _untrack(self, writer: asyncio.StreamWriter):
        self._writers.discard(writer)
        writer.close()

    async def _run_connection(self):
        remote_addr = self.info.remote_ip or self.info.remote_host
        remote_port = self.info.remote_port

        try:
            remote_reader, remote_writer = await asyncio.open_connection(remote_addr, remote_port)
        except OSError as e:
            if self.closed:
                return
            logger.error(
                f"❌ Connection to tunnel server failed: {remote_addr}:{remote_port} "
                f"(check your firewall settings): {e}"
            )
            await self.close()
            return

        self._track(remote_writer)
        try:
            await self._relay(remote_reader, remote_writer)
        except OSError as e:
            logger.debug(f"Tunnel connection dropped: {e}")
        finally:
            self._untrack(remote_writer)

        # relay закрыл соединение: заменяем его новым
        if not self.closed:
            logger.debug("Tunnel connection ended, opening a replacement")
            self._spawn_connection()

    async def _relay(self, remote_reader: asyncio.StreamReader, remote_writer: asyncio.StreamWriter):
        # Локальное соединение открываем только когда relay прислал данные
        first_chunk = await remote_reader.read(READ_CHUNK_SIZE)
        if not first_chunk:
            return

        on_chunk = self._log_request if self.options.print_requests else None
        if on_chunk:
            on_chunk(first_chunk)

        local = await self._connect_local()
        if local is None:
            return
        local_reader, local_writer = local

        self._track(local_writer)
        try:
            local_writer.write(first_chunk)
            await local_writer.drain()
            await asyncio.gather(
                pipe(remote_reader, local_writer, on_chunk),
                pipe(local_reader, remote_writer),
            )
        finally:
            self._untrack(local_writer)

    async def _connect_local(self):
        local_host = self.options.local_host
        local_port = self.options.port

        while not self.closed:
            try:
                return await asyncio.open_connection(local_host, local_port)
            except (ConnectionRefusedError, ConnectionResetError) as e:
                logger.warning(
                    f"⚠️ Local server {local_host}:{local_port} unavailable ({e}), "
                    f"retrying in {LOCAL_RETRY_DELAY}s"
                )
                await asyncio.sleep(LOCAL_RETRY_DELAY)
        return None

    def _log_request(self, chunk: bytes):
        # Проверяется каждый фрагмент: по keep-alive соединению идут несколько запросов
        match = REQUEST_LINE_RE.match(chunk)
        if match:
            method, path = (part.decode('latin-1') for part in match.groups())
            logger.info(f"🌐 {method} {path}")

    async def close(self):
        """Закрывает туннель; повторный вызов ничего не делает"""
        if self.closed:
            return
        self.closed = True

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()
        await asyncio.gather(*pending, return_exceptions=True)

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"❌ Tunnel close handler failed: {e}", exc_info=True)


async def open_tunnel(options: TunnelOptions, session: Optional[ClientSession] = None) -> Tunnel:
    """
    Регистрирует туннель на relay-сервере и открывает соединения

    Raises:
        TunnelError: relay недоступен или отказал в регистрации
    """
    base_uri = options.host.rstrip('/') + '/'
    uri = base_uri + (options.subdomain or '?new')

    owns_session = session is None
    if owns_session:
        session = ClientSession(timeout=ClientTimeout(total=30))

    try:
        logger.debug(f"Requesting tunnel: {uri}")
        async with session.get(uri) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = {}

            if response.status != 200:
                message = None
                if isinstance(body, dict):
                    message = body.get('message')
                raise TunnelError(
                    message or 'localtunnel server returned an error, please try again'
                )
    except ClientError as e:
        raise TunnelError(f"Tunnel server offline: {e}") from e
    except asyncio.TimeoutError as e:
        raise TunnelError(f"Tunnel server did not respond: {uri}") from e
    finally:
        if owns_session:
            await session.close()

    if not isinstance(body, dict):
        raise TunnelError(f"Malformed response from tunnel server: {body!r}")

    info = TunnelInfo.from_response(body, options.host)
    tunnel = Tunnel(info, options)
    tunnel.start()
    return tunnel


class TunnelManager:
    """Владеет единственным туннелем процесса"""

    def __init__(self, options: TunnelOptions, opener=open_tunnel):
        self.options = options
        self._opener = opener
        self.tunnel: Optional[Tunnel] = None

    @property
    def is_running(self) -> bool:
        return self.tunnel is not None and not self.tunnel.closed

    @property
    def url(self) -> Optional[str]:
        return self.tunnel.url if self.tunnel else None

    async def start(self) -> str:
        """
        Открывает туннель для options.port

        Returns:
            str: публичный URL

        Raises:
            RuntimeError: туннель уже открыт
            TunnelError: не удалось открыть туннель (не перехватывается)
        """
        if self.tunnel is not None:
            raise RuntimeError("Tunnel already started")

        logger.info(f"🔌 Opening tunnel for port {self.options.port} via {self.options.host}")
        self.tunnel = await self._opener(self.options)

        logger.info(f"LocalTunnel is running at: {self.tunnel.url}")
        self.tunnel.on_close(self._on_tunnel_closed)
        return self.tunnel.url

    def _on_tunnel_closed(self):
        logger.info("LocalTunnel is closed")

    async def stop(self):
        if self.tunnel is None:
            return
        await self.tunnel.close()
