"""
Transient HTTP server for the pull strategy.

Serves exactly one file, under its own name, for as long as the `async with`
block runs. Anything else gets a 404. The server is bound to the address the
device is told to fetch from and is always shut down on exit, including when
the transfer fails or is cancelled.

Requests are parsed by http.server in a background thread; the event loop
only starts and stops it.
"""

from __future__ import annotations

import asyncio
import errno
import shutil
import socket
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import quote, unquote, urlsplit

from legacy_upgrade.logging import get_logger

logger = get_logger(__name__)

_READ_SIZE = 65536


def local_address_for(host: str, port: int = 80) -> str:
    """
    Local address of the interface that routes to `host`.

    Connecting a UDP socket sends no packet; it only asks the kernel to
    pick the route.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.connect((host, port))
        return sock.getsockname()[0]


class _FileRequestHandler(BaseHTTPRequestHandler):
    """GET/HEAD for the one served route; every other method is refused."""

    server: _FileHTTPServer
    # Seconds an idle device connection is kept
    timeout = 60

    def do_GET(self) -> None:
        self._serve(head_only=False)

    def do_HEAD(self) -> None:
        self._serve(head_only=True)

    def _refuse(self) -> None:
        self.send_error(HTTPStatus.METHOD_NOT_ALLOWED)

    do_POST = do_PUT = do_DELETE = do_PATCH = _refuse

    def _serve(self, *, head_only: bool) -> None:
        owner = self.server.owner
        if unquote(urlsplit(self.path).path) != unquote(owner.route):
            self.send_error(HTTPStatus.NOT_FOUND)
            return

        size = owner.file_path.stat().st_size
        if not head_only:
            owner.record_download(self.client_address)
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "application/octet-stream")
        self.send_header("Content-Length", str(size))
        self.end_headers()
        if head_only:
            return

        try:
            with open(owner.file_path, "rb") as f:
                shutil.copyfileobj(f, self.wfile, _READ_SIZE)
        except ConnectionError as e:
            logger.warning(f"Device dropped the download: {e}")

    def log_message(self, format: str, *args: object) -> None:
        logger.debug(format % args, extra={"peer": self.client_address[0]})


class _FileHTTPServer(ThreadingHTTPServer):
    def __init__(self, address: tuple[str, int], owner: TransientFileServer) -> None:
        self.owner = owner
        super().__init__(address, _FileRequestHandler)


class TransientFileServer:
    """
    One-file HTTP server run in a background thread.

    Attributes:
        file_path: The only file served.
        host: Bind address; the address advertised to the device.
        port: Bound port (known after start).
        requests_served: GETs of the file answered.

    Example:
        >>> async with TransientFileServer(path, host="10.13.0.2") as server:
        ...     url = server.url_for("10.13.0.2")
    """

    def __init__(self, file_path: Path, *, host: str, port: int = 0) -> None:
        self.file_path = file_path
        self.host = host
        self.port = port
        self.requests_served = 0
        self._httpd: _FileHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def route(self) -> str:
        return "/" + quote(self.file_path.name)

    def url_for(self, advertise_host: str) -> str:
        """URL the device should fetch."""
        return f"http://{advertise_host}:{self.port}{self.route}"

    def record_download(self, peer: tuple[str, int]) -> None:
        with self._lock:
            self.requests_served += 1
        logger.info("Device fetching file", extra={"peer": peer[0], "file": self.file_path.name})

    def _bind(self) -> _FileHTTPServer:
        try:
            return _FileHTTPServer((self.host, self.port), self)
        except OSError as e:
            if e.errno != errno.EADDRINUSE or self.port == 0:
                raise
            logger.warning(
                f"Port {self.port} in use, using an ephemeral port",
                extra={"port": self.port},
            )
            return _FileHTTPServer((self.host, 0), self)

    async def start(self) -> None:
        """Bind, falling back to an ephemeral port when the preferred one is taken."""
        # Binding resolves the host name, which can block
        self._httpd = await asyncio.to_thread(self._bind)
        self.port = self._httpd.server_address[1]
        self._thread = threading.Thread(
            target=self._httpd.serve_forever,
            name=f"file-server-{self.port}",
            daemon=True,
        )
        self._thread.start()
        logger.debug(
            "File server started",
            extra={"file": str(self.file_path), "host": self.host, "port": self.port},
        )

    async def stop(self) -> None:
        httpd, self._httpd = self._httpd, None
        if httpd is None:
            return
        # shutdown() waits for serve_forever to notice, up to one poll interval
        await asyncio.to_thread(httpd.shutdown)
        httpd.server_close()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        logger.debug("File server stopped", extra={"port": self.port})

    async def __aenter__(self) -> TransientFileServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
