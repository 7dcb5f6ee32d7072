import asyncio
import socket
import threading

import pytest
from aiohttp import web


class PieceServer:
    """aiohttp app on a background loop so sync tests can call asyncio.run or main()."""

    def __init__(self):
        self.files = {}
        self.requests = []
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.runner = None
        self.port = None

    def _run(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout=10)

    async def _handle(self, request):
        name = request.match_info["name"]
        self.requests.append((name, request.headers.get("User-Agent")))
        if name not in self.files:
            raise web.HTTPNotFound()
        body = self.files[name]
        if isinstance(body, dict):
            return web.json_response(body)
        return web.Response(body=body)

    def start(self):
        self.thread.start()
        app = web.Application()
        app.router.add_get("/{name}", self._handle)
        self.runner = web.AppRunner(app)
        self._run(self.runner.setup())
        site = web.TCPSite(self.runner, "127.0.0.1", 0)
        self._run(site.start())
        self.port = self.runner.addresses[0][1]

    def stop(self):
        self._run(self.runner.cleanup())
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=10)
        self.loop.close()

    def url(self, name):
        return f"http://127.0.0.1:{self.port}/{name}"

    def piece(self, name, body, offset, size=None, hash_value=None):
        """Serve body under name and return its manifest entry."""
        self.files[name] = body
        return {
            "url": self.url(name),
            "fileOffset": offset,
            "fileSize": len(body) if size is None else size,
            "hashValue": hash_value if hash_value is not None else "",
        }

    def manifest(self, name, pieces, total):
        self.files[name] = {"pieces": pieces, "originalFileSize": total}
        return self.url(name)


@pytest.fixture
def server():
    s = PieceServer()
    s.start()
    try:
        yield s
    finally:
        s.stop()


class ShortBodyServer:
    """Announces Content-Length: 100, sends three bytes, then hangs up."""

    def __init__(self):
        self.sock = socket.socket()
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen()
        self.sock.settimeout(0.1)
        self.port = self.sock.getsockname()[1]
        self.stopped = threading.Event()
        self.thread = threading.Thread(target=self._serve, daemon=True)

    def _serve(self):
        while not self.stopped.is_set():
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            conn.settimeout(5)
            with conn:
                conn.recv(65536)
                conn.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 100\r\nConnection: close\r\n\r\nabc")

    def url(self, name):
        return f"http://127.0.0.1:{self.port}/{name}"


@pytest.fixture
def short_server():
    s = ShortBodyServer()
    s.thread.start()
    try:
        yield s
    finally:
        s.stopped.set()
        s.thread.join(timeout=10)
        s.sock.close()
