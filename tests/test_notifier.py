"""Tests for the best-effort UI notifier.

The producer must never block or raise when nobody is listening.
"""

import socket
import threading
import time

import pytest

from mcp_workspace_server.models import ActivityEvent, ActivityKind
from mcp_workspace_server.notifier import ACTIVITY_SOCKET, HANDSHAKE_SOCKET, ConnectionNotifier

pytestmark = pytest.mark.skipif(not hasattr(socket, "AF_UNIX"), reason="needs Unix domain sockets")


class _Listener:
    """Accepts connections on a Unix socket and collects one line per connection."""

    def __init__(self, path):
        self.lines = []
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.bind(path)
        self.sock.listen(8)
        self.sock.settimeout(2)
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()

    def _run(self):
        while True:
            try:
                conn, _ = self.sock.accept()
            except OSError:
                return
            with conn:
                data = b""
                while not data.endswith(b"\n"):
                    chunk = conn.recv(4096)
                    if not chunk:
                        break
                    data += chunk
                self.lines.append(data.decode().rstrip("\n"))

    def wait_for(self, count, timeout=2.0):
        deadline = time.monotonic() + timeout
        while len(self.lines) < count and time.monotonic() < deadline:
            time.sleep(0.01)
        return self.lines

    def close(self):
        self.sock.close()


@pytest.fixture
def socket_dir(tmp_path_factory):
    # AF_UNIX paths are length-limited; keep them short
    return str(tmp_path_factory.mktemp("n"))


class TestWithoutListener:
    def test_nothing_blocks_or_raises(self, socket_dir):
        notifier = ConnectionNotifier("demo", socket_dir)
        started = time.monotonic()
        notifier.send_handshake()
        notifier.activity(ActivityKind.STARTED, "get_file", "path=a.cs")
        notifier.wait(timeout=2)
        assert notifier.send_disconnect() is False
        assert time.monotonic() - started < 1.5

    def test_inline_mode_returns_quickly(self, socket_dir):
        notifier = ConnectionNotifier("demo", socket_dir, background=False)
        started = time.monotonic()
        for _ in range(20):
            notifier.activity(ActivityKind.COMPLETED, "list_files", "1ms")
        assert time.monotonic() - started < 1.0

    def test_stale_socket_file(self, socket_dir):
        stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        notifier = ConnectionNotifier("demo", socket_dir, background=False)
        stale.bind(notifier.activity_path)
        stale.close()  # path exists, nobody accepts
        assert notifier.send_disconnect() is False


class TestWithListener:
    def test_handshake_carries_workspace_name(self, socket_dir):
        notifier = ConnectionNotifier("demo", socket_dir)
        listener = _Listener(notifier.handshake_path)
        try:
            notifier.send_handshake()
            assert listener.wait_for(1) == ["demo"]
        finally:
            listener.close()

    def test_activity_lines(self, socket_dir):
        notifier = ConnectionNotifier("demo", socket_dir, background=False)
        listener = _Listener(notifier.activity_path)
        try:
            notifier.activity(ActivityKind.STARTED, "get_file", "path=a.cs")
            notifier.send_activity(ActivityEvent("demo", ActivityKind.ERROR, "get_type", "not\nfound"))
            assert notifier.send_disconnect() is True
            assert listener.wait_for(3) == [
                "demo|STARTED|get_file|path=a.cs",
                "demo|ERROR|get_type|not found",
                "demo|DISCONNECT",
            ]
        finally:
            listener.close()

    def test_socket_names(self, socket_dir):
        notifier = ConnectionNotifier("demo", socket_dir)
        assert notifier.handshake_path.endswith(HANDSHAKE_SOCKET)
        assert notifier.activity_path.endswith(ACTIVITY_SOCKET)
