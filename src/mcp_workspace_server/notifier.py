# mcp-workspace-server - Workspace indexer and refactoring tools over MCP
# Copyright (C) 2026 Michael Doyle
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
#
# Commercial licensing available. See COMMERCIAL-LICENSE.md for details.

"""Best-effort signaling to the desktop UI process.

Two one-shot channels, both Unix domain sockets in a well-known directory:

- ``mcp-workspace-handshake.sock`` receives one line, the workspace name,
  once indexing has finished at startup.
- ``mcp-workspace-activity.sock`` receives one line per activity event,
  ``<workspace>|<KIND>|<tool>|<detail>``; ``<workspace>|DISCONNECT`` on
  shutdown.

Each message opens a fresh connection, writes one line and closes. A
missing listener is not an error: the message is dropped.
"""

from __future__ import annotations

import logging
import os
import socket
import tempfile
import threading

from mcp_workspace_server.models import ActivityEvent, ActivityKind

logger = logging.getLogger(__name__)

HANDSHAKE_SOCKET = "mcp-workspace-handshake.sock"
ACTIVITY_SOCKET = "mcp-workspace-activity.sock"
DISCONNECT = "DISCONNECT"
CONNECT_TIMEOUT = 0.25


class ConnectionNotifier:
    """Fire-and-forget producer; never blocks a tool call for longer than the timeout."""

    def __init__(
        self,
        workspace_name: str,
        socket_dir: str | None = None,
        timeout: float = CONNECT_TIMEOUT,
        background: bool = True,
    ):
        self.workspace_name = workspace_name
        self.socket_dir = socket_dir or tempfile.gettempdir()
        self.timeout = timeout
        self.background = background
        self._pending: set[threading.Thread] = set()
        self._pending_lock = threading.Lock()

    @property
    def handshake_path(self) -> str:
        return os.path.join(self.socket_dir, HANDSHAKE_SOCKET)

    @property
    def activity_path(self) -> str:
        return os.path.join(self.socket_dir, ACTIVITY_SOCKET)

    def send_handshake(self) -> None:
        self._dispatch(self.handshake_path, self.workspace_name)

    def send_activity(self, event: ActivityEvent) -> None:
        self._dispatch(self.activity_path, event.to_line())

    def activity(self, kind: ActivityKind, tool_name: str = "", detail: str = "") -> None:
        self.send_activity(ActivityEvent(self.workspace_name, kind, tool_name, detail))

    def send_disconnect(self) -> bool:
        """Signal shutdown. Sent inline so it is not lost when the process exits."""
        return self._send(self.activity_path, f"{self.workspace_name}|{DISCONNECT}")

    def wait(self, timeout: float | None = None) -> None:
        """Join messages still being delivered (used on shutdown and in tests)."""
        with self._pending_lock:
            threads = list(self._pending)
        for thread in threads:
            thread.join(timeout)

    def _dispatch(self, path: str, line: str) -> None:
        if not self.background:
            self._send(path, line)
            return
        thread = threading.Thread(target=self._deliver, args=(path, line), daemon=True)
        with self._pending_lock:
            self._pending.add(thread)
        thread.start()

    def _deliver(self, path: str, line: str) -> None:
        try:
            self._send(path, line)
        finally:
            with self._pending_lock:
                self._pending.discard(threading.current_thread())

    def _send(self, path: str, line: str) -> bool:
        if not hasattr(socket, "AF_UNIX"):
            return False
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                sock.connect(path)
                sock.sendall((line + "\n").encode("utf-8"))
            return True
        except OSError as e:
            logger.debug("Notifier message to %s dropped: %s", path, e)
            return False
