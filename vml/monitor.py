"""QMP client for the emulator control socket."""

from __future__ import annotations

import json
import socket
from pathlib import Path
from typing import Optional

from vml.constants import HANDSHAKE_TIMEOUT
from vml.exceptions import MonitorError
from vml.utils import log


class MonitorClient:
    """Line-oriented QMP session over a Unix socket.

    Usage::

        with MonitorClient(vm.monitor_socket) as qmp:
            qmp.execute("system_powerdown")
    """

    def __init__(self, path: Path, timeout: float = HANDSHAKE_TIMEOUT) -> None:
        self.path = path
        self.timeout = timeout
        self._sock: Optional[socket.socket] = None
        self._file = None
        self.greeting: dict = {}

    def connect(self) -> "MonitorClient":
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(str(self.path))
        except OSError:
            sock.close()
            raise
        self._sock = sock
        self._file = sock.makefile("rb")
        try:
            greeting = self._read_message()
            if "QMP" not in greeting:
                raise MonitorError(f"Unexpected greeting on {self.path}: {greeting!r}")
            self.greeting = greeting["QMP"]
            self.execute("qmp_capabilities")
        except BaseException:
            self.close()
            raise
        return self

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> "MonitorClient":
        return self.connect()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _read_message(self) -> dict:
        line = self._file.readline()
        if not line:
            raise MonitorError(f"Monitor socket {self.path} closed the connection")
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            raise MonitorError(f"Malformed QMP message on {self.path}: {line!r}") from exc
        if not isinstance(message, dict):
            raise MonitorError(f"Malformed QMP message on {self.path}: {line!r}")
        return message

    def execute(self, command: str, **arguments):
        """Send one command and return its ``return`` payload; events are skipped."""
        if self._sock is None:
            raise MonitorError("Monitor client is not connected")
        request: dict = {"execute": command}
        if arguments:
            request["arguments"] = arguments
        self._sock.sendall((json.dumps(request) + "\n").encode("utf-8"))
        while True:
            message = self._read_message()
            if "event" in message:
                log("DEBUG", f"QMP event: {message['event']}")
                continue
            if "error" in message:
                error = message["error"]
                raise MonitorError(f"QMP command '{command}' failed: {error.get('desc', error)}")
            if "return" in message:
                return message["return"]

    def human_command(self, command_line: str) -> str:
        return self.execute("human-monitor-command", **{"command-line": command_line})


def handshake(path: Path, timeout: float = HANDSHAKE_TIMEOUT) -> bool:
    """True iff something on ``path`` completes the QMP greeting and capabilities negotiation."""
    if not path.exists():
        return False
    try:
        with MonitorClient(path, timeout=timeout):
            return True
    except (OSError, MonitorError):
        return False
