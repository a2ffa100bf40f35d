"""Tests for vml.monitor module."""

from __future__ import annotations

import socket
import time

import pytest

from vml.exceptions import MonitorError
from vml.monitor import MonitorClient, handshake


class TestMonitorClient:
    def test_execute_returns_payload(self, short_tmp, qmp_server):
        server = qmp_server(short_tmp / "qmp.sock")
        server.replies["query-status"] = {"status": "running", "running": True}
        with MonitorClient(short_tmp / "qmp.sock") as qmp:
            assert qmp.greeting["version"]["qemu"]["major"] == 8
            assert qmp.execute("query-status") == {"status": "running", "running": True}
        assert server.commands == ["qmp_capabilities", "query-status"]

    def test_error_reply_raises(self, short_tmp, qmp_server):
        server = qmp_server(short_tmp / "qmp.sock")
        server.errors["cont"] = "Resetting the Virtual Machine is required"
        with MonitorClient(short_tmp / "qmp.sock") as qmp:
            with pytest.raises(MonitorError, match="Resetting"):
                qmp.execute("cont")

    def test_human_command(self, short_tmp, qmp_server):
        server = qmp_server(short_tmp / "qmp.sock")
        server.replies["human-monitor-command"] = "virtio0: web.img (qcow2)\r\n"
        with MonitorClient(short_tmp / "qmp.sock") as qmp:
            assert "web.img" in qmp.human_command("info block")

    def test_connection_refused(self, short_tmp):
        with pytest.raises(OSError):
            MonitorClient(short_tmp / "missing.sock").connect()

    def test_not_connected(self, short_tmp):
        with pytest.raises(MonitorError, match="not connected"):
            MonitorClient(short_tmp / "qmp.sock").execute("quit")


class TestHandshake:
    def test_live_server(self, short_tmp, qmp_server):
        qmp_server(short_tmp / "qmp.sock")
        assert handshake(short_tmp / "qmp.sock") is True

    def test_missing_socket(self, short_tmp):
        assert handshake(short_tmp / "qmp.sock") is False

    def test_stale_socket_file(self, short_tmp):
        path = short_tmp / "qmp.sock"
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.bind(str(path))
        sock.close()
        assert path.exists()
        assert handshake(path, timeout=0.5) is False

    def test_foreign_server(self, short_tmp, qmp_server):
        qmp_server(short_tmp / "qmp.sock", greeting=b'{"hello": "world"}\n')
        assert handshake(short_tmp / "qmp.sock", timeout=0.5) is False

    def test_server_that_exits(self, short_tmp, qmp_server):
        server = qmp_server(short_tmp / "qmp.sock")
        with MonitorClient(short_tmp / "qmp.sock") as qmp:
            qmp.execute("quit")
        deadline = time.monotonic() + 2.0
        while server.path.exists() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert not server.serving
        assert handshake(short_tmp / "qmp.sock") is False
