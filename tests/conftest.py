"""Shared test fixtures: throwaway VM roots and an in-process QMP server."""

from __future__ import annotations

import json
import shutil
import socket
import tempfile
import threading
from pathlib import Path

import pytest

from vml.images import ImageCache, ImageCatalog
from vml.models import Settings
from vml.registry import VMRegistry

TEST_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHRlc3Qta2V5LW5vdC1yZWFs test@vml"


class FakeQMPServer:
    """Minimal QMP endpoint on a Unix socket.

    Every accepted connection gets the greeting and answers each command with
    ``replies.get(command, {})``. Commands listed in ``errors`` get an error
    reply. With ``exit_on`` the server goes away after answering one of those
    commands, the way an emulator does after ``quit``.
    """

    def __init__(self, path: Path, greeting: bytes = None, exit_on=("system_powerdown", "quit")) -> None:
        self.path = path
        self.commands = []
        self.replies = {}
        self.errors = {}
        self.exit_on = set(exit_on)
        self.greeting = greeting or (
            json.dumps({"QMP": {"version": {"qemu": {"major": 8, "minor": 2, "micro": 0}}, "capabilities": []}})
            + "\n"
        ).encode()
        self.serving = False
        self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._sock.bind(str(path))
        self._sock.listen(8)
        self._sock.settimeout(0.1)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def start(self) -> "FakeQMPServer":
        self.serving = True
        self._thread.start()
        return self

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket) -> None:
        try:
            with conn, conn.makefile("rb") as reader:
                conn.sendall(self.greeting)
                for line in reader:
                    command = json.loads(line)["execute"]
                    self.commands.append(command)
                    if command in self.errors:
                        reply = {"error": {"class": "GenericError", "desc": self.errors[command]}}
                    else:
                        reply = {"return": self.replies.get(command, {})}
                    conn.sendall((json.dumps(reply) + "\n").encode())
                    if command in self.exit_on:
                        self.shutdown()
                        return
        except (OSError, ValueError):
            return

    def shutdown(self) -> None:
        if not self.serving:
            return
        self.serving = False
        self._stop.set()
        self._sock.close()
        self.path.unlink(missing_ok=True)


@pytest.fixture
def short_tmp():
    """A temp directory with a short path; Unix socket paths are limited to ~108 bytes."""
    path = Path(tempfile.mkdtemp(prefix="vml-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def ssh_key() -> str:
    return TEST_KEY


@pytest.fixture
def registry(short_tmp) -> VMRegistry:
    return VMRegistry(short_tmp / "vms", Settings(ssh_keys=[TEST_KEY]))


@pytest.fixture
def make_vm(registry):
    """Create a VM directory with the given settings and return its descriptor."""

    def _make(name: str = "test-vm", **settings):
        return registry.create_directory(name, Settings(**settings))

    return _make


@pytest.fixture
def qmp_server():
    """Factory for FakeQMPServer instances; all are shut down after the test."""
    servers = []

    def _start(path: Path, **kwargs) -> FakeQMPServer:
        server = FakeQMPServer(path, **kwargs).start()
        servers.append(server)
        return server

    yield _start
    for server in servers:
        server.shutdown()


@pytest.fixture
def catalog() -> ImageCatalog:
    return ImageCatalog(
        entries={
            "tiny": {"description": "Tiny test image", "url": "https://images.example.com/tiny-{arch}.qcow2"},
            "mapped": {
                "url": "https://images.example.com/mapped-{arch}.img",
                "arch-mapping": {"x86_64": "amd64"},
                "update-after-days": 7,
            },
        },
        arch="x86_64",
    )


@pytest.fixture
def image_cache(tmp_path, catalog) -> ImageCache:
    return ImageCache(tmp_path / "images", catalog)
