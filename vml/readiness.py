"""Wait for a guest's SSH service to accept connections."""

from __future__ import annotations

import socket
import threading
import time
from typing import Callable, Optional

from vml.exceptions import ReadinessTimeoutError, WaitCancelledError
from vml.utils import log

SSH_BANNER_PREFIX = b"SSH-"


def probe_ssh(host: str, port: int, timeout: float = 1.0, banner: bool = True) -> bool:
    """One connection attempt. With ``banner`` the server must also send its identification line."""
    try:
        with socket.create_connection((host, port), timeout=timeout) as conn:
            if not banner:
                return True
            conn.settimeout(timeout)
            data = b""
            while len(data) < len(SSH_BANNER_PREFIX):
                chunk = conn.recv(256)
                if not chunk:
                    return False
                data += chunk
            return data.startswith(SSH_BANNER_PREFIX)
    except OSError:
        return False


def wait_ssh(
    host: str,
    port: int,
    timeout: float,
    interval: float = 1.0,
    max_interval: float = 8.0,
    cancel: Optional[threading.Event] = None,
    is_alive: Optional[Callable[[], bool]] = None,
    banner: bool = True,
    attempt_timeout: float = 2.0,
) -> None:
    """Poll ``host:port`` until SSH answers.

    Delays start at ``interval`` and double up to ``max_interval``; no single
    sleep or attempt runs past the deadline. Raises ReadinessTimeoutError once
    ``timeout`` seconds have elapsed and WaitCancelledError if ``cancel`` is
    set or ``is_alive()`` turns false.
    """
    cancel = cancel or threading.Event()
    start = time.monotonic()
    deadline = start + timeout
    delay = interval
    attempts = 0

    while True:
        if cancel.is_set():
            raise WaitCancelledError(f"Waiting for SSH on {host}:{port} was cancelled")
        if is_alive is not None and not is_alive():
            raise WaitCancelledError(f"VM stopped while waiting for SSH on {host}:{port}")

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        attempts += 1
        if probe_ssh(host, port, timeout=min(attempt_timeout, remaining), banner=banner):
            log("SUCCESS", f"SSH is reachable on {host}:{port} after {time.monotonic() - start:.1f}s")
            return
        log("DEBUG", f"SSH on {host}:{port} not ready (attempt {attempts})")

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        if cancel.wait(min(delay, remaining)):
            raise WaitCancelledError(f"Waiting for SSH on {host}:{port} was cancelled")
        delay = min(delay * 2, max_interval)

    raise ReadinessTimeoutError(
        f"SSH on {host}:{port} not reachable within {timeout:.0f}s ({attempts} attempts)"
    )
