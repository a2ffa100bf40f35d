"""Emulator process supervision for vml."""

from __future__ import annotations

import errno
import os
import signal
import socket
import subprocess
import time
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from vml.constants import HANDSHAKE_TIMEOUT, KILL_TIMEOUT, MONITOR_READY_TIMEOUT
from vml.emulator import build_command
from vml.exceptions import AlreadyRunningError, LaunchError, MonitorError, NotRunningError, VmlError
from vml.monitor import MonitorClient, handshake
from vml.registry import VMDescriptor
from vml.utils import log, pid_alive, read_pid, tail_file


class VMState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


class ProcessSupervisor:
    """Starts and stops emulator processes.

    Liveness is never stored: a VM is running iff its monitor socket completes
    a QMP handshake. QMP serves one client at a time, so ``start`` also refuses
    while the pidfile names a live process or the socket accepts connections
    without greeting. Two near-simultaneous ``start`` calls can both pass that
    check before either emulator listens; the guard is best effort, not a lock.
    """

    def __init__(
        self,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
        ready_timeout: float = MONITOR_READY_TIMEOUT,
        poll_interval: float = 0.1,
    ) -> None:
        self.handshake_timeout = handshake_timeout
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        # Processes spawned by this invocation, so exits can be reaped instead
        # of lingering as zombies that still answer kill(pid, 0).
        self.processes: Dict[str, subprocess.Popen] = {}

    def is_running(self, vm: VMDescriptor) -> bool:
        return handshake(vm.monitor_socket, timeout=self.handshake_timeout)

    def state(self, vm: VMDescriptor) -> VMState:
        if self.is_running(vm):
            return VMState.RUNNING
        if self._emulator_alive(vm):
            # Alive but the monitor is held by another client.
            return VMState.RUNNING
        if vm.monitor_socket.exists():
            return VMState.CRASHED
        return VMState.STOPPED

    def _emulator_alive(self, vm: VMDescriptor) -> bool:
        pid = read_pid(vm.pidfile)
        if pid is not None and pid_alive(pid):
            return True
        return self._socket_in_use(vm.monitor_socket)

    def _socket_in_use(self, path: Path) -> bool:
        """True unless connecting to ``path`` proves nobody listens on it."""
        if not path.exists():
            return False
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
                client.settimeout(self.handshake_timeout)
                client.connect(str(path))
        except OSError as exc:
            if exc.errno in {errno.ECONNREFUSED, errno.ENOENT, errno.ENOTSOCK}:
                return False
            log("WARN", f"Cannot probe socket {path}: {exc}")
        return True

    def _cleanup_socket(self, path: Path) -> bool:
        """Remove a socket nobody accepts on; leave live ones alone.

        Returns True when ``path`` is free afterwards.
        """
        if not path.exists():
            return True
        if self._socket_in_use(path):
            log("WARN", f"Socket {path} still accepts connections; leaving in place")
            return False
        try:
            path.unlink()
            log("INFO", f"Removed stale socket {path}")
        except FileNotFoundError:
            pass
        return True

    def start(self, vm: VMDescriptor, seed_attached: Optional[bool] = None) -> subprocess.Popen:
        if self.is_running(vm):
            raise AlreadyRunningError(f"VM '{vm.name}' is already running")

        cfg = vm.config
        pid = read_pid(vm.pidfile)
        if pid is not None and pid_alive(pid):
            raise AlreadyRunningError(
                f"VM '{vm.name}': emulator pid {pid} is alive but its monitor does not answer; "
                f"another client may hold {vm.monitor_socket}"
            )
        if not self._cleanup_socket(vm.monitor_socket):
            raise AlreadyRunningError(
                f"VM '{vm.name}': monitor socket {vm.monitor_socket} accepts connections but sends no greeting; "
                "another client may hold it"
            )
        self._cleanup_socket(vm.console_socket)
        vm.pidfile.unlink(missing_ok=True)

        cmd = build_command(vm, cfg, seed_attached=seed_attached)
        log("INFO", f"Starting VM {vm.name} ({VMState.STARTING.value})")
        log("DEBUG", f"Running: {' '.join(cmd)}")
        with open(vm.log_file, "ab") as out:
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    cwd=vm.directory,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise LaunchError(f"VM '{vm.name}': emulator binary '{cfg.qemu_binary}' not found") from exc
            except OSError as exc:
                raise LaunchError(f"VM '{vm.name}': cannot execute {cfg.qemu_binary}: {exc}") from exc
        self.processes[vm.name] = proc
        self._wait_for_monitor(vm, proc)
        log("SUCCESS", f"VM {vm.name} started (pid {proc.pid})")
        return proc

    def _wait_for_monitor(self, vm: VMDescriptor, proc: subprocess.Popen) -> None:
        deadline = time.monotonic() + self.ready_timeout
        while True:
            code = proc.poll()
            if code is not None:
                self._cleanup_channels(vm)
                raise LaunchError(
                    f"VM '{vm.name}': emulator exited during startup with status {code}\n"
                    f"{tail_file(vm.log_file)}"
                )
            if handshake(vm.monitor_socket, timeout=self.handshake_timeout):
                return
            if time.monotonic() >= deadline:
                proc.kill()
                proc.wait()
                self._cleanup_channels(vm)
                raise LaunchError(
                    f"VM '{vm.name}': monitor socket {vm.monitor_socket} did not come up "
                    f"within {self.ready_timeout:.0f}s\n{tail_file(vm.log_file)}"
                )
            time.sleep(self.poll_interval)

    def _alive(self, vm: VMDescriptor, pid: Optional[int]) -> bool:
        proc = self.processes.get(vm.name)
        if proc is not None:
            return proc.poll() is None
        if pid is not None:
            return pid_alive(pid)
        return self.is_running(vm)

    def _wait_exit(self, vm: VMDescriptor, pid: Optional[int], timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while self._alive(vm, pid):
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)
        return True

    def stop(self, vm: VMDescriptor, graceful: bool = True, timeout: Optional[float] = None) -> None:
        if not self.is_running(vm):
            raise NotRunningError(f"VM '{vm.name}' is not running")
        if timeout is None:
            timeout = vm.config.stop_timeout
        pid = read_pid(vm.pidfile)
        log("INFO", f"Stopping VM {vm.name} ({VMState.STOPPING.value})")

        try:
            if graceful:
                try:
                    with MonitorClient(vm.monitor_socket, timeout=self.handshake_timeout) as qmp:
                        qmp.execute("system_powerdown")
                except OSError as exc:
                    if not self._alive(vm, pid):
                        log("INFO", f"VM {vm.name} exited before shutdown was requested")
                        return
                    raise MonitorError(
                        f"VM '{vm.name}': cannot request shutdown over {vm.monitor_socket}: {exc}"
                    ) from exc
                if self._wait_exit(vm, pid, timeout):
                    log("SUCCESS", f"VM {vm.name} shut down")
                    return
                log("WARN", f"VM {vm.name} did not shut down within {timeout:.0f}s; forcing")
            self._terminate(vm, pid)
            log("SUCCESS", f"VM {vm.name} terminated")
        finally:
            if not self._alive(vm, pid):
                self._cleanup_channels(vm)
                self.processes.pop(vm.name, None)

    def _terminate(self, vm: VMDescriptor, pid: Optional[int]) -> None:
        try:
            with MonitorClient(vm.monitor_socket, timeout=self.handshake_timeout) as qmp:
                qmp.execute("quit")
        except (OSError, MonitorError) as exc:
            log("DEBUG", f"QMP quit for {vm.name} failed: {exc}")
        if self._wait_exit(vm, pid, KILL_TIMEOUT):
            return
        proc = self.processes.get(vm.name)
        if proc is not None:
            proc.kill()
            proc.wait()
            return
        if pid is None:
            raise VmlError(f"VM '{vm.name}' ignored quit and has no pidfile to kill")
        log("WARN", f"Killing emulator of {vm.name} (pid {pid})")
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        if not self._wait_exit(vm, pid, KILL_TIMEOUT):
            raise VmlError(f"VM '{vm.name}' (pid {pid}) survived SIGKILL")

    def _cleanup_channels(self, vm: VMDescriptor) -> None:
        for path in (vm.monitor_socket, vm.console_socket, vm.pidfile):
            path.unlink(missing_ok=True)

    def status(self, vm: VMDescriptor) -> dict:
        self._require_running(vm)
        with MonitorClient(vm.monitor_socket, timeout=self.handshake_timeout) as qmp:
            return qmp.execute("query-status")

    def monitor_command(self, vm: VMDescriptor, command: str) -> str:
        """Run a human monitor command (e.g. ``info block``) and return its output."""
        self._require_running(vm)
        with MonitorClient(vm.monitor_socket, timeout=max(self.handshake_timeout, 5.0)) as qmp:
            return qmp.human_command(command)

    def console_command(self, vm: VMDescriptor) -> List[str]:
        self._require_running(vm)
        return ["socat", "-,raw,echo=0,escape=0x1d", f"UNIX-CONNECT:{vm.console_socket}"]

    def _require_running(self, vm: VMDescriptor) -> None:
        if not self.is_running(vm):
            raise NotRunningError(f"VM '{vm.name}' is not running")
