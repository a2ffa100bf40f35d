"""VM lifecycle orchestration: create, run, stop and ssh."""

from __future__ import annotations

import json
import subprocess
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from vml.config import load_global_config, merge, resolve
from vml.exceptions import (
    AlreadyExistsError,
    AlreadyRunningError,
    ConfigError,
    NotFoundError,
    NotRunningError,
    VmlError,
)
from vml.images import ImageCache, ImageCatalog
from vml.models import CreateExistsAction, GlobalConfig, Settings, SSHTarget, VMConfig
from vml.readiness import wait_ssh
from vml.registry import VMDescriptor, VMRegistry, validate_name
from vml.seed import SeedBuilder
from vml.supervisor import ProcessSupervisor, VMState
from vml.utils import has_controlling_tty, log, parse_size_to_bytes, run

SSH_PROBE_TIMEOUT = 5.0
_DEFAULT_SSH_OPTIONS = (
    "StrictHostKeyChecking=no",
    "UserKnownHostsFile=/dev/null",
    "LogLevel=ERROR",
)


class Orchestrator:
    """Sequences registry, image cache, seed builder, supervisor and readiness poller.

    Nothing is retried here; the first failure propagates to the caller.
    """

    def __init__(
        self,
        registry: VMRegistry,
        cache: ImageCache,
        seeds: Optional[SeedBuilder] = None,
        supervisor: Optional[ProcessSupervisor] = None,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.seeds = seeds or SeedBuilder()
        self.supervisor = supervisor or ProcessSupervisor()

    @classmethod
    def from_global_config(cls, global_config: Optional[GlobalConfig] = None) -> "Orchestrator":
        gc = global_config or load_global_config()
        catalog = ImageCatalog.load(gc.catalog_path)
        return cls(
            registry=VMRegistry(gc.vms_dir, gc.defaults),
            cache=ImageCache(gc.images_dir, catalog, gc.update_after_days, ro_dirs=gc.images_ro_dirs),
        )

    # -- creation and artifacts -------------------------------------------------

    def create(
        self,
        name: str,
        image: Optional[str] = None,
        exists: CreateExistsAction = CreateExistsAction.FAIL,
        overrides: Optional[Settings] = None,
    ) -> VMDescriptor:
        """Create the VM directory, then fetch its image and build disk and seed.

        ``image`` and ``overrides`` are written to the VM's ``vml.toml``.
        """
        validate_name(name)
        if self.registry.exists(name):
            if exists == CreateExistsAction.IGNORE:
                log("INFO", f"VM {name} already exists; leaving it as is")
                return self.registry.get(name)
            if exists == CreateExistsAction.FAIL:
                raise AlreadyExistsError(f"VM '{name}' already exists")
            vm = self.registry.get(name)
            if self.supervisor.is_running(vm):
                raise AlreadyRunningError(f"VM '{name}' is running; stop it before replacing")
            self.registry.remove(name)

        scope = merge([overrides or Settings(), Settings(image=image)])
        cfg = resolve([self.registry.defaults, scope], name)
        if cfg.image is None:
            raise ConfigError(f"VM '{name}': no image given; pass one or set 'image' in config.toml")
        self.cache.require(cfg.image)

        vm = self.registry.create_directory(name, scope)
        self.prepare(vm)
        log("SUCCESS", f"VM {name} created from {cfg.image}")
        return vm

    def prepare(self, vm: VMDescriptor) -> None:
        """Make sure the disk and (when enabled) the seed image exist and are current."""
        cfg = vm.config
        if not vm.disk.is_file():
            if cfg.image is None:
                raise ConfigError(f"VM '{vm.name}' has no disk and no image to build one from")
            base = self.cache.ensure(cfg.image)
            self._materialize_disk(vm, base, cfg)
        if cfg.cloud_init:
            self.seeds.build(vm)

    def _materialize_disk(self, vm: VMDescriptor, base: Path, cfg: VMConfig) -> None:
        tmp = vm.directory / f".{vm.disk.name}.tmp"
        log("INFO", f"Creating disk {vm.disk} from {base}")
        try:
            run(["qemu-img", "convert", "-O", "qcow2", str(base), str(tmp)], capture_output=True)
            if cfg.disk_size:
                info = run(["qemu-img", "info", "--output=json", str(tmp)], capture_output=True)
                current = json.loads(info.stdout).get("virtual-size", 0)
                requested = parse_size_to_bytes(cfg.disk_size)
                if requested > current:
                    log("INFO", f"Resizing disk to {cfg.disk_size}")
                    run(["qemu-img", "resize", str(tmp), cfg.disk_size], capture_output=True)
                else:
                    log("INFO", f"Base image already {current // (1024**3)}G (>= {cfg.disk_size}); skip resize")
        except FileNotFoundError as exc:
            tmp.unlink(missing_ok=True)
            raise VmlError("qemu-img not found; install the QEMU utilities") from exc
        except subprocess.CalledProcessError as exc:
            tmp.unlink(missing_ok=True)
            raise VmlError(f"VM '{vm.name}': preparing disk failed: {(exc.stderr or '').strip()}") from exc
        tmp.replace(vm.disk)

    # -- lifecycle --------------------------------------------------------------

    def run(
        self,
        name: str,
        image: Optional[str] = None,
        wait_ssh: bool = False,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        overrides: Optional[Settings] = None,
    ) -> VMDescriptor:
        if not self.registry.exists(name):
            self.create(name, image=image)
        return self.start(name, wait_ssh=wait_ssh, timeout=timeout, cancel=cancel, overrides=overrides)

    def start(
        self,
        name: str,
        wait_ssh: bool = False,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        overrides: Optional[Settings] = None,
    ) -> VMDescriptor:
        vm = self.registry.get(name, overrides)
        if self.supervisor.is_running(vm):
            raise AlreadyRunningError(f"VM '{name}' is already running")
        self.prepare(vm)
        cfg = vm.config
        proc = self.supervisor.start(vm, seed_attached=cfg.cloud_init)
        if wait_ssh:
            self._wait_ssh(vm, cfg, timeout, cancel, is_alive=lambda: proc.poll() is None)
        return vm

    def wait_ssh(self, name: str, timeout: Optional[float] = None, cancel: Optional[threading.Event] = None) -> None:
        vm = self.registry.get(name)
        self._require_running(vm)
        self._wait_ssh(vm, vm.config, timeout, cancel, is_alive=lambda: self.supervisor.is_running(vm))

    def _wait_ssh(self, vm, cfg: VMConfig, timeout, cancel, is_alive=None) -> None:
        if cfg.network == "none":
            raise ConfigError(f"VM '{vm.name}' has network = \"none\"; SSH is unreachable")
        timeout = cfg.wait_ssh_timeout if timeout is None else timeout
        log("INFO", f"Waiting up to {timeout:.0f}s for SSH on {cfg.ssh_host}:{cfg.ssh_port}")
        wait_ssh(
            cfg.ssh_host,
            cfg.ssh_port,
            timeout=timeout,
            interval=cfg.wait_ssh_interval,
            cancel=cancel,
            is_alive=is_alive,
        )

    def stop(self, name: str, force: bool = False, timeout: Optional[float] = None) -> None:
        vm = self.registry.get(name)
        self.supervisor.stop(vm, graceful=not force, timeout=timeout)

    def remove(self, name: str, force: bool = False) -> None:
        vm = self.registry.get(name)
        if self.supervisor.is_running(vm):
            if not force:
                raise AlreadyRunningError(f"VM '{name}' is running; stop it first or use --force")
            self.supervisor.stop(vm, graceful=False)
        self.registry.remove(name)

    def store_image(self, name: str, image: Optional[str] = None, force: bool = False) -> Path:
        """Save a stopped VM's disk as a reusable image (default name: the VM name with dots as hyphens)."""
        vm = self.registry.get(name)
        if self.supervisor.state(vm) == VMState.RUNNING:
            raise AlreadyRunningError(f"VM '{name}' is running; stop it before storing its disk")
        if not vm.disk.is_file():
            raise NotFoundError(f"VM '{name}' has no disk at {vm.disk}")
        return self.cache.store(vm.disk, image or name.replace(".", "-"), force=force)

    # -- access -----------------------------------------------------------------

    def ssh_target(self, vm: VMDescriptor, user: Optional[str] = None) -> SSHTarget:
        cfg = vm.config
        return SSHTarget(
            host=cfg.ssh_host,
            port=cfg.ssh_port,
            user=user or cfg.ssh_user,
            options=tuple(cfg.ssh_options),
        )

    def ssh_args(
        self,
        vm: VMDescriptor,
        user: Optional[str] = None,
        command: Optional[List[str]] = None,
        options: Optional[Iterable[str]] = None,
        flags: Optional[Iterable[str]] = None,
    ) -> List[str]:
        target = self.ssh_target(vm, user)
        args = ["ssh", "-p", str(target.port)]
        args += list(flags or [])
        for option in (*_DEFAULT_SSH_OPTIONS, *target.options, *(options or [])):
            args += ["-o", option]
        args.append(f"{target.user}@{target.host}")
        args += list(command or [])
        return args

    def ssh(
        self,
        name: str,
        user: Optional[str] = None,
        command: Optional[List[str]] = None,
        options: Optional[Iterable[str]] = None,
        flags: Optional[Iterable[str]] = None,
    ) -> int:
        """Hand the session to the external ssh client once the VM answers; returns its exit status."""
        vm = self.registry.get(name)
        self._require_running(vm)
        cfg = vm.config
        self._wait_ssh(vm, cfg, min(SSH_PROBE_TIMEOUT, cfg.wait_ssh_timeout), None)
        args = self.ssh_args(vm, user=user, command=command, options=options, flags=flags)
        try:
            return run(args, check=False).returncode
        except FileNotFoundError as exc:
            raise VmlError("ssh client not found; install OpenSSH") from exc

    def console(self, name: str) -> int:
        vm = self.registry.get(name)
        if not has_controlling_tty():
            raise VmlError("console needs an interactive terminal")
        cmd = self.supervisor.console_command(vm)
        log("INFO", "Attaching to VM console (Ctrl+] to exit)")
        try:
            return run(cmd, check=False).returncode
        except FileNotFoundError as exc:
            raise VmlError("socat not found; install it to attach to the console") from exc

    def monitor(self, name: str, command: str) -> str:
        return self.supervisor.monitor_command(self.registry.get(name), command)

    # -- inspection -------------------------------------------------------------

    def list(self, running: bool = False, names: Optional[Iterable[str]] = None) -> List[Tuple[VMDescriptor, VMState]]:
        result = []
        for vm in sorted(self.registry.list(names), key=lambda v: v.name):
            state = self.supervisor.state(vm)
            if running and state != VMState.RUNNING:
                continue
            result.append((vm, state))
        return result

    def show(self, name: str) -> Dict[str, object]:
        vm = self.registry.get(name)
        cfg = vm.config
        return {
            "name": vm.name,
            "directory": str(vm.directory),
            "state": self.supervisor.state(vm).value,
            "image": cfg.image,
            "memory": f"{cfg.memory_mb}M",
            "cpus": cfg.cpus,
            "network": cfg.network if cfg.network != "bridge" else f"bridge ({cfg.bridge})",
            "mac": cfg.mac,
            "ssh": f"{cfg.ssh_user}@{cfg.ssh_host}:{cfg.ssh_port}",
            "disk": str(vm.disk) if vm.disk.exists() else f"{vm.disk} (missing)",
            "seed": str(vm.seed) if vm.seed.exists() else f"{vm.seed} (missing)",
            "monitor": str(vm.monitor_socket),
            "console": str(vm.console_socket),
        }

    def _require_running(self, vm: VMDescriptor) -> None:
        if not self.supervisor.is_running(vm):
            raise NotRunningError(f"VM '{vm.name}' is not running")
