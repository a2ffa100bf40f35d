"""VM descriptors and the registry of VM directories."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from vml.config import dump_settings, load_settings, resolve
from vml.constants import (
    CONSOLE_SOCKET_NAME,
    LOG_FILE_NAME,
    MONITOR_SOCKET_NAME,
    PIDFILE_NAME,
    SEED_FINGERPRINT_NAME,
    VM_CONFIG_NAME,
    VM_NAME_RE,
)
from vml.exceptions import AlreadyExistsError, ConfigError, NotFoundError
from vml.models import Settings, VMConfig
from vml.utils import ensure_directory, log


def validate_name(name: str) -> str:
    if not VM_NAME_RE.match(name or ""):
        raise ConfigError(f"Invalid VM name '{name}'. Use letters, digits, '.', '_' and '-'")
    return name


@dataclass(frozen=True)
class VMDescriptor:
    """A VM directory. Everything except name and location is read from disk on access."""

    name: str
    directory: Path
    defaults: Settings = field(default_factory=Settings)
    overrides: Settings = field(default_factory=Settings)

    @property
    def config_file(self) -> Path:
        return self.directory / VM_CONFIG_NAME

    @property
    def config(self) -> VMConfig:
        try:
            vm_scope = load_settings(self.config_file)
            return resolve([self.defaults, vm_scope, self.overrides], self.name)
        except ConfigError as exc:
            raise ConfigError(f"VM '{self.name}': {exc}") from exc

    @property
    def disk(self) -> Path:
        return self.directory / f"{self.name}.img"

    @property
    def seed(self) -> Path:
        return self.directory / f"{self.name}-seed.img"

    @property
    def monitor_socket(self) -> Path:
        return self.directory / MONITOR_SOCKET_NAME

    @property
    def console_socket(self) -> Path:
        return self.directory / CONSOLE_SOCKET_NAME

    @property
    def pidfile(self) -> Path:
        return self.directory / PIDFILE_NAME

    @property
    def log_file(self) -> Path:
        return self.directory / LOG_FILE_NAME

    @property
    def seed_fingerprint(self) -> Path:
        return self.directory / SEED_FINGERPRINT_NAME

    @property
    def folded_name(self) -> str:
        return self.name.split(".", 1)[0]


class VMListing:
    """Lazy, restartable view of the VMs under a root; every iteration rescans."""

    def __init__(self, registry: "VMRegistry", names: Optional[Iterable[str]] = None) -> None:
        self._registry = registry
        self._names = set(names) if names is not None else None

    def __iter__(self) -> Iterator[VMDescriptor]:
        root = self._registry.vms_dir
        if not root.is_dir():
            return
        with os.scandir(root) as entries:
            for entry in entries:
                if not entry.is_dir() or not VM_NAME_RE.match(entry.name):
                    continue
                if self._names is not None and entry.name not in self._names:
                    continue
                if not (Path(entry.path) / VM_CONFIG_NAME).is_file():
                    continue
                yield self._registry.descriptor(entry.name)


class VMRegistry:
    def __init__(self, vms_dir: Path, defaults: Optional[Settings] = None) -> None:
        self.vms_dir = vms_dir
        self.defaults = defaults or Settings()

    def descriptor(self, name: str, overrides: Optional[Settings] = None) -> VMDescriptor:
        validate_name(name)
        return VMDescriptor(name, self.vms_dir / name, self.defaults, overrides or Settings())

    def list(self, names: Optional[Iterable[str]] = None) -> VMListing:
        return VMListing(self, names)

    def exists(self, name: str) -> bool:
        return (self.vms_dir / validate_name(name) / VM_CONFIG_NAME).is_file()

    def get(self, name: str, overrides: Optional[Settings] = None) -> VMDescriptor:
        try:
            vm = self.descriptor(name, overrides)
        except ConfigError as exc:
            raise NotFoundError(f"VM '{name}' not found: {exc}") from exc
        if not vm.directory.is_dir():
            raise NotFoundError(f"VM '{name}' not found in {self.vms_dir}")
        if not vm.config_file.is_file():
            raise NotFoundError(f"VM '{name}' has no {VM_CONFIG_NAME} in {vm.directory}")
        return vm

    def create_directory(self, name: str, settings: Optional[Settings] = None) -> VMDescriptor:
        """Create ``<vms-dir>/<name>`` with its marker config."""
        vm = self.descriptor(name)
        if vm.config_file.exists():
            raise AlreadyExistsError(f"VM '{name}' already exists at {vm.directory}")
        ensure_directory(vm.directory)
        vm.config_file.write_text(dump_settings(settings or Settings()), encoding="utf-8")
        log("INFO", f"Created VM directory {vm.directory}")
        return vm

    def remove(self, name: str) -> None:
        vm = self.get(name)
        shutil.rmtree(vm.directory)
        log("INFO", f"Removed VM {name}")

    def names(self) -> List[str]:
        return sorted(vm.name for vm in self.list())
