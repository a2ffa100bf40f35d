"""Data models for vml."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import List, Optional


class CreateExistsAction(str, Enum):
    FAIL = "fail"
    IGNORE = "ignore"
    REPLACE = "replace"


@dataclass
class Settings:
    """One configuration scope. ``None`` means the scope does not set the field."""

    image: Optional[str] = None
    memory: Optional[object] = None  # "2G" or an integer MiB
    cpus: Optional[int] = None
    disk_size: Optional[str] = None
    network: Optional[str] = None
    bridge: Optional[str] = None
    mac: Optional[str] = None
    ssh_host: Optional[str] = None
    ssh_port: Optional[int] = None
    ssh_user: Optional[str] = None
    ssh_keys: Optional[List[str]] = None
    ssh_options: Optional[List[str]] = None
    login: Optional[str] = None
    password: Optional[str] = None
    hostname: Optional[str] = None
    commands: Optional[List[str]] = None
    cloud_init: Optional[bool] = None
    qemu_binary: Optional[str] = None
    kvm: Optional[bool] = None
    display: Optional[str] = None
    extra_args: Optional[List[str]] = None
    wait_ssh_timeout: Optional[float] = None
    wait_ssh_interval: Optional[float] = None
    stop_timeout: Optional[float] = None

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def present(self) -> dict:
        """Fields this scope actually sets."""
        return {name: value for name, value in vars(self).items() if value is not None}


@dataclass
class VMConfig:
    """Effective settings of one VM after all scopes are merged and validated."""

    name: str
    image: Optional[str]
    memory_mb: int
    cpus: int
    disk_size: Optional[str]
    network: str
    bridge: Optional[str]
    mac: str
    ssh_host: str
    ssh_port: int
    ssh_user: str
    ssh_keys: List[str]
    ssh_options: List[str]
    login: str
    password: Optional[str]
    hostname: str
    commands: List[str]
    cloud_init: bool
    qemu_binary: str
    kvm: bool
    display: str
    extra_args: List[str]
    wait_ssh_timeout: float
    wait_ssh_interval: float
    stop_timeout: float

    @property
    def uses_keys(self) -> bool:
        return self.login in ("key", "both")

    @property
    def uses_password(self) -> bool:
        return self.login in ("password", "both")


@dataclass
class GlobalConfig:
    """Tool-level settings plus the global default scope."""

    vms_dir: Path
    images_dir: Path
    defaults: Settings = field(default_factory=Settings)
    images_ro_dirs: List[Path] = field(default_factory=list)
    catalog_path: Optional[Path] = None
    update_after_days: Optional[int] = None
    path: Optional[Path] = None


@dataclass(frozen=True)
class SSHTarget:
    host: str
    port: int
    user: str
    options: tuple = ()
