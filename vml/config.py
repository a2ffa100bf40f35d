"""Configuration loading and layered resolution for vml."""

from __future__ import annotations

import json
import shutil
import tomllib
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from vml.constants import (
    CONFIG_DIR,
    DEFAULT_IMAGES_DIR,
    DEFAULT_VMS_DIR,
    EXAMPLE_CONFIG_PATH,
    LOGIN_MODES,
    MAC_ADDRESS_RE,
    MAIN_CONFIG_NAME,
    NETWORK_MODES,
    SIZE_RE,
    SYSTEM_CONFIG_DIR,
)
from vml.exceptions import ConfigError
from vml.models import GlobalConfig, Settings, VMConfig
from vml.utils import derive_ssh_port, deterministic_mac, ensure_directory, log, parse_memory_mib

# Lowest precedence scope. Name-dependent values (mac, hostname, ssh host/port)
# are derived during resolution when no scope sets them.
BUILTIN_DEFAULTS = Settings(
    memory="1G",
    cpus=1,
    network="user",
    ssh_user="user",
    ssh_keys=["~/.ssh/id_ed25519.pub", "~/.ssh/id_ecdsa.pub", "~/.ssh/id_rsa.pub"],
    ssh_options=[],
    login="key",
    commands=[],
    cloud_init=True,
    qemu_binary="qemu-system-x86_64",
    kvm=True,
    display="none",
    extra_args=[],
    wait_ssh_timeout=120.0,
    wait_ssh_interval=1.0,
    stop_timeout=60.0,
)

_FIELD_KINDS: Dict[str, str] = {
    "image": "str",
    "memory": "memory",
    "cpus": "int",
    "disk_size": "str",
    "network": "str",
    "bridge": "str",
    "mac": "str",
    "ssh_host": "str",
    "ssh_port": "int",
    "ssh_user": "str",
    "ssh_keys": "str_list",
    "ssh_options": "str_list",
    "login": "str",
    "password": "str",
    "hostname": "str",
    "commands": "str_list",
    "cloud_init": "bool",
    "qemu_binary": "str",
    "kvm": "bool",
    "display": "str",
    "extra_args": "str_list",
    "wait_ssh_timeout": "float",
    "wait_ssh_interval": "float",
    "stop_timeout": "float",
}

_TOOL_TABLE = "vml"
_TOOL_KEYS = {"vms_dir", "images_dir", "images_ro_dirs", "images_catalog", "update_after_days"}


def _normalize_key(key: str) -> str:
    return key.strip().replace("-", "_")


def _check_kind(source: str, key: str, value, kind: str):
    label = f"{source}: '{key.replace('_', '-')}'"
    if kind == "str":
        if not isinstance(value, str):
            raise ConfigError(f"{label} must be a string (got {value!r})")
        return value
    if kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{label} must be an integer (got {value!r})")
        return value
    if kind == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{label} must be a number (got {value!r})")
        return float(value)
    if kind == "bool":
        if not isinstance(value, bool):
            raise ConfigError(f"{label} must be true or false (got {value!r})")
        return value
    if kind == "str_list":
        if isinstance(value, str):
            return [value]
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ConfigError(f"{label} must be a list of strings (got {value!r})")
        return list(value)
    if kind == "memory":
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise ConfigError(f"{label} must be a size like '2G' or an integer MiB (got {value!r})")
        return value
    raise AssertionError(kind)  # pragma: no cover


def settings_from_mapping(data: dict, source: str = "<overrides>") -> Settings:
    """Type-check a raw mapping (TOML table or CLI overrides) into a Settings scope."""
    values = {}
    for raw_key, value in data.items():
        key = _normalize_key(raw_key)
        kind = _FIELD_KINDS.get(key)
        if kind is None:
            raise ConfigError(f"{source}: unknown setting '{raw_key}'")
        if value is None:
            continue
        values[key] = _check_kind(source, key, value, kind)
    return Settings(**values)


def _read_toml(path: Path) -> dict:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc


def load_settings(path: Path, missing_ok: bool = False) -> Settings:
    """Load one config file as a partial Settings scope."""
    if not path.exists():
        if missing_ok:
            return Settings()
        raise ConfigError(f"Config file missing: {path}")
    return settings_from_mapping(_read_toml(path), source=str(path))


def load_global_config(config_dir: Optional[Path] = None) -> GlobalConfig:
    """Read ``config.toml``: top-level keys are defaults, ``[vml]`` holds tool settings."""
    config_dir = config_dir or CONFIG_DIR
    path = config_dir / MAIN_CONFIG_NAME
    data = _read_toml(path) if path.exists() else {}

    tool_raw = data.pop(_TOOL_TABLE, {})
    if not isinstance(tool_raw, dict):
        raise ConfigError(f"{path}: '[{_TOOL_TABLE}]' must be a table")
    tool = {}
    for raw_key, value in tool_raw.items():
        key = _normalize_key(raw_key)
        if key not in _TOOL_KEYS:
            raise ConfigError(f"{path}: unknown setting '{_TOOL_TABLE}.{raw_key}'")
        tool[key] = value

    def _path(key: str, value) -> Path:
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{path}: '{_TOOL_TABLE}.{key.replace('_', '-')}' must be a path string")
        candidate = Path(value).expanduser()
        if not candidate.is_absolute():
            candidate = config_dir / candidate
        return candidate

    def _dir(key: str, default: Path) -> Path:
        value = tool.get(key)
        if value is None:
            return default
        return _path(key, value)

    ro_dirs = tool.get("images_ro_dirs", [])
    if not isinstance(ro_dirs, list):
        raise ConfigError(f"{path}: '{_TOOL_TABLE}.images-ro-dirs' must be a list of paths")

    update_after_days = tool.get("update_after_days")
    if update_after_days is not None and (
        isinstance(update_after_days, bool) or not isinstance(update_after_days, int) or update_after_days < 0
    ):
        raise ConfigError(f"{path}: '{_TOOL_TABLE}.update-after-days' must be a non-negative integer")

    catalog = tool.get("images_catalog")
    return GlobalConfig(
        vms_dir=_dir("vms_dir", DEFAULT_VMS_DIR),
        images_dir=_dir("images_dir", DEFAULT_IMAGES_DIR),
        images_ro_dirs=[_path("images_ro_dirs", value) for value in ro_dirs],
        defaults=settings_from_mapping(data, source=str(path)),
        catalog_path=_dir("images_catalog", Path()) if catalog is not None else None,
        update_after_days=update_after_days,
        path=path,
    )


def install_main_config(config_dir: Optional[Path] = None) -> Path:
    """Install a commented config file on first use; never overwrites."""
    config_dir = config_dir or CONFIG_DIR
    ensure_directory(config_dir)
    path = config_dir / MAIN_CONFIG_NAME
    if path.exists():
        return path
    system_config = SYSTEM_CONFIG_DIR / MAIN_CONFIG_NAME
    source = system_config if system_config.exists() else EXAMPLE_CONFIG_PATH
    shutil.copyfile(source, path)
    log("INFO", f"Installed default config at {path}")
    return path


def merge(scopes: Iterable[Settings]) -> Settings:
    """Field-wise merge; later scopes take precedence over earlier ones."""
    merged = {}
    for scope in reversed(list(scopes)):
        for key, value in scope.present().items():
            merged.setdefault(key, value)
    return Settings(**merged)


def _positive(name: str, value: float) -> float:
    if value <= 0:
        raise ConfigError(f"{name.replace('_', '-')} must be > 0 (got {value})")
    return value


def _non_empty(name: str, value: str) -> str:
    if not value.strip():
        raise ConfigError(f"{name.replace('_', '-')} must not be empty")
    return value.strip()


def resolve(scopes: List[Settings], name: str) -> VMConfig:
    """Resolve ordered scopes (lowest precedence first) into a validated VMConfig.

    The built-in defaults always sit underneath ``scopes`` so every field ends
    up populated. Validation happens once, here.
    """
    s = merge([BUILTIN_DEFAULTS, *scopes])

    if s.cpus < 1:
        raise ConfigError(f"cpus must be >= 1 (got {s.cpus})")
    memory_mb = parse_memory_mib(s.memory)

    disk_size = s.disk_size
    if disk_size is not None:
        disk_size = disk_size.strip()
        if not SIZE_RE.match(disk_size):
            raise ConfigError(f"Invalid disk-size '{s.disk_size}'. Use a number with optional suffix: K, M, G, T")
        disk_size = disk_size.upper()

    network = s.network.strip().lower()
    if network not in NETWORK_MODES:
        raise ConfigError(f"Unsupported network '{s.network}'. Expected one of {', '.join(NETWORK_MODES)}")
    bridge = s.bridge.strip() if s.bridge else None
    if network == "bridge" and not bridge:
        raise ConfigError("bridge must be set when network = \"bridge\"")

    mac = (s.mac or deterministic_mac(name)).strip().lower()
    if not MAC_ADDRESS_RE.match(mac):
        raise ConfigError(f"Invalid mac '{s.mac}'. Use format aa:bb:cc:dd:ee:ff")

    login = s.login.strip().lower()
    if login not in LOGIN_MODES:
        raise ConfigError(f"Unsupported login '{s.login}'. Expected one of {', '.join(LOGIN_MODES)}")

    hostname = _non_empty("hostname", s.hostname) if s.hostname is not None else name

    if s.ssh_port is not None:
        ssh_port = s.ssh_port
    elif network == "user":
        ssh_port = derive_ssh_port(name)
    else:
        ssh_port = 22
    if not 1 <= ssh_port <= 65535:
        raise ConfigError(f"ssh-port must be within 1-65535 (got {ssh_port})")

    if s.ssh_host is not None:
        ssh_host = _non_empty("ssh_host", s.ssh_host)
    else:
        ssh_host = "127.0.0.1" if network == "user" else hostname

    image = s.image.strip() if s.image else None

    return VMConfig(
        name=name,
        image=image or None,
        memory_mb=memory_mb,
        cpus=s.cpus,
        disk_size=disk_size,
        network=network,
        bridge=bridge,
        mac=mac,
        ssh_host=ssh_host,
        ssh_port=ssh_port,
        ssh_user=_non_empty("ssh_user", s.ssh_user),
        ssh_keys=list(s.ssh_keys),
        ssh_options=list(s.ssh_options),
        login=login,
        password=s.password,
        hostname=hostname,
        commands=list(s.commands),
        cloud_init=s.cloud_init,
        qemu_binary=_non_empty("qemu_binary", s.qemu_binary),
        kvm=s.kvm,
        display=_non_empty("display", s.display),
        extra_args=list(s.extra_args),
        wait_ssh_timeout=_positive("wait_ssh_timeout", s.wait_ssh_timeout),
        wait_ssh_interval=_positive("wait_ssh_interval", s.wait_ssh_interval),
        stop_timeout=_positive("stop_timeout", s.stop_timeout),
    )


def _toml_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        # JSON string escapes are a subset of TOML basic string escapes.
        return json.dumps(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    raise ConfigError(f"Cannot store value {value!r} in vml.toml")


def dump_settings(settings: Settings) -> str:
    """Render the fields a scope sets as TOML."""
    lines = [f"{key.replace('_', '-')} = {_toml_value(value)}" for key, value in settings.present().items()]
    return "\n".join(lines) + ("\n" if lines else "")
