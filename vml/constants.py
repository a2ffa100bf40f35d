"""Global constants and path configuration for vml."""

from __future__ import annotations

import os
import re
from pathlib import Path

CONFIG_DIR = Path(os.environ.get("VML_CONFIG_DIR") or "~/.config/vml").expanduser()
MAIN_CONFIG_NAME = "config.toml"
SYSTEM_CONFIG_DIR = Path("/etc/vml")

_DATA_HOME = Path(os.environ.get("XDG_DATA_HOME") or "~/.local/share").expanduser()
DEFAULT_VMS_DIR = _DATA_HOME / "vml" / "vms"
DEFAULT_IMAGES_DIR = _DATA_HOME / "vml" / "images"

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_CATALOG_PATH = PACKAGE_DIR / "images.yaml"
EXAMPLE_CONFIG_PATH = PACKAGE_DIR / "config.example.toml"

# VM directory layout
VM_CONFIG_NAME = "vml.toml"
MONITOR_SOCKET_NAME = ".monitor.sock"
CONSOLE_SOCKET_NAME = ".console.sock"
PIDFILE_NAME = ".qemu.pid"
LOG_FILE_NAME = ".qemu.log"
SEED_FINGERPRINT_NAME = ".seed.sha256"
DOWNLOAD_SUFFIX = ".part"

TRUTHY = {"1", "true", "yes", "on"}
NETWORK_MODES = ("user", "bridge", "none")
LOGIN_MODES = ("key", "password", "both")

VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
SHA256_RE = re.compile(r"^[0-9a-f]{64}$")

# Host port range used when the SSH forward port is derived from the VM name.
SSH_PORT_BASE = 20022
SSH_PORT_SPAN = 10000

HANDSHAKE_TIMEOUT = 1.0
MONITOR_READY_TIMEOUT = 10.0
KILL_TIMEOUT = 5.0

_LOG_VERBOSE = os.environ.get("VML_LOG_VERBOSE", "").lower() in TRUTHY

ISO_TOOLS = ("genisoimage", "mkisofs", "xorrisofs")
