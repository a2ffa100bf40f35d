"""Utility functions for vml."""

from __future__ import annotations

import base64
import hashlib
import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from vml import __version__
from vml.constants import (
    _LOG_VERBOSE,
    DOWNLOAD_SUFFIX,
    SIZE_RE,
    SSH_PORT_BASE,
    SSH_PORT_SPAN,
)
from vml.exceptions import ConfigError, FetchError

_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}

_STD_B64 = b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_BCRYPT_B64 = b"./ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    stream = sys.stderr if level in {"WARN", "ERROR"} else sys.stdout
    print(f"{colour}[{level}]{reset} {message}", file=stream, flush=True)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def parse_size_to_bytes(raw: str) -> int:
    """Convert '512M', '2G', '4096' (bytes) into a byte count."""
    text = str(raw).strip()
    if not SIZE_RE.match(text):
        raise ConfigError(f"Invalid size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')")
    unit = text[-1].upper() if text[-1].isalpha() else ""
    number = int(text[:-1] if unit else text)
    return number * _SIZE_UNITS[unit]


def parse_memory_mib(raw) -> int:
    """Memory accepts a plain integer (MiB) or a size string."""
    if isinstance(raw, bool):
        raise ConfigError(f"memory must be a size like '2G' or an integer MiB (got {raw!r})")
    if isinstance(raw, int):
        mib = raw
    else:
        text = str(raw).strip()
        if text.isdigit():
            mib = int(text)
        else:
            mib = parse_size_to_bytes(text) // (1024 * 1024)
    if mib <= 0:
        raise ConfigError(f"memory must be positive (got {raw!r})")
    return mib


def deterministic_mac(seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    octets = [0x52, 0x54, 0x00, digest[0], digest[1], digest[2]]
    return ":".join(f"{octet:02x}" for octet in octets)


def derive_ssh_port(name: str) -> int:
    """Stable host port for the user-mode SSH forward of a VM."""
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return SSH_PORT_BASE + int.from_bytes(digest[:4], "big") % SSH_PORT_SPAN


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def hash_password(password: str, seed: str, rounds: int = 12) -> str:
    """bcrypt hash with a salt derived from ``seed`` so cloud-init output is reproducible."""
    raw_salt = hashlib.sha256(f"vml:{seed}".encode("utf-8")).digest()[:16]
    encoded = base64.b64encode(raw_salt).rstrip(b"=").translate(bytes.maketrans(_STD_B64, _BCRYPT_B64))
    salt = b"$2b$%02d$" % rounds + encoded
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def download_file(
    url: str,
    destination: Path,
    label: str = "Downloading",
    timeout: float = 60,
    sha256: Optional[str] = None,
) -> None:
    """Download ``url`` next to ``destination`` and rename it into place once complete.

    When ``sha256`` is given the digest is checked before the rename, so a
    corrupt transfer never reaches ``destination``.
    """
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": f"vml/{__version__}"})
    try:
        response = urlopen(req, timeout=timeout)
    except HTTPError as exc:
        raise FetchError(f"HTTP error downloading {url}: {exc.code} {exc.reason}") from exc
    except (URLError, OSError) as exc:
        reason = getattr(exc, "reason", exc)
        raise FetchError(f"Failed to download {url}: {reason}") from exc

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    digest = hashlib.sha256()
    start_time = time.time()

    ensure_directory(destination.parent)
    with response, tempfile.NamedTemporaryFile(
        delete=False,
        dir=destination.parent,
        prefix=f".{destination.name}.",
        suffix=DOWNLOAD_SUFFIX,
    ) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                digest.update(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    total_mb = total_bytes / (1024 * 1024)
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(
                        f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
            print(flush=True)
            if total_bytes is not None and downloaded != total_bytes:
                raise FetchError(f"Incomplete download of {url}: got {downloaded} of {total_bytes} bytes")
            if sha256 and digest.hexdigest() != sha256:
                raise FetchError(f"Checksum mismatch for {url}: expected {sha256}, got {digest.hexdigest()}")
            tmp.flush()
            os.fsync(tmp.fileno())
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise FetchError(f"Failed to download {url}: {exc}") from exc
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    try:
        tmp_path.replace(destination)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise FetchError(f"Cannot move download into place at {destination}: {exc}") from exc
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def read_pid(pidfile: Path) -> Optional[int]:
    try:
        return int(pidfile.read_text().strip())
    except (OSError, ValueError):
        return None


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def tail_file(path: Path, lines: int = 20) -> str:
    try:
        content = path.read_text(errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
