"""cloud-init NoCloud seed image generation."""

from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vml.constants import ISO_TOOLS
from vml.exceptions import SeedBuildError
from vml.models import VMConfig
from vml.registry import VMDescriptor
from vml.utils import hash_password, log, run


def collect_ssh_keys(entries: List[str]) -> List[str]:
    """Each entry is either a public key literal or a path to a ``.pub`` file; missing paths are skipped."""
    keys: List[str] = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        if entry.startswith(("ssh-", "ecdsa-", "sk-")):
            keys.append(entry)
            continue
        path = Path(entry).expanduser()
        if not path.is_file():
            log("DEBUG", f"SSH key file {path} not found; skipped")
            continue
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                keys.append(line)
    return list(dict.fromkeys(keys))


def render_meta_data(cfg: VMConfig) -> str:
    return f"instance-id: iid-{cfg.name}\nlocal-hostname: {cfg.hostname}\n"


def render_user_data(cfg: VMConfig) -> str:
    user: Dict[str, object] = {
        "name": cfg.ssh_user,
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "shell": "/bin/bash",
        "lock_passwd": not cfg.uses_password,
    }
    user_data: Dict[str, object] = {
        "hostname": cfg.hostname,
        "users": [user],
        "ssh_pwauth": cfg.uses_password,
    }

    if cfg.uses_keys:
        keys = collect_ssh_keys(cfg.ssh_keys)
        if not keys:
            raise SeedBuildError(
                f"VM '{cfg.name}': login = \"{cfg.login}\" needs an SSH public key but none of "
                f"{', '.join(cfg.ssh_keys) or '<none>'} could be read. Set ssh-keys in vml.toml or config.toml."
            )
        user["ssh_authorized_keys"] = keys

    if cfg.uses_password:
        if not cfg.password:
            raise SeedBuildError(f"VM '{cfg.name}': login = \"{cfg.login}\" needs a password; set password")
        user["passwd"] = hash_password(cfg.password, seed=cfg.name)
        user_data["chpasswd"] = {"expire": False}

    if cfg.commands:
        user_data["runcmd"] = list(cfg.commands)

    return "#cloud-config\n" + yaml.safe_dump(user_data, sort_keys=False, default_flow_style=False)


def find_iso_tool() -> Optional[str]:
    for tool in ISO_TOOLS:
        path = shutil.which(tool)
        if path:
            return path
    return None


class SeedBuilder:
    """Builds ``<name>-seed.img`` from the resolved configuration of a VM."""

    def build(self, vm: VMDescriptor) -> Path:
        cfg = vm.config
        documents = {
            "meta-data": render_meta_data(cfg),
            "user-data": render_user_data(cfg),
        }
        fingerprint = self.fingerprint(documents)
        if vm.seed.is_file() and self._stored_fingerprint(vm) == fingerprint:
            log("DEBUG", f"Seed image {vm.seed} is up to date")
            return vm.seed

        tool = find_iso_tool()
        if tool is None:
            raise SeedBuildError(f"None of {', '.join(ISO_TOOLS)} found; install genisoimage to build seed images")

        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            for filename, content in documents.items():
                (tmp / filename).write_text(content, encoding="utf-8")
                os.utime(tmp / filename, (0, 0))
            output = vm.directory / f".{vm.seed.name}.tmp"
            cmd = [
                tool,
                "-output",
                str(output),
                "-volid",
                "cidata",
                "-joliet",
                "-rock",
                str(tmp / "meta-data"),
                str(tmp / "user-data"),
            ]
            env = dict(os.environ, SOURCE_DATE_EPOCH="0")
            try:
                run(cmd, capture_output=True, env=env)
            except subprocess.CalledProcessError as exc:
                output.unlink(missing_ok=True)
                detail = (exc.stderr or "").strip()
                raise SeedBuildError(f"VM '{vm.name}': {Path(tool).name} failed: {detail}") from exc
            output.replace(vm.seed)

        vm.seed_fingerprint.write_text(fingerprint + "\n", encoding="utf-8")
        log("SUCCESS", f"Seed image written to {vm.seed}")
        return vm.seed

    @staticmethod
    def fingerprint(documents: Dict[str, str]) -> str:
        digest = hashlib.sha256()
        for filename in sorted(documents):
            digest.update(filename.encode("utf-8") + b"\0" + documents[filename].encode("utf-8") + b"\0")
        return digest.hexdigest()

    @staticmethod
    def _stored_fingerprint(vm: VMDescriptor) -> Optional[str]:
        try:
            return vm.seed_fingerprint.read_text(encoding="utf-8").strip()
        except OSError:
            return None
