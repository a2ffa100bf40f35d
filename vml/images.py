"""Image catalog and local base-image cache for vml."""

from __future__ import annotations

import os
import platform
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vml.constants import DEFAULT_CATALOG_PATH, DOWNLOAD_SUFFIX, SHA256_RE
from vml.exceptions import AlreadyExistsError, ConfigError, NotFoundError, UnknownImageError, VmlError
from vml.utils import download_file, ensure_directory, log, sha256_file

_ENTRY_KEYS = {"description", "url", "sha256", "arch-mapping", "update-after-days"}


@dataclass(frozen=True)
class ImageRef:
    name: str
    url: str
    sha256: Optional[str] = None
    description: Optional[str] = None
    update_after_days: Optional[int] = None


@dataclass
class ImageCatalog:
    """Static name -> source table loaded from YAML."""

    entries: Dict[str, dict] = field(default_factory=dict)
    arch: str = field(default_factory=platform.machine)

    @classmethod
    def load(cls, path: Optional[Path] = None, arch: Optional[str] = None) -> "ImageCatalog":
        if path is None:
            path = DEFAULT_CATALOG_PATH
        if not path.exists():
            raise ConfigError(f"Image catalog missing: {path}")
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Image catalog {path} contains invalid YAML: {exc}") from exc
        images = data.get("images", {}) if isinstance(data, dict) else None
        if not isinstance(images, dict):
            raise ConfigError(f"Image catalog {path}: 'images' must be a mapping")
        for name, entry in images.items():
            if not isinstance(entry, dict) or not isinstance(entry.get("url"), str):
                raise ConfigError(f"Image catalog {path}: entry '{name}' needs a url")
            unknown = set(entry) - _ENTRY_KEYS
            if unknown:
                raise ConfigError(f"Image catalog {path}: entry '{name}' has unknown keys {sorted(unknown)}")
            checksum = entry.get("sha256")
            if checksum is not None and not SHA256_RE.match(str(checksum).lower()):
                raise ConfigError(f"Image catalog {path}: entry '{name}' has a malformed sha256")
        return cls(entries=dict(images), arch=arch or platform.machine())

    def names(self) -> List[str]:
        return sorted(self.entries)

    def get(self, name: str) -> ImageRef:
        entry = self.entries.get(name)
        if entry is None:
            raise UnknownImageError(f"Unknown image '{name}'. Use 'vml image available' to list images.")
        arch = self.arch
        mapping = entry.get("arch-mapping") or {}
        arch = mapping.get(arch, arch)
        checksum = entry.get("sha256")
        return ImageRef(
            name=name,
            url=entry["url"].replace("{arch}", arch),
            sha256=str(checksum).lower() if checksum else None,
            description=entry.get("description"),
            update_after_days=entry.get("update-after-days"),
        )


class ImageCache:
    """Maps image names to verified files under the images directory.

    ``ro_dirs`` are searched after ``images_dir`` and never written to.
    """

    def __init__(
        self,
        images_dir: Path,
        catalog: ImageCatalog,
        update_after_days: Optional[int] = None,
        ro_dirs: Optional[List[Path]] = None,
    ) -> None:
        self.images_dir = images_dir
        self.catalog = catalog
        self.update_after_days = update_after_days
        self.ro_dirs = list(ro_dirs or [])

    @staticmethod
    def check_name(name: str) -> str:
        if not name or name.startswith(".") or "/" in name or os.sep in name:
            raise ConfigError(f"Invalid image name '{name}'")
        return name

    def path(self, name: str) -> Path:
        return self.images_dir / self.check_name(name)

    def find(self, name: str) -> Optional[Path]:
        """First non-empty file named ``name`` in the images directory, then the read-only ones."""
        self.check_name(name)
        for directory in (self.images_dir, *self.ro_dirs):
            candidate = directory / name
            if candidate.is_file() and candidate.stat().st_size > 0:
                return candidate
        return None

    def require(self, name: str) -> None:
        """Fail unless ``name`` is a catalog entry or an image already on disk."""
        if name not in self.catalog.entries and self.find(name) is None:
            self.catalog.get(name)

    def is_valid(self, ref: ImageRef, path: Optional[Path] = None) -> bool:
        """A cache entry counts only if it is a complete, non-empty file with a matching checksum."""
        path = path or self.path(ref.name)
        if not path.is_file() or path.stat().st_size == 0:
            return False
        if ref.sha256 and sha256_file(path) != ref.sha256:
            log("WARN", f"Checksum mismatch for cached image {path}")
            return False
        return True

    def ensure(self, name: str) -> Path:
        if name not in self.catalog.entries:
            local = self.find(name)
            if local is None:
                self.catalog.get(name)
            log("INFO", f"Using local image: {local}")
            return local

        ref = self.catalog.get(name)
        path = self.path(name)
        if self.is_valid(ref):
            log("INFO", f"Using cached image: {path}")
            if self.is_outdated(name):
                log("WARN", f"Cached image {name} is outdated; run 'vml image pull {name}' to refresh it")
            return path
        for directory in self.ro_dirs:
            if self.is_valid(ref, directory / name):
                log("INFO", f"Using read-only image: {directory / name}")
                return directory / name
        return self._fetch(ref)

    def pull(self, name: str) -> Path:
        return self._fetch(self.catalog.get(name))

    def _fetch(self, ref: ImageRef) -> Path:
        path = self.path(ref.name)
        ensure_directory(self.images_dir)
        download_file(ref.url, path, label=f"Downloading image {ref.name}", sha256=ref.sha256)
        return path

    def store(self, source: Path, name: str, force: bool = False) -> Path:
        """Copy ``source`` (a VM disk) into the images directory as ``name``."""
        path = self.path(name)
        if path.exists() and not force:
            raise AlreadyExistsError(f"Image '{name}' already exists in {self.images_dir}; use --force to replace it")
        ensure_directory(self.images_dir)
        tmp = self.images_dir / f".{name}{DOWNLOAD_SUFFIX}"
        try:
            shutil.copyfile(source, tmp)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise VmlError(f"Storing {source} as image '{name}' failed: {exc}") from exc
        os.replace(tmp, path)
        log("SUCCESS", f"Stored {source} as image {name}")
        return path

    def is_outdated(self, name: str) -> bool:
        days = self.catalog.get(name).update_after_days
        if days is None:
            days = self.update_after_days
        path = self.path(name)
        if days is None or not path.is_file():
            return False
        age = time.time() - path.stat().st_mtime
        return age > days * 24 * 60 * 60

    def list_cached(self) -> List[str]:
        names = set()
        for directory in (self.images_dir, *self.ro_dirs):
            if not directory.is_dir():
                continue
            names.update(
                p.name
                for p in directory.iterdir()
                if p.is_file() and not p.name.startswith(".") and not p.name.endswith(DOWNLOAD_SUFFIX)
            )
        return sorted(names)

    def remove(self, name: str) -> None:
        path = self.path(name)
        if not path.is_file():
            raise NotFoundError(f"Image '{name}' is not cached in {self.images_dir}")
        path.unlink()
        log("INFO", f"Removed image {path}")
