from __future__ import annotations

import os
from pathlib import Path, PurePosixPath

from .errors import PathEscape

MAPPING_FILENAME = "mapping.json"
MANIFEST_FILENAME = ".extsync-install.json"
ARCHIVE_EXTENSION = "zip"
# Staging, backup and batch holding dirs live in the content root under this prefix.
PRIVATE_PREFIX = ".extsync-"

_RESERVED_NAMES = {MAPPING_FILENAME, ".", ".."}


def is_within(path: Path, root: Path) -> bool:
    """True when `path` lies strictly below `root` once both are normalized."""
    target = Path(path).resolve()
    base = Path(root).resolve()
    return str(target).startswith(str(base) + os.sep)


def _check_name(value: str, *, kind: str) -> str:
    if not isinstance(value, str):
        raise PathEscape(f"Invalid {kind}: {value!r}")
    raw = value.strip()
    if not raw or raw in _RESERVED_NAMES:
        raise PathEscape(f"Invalid {kind}: {value!r}")
    if raw.startswith(("/", "\\")) or os.path.isabs(raw):
        raise PathEscape(f"Absolute {kind} is not allowed: {value!r}")
    return raw


def _is_reserved_part(part: str) -> bool:
    return part.startswith(MAPPING_FILENAME) or part.startswith(PRIVATE_PREFIX)


class PathResolver:
    def __init__(self, *, content_root: Path, downloads_root: Path) -> None:
        self.content_root = Path(content_root).expanduser().resolve()
        self.downloads_root = Path(downloads_root).expanduser().resolve()

    @property
    def mapping_path(self) -> Path:
        return self.content_root / MAPPING_FILENAME

    def _contained(self, candidate: Path, root: Path, *, original: str) -> Path:
        resolved = candidate.resolve()
        if not is_within(resolved, root):
            raise PathEscape(f"Path {original!r} resolves outside of {root}")
        return resolved

    def _component_dir(self, value: str, *, kind: str) -> Path:
        rel = _check_name(value, kind=kind)
        resolved = self._contained(self.content_root / rel, self.content_root, original=value)
        # Judged after normalization: "./mapping.json" and "a/../mapping.json" are the mapping file.
        first = resolved.relative_to(self.content_root).parts[0]
        if resolved == self.mapping_path or _is_reserved_part(first):
            raise PathEscape(f"{kind.capitalize()} {value!r} resolves to a reserved name in {self.content_root}")
        return resolved

    def resolve_install_dir(self, identifier: str) -> Path:
        return self._component_dir(identifier, kind="identifier")

    def resolve_download_path(self, name: str) -> Path:
        base = _check_name(name, kind="download name")
        candidate = self.downloads_root / f"{base}.{ARCHIVE_EXTENSION}"
        return self._contained(candidate, self.downloads_root, original=name)

    def resolve_location(self, location: str) -> Path:
        return self._component_dir(location, kind="location")

    def relative_location(self, install_dir: Path) -> str:
        resolved = self._contained(Path(install_dir), self.content_root, original=str(install_dir))
        return PurePosixPath(*resolved.relative_to(self.content_root).parts).as_posix()
