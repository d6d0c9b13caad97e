from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import InstallError
from .paths import MANIFEST_FILENAME, PRIVATE_PREFIX

logger = logging.getLogger(__name__)


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _safe_extract_zip(archive_path: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    base = dest.resolve()
    with zipfile.ZipFile(archive_path, "r") as zf:
        for info in zf.infolist():
            name = info.filename
            if not name:
                continue
            if name.startswith(("/", "\\")):
                raise InstallError(f"Archive contains an absolute path entry: {name!r}")
            target = (dest / name).resolve()
            if not str(target).startswith(str(base) + os.sep) and target != base:
                raise InstallError(f"Archive contains an invalid path entry: {name!r}")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)


def _package_root(unpacked: Path) -> Path:
    # Archives built from a folder carry that folder as their only top-level entry.
    children = [p for p in unpacked.iterdir() if p.name != "__MACOSX"]
    if len(children) == 1 and children[0].is_dir():
        return children[0]
    return unpacked


class Installer:
    def install(
        self,
        archive_path: Path,
        install_dir: Path,
        version: str,
        *,
        identifier: str | None = None,
        keep_previous: Path | None = None,
    ) -> Path:
        """
        Extract ``archive_path`` into ``install_dir`` and record ``version``.

        The archive is unpacked into a private staging directory next to
        ``install_dir`` and swapped in only once extraction succeeded. A previous
        install is parked inside that staging directory during the swap and
        restored if it fails. With ``keep_previous`` the replaced install is moved
        there instead of being deleted.
        """
        archive_path = Path(archive_path)
        install_dir = Path(install_dir)
        try:
            install_dir.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(prefix=PRIVATE_PREFIX + "staging-", dir=install_dir.parent) as td:
                unpacked = Path(td) / "unpacked"
                _safe_extract_zip(archive_path, unpacked)
                source_root = _package_root(unpacked)
                self._write_manifest(source_root, identifier or install_dir.name, version)

                backup = Path(td) / "backup"
                had_existing = install_dir.exists()
                if had_existing:
                    install_dir.rename(backup)

                try:
                    shutil.move(str(source_root), str(install_dir))
                except Exception:
                    if install_dir.exists():
                        shutil.rmtree(install_dir, ignore_errors=True)
                    if had_existing:
                        backup.rename(install_dir)
                    raise
                if had_existing and keep_previous is not None:
                    try:
                        backup.rename(keep_previous)
                    except OSError:
                        shutil.rmtree(install_dir, ignore_errors=True)
                        backup.rename(install_dir)
                        raise
        except InstallError:
            raise
        except (OSError, zipfile.BadZipFile) as e:
            raise InstallError(f"Could not install {archive_path.name} into {install_dir}: {e}") from e

        logger.info("Installed %s %s into %s", install_dir.name, version, install_dir)
        return install_dir

    def uninstall(self, install_dir: Path) -> None:
        install_dir = Path(install_dir)
        if not install_dir.exists():
            logger.debug("Nothing to remove at %s", install_dir)
            return
        try:
            shutil.rmtree(install_dir)
        except FileNotFoundError:
            return
        except OSError as e:
            raise InstallError(f"Could not remove {install_dir}: {e}") from e
        logger.info("Removed %s", install_dir)

    def read_installed_version(self, install_dir: Path) -> str | None:
        manifest_path = Path(install_dir) / MANIFEST_FILENAME
        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict) or not isinstance(data.get("version"), str):
            return None
        return data["version"]

    def _write_manifest(self, package_dir: Path, identifier: str, version: str) -> None:
        manifest = {
            "identifier": identifier,
            "version": version,
            "installed_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        _write_json_atomic(package_dir / MANIFEST_FILENAME, manifest)
