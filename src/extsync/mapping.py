from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from .errors import MappingIOError
from .models import MappingEntry

logger = logging.getLogger(__name__)


class MappingStore:
    """
    Durable ``uuid -> {location, version}`` mapping kept in one JSON file.

    ``write`` always replaces the whole file through a temp file and an atomic
    rename, so readers never observe a truncated mapping. Callers serialize
    writers themselves.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def read(self) -> dict[str, MappingEntry]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise MappingIOError(f"Could not read mapping file {self.path}: {e}") from e

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise MappingIOError(f"Mapping file {self.path} is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise MappingIOError(f"Mapping file {self.path} does not hold a JSON object")

        mapping: dict[str, MappingEntry] = {}
        for uuid, item in raw.items():
            if not isinstance(item, dict):
                logger.warning("Skipping malformed mapping entry for %s", uuid)
                continue
            location = item.get("location")
            version = item.get("version")
            if not isinstance(location, str) or not isinstance(version, str):
                logger.warning("Skipping mapping entry for %s without location/version", uuid)
                continue
            mapping[uuid] = MappingEntry(location=location, version=version)
        return mapping

    def write(self, mapping: dict[str, MappingEntry]) -> None:
        payload = {uuid: mapping[uuid].to_json() for uuid in sorted(mapping)}
        data = json.dumps(payload, indent=2, sort_keys=True) + "\n"

        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=self.path.name + ".", suffix=".tmp", dir=self.path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise MappingIOError(f"Could not write mapping file {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
        logger.debug("Wrote %d mapping entries to %s", len(payload), self.path)
