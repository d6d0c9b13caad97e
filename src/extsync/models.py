from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

ACTION_INSTALLED = "installed"
ACTION_UPDATED = "updated"
ACTION_UNINSTALLED = "uninstalled"
ACTION_UNCHANGED = "unchanged"
ACTION_SKIPPED = "skipped"
ACTION_FAILED = "failed"


@dataclass(frozen=True)
class ComponentDescriptor:
    uuid: str
    deleted: bool = False
    name: str = ""
    identifier: str = ""
    version: str = ""
    download_url: str | None = None
    autoupdate_disabled: bool = False

    @property
    def download_name(self) -> str:
        return self.name or self.identifier


@dataclass(frozen=True)
class MappingEntry:
    location: str
    version: str

    def to_json(self) -> dict[str, str]:
        return {"location": self.location, "version": self.version}


@dataclass(frozen=True)
class ComponentResult:
    uuid: str
    identifier: str
    action: str
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.action == ACTION_FAILED


@dataclass(frozen=True)
class BatchOutcome:
    results: tuple[ComponentResult, ...]
    error: str | None = None

    @property
    def failures(self) -> tuple[ComponentResult, ...]:
        return tuple(r for r in self.results if r.failed)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failures


def _str_field(obj: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str):
            value = value.strip()
            if value:
                return value
    return None


def _bool_field(obj: dict[str, Any], *keys: str) -> bool:
    for key in keys:
        if key not in obj:
            continue
        value = obj[key]
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        logger.warning("Treating non-boolean %s=%r as false", key, value)
        return False
    return False


def parse_descriptor(raw: Any) -> ComponentDescriptor | None:
    """
    Build a descriptor from one host component item.

    Accepts the nested host shape (``content.package_info``) as well as a flat
    one. Returns None only for items without a uuid; anything else is kept so
    a failure can be reported back against that uuid.
    """
    if not isinstance(raw, dict):
        logger.warning("Dropping component item that is not an object: %r", raw)
        return None

    uuid = _str_field(raw, "uuid")
    if uuid is None:
        logger.warning("Dropping component item without uuid")
        return None

    deleted = _bool_field(raw, "deleted")
    content = raw.get("content") if isinstance(raw.get("content"), dict) else raw
    package_info = content.get("package_info") if isinstance(content.get("package_info"), dict) else content

    name = _str_field(content, "name") or ""
    identifier = _str_field(package_info, "identifier") or _str_field(raw, "identifier") or ""
    version = _str_field(package_info, "version") or _str_field(raw, "version") or ""
    download_url = _str_field(package_info, "download_url", "downloadUrl") or _str_field(
        raw, "download_url", "downloadUrl"
    )
    autoupdate_disabled = _bool_field(content, "autoupdateDisabled", "autoupdate_disabled")

    return ComponentDescriptor(
        uuid=uuid,
        deleted=deleted,
        name=name,
        identifier=identifier,
        version=version,
        download_url=download_url,
        autoupdate_disabled=autoupdate_disabled,
    )


def parse_batch(items: Any) -> list[ComponentDescriptor]:
    if not isinstance(items, list):
        logger.warning("Component batch is not a list; ignoring it")
        return []
    batch: list[ComponentDescriptor] = []
    for item in items:
        descriptor = parse_descriptor(item)
        if descriptor is not None:
            batch.append(descriptor)
    return batch
