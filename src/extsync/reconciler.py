from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .errors import DescriptorError, DownloadError, InstallError, MappingIOError, PathEscape
from .fetcher import ArchiveFetcher
from .installer import Installer
from .mapping import MappingStore
from .models import (
    ACTION_FAILED,
    ACTION_INSTALLED,
    ACTION_SKIPPED,
    ACTION_UNCHANGED,
    ACTION_UNINSTALLED,
    ACTION_UPDATED,
    BatchOutcome,
    ComponentDescriptor,
    ComponentResult,
    MappingEntry,
)
from .paths import PRIVATE_PREFIX, PathResolver

logger = logging.getLogger(__name__)


@dataclass
class _BatchState:
    snapshot: dict[str, MappingEntry]
    working: dict[str, MappingEntry]
    # Install dirs this batch created from nothing.
    new_dirs: list[Path] = field(default_factory=list)
    # (original dir, parked copy) for every dir this batch removed or replaced.
    held: list[tuple[Path, Path]] = field(default_factory=list)
    holding_dir: Path | None = None


class Reconciler:
    """
    Brings the content root in line with batches of component descriptors.

    All batches share one lock around "read mapping, decide, fetch/install/
    uninstall, write mapping", taken in arrival order. A batch therefore sees
    every earlier batch's committed mapping, which is what keeps overlapping
    requests for the same component from downloading it twice.

    Directories a batch uninstalls or replaces are parked in a private holding
    dir until the mapping write succeeds. If the write fails they are put back
    and new installs are removed, so disk and mapping still agree.
    """

    def __init__(
        self,
        *,
        resolver: PathResolver,
        store: MappingStore,
        fetcher: ArchiveFetcher,
        installer: Installer | None = None,
    ) -> None:
        self.resolver = resolver
        self.store = store
        self.fetcher = fetcher
        self.installer = installer or Installer()
        self._lock = asyncio.Lock()

    async def submit(self, batch: Iterable[ComponentDescriptor]) -> BatchOutcome:
        descriptors = list(batch)
        async with self._lock:
            return await self._reconcile(descriptors)

    async def _reconcile(self, descriptors: list[ComponentDescriptor]) -> BatchOutcome:
        try:
            snapshot = await asyncio.to_thread(self.store.read)
        except MappingIOError as e:
            logger.error("Aborting sync of %d components: %s", len(descriptors), e)
            return _failed_batch(descriptors, str(e))

        state = _BatchState(snapshot=snapshot, working=dict(snapshot))
        results: list[ComponentResult] = []
        for descriptor in descriptors:
            try:
                action = await self._apply(descriptor, state)
            except (PathEscape, DescriptorError, DownloadError, InstallError) as e:
                logger.error("Failed to sync component %s (%s): %s", descriptor.uuid, descriptor.identifier, e)
                results.append(ComponentResult(descriptor.uuid, descriptor.identifier, ACTION_FAILED, str(e)))
                continue
            results.append(ComponentResult(descriptor.uuid, descriptor.identifier, action))

        if state.working != state.snapshot:
            try:
                await asyncio.to_thread(self.store.write, state.working)
            except MappingIOError as e:
                logger.error("Discarding sync of %d components: %s", len(descriptors), e)
                await asyncio.to_thread(self._roll_back, state)
                return _failed_batch(descriptors, str(e))

        await asyncio.to_thread(self._release, state)
        return BatchOutcome(results=tuple(results))

    async def _apply(self, descriptor: ComponentDescriptor, state: _BatchState) -> str:
        entry = state.working.get(descriptor.uuid)

        if descriptor.deleted:
            if entry is None:
                logger.debug("Component %s is not installed; nothing to remove", descriptor.uuid)
                return ACTION_SKIPPED
            install_dir = self.resolver.resolve_location(entry.location)
            await asyncio.to_thread(self._hold, state, install_dir)
            del state.working[descriptor.uuid]
            logger.info("Uninstalled %s from %s", descriptor.uuid, install_dir)
            return ACTION_UNINSTALLED

        if not descriptor.identifier or not descriptor.version:
            raise DescriptorError(f"Component {descriptor.uuid} is missing its identifier or version")

        install_dir = self.resolver.resolve_install_dir(descriptor.identifier)
        old_dir: Path | None = None
        if entry is not None:
            old_dir = self.resolver.resolve_location(entry.location)
            if not old_dir.is_dir():
                logger.warning(
                    "Mapped directory %s for %s is missing; reinstalling", entry.location, descriptor.uuid
                )
                entry = None
                old_dir = None
            elif entry.version == descriptor.version or descriptor.autoupdate_disabled:
                logger.debug("Component %s %s is up to date", descriptor.uuid, entry.version)
                return ACTION_UNCHANGED

        if not descriptor.download_url:
            raise DownloadError(f"Component {descriptor.identifier} has no download URL")
        archive_path = self.resolver.resolve_download_path(descriptor.download_name)

        await self.fetcher.fetch(descriptor.download_url, archive_path)
        await asyncio.to_thread(self._install, state, archive_path, install_dir, descriptor)

        if old_dir is not None and old_dir != install_dir:
            await asyncio.to_thread(self._hold, state, old_dir)

        state.working[descriptor.uuid] = MappingEntry(
            location=self.resolver.relative_location(install_dir),
            version=descriptor.version,
        )
        return ACTION_INSTALLED if entry is None else ACTION_UPDATED

    def _install(
        self, state: _BatchState, archive_path: Path, install_dir: Path, descriptor: ComponentDescriptor
    ) -> None:
        if not install_dir.exists():
            self.installer.install(
                archive_path, install_dir, descriptor.version, identifier=descriptor.identifier
            )
            state.new_dirs.append(install_dir)
            return
        slot = self._holding_slot(state)
        self.installer.install(
            archive_path, install_dir, descriptor.version, identifier=descriptor.identifier, keep_previous=slot
        )
        if slot.exists():
            state.held.append((install_dir, slot))

    def _hold(self, state: _BatchState, path: Path) -> None:
        if not path.exists():
            logger.debug("Nothing to remove at %s", path)
            return
        slot = self._holding_slot(state)
        try:
            path.rename(slot)
        except OSError as e:
            raise InstallError(f"Could not remove {path}: {e}") from e
        state.held.append((path, slot))

    def _holding_slot(self, state: _BatchState) -> Path:
        if state.holding_dir is None:
            try:
                self.resolver.content_root.mkdir(parents=True, exist_ok=True)
                state.holding_dir = Path(
                    tempfile.mkdtemp(prefix=PRIVATE_PREFIX + "batch-", dir=self.resolver.content_root)
                )
            except OSError as e:
                raise InstallError(f"Could not prepare {self.resolver.content_root}: {e}") from e
        return state.holding_dir / str(len(state.held))

    def _release(self, state: _BatchState) -> None:
        if state.holding_dir is not None:
            shutil.rmtree(state.holding_dir, ignore_errors=True)

    def _roll_back(self, state: _BatchState) -> None:
        for path in reversed(state.new_dirs):
            try:
                self.installer.uninstall(path)
            except InstallError as e:
                logger.warning("Could not clean up %s: %s", path, e)
        for original, parked in reversed(state.held):
            try:
                if original.exists():
                    shutil.rmtree(original)
                parked.rename(original)
            except OSError as e:
                logger.warning("Could not restore %s from %s: %s", original, parked, e)
        self._release(state)


def _failed_batch(descriptors: list[ComponentDescriptor], error: str) -> BatchOutcome:
    results = tuple(ComponentResult(d.uuid, d.identifier, ACTION_FAILED, error) for d in descriptors)
    return BatchOutcome(results=results, error=error)
