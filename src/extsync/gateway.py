from __future__ import annotations

import logging
from typing import Any, Iterable, Protocol

from .errors import ExtsyncError
from .models import BatchOutcome, ComponentDescriptor, parse_batch
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

SYNC_COMPONENTS = "sync-components"
INSTALL_COMPONENT_ERROR = "install-component-error"
SYNC_COMPONENTS_FAILED = "sync-components-failed"


class Channel(Protocol):
    async def send(self, message: str, payload: dict[str, Any]) -> None:
        ...


class SyncGateway:
    """Adapter between the host message channel and the reconciler."""

    def __init__(self, reconciler: Reconciler, channel: Channel) -> None:
        self.reconciler = reconciler
        self.channel = channel

    async def handle_message(self, message: str, payload: Any) -> BatchOutcome:
        if message != SYNC_COMPONENTS:
            raise ExtsyncError(f"Unknown message {message!r}")
        items = payload.get("componentsData") if isinstance(payload, dict) else payload
        return await self.sync(parse_batch(items))

    async def sync(self, descriptors: Iterable[ComponentDescriptor]) -> BatchOutcome:
        outcome = await self.reconciler.submit(descriptors)
        if outcome.error is not None:
            await self.channel.send(
                SYNC_COMPONENTS_FAILED,
                {"uuids": [r.uuid for r in outcome.results], "error": outcome.error},
            )
            return outcome

        for failure in outcome.failures:
            await self.channel.send(
                INSTALL_COMPONENT_ERROR,
                {"uuid": failure.uuid, "identifier": failure.identifier, "error": failure.error},
            )
        if outcome.failures:
            logger.info("Reported %d failed components to host", len(outcome.failures))
        return outcome
