"""Dispatch of composed messages through the chat-platform client.

Each dispatch unit is delivered independently: transient failures are retried
with bounded exponential backoff, and a unit that ends in failure is recorded
without affecting the others. In-flight sends are capped by
``dispatch_max_concurrency``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Protocol

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from modules.announcements.errors import DispatchPermanent, DispatchTransient
from shared.config import Settings
from shared.schemas.dispatch import DeliveryRecord, DispatchOutcome, DispatchUnit

logger = structlog.get_logger()


class ChatClient(Protocol):
    """Chat-platform operations the engine depends on."""

    async def send_channel_message(self, channel_id: str, text: str) -> DispatchOutcome: ...

    async def send_direct_message(self, user_id: str, text: str) -> DispatchOutcome: ...


class Dispatcher:
    def __init__(self, chat: ChatClient, settings: Settings):
        self.chat = chat
        self.settings = settings

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.settings.dispatch_max_attempts)),
            wait=wait_exponential_jitter(
                initial=self.settings.dispatch_backoff_initial_seconds,
                max=self.settings.dispatch_backoff_max_seconds,
                jitter=self.settings.dispatch_backoff_initial_seconds,
            ),
            retry=retry_if_exception_type(DispatchTransient),
            reraise=True,
        )

    async def _send_once(self, unit: DispatchUnit) -> DispatchOutcome:
        if unit.kind == "public":
            outcome = await self.chat.send_channel_message(unit.address, unit.text)
        else:
            outcome = await self.chat.send_direct_message(unit.address, unit.text)

        if outcome.status == "transient":
            raise DispatchTransient(outcome.error or "transient send failure")
        if outcome.status == "permanent":
            raise DispatchPermanent(outcome.error or "permanent send failure")
        return outcome

    async def deliver(self, unit: DispatchUnit) -> DeliveryRecord:
        """Send one unit to a terminal outcome."""
        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts += 1
                    outcome = await self._send_once(unit)
        except (DispatchTransient, DispatchPermanent) as e:
            logger.warning(
                "dispatch_failed",
                address=unit.address,
                kind=unit.kind,
                attempts=attempts,
                transient=isinstance(e, DispatchTransient),
                error=str(e),
            )
            return DeliveryRecord(
                address=unit.address,
                kind=unit.kind,
                status="failed",
                attempts=attempts,
                error=str(e),
            )
        except Exception as e:
            # Unexpected client error: fail this unit only
            logger.error(
                "dispatch_error",
                address=unit.address,
                kind=unit.kind,
                attempts=attempts,
                error=str(e),
                exc_info=True,
            )
            return DeliveryRecord(
                address=unit.address,
                kind=unit.kind,
                status="failed",
                attempts=attempts,
                error=f"{type(e).__name__}: {e}",
            )

        return DeliveryRecord(
            address=unit.address,
            kind=unit.kind,
            status="delivered",
            attempts=attempts,
            message_id=outcome.message_id,
        )

    async def dispatch_all(
        self,
        units: Iterable[DispatchUnit],
        on_record: Callable[[DeliveryRecord], Awaitable[None]] | None = None,
    ) -> list[DeliveryRecord]:
        """Deliver all units concurrently.

        ``on_record`` sees each terminal outcome before the unit releases its
        concurrency slot. If it raises, no further units are sent, the units
        already in flight finish, and the first error is raised.
        """
        semaphore = asyncio.Semaphore(max(1, self.settings.dispatch_max_concurrency))
        halted: list[Exception] = []

        async def _one(unit: DispatchUnit) -> DeliveryRecord | None:
            async with semaphore:
                if halted:
                    return None
                record = await self.deliver(unit)
                if on_record is not None:
                    try:
                        await on_record(record)
                    except Exception as e:
                        halted.append(e)
                return record

        results = await asyncio.gather(*(_one(u) for u in units))
        if halted:
            logger.warning(
                "dispatch_halted",
                sent=sum(1 for r in results if r is not None),
                skipped=sum(1 for r in results if r is None),
                error=str(halted[0]),
            )
            raise halted[0]
        return [r for r in results if r is not None]
