"""Per-sender debounce buffer.

Rapid messages from one sender are coalesced into a single logical turn.
Every new message restarts the sender's quiescence timer; when the timer
expires the queue is detached and dispatched exactly once.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional
from uuid import UUID

from enquirybot.config import settings
from enquirybot.logging_config import get_logger

logger = get_logger("buffer_service")


@dataclass
class BufferedEvent:
    provider_message_id: str
    customer_phone: str
    recipient_id: str
    body: Optional[str]
    message_type: str
    timestamp: datetime
    option_id: Optional[str] = None
    option_title: Optional[str] = None
    contact_name: Optional[str] = None
    campaign_id: Optional[UUID] = None
    is_direct_reply: bool = False


@dataclass
class BufferedTurn:
    customer_phone: str
    recipient_id: str
    combined_body: str
    last_event: BufferedEvent
    events: list[BufferedEvent]
    campaign_id: Optional[UUID] = None
    is_direct_reply: bool = False

    @property
    def option_id(self) -> Optional[str]:
        return self.last_event.option_id

    @property
    def contact_name(self) -> Optional[str]:
        for event in reversed(self.events):
            if event.contact_name:
                return event.contact_name
        return None


def aggregate_batch(events: list[BufferedEvent]) -> BufferedTurn:
    """Fold a sender's queued events into one turn."""
    if not events:
        raise ValueError("Cannot aggregate an empty batch")
    bodies = [event.body.strip() for event in events if event.body and event.body.strip()]
    last_event = events[-1]
    campaign_id = next((event.campaign_id for event in events if event.campaign_id), None)
    return BufferedTurn(
        customer_phone=last_event.customer_phone,
        recipient_id=last_event.recipient_id,
        combined_body=". ".join(bodies),
        last_event=last_event,
        events=list(events),
        campaign_id=campaign_id,
        is_direct_reply=any(event.is_direct_reply for event in events),
    )


def sender_key(customer_phone: str, recipient_id: str) -> str:
    return f"{recipient_id}:{customer_phone}"


@dataclass
class _BufferEntry:
    events: list[BufferedEvent] = field(default_factory=list)
    timer: Optional[asyncio.Task] = None


class MessageBuffer:
    def __init__(
        self,
        dispatch: Callable[[BufferedTurn], Awaitable[None]],
        *,
        delay_seconds: Optional[float] = None,
        sleep_func=asyncio.sleep,
    ):
        self.dispatch = dispatch
        self.delay_seconds = delay_seconds if delay_seconds is not None else settings.buffer_delay_ms / 1000
        self.sleep_func = sleep_func
        self._entries: dict[str, _BufferEntry] = {}

    def ingest(self, key: str, event: BufferedEvent) -> None:
        """Queue ``event`` for ``key`` and restart its quiescence timer."""
        entry = self._entries.get(key)
        if entry is None:
            entry = _BufferEntry()
            self._entries[key] = entry
        entry.events.append(event)
        if entry.timer is not None and not entry.timer.done():
            entry.timer.cancel()
        entry.timer = asyncio.create_task(self._wait_and_flush(key, entry))

    def pending(self, key: str) -> list[BufferedEvent]:
        entry = self._entries.get(key)
        return list(entry.events) if entry else []

    def pending_keys(self) -> list[str]:
        return list(self._entries)

    async def _wait_and_flush(self, key: str, entry: _BufferEntry) -> None:
        try:
            await self.sleep_func(self.delay_seconds)
        except asyncio.CancelledError:
            return
        # No await between here and the pop, so detaching is atomic per sender
        if self._entries.get(key) is not entry:
            return
        del self._entries[key]
        entry.timer = None
        await self._dispatch(key, entry.events)

    async def _dispatch(self, key: str, events: list[BufferedEvent]) -> None:
        turn = aggregate_batch(events)
        if not turn.combined_body:
            logger.info(
                "Buffered batch has no text, skipping dispatch",
                extra={"context": {"sender": key, "events": len(events)}},
            )
            return
        logger.info(
            "Dispatching buffered turn",
            extra={"context": {"sender": key, "events": len(events), "campaign_id": str(turn.campaign_id or "")}},
        )
        try:
            await self.dispatch(turn)
        except Exception as exc:
            logger.error(
                "Buffered turn dispatch failed",
                extra={"context": {"sender": key, "error": str(exc)}},
                exc_info=True,
            )

    async def flush_now(self, key: str) -> None:
        """Dispatch ``key``'s queue immediately, bypassing the timer."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        if entry.timer is not None and not entry.timer.done():
            entry.timer.cancel()
        await self._dispatch(key, entry.events)

    async def shutdown(self) -> None:
        """Cancel pending timers; queued events are dropped (already persisted)."""
        timers = [entry.timer for entry in self._entries.values() if entry.timer is not None]
        self._entries.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
