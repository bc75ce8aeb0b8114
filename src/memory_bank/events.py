# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Lifecycle event channel.

An explicit observer interface: listeners subscribe to a named event and
receive its payload. Listeners may be plain callables or coroutine
functions. A failing listener is logged and never breaks the emitter or
the remaining listeners.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Union[None, Awaitable[None]]]


class MemoryBankEvent(str, Enum):
    """Named lifecycle events."""

    MEMORY_CREATED = "memory-created"
    MEMORY_UPDATED = "memory-updated"
    MEMORY_ACCESSED = "memory-accessed"
    MEMORY_DELETED = "memory-deleted"
    MEMORY_RECOVERED = "memory-recovered"
    ORPHAN_CLEANED = "orphan-cleaned"
    MEMORY_ARCHIVED = "memory-archived"
    ARCHIVE_RESTORED = "archive-restored"
    ARCHIVE_EXPIRED = "archive-expired"
    POLICY_TRIGGERED = "policy-triggered"
    BACKUP_COMPLETED = "backup-completed"
    BACKUP_FAILED = "backup-failed"
    BACKUP_VALIDATED = "backup-validated"
    RECOVERY_COMPLETED = "recovery-completed"
    RECOVERY_FAILED = "recovery-failed"
    CLEANUP_COMPLETED = "cleanup-completed"


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe(); call ``cancel()`` to unsubscribe."""

    channel: "EventChannel"
    event: MemoryBankEvent
    listener: Listener

    def cancel(self) -> bool:
        return self.channel.unsubscribe(self.event, self.listener)


class EventChannel:
    """Subscribe/unsubscribe/emit over MemoryBankEvent names.

    Example:
        >>> channel = EventChannel()
        >>> sub = channel.subscribe("memory-created", lambda m: print(m.id))
        >>> await channel.emit(MemoryBankEvent.MEMORY_CREATED, memory)
        >>> sub.cancel()
    """

    def __init__(self) -> None:
        self._listeners: dict[MemoryBankEvent, list[Listener]] = {}

    def subscribe(self, event: Union[MemoryBankEvent, str], listener: Listener) -> Subscription:
        """Register ``listener`` for ``event``.

        Raises:
            ValueError: Unknown event name.
        """
        name = MemoryBankEvent(event)
        self._listeners.setdefault(name, []).append(listener)
        return Subscription(self, name, listener)

    def unsubscribe(self, event: Union[MemoryBankEvent, str], listener: Listener) -> bool:
        """Remove ``listener`` from ``event``. Returns False if it was not registered."""
        name = MemoryBankEvent(event)
        listeners = self._listeners.get(name, [])
        try:
            listeners.remove(listener)
        except ValueError:
            return False
        return True

    def listener_count(self, event: Union[MemoryBankEvent, str]) -> int:
        return len(self._listeners.get(MemoryBankEvent(event), []))

    async def emit(self, event: MemoryBankEvent, payload: Any = None) -> None:
        """Deliver ``payload`` to every listener of ``event``, in subscription order."""
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Listener for {event.value} failed: {e}")

    def clear(self) -> None:
        self._listeners.clear()
