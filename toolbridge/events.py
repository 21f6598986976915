"""
Outbound notifications.

The orchestrator and the authorization subsystem publish events here; a UI
(or any observer) subscribes to learn about structural changes, live
diagnostics and post-authorization reconnects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Union

from toolbridge.registry import ToolDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChanged:
    tools: Tuple[ToolDescriptor, ...] = field(default_factory=tuple)
    connected_ids: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class LogChunk:
    server_id: str
    chunk: str


@dataclass(frozen=True)
class AuthReconnectComplete:
    server_id: str
    success: bool
    error: Optional[str] = None


Event = Union[StatusChanged, LogChunk, AuthReconnectComplete]
Listener = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed for {type(event).__name__}: {e}")
