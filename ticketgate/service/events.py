from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable, DefaultDict, Dict, List, Set

from ticketgate.logging import get_logger

logger = get_logger(__name__)

SIGN_UP = "auth.sign-up"
EMAIL_VERIFICATION_REQUESTED = "auth.email-verification-requested"
PASSWORD_RESET_REQUESTED = "password.reset-requested"
EMAIL_CHANGE_REQUESTED = "account.email-change-requested"

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class EventBus:
    """Fire-and-forget fan-out of domain events to async subscribers.

    ``publish`` schedules every subscriber as its own task on the running loop
    and returns immediately. A failing subscriber is logged and does not
    affect the publisher or the other subscribers.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers[name].append(handler)

    def publish(self, name: str, payload: Dict[str, Any]) -> int:
        handlers = list(self._handlers.get(name, ()))
        for handler in handlers:
            task = asyncio.create_task(self._run(name, handler, dict(payload)))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        logger.info("event_published", event_name=name, subscribers=len(handlers))
        return len(handlers)

    async def _run(self, name: str, handler: Handler, payload: Dict[str, Any]) -> None:
        try:
            await handler(payload)
        except Exception as exc:
            logger.error(
                "event_handler_failed",
                event_name=name,
                handler=getattr(handler, "__qualname__", repr(handler)),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for every scheduled subscriber; used on shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
