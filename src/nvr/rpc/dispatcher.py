"""NotificationDispatcher: routes notifications to the waits interested in them."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from nvr.models.message import Notification

log = structlog.get_logger()

Predicate = Callable[[list[Any]], bool]


class Subscription:
    """Single-shot interest in one notification method.

    The first notification whose method matches and whose args pass the
    predicate fills :attr:`delivery`; the subscription is then inactive.
    """

    def __init__(self, method: str, predicate: Predicate | None = None) -> None:
        self.method = method
        self.predicate = predicate
        self.delivery: asyncio.Future[Notification] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self.delivery.done()

    def matches(self, notification: Notification) -> bool:
        if self.done or notification.method != self.method:
            return False
        if self.predicate is None:
            return True
        try:
            return bool(self.predicate(notification.args))
        except Exception:
            log.exception(
                "subscription predicate failed",
                method=self.method,
                args=repr(notification.args)[:200],
            )
            return False

    async def wait(self) -> Notification:
        return await self.delivery

    def __repr__(self) -> str:
        state = "done" if self.done else "active"
        return f"<Subscription {self.method!r} {state}>"


class NotificationDispatcher:
    """Keeps the active subscriptions and offers each notification to them."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, method: str, predicate: Predicate | None = None) -> Subscription:
        subscription = Subscription(method, predicate)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove *subscription*. Unknown subscriptions are ignored."""
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass
        if not subscription.done:
            subscription.delivery.cancel()

    def dispatch(self, notification: Notification) -> int:
        """Deliver *notification* to every matching subscription.

        Returns the number of subscriptions it satisfied. Notifications nobody
        is waiting for are dropped.
        """
        satisfied = [s for s in self._subscriptions if s.matches(notification)]
        if not satisfied:
            log.debug("notification dropped", method=notification.method)
            return 0

        for subscription in satisfied:
            self._subscriptions.remove(subscription)
            subscription.delivery.set_result(notification)
        log.debug(
            "notification delivered",
            method=notification.method,
            subscribers=len(satisfied),
        )
        return len(satisfied)

    def fail_all(self, exc: BaseException) -> None:
        """Fail every active subscription with *exc*."""
        active, self._subscriptions = self._subscriptions, []
        for subscription in active:
            if not subscription.done:
                subscription.delivery.set_exception(exc)

    @property
    def active(self) -> list[Subscription]:
        return list(self._subscriptions)
