"""Bounded, cancellable polling that confirms a payment activated a plan.

The client-triggered verification call can fail or be cut short (mobile
redirects, closed tabs) while the gateway webhook still completes the
activation. The supervisor polls for an active plan a fixed number of times
and reports either confirmation or that the webhook is still pending.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from config import settings

logger = logging.getLogger(__name__)


ACTIVATION_IN_PROGRESS_NOTICE = (
    "Plan activation in progress. Your plan will be activated shortly. "
    "You can refresh the page to check the status."
)

Lookup = Callable[[str], Awaitable[bool]]
Sleep = Callable[[float], Awaitable[Any]]


class VerificationStatus(str, Enum):
    CONFIRMED = "confirmed"
    TIMED_OUT_PENDING_WEBHOOK = "timed_out_pending_webhook"


@dataclass
class VerificationOutcome:
    order_id: str
    status: VerificationStatus
    attempts: int

    @property
    def confirmed(self) -> bool:
        return self.status == VerificationStatus.CONFIRMED

    @property
    def notice(self) -> Optional[str]:
        return None if self.confirmed else ACTIVATION_IN_PROGRESS_NOTICE


class VerificationSupervisor:
    """Runs at most one polling loop per order id."""

    def __init__(
        self,
        lookup: Lookup,
        *,
        max_attempts: Optional[int] = None,
        interval_seconds: Optional[float] = None,
        lookup_timeout: Optional[float] = None,
        sleep: Optional[Sleep] = None,
    ):
        self._lookup = lookup
        self.max_attempts = max(
            int(max_attempts if max_attempts is not None else settings.VERIFICATION_MAX_ATTEMPTS), 1
        )
        self.interval_seconds = max(
            float(interval_seconds if interval_seconds is not None else settings.VERIFICATION_INTERVAL_SECONDS), 0.0
        )
        self.lookup_timeout = float(lookup_timeout if lookup_timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS)
        self._sleep = sleep or asyncio.sleep
        self._inflight: Dict[str, asyncio.Task] = {}
        self._stop_requested: Dict[str, asyncio.Event] = {}

    def is_polling(self, order_id: str) -> bool:
        task = self._inflight.get(order_id)
        return task is not None and not task.done()

    async def confirm(self, order_id: str, user_id: str) -> VerificationOutcome:
        """Poll until an active plan is observed or attempts run out.

        A call for an order that is already being polled joins that loop.
        Cancelling a caller only abandons its wait; ``cancel`` stops the loop.
        """
        task = self._inflight.get(order_id)
        if task is None or task.done():
            stop = asyncio.Event()
            task = asyncio.create_task(self._poll(order_id, user_id, stop), name=f"verify-payment:{order_id}")
            self._inflight[order_id] = task
            self._stop_requested[order_id] = stop
            task.add_done_callback(lambda finished, key=order_id: self._forget(key, finished))
        return await asyncio.shield(task)

    def cancel(self, order_id: str) -> bool:
        task = self._inflight.get(order_id)
        if task is None or task.done():
            return False
        logger.info("Cancelling payment verification polling for order %s", order_id)
        # wait_for can swallow a cancel that races a finished lookup before 3.12.
        self._stop_requested[order_id].set()
        return task.cancel()

    def cancel_all(self) -> None:
        for order_id in list(self._inflight):
            self.cancel(order_id)

    def _forget(self, order_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(order_id) is task:
            del self._inflight[order_id]
            self._stop_requested.pop(order_id, None)

    async def _check(self, order_id: str, user_id: str) -> bool:
        try:
            return bool(await asyncio.wait_for(self._lookup(user_id), timeout=self.lookup_timeout))
        except Exception as exc:
            # A failed lookup only means "not confirmed yet".
            logger.warning("Plan lookup failed while verifying order %s: %s", order_id, exc)
            return False

    async def _poll(self, order_id: str, user_id: str, stop: asyncio.Event) -> VerificationOutcome:
        for attempt in range(1, self.max_attempts + 1):
            logger.info("Verification attempt %s/%s for order %s", attempt, self.max_attempts, order_id)
            confirmed = await self._check(order_id, user_id)
            if stop.is_set():
                raise asyncio.CancelledError()
            if confirmed:
                logger.info("Plan activation confirmed for order %s on attempt %s", order_id, attempt)
                return VerificationOutcome(order_id, VerificationStatus.CONFIRMED, attempt)
            if attempt < self.max_attempts:
                await self._sleep(self.interval_seconds)
                if stop.is_set():
                    raise asyncio.CancelledError()

        logger.info("Max verification attempts reached for order %s; waiting on webhook", order_id)
        return VerificationOutcome(order_id, VerificationStatus.TIMED_OUT_PENDING_WEBHOOK, self.max_attempts)
