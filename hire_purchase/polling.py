"""
Status Polling Module

Caller-side helper that polls the gateway for an interactive charge until it
resolves, a timeout elapses or the caller cancels. The engine itself never
blocks on the gateway; this is one way of producing the `resolve` call.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from .errors import GatewayUnavailableError
from .payments import PaymentAttempt, PaymentCoordinator

logger = logging.getLogger("hire_purchase.polling")


class StatusPoller:
    """Poll a PENDING attempt at a fixed interval"""

    def __init__(
        self,
        coordinator: PaymentCoordinator,
        interval: float = 2.0,
        timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if timeout < 0:
            raise ValueError("timeout cannot be negative")
        self.coordinator = coordinator
        self.interval = interval
        self.timeout = timeout
        self._clock = clock

    def poll_until_resolved(
        self,
        attempt_id: str,
        cancel_event: Optional[threading.Event] = None,
        now: Optional[Callable[[], datetime]] = None
    ) -> PaymentAttempt:
        """
        Check the attempt until it leaves PENDING.

        Returns the attempt as last seen: resolved, or still PENDING when the
        timeout elapsed or `cancel_event` was set. Transient gateway errors are
        logged and polling continues.
        """
        stop = cancel_event or threading.Event()
        deadline = self._clock() + self.timeout
        attempt = self.coordinator.get_attempt(attempt_id)
        polls = 0

        while not attempt.is_terminal and not stop.is_set():
            try:
                attempt = self.coordinator.check_status(attempt_id, now() if now else None)
            except GatewayUnavailableError as e:
                logger.warning("Status check for attempt %s failed, will retry: %s", attempt_id, e)
            polls += 1

            if attempt.is_terminal:
                break
            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.info("Stopped polling attempt %s after %d checks, still PENDING", attempt_id, polls)
                break
            stop.wait(timeout=min(self.interval, remaining))

        if stop.is_set() and not attempt.is_terminal:
            logger.info("Polling of attempt %s cancelled", attempt_id)
        return attempt
