"""
Caller silence detection.

One SilenceMonitor per active session. After `threshold_seconds` without caller
activity a reminder is spoken; after `max_retries` unanswered reminders the
owner is told to end the session instead.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from src.relay.protocol import FrameType, create_text_message

logger = structlog.get_logger(__name__)

ReminderCallback = Callable[[str], Awaitable[None]]
ExhaustedCallback = Callable[[], Awaitable[None]]

# Gateway telemetry arrives on its own schedule and says nothing about the caller.
PASSIVE_FRAME_TYPES = frozenset({FrameType.INFO.value})


class SilenceMonitor:
    """
    Idle timer with bounded reminder escalation.

    The timer is a single asyncio task; resetting replaces it and cleanup
    cancels it, so at most one timer is ever live.
    """

    def __init__(
        self,
        threshold_seconds: float,
        max_retries: int,
        reminder_message: str = "Are you still there?",
    ):
        self.threshold_seconds = threshold_seconds
        self.max_retries = max_retries
        self.reminder_message = reminder_message
        self.retry_count = 0

        self._on_reminder: Optional[ReminderCallback] = None
        self._on_exhausted: Optional[ExhaustedCallback] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._monitoring = False

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    @property
    def has_pending_timer(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def start_monitoring(
        self,
        on_reminder: ReminderCallback,
        on_exhausted: Optional[ExhaustedCallback] = None,
    ) -> None:
        """Start the idle timer. Must be called from a running event loop."""
        if self._monitoring:
            logger.warning("Silence monitoring already started; ignoring")
            return

        self._on_reminder = on_reminder
        self._on_exhausted = on_exhausted
        self._monitoring = True
        self.retry_count = 0
        self._schedule()
        logger.debug(
            "Silence monitoring started",
            threshold_seconds=self.threshold_seconds,
            max_retries=self.max_retries,
        )

    def reset_timer(self, frame_type: str) -> None:
        """Register caller activity: restart the timer and clear escalation."""
        if not self._monitoring:
            return
        if frame_type in PASSIVE_FRAME_TYPES:
            return

        self.retry_count = 0
        self._schedule()

    def cleanup(self) -> None:
        """Cancel any pending timer. Safe to call repeatedly or before start."""
        self._monitoring = False
        self._cancel_timer()
        self._on_reminder = None
        self._on_exhausted = None

    def _cancel_timer(self) -> None:
        task = self._timer_task
        self._timer_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _schedule(self) -> None:
        self._cancel_timer()
        self._timer_task = asyncio.create_task(self._run_timer())

    async def _run_timer(self) -> None:
        try:
            await asyncio.sleep(self.threshold_seconds)
        except asyncio.CancelledError:
            return

        # This task is now firing; detach it so callbacks that clean up do not cancel it mid-flight.
        if self._timer_task is asyncio.current_task():
            self._timer_task = None
        if not self._monitoring:
            return

        if self.retry_count < self.max_retries:
            self.retry_count += 1
            logger.info(
                "Caller silent, sending reminder",
                retry_count=self.retry_count,
                max_retries=self.max_retries,
            )
            callback = self._on_reminder
            if callback is not None:
                try:
                    await callback(create_text_message(self.reminder_message, True))
                except Exception:
                    logger.exception("Silence reminder callback failed")
            if self._monitoring and self._timer_task is None:
                self._schedule()
            return

        logger.info("Silence retries exhausted", max_retries=self.max_retries)
        self._monitoring = False
        callback_exhausted = self._on_exhausted
        if callback_exhausted is not None:
            try:
                await callback_exhausted()
            except Exception:
                logger.exception("Silence exhausted callback failed")
