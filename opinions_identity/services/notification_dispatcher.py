"""
Detached Notification Dispatcher.

Hands notification jobs to a bounded in-memory queue drained by a daemon
worker thread.  Follows the same daemon-thread lifecycle as
:class:`~opinions_identity.services.sync_worker.SyncWorkerService`: the
caller invokes :meth:`start` / :meth:`stop`.

Semantics:
    - :meth:`dispatch` never blocks the caller.  A full queue drops the
      job and logs the drop.
    - Delivery failures (exceptions or an unsuccessful
      :class:`ServiceResult`) are logged and never retried.
"""

from __future__ import annotations

import queue
import threading
from typing import Callable, Optional

from opinions_identity.logger import StructuredLogger
from opinions_identity.models.auth_models import NotificationJob, ServiceResult
from opinions_identity.services.base_service import BaseService

Deliver = Callable[[NotificationJob], Optional[ServiceResult]]


class NotificationDispatcher(BaseService):
    """Fire-and-forget delivery of :class:`NotificationJob` objects.

    Parameters
    ----------
    deliver:
        Callable performing the actual delivery (normally
        :meth:`EmailService.deliver`).
    logger:
        Structured JSON logger.
    maxsize:
        Queue bound.  Jobs beyond it are dropped.
    """

    _POLL_INTERVAL_S: float = 0.5

    def __init__(
        self,
        deliver: Deliver,
        logger: StructuredLogger,
        maxsize: int = 1000,
    ) -> None:
        super().__init__(logger)
        self._deliver: Deliver = deliver
        self._queue: queue.Queue[NotificationJob] = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self._stop_event: threading.Event = threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def dispatch(self, job: NotificationJob) -> bool:
        """Enqueue *job* without waiting.  Returns ``False`` if it was dropped."""
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            self._logger.error(
                "Notification queue full; dropped %s notification for %s",
                job.kind,
                job.recipient,
                extra={"event": "NOTIFICATION_DROPPED"},
            )
            return False
        return True

    def start(self) -> None:
        """Start the delivery worker on a daemon thread.  Idempotent."""
        if self._thread is not None and self._thread.is_alive():
            self._logger.debug("Notification dispatcher already running.")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="NotificationDispatcher",
            daemon=True,
        )
        self._thread.start()
        self._logger.info("Notification dispatcher started.")

    def stop(self, timeout: float = 10.0) -> None:
        """Signal the worker to stop after the queued jobs are handled.

        Safe to call when the worker is not running.
        """
        if self._thread is None:
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            self._logger.warning(
                "Notification dispatcher did not terminate within %.0f s.", timeout,
            )
        else:
            self._logger.info("Notification dispatcher stopped.")

        self._thread = None

    def wait_idle(self) -> None:
        """Block until every queued job has been handled."""
        self._queue.join()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        while True:
            try:
                job = self._queue.get(timeout=self._POLL_INTERVAL_S)
            except queue.Empty:
                if self._stop_event.is_set():
                    return
                continue
            try:
                self._handle(job)
            finally:
                self._queue.task_done()

    def _handle(self, job: NotificationJob) -> None:
        """Deliver one job.  Never raises."""
        try:
            result = self._deliver(job)
        except Exception:
            self._logger.error(
                "Notification delivery raised for %s to %s",
                job.kind,
                job.recipient,
                exc_info=True,
                extra={"event": "NOTIFICATION_FAILED"},
            )
            return

        if result is not None and not result.success:
            self._logger.warning(
                "Notification delivery failed for %s to %s: %s",
                job.kind,
                job.recipient,
                result.error,
                extra={"event": "NOTIFICATION_FAILED"},
            )
            return

        self._logger.info(
            "Notification delivered: %s to %s",
            job.kind,
            job.recipient,
            extra={"event": "NOTIFICATION_SENT"},
        )
