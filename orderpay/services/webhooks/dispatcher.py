"""Bounded worker pool in front of the webhook reconciler."""

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

from orderpay.common.errors import WebhookUnavailable
from orderpay.common.logging import logger, trace_id_ctx


class WebhookDispatcher:
    """Runs `handle_event` on a fixed pool with a bounded backlog.

    `dispatch` waits at most `webhook_handler_timeout_seconds`. A full backlog
    or a timeout raises `WebhookUnavailable` so the gateway redelivers; a
    timed-out handler is told to roll back instead of committing.
    """

    def __init__(self, reconciler, settings) -> None:
        self.reconciler = reconciler
        self.timeout = settings.webhook_handler_timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=settings.webhook_workers, thread_name_prefix="webhook"
        )
        # Running plus queued handlers.
        self._slots = threading.BoundedSemaphore(settings.webhook_workers + settings.webhook_queue_size)

    def dispatch(self, raw_payload: bytes, signature_header: str | None):
        if not self._slots.acquire(blocking=False):
            logger.warning("webhook backlog full")
            raise WebhookUnavailable("webhook backlog is full")
        cancel_event = threading.Event()
        try:
            future = self._executor.submit(
                self._run, raw_payload, signature_header, cancel_event, trace_id_ctx.get()
            )
        except RuntimeError as exc:
            self._slots.release()
            raise WebhookUnavailable("webhook dispatcher is shut down") from exc

        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            cancel_event.set()
            if future.cancel():
                # Never started, so `_run` will not release its slot.
                self._slots.release()
            logger.warning("webhook handler timed out timeout_s=%s", self.timeout)
            raise WebhookUnavailable("webhook handling timed out") from None

    def _run(self, raw_payload, signature_header, cancel_event: threading.Event, trace_id: str):
        trace_id_ctx.set(trace_id)
        try:
            if cancel_event.is_set():
                raise WebhookUnavailable("webhook handling was cancelled")
            return self.reconciler.handle_event(raw_payload, signature_header, cancel_event=cancel_event)
        finally:
            self._slots.release()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
