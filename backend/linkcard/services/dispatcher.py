from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from http.client import HTTPException as HttpProtocolError
from typing import TYPE_CHECKING, Callable, Optional
from urllib import request
from urllib.error import HTTPError, URLError

from sqlalchemy.exc import SQLAlchemyError

from backend.linkcard.models import (
    DeliveryState,
    EventRecord,
    WebhookDeliveryRecord,
    WebhookRecord,
)
from backend.linkcard.services.webhooks import (
    delivery_headers,
    encode_payload,
    event_payload,
    synthetic_test_payload,
)
from backend.linkcard.store import CardStore, StoreNotFoundError

if TYPE_CHECKING:
    from backend.linkcard.observability import MetricsRegistry

logger = logging.getLogger("linkcard.dispatcher")

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})
MAX_ERROR_LENGTH = 500
IDLE_WAIT_SECONDS = 30.0


@dataclass(frozen=True)
class SendResult:
    status_code: Optional[int]
    response_ms: int
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @property
    def transient(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code in TRANSIENT_STATUS_CODES


Sender = Callable[[str, bytes, dict[str, str], float], SendResult]


def post_signed_payload(
    url: str, body: bytes, headers: dict[str, str], timeout: float
) -> SendResult:
    start = time.perf_counter()
    status_code: Optional[int] = None
    error: Optional[str] = None
    try:
        req = request.Request(url, data=body, method="POST", headers=headers)
        with request.urlopen(req, timeout=timeout) as response:
            response.read()
            status_code = response.status
    except HTTPError as exc:
        status_code = exc.code
        error = f"receiver responded with http {exc.code}"
    except URLError as exc:
        error = f"request failed: {exc.reason}"
    except (TimeoutError, OSError, HttpProtocolError) as exc:
        error = f"request failed: {exc}"
    except ValueError as exc:
        error = f"invalid webhook url: {exc}"
    elapsed_ms = int((time.perf_counter() - start) * 1000)
    return SendResult(status_code=status_code, response_ms=elapsed_ms, error=error)


@dataclass(order=True)
class DeliveryJob:
    due_at: float
    sequence: int
    webhook_id: str = field(compare=False)
    event: EventRecord = field(compare=False)
    attempt: int = field(default=1, compare=False)


class WebhookDispatcher:
    """Delivers recorded events to subscribed webhooks off the request path."""

    def __init__(
        self,
        store: CardStore,
        *,
        max_attempts: int = 5,
        backoff_seconds: int = 30,
        timeout_seconds: float = 10,
        sender: Sender = post_signed_payload,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsRegistry"] = None,
    ) -> None:
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = max(1, backoff_seconds)
        self.timeout_seconds = timeout_seconds
        self._sender = sender
        self._clock = clock
        self._metrics = metrics
        self._jobs: list[DeliveryJob] = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._stopping = False
        self._thread: Optional[threading.Thread] = None

    def enqueue_event(self, event: EventRecord) -> int:
        webhooks = self.store.list_subscribed_webhooks(event.profile_id, event.event_type)
        if not webhooks:
            return 0
        with self._condition:
            now = self._clock()
            for webhook in webhooks:
                self._push(
                    DeliveryJob(
                        due_at=now,
                        sequence=next(self._sequence),
                        webhook_id=webhook.id,
                        event=event,
                    )
                )
            self._condition.notify_all()
        logger.info(
            "webhook_jobs_enqueued event_id=%s event_type=%s jobs=%s",
            event.id,
            event.event_type.value,
            len(webhooks),
        )
        return len(webhooks)

    def pending_count(self) -> int:
        with self._condition:
            return len(self._jobs)

    def next_due_in(self) -> Optional[float]:
        with self._condition:
            if not self._jobs:
                return None
            return max(0.0, self._jobs[0].due_at - self._clock())

    def run_pending(self) -> int:
        attempts = 0
        while True:
            with self._condition:
                if not self._jobs or self._jobs[0].due_at > self._clock():
                    return attempts
                job = heapq.heappop(self._jobs)
            attempts += 1
            try:
                self._attempt(job)
            except Exception as exc:
                logger.exception(
                    "webhook_delivery_crashed webhook_id=%s event_id=%s attempt=%s",
                    job.webhook_id,
                    job.event.id,
                    job.attempt,
                )
                self._record_crash(job, exc)

    def send_test(self, webhook: WebhookRecord) -> WebhookDeliveryRecord:
        """Deliver a synthetic event once, synchronously; never retried."""
        payload = synthetic_test_payload(webhook)
        body = encode_payload(payload)
        headers = delivery_headers(
            secret=webhook.secret,
            raw_body=body,
            event_type=payload["type"],
            event_id=payload["id"],
            attempt=1,
        )
        result = self._sender(webhook.url, body, headers, self.timeout_seconds)
        state = DeliveryState.delivered if result.delivered else DeliveryState.failed
        delivery = self.store.record_webhook_delivery(
            webhook_id=webhook.id,
            event_id=None,
            status_code=result.status_code,
            attempt=1,
            response_ms=result.response_ms,
            error=_delivery_error(result),
            state=state,
        )
        self._record_metric(state)
        logger.info(
            "webhook_test_sent webhook_id=%s status=%s state=%s response_ms=%s",
            webhook.id,
            result.status_code,
            state.value,
            result.response_ms,
        )
        return delivery

    def start(self) -> None:
        with self._condition:
            if self._thread and self._thread.is_alive():
                return
            self._stopping = False
            self._thread = threading.Thread(
                target=self._run_loop, name="webhook-dispatcher", daemon=True
            )
            self._thread.start()
        logger.info("webhook_dispatcher_started")

    def stop(self, timeout: float = 5.0) -> None:
        with self._condition:
            self._stopping = True
            self._condition.notify_all()
            thread = self._thread
        if thread:
            thread.join(timeout=timeout)
        self._thread = None
        logger.info("webhook_dispatcher_stopped pending=%s", self.pending_count())

    def _run_loop(self) -> None:
        while True:
            self.run_pending()
            with self._condition:
                if self._stopping:
                    return
                wait_for = IDLE_WAIT_SECONDS
                if self._jobs:
                    wait_for = min(wait_for, max(0.0, self._jobs[0].due_at - self._clock()))
                if wait_for > 0:
                    self._condition.wait(timeout=wait_for)
                if self._stopping:
                    return

    def _attempt(self, job: DeliveryJob) -> None:
        webhook = self.store.find_webhook(job.webhook_id)
        if webhook is None or not webhook.subscribes_to(job.event.event_type):
            logger.info(
                "webhook_job_skipped webhook_id=%s event_id=%s reason=disabled_or_removed",
                job.webhook_id,
                job.event.id,
            )
            return

        payload = event_payload(job.event)
        body = encode_payload(payload)
        headers = delivery_headers(
            secret=webhook.secret,
            raw_body=body,
            event_type=payload["type"],
            event_id=payload["id"],
            attempt=job.attempt,
        )
        result = self._sender(webhook.url, body, headers, self.timeout_seconds)

        if result.delivered:
            state = DeliveryState.delivered
        elif result.transient and job.attempt < self.max_attempts:
            state = DeliveryState.retrying
        else:
            state = DeliveryState.failed

        try:
            self.store.record_webhook_delivery(
                webhook_id=webhook.id,
                event_id=job.event.id,
                status_code=result.status_code,
                attempt=job.attempt,
                response_ms=result.response_ms,
                error=_delivery_error(result),
                state=state,
            )
        except StoreNotFoundError:
            logger.info(
                "webhook_job_dropped webhook_id=%s event_id=%s reason=webhook_deleted",
                webhook.id,
                job.event.id,
            )
            return
        self._record_metric(state)

        if state is DeliveryState.retrying:
            delay = self._schedule_retry(job)
            logger.warning(
                "webhook_delivery_retrying webhook_id=%s event_id=%s attempt=%s status=%s "
                "retry_in_s=%s error=%s",
                webhook.id,
                job.event.id,
                job.attempt,
                result.status_code,
                delay,
                result.error,
            )
        elif state is DeliveryState.failed:
            logger.error(
                "webhook_delivery_failed webhook_id=%s event_id=%s attempt=%s status=%s error=%s",
                webhook.id,
                job.event.id,
                job.attempt,
                result.status_code,
                result.error,
            )
        else:
            logger.info(
                "webhook_delivered webhook_id=%s event_id=%s attempt=%s status=%s response_ms=%s",
                webhook.id,
                job.event.id,
                job.attempt,
                result.status_code,
                result.response_ms,
            )

    def _record_crash(self, job: DeliveryJob, exc: Exception) -> None:
        state = (
            DeliveryState.retrying if job.attempt < self.max_attempts else DeliveryState.failed
        )
        try:
            self.store.record_webhook_delivery(
                webhook_id=job.webhook_id,
                event_id=job.event.id,
                status_code=None,
                attempt=job.attempt,
                response_ms=None,
                error=f"delivery crashed: {exc}"[:MAX_ERROR_LENGTH],
                state=state,
            )
        except StoreNotFoundError:
            logger.info(
                "webhook_job_dropped webhook_id=%s event_id=%s reason=webhook_deleted",
                job.webhook_id,
                job.event.id,
            )
            return
        except SQLAlchemyError:
            logger.exception(
                "webhook_delivery_unrecorded webhook_id=%s event_id=%s attempt=%s",
                job.webhook_id,
                job.event.id,
                job.attempt,
            )
        else:
            self._record_metric(state)
        if state is DeliveryState.retrying:
            self._schedule_retry(job)

    def backoff_for(self, attempt: int) -> int:
        return self.backoff_seconds * 2 ** (attempt - 1)

    def _schedule_retry(self, job: DeliveryJob) -> int:
        delay = self.backoff_for(job.attempt)
        with self._condition:
            self._push(
                DeliveryJob(
                    due_at=self._clock() + delay,
                    sequence=next(self._sequence),
                    webhook_id=job.webhook_id,
                    event=job.event,
                    attempt=job.attempt + 1,
                )
            )
            self._condition.notify_all()
        return delay

    def _push(self, job: DeliveryJob) -> None:
        heapq.heappush(self._jobs, job)

    def _record_metric(self, state: DeliveryState) -> None:
        if self._metrics:
            self._metrics.record_delivery(state.value)


def _delivery_error(result: SendResult) -> Optional[str]:
    if result.delivered:
        return None
    error = result.error or f"receiver responded with http {result.status_code}"
    return error[:MAX_ERROR_LENGTH]
