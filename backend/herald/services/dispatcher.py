"""
Delivery fan-out.

One notification goes to many endpoints at once. Each endpoint gets its
own task, all of them bounded by a shared deadline; results come back in
endpoint order. The dispatcher never retries - a failed job goes back to
the queue, which owns the retry policy.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, TYPE_CHECKING
from loguru import logger

from herald.config import DispatchConfig
from herald.endpoints.base import DeliveryContext, DeliveryEndpoint, Notification
from herald.models.enums import JobStatus
from herald.utils.errors import DeliveryCancelled, DeliveryError
from herald.utils.formatting import truncate_body, summarize_errors

if TYPE_CHECKING:
    from herald.services.metrics_recorder import MetricsRecorder


@dataclass
class Outcome:
    """Result of delivering to one endpoint."""
    service_id: str
    service_url: str
    success: bool
    error: Optional[Exception] = None
    duration: float = 0.0  # seconds

    @property
    def duration_ms(self) -> int:
        return int(round(self.duration * 1000))

    @property
    def error_message(self) -> str:
        if self.error is None:
            return ""
        return str(self.error) or type(self.error).__name__

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, DeliveryCancelled)


class DeliveryDispatcher:
    """Concurrent fan-out of one notification to many endpoints."""

    def __init__(self, config: Optional[DispatchConfig] = None, metrics: Optional["MetricsRecorder"] = None):
        self.config = config or DispatchConfig()
        self.metrics = metrics
        self._active = 0

    async def dispatch(
        self,
        notification: Notification,
        endpoints: Sequence[DeliveryEndpoint],
        deadline: Optional[float] = None
    ) -> List[Outcome]:
        """
        Deliver to every endpoint concurrently.

        Args:
            notification: What to send
            endpoints: Configured endpoints; outcomes keep this order
            deadline: Seconds allowed for the whole fan-out (default from config)

        Returns:
            One Outcome per endpoint. Never raises for delivery failures.
        """
        if not endpoints:
            return []

        timeout = deadline if deadline is not None else self.config.deadline
        ctx = DeliveryContext.with_timeout(timeout, metrics=self.metrics)
        workers = min(len(endpoints), self.config.max_workers)
        semaphore = asyncio.Semaphore(workers)

        tasks = [
            asyncio.create_task(self._deliver(endpoint, notification, ctx, semaphore))
            for endpoint in endpoints
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            ctx.cancel()
            for task in tasks:
                task.cancel()
            raise

        failed = sum(1 for outcome in outcomes if not outcome.success)
        logger.debug(
            f"Dispatched to {len(outcomes)} endpoint(s) with {workers} worker(s): "
            f"{len(outcomes) - failed} succeeded, {failed} failed"
        )
        return list(outcomes)

    async def _deliver(
        self,
        endpoint: DeliveryEndpoint,
        notification: Notification,
        ctx: DeliveryContext,
        semaphore: asyncio.Semaphore
    ) -> Outcome:
        service_id = endpoint.service_id()
        service_url = endpoint.service_url or ""

        async with semaphore:
            # Tasks still waiting for a worker when the deadline passes skip themselves
            if ctx.cancelled:
                logger.debug(f"{service_id}: skipped, dispatch deadline passed")
                return Outcome(service_id, service_url, success=False, error=DeliveryCancelled())

            limit = endpoint.max_body_length()
            if limit and len(notification.body) > limit:
                notification = notification.with_body(truncate_body(notification.body, limit))

            self._track_active(1)
            start = time.monotonic()
            try:
                await asyncio.wait_for(endpoint.send(notification, ctx), timeout=ctx.remaining())
                outcome = Outcome(service_id, service_url, success=True)
            except asyncio.TimeoutError:
                outcome = Outcome(service_id, service_url, success=False, error=DeliveryCancelled())
            except DeliveryError as e:
                outcome = Outcome(service_id, service_url, success=False, error=e)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"{service_id}: unexpected error during delivery")
                outcome = Outcome(service_id, service_url, success=False, error=e)
            finally:
                self._track_active(-1)

            outcome.duration = time.monotonic() - start
            if outcome.success:
                logger.debug(f"{service_id}: delivered in {outcome.duration_ms}ms")
            else:
                logger.warning(f"{service_id}: delivery failed: {outcome.error_message}")
            return outcome

    def _track_active(self, delta: int):
        self._active += delta
        if self.metrics is not None:
            self.metrics.update_gauge("active_deliveries", self._active)


def aggregate_outcomes(outcomes: Sequence[Outcome], retry_count: int, max_retries: int) -> Tuple[JobStatus, str]:
    """
    Map per-endpoint outcomes to the job's next status.

    all succeed             -> completed, no message
    some succeed            -> completed, warning naming the failed endpoints
    all fail, retries left  -> retrying
    all fail, none left     -> failed

    An empty outcome list counts as all failed.
    """
    failures = [outcome for outcome in outcomes if not outcome.success]
    succeeded = len(outcomes) - len(failures)
    errors = [f"{outcome.service_id}: {outcome.error_message}" for outcome in failures]

    if outcomes and not failures:
        return JobStatus.COMPLETED, ""

    if succeeded > 0:
        return JobStatus.COMPLETED, (
            f"Partial success: {len(failures)}/{len(outcomes)} services failed: {summarize_errors(errors)}"
        )

    message = f"All services failed: {summarize_errors(errors)}" if errors else "No deliverable services"
    if retry_count < max_retries:
        return JobStatus.RETRYING, message
    return JobStatus.FAILED, message
