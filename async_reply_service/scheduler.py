"""Fixed-interval fan-out of mailbox polls across tenants."""

from __future__ import annotations

import asyncio
import inspect
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from .errors import MailConnectionError
from .imap.fetcher import IMAPFetcher
from .logger import get_logger
from .matcher import MessageMatcher
from .models import PollResult
from .poller import poll_incoming_emails
from .prometheus import ReplyMetrics
from .tenants import TenantConfig

DEFAULT_POLL_INTERVAL = 300

TenantSource = Callable[[], Union[Iterable[TenantConfig], Awaitable[Iterable[TenantConfig]]]]
MatcherFactory = Callable[[TenantConfig], Union[MessageMatcher, Awaitable[MessageMatcher]]]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class TenantScheduler:
    """Poll every tenant with IMAP configured, one task per tenant per tick.

    The first cycle runs as soon as :meth:`start` is called. A tenant whose
    previous poll is still running when a tick fires is skipped for that tick.
    """

    def __init__(
        self,
        load_tenants: TenantSource,
        matcher_factory: MatcherFactory,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        fetcher: Optional[IMAPFetcher] = None,
        metrics: Optional[ReplyMetrics] = None,
        logger=None,
    ):
        self._load_tenants = load_tenants
        self._matcher_factory = matcher_factory
        self.interval = max(1.0, float(interval))
        self.logger = logger or get_logger("scheduler")
        self.fetcher = fetcher or IMAPFetcher(logger=self.logger)
        self.metrics = metrics or ReplyMetrics()

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_loop: Optional[asyncio.Task] = None
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self.last_results: Dict[str, Dict[str, Any]] = {}

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the background polling loop."""
        if self._task_loop and not self._task_loop.done():
            return
        self._stop.clear()
        self.logger.info("Starting email polling service (checks every %ss)", f"{self.interval:g}")
        self._task_loop = asyncio.create_task(self._poll_loop(), name="tenant-poll-loop")

    async def stop(self) -> None:
        """Stop the loop and wait for the polls already running."""
        self._stop.set()
        self._wake_event.set()
        pending = [task for task in [self._task_loop, *self._tasks] if task]
        await asyncio.gather(*pending, return_exceptions=True)
        self._task_loop = None

    def wake(self) -> None:
        """Run the next cycle now instead of waiting for the interval."""
        self._wake_event.set()

    @property
    def running(self) -> bool:
        return self._task_loop is not None and not self._task_loop.done()

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    # ---------------------------------------------------------------- scheduling
    async def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.poll_all()
            except Exception as exc:
                self.logger.exception("Unhandled error in tenant poll loop: %s", exc)
            await self._wait_for_wakeup(self.interval)

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Pause the loop while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    async def poll_all(self) -> List[asyncio.Task]:
        """Launch one poll task per eligible tenant and return the launched tasks."""
        try:
            tenants = list(await _resolve(self._load_tenants()))
        except Exception as exc:
            self.logger.error("Error getting websites for email polling: %s", exc)
            return []

        launched: List[asyncio.Task] = []
        for tenant in tenants:
            if not tenant.has_imap:
                continue
            if tenant.id in self._in_flight:
                self.logger.warning("Previous poll for %s still running, skipping this cycle", tenant.id)
                continue
            self._in_flight.add(tenant.id)
            self.metrics.set_in_flight(len(self._in_flight))
            task = asyncio.create_task(self._run_guarded(tenant), name=f"poll-{tenant.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            launched.append(task)
        return launched

    async def _run_guarded(self, tenant: TenantConfig) -> Optional[PollResult]:
        try:
            return await self._poll(tenant)
        finally:
            self._in_flight.discard(tenant.id)
            self.metrics.set_in_flight(len(self._in_flight))

    async def poll_tenant(self, tenant: TenantConfig) -> PollResult:
        """Poll one tenant right away, outside the periodic cycle.

        Raises:
            RuntimeError: If a poll for the same tenant is already running.
            MailConnectionError: When the mailbox cannot be fetched.
        """
        if tenant.id in self._in_flight:
            raise RuntimeError(f"Poll for {tenant.id} already running")
        self._in_flight.add(tenant.id)
        self.metrics.set_in_flight(len(self._in_flight))
        try:
            result = await self._poll(tenant, reraise=True)
        finally:
            self._in_flight.discard(tenant.id)
            self.metrics.set_in_flight(len(self._in_flight))
        return result

    async def _poll(self, tenant: TenantConfig, *, reraise: bool = False) -> Optional[PollResult]:
        label = tenant.site_name or tenant.id
        self.logger.info("Polling emails for %s...", label)
        started = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        try:
            matcher = await _resolve(self._matcher_factory(tenant))
            result = await poll_incoming_emails(tenant.imap, matcher, fetcher=self.fetcher, logger=self.logger)
        except Exception as exc:
            if isinstance(exc, MailConnectionError):
                self.logger.error("Error polling emails for %s: %s", label, exc)
            else:
                self.logger.exception("Unexpected error polling emails for %s: %s", label, exc)
            self.metrics.inc_poll_failure(tenant.id)
            self.last_results[tenant.id] = {"ok": False, "started_at": started, "error": str(exc)}
            if reraise:
                raise
            return None

        self._log_result(label, result)
        self.metrics.record_poll(tenant.id, result.emails_checked, result.replies_added, len(result.errors))
        self.last_results[tenant.id] = {"ok": True, "started_at": started, **result.as_dict()}
        return result

    def _log_result(self, label: str, result: PollResult) -> None:
        if result.replies_added > 0:
            self.logger.info(
                "Added %d email replies for %s (checked %d emails)",
                result.replies_added,
                label,
                result.emails_checked,
            )
        if result.errors:
            self.logger.warning("Encountered %d errors while processing emails for %s", len(result.errors), label)
            for err in result.errors:
                self.logger.warning("  - %s", err)


__all__ = ["DEFAULT_POLL_INTERVAL", "TenantScheduler"]
