"""
Fallback poll scheduler.

Purpose:
- Poll the upstream search endpoint for every registered query when the
  real-time stream is unreliable (disabled unless POLLING_ENABLED=true)
- Stay within a fixed request budget as the number of queries grows
- Feed unseen rows into the same pipeline the stream uses

Budget:
- required interval = ceil(n * 60 / SAFE_REQUESTS_PER_MINUTE) seconds
- effective interval = max(base interval, required interval)
- requests inside a tick are spaced by ceil(60000 / SAFE_REQUESTS_PER_MINUTE) ms
- ticks start on a steady cadence: next delay = effective - elapsed
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from infra.redis_client import StoreError
from infra.release_api import ReleaseApiClient, ReleaseApiError
from models.release import ReleaseEvent
from services.query_registry import GlobalQueryRegistry, LastSeenTracker
from services.release_processor import ReleaseProcessor

logger = logging.getLogger(__name__)

SAFE_REQUESTS_PER_MINUTE = 30


def required_interval_sec(query_count: int, safe_rpm: int = SAFE_REQUESTS_PER_MINUTE) -> int:
    return math.ceil(query_count * 60 / safe_rpm)


def effective_interval_sec(query_count: int, base_interval_sec: int, safe_rpm: int = SAFE_REQUESTS_PER_MINUTE) -> int:
    if query_count <= 0:
        return base_interval_sec
    return max(base_interval_sec, required_interval_sec(query_count, safe_rpm))


def per_request_delay_ms(safe_rpm: int = SAFE_REQUESTS_PER_MINUTE) -> int:
    return math.ceil(60000 / safe_rpm)


def next_delay_sec(interval_sec: float, elapsed_sec: float) -> float:
    """Delay until the next tick so ticks start `interval_sec` apart."""
    return max(0.0, interval_sec - elapsed_sec)


@dataclass
class TickReport:
    query_count: int
    interval_sec: int
    polled: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    fed: int = 0


class PollScheduler:
    def __init__(
        self,
        api: ReleaseApiClient,
        registry: GlobalQueryRegistry,
        last_seen: LastSeenTracker,
        processor: ReleaseProcessor,
        base_interval_sec: int = 60,
        safe_requests_per_minute: int = SAFE_REQUESTS_PER_MINUTE,
        page_count: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.registry = registry
        self.last_seen = last_seen
        self.processor = processor
        self.base_interval_sec = base_interval_sec
        self.safe_rpm = safe_requests_per_minute
        self.page_count = page_count
        self._sleep = sleep
        self._clock = clock
        self.ticks = 0
        self.last_report: Optional[TickReport] = None

    async def poll_query(self, query: str) -> int:
        """Fetch recent rows for one query and feed the unseen ones, oldest first."""
        rows = await self.api.fetch_recent(query, count=self.page_count)
        watermark = await self.last_seen.get_watermark(query)
        if watermark is not None and watermark.preAt is not None:
            rows = [r for r in rows if r.preAt > watermark.preAt]
        rows.sort(key=lambda r: r.preAt)

        for release in rows:
            await self.processor.process(ReleaseEvent(action="insert", row=release))
            await self.last_seen.set_watermark(query, release)
        if rows:
            logger.info("[poll] '%s': %s new release(s)", query, len(rows))
        return len(rows)

    async def run_tick(self) -> TickReport:
        queries = await self.registry.all()
        interval = effective_interval_sec(len(queries), self.base_interval_sec, self.safe_rpm)
        report = TickReport(query_count=len(queries), interval_sec=interval)
        if not queries:
            return report

        spacing = per_request_delay_ms(self.safe_rpm) / 1000.0
        for index, query in enumerate(queries):
            if index:
                await self._sleep(spacing)
            try:
                report.fed += await self.poll_query(query)
                report.polled.append(query)
            except (ReleaseApiError, StoreError) as e:
                logger.error("[poll] Skipping '%s' this tick: %s", query, e)
                report.failed.append(query)
            except Exception as e:
                logger.exception("[poll] Unexpected error polling '%s', skipping: %s", query, e)
                report.failed.append(query)
        return report

    async def run(self, stop: asyncio.Event):
        """
        Tick until `stop` is set. A tick in flight always completes; the wait
        before the next tick is abandoned as soon as `stop` is set.
        """
        logger.info(
            "[poll] Scheduler started (base=%ss, budget=%s req/min)", self.base_interval_sec, self.safe_rpm,
        )
        while not stop.is_set():
            started = self._clock()
            try:
                report = await self.run_tick()
            except StoreError as e:
                logger.error("[poll] Could not read query registry: %s", e)
                report = TickReport(query_count=0, interval_sec=self.base_interval_sec)
            except Exception as e:
                logger.exception("[poll] Tick failed: %s", e)
                report = TickReport(query_count=0, interval_sec=self.base_interval_sec)
            self.ticks += 1
            self.last_report = report

            if report.query_count == 0:
                delay = float(self.base_interval_sec)
            else:
                delay = next_delay_sec(report.interval_sec, self._clock() - started)
                logger.info(
                    "[poll] Tick %s: %s queries, %s failed, %s fed; next in %.1fs (interval %ss)",
                    self.ticks, report.query_count, len(report.failed), report.fed, delay, report.interval_sec,
                )
            if await self._wait(stop, delay):
                break
        logger.info("[poll] Scheduler stopped after %s tick(s)", self.ticks)

    @staticmethod
    async def _wait(stop: asyncio.Event, delay: float) -> bool:
        """Sleep up to `delay` seconds; True if `stop` was set meanwhile."""
        try:
            await asyncio.wait_for(stop.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return stop.is_set()
