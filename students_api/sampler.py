# students_api/sampler.py
import asyncio
import contextlib
import logging
from typing import Callable, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import text
from sqlalchemy.engine import Engine

from .instruments import Counter, Gauge
from .logging_utils import log_event

DEFAULT_INTERVAL = 5.0


def parse_count(raw) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


def connection_probe(engine: Engine) -> Callable[[], object]:
    """Return a callable reporting how many connections the store sees."""
    def probe():
        if engine.dialect.name == "mysql":
            with engine.connect() as conn:
                row = conn.execute(text("SHOW STATUS LIKE 'Threads_connected'")).first()
            return row[1] if row is not None else None
        checkedout = getattr(engine.pool, "checkedout", None)
        # StaticPool and friends do not track checkouts
        return checkedout() if checkedout is not None else None
    return probe


class PeriodicSampler:
    """Polls `probe` every `interval` seconds and mirrors the result in `gauge`.

    Sampling is best effort: a failing probe leaves the gauge untouched and
    only bumps the `skipped` counter.
    """

    def __init__(self, probe: Callable[[], object], gauge: Gauge,
                 interval: float = DEFAULT_INTERVAL, skipped: Optional[Counter] = None):
        if interval <= 0:
            raise ValueError("sampler interval must be positive")
        self.probe = probe
        self.gauge = gauge
        self.interval = interval
        self.skipped = skipped
        self.skipped_ticks = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> bool:
        try:
            raw = await run_in_threadpool(self.probe)
        except Exception as e:
            self.skipped_ticks += 1
            if self.skipped is not None:
                self.skipped.increment()
            log_event("sampler_skipped", level=logging.DEBUG, error=repr(e))
            return False
        if raw is not None:
            self.gauge.set(None, parse_count(raw))
        return True

    async def _run(self):
        while True:
            await self.tick()
            await asyncio.sleep(self.interval)

    def start(self):
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
