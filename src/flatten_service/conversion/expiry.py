"""
Artifact lifetime tracking.

The registry is the single source of truth for whether an artifact may still
be served. Expiry is driven by an explicit delayed-task scheduler that reads
an injected clock, so tests can advance a virtual clock and call
``run_pending()`` instead of sleeping.
"""

import asyncio
import heapq
import itertools
import logging
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from .errors import DuplicateArtifactError, NotFoundError
from .interfaces import ArtifactStore, Clock

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[None]]


class DelayedTaskScheduler:
    """Min-heap of fire-once async actions keyed by due time."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._heap: list[tuple[float, int, Action]] = []
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._heap)

    def call_at(self, when: float, action: Action) -> None:
        heapq.heappush(self._heap, (when, next(self._seq), action))
        self._wakeup.set()

    def next_due(self) -> float | None:
        return self._heap[0][0] if self._heap else None

    async def run_pending(self) -> int:
        """Run every action that is due, earliest first. Returns how many ran."""
        ran = 0
        while self._heap and self._heap[0][0] <= self._clock.now():
            _, _, action = heapq.heappop(self._heap)
            try:
                await action()
            except Exception:
                logger.exception("Scheduled action failed")
            ran += 1
        return ran

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            await self.run_pending()
            self._wakeup.clear()
            due = self.next_due()
            timeout = None if due is None else max(0.0, due - self._clock.now())
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass


@dataclass
class ExpirationRecord:
    artifact_id: str
    created_at: float
    expires_at: float
    work_dir: Path | None = None
    expiring: bool = False


class ExpirationRegistry:
    """Maps artifact ids to absolute expiry timestamps and reaps them on time.

    Per id: ABSENT -> REGISTERED -> EXPIRING -> ABSENT. Only ``register*``
    enters REGISTERED; only the scheduled ``expire`` leaves it.
    """

    def __init__(self, store: ArtifactStore, clock: Clock, scheduler: DelayedTaskScheduler) -> None:
        self._store = store
        self._clock = clock
        self._scheduler = scheduler
        self._records: dict[str, ExpirationRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, artifact_id: object) -> bool:
        with self._lock:
            return artifact_id in self._records

    def register(self, artifact_id: str, ttl: float, *, work_dir: Path | None = None) -> float:
        return self.register_until(artifact_id, self._clock.now() + ttl, work_dir=work_dir)

    def register_until(self, artifact_id: str, expires_at: float, *, work_dir: Path | None = None) -> float:
        with self._lock:
            if artifact_id in self._records:
                raise DuplicateArtifactError(f"artifact {artifact_id} is already registered")
            self._records[artifact_id] = ExpirationRecord(
                artifact_id=artifact_id,
                created_at=self._clock.now(),
                expires_at=expires_at,
                work_dir=work_dir,
            )

        async def reap() -> None:
            await self.expire(artifact_id)

        self._scheduler.call_at(expires_at, reap)
        return expires_at

    def time_remaining(self, artifact_id: str) -> float:
        """Seconds left before the artifact is reaped; NotFoundError once gone."""
        with self._lock:
            record = self._records.get(artifact_id)
            if record is None or record.expiring:
                raise NotFoundError(f"artifact {artifact_id} is not registered")
            return max(0.0, record.expires_at - self._clock.now())

    def is_available(self, artifact_id: str) -> bool:
        try:
            self.time_remaining(artifact_id)
        except NotFoundError:
            return False
        return True

    async def expire(self, artifact_id: str) -> None:
        with self._lock:
            record = self._records.get(artifact_id)
            if record is None or record.expiring:
                return
            record.expiring = True

        try:
            await self._store.delete(artifact_id)
        except Exception as e:
            logger.warning("Failed to delete expired artifact %s: %s", artifact_id, e)
        if record.work_dir is not None:
            try:
                await asyncio.to_thread(shutil.rmtree, record.work_dir)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Failed to delete page images for %s: %s", artifact_id, e)

        with self._lock:
            self._records.pop(artifact_id, None)
        logger.info("Expired artifact %s", artifact_id)
