"""Staged concurrency ramp and the supervisor that keeps it.

A ``Schedule`` is a pure function of elapsed time; the ``RampScheduler`` is the
control loop that spawns and retires worker tasks so the number of active
workers follows ``Schedule.target_at``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from pvz_metrics import VUS, MetricSink

LOGGER = logging.getLogger("pvz_load.schedule")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """Convert ``"1m30s"``, ``"500ms"`` or a plain number of seconds to seconds."""

    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().replace(" ", "")
        if not text:
            raise ValueError("Duration cannot be empty")
        position = 0
        seconds = 0.0
        for match in _DURATION_PART.finditer(text):
            if match.start() != position:
                break
            seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
            position = match.end()
        if position != len(text):
            try:
                seconds = float(text)
            except ValueError:
                raise ValueError(f"Invalid duration: {value!r}") from None
    if seconds < 0:
        raise ValueError(f"Duration cannot be negative: {value!r}")
    return seconds


@dataclass(frozen=True)
class Stage:
    duration: float
    target: int

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ValueError("stage duration cannot be negative")
        if self.target < 0:
            raise ValueError("stage target cannot be negative")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Stage":
        return cls(duration=parse_duration(raw["duration"]), target=int(raw["target"]))


class Schedule:
    """Ordered ramp stages with linear interpolation between boundaries."""

    def __init__(self, stages: Iterable[Stage], start_target: int = 1) -> None:
        self.stages: List[Stage] = list(stages)
        if not self.stages:
            raise ValueError("a schedule needs at least one stage")
        if start_target < 0:
            raise ValueError("start_target cannot be negative")
        self.start_target = start_target
        self.total_duration = sum(stage.duration for stage in self.stages)

    @classmethod
    def from_list(cls, raw: Iterable[Dict[str, Any]], start_target: int = 1) -> "Schedule":
        return cls([Stage.from_dict(item) for item in raw], start_target=start_target)

    def target_at(self, elapsed: float) -> int:
        """Concurrency the runtime should hold *elapsed* seconds into the run."""

        previous = self.start_target
        stage_start = 0.0
        for stage in self.stages:
            stage_end = stage_start + stage.duration
            if elapsed < stage_end:
                progress = max(elapsed - stage_start, 0.0) / stage.duration
                value = previous + (stage.target - previous) * progress
                return max(math.ceil(value - 1e-9), 0)
            previous = stage.target
            stage_start = stage_end
        return self.stages[-1].target

    def finished(self, elapsed: float) -> bool:
        return elapsed >= self.total_duration


WorkerFactory = Callable[[int, asyncio.Event], Awaitable[None]]


@dataclass
class _Worker:
    worker_id: int
    stop: asyncio.Event
    task: "asyncio.Task[None]"
    retiring: bool = False


@dataclass
class RampScheduler:
    """Supervisor that keeps the number of active workers on the ramp.

    ``worker_factory(worker_id, stop_event)`` must return a coroutine that runs
    iterations until ``stop_event`` is set, checking it only between
    iterations so in-flight requests always complete.
    """

    schedule: Schedule
    worker_factory: WorkerFactory
    sink: Optional[MetricSink] = None
    tick_interval: float = 0.1
    graceful_stop: float = 30.0
    clock: Callable[[], float] = time.monotonic
    _workers: Dict[int, _Worker] = field(default_factory=dict, init=False)
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _started: Optional[float] = field(default=None, init=False)

    def __post_init__(self) -> None:
        if self.tick_interval <= 0:
            raise ValueError("tick_interval must be a positive number")
        if self.graceful_stop < 0:
            raise ValueError("graceful_stop cannot be negative")

    @property
    def active(self) -> int:
        """Workers that have not been asked to stop."""

        return sum(1 for worker in self._workers.values() if not worker.retiring)

    @property
    def live(self) -> int:
        """Active plus retiring workers still finishing an iteration."""

        return len(self._workers)

    def elapsed(self) -> float:
        if self._started is None:
            return 0.0
        return self.clock() - self._started

    def stop(self) -> None:
        LOGGER.info("Stop requested - ramping down")
        self._stop_event.set()

    async def run(self) -> None:
        self._started = self.clock()
        LOGGER.info(
            "Ramp started: %d stage(s), %.1fs total", len(self.schedule.stages), self.schedule.total_duration
        )
        try:
            while not self._stop_event.is_set():
                elapsed = self.elapsed()
                if self.schedule.finished(elapsed):
                    break
                self.reconcile(self.schedule.target_at(elapsed))
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.shutdown()

    def reconcile(self, target: int) -> None:
        """Spawn or retire workers until ``active == target``."""

        self._reap()
        while self.active < target:
            self._spawn()
        while self.active > target:
            self._retire()
        if self.sink is not None:
            self.sink.add_trend(VUS, self.active)

    def _spawn(self) -> None:
        worker_id = 1
        while worker_id in self._workers:
            worker_id += 1
        stop = asyncio.Event()
        task = asyncio.create_task(self.worker_factory(worker_id, stop), name=f"worker-{worker_id}")
        self._workers[worker_id] = _Worker(worker_id, stop, task)
        LOGGER.debug("worker %d spawned", worker_id)

    def _retire(self) -> None:
        candidates = [worker for worker in self._workers.values() if not worker.retiring]
        worker = max(candidates, key=lambda item: item.worker_id)
        worker.retiring = True
        worker.stop.set()
        LOGGER.debug("worker %d retiring", worker.worker_id)

    def _reap(self) -> None:
        for worker_id, worker in list(self._workers.items()):
            if worker.task.done():
                del self._workers[worker_id]
                if not worker.task.cancelled() and worker.task.exception() is not None:
                    LOGGER.error("worker %d crashed", worker_id, exc_info=worker.task.exception())

    async def shutdown(self) -> None:
        """Retire everyone and wait for in-flight iterations to finish."""

        for worker in self._workers.values():
            worker.retiring = True
            worker.stop.set()
        tasks = [worker.task for worker in self._workers.values()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.graceful_stop)
            if pending:
                LOGGER.warning("%d worker(s) still busy after %.1fs - cancelling", len(pending), self.graceful_stop)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._reap()
        self._workers.clear()
        LOGGER.info("Ramp finished after %.1fs", self.elapsed())
