"""PVZ load generator core module.

Bootstraps a shared session against the pickup-point service, ramps workers
through the configured stages, logs periodic metric summaries and evaluates
pass/fail thresholds when the ramp is over.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import random
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import aiohttp
import yaml

from pvz_client import PvzClient
from pvz_metrics import (
    CHECKS,
    ERRORS,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    ITERATIONS,
    MetricSink,
)
from pvz_schedule import RampScheduler, Schedule, parse_duration
from pvz_session import SETUP_TIMEOUT, BootstrapError, SessionData, bootstrap
from pvz_thresholds import DEFAULT_THRESHOLDS, ThresholdEvaluator, ThresholdResult
from pvz_workload import Workload

LOGGER = logging.getLogger("pvz_load")

DEFAULT_BASE_URL = "http://localhost:8080"
BASE_URL_ENV = "PVZ_BASE_URL"

EXIT_OK = 0
EXIT_THRESHOLDS_FAILED = 99
EXIT_SETUP_FAILED = 107

DEFAULT_STAGES: List[Dict[str, Any]] = [
    {"duration": "30s", "target": 50},
    {"duration": "1m", "target": 100},
    {"duration": "3m", "target": 100},
    {"duration": "30s", "target": 0},
]


@dataclass
class LoadConfig:
    """Configuration holder for one load run."""

    base_url: str = DEFAULT_BASE_URL
    stages: List[Dict[str, Any]] = field(default_factory=lambda: [dict(stage) for stage in DEFAULT_STAGES])
    thresholds: Dict[str, List[str]] = field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_THRESHOLDS.items()})
    start_workers: int = 1
    setup_timeout: Any = SETUP_TIMEOUT
    request_timeout: Optional[Any] = None
    graceful_stop: Any = "30s"
    summary_interval: Any = 30.0
    tick_interval: float = 0.1
    seed: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.start_workers < 0:
            raise ValueError("start_workers cannot be negative")
        if self.tick_interval <= 0:
            raise ValueError("tick_interval must be a positive number")

        self.setup_timeout = parse_duration(self.setup_timeout)
        self.graceful_stop = parse_duration(self.graceful_stop)
        self.summary_interval = parse_duration(self.summary_interval)
        if self.request_timeout is not None:
            self.request_timeout = parse_duration(self.request_timeout)

        # Validates every stage and threshold up front.
        self.schedule = Schedule.from_list(self.stages, start_target=self.start_workers)
        self.evaluator = ThresholdEvaluator.from_dict(self.thresholds)

        if self.base_url.startswith("http://") or self.base_url.startswith("https://"):
            base = self.base_url
        else:
            base = f"http://{self.base_url}"
        self.base_url = base.rstrip("/")

        merged_headers = {"User-Agent": "pvz-load-generator"}
        merged_headers.update(self.headers)
        self.headers = merged_headers

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "LoadConfig":
        """Build a config object from a plain dict."""

        return cls(**raw)


@dataclass
class RunResult:
    exit_code: int
    session: Optional[SessionData] = None
    thresholds: List[ThresholdResult] = field(default_factory=list)
    elapsed: float = 0.0


class LoadGenerator:
    """Bootstrap, ramp and evaluate one load run."""

    def __init__(self, config: LoadConfig, sink: Optional[MetricSink] = None) -> None:
        self.config = config
        self.sink = sink or MetricSink()
        self.scheduler: Optional[RampScheduler] = None
        self._stop_requested = False

    def stop(self) -> None:
        self._stop_requested = True
        if self.scheduler is not None:
            self.scheduler.stop()

    async def run(self) -> RunResult:
        session_kwargs: Dict[str, Any] = {}
        if self.config.request_timeout is not None:
            session_kwargs["timeout"] = aiohttp.ClientTimeout(total=self.config.request_timeout)
        loop = asyncio.get_running_loop()
        installed = _install_signal_handlers(loop, self.stop)
        try:
            async with aiohttp.ClientSession(**session_kwargs) as http_session:
                client = PvzClient(http_session, self.config.base_url, self.sink, headers=self.config.headers)
                return await self._run_session(client)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    async def _run_session(self, client: PvzClient) -> RunResult:
        LOGGER.info("Starting load against %s", self.config.base_url)
        try:
            session = await bootstrap(client, timeout=self.config.setup_timeout)
        except BootstrapError as exc:
            LOGGER.error("%s", exc)
            LOGGER.error("Setup failed - aborting before any iteration runs")
            return RunResult(EXIT_SETUP_FAILED)

        workload = Workload(client, session, self.sink)
        self.scheduler = RampScheduler(
            self.config.schedule,
            self._worker_factory(workload),
            sink=self.sink,
            tick_interval=self.config.tick_interval,
            graceful_stop=self.config.graceful_stop,
        )
        if self._stop_requested:
            self.scheduler.stop()

        start = time.monotonic()
        summary_task = None
        if self.config.summary_interval:
            summary_task = asyncio.create_task(self._summary_loop(start))
        try:
            await self.scheduler.run()
        finally:
            if summary_task is not None:
                summary_task.cancel()
                await asyncio.gather(summary_task, return_exceptions=True)
            elapsed = time.monotonic() - start
            teardown(session)

        self.log_summary(elapsed, final=True)
        results = self.config.evaluator.evaluate(self.sink)
        ThresholdEvaluator.log_results(results)
        passed = ThresholdEvaluator.all_passed(results)
        if not passed:
            LOGGER.error("Some thresholds have failed")
        return RunResult(EXIT_OK if passed else EXIT_THRESHOLDS_FAILED, session, results, elapsed)

    def _worker_factory(self, workload: Workload) -> Callable[[int, asyncio.Event], Awaitable[None]]:
        seed = self.config.seed

        def factory(worker_id: int, stop: asyncio.Event) -> Awaitable[None]:
            rng = random.Random(seed + worker_id) if seed is not None else random.Random()
            return workload.run_worker(worker_id, stop, rng)

        return factory

    async def _summary_loop(self, start: float) -> None:
        while True:
            await asyncio.sleep(self.config.summary_interval)
            self.log_summary(time.monotonic() - start)

    def log_summary(self, elapsed: float, *, final: bool = False) -> None:
        """Emit a summary of collected metrics so far."""

        snapshot = self.sink.snapshot()
        duration = snapshot[HTTP_REQ_DURATION]
        parts = [
            f"workers={self.scheduler.active if self.scheduler else 0}",
            f"iterations={snapshot[ITERATIONS]['count']}",
            f"reqs={snapshot[HTTP_REQS]['count']}",
            f"p95={duration['p(95)']}ms",
            f"failed={snapshot[HTTP_REQ_FAILED]['rate']:.4f}",
            f"checks={snapshot[CHECKS]['rate']:.4f}",
        ]
        if ERRORS in snapshot:
            parts.append(f"errors={snapshot[ERRORS]['rate']:.4f}")

        message = "FINAL" if final else "SUMMARY"
        LOGGER.info("%s %.1fs %s", message, elapsed, " | ".join(parts))
        if final:
            for name, values in snapshot.items():
                LOGGER.info("  %s %s", name, " ".join(f"{key}={value}" for key, value in values.items()))
            for name, (passes, fails) in sorted(self.sink.check_results().items()):
                LOGGER.info("  check %r passes=%d fails=%d", name, passes, fails)


def teardown(session: SessionData) -> None:
    # The baseline PVZ is left in place; the service has no delete endpoint.
    LOGGER.info("Test finished. Base PVZ %s left in place.", session.base_pvz_id)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop: Callable[[], None]) -> List[int]:
    """Install SIGINT/SIGTERM handlers to ramp down gracefully."""

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows / non-main thread
            LOGGER.debug("Signal handlers not supported here")
            break
        installed.append(sig)
    return installed


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load a configuration file in YAML or JSON format."""

    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or {}
        return dict(data)
    if suffix == ".json":
        data = json.loads(text or "{}")
        return dict(data)
    raise ValueError(f"Unsupported configuration file format: {suffix}")


def setup_logging(level: str = "INFO") -> None:
    """Configure basic logging output."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def run_with_config(config: LoadConfig) -> int:
    """Helper to run the generator with asyncio.run; returns the exit code."""

    async def _runner() -> RunResult:
        return await LoadGenerator(config).run()

    return asyncio.run(_runner()).exit_code


def main(argv: Optional[Iterable[str]] = None) -> int:
    """CLI entry point for the load generator."""

    parser = argparse.ArgumentParser(description="Staged load generator for the PVZ service")
    parser.add_argument("--config", type=Path, default=None, help="Path to YAML/JSON config file")
    parser.add_argument("--base-url", type=str, default=None, help=f"Target service (env {BASE_URL_ENV})")
    parser.add_argument("--seed", type=int, default=None, help="Seed for per-worker random sources")
    parser.add_argument(
        "--summary-interval",
        type=float,
        default=None,
        help="Override summary logging interval in seconds (0 to disable)",
    )
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, ...)")

    args = parser.parse_args(list(argv) if argv is not None else None)

    config_dict = load_config_file(args.config) if args.config else {}
    if os.environ.get(BASE_URL_ENV):
        config_dict["base_url"] = os.environ[BASE_URL_ENV]
    if args.base_url is not None:
        config_dict["base_url"] = args.base_url
    if args.seed is not None:
        config_dict["seed"] = args.seed
    if args.summary_interval is not None:
        config_dict["summary_interval"] = args.summary_interval

    config = LoadConfig.from_dict(config_dict)
    setup_logging(args.log_level)
    return run_with_config(config)


if __name__ == "__main__":  # pragma: no cover - CLI usage
    raise SystemExit(main())
