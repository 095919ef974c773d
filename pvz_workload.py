"""Per-iteration workload: action selection and the three action classes."""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, Tuple

from pvz_client import PvzClient, Response
from pvz_metrics import (
    ADD_PRODUCT_LATENCY,
    CLOSE_RECEPTION_LATENCY,
    CREATE_PVZ_LATENCY,
    ERRORS,
    INITIATE_RECEPTION_LATENCY,
    ITERATIONS,
    PVZ_LIST_LATENCY,
    MetricSink,
)
from pvz_session import SessionData

LOGGER = logging.getLogger("pvz_load.workload")

LIST_THRESHOLD = 0.70
CREATE_THRESHOLD = 0.80
CREATE_WORKER_MODULUS = 10
CREATE_WORKER_REMAINDER = 1

LIST_PAGES = (1, 5)
LIST_PAGE_SIZE = 10
CITIES = ("Москва", "Санкт-Петербург", "Казань")
PRODUCT_TYPES = ("электроника", "одежда", "обувь")
RECEPTION_CONFLICT = "предыдущая приемка для этого ПВЗ еще не закрыта"

STEP_PAUSE = (0.05, 0.10)
ITERATION_PAUSE = (0.1, 0.2)

Sleep = Callable[[float], Awaitable[None]]


class Action(enum.Enum):
    LIST = "list"
    CREATE_PVZ = "create_pvz"
    EMPLOYEE_WORKFLOW = "employee_workflow"


def select_action(r: float, worker_id: int) -> Action:
    """Map one uniform draw and the worker identity to an action class.

    The create path needs both the 10% band and a worker with
    ``worker_id % 10 == 1``, which keeps it near 1% overall and spread across
    workers.
    """

    if not 0.0 <= r < 1.0:
        raise ValueError(f"random draw must be in [0, 1), got {r!r}")
    if r < LIST_THRESHOLD:
        return Action.LIST
    if r < CREATE_THRESHOLD and worker_id % CREATE_WORKER_MODULUS == CREATE_WORKER_REMAINDER:
        return Action.CREATE_PVZ
    return Action.EMPLOYEE_WORKFLOW


def is_reception_conflict(res: Response) -> bool:
    """True when a 400 carries the "previous reception still open" message.

    The message may arrive verbatim or as ``\\uXXXX`` escapes inside the JSON
    ``message`` field, so both forms are checked.
    """

    if RECEPTION_CONFLICT in res.body:
        return True
    message = res.field_or_none("message", str)
    return message is not None and RECEPTION_CONFLICT in message


@dataclass
class IterationContext:
    worker_id: int
    iteration: int
    action: Optional[Action] = None
    reception_id: Optional[str] = None
    reception_initiated: bool = False

    @property
    def label(self) -> str:
        return f"worker {self.worker_id} iteration {self.iteration}"


def _pause(rng: random.Random, bounds: Tuple[float, float]) -> float:
    low, high = bounds
    return low + rng.random() * (high - low)


class Workload:
    """Runs iterations for any number of workers against one shared session.

    Only read-only state lives here (client, session data, sink handle); all
    per-iteration state is kept in an ``IterationContext``.
    """

    def __init__(
        self,
        client: PvzClient,
        session: SessionData,
        sink: MetricSink,
        *,
        sleep: Sleep = asyncio.sleep,
        cities: Sequence[str] = CITIES,
        product_types: Sequence[str] = PRODUCT_TYPES,
    ) -> None:
        self.client = client
        self.session = session
        self.sink = sink
        self.sleep = sleep
        self.cities = tuple(cities)
        self.product_types = tuple(product_types)

    async def run_worker(self, worker_id: int, stop: asyncio.Event, rng: Optional[random.Random] = None) -> None:
        """Iterate until *stop* is set; the flag is only checked between iterations."""

        rng = rng or random.Random()
        iteration = 0
        while not stop.is_set():
            try:
                await self.iteration(worker_id, iteration, rng)
            except Exception:
                LOGGER.exception("worker %d iteration %d raised", worker_id, iteration)
            iteration += 1
            # Iterations that short-circuit never await; yield to the loop.
            await asyncio.sleep(0)

    async def iteration(self, worker_id: int, iteration: int, rng: random.Random) -> IterationContext:
        ctx = IterationContext(worker_id, iteration)
        if not self.session.complete:
            LOGGER.error("Worker %d: Missing data from setup. Skipping iteration.", worker_id)
            return ctx

        ctx.action = select_action(rng.random(), worker_id)
        try:
            if ctx.action is Action.LIST:
                await self.list_pvz(ctx, rng)
            elif ctx.action is Action.CREATE_PVZ:
                await self.create_pvz(ctx, rng)
            else:
                await self.employee_workflow(ctx, rng)
        finally:
            # Pacing holds even when an action raises.
            self.sink.add_counter(ITERATIONS)
            await self.sleep(_pause(rng, ITERATION_PAUSE))
        return ctx

    async def list_pvz(self, ctx: IterationContext, rng: random.Random) -> bool:
        low, high = LIST_PAGES
        page = rng.randint(low, high)
        res = await self.client.get(
            "/pvz",
            token=self.session.employee_token,
            params={"page": page, "limit": LIST_PAGE_SIZE},
        )
        ok = self.sink.check("List PVZ status is 200", res.status == 200)
        self.sink.check(
            "List PVZ response is JSON",
            res.status == 200 and "application/json" in res.content_type,
        )
        if res.status == 200:
            items, error = res.decode_field("items", list)
            if error is not None:
                LOGGER.error("%s List PVZ JSON parse error: %s, body: %s", ctx.label, error, res.body)
            self.sink.check("List PVZ has items array", items is not None)
        else:
            self.sink.check("List PVZ has items array", True)
        # Only the status feeds the error rate; body checks are covered above.
        self.sink.add_rate(ERRORS, res.status != 200)
        self.sink.add_trend(PVZ_LIST_LATENCY, res.duration_ms)
        return ok

    async def create_pvz(self, ctx: IterationContext, rng: random.Random) -> bool:
        city = rng.choice(self.cities)
        res = await self.client.post("/pvz", token=self.session.moderator_token, json_body={"city": city})
        ok = self.sink.check("Create PVZ status is 201", res.status == 201)
        if res.status == 201:
            pvz_id, error = res.decode_field("id", str)
            if error is not None:
                LOGGER.error("%s Create PVZ JSON parse error: %s, body: %s", ctx.label, error, res.body)
            ok = self.sink.check("Create PVZ returns ID", pvz_id is not None) and ok
        else:
            self.sink.check("Create PVZ returns ID", True)
        self.sink.add_rate(ERRORS, res.status != 201)
        self.sink.add_trend(CREATE_PVZ_LATENCY, res.duration_ms)
        return ok

    async def employee_workflow(self, ctx: IterationContext, rng: random.Random) -> None:
        """Initiate a reception, then add a product and close it.

        Add and close only run when this iteration opened the reception
        itself; a conflict means another worker holds it.
        """

        await self.initiate_reception(ctx)
        if not (ctx.reception_initiated and ctx.reception_id):
            return

        await self.sleep(_pause(rng, STEP_PAUSE))
        await self.add_product(ctx, rng)

        await self.sleep(_pause(rng, STEP_PAUSE))
        await self.close_reception(ctx)

    async def initiate_reception(self, ctx: IterationContext) -> bool:
        pvz_id = self.session.base_pvz_id
        res = await self.client.post("/receptions", token=self.session.employee_token, json_body={"pvzId": pvz_id})
        self.sink.add_trend(INITIATE_RECEPTION_LATENCY, res.duration_ms)

        check_ok = res.status in (201, 400)
        expected_conflict = False
        if res.status == 201:
            reception_id, error = res.decode_field("id", str)
            if error is None:
                ctx.reception_id = reception_id
                ctx.reception_initiated = True
            else:
                LOGGER.error("%s received status 201 but ID is invalid (%s): %s", ctx.label, error, res.body)
                check_ok = False
        elif res.status == 400:
            if is_reception_conflict(res):
                expected_conflict = True
            else:
                LOGGER.warning(
                    "%s unexpected 400 error initiating reception for PVZ %s. Body: %s", ctx.label, pvz_id, res.body
                )
        else:
            LOGGER.warning(
                "%s unexpected status initiating reception for PVZ %s. Status: %d, Body: %s",
                ctx.label,
                pvz_id,
                res.status,
                res.body,
            )

        self.sink.check("[Employee] Initiate Reception status is 201 or 400", check_ok)
        self.sink.add_rate(ERRORS, not check_ok or (res.status != 201 and not expected_conflict))
        return ctx.reception_initiated

    async def add_product(self, ctx: IterationContext, rng: random.Random) -> bool:
        pvz_id = self.session.base_pvz_id
        product_type = rng.choice(self.product_types)
        res = await self.client.post(
            "/products",
            token=self.session.employee_token,
            json_body={"pvzId": pvz_id, "type": product_type},
        )
        ok = self.sink.check("[Employee] Add Product status is 201", res.status == 201)
        self.sink.add_trend(ADD_PRODUCT_LATENCY, res.duration_ms)
        if not ok:
            LOGGER.warning(
                "%s failed to add product to PVZ %s (Reception %s). Status: %d, Body: %s",
                ctx.label,
                pvz_id,
                ctx.reception_id,
                res.status,
                res.body,
            )
        self.sink.add_rate(ERRORS, not ok)
        return ok

    async def close_reception(self, ctx: IterationContext) -> bool:
        pvz_id = self.session.base_pvz_id
        res = await self.client.post(f"/pvz/{pvz_id}/close_last_reception", token=self.session.employee_token)
        ok = self.sink.check("[Employee] Close Reception status is 200", res.status == 200)
        self.sink.add_trend(CLOSE_RECEPTION_LATENCY, res.duration_ms)
        if not ok:
            LOGGER.warning(
                "%s failed to close reception %s for PVZ %s. Status: %d, Body: %s",
                ctx.label,
                ctx.reception_id,
                pvz_id,
                res.status,
                res.body,
            )
        self.sink.add_rate(ERRORS, not ok)
        return ok
