"""Shared fixtures: an in-process fake PVZ service and a wired client."""

from __future__ import annotations

import functools
import json
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from pvz_client import PvzClient
from pvz_metrics import MetricSink
from pvz_workload import RECEPTION_CONFLICT

MODERATOR_TOKEN = "moderator-token"
EMPLOYEE_TOKEN = "employee-token"


@dataclass
class FakePvzService:
    """Just enough of the PVZ API for the generator, with fault knobs."""

    login_status: Dict[str, int] = field(default_factory=dict)
    create_pvz_failures: int = 0
    create_pvz_body: Optional[dict] = None
    reception_status: Optional[int] = None
    reception_body: Optional[dict] = None
    products_status: int = 201
    close_status: Optional[int] = None
    list_body: Optional[object] = None
    list_raw: Optional[bytes] = None
    unescaped_json: bool = False
    pvzs: Dict[str, str] = field(default_factory=dict)
    open_receptions: Dict[str, str] = field(default_factory=dict)
    calls: List[Tuple[str, str]] = field(default_factory=list)

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    def paths(self, prefix: str) -> List[str]:
        return [path for _, path in self.calls if path.startswith(prefix)]

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/dummyLogin", self.dummy_login)
        app.router.add_post("/pvz", self.create_pvz)
        app.router.add_get("/pvz", self.list_pvz)
        app.router.add_post("/receptions", self.create_reception)
        app.router.add_post("/products", self.add_product)
        app.router.add_post("/pvz/{pvz_id}/close_last_reception", self.close_reception)
        return app

    def _track(self, request: web.Request) -> None:
        self.calls.append((request.method, request.path))

    def _json(self, data: object, status: int = 200) -> web.Response:
        # json.dumps escapes non-ASCII by default; some servers send raw UTF-8.
        dumps = functools.partial(json.dumps, ensure_ascii=False) if self.unescaped_json else json.dumps
        return web.json_response(data, status=status, dumps=dumps)

    def _error(self, status: int, message: str) -> web.Response:
        return self._json({"message": message}, status=status)

    @staticmethod
    def _token(request: web.Request) -> str:
        return request.headers.get("Authorization", "").replace("Bearer ", "", 1)

    async def dummy_login(self, request: web.Request) -> web.Response:
        self._track(request)
        role = (await request.json()).get("role")
        status = self.login_status.get(role, 200)
        if status != 200:
            return self._error(status, "login unavailable")
        return web.json_response({"token": f"{role}-token"})

    async def create_pvz(self, request: web.Request) -> web.Response:
        self._track(request)
        if self._token(request) != MODERATOR_TOKEN:
            return self._error(403, "moderators only")
        if self.create_pvz_failures > 0:
            self.create_pvz_failures -= 1
            return self._error(500, "cold start")
        if self.create_pvz_body is not None:
            return web.json_response(self.create_pvz_body, status=201)
        city = (await request.json())["city"]
        pvz_id = str(uuid.uuid4())
        self.pvzs[pvz_id] = city
        return web.json_response({"id": pvz_id, "city": city}, status=201)

    async def list_pvz(self, request: web.Request) -> web.Response:
        self._track(request)
        if self.list_raw is not None:
            return web.Response(body=self.list_raw, content_type="application/json", charset="utf-8")
        if self.list_body is not None:
            return web.json_response(self.list_body)
        items = [{"pvz": {"id": pvz_id, "city": city}, "receptions": []} for pvz_id, city in self.pvzs.items()]
        limit = int(request.query.get("limit", 10))
        return web.json_response({"items": items[:limit]})

    async def create_reception(self, request: web.Request) -> web.Response:
        self._track(request)
        pvz_id = (await request.json())["pvzId"]
        if self.reception_status is not None:
            return web.json_response(self.reception_body or {}, status=self.reception_status)
        if pvz_id in self.open_receptions:
            return self._error(400, RECEPTION_CONFLICT)
        reception_id = str(uuid.uuid4())
        self.open_receptions[pvz_id] = reception_id
        return web.json_response({"id": reception_id, "pvzId": pvz_id, "status": "in_progress"}, status=201)

    async def add_product(self, request: web.Request) -> web.Response:
        self._track(request)
        payload = await request.json()
        if payload["pvzId"] not in self.open_receptions:
            return self._error(400, "нет открытой приемки для данного ПВЗ, чтобы добавить товар")
        if self.products_status != 201:
            return self._error(self.products_status, "product rejected")
        return web.json_response({"id": str(uuid.uuid4()), "type": payload["type"]}, status=201)

    async def close_reception(self, request: web.Request) -> web.Response:
        self._track(request)
        pvz_id = request.match_info["pvz_id"]
        if self.close_status is not None:
            return self._error(self.close_status, "close failed")
        reception_id = self.open_receptions.pop(pvz_id, None)
        if reception_id is None:
            return self._error(400, "не удалось закрыть приемку, так как она не найдена или уже закрыта")
        return web.json_response({"id": reception_id, "status": "close"})


class ScriptedRandom:
    """Random source returning queued draws; pauses and choices stay minimal."""

    def __init__(self, *draws: float) -> None:
        self.draws = list(draws)

    def random(self) -> float:
        return self.draws.pop(0) if self.draws else 0.0

    def randint(self, low: int, high: int) -> int:
        return low

    def choice(self, seq):
        return seq[0]


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def service() -> FakePvzService:
    return FakePvzService()


@pytest.fixture
async def server(service: FakePvzService):
    test_server = TestServer(service.app())
    await test_server.start_server()
    yield test_server
    await test_server.close()


@pytest.fixture
def base_url(server: TestServer) -> str:
    return str(server.make_url("/")).rstrip("/")


@pytest.fixture
def sink() -> MetricSink:
    return MetricSink()


@pytest.fixture
async def client(base_url: str, sink: MetricSink):
    async with aiohttp.ClientSession() as session:
        yield PvzClient(session, base_url, sink)


@pytest.fixture
def scripted():
    return ScriptedRandom


@pytest.fixture
def instant_sleep():
    return no_sleep
