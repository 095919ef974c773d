"""aiohttp transport for the PVZ service.

Every call is timed and recorded into the built-in HTTP series. Transport
failures never raise out of ``PvzClient.request``; they come back as a
``Response`` with status 0 and an error label, the same way a dropped
connection shows up in the request metrics.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import aiohttp

from pvz_metrics import HTTP_REQ_DURATION, HTTP_REQ_FAILED, HTTP_REQS, MetricSink

LOGGER = logging.getLogger("pvz_load.client")

# Statuses that do not count towards http_req_failed (400 covers the
# expected reception conflict).
EXPECTED_STATUSES: Tuple[int, int] = (200, 400)


class DecodeError(ValueError):
    """A response body did not contain the expected JSON field."""


@dataclass
class Response:
    method: str
    url: str
    status: int
    body: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0
    error: Optional[str] = None

    @property
    def content_type(self) -> str:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return ""

    def json(self) -> Any:
        """Decode the body, raising ``DecodeError`` for invalid JSON."""

        try:
            return json.loads(self.body)
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"response body is not JSON: {exc}") from exc

    def decode_field(self, name: str, kind: type) -> Tuple[Optional[Any], Optional[DecodeError]]:
        """Return ``(value, None)`` or ``(None, error)`` for a top-level field.

        Strings must be non-empty to count as present.
        """

        try:
            payload = self.json()
        except DecodeError as exc:
            return None, exc
        if not isinstance(payload, dict):
            return None, DecodeError(f"expected a JSON object, got {type(payload).__name__}")
        value = payload.get(name)
        if not isinstance(value, kind):
            return None, DecodeError(f"field '{name}' is missing or not a {kind.__name__}")
        if isinstance(value, str) and not value:
            return None, DecodeError(f"field '{name}' is empty")
        return value, None

    def field_or_none(self, name: str, kind: type) -> Optional[Any]:
        value, _ = self.decode_field(name, kind)
        return value


def _decode_body(raw: bytes, charset: Optional[str]) -> str:
    # Undecodable bytes become U+FFFD so a bad body surfaces as a failed check.
    try:
        return raw.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def bearer_headers(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


class PvzClient:
    """Thin wrapper over one shared ``aiohttp.ClientSession``."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        sink: MetricSink,
        *,
        headers: Optional[Dict[str, str]] = None,
        expected_statuses: Tuple[int, int] = EXPECTED_STATUSES,
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.sink = sink
        self.headers = dict(headers or {})
        self.expected_statuses = expected_statuses

    def _record(self, response: Response) -> None:
        low, high = self.expected_statuses
        failed = response.status == 0 or not low <= response.status <= high
        self.sink.add_counter(HTTP_REQS)
        self.sink.add_trend(HTTP_REQ_DURATION, response.duration_ms)
        self.sink.add_rate(HTTP_REQ_FAILED, failed)

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json_body: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Response:
        url = f"{self.base_url}{path}"
        headers = dict(self.headers)
        if token:
            headers.update(bearer_headers(token))
        else:
            headers.setdefault("Content-Type", "application/json")
        data = json.dumps(json_body) if json_body is not None else None
        kwargs: Dict[str, Any] = {"headers": headers, "data": data, "params": params}
        if timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)

        started = time.perf_counter()
        try:
            async with self.session.request(method, url, **kwargs) as resp:
                raw = await resp.read()
                response = Response(method, url, resp.status, _decode_body(raw, resp.charset), dict(resp.headers))
        except asyncio.TimeoutError:
            response = Response(method, url, 0, error="timeout")
        except aiohttp.ClientError as exc:
            response = Response(method, url, 0, error=exc.__class__.__name__)
        response.duration_ms = (time.perf_counter() - started) * 1000.0

        if response.error is not None:
            LOGGER.warning("%s %s failed: %s", method, url, response.error)
        else:
            LOGGER.debug("%s %s -> %d %.1fms", method, url, response.status, response.duration_ms)
        self._record(response)
        return response

    async def get(self, path: str, **kwargs: Any) -> Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Response:
        return await self.request("POST", path, **kwargs)
