"""One-time session bootstrap: role tokens and the shared baseline PVZ."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from pvz_client import PvzClient, Response

LOGGER = logging.getLogger("pvz_load.session")

BASE_PVZ_CITY = "Казань"
CREATE_RETRY_DELAY = 0.5
SETUP_TIMEOUT = 30.0


class BootstrapError(RuntimeError):
    """Shared session state could not be established; the run must not start."""


@dataclass(frozen=True)
class SessionData:
    moderator_token: Optional[str]
    employee_token: Optional[str]
    base_pvz_id: Optional[str]

    @property
    def complete(self) -> bool:
        return bool(self.moderator_token and self.employee_token and self.base_pvz_id)


def _describe(response: Response) -> str:
    if response.error is not None:
        return f"Error: {response.error}"
    return f"Status: {response.status}, Body: {response.body}"


async def login(client: PvzClient, role: str, *, timeout: float = SETUP_TIMEOUT) -> str:
    response = await client.post("/dummyLogin", json_body={"role": role}, timeout=timeout)
    token = response.field_or_none("token", str) if response.status == 200 else None
    if token is None:
        raise BootstrapError(f"Setup: Failed to get {role} token. {_describe(response)}")
    LOGGER.info("%s token obtained.", role.capitalize())
    return token


async def create_base_pvz(
    client: PvzClient,
    moderator_token: str,
    *,
    city: str = BASE_PVZ_CITY,
    timeout: float = SETUP_TIMEOUT,
    retry_delay: float = CREATE_RETRY_DELAY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Create the baseline PVZ, retrying exactly once after a short pause."""

    response = None
    for attempt in (1, 2):
        if attempt == 2:
            LOGGER.warning("Setup: base PVZ creation failed (%s), retrying once", _describe(response))
            await sleep(retry_delay)
        response = await client.post("/pvz", token=moderator_token, json_body={"city": city}, timeout=timeout)
        pvz_id = response.field_or_none("id", str) if response.status == 201 else None
        if pvz_id is not None:
            LOGGER.info("Setup: Base PVZ created with ID: %s (attempt %d)", pvz_id, attempt)
            return pvz_id
    raise BootstrapError(f"Setup: Failed to create base PVZ. {_describe(response)}")


async def bootstrap(
    client: PvzClient,
    *,
    timeout: float = SETUP_TIMEOUT,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SessionData:
    """Acquire both role tokens and the baseline PVZ, or raise ``BootstrapError``."""

    LOGGER.info("Running setup...")
    try:
        moderator_token = await login(client, "moderator", timeout=timeout)
        employee_token = await login(client, "employee", timeout=timeout)
        base_pvz_id = await create_base_pvz(client, moderator_token, timeout=timeout, sleep=sleep)
    except BootstrapError:
        raise
    except Exception as exc:
        raise BootstrapError(f"Setup aborted: {exc}") from exc
    LOGGER.info("Setup finished.")
    return SessionData(moderator_token, employee_token, base_pvz_id)
