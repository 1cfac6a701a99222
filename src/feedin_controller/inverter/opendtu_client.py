import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from feedin_controller.exceptions import InverterCommunicationError

# OpenDTU limit_type for an absolute limit in W that is not stored in flash
LIMIT_ABSOLUTE_NONPERSISTENT = 0

# Reads of all inverters in one tick share a single /api/limit/status response
LIMIT_STATUS_MAX_AGE_SECONDS = 1.0


def absolute_limit_from_status(status: Dict[str, Any]) -> Optional[float]:
    """
    Convert one entry of /api/limit/status to an absolute limit in watts.

    OpenDTU reports the limit as a percentage of the inverter's nominal
    power. Returns None when either value is missing or the nominal power
    is unknown (reported as 0).
    """
    try:
        relative = float(status["limit_relative"])
        max_power = float(status["max_power"])
    except (KeyError, TypeError, ValueError):
        return None
    if max_power <= 0:
        return None
    return round(relative * max_power / 100.0, 1)


class OpenDTUClient:
    """
    Limit transport for Hoymiles micro-inverters behind an OpenDTU.

    One client serves every inverter attached to the DTU; inverters are
    addressed by their serial number. The HTTP session is created lazily
    and reused between ticks. Request deadlines are enforced here through
    the session timeout.
    """

    def __init__(
        self,
        host: str,
        port: int = 80,
        username: str = "admin",
        password: str = "",
        timeout: float = 5.0,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.base_url = f"http://{host}:{port}"
        self.auth = aiohttp.BasicAuth(username, password)
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._limit_status: Optional[asyncio.Future] = None
        self._limit_status_at = 0.0

    # -------------------------
    # Session handling
    # -------------------------
    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self._limit_status = None

    async def _get_json(self, path: str) -> Any:
        session = self._get_session()
        async with session.get(f"{self.base_url}{path}", auth=self.auth) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

    async def _post_form(self, path: str, data: Dict[str, str]) -> Any:
        session = self._get_session()
        async with session.post(f"{self.base_url}{path}", data=data, auth=self.auth) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

    async def _get_limit_status(self) -> Any:
        # Concurrent readers await the same in-flight request
        now = time.monotonic()
        if (
            self._limit_status is None
            or (self._limit_status.done() and now - self._limit_status_at > LIMIT_STATUS_MAX_AGE_SECONDS)
        ):
            self._limit_status_at = now
            self._limit_status = asyncio.ensure_future(self._get_json("/api/limit/status"))
        return await asyncio.shield(self._limit_status)

    # -------------------------
    # Public API
    # -------------------------
    async def check_connection(self) -> bool:
        try:
            await self._get_json("/api/system/status")
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.error("OpenDTU at %s not reachable: %s", self.base_url, exc)
            return False

    async def read_limit(self, inverter_id: str) -> Optional[float]:
        try:
            data = await self._get_limit_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise InverterCommunicationError(f"limit status request failed: {exc}", inverter_id) from exc

        if not isinstance(data, dict) or inverter_id not in data:
            return None
        return absolute_limit_from_status(data[inverter_id])

    async def write_limit(self, inverter_id: str, watts: int) -> None:
        payload = {
            "serial": inverter_id,
            "limit_type": LIMIT_ABSOLUTE_NONPERSISTENT,
            "limit_value": int(watts),
        }
        try:
            result = await self._post_form("/api/limit/config", {"data": json.dumps(payload)})
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise InverterCommunicationError(f"limit request failed: {exc}", inverter_id) from exc

        # The next read must see the new limit
        self._limit_status = None

        if not isinstance(result, dict) or result.get("type") != "success":
            message = result.get("message") if isinstance(result, dict) else result
            raise InverterCommunicationError(f"OpenDTU rejected limit: {message}", inverter_id)
