import asyncio
import logging
from typing import Dict, Optional

import solaredge_modbus

from feedin_controller.exceptions import InverterCommunicationError


class SolarEdgeInverter(solaredge_modbus.Inverter):
    """
    SolarEdge inverter on a Modbus RTU link.

    Power control works through the `active_power_limit` register, which
    holds a percentage (0-100) of the inverter's nominal power. Each call
    connects, performs the transfer and disconnects again, running the
    blocking pymodbus code in the default executor.
    """

    def __init__(
        self,
        device: str = "/dev/ttyUSB0",
        baud: int = 9600,
        timeout: int = 2,
        unit: int = 1,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.logger.info("Initializing SolarEdgeInverter on %s (unit %d)...", device, unit)
        super().__init__(device=device, baud=baud, timeout=timeout, unit=unit)
        self.device_path = device

    # -------------------------
    # Async Connection Helpers
    # -------------------------
    async def check_connection(self) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._sync_check_connection)

    def _sync_check_connection(self) -> bool:
        self.connect()
        try:
            return self.connected()
        finally:
            self.disconnect()

    # -------------------------
    # Async Power Control
    # -------------------------
    async def read_production_limit(self) -> Optional[float]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._sync_read_production_limit)

    def _sync_read_production_limit(self) -> Optional[float]:
        self.connect()
        try:
            if not self.connected():
                raise ConnectionError("Failed to connect to inverter")
            return self.read("active_power_limit").get("active_power_limit")
        finally:
            self.disconnect()

    async def set_production_limit(self, limit: int) -> None:
        if not (0 <= limit <= 100):
            raise ValueError("Limit must be between 0 and 100.")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._sync_set_production_limit, limit)

    def _sync_set_production_limit(self, limit: int) -> None:
        self.connect()
        try:
            if not self.connected():
                raise ConnectionError("Failed to connect to inverter")
            self.write("active_power_limit", limit)
        finally:
            self.disconnect()


def watts_to_percent(watts: float, max_power_w: int) -> int:
    if max_power_w <= 0:
        return 0
    return max(0, min(100, int(round(100.0 * watts / max_power_w))))


class SolarEdgeLimitPort:
    """
    Watt-based limit transport over one or more SolarEdge inverters.

    Limits are converted to and from the percentage register using each
    inverter's configured maximum power, so commanded values are quantised
    to 1 % steps. Inverters that share a serial device are accessed one at
    a time.
    """

    def __init__(self, inverters: Dict[str, SolarEdgeInverter], max_power_w: Dict[str, int]) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.inverters = inverters
        self.max_power_w = max_power_w
        self._bus_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, inverter: SolarEdgeInverter) -> asyncio.Lock:
        return self._bus_locks.setdefault(inverter.device_path, asyncio.Lock())

    def _inverter(self, inverter_id: str) -> SolarEdgeInverter:
        try:
            return self.inverters[inverter_id]
        except KeyError:
            raise InverterCommunicationError("no SolarEdge inverter configured", inverter_id) from None

    async def check_connection(self) -> bool:
        ok = True
        for inverter_id, inverter in self.inverters.items():
            async with self._lock_for(inverter):
                if not await inverter.check_connection():
                    self.logger.error("SolarEdge inverter %s not reachable", inverter_id)
                    ok = False
        return ok

    async def read_limit(self, inverter_id: str) -> Optional[float]:
        inverter = self._inverter(inverter_id)
        async with self._lock_for(inverter):
            percent = await inverter.read_production_limit()
        if percent is None:
            return None
        return round(float(percent) * self.max_power_w[inverter_id] / 100.0, 1)

    async def write_limit(self, inverter_id: str, watts: int) -> None:
        inverter = self._inverter(inverter_id)
        percent = watts_to_percent(watts, self.max_power_w[inverter_id])
        self.logger.debug("Setting %s to %d %% (%d W)", inverter_id, percent, watts)
        async with self._lock_for(inverter):
            await inverter.set_production_limit(percent)

    async def close(self) -> None:
        # Connections are opened per transfer, nothing to release
        return None
