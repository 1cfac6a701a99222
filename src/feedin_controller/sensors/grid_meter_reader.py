import asyncio
import logging
import math
import time
from typing import Any, Optional

from aioesphomeapi import APIClient, APIConnectionError, SensorInfo


class GridMeterReader:
    def __init__(
        self,
        host: str,
        port: int,
        encryption_key: str,
        power_entity: str = "",
        import_entity: str = "momentary_active_import",
        export_entity: str = "momentary_active_export",
        unit_scale: float = 1000.0,
        max_age_seconds: float = 30.0,
        reconnect_delay: float = 5.0,
        stale_timeout: float = 30.0,
    ):
        """
        Grid power telemetry from an ESPHome smart-meter reader.

        Keeps a persistent connection to the ESPHome device, subscribes to
        its sensor states and turns the latest values into one signed grid
        power sample (positive = import, negative = export).

        Parameters
        ----------
        host, port, encryption_key :
            ESPHome native API endpoint and Noise encryption key.

        power_entity : str
            object_id of a signed grid power sensor. When empty, grid power
            is computed as import minus export from `import_entity` and
            `export_entity`.

        unit_scale : float
            Factor converting the sensor unit to watts (1000 for kW).

        max_age_seconds : float
            Samples older than this are treated as unavailable.

        stale_timeout : float
            Seconds without any state update before the watchdog reconnects.
        """
        self.host = host
        self.port = port
        self.encryption_key = encryption_key
        self.power_entity = power_entity
        self.import_entity = import_entity
        self.export_entity = export_entity
        self.unit_scale = float(unit_scale)
        self.max_age_seconds = float(max_age_seconds)
        self.reconnect_delay = reconnect_delay

        self.client: APIClient | None = None
        # key -> (object_id, name, unit)
        self.meta: dict[int, tuple[str, str, str]] = {}
        self.states: dict[int, dict[str, Any]] = {}

        self._connected = False
        self._connecting_lock = asyncio.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

        self._stale_timeout = float(stale_timeout)
        self._last_rx_monotonic: float | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._reconnect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._connected

    # ---------- INTERNAL CALLBACK ----------
    def _on_state(self, msg: Any) -> None:
        self._last_rx_monotonic = time.monotonic()

        key = getattr(msg, "key", None)
        if key not in self.meta:
            return

        value = getattr(msg, "state", None)
        if value is None or (isinstance(value, float) and math.isnan(value)):
            return

        self.states[key] = {"value": value, "last_updated": time.time()}

    # ---------- WATCHDOG ----------
    def _ensure_watchdog(self) -> None:
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.create_task(self._watchdog_loop())

    def _is_stale(self) -> bool:
        last = self._last_rx_monotonic
        return last is not None and (time.monotonic() - last) > self._stale_timeout

    async def _watchdog_loop(self) -> None:
        poll_s = max(1.0, min(2.0, self._stale_timeout / 10.0))

        while True:
            await asyncio.sleep(poll_s)
            if not self._connected or not self._is_stale():
                continue

            async with self._reconnect_lock:
                if not self._connected or not self._is_stale():
                    continue
                self.logger.warning(
                    "Grid meter stream stale (no updates for > %.1fs). Reconnecting...",
                    self._stale_timeout,
                )
                await self._reconnect_once()

    async def _reconnect_once(self) -> None:
        await self._close_client()
        while not self._connected:
            try:
                await self.connect()
            except APIConnectionError as e:
                self.logger.warning("Reconnect failed, retrying in %ss: %s", self.reconnect_delay, e)
                await asyncio.sleep(self.reconnect_delay)

    # ---------- CONNECTION MANAGEMENT ----------
    async def connect(self) -> None:
        async with self._connecting_lock:
            if self._connected:
                return

            self.logger.info("Connecting to grid meter at %s:%d...", self.host, self.port)
            self.client = APIClient(
                self.host,
                self.port,
                password="",
                noise_psk=self.encryption_key or None,
            )

            try:
                await self.client.connect(login=True)
                await self._discover_entities()
                self.client.subscribe_states(self._on_state)

                self._connected = True
                self._last_rx_monotonic = time.monotonic()
                self._ensure_watchdog()

                self.logger.info("Connected. Discovered %d sensors.", len(self.meta))
            except APIConnectionError:
                self._connected = False
                self.logger.error("Grid meter connection failed")
                raise

    async def _close_client(self) -> None:
        if self.client:
            self.logger.info("Disconnecting from grid meter")
            await self.client.disconnect()
            self.client = None
        self._connected = False
        self._last_rx_monotonic = None

    async def disconnect(self) -> None:
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None
        await self._close_client()

    async def _discover_entities(self) -> None:
        entities, _ = await self.client.list_entities_services()
        self.meta.clear()
        self.states.clear()

        for ent in entities:
            if isinstance(ent, SensorInfo):
                self.meta[ent.key] = (ent.object_id, ent.name, ent.unit_of_measurement or "")

        if not self.meta:
            raise RuntimeError("No ESPHome sensors found on grid meter")

        wanted = [self.power_entity] if self.power_entity else [self.import_entity, self.export_entity]
        known = {obj_id for obj_id, _, _ in self.meta.values()}
        for obj_id in wanted:
            if obj_id not in known:
                self.logger.warning("Grid meter has no sensor %r", obj_id)

    # ---------- PUBLIC API ----------
    async def ensure_connected(self) -> None:
        while not self._connected:
            try:
                await self.connect()
            except APIConnectionError as e:
                self.logger.warning(f"Retrying grid meter connection in {self.reconnect_delay}s: {e}")
                await asyncio.sleep(self.reconnect_delay)

    def _latest_watts(self, object_id: str) -> Optional[float]:
        key = next((k for k, v in self.meta.items() if v[0] == object_id), None)
        if key is None:
            return None

        state = self.states.get(key)
        if state is None:
            return None

        if time.time() - state["last_updated"] > self.max_age_seconds:
            self.logger.debug("Sensor %s is older than %.0fs, ignoring", object_id, self.max_age_seconds)
            return None

        value = state["value"]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value) * self.unit_scale

    async def read_grid_power(self) -> Optional[float]:
        """Latest signed grid power in W, or None when no fresh sample is available."""
        if not self._connected:
            self.logger.warning("Grid meter not connected")
            return None

        if self.power_entity:
            return self._latest_watts(self.power_entity)

        imported = self._latest_watts(self.import_entity)
        exported = self._latest_watts(self.export_entity)
        if imported is None or exported is None:
            return None
        return imported - exported
