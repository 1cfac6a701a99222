import unittest
from unittest.mock import AsyncMock, patch, MagicMock
import time
from feedin_controller.sensors.grid_meter_reader import GridMeterReader
from aioesphomeapi import SensorInfo, TextSensorInfo


class Msg:
    def __init__(self, key, state):
        self.key = key
        self.state = state


class TestGridMeterReader(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.reader = GridMeterReader(
            host="192.168.1.50",
            port=6053,
            encryption_key="testkey",
            max_age_seconds=30,
        )

    def _import_export_meta(self):
        self.reader._connected = True
        self.reader.meta = {
            1: ("momentary_active_import", "Import", "kW"),
            2: ("momentary_active_export", "Export", "kW"),
        }

    @patch("feedin_controller.sensors.grid_meter_reader.APIClient")
    async def test_connect_discovers_only_sensors(self, MockClient):
        """Only numeric sensors are kept on discovery"""
        mock_client = MockClient.return_value
        mock_client.connect = AsyncMock()
        mock_client.disconnect = AsyncMock()
        mock_client.list_entities_services = AsyncMock(
            return_value=(
                [
                    SensorInfo(key=1, object_id="momentary_active_import", name="Import", unit_of_measurement="kW"),
                    SensorInfo(key=2, object_id="momentary_active_export", name="Export", unit_of_measurement="kW"),
                    TextSensorInfo(key=3, object_id="meter_id", name="Meter"),
                ],
                []
            )
        )
        mock_client.subscribe_states = MagicMock()

        await self.reader.connect()
        self.assertTrue(self.reader.connected)
        self.assertEqual(len(self.reader.meta), 2)
        mock_client.subscribe_states.assert_called_once()

        await self.reader.disconnect()
        self.assertFalse(self.reader.connected)

    async def test_grid_power_is_import_minus_export(self):
        self._import_export_meta()
        now = time.time()
        self.reader.states = {
            1: {"value": 0.0, "last_updated": now},
            2: {"value": 1.2, "last_updated": now},
        }
        self.assertEqual(await self.reader.read_grid_power(), -1200.0)

    async def test_signed_power_entity(self):
        self.reader.power_entity = "grid_power"
        self.reader._connected = True
        self.reader.unit_scale = 1.0
        self.reader.meta = {5: ("grid_power", "Grid", "W")}
        self.reader.states = {5: {"value": 350, "last_updated": time.time()}}
        self.assertEqual(await self.reader.read_grid_power(), 350.0)

    async def test_missing_state_returns_none(self):
        self._import_export_meta()
        self.reader.states = {1: {"value": 0.5, "last_updated": time.time()}}
        self.assertIsNone(await self.reader.read_grid_power())

    async def test_stale_state_returns_none(self):
        self._import_export_meta()
        old = time.time() - 120
        self.reader.states = {
            1: {"value": 0.5, "last_updated": old},
            2: {"value": 0.0, "last_updated": old},
        }
        self.assertIsNone(await self.reader.read_grid_power())

    async def test_not_connected_returns_none(self):
        self.assertIsNone(await self.reader.read_grid_power())

    async def test_on_state_ignores_none_and_nan(self):
        self.reader.meta = {1: ("momentary_active_import", "Import", "kW")}
        self.reader._on_state(Msg(1, None))
        self.assertNotIn(1, self.reader.states)
        self.reader._on_state(Msg(1, float("nan")))
        self.assertNotIn(1, self.reader.states)
        self.reader._on_state(Msg(1, 0.25))
        self.assertEqual(self.reader.states[1]["value"], 0.25)

    async def test_on_state_ignores_unknown_keys(self):
        self.reader._on_state(Msg(42, 1.0))
        self.assertEqual(self.reader.states, {})

    async def test_disconnect_no_client(self):
        self.reader.client = None
        await self.reader.disconnect()  # Should not raise


if __name__ == "__main__":
    unittest.main()
