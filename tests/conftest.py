import pytest

from feedin_controller.controller.models import InverterSpec


class FakeLimitPort:
    """In-memory limit transport recording every write."""

    def __init__(self, limits=None, read_errors=None, write_errors=None):
        self.limits = dict(limits or {})
        self.read_errors = dict(read_errors or {})
        self.write_errors = dict(write_errors or {})
        self.reads = []
        self.writes = []

    async def read_limit(self, inverter_id):
        self.reads.append(inverter_id)
        if inverter_id in self.read_errors:
            raise self.read_errors[inverter_id]
        return self.limits.get(inverter_id)

    async def write_limit(self, inverter_id, watts):
        self.writes.append((inverter_id, watts))
        if inverter_id in self.write_errors:
            raise self.write_errors[inverter_id]
        self.limits[inverter_id] = watts


@pytest.fixture
def two_inverters():
    return [
        InverterSpec(id="inv1", max_power_w=2250, name="Garage"),
        InverterSpec(id="inv2", max_power_w=2250, name="Balcony"),
    ]


@pytest.fixture
def fake_port():
    return FakeLimitPort(limits={"inv1": 1000, "inv2": 1000})


class FakeClock:
    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_port():
    return FakeLimitPort
