from typing import Union

from feedin_controller.config import AppConfig
from feedin_controller.controller.models import InverterSpec
from feedin_controller.inverter.opendtu_client import OpenDTUClient
from feedin_controller.inverter.solaredge_inverter import SolarEdgeInverter, SolarEdgeLimitPort


def create_inverter_specs(config: AppConfig) -> list[InverterSpec]:
    return [InverterSpec(id=inv.id, max_power_w=inv.max_power_w, name=inv.name) for inv in config.inverters]


def create_limit_port(config: AppConfig) -> Union[OpenDTUClient, SolarEdgeLimitPort]:
    """
    Instantiate the limit transport for the configured inverter backend.
    """
    if config.inverter_backend == "solaredge":
        inverters = {
            inv.id: SolarEdgeInverter(device=inv.device, baud=inv.baud, timeout=inv.timeout, unit=inv.unit)
            for inv in config.inverters
        }
        return SolarEdgeLimitPort(inverters, {inv.id: inv.max_power_w for inv in config.inverters})

    return OpenDTUClient(
        host=config.opendtu.host,
        port=config.opendtu.port,
        username=config.opendtu.username,
        password=config.opendtu.password,
        timeout=config.opendtu.timeout_seconds,
    )
