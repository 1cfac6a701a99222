from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
import os
from typing import Any, Optional

import confuse

from feedin_controller.exceptions import ConfigError
from feedin_controller.logger import setup_logger

CONFIG_ENV_VAR = "FEEDIN_CONTROLLER_CONFIG"

SUPPORTED_BACKENDS = ("opendtu", "solaredge")

DEFAULT_MAX_POWER_W = 2250
DEFAULT_POLLING_INTERVAL_MS = 10000
MIN_POLLING_INTERVAL_MS = 1000
DEFAULT_THRESHOLD_W = 100.0
MIN_THRESHOLD_W = 50.0
DEFAULT_TARGET_FEED_IN_W = -800.0

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GridMeterConfig:
    host: str
    port: int
    encryption_key: str
    power_entity: str
    import_entity: str
    export_entity: str
    unit_scale: float
    max_age_seconds: float


@dataclass(frozen=True)
class OpenDTUConfig:
    host: str
    port: int
    username: str
    password: str
    timeout_seconds: float


@dataclass(frozen=True)
class InverterConfig:
    id: str
    max_power_w: int
    name: Optional[str] = None
    # Modbus RTU settings, only used by the solaredge backend
    device: str = "/dev/ttyUSB0"
    baud: int = 9600
    timeout: int = 2
    unit: int = 1


@dataclass(frozen=True)
class ControlConfig:
    target_feed_in_w: float = DEFAULT_TARGET_FEED_IN_W
    threshold_w: float = DEFAULT_THRESHOLD_W
    polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS
    decrease_delay_factor: float = 3.0
    import_includes_target: bool = False


@dataclass(frozen=True)
class AppConfig:
    grid_meter: GridMeterConfig
    inverter_backend: str
    opendtu: OpenDTUConfig
    inverters: tuple[InverterConfig, ...]
    control: ControlConfig = field(default_factory=ControlConfig)
    debug_level: str = "INFO"

    # API server settings
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_token: str = ""


def _cfg_get(cfg: confuse.Configuration, path: list[str], typ: Any, default: Any) -> Any:
    node = cfg
    try:
        for key in path:
            node = node[key]
        return node.get() if typ is None else node.get(typ)
    except Exception:
        return default


def _as_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) or math.isinf(number) else number


# -------------------------
# Validation / normalisation
# -------------------------
def normalize_max_power(raw: Any, label: str) -> int:
    value = _as_number(raw)
    if value is None:
        log.warning("%s has no max power configured, using default %dW", label, DEFAULT_MAX_POWER_W)
        return DEFAULT_MAX_POWER_W
    if value > DEFAULT_MAX_POWER_W:
        log.warning("%s max power exceeded %dW limit, clamped to %dW", label, DEFAULT_MAX_POWER_W, DEFAULT_MAX_POWER_W)
        return DEFAULT_MAX_POWER_W
    if value < 0:
        log.warning("%s has invalid max power, using default %dW", label, DEFAULT_MAX_POWER_W)
        return DEFAULT_MAX_POWER_W
    return int(value)


def validate_rated_power(raw: Any, label: str, errors: list[str]) -> int:
    """Nominal power of a SolarEdge inverter; the percentage limit is relative to it."""
    value = _as_number(raw)
    if value is None or value <= 0:
        errors.append(f"{label} needs MAX_POWER_W set to the inverter's nominal power!")
        return 0
    return int(value)


def parse_inverters(
    raw_inverters: Any, errors: list[str], backend: str = "opendtu"
) -> tuple[InverterConfig, ...]:
    if not isinstance(raw_inverters, list) or not raw_inverters:
        errors.append("No inverters configured!")
        return ()

    inverters: list[InverterConfig] = []
    seen: set[str] = set()
    for i, item in enumerate(raw_inverters):
        label = f"Inverter {i + 1}"
        if not isinstance(item, dict):
            errors.append(f"{label} is not a mapping!")
            continue

        raw_id = item.get("ID")
        if raw_id is None or str(raw_id).strip() == "":
            errors.append(f"{label} has no inverter id configured!")
            continue
        inverter_id = str(raw_id).strip()
        if inverter_id in seen:
            errors.append(f"{label} reuses inverter id {inverter_id}!")
            continue
        seen.add(inverter_id)

        if backend == "solaredge":
            max_power_w = validate_rated_power(item.get("MAX_POWER_W"), label, errors)
        else:
            max_power_w = normalize_max_power(item.get("MAX_POWER_W"), label)

        name = item.get("NAME")
        inverters.append(
            InverterConfig(
                id=inverter_id,
                name=str(name) if name else None,
                max_power_w=max_power_w,
                device=str(item.get("DEVICE", "/dev/ttyUSB0")),
                baud=int(item.get("BAUD", 9600)),
                timeout=int(item.get("TIMEOUT", 2)),
                unit=int(item.get("UNIT", 1)),
            )
        )
    return tuple(inverters)


def normalize_control(
    target_feed_in_w: Any,
    threshold_w: Any,
    polling_interval_ms: Any,
    decrease_delay_factor: Any = 3.0,
    import_includes_target: bool = False,
) -> ControlConfig:
    polling = _as_number(polling_interval_ms)
    if polling is None or polling < MIN_POLLING_INTERVAL_MS:
        log.warning("Invalid polling interval, using default of %dms", DEFAULT_POLLING_INTERVAL_MS)
        polling = DEFAULT_POLLING_INTERVAL_MS

    threshold = _as_number(threshold_w)
    if not threshold or threshold < MIN_THRESHOLD_W:
        log.warning("Invalid inverter limit change threshold, using default of %gW", DEFAULT_THRESHOLD_W)
        threshold = DEFAULT_THRESHOLD_W

    target = _as_number(target_feed_in_w)
    if target is None or target > 0:
        log.warning("Invalid target feed-in, using default of %gW", DEFAULT_TARGET_FEED_IN_W)
        target = DEFAULT_TARGET_FEED_IN_W

    factor = _as_number(decrease_delay_factor)
    if factor is None or factor < 0:
        log.warning("Invalid decrease delay factor, using default of 3")
        factor = 3.0

    return ControlConfig(
        target_feed_in_w=target,
        threshold_w=threshold,
        polling_interval_ms=int(polling),
        decrease_delay_factor=factor,
        import_includes_target=bool(import_includes_target),
    )


# -------------------------
# Loading
# -------------------------
def load_config(config_file: Optional[str] = None) -> AppConfig:
    config_file = config_file or os.environ.get(CONFIG_ENV_VAR, "config.yaml")
    cfg = confuse.Configuration("feedin_controller", __name__)
    cfg.set_file(config_file)

    # --- Configure logging first so validation warnings are visible ---
    debug_level = _cfg_get(cfg, ["DEBUG_LEVEL"], str, "INFO")
    setup_logger(debug_level)

    errors: list[str] = []

    grid_meter = GridMeterConfig(
        host=_cfg_get(cfg, ["GRID_METER", "HOST"], str, ""),
        port=_cfg_get(cfg, ["GRID_METER", "PORT"], int, 6053),
        encryption_key=_cfg_get(cfg, ["GRID_METER", "ENCRYPTION_KEY"], str, ""),
        power_entity=_cfg_get(cfg, ["GRID_METER", "POWER_ENTITY"], str, ""),
        import_entity=_cfg_get(cfg, ["GRID_METER", "IMPORT_ENTITY"], str, "momentary_active_import"),
        export_entity=_cfg_get(cfg, ["GRID_METER", "EXPORT_ENTITY"], str, "momentary_active_export"),
        unit_scale=_cfg_get(cfg, ["GRID_METER", "UNIT_SCALE"], float, 1000.0),
        max_age_seconds=_cfg_get(cfg, ["GRID_METER", "MAX_AGE_SECONDS"], float, 30.0),
    )
    if not grid_meter.host:
        errors.append("No grid meter host configured!")
    if not grid_meter.power_entity and not (grid_meter.import_entity and grid_meter.export_entity):
        errors.append("Grid meter needs POWER_ENTITY or both IMPORT_ENTITY and EXPORT_ENTITY!")

    backend = _cfg_get(cfg, ["INVERTER_BACKEND"], str, "opendtu").lower()
    if backend not in SUPPORTED_BACKENDS:
        errors.append(f"Unknown inverter backend {backend!r}, expected one of {', '.join(SUPPORTED_BACKENDS)}")

    opendtu = OpenDTUConfig(
        host=_cfg_get(cfg, ["OPENDTU", "HOST"], str, ""),
        port=_cfg_get(cfg, ["OPENDTU", "PORT"], int, 80),
        username=_cfg_get(cfg, ["OPENDTU", "USERNAME"], str, "admin"),
        password=_cfg_get(cfg, ["OPENDTU", "PASSWORD"], str, ""),
        timeout_seconds=_cfg_get(cfg, ["OPENDTU", "TIMEOUT_SECONDS"], float, 5.0),
    )
    if backend == "opendtu" and not opendtu.host:
        errors.append("No OpenDTU host configured!")

    inverters = parse_inverters(_cfg_get(cfg, ["INVERTERS"], list, []), errors, backend)

    control = normalize_control(
        target_feed_in_w=_cfg_get(cfg, ["CONTROL", "TARGET_FEED_IN_W"], None, None),
        threshold_w=_cfg_get(cfg, ["CONTROL", "THRESHOLD_W"], None, None),
        polling_interval_ms=_cfg_get(cfg, ["CONTROL", "POLLING_INTERVAL_MS"], None, None),
        decrease_delay_factor=_cfg_get(cfg, ["CONTROL", "DECREASE_DELAY_FACTOR"], None, 3.0),
        import_includes_target=_cfg_get(cfg, ["CONTROL", "IMPORT_INCLUDES_TARGET"], bool, False),
    )

    if errors:
        for error in errors:
            log.error(error)
        raise ConfigError(errors)

    return AppConfig(
        grid_meter=grid_meter,
        inverter_backend=backend,
        opendtu=opendtu,
        inverters=inverters,
        control=control,
        debug_level=debug_level,
        api_host=_cfg_get(cfg, ["API", "HOST"], str, "0.0.0.0"),
        api_port=_cfg_get(cfg, ["API", "PORT"], int, 8080),
        api_token=_cfg_get(cfg, ["API", "TOKEN"], str, ""),
    )
