from feedin_controller.sensors.grid_meter_reader import GridMeterReader
from feedin_controller.config import GridMeterConfig


def create_sensor(config: GridMeterConfig) -> GridMeterReader:
    """Instantiate the configured grid meter reader."""
    return GridMeterReader(
        host=config.host,
        port=config.port,
        encryption_key=config.encryption_key,
        power_entity=config.power_entity,
        import_entity=config.import_entity,
        export_entity=config.export_entity,
        unit_scale=config.unit_scale,
        max_age_seconds=config.max_age_seconds,
    )
