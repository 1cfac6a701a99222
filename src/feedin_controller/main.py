import asyncio
import logging
import signal

from feedin_controller.config import load_config
from feedin_controller.server import start_server, update_status
from feedin_controller.factories.sensor_factory import create_sensor
from feedin_controller.factories.inverter_factory import create_inverter_specs, create_limit_port
from feedin_controller.controller.feed_in_regulator import FeedInRegulator
from feedin_controller.controller.models import TickOutcome


async def main(stop_event: asyncio.Event | None = None):
    """
    Main async loop for the feed-in controller.

    One tick per polling interval: read the grid power, let the regulator
    evaluate it, publish the outcome. The next tick is scheduled only after
    the previous one has completed, so ticks never overlap.
    """
    # Only register OS signals if no stop_event was provided (i.e., production)
    if stop_event is None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

    # Load config (logger configured automatically)
    config = load_config()
    control = config.control

    # Create instances using factories
    reader = create_sensor(config.grid_meter)
    port = create_limit_port(config)
    inverters = create_inverter_specs(config)
    regulator = FeedInRegulator(
        inverters,
        port,
        target_feed_in_w=control.target_feed_in_w,
        threshold_w=control.threshold_w,
        evaluation_period_ms=control.polling_interval_ms,
        decrease_delay_factor=control.decrease_delay_factor,
        import_includes_target=control.import_includes_target,
    )

    logging.info(f"Grid meter: {config.grid_meter.host}:{config.grid_meter.port}")
    logging.info(f"Inverter backend: {config.inverter_backend}, number of inverters: {len(inverters)}")
    for i, inv in enumerate(inverters):
        logging.info(f"Inverter {i + 1} ({inv.display_name}): max {inv.max_power_w} W")
    logging.info(f"Polling interval: {control.polling_interval_ms}ms")
    logging.info(f"Inverter limit change threshold: {control.threshold_w:g}W")
    logging.info(f"Target feed-in: {control.target_feed_in_w:g}W")

    # Start HTTP status server
    runner = await start_server(config)

    interval_s = control.polling_interval_ms / 1000.0
    i = 0
    try:
        # Connect to devices; retries until the grid meter answers
        await reader.ensure_connected()
        if not await port.check_connection():
            logging.warning("Inverter transport not reachable at startup, will keep retrying every tick.")

        while not stop_event.is_set():
            try:
                grid_power = await reader.read_grid_power()
                result = await regulator.evaluate(grid_power)
            except Exception as e:
                logging.exception("Error in control tick: %s", e)
            else:
                update_status(result)
                if result.outcome is TickOutcome.APPLIED:
                    logging.info(
                        f"Cycle {i + 1}: Grid={result.grid_power_w:g} W, "
                        f"new total limit={result.aggregate_limit_w} W"
                    )
                else:
                    logging.debug(f"Cycle {i + 1}: {result.outcome.value}, Grid={result.grid_power_w} W")

            i += 1
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                pass

    finally:
        logging.info("Shutting down, disconnecting devices...")
        await reader.disconnect()
        await port.close()
        await runner.cleanup()
        logging.info("Shutdown complete.")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nFeed-in controller stopped by user.")


if __name__ == "__main__":
    run()
