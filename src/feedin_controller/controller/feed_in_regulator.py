import logging
import time
from typing import Any, Callable, Sequence

from feedin_controller.controller.distribution_planner import plan_distribution
from feedin_controller.controller.gates import DecreaseHysteresisGate, SignificanceGate
from feedin_controller.controller.limit_io import LimitPort, apply_plan, read_limit_snapshots
from feedin_controller.controller.models import InverterSpec, TickOutcome, TickResult, coerce_watts


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class FeedInRegulator:
    """
    Closed-loop feed-in regulator for a fixed set of inverters.

    Each call to `evaluate` runs one control tick to completion:
    snapshot the current limits, plan an equal split of the new aggregate
    limit, gate it on significance (and on the decrease cooldown for
    decreases), then write the changed limits.

    The caller owns scheduling and must not overlap calls to `evaluate`.
    The only state kept between ticks is the decrease gate's timestamp.
    """

    def __init__(
        self,
        inverters: Sequence[InverterSpec],
        port: LimitPort,
        target_feed_in_w: float = -800.0,
        threshold_w: float = 100.0,
        evaluation_period_ms: float = 10000.0,
        decrease_delay_factor: float = 3.0,
        import_includes_target: bool = False,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        if not inverters:
            raise ValueError("At least one inverter is required")

        self.logger = logging.getLogger(self.__class__.__name__)
        self.inverters: tuple[InverterSpec, ...] = tuple(inverters)
        self.registry = {inv.id: inv for inv in self.inverters}
        if len(self.registry) != len(self.inverters):
            raise ValueError("Inverter ids must be unique")

        self.port = port
        self.target_feed_in_w = target_feed_in_w
        self.import_includes_target = import_includes_target
        self.clock = clock

        self.significance_gate = SignificanceGate(threshold_w)
        self.decrease_gate = DecreaseHysteresisGate(evaluation_period_ms, decrease_delay_factor)

    async def evaluate(self, grid_power: Any) -> TickResult:
        grid_power_w = coerce_watts(grid_power)
        if grid_power_w is None:
            self.logger.warning(f"Invalid or missing grid power value: {grid_power!r}, skipping tick")
            return TickResult(outcome=TickOutcome.NO_TELEMETRY)

        snapshots = await read_limit_snapshots(self.port, self.inverters)
        if not snapshots:
            self.logger.warning("Could not read current power limits from any inverter")
            return TickResult(outcome=TickOutcome.NO_SNAPSHOT, grid_power_w=grid_power_w)

        plan = plan_distribution(
            grid_power_w,
            snapshots,
            self.registry,
            self.target_feed_in_w,
            self.import_includes_target,
        )
        change = abs(plan.delta_w)

        if not self.significance_gate.is_significant(plan):
            self.logger.debug(
                f"Limit change of {change:g} W is below threshold of "
                f"{self.significance_gate.threshold_w:g} W, nothing to do"
            )
            return TickResult(outcome=TickOutcome.BELOW_THRESHOLD, grid_power_w=grid_power_w, plan=plan)

        if plan.is_decrease:
            now = self.clock()
            if not self.decrease_gate.try_admit(now):
                remaining = self.decrease_gate.remaining_ms(now)
                self.logger.debug(
                    f"Decrease of {change:g} W needed but delaying for {remaining / 1000.0:.1f}s "
                    "to avoid premature reduction"
                )
                return TickResult(
                    outcome=TickOutcome.DECREASE_COOLDOWN,
                    grid_power_w=grid_power_w,
                    plan=plan,
                    cooldown_remaining_ms=remaining,
                )
            self.logger.debug(f"Total inverter limit decreases by {change:g} W, adjusting limits")
        else:
            self.logger.debug(f"Total inverter limit increases by {change:g} W, adjusting limits")

        report = await apply_plan(self.port, plan, self.registry)
        self.logger.debug(f"Applied new power limits, total: {plan.total_new_w} W")

        return TickResult(
            outcome=TickOutcome.APPLIED,
            grid_power_w=grid_power_w,
            plan=plan,
            actuation=report,
        )
