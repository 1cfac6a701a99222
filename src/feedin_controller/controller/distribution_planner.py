import logging
import math
from typing import Mapping, Sequence

from feedin_controller.controller.models import InverterSpec, LimitSnapshot, Plan, PlannedLimit

log = logging.getLogger(__name__)


def aggregate_target(
    grid_power_w: float,
    total_old_w: float,
    target_feed_in_w: float,
    import_includes_target: bool = False,
) -> float:
    """
    Compute the raw (pre-split, pre-clamp) aggregate limit.

    grid_power_w is signed: positive while importing from the grid,
    negative while feeding in. target_feed_in_w uses the same convention,
    so a target of -800 means "export up to 800 W".
    """
    if grid_power_w >= 0:
        # Importing: raise output to absorb the import
        if import_includes_target:
            return total_old_w + grid_power_w - target_feed_in_w
        return total_old_w + grid_power_w

    # Exporting: excess is negative when we export more than the target
    excess = grid_power_w - target_feed_in_w
    return max(0.0, total_old_w + excess)


def plan_distribution(
    grid_power_w: float,
    snapshots: Sequence[LimitSnapshot],
    registry: Mapping[str, InverterSpec],
    target_feed_in_w: float,
    import_includes_target: bool = False,
) -> Plan:
    """
    Split a new aggregate limit equally over the inverters that were read
    this tick and clamp every share to the inverter's capacity.

    The plan total is the post-clamp sum. Power lost to clamping is not
    handed to the other inverters.
    """
    if not snapshots:
        raise ValueError("Cannot plan a distribution without limit snapshots")

    total_old = sum(s.current_limit_w for s in snapshots)
    total_target_raw = aggregate_target(grid_power_w, total_old, target_feed_in_w, import_includes_target)
    per_device = math.floor(total_target_raw / len(snapshots))

    per_inverter = []
    for snap in snapshots:
        spec = registry.get(snap.inverter_id)
        if spec is None:
            raise ValueError(f"Snapshot for unknown inverter {snap.inverter_id}")

        new_w = max(0, min(per_device, spec.max_power_w))
        if new_w < per_device:
            log.debug(
                "%s clamped from %d W to its maximum of %d W",
                spec.display_name, per_device, spec.max_power_w,
            )
        per_inverter.append(
            PlannedLimit(
                inverter_id=snap.inverter_id,
                old_w=snap.current_limit_w,
                new_w=new_w,
                max_power_w=spec.max_power_w,
            )
        )

    return Plan(
        total_old_w=total_old,
        total_new_w=sum(p.new_w for p in per_inverter),
        per_inverter=tuple(per_inverter),
    )
