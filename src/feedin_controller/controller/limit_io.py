import asyncio
import logging
from typing import Any, Mapping, Optional, Protocol, Sequence

from feedin_controller.controller.models import (
    ActuationReport,
    InverterSpec,
    LimitSnapshot,
    Plan,
    coerce_watts,
)

log = logging.getLogger(__name__)


class LimitPort(Protocol):
    """Transport used to read and command per-inverter power limits (W)."""

    async def read_limit(self, inverter_id: str) -> Optional[float]: ...

    async def write_limit(self, inverter_id: str, watts: int) -> Any: ...


# -------------------------
# Snapshot
# -------------------------
async def read_limit_snapshots(port: LimitPort, inverters: Sequence[InverterSpec]) -> list[LimitSnapshot]:
    """
    Read the current limit of every inverter concurrently.

    Inverters whose read fails or returns no usable number are left out of
    the result. They are never defaulted to 0 W.
    """
    results = await asyncio.gather(
        *(port.read_limit(inv.id) for inv in inverters),
        return_exceptions=True,
    )

    snapshots: list[LimitSnapshot] = []
    for inv, result in zip(inverters, results):
        if isinstance(result, BaseException):
            log.error("Error reading limit from %s: %s", inv.display_name, result)
            continue

        value = coerce_watts(result)
        if value is None:
            if result is None:
                log.warning("Could not read power limit from %s", inv.display_name)
            else:
                log.warning("Invalid power limit value from %s: %r", inv.display_name, result)
            continue

        snapshots.append(LimitSnapshot(inverter_id=inv.id, current_limit_w=value))

    return snapshots


# -------------------------
# Actuation
# -------------------------
async def _write_one(port: LimitPort, inverter_id: str, watts: int) -> None:
    ok = await port.write_limit(inverter_id, watts)
    if ok is False:
        raise RuntimeError("write rejected by transport")


async def apply_plan(port: LimitPort, plan: Plan, registry: Mapping[str, InverterSpec]) -> ActuationReport:
    """
    Write the changed limits of a plan concurrently and wait for all of them.

    Unchanged inverters receive no command. A failed write is logged and
    recorded in the report without affecting the other writes.
    """
    report = ActuationReport()
    pending = []
    changes = []

    for entry in plan.per_inverter:
        name = registry[entry.inverter_id].display_name
        if not entry.changed:
            log.debug("%s limit unchanged at %d W, skipping update", name, entry.new_w)
            report.skipped.append(entry.inverter_id)
            continue
        changes.append(f"{name}: {entry.old_w:g}W → {entry.new_w}W")
        pending.append(entry)

    if changes:
        log.info("Setting inverter limits: %s", ", ".join(changes))

    results = await asyncio.gather(
        *(_write_one(port, entry.inverter_id, entry.new_w) for entry in pending),
        return_exceptions=True,
    )

    for entry, result in zip(pending, results):
        if isinstance(result, BaseException):
            log.error("Error setting limit for %s: %s", registry[entry.inverter_id].display_name, result)
            report.failed[entry.inverter_id] = str(result)
        else:
            report.applied_w[entry.inverter_id] = entry.new_w

    return report
