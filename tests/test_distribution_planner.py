import pytest

from feedin_controller.controller.distribution_planner import aggregate_target, plan_distribution
from feedin_controller.controller.models import InverterSpec, LimitSnapshot, Plan, PlannedLimit


def _registry(*max_powers):
    return {f"inv{i + 1}": InverterSpec(id=f"inv{i + 1}", max_power_w=p) for i, p in enumerate(max_powers)}


def _snapshots(*limits):
    return [LimitSnapshot(inverter_id=f"inv{i + 1}", current_limit_w=v) for i, v in enumerate(limits)]


# ------------------------
# Aggregate target
# ------------------------
def test_import_adds_grid_power():
    assert aggregate_target(500, 2000, -800) == 2500


def test_import_can_include_target_offset():
    assert aggregate_target(500, 2000, -800, import_includes_target=True) == 3300


def test_export_beyond_target_reduces_total():
    assert aggregate_target(-1200, 2000, -800) == 1600


def test_export_below_target_raises_total():
    assert aggregate_target(-300, 2000, -800) == 2500


def test_export_never_goes_below_zero():
    assert aggregate_target(-5000, 1000, -800) == 0


# ------------------------
# Scenarios
# ------------------------
def test_scenario_a_import_raises_both_limits():
    plan = plan_distribution(500, _snapshots(1000, 1000), _registry(2250, 2250), -800)
    assert plan.total_old_w == 2000
    assert plan.total_new_w == 2500
    assert [p.new_w for p in plan.per_inverter] == [1250, 1250]


def test_scenario_b_export_lowers_both_limits():
    plan = plan_distribution(-1200, _snapshots(1000, 1000), _registry(2250, 2250), -800)
    assert plan.total_new_w == 1600
    assert [p.new_w for p in plan.per_inverter] == [800, 800]
    assert plan.is_decrease


def test_scenario_c_clamps_to_inverter_capacity():
    plan = plan_distribution(2000, _snapshots(1000, 1000), _registry(2250, 1500), -800)
    assert [p.new_w for p in plan.per_inverter] == [2000, 1500]
    # Clamped remainder is not redistributed
    assert plan.total_new_w == 3500


def test_scenario_d_small_export_excess():
    plan = plan_distribution(-850, _snapshots(1000, 1000), _registry(2250, 2250), -800)
    assert [p.new_w for p in plan.per_inverter] == [975, 975]
    assert abs(plan.delta_w) == 50


# ------------------------
# Distribution details
# ------------------------
def test_uneven_total_is_floored():
    plan = plan_distribution(1, _snapshots(1000, 1000), _registry(2250, 2250), -800)
    assert [p.new_w for p in plan.per_inverter] == [1000, 1000]
    assert plan.total_new_w == 2000


def test_fractional_limits_are_floored_to_whole_watts():
    plan = plan_distribution(0, _snapshots(1000.5, 999.9, 1000.2), _registry(2250, 2250, 2250), -800)
    assert all(isinstance(p.new_w, int) for p in plan.per_inverter)
    assert [p.new_w for p in plan.per_inverter] == [1000, 1000, 1000]


def test_zero_floor_when_export_is_huge():
    plan = plan_distribution(-10000, _snapshots(500, 500), _registry(2250, 2250), -800)
    assert [p.new_w for p in plan.per_inverter] == [0, 0]
    assert plan.total_new_w == 0


def test_only_snapshot_devices_share_the_total():
    registry = _registry(2250, 2250, 2250)
    snaps = [LimitSnapshot("inv1", 1000), LimitSnapshot("inv3", 1000)]
    plan = plan_distribution(500, snaps, registry, -800)
    assert [p.inverter_id for p in plan.per_inverter] == ["inv1", "inv3"]
    assert [p.new_w for p in plan.per_inverter] == [1250, 1250]


def test_zero_capacity_inverter_gets_zero():
    plan = plan_distribution(1000, _snapshots(0, 1000), _registry(0, 2250), -800)
    assert [p.new_w for p in plan.per_inverter] == [0, 1000]


def test_old_values_are_preserved():
    plan = plan_distribution(500, _snapshots(900, 1100), _registry(2250, 2250), -800)
    assert [p.old_w for p in plan.per_inverter] == [900, 1100]


@pytest.mark.parametrize("grid", [-20000, -1200, -850, 0, 500, 2000, 20000])
def test_plan_invariants_hold(grid):
    registry = _registry(2250, 1500, 600)
    plan = plan_distribution(grid, _snapshots(1000, 700, 600), registry, -800)
    assert plan.total_new_w == sum(p.new_w for p in plan.per_inverter)
    for p in plan.per_inverter:
        assert 0 <= p.new_w <= registry[p.inverter_id].max_power_w


def test_empty_snapshots_rejected():
    with pytest.raises(ValueError):
        plan_distribution(500, [], _registry(2250), -800)


def test_unknown_inverter_rejected():
    with pytest.raises(ValueError):
        plan_distribution(500, [LimitSnapshot("ghost", 100)], _registry(2250), -800)


# ------------------------
# Model validation
# ------------------------
def test_plan_rejects_total_mismatch():
    entry = PlannedLimit("inv1", 1000, 1200, 2250)
    with pytest.raises(ValueError):
        Plan(total_old_w=1000, total_new_w=1300, per_inverter=(entry,))


def test_planned_limit_rejects_over_capacity():
    with pytest.raises(ValueError):
        PlannedLimit("inv1", 1000, 2300, 2250)


def test_planned_limit_rejects_negative():
    with pytest.raises(ValueError):
        PlannedLimit("inv1", 1000, -1, 2250)


def test_snapshot_rejects_missing_value():
    with pytest.raises(ValueError):
        LimitSnapshot("inv1", None)
