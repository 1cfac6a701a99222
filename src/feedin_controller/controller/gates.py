from typing import Optional

from feedin_controller.controller.models import Plan


class SignificanceGate:
    """Suppresses plans whose aggregate change is below a threshold."""

    def __init__(self, threshold_w: float) -> None:
        if threshold_w < 0:
            raise ValueError("Significance threshold must be >= 0")
        self.threshold_w = threshold_w

    def is_significant(self, plan: Plan) -> bool:
        # Post-clamp totals; a plan clamped back to the old total is not a change
        return abs(plan.total_new_w - plan.total_old_w) >= self.threshold_w


class DecreaseHysteresisGate:
    """
    Cooldown between two applied decreases of the aggregate limit.

    Only decreases are admitted through this gate. Increases must not call
    it, so an increase never shortens the cooldown of the next decrease.
    The timestamp is recorded at admission, before the writes are dispatched.
    """

    def __init__(self, evaluation_period_ms: float, delay_factor: float = 3.0) -> None:
        if evaluation_period_ms <= 0:
            raise ValueError("Evaluation period must be > 0")
        self.cooldown_ms: float = evaluation_period_ms * delay_factor
        self.last_decrease_applied_at: Optional[float] = None

    def remaining_ms(self, now: float) -> float:
        if self.last_decrease_applied_at is None:
            return 0.0
        return max(0.0, self.cooldown_ms - (now - self.last_decrease_applied_at))

    def try_admit(self, now: float) -> bool:
        if self.last_decrease_applied_at is not None and now - self.last_decrease_applied_at < self.cooldown_ms:
            return False
        self.last_decrease_applied_at = now
        return True
