"""Sticky "long reset" alerts with hysteresis.

A group's alert turns on when its longest reset countdown exceeds five hours.
It then stays on until the countdown has dipped below four hours, climbed
back above four hours (a fresh quota window), and the group's worst
remaining percentage is back at 100.
"""

from datetime import timedelta

from agmonitor.models import AlertState

ACTIVATE_ABOVE = timedelta(hours=5)
RECOVERY_BOUNDARY = timedelta(hours=4)


class AlertStateEngine:
    """Holds and advances the per-group AlertState. Not thread-safe; call sequentially."""

    def __init__(self) -> None:
        self._states: dict[str, AlertState] = {}

    def observe(self, group_id: str, max_reset: timedelta, worst_pct: float) -> AlertState:
        """Advance a group's state with one snapshot's observation."""
        state = self._states.setdefault(group_id, AlertState())

        if max_reset > ACTIVATE_ABOVE:
            state.active = True
            state.dipped_below_recovery = False
            state.recovery_condition_met = False

        if state.active:
            if timedelta(0) < max_reset < RECOVERY_BOUNDARY:
                state.dipped_below_recovery = True
            if state.dipped_below_recovery and max_reset > RECOVERY_BOUNDARY:
                state.recovery_condition_met = True
            if state.recovery_condition_met and worst_pct >= 100:
                state.active = False
                state.dipped_below_recovery = False
                state.recovery_condition_met = False

        return state

    def state_for(self, group_id: str) -> AlertState | None:
        """Get the current alert state of a group, None if never observed."""
        return self._states.get(group_id)

    def is_long_reset(self, group_id: str) -> bool:
        """Check if the group's long-reset alert is on."""
        state = self._states.get(group_id)
        return state is not None and state.active
