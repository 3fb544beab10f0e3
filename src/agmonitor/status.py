"""Derived per-group status for consumers of snapshots."""

from dataclasses import dataclass

from agmonitor.alerts import AlertStateEngine
from agmonitor.config import MonitorConfig
from agmonitor.groups import GroupClassifier, traffic_light
from agmonitor.models import GroupView, Snapshot, Thresholds, TrafficLight


@dataclass(slots=True, frozen=True)
class GroupReport:
    """Everything a consumer needs to render one group."""

    view: GroupView
    display_name: str
    enabled: bool
    thresholds: Thresholds
    light: TrafficLight
    is_long_reset: bool


class StatusEvaluator:
    """
    Turns snapshots into group reports.

    Owns the AlertStateEngine, so a single evaluator must see every snapshot
    in order for the sticky alerts to be meaningful.
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        classifier: GroupClassifier | None = None,
        alerts: AlertStateEngine | None = None,
    ) -> None:
        self._config = config or MonitorConfig()
        self._classifier = classifier or GroupClassifier(self._config.group_definitions)
        self._alerts = alerts or AlertStateEngine()

    @property
    def classifier(self) -> GroupClassifier:
        """Get the group classifier."""
        return self._classifier

    @property
    def alerts(self) -> AlertStateEngine:
        """Get the alert engine."""
        return self._alerts

    def evaluate(self, snapshot: Snapshot) -> list[GroupReport]:
        """Build one report per group and advance the alert state."""
        reports: list[GroupReport] = []
        names = {g.id: g.display_name for g in self._classifier.definitions}
        for view in self._classifier.classify(snapshot.items):
            settings = self._config.group_settings(view.id)
            state = self._alerts.observe(view.id, view.max_reset, view.worst_remaining_pct)
            reports.append(
                GroupReport(
                    view=view,
                    display_name=names[view.id],
                    enabled=settings.enabled,
                    thresholds=settings.limits,
                    light=traffic_light(view.worst_remaining_pct, settings.limits),
                    is_long_reset=state.active,
                )
            )
        return reports
