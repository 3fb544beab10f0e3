"""Model group classification and traffic-light mapping."""

from collections.abc import Iterable, Sequence

from agmonitor.models import GroupDefinition, GroupView, QuotaItem, Thresholds, TrafficLight

OTHER_GROUP_ID = "other"

# Evaluated in this order; the first group with a matching pattern wins.
DEFAULT_GROUPS: tuple[GroupDefinition, ...] = (
    GroupDefinition(
        id="premium",
        display_name="Premium",
        label_patterns=("opus", "sonnet", "gpt-oss", "gpt oss", "120b"),
    ),
    GroupDefinition(
        id="pro",
        display_name="Pro",
        label_patterns=("gemini 3 pro", "gemini-3-pro", "pro (high", "pro (low"),
    ),
    GroupDefinition(
        id="flash",
        display_name="Flash",
        label_patterns=("flash", "gemini 3 flash", "gemini-3-flash"),
    ),
)


def traffic_light(remaining_pct: float, thresholds: Thresholds | None = None) -> TrafficLight:
    """Map a remaining percentage to a colour. Limits are inclusive."""
    limits = thresholds or Thresholds()
    if remaining_pct <= limits.red:
        return TrafficLight.RED
    if remaining_pct <= limits.yellow:
        return TrafficLight.YELLOW
    return TrafficLight.GREEN


class GroupClassifier:
    """
    Partitions quota items into named groups.

    Stateless between calls. Items matching no group belong to the implicit
    "other" bucket and never appear in the returned views.
    """

    def __init__(
        self,
        definitions: Sequence[GroupDefinition] = DEFAULT_GROUPS,
        unknown_pct: float = 100.0,
    ) -> None:
        """
        Initialize the GroupClassifier.

        Args:
            definitions: Groups in priority order.
            unknown_pct: Worst-case percentage reported for a group whose
                members all lack a known fraction.
        """
        self._definitions = tuple(definitions)
        self._unknown_pct = unknown_pct

    @property
    def definitions(self) -> tuple[GroupDefinition, ...]:
        """Get the group definitions in priority order."""
        return self._definitions

    def group_for(self, label: str) -> GroupDefinition | None:
        """Return the first group whose patterns occur in the label."""
        lower = label.lower().strip()
        for group in self._definitions:
            for pattern in group.label_patterns:
                if pattern.lower() in lower:
                    return group
        return None

    def classify(self, items: Iterable[QuotaItem]) -> list[GroupView]:
        """Build one view per defined group, in definition order."""
        members: dict[str, list[QuotaItem]] = {g.id: [] for g in self._definitions}
        for item in items:
            group = self.group_for(item.label)
            if group is not None:
                members[group.id].append(item)

        return [
            GroupView(
                id=group.id,
                members=tuple(members[group.id]),
                worst_remaining_pct=self.worst_remaining(members[group.id]),
            )
            for group in self._definitions
        ]

    def other(self, items: Iterable[QuotaItem]) -> list[QuotaItem]:
        """Items that fall into no named group."""
        return [item for item in items if self.group_for(item.label) is None]

    def worst_remaining(self, items: Iterable[QuotaItem]) -> float:
        """Lowest known remaining percentage, or the unknown default."""
        known = [i.remaining_percentage for i in items if i.remaining_percentage is not None]
        return min(known, default=self._unknown_pct)
