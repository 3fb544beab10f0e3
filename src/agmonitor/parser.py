"""Parsing GetUserStatus responses into snapshots."""

import math
import re
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from agmonitor.errors import ResponseMalformed
from agmonitor.models import CreditBalance, QuotaItem, Snapshot

_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse an ISO 8601 timestamp such as `2026-01-23T22:27:08.123456789Z`.

    Fractional seconds are normalised to microseconds and naive values are
    taken as UTC. Returns None for anything unparsable.
    """
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_reset_time(delta: timedelta, reset_at: datetime | None = None) -> str:
    """
    Human-readable countdown, e.g. "45m (2026-10-19 14:30)" or "2h 5m (...)".

    Returns "Ready" when the reset is due.
    """
    if delta <= timedelta(0):
        return "Ready"

    minutes = math.ceil(delta.total_seconds() / 60)
    if minutes < 60:
        duration = f"{minutes}m"
    else:
        duration = f"{minutes // 60}h {minutes % 60}m"

    if reset_at is None:
        return duration
    return f"{duration} ({reset_at.astimezone().strftime('%Y-%m-%d %H:%M')})"


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def parse_credits(user_status: Mapping[str, Any]) -> CreditBalance | None:
    """Prompt credits, only when both values exist and the monthly allocation is positive."""
    plan_status = _mapping(user_status.get("planStatus"))
    plan_info = _mapping(plan_status.get("planInfo"))
    if "monthlyPromptCredits" not in plan_info or "availablePromptCredits" not in plan_status:
        return None

    monthly = _number(plan_info["monthlyPromptCredits"])
    available = _number(plan_status["availablePromptCredits"])
    if monthly is None or available is None or monthly <= 0:
        return None
    return CreditBalance(available=available, monthly=monthly)


def parse_item(raw: Mapping[str, Any], now: datetime) -> QuotaItem | None:
    """Build a QuotaItem from one clientModelConfigs entry; None when it has no quota info."""
    quota_info = raw.get("quotaInfo")
    if not isinstance(quota_info, Mapping):
        return None

    fraction = None
    if "remainingFraction" in quota_info:
        fraction = _number(quota_info["remainingFraction"])
        if fraction is not None:
            fraction = min(1.0, max(0.0, fraction))

    reset_at = parse_timestamp(quota_info.get("resetTime"))
    if reset_at is None:
        time_until_reset = timedelta(0)
        reset_display = "Unknown"
    else:
        time_until_reset = reset_at - now
        reset_display = format_reset_time(time_until_reset, reset_at)

    model = _mapping(raw.get("modelOrAlias"))
    return QuotaItem(
        label=str(raw.get("label") or "Unknown"),
        model_id=str(model.get("model") or "unknown"),
        remaining_fraction=fraction,
        is_exhausted=fraction == 0,
        reset_at=reset_at,
        time_until_reset=time_until_reset,
        reset_display=reset_display,
    )


def parse_snapshot(raw: Any, now: datetime | None = None) -> Snapshot:
    """
    Normalise a GetUserStatus payload.

    Raises:
        ResponseMalformed: If the payload is not a JSON object.
    """
    if not isinstance(raw, Mapping):
        raise ResponseMalformed(f"expected a JSON object, got {type(raw).__name__}")

    now = now or datetime.now(timezone.utc)
    user_status = _mapping(raw.get("userStatus"))
    model_data = _mapping(user_status.get("cascadeModelConfigData"))
    raw_models = model_data.get("clientModelConfigs")
    if not isinstance(raw_models, list):
        raw_models = []

    items = []
    for entry in raw_models:
        if not isinstance(entry, Mapping):
            continue
        item = parse_item(entry, now)
        if item is not None:
            items.append(item)

    return Snapshot(captured_at=now, credits=parse_credits(user_status), items=tuple(items))
