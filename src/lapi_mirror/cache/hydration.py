from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Iterable

from lapi_mirror.core.models import DecisionRecord, DecisionView
from lapi_mirror.core.timeutil import format_duration, parse_timestamp


def hydrate_decision(record: DecisionRecord, now: datetime) -> DecisionView:
    stop_at = parse_timestamp(record.stop_at)
    expired = stop_at is None or stop_at <= now
    duration = "0s" if expired else format_duration(stop_at - now)
    return DecisionView(
        id=record.id,
        alert_id=record.alert_id,
        created_at=record.created_at,
        stop_at=record.stop_at,
        value=record.value,
        type=record.type,
        origin=record.origin,
        scenario=record.scenario,
        duration=duration,
        expired=expired,
        is_duplicate=False,
        raw=record.raw,
    )


def _canonical_key(decision_id: str) -> tuple[int, int, str]:
    text = decision_id.strip()
    if text.isdecimal():
        return (0, int(text), "")
    return (1, 0, text)


def mark_duplicates(views: list[DecisionView]) -> list[DecisionView]:
    """
    Flag every active decision that shares its value with a lower-id active decision.

    Expired decisions are never flagged. Non-numeric ids sort after numeric ones.
    """
    groups: dict[str, list[DecisionView]] = defaultdict(list)
    for view in views:
        view.is_duplicate = False
        if not view.expired:
            groups[view.value].append(view)
    for members in groups.values():
        if len(members) < 2:
            continue
        canonical = min(members, key=lambda v: _canonical_key(v.id))
        for view in members:
            view.is_duplicate = view is not canonical
    return views


def hydrate_decisions(
    records: Iterable[DecisionRecord],
    now: datetime,
    *,
    include_expired: bool = True,
) -> list[DecisionView]:
    """Recompute countdowns against ``now`` and duplicate flags for a read."""
    views = [hydrate_decision(record, now) for record in records]
    mark_duplicates(views)
    if not include_expired:
        views = [v for v in views if not v.expired]
    return views
