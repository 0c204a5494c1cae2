from __future__ import annotations

from datetime import datetime
import hashlib
import json
import logging
from typing import Any

from lapi_mirror.core.models import AlertRecord, DecisionRecord
from lapi_mirror.core.timeutil import parse_duration, parse_timestamp, to_iso

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"
TARGET_META_KEYS = ("target_fqdn", "target_host", "service")


def _text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = _text(value)
    if text.lstrip("-").isdecimal():
        return int(text)
    return None


def alert_content_key(data: dict[str, Any]) -> str:
    """Stable key for alerts that carry neither id nor uuid; decision countdowns are left out."""
    stable = {key: value for key, value in data.items() if key != "decisions"}
    payload = json.dumps(stable, sort_keys=True, default=str).encode("utf-8")
    return "sha256:" + hashlib.sha256(payload).hexdigest()


def _event_meta(event: object) -> dict[str, str]:
    if not isinstance(event, dict):
        return {}
    meta = event.get("meta")
    out: dict[str, str] = {}
    if isinstance(meta, dict):
        for key, value in meta.items():
            out.setdefault(_text(key), _text(value))
    elif isinstance(meta, list):
        for item in meta:
            if isinstance(item, dict):
                key = _text(item.get("key"))
                if key and key not in out:
                    out[key] = _text(item.get("value"))
    return out


def resolve_target(alert: dict[str, Any]) -> str:
    """
    Label the service or host an alert was aimed at.

    Order: event meta tags (target_fqdn, target_host, service) scanning events
    in order, then the scenario name after its namespace cut at the first
    hyphen, then the machine alias or id, then "Unknown".
    """
    events = alert.get("events")
    if isinstance(events, list):
        for event in events:
            meta = _event_meta(event)
            for key in TARGET_META_KEYS:
                if meta.get(key):
                    return meta[key]

    scenario = _text(alert.get("scenario"))
    if "/" in scenario:
        name = scenario.split("/", 1)[1]
        short = name.split("-", 1)[0].strip()
        if short:
            return short

    machine = _text(alert.get("machine_alias")) or _text(alert.get("machine_id"))
    if machine:
        return machine
    return UNKNOWN


def _source_ip(alert: dict[str, Any]) -> str:
    source = alert.get("source")
    if not isinstance(source, dict):
        return UNKNOWN
    for key in ("ip", "value", "range"):
        text = _text(source.get(key))
        if text:
            return text
    return UNKNOWN


def compute_stop_at(decision: dict[str, Any], *, now: datetime, created_at: str) -> str:
    """Absolute expiry: now + duration, else the explicit stop_at, else created_at."""
    duration = parse_duration(decision.get("duration"))
    if duration is not None:
        return to_iso(now + duration)
    stop_at = parse_timestamp(decision.get("stop_at"))
    if stop_at is not None:
        return to_iso(stop_at)
    return created_at


def is_federated(decision: dict[str, Any], federated_origin: str) -> bool:
    return _text(decision.get("origin")).lower() == federated_origin.strip().lower()


def normalize_alert(
    alert: object,
    *,
    now: datetime,
    federated_origin: str = "CAPI",
) -> tuple[AlertRecord, list[DecisionRecord]]:
    """
    Turn one upstream alert into an alert row and its decision rows.

    Pure and total: malformed fields fall back to defaults. Decisions from the
    federated feed are dropped; an alert left with no decisions still yields
    its alert row and an empty decision list.
    """
    data: dict[str, Any] = alert if isinstance(alert, dict) else {}
    alert_id = _as_int(data.get("id"))
    uuid = _text(data.get("uuid")) or (None if alert_id is not None else _text(data.get("id")) or None)
    if alert_id is None and uuid is None:
        uuid = alert_content_key(data)
    created = parse_timestamp(data.get("created_at")) or parse_timestamp(data.get("start_at")) or now
    created_at = to_iso(created)
    scenario = _text(data.get("scenario")) or UNKNOWN

    record = AlertRecord(
        id=alert_id,
        uuid=uuid,
        created_at=created_at,
        scenario=scenario,
        source_ip=_source_ip(data),
        message=_text(data.get("message")),
        target=resolve_target(data),
        raw=data,
    )

    decisions: list[DecisionRecord] = []
    raw_decisions = data.get("decisions")
    if not isinstance(raw_decisions, list):
        return record, decisions
    for idx, item in enumerate(raw_decisions):
        if not isinstance(item, dict):
            continue
        if is_federated(item, federated_origin):
            continue
        decision_created = parse_timestamp(item.get("created_at"))
        decision_created_at = to_iso(decision_created) if decision_created else created_at
        decision_id = _text(item.get("id"))
        if not decision_id:
            # upstream occasionally omits ids on synthetic entries
            decision_id = f"synthetic_{alert_id if alert_id is not None else uuid}_{idx}"
        decisions.append(
            DecisionRecord(
                id=decision_id,
                uuid=_text(item.get("uuid")) or None,
                alert_id=alert_id,
                created_at=decision_created_at,
                stop_at=compute_stop_at(item, now=now, created_at=decision_created_at),
                value=_text(item.get("value")),
                type=_text(item.get("type")),
                origin=_text(item.get("origin")),
                scenario=_text(item.get("scenario")) or scenario,
                raw=item,
            )
        )
    return record, decisions


def normalize_alerts(
    alerts: list[object],
    *,
    now: datetime,
    federated_origin: str = "CAPI",
) -> tuple[list[AlertRecord], list[DecisionRecord]]:
    alert_rows: list[AlertRecord] = []
    decision_rows: list[DecisionRecord] = []
    for alert in alerts:
        try:
            row, decisions = normalize_alert(alert, now=now, federated_origin=federated_origin)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Skip malformed alert: %s", exc)
            continue
        alert_rows.append(row)
        decision_rows.extend(decisions)
    return alert_rows, decision_rows
