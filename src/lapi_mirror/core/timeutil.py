from __future__ import annotations

from datetime import datetime, timedelta, timezone
import math
import re

_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)(ms|d|h|m|s)")
_TIMESTAMP = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[T ](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?\s*(Z|z|[+-]\d{2}:?\d{2})?$"
)
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_duration(value: object) -> timedelta | None:
    """
    Parse an upstream relative duration such as ``4h``, ``3h59m58.5s`` or ``-12m3s``.

    Any subset of the components is accepted, a leading sign is honoured and
    ``d`` is tolerated for lookback settings. Returns ``None`` when the text is
    not a duration.
    """
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if not text:
        return None
    total = 0.0
    pos = 0
    for match in _DURATION_TOKEN.finditer(text):
        if match.start() != pos:
            return None
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        # bare numbers are treated as seconds
        if pos == 0 and re.fullmatch(r"\d+(?:\.\d+)?", text):
            return timedelta(seconds=sign * float(text))
        return None
    return timedelta(seconds=sign * total)


def format_duration(value: timedelta | float | int) -> str:
    """Render whole seconds the way the upstream does: ``1h0m0s``, ``2m5s``, ``0s``."""
    seconds = value.total_seconds() if isinstance(value, timedelta) else float(value)
    if seconds <= 0:
        return "0s"
    whole = int(math.floor(seconds))
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if value is None:
        return None
    match = _TIMESTAMP.match(str(value).strip())
    if match is None:
        return None
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micros = int((fraction or "0")[:6].ljust(6, "0"))
    tz = timezone.utc
    if zone and zone not in ("Z", "z"):
        zone = zone.replace(":", "")
        offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[3:5]))
        tz = timezone(offset if zone[0] == "+" else -offset)
    try:
        parsed = datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tzinfo=tz
        )
    except ValueError:
        return None
    return parsed.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC text so that stored timestamps compare correctly as strings."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def duration_to_ms(value: object, default_ms: int = 0) -> int:
    text = str(value or "").strip().lower()
    if text in {"", "manual", "off", "0"}:
        return 0
    parsed = parse_duration(text)
    if parsed is None or parsed.total_seconds() < 0:
        return default_ms
    return int(parsed.total_seconds() * 1000)
