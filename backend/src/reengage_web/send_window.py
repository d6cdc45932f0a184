"""Per-tenant send window: the weekdays and local hours outbound messages may leave."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

ISO_WEEKDAYS = frozenset(range(1, 8))


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_time_of_day(value: str | time) -> time:
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    normalized = str(value).strip()
    try:
        hours_text, minutes_text = normalized.split(":", 1)
        return time(int(hours_text), int(minutes_text[:2]))
    except ValueError as exc:
        raise ValueError(f"invalid time of day: {value!r} (expected HH:MM)") from exc


def _resolve_zone(name: str) -> ZoneInfo:
    normalized = name.strip()
    if not normalized:
        raise ValueError("timezone cannot be blank")
    try:
        return ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"invalid timezone: {normalized}") from exc


@dataclass(frozen=True)
class SendWindowPolicy:
    timezone: str
    days: frozenset[int]
    start: time
    end: time

    @property
    def zone(self) -> ZoneInfo:
        return _resolve_zone(self.timezone)

    def can_open(self) -> bool:
        return bool(self.days) and self.start < self.end


def parse_send_window(
    *,
    timezone_name: str,
    days: Iterable[int],
    start: str | time,
    end: str | time,
) -> SendWindowPolicy:
    _resolve_zone(timezone_name)
    normalized_days = frozenset(int(day) for day in days)
    unknown = normalized_days - ISO_WEEKDAYS
    if unknown:
        raise ValueError(f"days must be ISO weekdays 1..7, got {sorted(unknown)}")
    return SendWindowPolicy(
        timezone=timezone_name.strip(),
        days=normalized_days,
        start=_parse_time_of_day(start),
        end=_parse_time_of_day(end),
    )


def in_window(now: datetime, policy: SendWindowPolicy | None) -> bool:
    """Return True when ``now`` falls inside the tenant's allowed window.

    A missing policy always allows sending. The allowed range is ``[start, end)``
    in the policy's local time.
    """
    if policy is None:
        return True
    local = _coerce_utc(now).astimezone(policy.zone)
    if local.isoweekday() not in policy.days:
        return False
    time_of_day = local.time().replace(tzinfo=None)
    return policy.start <= time_of_day < policy.end


def next_window_open(when: datetime, policy: SendWindowPolicy | None) -> datetime:
    """Return the first instant at or after ``when`` accepted by :func:`in_window`."""
    normalized = _coerce_utc(when)
    if policy is None or in_window(normalized, policy):
        return normalized
    if not policy.can_open():
        logger.warning(
            "send window never opens timezone=%s days=%s start=%s end=%s",
            policy.timezone,
            sorted(policy.days),
            policy.start.isoformat(),
            policy.end.isoformat(),
        )
        return normalized

    zone = policy.zone
    local = normalized.astimezone(zone)
    for offset in range(8):
        day = local.date() + timedelta(days=offset)
        if day.isoweekday() not in policy.days:
            continue
        opening = datetime.combine(day, policy.start, tzinfo=zone)
        if offset == 0 and local >= opening:
            # Past today's opening and not in window, so today's window is closed.
            continue
        return opening.astimezone(timezone.utc)
    return normalized


def add_local_days(reference: datetime, days: int, policy: SendWindowPolicy | None) -> datetime:
    """Add whole days on the tenant's wall clock so DST shifts keep the local hour."""
    normalized = _coerce_utc(reference)
    if policy is None:
        return normalized + timedelta(days=days)
    local = normalized.astimezone(policy.zone)
    return (local + timedelta(days=days)).astimezone(timezone.utc)
