import random
import re
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from dispatch_api.services.guardrail_policy import GuardrailPolicy

_HHMM_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


def build_schedule(
    count: int,
    policy: GuardrailPolicy,
    now: datetime,
    rng: Optional[random.Random] = None,
) -> list[datetime]:
    """Return `count` strictly increasing dispatch instants starting after `now`.

    Each step draws a jittered spacing in [per_send_min, per_send_max]; every
    `pause_every_n`-th item (except the last) also gets a long pause in
    [pause_min, pause_max]. Pass a seeded `random.Random` for reproducible output.
    """
    if count <= 0:
        return []

    rng = rng or random.SystemRandom()
    offset = 0
    schedule = []
    for index in range(1, count + 1):
        offset += rng.randint(policy.per_send_min_seconds, policy.per_send_max_seconds)
        if policy.pause_every_n > 0 and index % policy.pause_every_n == 0 and index < count:
            offset += rng.randint(policy.pause_min_seconds, policy.pause_max_seconds)
        schedule.append(now + timedelta(seconds=offset))
    return schedule


def _parse_hhmm(value: str) -> tuple[int, int]:
    match = _HHMM_RE.match(value or "")
    if not match:
        return 9, 0
    hour = max(0, min(23, int(match.group(1))))
    minute = max(0, min(59, int(match.group(2))))
    return hour, minute


def apply_send_window(
    now: datetime,
    *,
    start: str = "09:00",
    end: str = "19:00",
    tz_name: str = "America/Sao_Paulo",
) -> datetime:
    """Move `now` into the business-hours window (today's start or tomorrow's start)."""
    zone = ZoneInfo(tz_name)
    local_now = now.astimezone(zone)
    start_h, start_m = _parse_hhmm(start)
    end_h, end_m = _parse_hhmm(end)

    window_start = local_now.replace(hour=start_h, minute=start_m, second=0, microsecond=0)
    window_end = local_now.replace(hour=end_h, minute=end_m, second=0, microsecond=0)

    if local_now < window_start:
        return window_start.astimezone(timezone.utc)
    if local_now > window_end:
        tomorrow = (local_now + timedelta(days=1)).replace(hour=start_h, minute=start_m, second=0, microsecond=0)
        return tomorrow.astimezone(timezone.utc)
    return now
