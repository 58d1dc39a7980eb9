"""
Schedule match scan, run every few minutes.

Weekly windows are keyed by day of week (0 = Sunday), evaluated in
SCHEDULE_TIMEZONE. A window whose end is before its start runs past midnight,
so yesterday's windows are loaded too. When two accepted friends are both
inside a window right now, each side is pushed once per occurrence: the claim
key carries the occurrence date and the recipient's window start, so a window
that stays open for hours notifies once, and the same slot notifies again next
week.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone
from zoneinfo import ZoneInfo

from callme_notify.apns import ApnsClient, PushMessage, fan_out, load_push_tokens
from callme_notify.config import Settings
from callme_notify.dedup import claim_schedule_match
from callme_notify.friends import (
    load_accepted_friendships_among,
    load_profiles,
    mute_pairs,
    push_enabled_for,
)
from callme_notify.store import fetch_all_rows, parse_time_of_day

logger = logging.getLogger(__name__)

EVENT_FLAG = "notify_call_suggestions"

DEEP_LINK = "/schedule/"


@dataclass(frozen=True)
class WindowOccurrence:
    user_id: str
    occurs_on: date
    start: dt_time
    end: dt_time


def day_index(day: date) -> int:
    """0 = Sunday .. 6 = Saturday."""
    return (day.weekday() + 1) % 7


def active_occurrence(window: dict, local_now: datetime) -> WindowOccurrence | None:
    start = parse_time_of_day(window.get("start_time"))
    end = parse_time_of_day(window.get("end_time"))
    if start is None or end is None or start == end:
        return None
    try:
        window_day = int(window.get("day_of_week"))
    except (TypeError, ValueError):
        return None

    today = local_now.date()
    yesterday = today - timedelta(days=1)
    current = local_now.time().replace(tzinfo=None)
    user_id = str(window.get("user_id"))

    if window_day == day_index(today):
        if start < end and start <= current < end:
            return WindowOccurrence(user_id, today, start, end)
        if end < start and current >= start:
            return WindowOccurrence(user_id, today, start, end)
    if window_day == day_index(yesterday) and end < start and current < end:
        return WindowOccurrence(user_id, yesterday, start, end)
    return None


def resolve_active_users(windows: list[dict], local_now: datetime) -> dict[str, WindowOccurrence]:
    """Each active user's current occurrence, earliest start first when several overlap."""
    active: dict[str, WindowOccurrence] = {}
    for window in windows:
        occurrence = active_occurrence(window, local_now)
        if occurrence is None:
            continue
        existing = active.get(occurrence.user_id)
        if existing is None or (occurrence.occurs_on, occurrence.start) < (existing.occurs_on, existing.start):
            active[occurrence.user_id] = occurrence
    return active


def load_candidate_windows(client, local_now: datetime) -> list[dict]:
    today = local_now.date()
    days = [day_index(today), day_index(today - timedelta(days=1))]
    return fetch_all_rows(
        client.table("availability_windows")
        .select("id,user_id,day_of_week,start_time,end_time")
        .in_("day_of_week", days)
        .order("id")
    )


def run_schedule_match_scan(
    *,
    client,
    settings: Settings,
    apns: ApnsClient,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    local_now = now.astimezone(ZoneInfo(settings.schedule_timezone))

    active = resolve_active_users(load_candidate_windows(client, local_now), local_now)
    if not active:
        return {"status": "no active windows"}

    active_ids = sorted(active)
    friendships = load_accepted_friendships_among(client, active_ids)
    if not friendships:
        return {"status": "no matching pairs"}

    profiles = load_profiles(client, active_ids)
    tokens_by_user = load_push_tokens(client, active_ids)
    muted = mute_pairs(friendships)

    messages: list[PushMessage] = []
    matched = 0
    for row in friendships:
        user_id, friend_id = str(row["user_id"]), str(row["friend_id"])
        if user_id == friend_id or user_id not in active or friend_id not in active:
            continue
        for recipient, sender in ((user_id, friend_id), (friend_id, user_id)):
            if not push_enabled_for(profiles.get(recipient), EVENT_FLAG):
                continue
            if (recipient, sender) in muted:
                continue
            tokens = tokens_by_user.get(recipient)
            if not tokens:
                continue

            occurrence = active[recipient]
            if not claim_schedule_match(client, recipient, sender, occurrence.occurs_on, occurrence.start):
                continue

            matched += 1
            sender_name = (profiles.get(sender) or {}).get("display_name") or "Your friend"
            for token in tokens:
                messages.append(
                    PushMessage(
                        token,
                        f"{sender_name} is free to chat! 📞",
                        "You both have time right now — give them a call!",
                        DEEP_LINK,
                        f"schedule-{sender}",
                    )
                )

    report = fan_out(client, settings, apns, messages)
    logger.info(
        "Schedule scan: %s active users, %s new matches, %s pushes sent, %s failed, %s dead tokens removed",
        len(active),
        matched,
        report.delivered,
        report.failed,
        len(report.dead_tokens),
    )
    return {
        "status": "ok",
        "active_users": len(active),
        "matches": matched,
        "sent": report.delivered,
        "failed": report.failed,
        "dead_tokens": len(report.dead_tokens),
    }
