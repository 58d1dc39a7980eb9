"""
Availability-change fan-out.

Triggered by the profiles UPDATE webhook. When a user flips is_available from
false/absent to true, every accepted, non-muting friend who wants availability
pushes gets one, collapsed per toggling user on the device. A 30 second claim
in notification_log absorbs duplicate webhook deliveries and quick re-toggles.
"""
import logging
from datetime import datetime, timezone

from callme_notify.apns import ApnsClient, PushMessage, fan_out, load_push_tokens
from callme_notify.config import Settings
from callme_notify.dedup import claim_availability_change
from callme_notify.events import ChangeEvent
from callme_notify.friends import (
    counterpart,
    load_accepted_friendships,
    load_profiles,
    mute_pairs,
    push_enabled_for,
)

logger = logging.getLogger(__name__)

EVENT_FLAG = "notify_availability_changes"

DEEP_LINK = "/friends/"


def select_recipients(client, user_id: str) -> list[str]:
    friendships = load_accepted_friendships(client, user_id)
    muters = {muter for muter, muted in mute_pairs(friendships) if muted == user_id}
    friend_ids = [
        friend_id
        for friend_id in dict.fromkeys(counterpart(row, user_id) for row in friendships)
        if friend_id != user_id and friend_id not in muters
    ]
    profiles = load_profiles(client, friend_ids)
    return [fid for fid in friend_ids if push_enabled_for(profiles.get(fid), EVENT_FLAG)]


def build_messages(display_name: str, user_id: str, tokens_by_user: dict[str, list[str]]) -> list[PushMessage]:
    title = f"{display_name} is free to talk 📞"
    collapse_id = f"avail-{user_id}"
    return [
        PushMessage(token, title, "Tap to call them now", DEEP_LINK, collapse_id)
        for tokens in tokens_by_user.values()
        for token in tokens
    ]


def handle_availability_change(
    event: ChangeEvent,
    *,
    client,
    settings: Settings,
    apns: ApnsClient,
    now: datetime | None = None,
) -> dict:
    if not event.is_rising_edge("is_available"):
        return {"status": "skip"}

    now = now or datetime.now(timezone.utc)
    user_id = str(event.new_value("id") or "")
    if not user_id:
        logger.warning("Availability change without a profile id; skipping")
        return {"status": "skip"}

    if not claim_availability_change(client, user_id, now):
        return {"status": "dedupe"}

    recipients = select_recipients(client, user_id)
    if not recipients:
        return {"status": "no targets"}

    tokens_by_user = load_push_tokens(client, recipients)
    display_name = event.new_value("display_name") or "Your friend"
    messages = build_messages(display_name, user_id, tokens_by_user)
    if not messages:
        return {"status": "no targets"}

    report = fan_out(client, settings, apns, messages)
    logger.info(
        "Availability push for %s: %s sent, %s failed, %s dead tokens removed",
        user_id[:8],
        report.delivered,
        report.failed,
        len(report.dead_tokens),
    )
    return {
        "status": "ok",
        "sent": report.delivered,
        "failed": report.failed,
        "dead_tokens": len(report.dead_tokens),
    }
