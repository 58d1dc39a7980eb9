"""
Friend request notifications.

Triggered by the friendships INSERT webhook. A pending request gets the
recipient a push (unless they are inside quiet hours) and an email. The two
channels are independent: one failing never stops the other.
"""
import logging
from datetime import datetime, time as dt_time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from callme_notify.apns import ApnsClient, PushMessage, fan_out, load_push_tokens
from callme_notify.config import Settings
from callme_notify.events import ChangeEvent
from callme_notify.friends import load_profile, push_enabled_for
from callme_notify.mailer import send_friend_request_email
from callme_notify.store import parse_time_of_day

logger = logging.getLogger(__name__)

EVENT_FLAG = "notify_friend_requests"

DEEP_LINK = "/friends/"

DEFAULT_QUIET_START = dt_time(22, 0)

DEFAULT_QUIET_END = dt_time(8, 0)


def _recipient_zone(profile: dict) -> ZoneInfo:
    name = (profile.get("timezone") or "").strip() or "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r for user %s; using UTC", name, str(profile.get("id", "?"))[:8])
        return ZoneInfo("UTC")


def quiet_window(profile: dict) -> tuple[dt_time, dt_time]:
    start = parse_time_of_day(profile.get("quiet_hours_start"))
    end = parse_time_of_day(profile.get("quiet_hours_end"))
    if start is None or end is None:
        return DEFAULT_QUIET_START, DEFAULT_QUIET_END
    return start, end


def time_in_range(local: dt_time, start: dt_time, end: dt_time) -> bool:
    if start == end:
        return False
    if start < end:
        return start <= local < end
    # Wraps midnight, e.g. 22:00-08:00
    return local >= start or local < end


def in_quiet_hours(profile: dict, now: datetime) -> bool:
    if not profile.get("enable_quiet_hours"):
        return False
    local = now.astimezone(_recipient_zone(profile)).time().replace(tzinfo=None)
    start, end = quiet_window(profile)
    return time_in_range(local, start, end)


def _email_enabled(profile: dict) -> bool:
    return bool(profile.get("email")) and profile.get("enable_email_notifications") is not False


def _first_name(profile: dict) -> str:
    name = (profile.get("display_name") or "").strip()
    return name.split(" ")[0] if name else "there"


def _send_push(client, settings, apns, sender_id: str, sender_name: str, recipient_id: str) -> tuple[int, int]:
    tokens = load_push_tokens(client, [recipient_id]).get(recipient_id, [])
    messages = [
        PushMessage(
            token,
            "New friend request 👋",
            f"{sender_name} wants to be your friend on CallMe",
            DEEP_LINK,
            f"friend-request-{sender_id}",
        )
        for token in tokens
    ]
    if not messages:
        logger.info("No push tokens for user %s, push skipped", recipient_id[:8])
        return 0, 0
    report = fan_out(client, settings, apns, messages)
    return report.delivered, len(report.dead_tokens)


def handle_friend_request(
    event: ChangeEvent,
    *,
    client,
    settings: Settings,
    apns: ApnsClient,
    email_sender=send_friend_request_email,
    now: datetime | None = None,
) -> dict:
    if event.new_value("status") != "pending":
        return {"status": "skip"}

    now = now or datetime.now(timezone.utc)
    sender_id = str(event.new_value("user_id") or "")
    recipient_id = str(event.new_value("friend_id") or "")
    sender = load_profile(client, sender_id) if sender_id else None
    recipient = load_profile(client, recipient_id) if recipient_id else None
    if not sender or not recipient:
        return {"status": "profiles not found"}

    sender_name = sender.get("display_name") or "Someone"
    result = {"status": "ok", "push_sent": 0, "dead_tokens": 0, "email_sent": False}

    if push_enabled_for(recipient, EVENT_FLAG):
        if in_quiet_hours(recipient, now):
            logger.info("User %s is in quiet hours; friend request push suppressed", recipient_id[:8])
        else:
            try:
                result["push_sent"], result["dead_tokens"] = _send_push(
                    client, settings, apns, sender_id, sender_name, recipient_id
                )
            except Exception as exc:  # noqa: BLE001
                logger.error("Friend request push failed for %s: %s", recipient_id[:8], exc, exc_info=True)

    if _email_enabled(recipient):
        if not settings.resend_api_key:
            logger.error("RESEND_API_KEY not set; skipping friend request email")
        else:
            try:
                email_sender(
                    settings.resend_api_key,
                    settings.resend_from_email,
                    settings.app_url,
                    to_email=recipient["email"],
                    recipient_name=_first_name(recipient),
                    sender_name=sender_name,
                    friendship_id=event.new_value("id") or f"{sender_id}-{recipient_id}",
                )
                result["email_sent"] = True
            except Exception as exc:  # noqa: BLE001
                logger.error("Friend request email failed for %s: %s", recipient_id[:8], exc, exc_info=True)

    return result
