"""
Idempotency claims backed by unique constraints.

A claim is a row insert: success grants the right to send once, a unique
violation means another invocation (or an earlier retry) already did. There is
no release; a crashed invocation keeps its claim so the send is never repeated.
"""
import logging
from datetime import date, datetime, time as dt_time

from postgrest.exceptions import APIError

from callme_notify.store import is_unique_violation

logger = logging.getLogger(__name__)

AVAILABILITY_BUCKET_SECONDS = 30

AVAILABILITY_CLAIMS_TABLE = "notification_log"

SCHEDULE_CLAIMS_TABLE = "notified_schedule_matches"


def try_claim(client, table: str, row: dict) -> bool:
    try:
        client.table(table).insert(row).execute()
    except APIError as exc:
        if is_unique_violation(exc):
            return False
        raise
    return True


def availability_window_key(user_id: str, now: datetime) -> str:
    bucket = int(now.timestamp()) // AVAILABILITY_BUCKET_SECONDS
    return f"{user_id}:{bucket}"


def claim_availability_change(client, user_id: str, now: datetime) -> bool:
    claimed = try_claim(
        client,
        AVAILABILITY_CLAIMS_TABLE,
        {"user_id": user_id, "window_key": availability_window_key(user_id, now)},
    )
    if not claimed:
        logger.info("Dedupe skip for availability change of user %s", user_id[:8])
    return claimed


def claim_schedule_match(
    client,
    recipient_id: str,
    sender_id: str,
    window_date: date,
    start_time: dt_time,
) -> bool:
    return try_claim(
        client,
        SCHEDULE_CLAIMS_TABLE,
        {
            "user_id": recipient_id,
            "friend_id": sender_id,
            "window_date": window_date.isoformat(),
            "start_time": start_time.strftime("%H:%M"),
        },
    )
