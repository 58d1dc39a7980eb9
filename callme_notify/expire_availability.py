"""
Sweep profiles whose ad-hoc availability has run out.

Backstop for clients that never cleared their own state (app killed or
backgrounded before the countdown fired, or a missed realtime event).
No notifications are sent.
"""
import logging
from datetime import datetime, timezone

from callme_notify.store import fetch_all_rows, id_batches

logger = logging.getLogger(__name__)


def find_expired_profiles(client, now: datetime) -> list[dict]:
    return fetch_all_rows(
        client.table("profiles")
        .select("id,available_until")
        .eq("is_available", True)
        .not_.is_("available_until", "null")
        .lt("available_until", now.isoformat())
        .order("id")
    )


def expire_stale_availability(*, client, now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    expired = find_expired_profiles(client, now)
    if not expired:
        return 0

    ids = [str(row["id"]) for row in expired]
    expired_count = 0
    for batch in id_batches(ids):
        # Re-check the expiry so a profile extended since the select is left alone
        response = (
            client.table("profiles")
            .update(
                {
                    "is_available": False,
                    "available_until": None,
                    "last_seen": now.isoformat(),
                }
            )
            .in_("id", batch)
            .eq("is_available", True)
            .lt("available_until", now.isoformat())
            .execute()
        )
        expired_count += len(response.data or [])

    if expired_count < len(ids):
        logger.info("%s profile(s) were extended before the sweep reached them", len(ids) - expired_count)
    logger.info("Expired availability for %s profile(s)", expired_count)
    return expired_count
