"""Reads over the social graph shared by the notifiers."""
from callme_notify.store import fetch_all_rows, id_batches

PREFERENCE_COLUMNS = (
    "id,display_name,email,enable_push_notifications,enable_email_notifications,"
    "notify_friend_requests,notify_availability_changes,notify_call_suggestions,"
    "enable_quiet_hours,quiet_hours_start,quiet_hours_end,timezone"
)

FRIENDSHIP_COLUMNS = "id,user_id,friend_id,is_muted,muted_by"


def load_accepted_friendships(client, user_id: str) -> list[dict]:
    return fetch_all_rows(
        client.table("friendships")
        .select(FRIENDSHIP_COLUMNS)
        .or_(f"user_id.eq.{user_id},friend_id.eq.{user_id}")
        .eq("status", "accepted")
        .order("id")
    )


def load_accepted_friendships_among(client, user_ids: list[str]) -> list[dict]:
    """Accepted friendships whose two endpoints are both in `user_ids`."""
    members = {str(uid) for uid in user_ids if uid}
    rows: list[dict] = []
    for batch in id_batches(user_ids):
        rows.extend(
            row
            for row in fetch_all_rows(
                client.table("friendships")
                .select(FRIENDSHIP_COLUMNS)
                .eq("status", "accepted")
                .in_("user_id", batch)
                .order("id")
            )
            if str(row["friend_id"]) in members
        )
    return rows


def load_profiles(client, user_ids, columns: str = PREFERENCE_COLUMNS) -> dict[str, dict]:
    profiles: dict[str, dict] = {}
    for batch in id_batches(user_ids):
        rows = fetch_all_rows(client.table("profiles").select(columns).in_("id", batch).order("id"))
        profiles.update((str(row["id"]), row) for row in rows)
    return profiles


def load_profile(client, user_id: str, columns: str = PREFERENCE_COLUMNS) -> dict | None:
    rows = client.table("profiles").select(columns).eq("id", user_id).limit(1).execute().data or []
    return rows[0] if rows else None


def counterpart(friendship: dict, user_id: str) -> str:
    if str(friendship["user_id"]) == user_id:
        return str(friendship["friend_id"])
    return str(friendship["user_id"])


def mute_pairs(friendships: list[dict]) -> set[tuple[str, str]]:
    """(muter, muted) pairs for the muted rows.

    Either side of a friendship may toggle its shared is_muted flag; the
    friendships_track_muted_by trigger records who did in muted_by. Rows
    muted before that column existed have no muted_by and are attributed to
    their user_id side.
    """
    pairs = set()
    for row in friendships:
        if not row.get("is_muted"):
            continue
        muter = str(row.get("muted_by") or row["user_id"])
        pairs.add((muter, counterpart(row, muter)))
    return pairs


def push_enabled_for(profile: dict | None, event_flag: str) -> bool:
    if not profile:
        return False
    return bool(profile.get("enable_push_notifications")) and bool(profile.get(event_flag))
