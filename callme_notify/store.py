from datetime import time as dt_time

from postgrest.exceptions import APIError
from supabase import create_client

from callme_notify.config import Settings

PAGE_SIZE = 1000

# Keeps in_() filters well inside URL length limits
ID_BATCH_SIZE = 200

UNIQUE_VIOLATION = "23505"


def build_client(settings: Settings):
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def fetch_all_rows(query_builder) -> list[dict]:
    """Paginate through a Supabase query to fetch all matching rows.

    PostgREST caps responses at ~1000 rows by default, so this pulls
    PAGE_SIZE batches with .range() until a short batch comes back.
    """
    all_rows: list[dict] = []
    offset = 0
    while True:
        response = query_builder.range(offset, offset + PAGE_SIZE - 1).execute()
        batch = response.data or []
        all_rows.extend(batch)
        if len(batch) < PAGE_SIZE:
            break
        offset += PAGE_SIZE
    return all_rows


def id_batches(ids, size: int = ID_BATCH_SIZE):
    """Yield distinct, non-empty ids in lists of at most `size`."""
    unique = list(dict.fromkeys(str(value) for value in ids if value))
    for start in range(0, len(unique), size):
        yield unique[start:start + size]


def is_unique_violation(exc: APIError) -> bool:
    return str(getattr(exc, "code", "") or "") == UNIQUE_VIOLATION


def parse_time_of_day(value: str | None) -> dt_time | None:
    """Parse a Postgres ``time`` value ("HH:MM" or "HH:MM:SS")."""
    if not value:
        return None
    parts = str(value).strip().split(":")
    try:
        hour = int(parts[0])
        minute = int(parts[1]) if len(parts) > 1 else 0
        second = int(float(parts[2])) if len(parts) > 2 else 0
    except ValueError:
        return None
    if hour == 24 and minute == 0 and second == 0:
        return dt_time(0, 0)
    if not (0 <= hour < 24 and 0 <= minute < 60 and 0 <= second < 60):
        return None
    return dt_time(hour, minute, second)


def short_token(token: str) -> str:
    return f"{token[:8]}…"
