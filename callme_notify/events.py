from dataclasses import dataclass

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")


class InvalidEventError(ValueError):
    pass


@dataclass(frozen=True)
class ChangeEvent:
    """A database webhook delivery: new row state plus optional previous state."""

    type: str
    table: str
    record: dict | None
    old_record: dict | None = None
    schema: str = "public"

    def new_value(self, column: str):
        return (self.record or {}).get(column)

    def old_value(self, column: str):
        return (self.old_record or {}).get(column)

    def is_rising_edge(self, column: str) -> bool:
        return bool(self.new_value(column)) and self.old_value(column) is not True


def parse_change_event(payload) -> ChangeEvent:
    if not isinstance(payload, dict):
        raise InvalidEventError("Webhook body must be a JSON object")

    event_type = str(payload.get("type") or "").upper()
    if event_type not in EVENT_TYPES:
        raise InvalidEventError(f"Unsupported event type: {payload.get('type')!r}")

    record = payload.get("record")
    old_record = payload.get("old_record")
    if event_type in ("INSERT", "UPDATE") and not isinstance(record, dict):
        raise InvalidEventError(f"{event_type} event without a record object")
    if record is not None and not isinstance(record, dict):
        raise InvalidEventError("record must be an object")
    if old_record is not None and not isinstance(old_record, dict):
        raise InvalidEventError("old_record must be an object")

    return ChangeEvent(
        type=event_type,
        table=str(payload.get("table") or ""),
        record=record,
        old_record=old_record or None,
        schema=str(payload.get("schema") or "public"),
    )
