"""Change events delivered by the realtime transport.

A change event is a closed tagged union over insert, update and delete.
Payloads are validated here, at the registry boundary, so observers only
ever see one of the three typed variants.
"""

import logging
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .types import EventFormatError, Record

logger = logging.getLogger(__name__)


class _ChangeEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    table: str
    commit_timestamp: Optional[str] = None


class InsertEvent(_ChangeEventBase):
    """A record was created. ``new`` is the post-image."""

    event_type: Literal["insert"] = "insert"
    new: Dict[str, Any]

    @property
    def record(self) -> Record:
        return self.new


class UpdateEvent(_ChangeEventBase):
    """A record changed. ``new`` is the post-image; ``old`` may hold only the key."""

    event_type: Literal["update"] = "update"
    new: Dict[str, Any]
    old: Optional[Dict[str, Any]] = None

    @property
    def record(self) -> Record:
        return self.new


class DeleteEvent(_ChangeEventBase):
    """A record was removed. ``old`` identifies it."""

    event_type: Literal["delete"] = "delete"
    old: Dict[str, Any]

    @field_validator("old")
    @classmethod
    def _old_not_empty(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v:
            raise ValueError("delete event must identify the removed record")
        return v

    @property
    def record(self) -> Record:
        return self.old


ChangeEvent = Annotated[
    Union[InsertEvent, UpdateEvent, DeleteEvent],
    Field(discriminator="event_type"),
]

_change_event_adapter: TypeAdapter = TypeAdapter(ChangeEvent)


def _flatten(payload: Dict[str, Any], default_table: Optional[str]) -> Dict[str, Any]:
    """Normalize the accepted payload shapes into the model's field names.

    Accepted shapes:
    - ``{"eventType": "INSERT", "new": {...}, "old": {...}, "table": ...}``
    - ``{"data": {"type": "INSERT", "record": {...}, "old_record": {...}, ...}}``
    - ``{"type": "INSERT", "record": {...}, "old_record": {...}, ...}``
    """
    body = payload.get("data") if isinstance(payload.get("data"), dict) else payload

    event_type = body.get("eventType") or body.get("event_type") or body.get("type")
    if not isinstance(event_type, str):
        raise EventFormatError(f"Missing event type in payload: {sorted(body)}")

    new = body.get("new", body.get("record"))
    old = body.get("old", body.get("old_record"))

    flat: Dict[str, Any] = {
        "event_type": event_type.lower(),
        "table": body.get("table") or default_table,
        "commit_timestamp": body.get("commit_timestamp"),
    }
    if new:
        flat["new"] = new
    if old:
        flat["old"] = old
    return flat


def parse_change_event(payload: Any, default_table: Optional[str] = None) -> ChangeEvent:
    """Validate a raw transport payload into a typed change event.

    Args:
        payload: Raw payload handed over by the transport.
        default_table: Table to assume when the payload does not name one
            (the subscription key's table).

    Raises:
        EventFormatError: If the payload is not a well-formed change event.
    """
    if isinstance(payload, (InsertEvent, UpdateEvent, DeleteEvent)):
        return payload
    if not isinstance(payload, dict):
        raise EventFormatError(f"Change event payload must be a dict, got {type(payload).__name__}")

    flat = _flatten(payload, default_table)
    try:
        return _change_event_adapter.validate_python(flat)
    except ValidationError as e:
        raise EventFormatError(f"Invalid {flat.get('event_type')} event: {e}") from e
