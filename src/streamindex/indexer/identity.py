"""Document identity for change events.

An event is addressed in the index by an id derived only from its own
content (or its log position), so redelivering it overwrites the same
document instead of creating a new one.
"""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from streamindex.common.types import PipelineMessage

ID_STRATEGY_EVENT = "event"
ID_STRATEGY_COORDINATES = "coordinates"


class DocumentIdError(ValueError):
    """No document id could be derived from a record."""

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class EventMeta(BaseModel):
    """The ``meta`` object of a change event.

    A numeric ``id`` is kept in its decimal text form.
    """

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str = Field(..., min_length=1, description="Stable identifier of the change")

    @field_validator("id", mode="before")
    @classmethod
    def reject_bool_id(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("meta.id must be a string or a number")
        return v

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("meta.id cannot be empty or whitespace")
        return v


class ChangeEvent(BaseModel):
    """A change event as published on the feed.

    Only ``meta.id`` is required; every other field is kept as-is.

    Example:
        >>> ChangeEvent.model_validate_json('{"meta": {"id": "X1"}, "v": 1}').meta.id
        'X1'
    """

    model_config = ConfigDict(extra="allow")

    meta: EventMeta


def _decode(value: bytes | None) -> Any:
    if value is None:
        raise DocumentIdError("empty_payload")
    try:
        return json.loads(value)
    except (UnicodeDecodeError, ValueError) as e:
        raise DocumentIdError("malformed_json", str(e)[:200]) from e


def event_id(value: bytes | None) -> str:
    """``meta.id`` of a JSON change event payload."""
    data = _decode(value)
    if not isinstance(data, dict):
        raise DocumentIdError("not_an_object", type(data).__name__)
    if not isinstance(data.get("meta"), dict):
        raise DocumentIdError("missing_meta")

    try:
        return ChangeEvent.model_validate(data).meta.id
    except ValidationError as e:
        raise DocumentIdError("missing_meta_id", str(e.errors()[0].get("msg", ""))) from e


def extract_document_id(message: PipelineMessage, strategy: str = ID_STRATEGY_EVENT) -> str:
    """Derive the document id of ``message``.

    ``event`` reads the nested ``meta.id`` of the payload; ``coordinates``
    uses ``<topic>_<partition>_<offset>``. Raises DocumentIdError when the
    payload carries no usable id.
    """
    if strategy == ID_STRATEGY_EVENT:
        return event_id(message.value)
    if strategy == ID_STRATEGY_COORDINATES:
        return message.coordinates
    raise ValueError(f"Unknown id strategy: {strategy!r}")


__all__ = [
    "ChangeEvent",
    "DocumentIdError",
    "EventMeta",
    "ID_STRATEGY_COORDINATES",
    "ID_STRATEGY_EVENT",
    "event_id",
    "extract_document_id",
]
