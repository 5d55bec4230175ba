"""
Record base model and value serialization.

Records are pydantic models persisted as Redis hashes. Strings are stored
as-is, other values JSON-encoded, and None values are not stored.
"""

import json
import time
import types
import typing
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, PrivateAttr

CREATED_FIELD = "created"
UPDATED_FIELD = "updated"


def serialize_value(value: Any) -> Optional[str]:
    """Convert a field value to its stored string form"""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _is_text_annotation(annotation: Any) -> bool:
    if annotation is str:
        return True
    origin = typing.get_origin(annotation)
    if origin is Union or origin is getattr(types, "UnionType", None):
        args = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        return len(args) == 1 and args[0] is str
    return False


def _coerce_float(value: Optional[str]) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def score_from_fields(fields: Mapping[str, Optional[str]], now: Optional[float] = None) -> float:
    """
    Timeline score for a stored hash: updated, then created, then wall clock.

    Args:
        fields: Raw hash fields as stored
        now: Clock value to fall back on

    Returns:
        Score as epoch seconds
    """
    for name in (UPDATED_FIELD, CREATED_FIELD):
        score = _coerce_float(fields.get(name))
        if score is not None:
            return score
    return now if now is not None else time.time()


class Record(BaseModel):
    """
    Base class for persisted records.

    Subclasses declare their fields with pydantic annotations. The owning
    ModelType names the identifier field.
    """
    model_config = ConfigDict(
        validate_assignment=True,
        extra="ignore"
    )

    created: Optional[float] = None
    updated: Optional[float] = None

    # Field values as last written or loaded, used to drop stale index entries
    _persisted: Dict[str, str] = PrivateAttr(default_factory=dict)

    def to_storage(self) -> Dict[str, Optional[str]]:
        """Serialize every declared field, None for unset values"""
        return {
            name: serialize_value(getattr(self, name))
            for name in type(self).model_fields
        }

    @classmethod
    def from_storage(cls, data: Mapping[str, str]) -> 'Record':
        """Build a record from a stored hash, ignoring unknown fields"""
        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            if name not in data:
                continue
            raw = data[name]
            if _is_text_annotation(field.annotation):
                values[name] = raw
            else:
                try:
                    values[name] = json.loads(raw)
                except (TypeError, ValueError):
                    values[name] = raw

        record = cls(**values)
        record._persisted = {k: v for k, v in data.items() if k in cls.model_fields}
        return record

    def prepare_for_save(self, now: Optional[float] = None) -> None:
        """Stamp created (first save only) and updated"""
        now = now if now is not None else time.time()
        if self.created is None:
            self.created = now
        self.updated = now

    def timestamp_score(self) -> float:
        return score_from_fields({
            UPDATED_FIELD: serialize_value(self.updated),
            CREATED_FIELD: serialize_value(self.created),
        })

    def persisted_value(self, field: str) -> Optional[str]:
        return self._persisted.get(field)

    def mark_persisted(self, stored: Dict[str, str]) -> None:
        self._persisted = dict(stored)


class ThroughRecord(Record):
    """Join record created for through-model participations"""
    key: str
    owner_id: str
    member_id: str
