"""
Record layer: pydantic records, model types and the type registry.
"""

from .record import Record, ThroughRecord, serialize_value, score_from_fields
from .model_type import ModelType
from .registry import ModelRegistry

__all__ = [
    "Record",
    "ThroughRecord",
    "ModelType",
    "ModelRegistry",
    "serialize_value",
    "score_from_fields"
]
