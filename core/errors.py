"""
Exception types for kv-relations.

Data-consistency problems found by an audit are never raised; they become
findings in the report. Errors from the Redis client propagate unchanged.
"""

from typing import Optional


class KVRelationsError(Exception):
    """Base class for kv-relations errors"""
    pass


class RecordExistsError(KVRelationsError):
    """Raised when a unique index already maps a value to another record"""

    def __init__(self, index_key: str, field_value: str, existing_identifier: str,
                 identifier: Optional[str] = None):
        self.index_key = index_key
        self.field_value = field_value
        self.existing_identifier = existing_identifier
        self.identifier = identifier
        super().__init__(
            f"{field_value!r} already belongs to {existing_identifier!r} in {index_key}"
        )


class OperationModeError(KVRelationsError):
    """Raised when an operation is attempted where it cannot run safely"""
    pass


class ConfigurationError(KVRelationsError):
    """Raised for invalid model or relationship declarations"""
    pass
