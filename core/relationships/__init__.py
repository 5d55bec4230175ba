"""
Relationship layer: declarations, the identifier timeline, unique and multi
indexes, and participation collections.
"""

from .declarations import UniqueIndexSpec, MultiIndexSpec, ParticipationSpec
from .timeline import Timeline
from .unique_index import UniqueIndex
from .multi_index import MultiIndex
from .participation import Participation, ParticipationCollection

__all__ = [
    "UniqueIndexSpec",
    "MultiIndexSpec",
    "ParticipationSpec",
    "Timeline",
    "UniqueIndex",
    "MultiIndex",
    "Participation",
    "ParticipationCollection"
]
