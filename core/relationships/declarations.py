"""
Relationship declarations.

Declarations are plain frozen values attached to a ModelType. The registry
turns each one into a bound accessor when the type is registered.
"""

from dataclasses import dataclass
from typing import Optional

from ..storage.datatypes import CollectionKind


@dataclass(frozen=True)
class UniqueIndexSpec:
    """Field value -> single identifier, global or per owner instance"""
    field: str
    name: Optional[str] = None
    within: Optional[str] = None  # owner type name; None is the global scope

    @property
    def index_name(self) -> str:
        return self.name or f"{self.field}_index"

    @property
    def scoped(self) -> bool:
        return self.within is not None


@dataclass(frozen=True)
class MultiIndexSpec:
    """Field value -> set of identifiers, global or per owner instance"""
    field: str
    name: Optional[str] = None
    within: Optional[str] = None

    @property
    def index_name(self) -> str:
        return self.name or f"{self.field}_multi"

    @property
    def scoped(self) -> bool:
        return self.within is not None


@dataclass(frozen=True)
class ParticipationSpec:
    """
    Membership of the declaring type in a named collection.

    With owner=None the collection is class-level (one per dependent type);
    otherwise there is one collection per owner instance.
    """
    collection: str
    owner: Optional[str] = None
    kind: CollectionKind = CollectionKind.SORTED_SET
    score_field: Optional[str] = None
    through: Optional[str] = None
    remove_on_delete: bool = False

    @property
    def class_level(self) -> bool:
        return self.owner is None
