"""
Accessor builder run when a model type is registered.

Each declaration becomes one accessor object bound to its (type, field or
collection, scope) tuple. Validation errors surface here rather than on the
first read or write.
"""

import logging
from typing import TYPE_CHECKING, Callable, Optional

from ..errors import ConfigurationError
from ..records.record import ThroughRecord
from .declarations import MultiIndexSpec, ParticipationSpec, UniqueIndexSpec
from .multi_index import MultiIndex
from .participation import Participation
from .timeline import TIMELINE_NAME, Timeline
from .unique_index import UniqueIndex

if TYPE_CHECKING:
    from ..records.model_type import ModelType

logger = logging.getLogger(__name__)

Resolver = Callable[[str], 'ModelType']


def build_accessors(model_type: 'ModelType', resolve: Resolver) -> None:
    """
    Attach timeline, index and participation accessors to a model type.

    Args:
        model_type: Type being registered
        resolve: Looks up other registered types by name

    Raises:
        ConfigurationError: unknown fields or owner types, duplicate names,
            or an invalid through-model declaration
    """
    fields = model_type.record_class.model_fields
    model_type.timeline = Timeline(model_type)
    model_type.unique_indexes = {}
    model_type.multi_indexes = {}
    model_type.participations = {}

    for spec in model_type.relationships:
        if isinstance(spec, UniqueIndexSpec):
            _check_field(model_type, spec.field, fields)
            _check_unique_name(model_type, spec.index_name, model_type.unique_indexes)
            owner = resolve(spec.within) if spec.scoped else None
            _check_key_name(model_type, spec.index_name, owner)
            model_type.unique_indexes[spec.index_name] = UniqueIndex(model_type, spec, owner)

        elif isinstance(spec, MultiIndexSpec):
            _check_field(model_type, spec.field, fields)
            _check_unique_name(model_type, spec.index_name, model_type.multi_indexes)
            owner = resolve(spec.within) if spec.scoped else None
            _check_key_name(model_type, spec.index_name, owner)
            model_type.multi_indexes[spec.index_name] = MultiIndex(model_type, spec, owner)

        elif isinstance(spec, ParticipationSpec):
            _check_unique_name(model_type, spec.collection, model_type.participations)
            if spec.score_field:
                _check_field(model_type, spec.score_field, fields)
            owner = resolve(spec.owner) if not spec.class_level else None
            _check_key_name(model_type, spec.collection, owner)
            through = _resolve_through(model_type, spec, resolve)
            model_type.participations[spec.collection] = Participation(model_type, spec, owner, through)

        else:
            raise ConfigurationError(f"Unknown relationship declaration: {spec!r}")

    for index in list(model_type.unique_indexes.values()) + list(model_type.multi_indexes.values()):
        if index.scoped:
            index.link = _linked_participation(model_type, index.spec.within)

    logger.debug(
        f"Built accessors for {model_type.name}: "
        f"{len(model_type.unique_indexes)} unique, {len(model_type.multi_indexes)} multi, "
        f"{len(model_type.participations)} participations"
    )


def _check_field(model_type: 'ModelType', field: str, fields) -> None:
    if field not in fields:
        raise ConfigurationError(f"{model_type.record_class.__name__} has no field {field!r}")


def _check_unique_name(model_type: 'ModelType', name: str, existing) -> None:
    if name in existing:
        raise ConfigurationError(f"{model_type.name} declares {name!r} more than once")


def _check_key_name(model_type: 'ModelType', name: str, owner: Optional['ModelType']) -> None:
    """Reject names whose keys would coincide with records or the timeline"""
    if owner is not None and name == owner.suffix:
        raise ConfigurationError(f"{model_type.name}: {name!r} would share keys with {owner.name} records")
    if owner is None and name == TIMELINE_NAME:
        raise ConfigurationError(f"{model_type.name}: {name!r} is reserved for the timeline")


def _resolve_through(model_type: 'ModelType', spec: ParticipationSpec,
                     resolve: Resolver) -> Optional['ModelType']:
    if spec.through is None:
        return None
    if spec.class_level:
        raise ConfigurationError(f"{spec.collection}: through models need an owner type")
    through = resolve(spec.through)
    if not issubclass(through.record_class, ThroughRecord):
        raise ConfigurationError(
            f"Through model {through.name!r} must use a ThroughRecord subclass"
        )
    return through


def _linked_participation(model_type: 'ModelType', owner_name: str) -> Optional[Participation]:
    """Owner-scoped participation on the same owner type, if one is declared"""
    for participation in model_type.participations.values():
        if participation.spec.owner == owner_name:
            return participation
    return None
