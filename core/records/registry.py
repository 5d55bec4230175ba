"""
Explicit registry of model types.

There is no module-level registry: each application (or test) builds its
own and passes model types to the audit and repair engines directly.
"""

import logging
from typing import Dict, Iterator, List

from ..errors import ConfigurationError
from ..storage.client import RedisStoreClient
from .model_type import ModelType

logger = logging.getLogger(__name__)


class ModelRegistry:
    """Container of registered model types sharing one store client"""

    def __init__(self, client: RedisStoreClient):
        self.client = client
        self._types: Dict[str, ModelType] = {}

    def register(self, model_type: ModelType) -> ModelType:
        """
        Bind a model type to the client and build its accessors.

        Owner and through types named by its declarations must already be
        registered (a type may name itself).

        Raises:
            ConfigurationError: duplicate name or unresolved type reference
        """
        if model_type.name in self._types:
            raise ConfigurationError(f"Model type {model_type.name!r} is already registered")

        def resolve(name: str) -> ModelType:
            if name == model_type.name:
                return model_type
            try:
                return self._types[name]
            except KeyError:
                raise ConfigurationError(
                    f"{model_type.name} refers to {name!r}, which is not registered yet"
                ) from None

        from ..relationships.builder import build_accessors

        model_type.bind(self.client)
        build_accessors(model_type, resolve)
        self._types[model_type.name] = model_type
        logger.debug(f"Registered model type {model_type.name}")
        return model_type

    def get(self, name: str) -> ModelType:
        try:
            return self._types[name]
        except KeyError:
            raise ConfigurationError(f"Unknown model type {name!r}") from None

    def __getitem__(self, name: str) -> ModelType:
        return self.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._types

    def __iter__(self) -> Iterator[ModelType]:
        return iter(self._types.values())

    def __len__(self) -> int:
        return len(self._types)

    @property
    def names(self) -> List[str]:
        return sorted(self._types)
