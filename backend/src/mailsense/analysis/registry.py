"""
Analysis registry.

Lookup table over the catalog, keyed by kind. Built once at bootstrap with
``init_registry`` and passed to the services that need it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from mailsense.domain_models.analysis import AnalysisDefinition

logger = logging.getLogger(__name__)


class AnalysisRegistry:
    def __init__(self) -> None:
        self._definitions: dict[str, AnalysisDefinition] = {}

    def register(self, definition: AnalysisDefinition) -> None:
        """Insert or overwrite by kind; the last registration wins."""
        if definition.kind in self._definitions:
            logger.warning(
                "Analysis kind %s is already registered; overwriting", definition.kind
            )
        self._definitions[definition.kind] = definition

    def register_all(self, definitions: Iterable[AnalysisDefinition]) -> None:
        for definition in definitions:
            self.register(definition)

    def get(self, kind: str) -> AnalysisDefinition | None:
        return self._definitions.get(kind)

    def get_all(self) -> list[AnalysisDefinition]:
        return list(self._definitions.values())

    def get_enabled_analyses(self, kinds: Iterable[str]) -> list[AnalysisDefinition]:
        """Definitions for the known kinds, in request order. Unknown kinds are dropped."""
        definitions: list[AnalysisDefinition] = []
        for kind in kinds:
            definition = self._definitions.get(kind)
            if definition is None:
                logger.warning("Analysis kind %s not found in registry; skipping", kind)
                continue
            definitions.append(definition)
        return definitions

    def has(self, kind: str) -> bool:
        return kind in self._definitions

    def size(self) -> int:
        return len(self._definitions)

    def clear(self) -> None:
        self._definitions.clear()

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, kind: object) -> bool:
        return kind in self._definitions


def init_registry(catalog: Iterable[AnalysisDefinition]) -> AnalysisRegistry:
    registry = AnalysisRegistry()
    registry.register_all(catalog)
    logger.info("Analysis registry initialized with %d definitions", registry.size())
    return registry
