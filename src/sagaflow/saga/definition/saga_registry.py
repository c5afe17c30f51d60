# Copyright 2026 Firefly Software Solutions Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Saga registry — lookup of immutable saga definitions by name."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sagaflow.kernel.exceptions import SagaDefinitionException
from sagaflow.saga.definition.saga_definition import SagaDefinition

logger = logging.getLogger(__name__)


class SagaRegistry:
    """Holds every saga definition known to the orchestrator.

    Definitions are registered at startup (from code or configuration) and
    are read-only afterwards, so one registry can be shared by all engine
    workers.
    """

    def __init__(self, definitions: Iterable[SagaDefinition] = ()) -> None:
        self._sagas: dict[str, SagaDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: SagaDefinition) -> SagaDefinition:
        """Register *definition*.

        Raises:
            SagaDefinitionException: If a saga with the same name exists.
        """
        if definition.name in self._sagas:
            raise SagaDefinitionException(
                f"Saga '{definition.name}' is already registered", code="DUPLICATE_SAGA"
            )
        self._sagas[definition.name] = definition
        logger.debug(
            "Registered saga '%s' (%d steps, %d phases)",
            definition.name,
            len(definition.steps),
            definition.phase_count,
        )
        return definition

    def register_from_config(self, entries: Iterable[Mapping[str, Any]]) -> list[SagaDefinition]:
        """Register every definition described by configuration *entries*."""
        return [self.register(SagaDefinition.from_dict(entry)) for entry in entries]

    def get(self, name: str) -> SagaDefinition | None:
        return self._sagas.get(name)

    def require(self, name: str) -> SagaDefinition:
        """Return the definition called *name*.

        Raises:
            SagaDefinitionException: If no such saga is registered.
        """
        definition = self._sagas.get(name)
        if definition is None:
            raise SagaDefinitionException(f"Saga '{name}' is not registered", code="UNKNOWN_SAGA")
        return definition

    def names(self) -> list[str]:
        return list(self._sagas)

    def __contains__(self, name: object) -> bool:
        return name in self._sagas

    def __len__(self) -> int:
        return len(self._sagas)
