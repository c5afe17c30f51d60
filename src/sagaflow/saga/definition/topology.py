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
"""Saga topology — partition a step dependency graph into phases via Kahn's algorithm."""

from __future__ import annotations

from collections import defaultdict

from sagaflow.kernel.exceptions import SagaDefinitionException


class SagaTopology:
    """Computes execution phases from a dependency graph using Kahn's algorithm.

    Each phase contains step names whose dependencies are all satisfied by
    earlier phases, so the phase can be dispatched concurrently. Within a
    phase, names keep the order in which they were declared.
    """

    @staticmethod
    def compute_layers(deps: dict[str, list[str]]) -> list[list[str]]:
        """Compute phases from a dependency map.

        Parameters
        ----------
        deps:
            Mapping of ``step_name -> [dependency_names]`` in declaration
            order.  Every step must appear as a key even if it has no
            dependencies (empty list).

        Returns
        -------
        list[list[str]]
            Ordered list of phases.

        Raises
        ------
        SagaDefinitionException
            If a dependency is unknown or the graph contains a cycle.
        """
        if not deps:
            return []

        declared = list(deps)
        position = {name: i for i, name in enumerate(declared)}

        # -- 1. Build adjacency list and in-degree map ----------------------
        in_degree: dict[str, int] = {node: 0 for node in deps}
        adjacency: dict[str, list[str]] = defaultdict(list)

        for node, predecessors in deps.items():
            for pred in predecessors:
                if pred not in deps:
                    raise SagaDefinitionException(
                        f"Step '{node}' depends on '{pred}' which is not defined",
                        code="UNKNOWN_DEPENDENCY",
                    )
                adjacency[pred].append(node)
                in_degree[node] += 1

        # -- 2. Seed with all zero in-degree nodes ---------------------------
        current = [node for node in declared if in_degree[node] == 0]

        layers: list[list[str]] = []
        processed = 0

        # -- 3. BFS phase by phase ------------------------------------------
        while current:
            layers.append(current)
            processed += len(current)

            ready: list[str] = []
            for node in current:
                for neighbour in adjacency[node]:
                    in_degree[neighbour] -= 1
                    if in_degree[neighbour] == 0:
                        ready.append(neighbour)

            current = sorted(ready, key=position.__getitem__)

        # -- 4. Cycle detection ---------------------------------------------
        if processed != len(deps):
            raise SagaDefinitionException(
                f"Dependency graph contains a cycle: processed {processed} of {len(deps)} steps",
                code="DEPENDENCY_CYCLE",
            )

        return layers
