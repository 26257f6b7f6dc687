"""Immutable workflow graph snapshots and graph queries."""

from __future__ import annotations

import heapq
from collections import deque
from typing import Deque, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .contracts import Connection, Step, StepKind
from .errors import (
    CycleDetectedError,
    DuplicateStepError,
    InvalidEndpointError,
    NotFoundError,
    SelfLoopError,
    ValidationError,
)


class Graph(BaseModel):
    """Ordered steps plus directed connections of one workflow.

    A ``Graph`` is never changed in place: every edit returns a new graph, so
    a reader holding a reference always sees a consistent snapshot.
    """

    model_config = ConfigDict(frozen=True)

    steps: Tuple[Step, ...] = Field(default_factory=tuple)
    connections: Tuple[Connection, ...] = Field(default_factory=tuple)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Graph":
        ids: Set[str] = set()
        for step in self.steps:
            if step.id in ids:
                raise ValueError(f"Duplicate step id: {step.id}")
            ids.add(step.id)
        for conn in self.connections:
            if conn.source not in ids or conn.target not in ids:
                raise ValueError(
                    f"Connection {conn.source} -> {conn.target} references unknown step"
                )
            if conn.source == conn.target:
                raise ValueError(f"Connection {conn.source} -> {conn.target} is a self-loop")
        if self.has_cycle():
            raise ValueError("Step graph contains a cycle")
        return self

    # ------------------------------------------------------------------
    # Edits
    def add_step(self, step: Step) -> "Graph":
        """Return a graph with ``step`` appended."""
        if self.get_step(step.id) is not None:
            raise DuplicateStepError(f"Step {step.id} already exists")
        return self._replace(steps=self.steps + (step,))

    def replace_step(self, step: Step) -> "Graph":
        """Return a graph with the step of the same id swapped for ``step``."""
        current = self.require_step(step.id)
        if current.kind is not step.kind:
            raise ValidationError(f"Step {step.id} cannot change kind")
        steps = tuple(step if s.id == step.id else s for s in self.steps)
        return self._replace(steps=steps)

    def remove_step(self, step_id: str) -> "Graph":
        """Return a graph without ``step_id`` and without any connection touching it."""
        self.require_step(step_id)
        steps = tuple(s for s in self.steps if s.id != step_id)
        connections = tuple(
            c for c in self.connections if c.source != step_id and c.target != step_id
        )
        return self._replace(steps=steps, connections=connections)

    def add_connection(
        self, source: str, target: str, branch: Optional[bool] = None
    ) -> "Graph":
        """Return a graph with the edge ``source -> target`` added."""
        missing = [sid for sid in (source, target) if self.get_step(sid) is None]
        if missing:
            raise InvalidEndpointError(
                f"Connection {source} -> {target} references unknown step(s): "
                + ", ".join(missing)
            )
        if source == target:
            raise SelfLoopError(f"Step {source} cannot connect to itself")
        if self._reaches(target, source):
            raise CycleDetectedError(f"Connection {source} -> {target} would create a cycle")

        new = Connection(source=source, target=target, branch=branch)
        connections = tuple(c for c in self.connections if c.key != new.key) + (new,)
        return self._replace(connections=connections)

    def remove_connection(self, source: str, target: str) -> "Graph":
        """Return a graph without ``source -> target``; absent edges are ignored."""
        connections = tuple(c for c in self.connections if c.key != (source, target))
        if len(connections) == len(self.connections):
            return self
        return self._replace(connections=connections)

    def _replace(self, **changes) -> "Graph":
        return self.model_copy(update=changes)

    # ------------------------------------------------------------------
    # Queries
    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def require_step(self, step_id: str) -> Step:
        step = self.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found")
        return step

    def outgoing(self, step_id: str) -> List[Connection]:
        return [c for c in self.connections if c.source == step_id]

    def incoming(self, step_id: str) -> List[Connection]:
        return [c for c in self.connections if c.target == step_id]

    def successors(self, step_id: str) -> List[str]:
        return [c.target for c in self.outgoing(step_id)]

    def predecessors(self, step_id: str) -> List[str]:
        return [c.source for c in self.incoming(step_id)]

    def triggers(self) -> List[Step]:
        return [s for s in self.steps if s.kind is StepKind.TRIGGER]

    def reachable_from_triggers(self) -> Iterator[str]:
        """Yield ids of every step reachable from a trigger, triggers included.

        Computed afresh on each call; ids come out in breadth-first order
        starting from triggers in insertion order.
        """
        adjacency = self._adjacency()
        seen: Set[str] = set()
        queue: Deque[str] = deque(s.id for s in self.triggers())
        while queue:
            step_id = queue.popleft()
            if step_id in seen:
                continue
            seen.add(step_id)
            yield step_id
            queue.extend(t for t in adjacency.get(step_id, []) if t not in seen)

    def subgraph_reachable(self) -> "Graph":
        """The graph restricted to steps reachable from a trigger.

        Step order and connections among the kept steps are preserved.
        """
        keep = set(self.reachable_from_triggers())
        return self._replace(
            steps=tuple(s for s in self.steps if s.id in keep),
            connections=tuple(
                c for c in self.connections if c.source in keep and c.target in keep
            ),
        )

    def orphans(self) -> List[Step]:
        """Non-trigger steps with no inbound connection."""
        targets = {c.target for c in self.connections}
        return [s for s in self.steps if not s.is_trigger and s.id not in targets]

    def activation_problems(self) -> List[str]:
        """Reasons this graph may not be activated; empty when it is runnable."""
        problems: List[str] = []
        if not self.triggers():
            problems.append("Workflow has no trigger step")
        elif next(self.reachable_from_triggers(), None) is None:
            problems.append("No step is reachable from a trigger")
        for step in self.orphans():
            problems.append(
                f"Step '{step.title or step.kind.value}' ({step.id}) has no inbound connection"
            )
        return problems

    def has_cycle(self) -> bool:
        try:
            self.topological_order()
        except CycleDetectedError:
            return True
        return False

    def topological_order(self, subset: Optional[Iterable[str]] = None) -> List[str]:
        """Order ``subset`` (default: all steps) so every edge points forward.

        Ties are broken by step insertion order, so identical graphs always
        produce the same order.
        """
        position = {s.id: i for i, s in enumerate(self.steps)}
        nodes = set(position) if subset is None else set(subset) & set(position)
        indegree: Dict[str, int] = {n: 0 for n in nodes}
        for conn in self.connections:
            if conn.source in nodes and conn.target in nodes:
                indegree[conn.target] += 1

        ready = [(position[n], n) for n, deg in indegree.items() if deg == 0]
        heapq.heapify(ready)
        adjacency = self._adjacency()
        order: List[str] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for target in adjacency.get(node, []):
                if target not in nodes:
                    continue
                indegree[target] -= 1
                if indegree[target] == 0:
                    heapq.heappush(ready, (position[target], target))

        if len(order) != len(nodes):
            raise CycleDetectedError("Step graph contains a cycle")
        return order

    def _adjacency(self) -> Dict[str, List[str]]:
        adjacency: Dict[str, List[str]] = {}
        for conn in self.connections:
            adjacency.setdefault(conn.source, []).append(conn.target)
        return adjacency

    def _reaches(self, start: str, goal: str) -> bool:
        """Depth-first search for a forward path ``start -> ... -> goal``."""
        adjacency = self._adjacency()
        stack = [start]
        seen: Set[str] = set()
        while stack:
            node = stack.pop()
            if node == goal:
                return True
            if node in seen:
                continue
            seen.add(node)
            stack.extend(adjacency.get(node, []))
        return False

    # ------------------------------------------------------------------
    # Wire format
    def to_document(self) -> dict:
        return {
            "steps": [s.model_dump(mode="json") for s in self.steps],
            "connections": [
                c.model_dump(mode="json", by_alias=True, exclude_none=True)
                for c in self.connections
            ],
        }
