"""
Dependency resolution for clearance steps.

Pure functions over step snapshots: nothing here touches the session.
Steps are duck-typed; anything with ``order``, ``depends_on``, ``status``,
``reviewer_role``, ``is_interdependent``, ``interdependent_with`` and
``vp_signature_type`` attributes works, which keeps the relaxation pass
testable without a database.

    dependencies_met(step, all_steps)   single-step prerequisite check
    StepGraph(steps).relax()            desired status for every step
"""

from __future__ import annotations

from collections.abc import Sequence

# Statuses the engine never recomputes
TERMINAL_STATUSES = frozenset({"cleared", "issue"})


def dependencies_met(step, all_steps: Sequence) -> bool:
    """
    True iff ``step.depends_on`` is empty or every step whose order appears
    in it is cleared.

    Several steps may share an order (a parallel stage); all of them must be
    cleared. An order no step carries counts as not met.
    """
    required = set(step.depends_on or ())
    if not required:
        return True
    seen: set[int] = set()
    for other in all_steps:
        if other.order in required:
            if other.status != "cleared":
                return False
            seen.add(other.order)
    return seen == required


class StepGraph:
    """
    Arena view of one request's steps.

    Steps live in a list; dependency edges are stored as index lists so the
    relaxation pass is a single sweep with no lookups by order.
    """

    def __init__(self, steps: Sequence, halted: bool = False):
        self.steps = list(steps)
        # set while the request is rejected or archived; reviewer steps park as pending
        self.halted = halted
        self._by_order: dict[int, list[int]] = {}
        for idx, step in enumerate(self.steps):
            self._by_order.setdefault(step.order, []).append(idx)

        # _deps[i] is None when a referenced order has no steps (fails closed)
        self._deps: list[list[int] | None] = []
        for step in self.steps:
            edges: list[int] | None = []
            for order in step.depends_on or ():
                members = self._by_order.get(order)
                if not members:
                    edges = None
                    break
                edges.extend(members)
            self._deps.append(edges)

        self._groups: list[list[int]] = []
        for idx, step in enumerate(self.steps):
            if not step.is_interdependent:
                self._groups.append([])
                continue
            roles = set(step.interdependent_with or ())
            self._groups.append([
                j for j, other in enumerate(self.steps)
                if j != idx and other.is_interdependent and other.reviewer_role in roles
            ])

        self.initial_gate = self.gate_index("initial")
        self.final_gate = self.gate_index("final")

    def __len__(self):
        return len(self.steps)

    def gate_index(self, signature_type: str) -> int | None:
        for idx, step in enumerate(self.steps):
            if step.vp_signature_type == signature_type:
                return idx
        return None

    def index_of(self, step) -> int:
        for idx, candidate in enumerate(self.steps):
            if candidate is step:
                return idx
        raise KeyError(step)

    def group_members(self, idx: int) -> list[int]:
        """Other members of the interdependent group of step *idx*."""
        return list(self._groups[idx])

    def dependencies_met(self, idx: int) -> bool:
        edges = self._deps[idx]
        if edges is None:
            return False
        return all(self.steps[j].status == "cleared" for j in edges)

    def group_unlocked(self, idx: int) -> bool:
        """True once any other member of step *idx*'s group has cleared."""
        return any(self.steps[j].status == "cleared" for j in self._groups[idx])

    def graph_open(self) -> bool:
        """Whether non-gate steps may be unlocked at all."""
        if self.initial_gate is None:
            return True
        return self.steps[self.initial_gate].status == "cleared"

    def desired_status(self, idx: int) -> str:
        step = self.steps[idx]
        if step.status in TERMINAL_STATUSES:
            return step.status
        if step.vp_signature_type is None and (self.halted or not self.graph_open()):
            return "pending"
        if self.group_unlocked(idx) or self.dependencies_met(idx):
            return "available"
        return "pending"

    def relax(self) -> list[str]:
        """Desired status for every step, in arena order."""
        return [self.desired_status(i) for i in range(len(self.steps))]

    def dependents(self, idx: int) -> set[int]:
        """Indices of every step reachable downstream of step *idx*."""
        reverse: dict[int, set[int]] = {}
        for j, edges in enumerate(self._deps):
            for k in edges or ():
                reverse.setdefault(k, set()).add(j)
        found: set[int] = set()
        stack = [idx]
        while stack:
            current = stack.pop()
            for nxt in reverse.get(current, ()):
                if nxt not in found:
                    found.add(nxt)
                    stack.append(nxt)
        found.discard(idx)
        return found

    def all_cleared(self) -> bool:
        return bool(self.steps) and all(s.status == "cleared" for s in self.steps)

    def status_counts(self) -> dict[str, int]:
        counts = {"pending": 0, "available": 0, "cleared": 0, "issue": 0}
        for s in self.steps:
            counts[s.status] = counts.get(s.status, 0) + 1
        return counts
