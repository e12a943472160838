"""
Static clearance workflow templates.

A template is an ordered list of stages. Each stage expands into one
ClearanceStep per reviewer role when a request is submitted. Stages at the
same ``order`` run in parallel; ``depends_on`` lists the orders that must be
fully cleared first.

The two VP gates sit in the same table as ordinary steps, tagged with
``vp_signature_type``: the initial gate alone at order 1, the final gate at
the last order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from clearance.core.exceptions import NotFoundError, ValidationError
from clearance.models.clearance import VP_SIGNATURE_TYPES

logger = logging.getLogger(__name__)


VICE_PRESIDENT_ROLE = "AcademicVicePresident"


@dataclass(frozen=True)
class StageTemplate:
    """One stage of a clearance workflow."""

    stage: str
    name: str
    order: int
    reviewer_roles: tuple[str, ...]
    depends_on: tuple[int, ...] = ()
    is_sequential: bool = True
    is_interdependent: bool = False
    interdependent_with: tuple[str, ...] = ()
    vp_signature_type: str | None = None
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "name": self.name,
            "order": self.order,
            "reviewer_roles": list(self.reviewer_roles),
            "depends_on": list(self.depends_on),
            "is_sequential": self.is_sequential,
            "is_interdependent": self.is_interdependent,
            "interdependent_with": list(self.interdependent_with),
            "vp_signature_type": self.vp_signature_type,
            "description": self.description,
        }


@dataclass
class WorkflowTemplate:
    name: str
    stages: list[StageTemplate] = field(default_factory=list)

    @property
    def step_count(self) -> int:
        return sum(len(s.reviewer_roles) for s in self.stages)


_STORES = ("Store1Reviewer", "Store2Reviewer")

ACADEMIC_STAFF_WORKFLOW = WorkflowTemplate(
    name="academic_staff",
    stages=[
        StageTemplate(
            stage="Initial",
            name="Vice President Initial Approval",
            order=1,
            reviewer_roles=(VICE_PRESIDENT_ROLE,),
            vp_signature_type="initial",
            description="Go-ahead for the clearance process to start",
        ),
        StageTemplate(
            stage="Initial",
            name="Immediate Supervisor Approval",
            order=2,
            reviewer_roles=("DepartmentReviewer",),
            depends_on=(1,),
        ),
        StageTemplate(
            stage="Middle",
            name="Department Clearances",
            order=3,
            reviewer_roles=(
                "LibraryReviewer",
                "GeneralServiceReviewer",
                "ICTReviewer",
                "StudentDeanReviewer",
                "RegistrarReviewer",
                "ResearchDirectorateReviewer",
                "CollegeReviewer",
                "InternalAuditReviewer",
                "EthicsReviewer",
                "CommunityEngagementReviewer",
                "RecordsArchivesReviewer",
                "FacilitiesReviewer",
            ),
            depends_on=(2,),
            is_sequential=False,
            description="Departments sign in any order",
        ),
        StageTemplate(
            stage="Middle",
            name="Store Clearance",
            order=4,
            reviewer_roles=_STORES,
            depends_on=(2,),
            is_sequential=False,
            is_interdependent=True,
            interdependent_with=_STORES,
            description="Either store may sign first; the other is then unlocked",
        ),
        StageTemplate(
            stage="Middle",
            name="Property Clearance",
            order=5,
            reviewer_roles=("PropertyDirectorReviewer",),
            depends_on=(4,),
        ),
        StageTemplate(
            stage="Middle",
            name="Finance Clearance",
            order=6,
            reviewer_roles=(
                "EmployeeFinanceReviewer",
                "FinanceSpecialistReviewer",
                "TreasurerReviewer",
                "FinanceExecutiveReviewer",
            ),
            depends_on=(3, 5),
            is_sequential=False,
        ),
        StageTemplate(
            stage="Final",
            name="Final Approvals",
            order=7,
            reviewer_roles=("CaseExecutiveReviewer", "HRDevelopmentReviewer"),
            depends_on=(6,),
            is_sequential=False,
        ),
        StageTemplate(
            stage="Final",
            name="HR Submission",
            order=8,
            reviewer_roles=("HumanResources",),
            depends_on=(7,),
        ),
        StageTemplate(
            stage="Final",
            name="Vice President Final Approval",
            order=9,
            reviewer_roles=(VICE_PRESIDENT_ROLE,),
            depends_on=(8,),
            vp_signature_type="final",
            description="Oversight sign-off once every department has cleared",
        ),
    ],
)

ADMINISTRATIVE_STAFF_WORKFLOW = WorkflowTemplate(
    name="administrative_staff",
    stages=[
        StageTemplate(
            stage="Initial",
            name="Vice President Initial Approval",
            order=1,
            reviewer_roles=(VICE_PRESIDENT_ROLE,),
            vp_signature_type="initial",
        ),
        StageTemplate(
            stage="Initial",
            name="Immediate Supervisor Approval",
            order=2,
            reviewer_roles=("DepartmentReviewer",),
            depends_on=(1,),
        ),
        StageTemplate(
            stage="Middle",
            name="Department Clearances",
            order=3,
            reviewer_roles=("LibraryReviewer", "ICTReviewer", "EmployeeFinanceReviewer"),
            depends_on=(2,),
            is_sequential=False,
        ),
        StageTemplate(
            stage="Middle",
            name="Store Clearance",
            order=4,
            reviewer_roles=_STORES,
            depends_on=(2,),
            is_sequential=False,
            is_interdependent=True,
            interdependent_with=_STORES,
        ),
        StageTemplate(
            stage="Final",
            name="HR Submission",
            order=5,
            reviewer_roles=("HumanResources",),
            depends_on=(3, 4),
        ),
        StageTemplate(
            stage="Final",
            name="Vice President Final Approval",
            order=6,
            reviewer_roles=(VICE_PRESIDENT_ROLE,),
            depends_on=(5,),
            vp_signature_type="final",
        ),
    ],
)


def validate_template(template: WorkflowTemplate) -> None:
    """
    Reject templates the engine cannot run.

    Raises ValidationError when a stage depends on an order no stage has,
    when the dependency edges form a cycle, when a gate tag is unknown or
    repeated, or when the initial gate does not stand alone at order 1.
    """
    if not template.stages:
        raise ValidationError(f"Workflow {template.name!r} has no stages")

    orders = {s.order for s in template.stages}
    edges: dict[int, set[int]] = {o: set() for o in orders}
    gates: dict[str, StageTemplate] = {}

    for s in template.stages:
        if not s.reviewer_roles:
            raise ValidationError(f"Stage {s.name!r} has no reviewer roles")
        missing = set(s.depends_on) - orders
        if missing:
            raise ValidationError(
                f"Stage {s.name!r} depends on unknown order(s) {sorted(missing)}",
                details={"stage": s.name, "missing_orders": sorted(missing)},
            )
        if s.order in s.depends_on:
            raise ValidationError(f"Stage {s.name!r} depends on its own order")
        edges[s.order].update(s.depends_on)

        if s.vp_signature_type is not None:
            if s.vp_signature_type not in VP_SIGNATURE_TYPES:
                raise ValidationError(f"Unknown vp_signature_type {s.vp_signature_type!r}")
            if s.vp_signature_type in gates:
                raise ValidationError(f"Workflow has more than one {s.vp_signature_type} gate")
            if len(s.reviewer_roles) != 1:
                raise ValidationError(f"Gate stage {s.name!r} must have exactly one reviewer role")
            gates[s.vp_signature_type] = s

        if s.is_interdependent:
            if len(s.interdependent_with) < 2:
                raise ValidationError(f"Interdependent stage {s.name!r} needs at least two group roles")
            if not set(s.reviewer_roles) <= set(s.interdependent_with):
                raise ValidationError(
                    f"Interdependent stage {s.name!r} has roles outside its group",
                )

    initial = gates.get("initial")
    if initial is not None:
        if initial.order != 1 or initial.depends_on:
            raise ValidationError("The initial gate must be at order 1 with no dependencies")
        if sum(1 for s in template.stages if s.order == 1) > 1:
            raise ValidationError("The initial gate must be the only stage at order 1")

    # Iterative DFS over order → depends_on edges
    state: dict[int, int] = {}  # 1 = on stack, 2 = done
    for root in sorted(orders):
        if root in state:
            continue
        stack = [(root, iter(sorted(edges[root])))]
        state[root] = 1
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                state[node] = 2
                stack.pop()
            elif state.get(child) == 1:
                raise ValidationError(
                    f"Workflow {template.name!r} has a dependency cycle through order {child}",
                    details={"order": child},
                )
            elif child not in state:
                state[child] = 1
                stack.append((child, iter(sorted(edges[child]))))


# ── Registry ─────────────────────────────────────────────────────────────────

_REGISTRY: dict[str, WorkflowTemplate] = {
    ACADEMIC_STAFF_WORKFLOW.name: ACADEMIC_STAFF_WORKFLOW,
    ADMINISTRATIVE_STAFF_WORKFLOW.name: ADMINISTRATIVE_STAFF_WORKFLOW,
}


def list_templates() -> list[str]:
    return sorted(_REGISTRY)


def get_template(name: str) -> WorkflowTemplate:
    template = _REGISTRY.get(name)
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=name)
    return template


def register_template(template: WorkflowTemplate) -> None:
    """Validate and add a template; replaces any template with the same name."""
    validate_template(template)
    if template.name in _REGISTRY:
        logger.warning("Replacing workflow template %s", template.name)
    _REGISTRY[template.name] = template
