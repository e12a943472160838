"""
Interdependent step groups.

Some stages must clear as a group (the two stores). When one member signs,
its siblings are unlocked for their own reviewers regardless of their own
``depends_on``; they are never signed on the member's behalf.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from clearance.core.exceptions import NotFoundError
from clearance.models import db
from clearance.models.clearance import ClearanceStep

logger = logging.getLogger(__name__)


def handle_group_clear(
    request_id: int,
    clearing_role: str,
    reviewer_id: str,
    signature: str | None = None,
    comment: str | None = None,
    notes: str | None = None,
) -> list[ClearanceStep]:
    """Clear the caller's step and unlock every un-cleared sibling.

    The caller has already checked that the step is interdependent and
    actionable. Mutations are flushed, not committed; a store failure
    propagates and the caller's transaction rolls back.

    Returns:
        The siblings that moved to ``available`` by this call.
    """
    members = db.session.execute(
        select(ClearanceStep)
        .where(
            ClearanceStep.request_id == request_id,
            ClearanceStep.is_interdependent.is_(True),
        )
        .order_by(ClearanceStep.order, ClearanceStep.id)
    ).scalars().all()

    clearing = next((s for s in members if s.reviewer_role == clearing_role), None)
    if clearing is None:
        raise NotFoundError(resource="ClearanceStep", resource_id=f"{request_id}/{clearing_role}")

    clearing.record_review("cleared", reviewer_id, signature=signature, comment=comment, notes=notes)

    group = set(clearing.interdependent_with or ())
    unlocked = []
    for sibling in members:
        if sibling is clearing or sibling.reviewer_role not in group:
            continue
        if sibling.status == "cleared":
            continue
        if sibling.status != "available" or not sibling.can_process:
            sibling.set_status("available")
            unlocked.append(sibling)

    db.session.flush()
    logger.info(
        "Group clear by %s unlocked %d sibling(s)", clearing_role, len(unlocked),
        extra={"request_id": request_id, "step_id": clearing.id},
    )
    return unlocked
