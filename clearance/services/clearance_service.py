"""
Clearance request intake and queries.

Creates requests (reference code, duplicate-active guard, step
materialization) and serves the list / detail / activity reads used by
the API.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from email_validator import EmailNotValidError, validate_email
from flask import current_app
from sqlalchemy import or_, select

from clearance.core.exceptions import ConflictError, ValidationError
from clearance.models import db
from clearance.models.activity import ActivityLog
from clearance.models.clearance import (
    CLEARANCE_PURPOSES,
    FILE_VISIBILITIES,
    INACTIVE_REQUEST_STATUSES,
    REQUEST_STATUSES,
    ClearanceRequest,
)
from clearance.services.activity import ActivityEvent, dispatch
from clearance.services.workflow_engine import (
    get_request,
    materialize_steps,
    workflow_transaction,
)
from clearance.services.workflow_templates import get_template

logger = logging.getLogger(__name__)


# ── Validation helpers ───────────────────────────────────────────────────────


def _required(data: dict, field: str) -> str:
    value = data.get(field)
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", details={field: "required"})
    return str(value).strip()


def _normalize_email(raw: str) -> str:
    try:
        return validate_email(raw, check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid contact_email: {e}", details={"contact_email": "invalid"}) from e


def _normalize_files(files) -> list[dict]:
    """Validate uploaded-file descriptors; the files themselves live elsewhere."""
    if files is None:
        return []
    if not isinstance(files, list):
        raise ValidationError("uploaded_files must be a list", details={"uploaded_files": "invalid"})
    result = []
    for i, f in enumerate(files):
        if not isinstance(f, dict) or not f.get("file_name") or not f.get("file_path"):
            raise ValidationError(
                f"uploaded_files[{i}] needs file_name and file_path",
                details={"uploaded_files": i},
            )
        visibility = f.get("visibility", "all")
        if visibility not in FILE_VISIBILITIES:
            raise ValidationError(
                f"uploaded_files[{i}].visibility must be one of {sorted(FILE_VISIBILITIES)}",
                details={"uploaded_files": i},
            )
        try:
            size = int(f.get("size", 0))
        except (TypeError, ValueError):
            size = -1
        if size < 0:
            raise ValidationError(f"uploaded_files[{i}].size is invalid", details={"uploaded_files": i})
        result.append({
            "file_name": str(f["file_name"]),
            "file_path": str(f["file_path"]),
            "size": size,
            "visibility": visibility,
        })
    return result


def generate_reference_code(prefix: str | None = None) -> str:
    """
    Next reference code for this year: TCS-2026-00001, TCS-2026-00002, ...

    Continues from the newest code carrying this year's stem, read with
    SELECT ... FOR UPDATE so concurrent submissions serialize on it. Call
    inside the transaction that inserts the request.
    """
    prefix = prefix or current_app.config.get("CLEARANCE_REFERENCE_PREFIX", "TCS")
    year = datetime.now(timezone.utc).year
    stem = f"{prefix}-{year}-"
    last = db.session.execute(
        select(ClearanceRequest.reference_code)
        .where(ClearanceRequest.reference_code.like(f"{stem}%"))
        .order_by(ClearanceRequest.id.desc())
        .limit(1)
        .with_for_update()
    ).scalar()
    try:
        num = int(last[len(stem):]) + 1 if last else 1
    except ValueError:
        num = 1
    return f"{stem}{num:05d}"



def _find_active(staff_id: str, contact_email: str) -> ClearanceRequest | None:
    return db.session.execute(
        select(ClearanceRequest)
        .where(
            or_(ClearanceRequest.staff_id == staff_id,
                ClearanceRequest.contact_email == contact_email),
            ClearanceRequest.status.notin_(INACTIVE_REQUEST_STATUSES),
        )
        .limit(1)
    ).scalar_one_or_none()


# ── Public API ───────────────────────────────────────────────────────────────


def create_request(data: dict, initiated_by: str | None = None, emitter=None) -> ClearanceRequest:
    """Submit a clearance request and materialize its full step graph.

    Raises:
        ValidationError: missing/invalid fields or unknown purpose.
        ConflictError: the staff member or contact address already has an
            active request.
        NotFoundError: unknown workflow name.
        PersistenceError: the store failed; nothing was committed.
    """
    staff_id = _required(data, "staff_id")
    contact_email = _normalize_email(_required(data, "contact_email"))
    purpose = _required(data, "purpose")
    if purpose not in CLEARANCE_PURPOSES:
        raise ValidationError(
            f"purpose must be one of {sorted(CLEARANCE_PURPOSES)}",
            details={"purpose": purpose},
        )
    form_data = data.get("form_data") or {}
    if not isinstance(form_data, dict):
        raise ValidationError("form_data must be an object", details={"form_data": "invalid"})
    files = _normalize_files(data.get("uploaded_files"))

    workflow_name = data.get("workflow_name") or current_app.config.get("CLEARANCE_WORKFLOW", "academic_staff")
    template = get_template(workflow_name)

    with workflow_transaction("create_request"):
        existing = _find_active(staff_id, contact_email)
        if existing is not None:
            field = "staff_id" if existing.staff_id == staff_id else "contact_email"
            raise ConflictError(
                resource="ClearanceRequest", field=field,
                value=staff_id if field == "staff_id" else contact_email,
            )

        req = ClearanceRequest(
            reference_code=generate_reference_code(),
            status="initiated",
            staff_id=staff_id,
            contact_email=contact_email,
            purpose=purpose,
            initiated_by=initiated_by or staff_id,
            workflow_name=template.name,
            form_data=form_data,
            uploaded_files=files,
        )
        db.session.add(req)
        db.session.flush()
        steps = materialize_steps(req, template)
        event = ActivityEvent(
            kind="REQUEST_CREATED",
            request_id=req.id,
            actor_id=req.initiated_by,
            message=f"{req.reference_code} submitted for {purpose}",
            metadata={
                "purpose": purpose,
                "workflow": template.name,
                "step_count": len(steps),
                "unlocked_roles": sorted({s.reviewer_role for s in steps if s.can_process}),
            },
        )

    logger.info("Clearance request %s created", req.reference_code,
                extra={"request_id": req.id, "event_type": "REQUEST_CREATED"})
    dispatch([event], emitter)
    return req


def list_requests(status=None, staff_id=None, limit=50, offset=0):
    """Requests newest first, with the total before paging."""
    q = ClearanceRequest.query
    if status:
        if status not in REQUEST_STATUSES:
            raise ValidationError(f"Unknown status {status!r}", details={"status": status})
        q = q.filter_by(status=status)
    if staff_id:
        q = q.filter_by(staff_id=staff_id)
    total = q.count()
    items = (
        q.order_by(ClearanceRequest.created_at.desc(), ClearanceRequest.id.desc())
        .offset(offset).limit(limit).all()
    )
    return items, total


def list_activity(request_id: int) -> list[ActivityLog]:
    get_request(request_id)
    return (
        ActivityLog.query.filter_by(request_id=request_id)
        .order_by(ActivityLog.timestamp, ActivityLog.id)
        .all()
    )
