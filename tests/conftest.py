"""
Shared pytest fixtures for the Staff Clearance test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - four_step_template: gate → A, B → C graph registered as "four_step"
    - recording_emitter: emitter that records events instead of writing them
"""

import pytest

from clearance import create_app
from clearance.models import db as _db
from clearance.services.workflow_templates import (
    StageTemplate,
    WorkflowTemplate,
    register_template,
)

VP = "AcademicVicePresident"


FOUR_STEP = WorkflowTemplate(
    name="four_step",
    stages=[
        StageTemplate(stage="Initial", name="Gate", order=1, reviewer_roles=(VP,),
                      vp_signature_type="initial"),
        StageTemplate(stage="Middle", name="A", order=2, reviewer_roles=("ReviewerA",),
                      depends_on=(1,)),
        StageTemplate(stage="Middle", name="B", order=3, reviewer_roles=("ReviewerB",),
                      depends_on=(1,)),
        StageTemplate(stage="Final", name="C", order=4, reviewer_roles=("ReviewerC",),
                      depends_on=(2, 3)),
    ],
)


class RecordingEmitter:
    """Collects events; stands in for the database-backed emitter."""

    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    @property
    def kinds(self):
        return [e.kind for e in self.events]


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    register_template(FOUR_STEP)
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def four_step_template():
    return FOUR_STEP


@pytest.fixture()
def recording_emitter():
    return RecordingEmitter()
