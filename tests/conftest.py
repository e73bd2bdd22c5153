from datetime import date
from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from campus_admin import create_app, db
from campus_admin.models import AcademicSession, FeeStructure, LibraryCategory, Program, User

PASSWORD = "secret"


@pytest.fixture()
def app(monkeypatch):
    # Fresh in-memory database per test
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.delenv("REDIS_URL", raising=False)
    app = create_app()
    app.config["TESTING"] = True
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def ctx(app):
    """Push an app context for service-level tests."""
    with app.app_context():
        yield app


def make_user(username, role="admin", is_root=False, program_id=None):
    u = User(
        username=username,
        full_name=username.title(),
        password_hash=generate_password_hash(PASSWORD),
        role=role,
        is_root=is_root,
        program_id_fk=program_id,
    )
    db.session.add(u)
    db.session.flush()
    return u


@pytest.fixture()
def seed(app):
    """Program, session, users and a 35000 fee structure. Returns ids only."""
    with app.app_context():
        program = Program(program_name="BCA", program_code="BCA")
        other_program = Program(program_name="BBA", program_code="BBA")
        session_ = AcademicSession(session_name="2025-26", is_current=True)
        db.session.add_all([program, other_program, session_])
        db.session.flush()
        users = {
            "admin": make_user("admin"),
            "root": make_user("root", is_root=True),
            "clerk": make_user("clerk", role="clerk"),
            "student": make_user("student", role="student", program_id=program.program_id),
            "student2": make_user("student2", role="student", program_id=other_program.program_id),
        }
        fs = FeeStructure(
            program_id_fk=program.program_id,
            session_id_fk=session_.session_id,
            semester=1,
            total_amount=35000,
            due_date=date(2025, 7, 31),
            description="Semester 1 tuition",
        )
        category = LibraryCategory(name="Notes", semester_or_module=1)
        db.session.add_all([fs, category])
        db.session.commit()
        return SimpleNamespace(
            program_id=program.program_id,
            other_program_id=other_program.program_id,
            session_id=session_.session_id,
            structure_id=fs.structure_id,
            category_id=category.category_id,
            user_ids={k: u.user_id for k, u in users.items()},
        )


@pytest.fixture()
def actors(ctx, seed):
    """Seeded users loaded in the active app context."""
    return SimpleNamespace(**{k: db.session.get(User, v) for k, v in seed.user_ids.items()})


@pytest.fixture()
def login(client):
    """Log in through the API and return the CSRF token for mutating calls."""
    def _login(username, password=PASSWORD):
        resp = client.post("/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.get_json()
        return resp.get_json()["data"]["csrf_token"]
    return _login
