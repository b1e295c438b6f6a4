import os
import tempfile

# app.py reads its config at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["COOKIE_INSECURE"] = "1"
os.environ["UPLOAD_ROOT"] = tempfile.mkdtemp(prefix="wedding-uploads-")
os.environ["LOG_LEVEL"] = "WARNING"
for key in ("AI_API_KEY", "GROQ_API_KEY", "SCRAPERAPI_KEY", "PUBLIC_BASE_URL"):
    os.environ.pop(key, None)

import pytest
from werkzeug.security import generate_password_hash

from app import app as flask_app
from access import resolve_role
from models import OWNER, Collaborator, Phase, Project, Task, User, db


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make(email, name=None, password="correct horse"):
        u = User(email=email, name=name or email.split("@")[0],
                 password_hash=generate_password_hash(password))
        db.session.add(u)
        db.session.commit()
        return u
    return _make


@pytest.fixture
def make_project(app):
    def _make(owner, title="Sarah & Tom"):
        p = Project(title=title)
        p.collaborators.append(Collaborator(user_id=owner.id, role=OWNER))
        db.session.add(p)
        db.session.commit()
        return p
    return _make


@pytest.fixture
def add_member(app):
    def _add(project, user, role):
        c = Collaborator(user_id=user.id, project_id=project.id, role=role)
        db.session.add(c)
        db.session.commit()
        return c
    return _add


@pytest.fixture
def ctx_for(app):
    def _ctx(user, project):
        return resolve_role(user.email, project.id)
    return _ctx


@pytest.fixture
def seed_phases(app):
    """Phases/tasks written straight to the store: {"title": [task titles...]}"""
    def _seed(project, layout):
        phases = []
        for i, (title, tasks) in enumerate(layout.items()):
            phase = Phase(project_id=project.id, title=title, sort_order=i)
            for j, t in enumerate(tasks):
                phase.tasks.append(Task(title=t, sort_order=j))
            db.session.add(phase)
            phases.append(phase)
        db.session.commit()
        return phases
    return _seed


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as s:
            s["email"] = user.email
    return _login
