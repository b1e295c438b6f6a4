#!/usr/bin/env python3
import sys
from getpass import getpass
from werkzeug.security import generate_password_hash
from app import app, db
from access import AccessContext
from errors import PlannerError
from models import OWNER, User, Project, Collaborator
import roadmap

USAGE = """Usage:
  manage.py create <email> [name]
  manage.py set-password <email>
  manage.py new-project <email> <title>
  manage.py seed-roadmap <project_id>
"""

def _ask_password(prompt="Password: "):
    pw1 = getpass(prompt); pw2 = getpass("Confirm: ")
    if pw1 != pw2:
        print("Passwords do not match."); return None
    if len(pw1) < 8:
        print("Use at least 8 characters for the password."); return None
    return pw1

def create_user(email: str, name: str | None = None) -> int:
    email = email.strip().lower()
    with app.app_context():
        if User.query.filter_by(email=email).first():
            print("User already exists.")
            return 1
        pw = _ask_password()
        if pw is None: return 1
        u = User(email=email, name=name, password_hash=generate_password_hash(pw))
        db.session.add(u); db.session.commit()
        print(f"Created user '{email}'"); return 0

def set_password(email: str) -> int:
    with app.app_context():
        u = User.query.filter_by(email=email.strip().lower()).first()
        if not u: print("User not found."); return 1
        pw = _ask_password("New password: ")
        if pw is None: return 1
        u.password_hash = generate_password_hash(pw); db.session.commit()
        print("Password updated."); return 0

def new_project(email: str, title: str) -> int:
    with app.app_context():
        u = User.query.filter_by(email=email.strip().lower()).first()
        if not u: print("User not found."); return 1
        p = Project(title=title.strip() or "My Wedding")
        p.collaborators.append(Collaborator(user_id=u.id, role=OWNER))
        db.session.add(p); db.session.commit()
        print(f"Created project {p.id} '{p.title}' owned by {u.email}"); return 0

def seed_roadmap(project_id: int) -> int:
    with app.app_context():
        owner = Collaborator.query.filter_by(project_id=project_id, role=OWNER).first()
        if not owner: print("Project not found."); return 1
        ctx = AccessContext(owner.user, project_id, OWNER)
        try:
            saved = roadmap.apply_template(ctx)
        except PlannerError as e:
            print(e.message); return 1
        print(f"Seeded {len(saved['phases'])} phases."); return 0

if __name__ == "__main__":
    if len(sys.argv) < 3:
        print(USAGE); sys.exit(1)
    cmd = sys.argv[1]
    if cmd == "create" and len(sys.argv) in (3, 4):
        sys.exit(create_user(sys.argv[2], sys.argv[3] if len(sys.argv) == 4 else None))
    if cmd == "set-password" and len(sys.argv) == 3:
        sys.exit(set_password(sys.argv[2]))
    if cmd == "new-project" and len(sys.argv) == 4:
        sys.exit(new_project(sys.argv[2], sys.argv[3]))
    if cmd == "seed-roadmap" and len(sys.argv) == 3 and sys.argv[2].isdigit():
        sys.exit(seed_roadmap(int(sys.argv[2])))
    print(USAGE); sys.exit(1)
