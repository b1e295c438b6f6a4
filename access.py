"""
Access control for wedding projects.

Every request re-resolves the caller's role from the session identity and the
Collaborator table; nothing here is cached between calls. The resolved role is
carried around as an AccessContext and handed to every operation that reads
or writes a project's data.
"""
import logging

from sqlalchemy import select

from errors import AccessDenied, CollaboratorConflict, PermissionDenied, Unauthenticated, ValidationFailure
from models import EDITOR, OWNER, VIEWER, Collaborator, Phase, Task, User, db

logger = logging.getLogger(__name__)

VIEW = "VIEW"
EDIT_CONTENT = "EDIT_CONTENT"
MANAGE_TEAM = "MANAGE_TEAM"
DELETE_PROJECT = "DELETE_PROJECT"

CAPABILITIES = {
    VIEWER: frozenset({VIEW}),
    EDITOR: frozenset({VIEW, EDIT_CONTENT}),
    OWNER: frozenset({VIEW, EDIT_CONTENT, MANAGE_TEAM, DELETE_PROJECT}),
}

INVITABLE_ROLES = (EDITOR, VIEWER)


class AccessContext:
    """Who is acting on which project, and with what role."""

    def __init__(self, user, project_id, role):
        self.user = user
        self.project_id = project_id
        self.role = role

    def can(self, capability):
        return authorize(capability, self.role)

    def require(self, capability):
        if not self.can(capability):
            logger.warning("user %s (%s) denied %s on project %s",
                           self.user.id, self.role, capability, self.project_id)
            raise PermissionDenied(_denied_message(capability))
        return self

    def __repr__(self):
        return f"<AccessContext user={self.user.id} project={self.project_id} role={self.role}>"


def _denied_message(capability):
    if capability == MANAGE_TEAM:
        return "Only the owner can manage the team"
    if capability == DELETE_PROJECT:
        return "Only the owner can delete this project"
    return "You have view-only access to this project"


def authorize(capability, role):
    return capability in CAPABILITIES.get(role, frozenset())


def user_for_identity(identity):
    if not identity:
        return None
    return User.query.filter_by(email=identity).first()


def resolve_role(identity, project_id):
    """Return the caller's AccessContext for the project or raise.

    Unauthenticated when there is no identity at all; AccessDenied when the
    identity is unknown or has no membership, so that a project the caller
    cannot see is indistinguishable from one that does not exist.
    """
    if not identity:
        raise Unauthenticated()
    user = user_for_identity(identity)
    if user is None:
        raise AccessDenied()
    membership = Collaborator.query.filter_by(user_id=user.id, project_id=project_id).first()
    if membership is None:
        raise AccessDenied()
    return AccessContext(user, project_id, membership.role)


# ---------------- Team ----------------
def get_team(ctx):
    ctx.require(VIEW)
    members = (Collaborator.query
               .filter_by(project_id=ctx.project_id)
               .order_by(Collaborator.created_at.asc(), Collaborator.id.asc())
               .all())
    return {"team": [m.to_dict() for m in members], "currentUserRole": ctx.role}


def invite_member(ctx, email, role):
    ctx.require(MANAGE_TEAM)
    email = str(email or "").strip().lower()
    if not email:
        raise ValidationFailure("Email is required")
    if role not in INVITABLE_ROLES:
        raise ValidationFailure("Role must be EDITOR or VIEWER")

    target = User.query.filter_by(email=email).first()
    if target is None:
        raise CollaboratorConflict("User not found. They must have an account first.")
    existing = Collaborator.query.filter_by(user_id=target.id, project_id=ctx.project_id).first()
    if existing is not None:
        raise CollaboratorConflict("User is already in the team")

    member = Collaborator(user_id=target.id, project_id=ctx.project_id, role=role)
    db.session.add(member)
    db.session.commit()
    logger.info("user %s invited %s as %s to project %s", ctx.user.id, target.id, role, ctx.project_id)
    return member


def remove_member(ctx, user_id):
    if ctx.user.id != user_id:
        ctx.require(MANAGE_TEAM)

    target = Collaborator.query.filter_by(user_id=user_id, project_id=ctx.project_id).first()
    if target is None:
        raise AccessDenied("Member not found")
    if target.role == OWNER:
        raise PermissionDenied("Cannot remove the Owner")

    # tasks in this project can only be assigned to members
    project_phases = select(Phase.id).where(Phase.project_id == ctx.project_id)
    (Task.query
     .filter(Task.assigned_to_id == user_id, Task.phase_id.in_(project_phases))
     .update({"assigned_to_id": None}, synchronize_session=False))
    db.session.delete(target)
    db.session.commit()
    logger.info("user %s removed %s from project %s", ctx.user.id, user_id, ctx.project_id)
