"""
Roadmap (phases and tasks) for a wedding project.

The setup screen submits the whole roadmap at once: an ordered list of phases,
each with an ordered list of tasks. save_roadmap_structure() converges the
stored rows onto that tree in one transaction. Array position is the order;
anything missing from the tree is deleted; surviving tasks keep their dates,
costs, assignee and completion flag. Those details only change through the
narrow task operations further down.
"""
import logging
import math
from datetime import date
from typing import Annotated, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, model_validator
from sqlalchemy import or_

from access import EDIT_CONTENT, VIEW
from errors import AccessDenied, DestructiveChange, SaveFailed, StaleRoadmap, ValidationFailure
from models import Collaborator, Phase, Project, Task, db

logger = logging.getLogger(__name__)

WEDDING_TEMPLATE = [
    {"title": "Phase 1: The Basics (12+ Months Out)",
     "tasks": ["Announce Engagement", "Set the Budget", "Draft Guest List", "Select Date & Venue"]},
    {"title": "Phase 2: Vendors (9-12 Months Out)",
     "tasks": ["Hire Wedding Planner", "Book Photographer/Videographer", "Book Caterer", "Find the Dress"]},
    {"title": "Phase 3: Details (6-9 Months Out)",
     "tasks": ["Send Save the Dates", "Book Entertainment", "Create Registry"]},
    {"title": "Phase 4: Final Stretch (3 Months Out)",
     "tasks": ["Send Invitations", "Finalize Menu", "Buy Wedding Rings"]},
]


# ---------------- Payload ----------------
def _clean_title(v):
    if v is None:
        raise ValueError("title is required")
    if not isinstance(v, str):
        raise ValueError("title must be text")
    v = v.strip()
    if not v:
        raise ValueError("title is required")
    return v


Title = Annotated[str, BeforeValidator(_clean_title), Field(max_length=200)]


class TaskDescriptor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None  # None => new task
    title: Title


class PhaseDescriptor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None  # None => new phase
    title: Title
    tasks: List[TaskDescriptor] = Field(default_factory=list)


class RoadmapStructure(BaseModel):
    model_config = ConfigDict(extra="ignore")

    phases: List[PhaseDescriptor]
    version: Optional[int] = None
    confirm_clear: bool = False

    @model_validator(mode="after")
    def check_unique_ids(self):
        phase_ids = [p.id for p in self.phases if p.id is not None]
        if len(phase_ids) != len(set(phase_ids)):
            raise ValueError("a phase id appears more than once")
        task_ids = [t.id for p in self.phases for t in p.tasks if t.id is not None]
        if len(task_ids) != len(set(task_ids)):
            raise ValueError("a task id appears more than once")
        return self


def parse_structure(data):
    """Validate an untrusted payload into a RoadmapStructure.

    Accepts {"phases": [...], ...} or a bare list of phases (the shape the
    assistant replies with). Raises ValidationFailure with the first problem.
    """
    if isinstance(data, list):
        data = {"phases": data}
    if not isinstance(data, dict):
        raise ValidationFailure("Roadmap must be an object with a 'phases' list")
    try:
        return RoadmapStructure.model_validate(data)
    except ValidationError as e:
        err = e.errors()[0]
        where = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        raise ValidationFailure(f"{where}: {msg}" if where else msg) from e


# ---------------- Reads ----------------
def serialize_phase(phase):
    return {
        "id": phase.id,
        "title": phase.title,
        "order": phase.sort_order,
        "tasks": [t.to_dict() for t in phase.tasks],
    }


def get_roadmap(ctx):
    ctx.require(VIEW)
    phases = (Phase.query
              .filter_by(project_id=ctx.project_id)
              .order_by(Phase.sort_order.asc(), Phase.id.asc())
              .all())
    return [serialize_phase(p) for p in phases]


def roadmap_snapshot(ctx):
    """Ids and titles only; what the assistant gets to see and edit."""
    return [
        {"id": p["id"], "title": p["title"],
         "tasks": [{"id": t["id"], "title": t["title"]} for t in p["tasks"]]}
        for p in get_roadmap(ctx)
    ]


def task_budget_overview(ctx):
    """Phases that have costed tasks, tasks sorted by deadline for the spend chart."""
    ctx.require(VIEW)
    out = []
    phases = Phase.query.filter_by(project_id=ctx.project_id).order_by(Phase.sort_order.asc()).all()
    for phase in phases:
        tasks = (Task.query
                 .filter(Task.phase_id == phase.id,
                         or_(Task.estimated_cost > 0, Task.real_cost > 0))
                 .order_by(Task.deadline.asc().nullslast(), Task.sort_order.asc())
                 .all())
        if tasks:
            out.append({"id": phase.id, "title": phase.title, "tasks": [t.to_dict() for t in tasks]})
    return out


# ---------------- Reconciliation ----------------
def save_roadmap_structure(ctx, structure):
    """Make the stored roadmap match `structure` exactly, all or nothing.

    Returns the saved roadmap (same shape as get_roadmap) plus the new version.
    """
    ctx.require(EDIT_CONTENT)
    project = db.session.get(Project, ctx.project_id)
    if project is None:
        raise AccessDenied()
    if structure.version is not None and structure.version != project.roadmap_version:
        raise StaleRoadmap()

    existing_phases = {p.id: p for p in Phase.query.filter_by(project_id=project.id).all()}
    if not structure.phases and existing_phases and not structure.confirm_clear:
        raise DestructiveChange()
    existing_tasks = {
        t.id: t for t in Task.query.join(Phase).filter(Phase.project_id == project.id).all()
    }

    kept_phases, kept_tasks = set(), set()
    created = updated = 0
    try:
        for position, incoming in enumerate(structure.phases):
            phase = existing_phases.get(incoming.id) if incoming.id is not None else None
            if phase is None:
                phase = Phase(project_id=project.id)
                db.session.add(phase)
                created += 1
            else:
                kept_phases.add(phase.id)
                updated += 1
            phase.title = incoming.title
            phase.sort_order = position

            for task_position, incoming_task in enumerate(incoming.tasks):
                task = existing_tasks.get(incoming_task.id) if incoming_task.id is not None else None
                if task is None:
                    task = Task(phase=phase, is_completed=False)
                    db.session.add(task)
                    created += 1
                else:
                    kept_tasks.add(task.id)
                    updated += 1
                    if task.phase is not phase:
                        task.phase = phase  # moved between phases; details travel with it
                # only title and order; deadline, costs, assignee, completion stay as they are
                task.title = incoming_task.title
                task.sort_order = task_position

        # moves must land before the old phases go, or the cascade takes the moved tasks too
        db.session.flush()

        deleted = 0
        for task_id, task in existing_tasks.items():
            if task_id not in kept_tasks:
                db.session.delete(task)
                deleted += 1
        for phase_id, phase in existing_phases.items():
            if phase_id not in kept_phases:
                db.session.delete(phase)
                deleted += 1

        project.roadmap_version = (project.roadmap_version or 0) + 1
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.exception("Save roadmap failed for project %s", ctx.project_id)
        raise SaveFailed() from exc

    logger.info("roadmap saved for project %s by user %s: %d created, %d updated, %d deleted",
                ctx.project_id, ctx.user.id, created, updated, deleted)
    return {"phases": get_roadmap(ctx), "version": project.roadmap_version}


def apply_template(ctx, template=None):
    """Seed an empty roadmap from the default wedding template."""
    ctx.require(EDIT_CONTENT)
    if Phase.query.filter_by(project_id=ctx.project_id).first() is not None:
        raise ValidationFailure("This project already has a roadmap")
    template = template or WEDDING_TEMPLATE
    structure = parse_structure([
        {"title": p["title"], "tasks": [{"title": t} for t in p["tasks"]]}
        for p in template
    ])
    return save_roadmap_structure(ctx, structure)


# ---------------- Single-task operations ----------------
def _task_in_project(ctx, task_id):
    task = (Task.query.join(Phase)
            .filter(Task.id == task_id, Phase.project_id == ctx.project_id)
            .first())
    if task is None:
        raise AccessDenied("Task not found")
    return task


def toggle_task_completion(ctx, task_id, completed):
    ctx.require(EDIT_CONTENT)
    task = _task_in_project(ctx, task_id)
    task.is_completed = bool(completed)
    db.session.commit()
    return task


def assign_task(ctx, task_id, user_id):
    ctx.require(EDIT_CONTENT)
    task = _task_in_project(ctx, task_id)
    if user_id is not None:
        member = Collaborator.query.filter_by(user_id=user_id, project_id=ctx.project_id).first()
        if member is None:
            raise ValidationFailure("Assignee must be a member of this project")
    task.assigned_to_id = user_id
    db.session.commit()
    return task


def parse_money(v):
    """'' / None -> 0.0; '1,250.50' -> 1250.5; anything else (nan, inf too) is a ValidationFailure."""
    if v is None or str(v).strip() == "":
        return 0.0
    try:
        amount = float(str(v).replace(",", "").strip())
    except ValueError:
        raise ValidationFailure(f"Not a valid amount: {v}")
    if not math.isfinite(amount):
        raise ValidationFailure(f"Not a valid amount: {v}")
    return amount


def parse_date(v):
    if v is None or str(v).strip() == "":
        return None
    if isinstance(v, date):
        return v
    try:
        return date.fromisoformat(str(v).strip()[:10])
    except ValueError:
        raise ValidationFailure(f"Not a valid date: {v}")


def update_task_details(ctx, task_id, deadline=None, estimated_cost=None, actual_cost=None, is_completed=False):
    """Overwrite the detail fields of one task; blanks clear them."""
    ctx.require(EDIT_CONTENT)
    task = _task_in_project(ctx, task_id)
    deadline = parse_date(deadline)
    estimated, actual = parse_money(estimated_cost), parse_money(actual_cost)
    task.deadline = deadline
    task.estimated_cost = estimated
    task.real_cost = actual
    task.is_completed = bool(is_completed)
    db.session.commit()
    return task
