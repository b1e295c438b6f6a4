import sqlite3
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

db = SQLAlchemy()

OWNER = "OWNER"
EDITOR = "EDITOR"
VIEWER = "VIEWER"
ROLES = (OWNER, EDITOR, VIEWER)


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE clauses unless this is set per connection
    if isinstance(dbapi_connection, sqlite3.Connection):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


# ---------------- Models ----------------
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120))
    image = db.Column(db.String(600))  # avatar url
    password_hash = db.Column(db.String(256), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    memberships = db.relationship("Collaborator", back_populates="user",
                                  cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self):
        return {"id": self.id, "email": self.email, "name": self.name, "image": self.image}


class Project(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False, default="My Wedding")
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # wedding details (all optional)
    partner1_name = db.Column(db.String(120))
    partner2_name = db.Column(db.String(120))
    wedding_date = db.Column(db.Date)
    location = db.Column(db.String(300))
    cover_image = db.Column(db.String(600))

    # bumped on every roadmap save; clients may echo it back to detect stale edits
    roadmap_version = db.Column(db.Integer, nullable=False, default=0)

    collaborators = db.relationship("Collaborator", back_populates="project",
                                    cascade="all, delete-orphan", passive_deletes=True)
    phases = db.relationship("Phase", back_populates="project", order_by="Phase.sort_order",
                             cascade="all, delete-orphan", passive_deletes=True)
    events = db.relationship("Event", backref="project", lazy=True,
                             cascade="all, delete-orphan", passive_deletes=True)
    gifts = db.relationship("Gift", backref="project", lazy=True,
                            cascade="all, delete-orphan", passive_deletes=True)
    budget_items = db.relationship("BudgetItem", backref="project", lazy=True,
                                   cascade="all, delete-orphan", passive_deletes=True)
    guests = db.relationship("Guest", backref="project", lazy=True,
                             cascade="all, delete-orphan", passive_deletes=True)
    gallery_images = db.relationship("GalleryImage", backref="project", lazy=True,
                                     order_by="GalleryImage.id",
                                     cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "partner1Name": self.partner1_name,
            "partner2Name": self.partner2_name,
            "weddingDate": self.wedding_date.isoformat() if self.wedding_date else None,
            "location": self.location,
            "coverImage": self.cover_image,
            "roadmapVersion": self.roadmap_version,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class Collaborator(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = db.Column(db.Integer, db.ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True)
    role = db.Column(db.String(10), nullable=False, default=VIEWER)  # OWNER | EDITOR | VIEWER
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship("User", back_populates="memberships", lazy="joined")
    project = db.relationship("Project", back_populates="collaborators")

    __table_args__ = (db.UniqueConstraint("user_id", "project_id", name="uq_collaborator_user_project"),)

    def to_dict(self):
        return {"id": self.id, "role": self.role, "projectId": self.project_id, "user": self.user.to_dict()}


class Phase(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    project = db.relationship("Project", back_populates="phases")
    tasks = db.relationship("Task", back_populates="phase", order_by="Task.sort_order",
                            cascade="all, delete-orphan", passive_deletes=True)


class Task(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    phase_id = db.Column(db.Integer, db.ForeignKey("phase.id", ondelete="CASCADE"), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    deadline = db.Column(db.Date)
    estimated_cost = db.Column(db.Float)
    real_cost = db.Column(db.Float)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="SET NULL"), index=True)

    phase = db.relationship("Phase", back_populates="tasks")
    assigned_to = db.relationship("User", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "order": self.sort_order,
            "isCompleted": bool(self.is_completed),
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "estimatedCost": self.estimated_cost,
            "realCost": self.real_cost,
            "assignedTo": self.assigned_to.to_dict() if self.assigned_to else None,
        }


class Event(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    time = db.Column(db.String(20))  # "14:30"
    date = db.Column(db.Date)
    location = db.Column(db.String(300))
    description = db.Column(db.Text)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "time": self.time,
            "date": self.date.isoformat() if self.date else None,
            "location": self.location,
            "description": self.description,
            "order": self.sort_order,
        }


class Gift(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    price = db.Column(db.Float, default=0)
    image_url = db.Column(db.String(1024))
    url = db.Column(db.String(1024))
    taken_by = db.Column(db.String(120))  # claimant; set means purchased
    message = db.Column(db.Text)

    @property
    def available(self):
        return not self.taken_by

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "imageUrl": self.image_url,
            "url": self.url,
            "takenBy": self.taken_by,
            "message": self.message,
            "available": self.available,
        }


class BudgetItem(db.Model):
    __tablename__ = "budget_item"
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True)
    category = db.Column(db.String(80), nullable=False, default="General")  # e.g. 'Venue', 'Catering'
    name = db.Column(db.String(200), nullable=False)
    estimated = db.Column(db.Float, default=0)
    actual = db.Column(db.Float, default=0)
    paid = db.Column(db.Float, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "category": self.category,
            "name": self.name,
            "estimated": self.estimated or 0,
            "actual": self.actual or 0,
            "paid": self.paid or 0,
        }


class Guest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(200))
    attending = db.Column(db.Boolean, nullable=False, default=False)
    dietary = db.Column(db.Text)
    plus_one = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "attending": bool(self.attending),
            "dietary": self.dietary,
            "plusOne": bool(self.plus_one),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class GalleryImage(db.Model):
    __tablename__ = "gallery_image"
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("project.id", ondelete="CASCADE"), nullable=False, index=True)
    url = db.Column(db.String(1024), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {"id": self.id, "url": self.url}
