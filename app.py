from flask import (
    Flask, request, redirect, url_for,
    session, jsonify, send_from_directory
)
from sqlalchemy import func, or_
from datetime import timedelta
from functools import wraps
import os, json, logging, pathlib
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.exceptions import RequestEntityTooLarge

from models import (
    db, OWNER, User, Project, Collaborator, Phase, Task,
    Event, Gift, BudgetItem, Guest, GalleryImage
)
from errors import PlannerError, Unauthenticated, AccessDenied, ValidationFailure, SaveFailed
from access import (
    VIEW, EDIT_CONTENT, DELETE_PROJECT,
    resolve_role, user_for_identity, get_team, invite_member, remove_member
)
import roadmap
import integrations

# ---------------- App & Config ----------------
app = Flask(__name__)

# Base folder of this project (portable across OSes)
BASE_DIR = pathlib.Path(__file__).resolve().parent

def _local_sqlite_uri(filename: str) -> str:
    p = (BASE_DIR / filename).resolve()
    return "sqlite:///" + str(p).replace("\\", "/")

app.config["SQLALCHEMY_DATABASE_URI"] = (
    os.environ.get("DATABASE_URL")
    or os.environ.get("SQLALCHEMY_DATABASE_URI")
    or _local_sqlite_uri("wedding.db")
)
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

# Sessions / cookies
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-change-me")
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=12)
app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SECURE"] = not bool(os.environ.get("COOKIE_INSECURE"))
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"

# Hosted uploads (env > ./uploads); served back under /u/
app.config["UPLOAD_ROOT"] = os.environ.get("UPLOAD_ROOT") or str((BASE_DIR / "uploads").resolve())
app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("MAX_UPLOAD_MB", "32")) * 1024 * 1024
app.config["PUBLIC_BASE_URL"] = os.environ.get("PUBLIC_BASE_URL", "")
app.config["THUMB_MAX_PX"] = int(os.environ.get("THUMB_MAX_PX", "512"))
app.config["THUMB_QUALITY"] = int(os.environ.get("THUMB_QUALITY", "82"))

# Roadmap assistant (any OpenAI-compatible endpoint; Groq by default)
app.config["AI_API_KEY"] = os.environ.get("AI_API_KEY") or os.environ.get("GROQ_API_KEY")
app.config["AI_BASE_URL"] = os.environ.get("AI_BASE_URL", "https://api.groq.com/openai/v1")
app.config["AI_MODEL"] = os.environ.get("AI_MODEL", "llama-3.1-8b-instant")
app.config["AI_TEMPERATURE"] = float(os.environ.get("AI_TEMPERATURE", "0.5"))

# Registry product search
app.config["SCRAPERAPI_KEY"] = os.environ.get("SCRAPERAPI_KEY")
app.config["PRODUCT_SEARCH_LIMIT"] = int(os.environ.get("PRODUCT_SEARCH_LIMIT", "6"))
app.config["PRODUCT_SEARCH_TIMEOUT"] = float(os.environ.get("PRODUCT_SEARCH_TIMEOUT", "15"))

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)

db.init_app(app)

# ---------------- One-time setup ----------------
os.makedirs(app.config["UPLOAD_ROOT"], exist_ok=True)
with app.app_context():
    db.create_all()

# ---------------- Auth/perm helpers ----------------
def current_identity():
    return session.get("email")

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not current_identity():
            raise Unauthenticated()
        return fn(*args, **kwargs)
    return wrapper

def project_access(project_id, capability=VIEW):
    """Re-resolve the caller's role for this request and check the capability."""
    ctx = resolve_role(current_identity(), project_id)
    return ctx.require(capability)

def _payload() -> dict:
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form.to_dict()

def _truthy(v) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in ("1", "true", "on", "yes")

def _text(data, key):
    return (str(data.get(key) or "")).strip() or None

def _in_project(model, row_id, ctx):
    try:
        row_id = int(row_id)
    except (TypeError, ValueError):
        raise ValidationFailure("id must be a number")
    row = model.query.filter_by(id=row_id, project_id=ctx.project_id).first()
    if row is None:
        raise AccessDenied()
    return row

# ---------------- Errors ----------------
@app.errorhandler(PlannerError)
def handle_planner_error(e):
    if isinstance(e, Unauthenticated) and request.method == "GET":
        return redirect(url_for("login", next=request.path))
    return jsonify(ok=False, error=e.message), e.status_code

@app.errorhandler(RequestEntityTooLarge)
def handle_413(e):
    return jsonify(ok=False, error="That upload was too large. Try fewer/smaller photos."), 413

# ---------------- Routes ----------------
# ----- Register / Login / Logout -----
@app.post("/register")
def register():
    data = _payload()
    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")
    name = _text(data, "name")

    if not email or not password:
        raise ValidationFailure("Email and password are required.")
    if "confirm" in data and data.get("confirm") != password:
        raise ValidationFailure("Passwords do not match.")
    if len(password) < 8:
        raise ValidationFailure("Use at least 8 characters for the password.")
    if User.query.filter_by(email=email).first():
        raise ValidationFailure("An account with that email already exists.")

    u = User(email=email, name=name, password_hash=generate_password_hash(password))
    db.session.add(u)
    db.session.commit()
    session.clear()
    session.permanent = True
    session["email"] = u.email
    return jsonify(ok=True, user=u.to_dict()), 201

@app.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "GET":
        if current_identity():
            return jsonify(ok=True, email=current_identity())
        return jsonify(ok=False, error="Login required", next=request.args.get("next")), 401
    data = _payload()
    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")
    user = User.query.filter_by(email=email).first()
    if not user or not check_password_hash(user.password_hash, password):
        return jsonify(ok=False, error="Invalid credentials"), 401
    session.clear()
    session.permanent = True
    session["email"] = user.email
    return jsonify(ok=True, user=user.to_dict(), next=request.args.get("next"))

@app.post("/logout")
def logout():
    session.clear()
    return jsonify(ok=True)

@app.get("/api/me")
@login_required
def me():
    user = user_for_identity(current_identity())
    return jsonify(user.to_dict() if user else None)

# ----- Projects -----
@app.get("/api/projects")
def projects_list():
    # anonymous callers get an empty list, not a redirect
    user = user_for_identity(current_identity())
    if not user:
        return jsonify([])
    member_counts = dict(
        db.session.query(Collaborator.project_id, func.count(Collaborator.id))
        .group_by(Collaborator.project_id).all()
    )
    rows = (Collaborator.query
            .filter_by(user_id=user.id)
            .join(Project)
            .order_by(Project.updated_at.desc())
            .all())
    return jsonify([
        {"role": c.role, "project": c.project.to_dict(),
         "collaborators": member_counts.get(c.project_id, 0)}
        for c in rows
    ])

@app.post("/api/projects")
@login_required
def projects_create():
    user = user_for_identity(current_identity())
    if not user:
        raise AccessDenied("User not found")
    title = _text(_payload(), "title") or "My Wedding"
    project = Project(title=title)
    project.collaborators.append(Collaborator(user_id=user.id, role=OWNER))
    db.session.add(project)
    db.session.commit()
    log.info("user %s created project %s", user.id, project.id)
    return jsonify(ok=True, projectId=project.id), 201

@app.get("/api/projects/<int:project_id>")
@login_required
def project_detail(project_id):
    ctx = project_access(project_id)
    project = db.session.get(Project, project_id)
    data = project.to_dict()
    data["currentUserRole"] = ctx.role
    data["counts"] = {
        "collaborators": Collaborator.query.filter_by(project_id=project_id).count(),
        "phases": Phase.query.filter_by(project_id=project_id).count(),
    }
    data["galleryImages"] = [g.to_dict() for g in project.gallery_images]
    return jsonify(data)

@app.get("/api/projects/<int:project_id>/overview")
@login_required
def project_overview(project_id):
    project_access(project_id)
    project = db.session.get(Project, project_id)

    task_q = Task.query.join(Phase).filter(Phase.project_id == project_id)
    total = task_q.count()
    completed = task_q.filter(Task.is_completed.is_(True)).count()

    est, act, paid = (db.session.query(
        func.coalesce(func.sum(BudgetItem.estimated), 0),
        func.coalesce(func.sum(BudgetItem.actual), 0),
        func.coalesce(func.sum(BudgetItem.paid), 0),
    ).filter(BudgetItem.project_id == project_id).one())

    next_event = (Event.query.filter_by(project_id=project_id)
                  .order_by(Event.date.asc().nullslast(), Event.sort_order.asc())
                  .first())
    return jsonify(
        project=project.to_dict(),
        tasks={"total": total, "completed": completed},
        budget={"estimated": est, "actual": act, "paid": paid},
        teamCount=Collaborator.query.filter_by(project_id=project_id).count(),
        nextEvent=next_event.to_dict() if next_event else None,
    )

@app.post("/api/projects/<int:project_id>/details")
@login_required
def project_details_save(project_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    project = db.session.get(Project, project_id)
    data = _payload()

    deleted_ids = data.get("deletedImageIds") or []
    if isinstance(deleted_ids, str):
        # form posts carry the list as a JSON string
        try:
            deleted_ids = json.loads(deleted_ids)
        except ValueError:
            raise ValidationFailure("deletedImageIds must be a JSON list")
    if not isinstance(deleted_ids, list) or not all(
            isinstance(i, int) and not isinstance(i, bool) for i in deleted_ids):
        raise ValidationFailure("deletedImageIds must be a JSON list of ids")
    wedding_date = roadmap.parse_date(data.get("date"))

    # uploads finish before anything is written
    cover_url = None
    cover = request.files.get("coverImage")
    if cover and cover.filename:
        cover_url, _ = integrations.upload_image(cover, "wedding-covers")
    gallery_urls = []
    for f in request.files.getlist("galleryImages"):
        if f and f.filename:
            url, _ = integrations.upload_image(f, "wedding-gallery")
            gallery_urls.append(url)

    if deleted_ids:
        (GalleryImage.query
         .filter(GalleryImage.project_id == ctx.project_id, GalleryImage.id.in_(deleted_ids))
         .delete(synchronize_session=False))
    if "title" in data:
        project.title = _text(data, "title") or project.title
    project.partner1_name = _text(data, "partner1Name")
    project.partner2_name = _text(data, "partner2Name")
    project.location = _text(data, "location")
    project.wedding_date = wedding_date
    if cover_url:
        project.cover_image = cover_url
    for url in gallery_urls:
        db.session.add(GalleryImage(project_id=project.id, url=url))
    db.session.commit()
    return jsonify(ok=True, message="Success! Wedding details saved.", project=project.to_dict())

@app.post("/api/projects/<int:project_id>/delete")
@login_required
def project_delete(project_id):
    ctx = project_access(project_id, DELETE_PROJECT)
    project = db.session.get(Project, project_id)
    db.session.delete(project)
    db.session.commit()
    log.info("user %s deleted project %s", ctx.user.id, project_id)
    return jsonify(ok=True)

# ----- Team -----
@app.get("/api/projects/<int:project_id>/team")
@login_required
def team_list(project_id):
    return jsonify(get_team(project_access(project_id)))

@app.post("/api/projects/<int:project_id>/team/invite")
@login_required
def team_invite(project_id):
    ctx = project_access(project_id)
    data = _payload()
    member = invite_member(ctx, data.get("email"), str(data.get("role") or "").strip().upper())
    return jsonify(ok=True, member=member.to_dict()), 201

@app.post("/api/projects/<int:project_id>/team/<int:user_id>/remove")
@login_required
def team_remove(project_id, user_id):
    remove_member(project_access(project_id), user_id)
    return jsonify(ok=True)

# ----- Roadmap -----
@app.get("/api/projects/<int:project_id>/roadmap")
@login_required
def roadmap_get(project_id):
    ctx = project_access(project_id)
    project = db.session.get(Project, project_id)
    return jsonify(phases=roadmap.get_roadmap(ctx), version=project.roadmap_version)

@app.post("/api/projects/<int:project_id>/roadmap")
@login_required
def roadmap_save(project_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    structure = roadmap.parse_structure(request.get_json(silent=True))
    saved = roadmap.save_roadmap_structure(ctx, structure)
    return jsonify(ok=True, message="Roadmap structure saved!", **saved)

@app.post("/api/projects/<int:project_id>/roadmap/template")
@login_required
def roadmap_template(project_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    saved = roadmap.apply_template(ctx)
    return jsonify(ok=True, **saved), 201

@app.post("/api/projects/<int:project_id>/roadmap/assistant")
@login_required
def roadmap_assistant(project_id):
    ctx = project_access(project_id)
    data = request.get_json(silent=True) or {}
    history = data.get("history") or []
    if not isinstance(history, list):
        raise ValidationFailure("history must be a list of messages")
    apply = _truthy(data.get("apply"))
    if apply:
        ctx.require(EDIT_CONTENT)

    assistant = integrations.RoadmapAssistant.from_config(app.config)
    answer = assistant.reply(history, roadmap.roadmap_snapshot(ctx))
    proposal = answer["updated_roadmap"]

    out = {"ok": True, "text_response": answer["text_response"], "updated_roadmap": None, "applied": False}
    if proposal is not None:
        out["updated_roadmap"] = proposal.model_dump(include={"phases"})["phases"]
        if apply:
            # the model's reply is done; the save is its own transaction
            saved = roadmap.save_roadmap_structure(ctx, proposal)
            out.update(applied=True, phases=saved["phases"], version=saved["version"])
    return jsonify(out)

@app.post("/api/projects/<int:project_id>/tasks/<int:task_id>/toggle")
@login_required
def task_toggle(project_id, task_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    data = _payload()
    task = roadmap.toggle_task_completion(ctx, task_id, _truthy(data.get("completed", data.get("isCompleted"))))
    return jsonify(ok=True, task=task.to_dict())

@app.post("/api/projects/<int:project_id>/tasks/<int:task_id>/assign")
@login_required
def task_assign(project_id, task_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    raw = _payload().get("userId")
    try:
        user_id = int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        raise ValidationFailure("userId must be a number")
    task = roadmap.assign_task(ctx, task_id, user_id)
    return jsonify(ok=True, task=task.to_dict())

@app.post("/api/projects/<int:project_id>/tasks/<int:task_id>/details")
@login_required
def task_details(project_id, task_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    data = _payload()
    task = roadmap.update_task_details(
        ctx, task_id,
        deadline=data.get("date", data.get("deadline")),
        estimated_cost=data.get("estimatedCost"),
        actual_cost=data.get("actualCost"),
        is_completed=_truthy(data.get("isCompleted")),
    )
    return jsonify(ok=True, message="Task updated successfully", task=task.to_dict())

# ----- Budget -----
@app.get("/api/projects/<int:project_id>/budget")
@login_required
def budget_list(project_id):
    project_access(project_id)
    items = (BudgetItem.query.filter_by(project_id=project_id)
             .order_by(BudgetItem.category.asc(), BudgetItem.name.asc()).all())
    return jsonify(
        items=[i.to_dict() for i in items],
        totals={
            "estimated": sum(i.estimated or 0 for i in items),
            "actual": sum(i.actual or 0 for i in items),
            "paid": sum(i.paid or 0 for i in items),
        },
    )

@app.get("/api/projects/<int:project_id>/budget/overview")
@login_required
def budget_overview(project_id):
    return jsonify(roadmap.task_budget_overview(project_access(project_id)))

@app.post("/api/projects/<int:project_id>/budget")
@login_required
def budget_save(project_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    data = _payload()
    name = _text(data, "name")
    if not name:
        raise ValidationFailure("Budget item needs a name.")
    amounts = [roadmap.parse_money(data.get(k)) for k in ("estimated", "actual", "paid")]
    if data.get("id"):
        bi = _in_project(BudgetItem, data["id"], ctx)
    else:
        bi = BudgetItem(project_id=ctx.project_id)
        db.session.add(bi)
    bi.category = _text(data, "category") or "General"
    bi.name = name
    bi.estimated, bi.actual, bi.paid = amounts
    db.session.commit()
    return jsonify(ok=True, item=bi.to_dict())

@app.post("/api/projects/<int:project_id>/budget/<int:item_id>/delete")
@login_required
def budget_delete(project_id, item_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    db.session.delete(_in_project(BudgetItem, item_id, ctx))
    db.session.commit()
    return jsonify(ok=True)

# ----- Itinerary -----
@app.get("/api/projects/<int:project_id>/itinerary")
@login_required
def itinerary_list(project_id):
    project_access(project_id)
    events = (Event.query.filter_by(project_id=project_id)
              .order_by(Event.date.asc().nullslast(), Event.sort_order.asc()).all())
    return jsonify([e.to_dict() for e in events])

@app.post("/api/projects/<int:project_id>/itinerary")
@login_required
def itinerary_save(project_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    data = _payload()
    title = _text(data, "title")
    if not title:
        raise ValidationFailure("Event needs a title.")
    event_date = roadmap.parse_date(data.get("date"))
    if data.get("id"):
        ev = _in_project(Event, data["id"], ctx)
    else:
        # append after the last event
        last = db.session.query(func.max(Event.sort_order)).filter_by(project_id=ctx.project_id).scalar()
        ev = Event(project_id=ctx.project_id, sort_order=(last or 0) + 1)
        db.session.add(ev)
    ev.title = title
    ev.time = _text(data, "time")
    ev.location = _text(data, "location")
    ev.description = _text(data, "description")
    ev.date = event_date
    db.session.commit()
    return jsonify(ok=True, event=ev.to_dict())

@app.post("/api/projects/<int:project_id>/itinerary/<int:event_id>/delete")
@login_required
def itinerary_delete(project_id, event_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    db.session.delete(_in_project(Event, event_id, ctx))
    db.session.commit()
    return jsonify(ok=True)

@app.post("/api/projects/<int:project_id>/itinerary/reorder")
@login_required
def itinerary_reorder(project_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    items = request.get_json(silent=True)
    if isinstance(items, dict):
        items = items.get("items")
    if not isinstance(items, list):
        raise ValidationFailure("Expected a list of {id, order}")
    try:
        for item in items:
            ev = _in_project(Event, int(item["id"]), ctx)
            ev.sort_order = int(item["order"])
    except (KeyError, TypeError, ValueError):
        db.session.rollback()
        raise ValidationFailure("Each item needs a numeric id and order")
    except AccessDenied:
        db.session.rollback()
        raise
    db.session.commit()
    return jsonify(ok=True)

# ----- Registry -----
@app.get("/api/projects/<int:project_id>/registry")
@login_required
def registry_list(project_id):
    project_access(project_id)
    gifts = Gift.query.filter_by(project_id=project_id).order_by(Gift.name.asc()).all()
    return jsonify([g.to_dict() for g in gifts])

@app.post("/api/projects/<int:project_id>/registry")
@login_required
def registry_save(project_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    data = _payload()
    name = _text(data, "name")
    if not name:
        raise ValidationFailure("Please provide a name for the gift.")
    price = roadmap.parse_money(data.get("price"))
    if data.get("id"):
        gift = _in_project(Gift, data["id"], ctx)
    else:
        gift = Gift(project_id=ctx.project_id, taken_by=None)
        db.session.add(gift)
    gift.name = name
    gift.price = price
    gift.url = _text(data, "url") or _text(data, "productUrl") or "#"
    gift.image_url = _text(data, "imageUrl")
    db.session.commit()
    return jsonify(ok=True, gift=gift.to_dict())

@app.post("/api/projects/<int:project_id>/registry/<int:gift_id>/delete")
@login_required
def registry_delete(project_id, gift_id):
    ctx = project_access(project_id, EDIT_CONTENT)
    db.session.delete(_in_project(Gift, gift_id, ctx))
    db.session.commit()
    return jsonify(ok=True)

@app.post("/api/projects/<int:project_id>/registry/<int:gift_id>/status")
@login_required
def registry_status(project_id, gift_id):
    """Planner-side tracking, e.g. "Aunt May bought this"; empty takenBy makes it available again."""
    ctx = project_access(project_id, EDIT_CONTENT)
    gift = _in_project(Gift, gift_id, ctx)
    gift.taken_by = _text(_payload(), "takenBy")
    db.session.commit()
    return jsonify(ok=True, gift=gift.to_dict())

@app.post("/api/projects/<int:project_id>/registry/upload")
@login_required
def registry_upload(project_id):
    project_access(project_id, EDIT_CONTENT)
    url, thumb = integrations.upload_image(request.files.get("image"), "gifts")
    return jsonify(ok=True, url=url, thumbUrl=thumb, name=request.form.get("name") or "gift-image")

@app.get("/api/projects/<int:project_id>/registry/search")
@login_required
def registry_search(project_id):
    project_access(project_id, EDIT_CONTENT)
    return jsonify(integrations.search_products(
        request.args.get("q") or "",
        app.config["SCRAPERAPI_KEY"],
        limit=app.config["PRODUCT_SEARCH_LIMIT"],
        timeout=app.config["PRODUCT_SEARCH_TIMEOUT"],
    ))

# ----- Guests (RSVP results) -----
@app.get("/api/projects/<int:project_id>/guests")
@login_required
def guests_list(project_id):
    project_access(project_id)
    guests = Guest.query.filter_by(project_id=project_id).order_by(Guest.created_at.asc(), Guest.id.asc()).all()
    return jsonify(
        guests=[g.to_dict() for g in guests],
        attending=sum(1 + (1 if g.plus_one else 0) for g in guests if g.attending),
    )

# ----- Public wedding page (no login) -----
@app.get("/w/<int:project_id>")
def public_wedding(project_id):
    project = db.session.get(Project, project_id)
    if project is None:
        raise AccessDenied()
    events = (Event.query.filter_by(project_id=project_id)
              .order_by(Event.date.asc().nullslast(), Event.sort_order.asc()).all())
    gifts = Gift.query.filter_by(project_id=project_id).order_by(Gift.price.asc()).all()
    data = project.to_dict()
    data.pop("roadmapVersion", None)
    data["events"] = [e.to_dict() for e in events]
    data["galleryImages"] = [g.to_dict() for g in project.gallery_images[:12]]
    # claimant names stay private to the couple
    data["gifts"] = [
        {"id": g.id, "name": g.name, "price": g.price, "imageUrl": g.image_url,
         "url": g.url, "available": g.available}
        for g in gifts
    ]
    return jsonify(data)

@app.post("/w/<int:project_id>/rsvp")
def public_rsvp(project_id):
    data = _payload()
    name = _text(data, "name")
    if not name:
        raise ValidationFailure("Name is required")
    if db.session.get(Project, project_id) is None:
        raise AccessDenied()
    guest = Guest(
        project_id=project_id,
        name=name,
        email=_text(data, "email"),
        attending=_truthy(data.get("attending")),
        dietary=_text(data, "dietary"),
        plus_one=_truthy(data.get("plusOne")),
    )
    db.session.add(guest)
    db.session.commit()
    log.info("rsvp from %r for project %s", name, project_id)
    return jsonify(ok=True, message="Thank you! Your RSVP has been sent."), 201

@app.post("/w/gifts/<int:gift_id>/claim")
def public_claim_gift(gift_id):
    data = _payload()
    guest_name = _text(data, "guestName") or _text(data, "name")
    if not guest_name:
        raise ValidationFailure("Please tell us your name.")
    if db.session.get(Gift, gift_id) is None:
        raise AccessDenied()
    # one conditional update; a concurrent claim that got there first leaves nothing to match
    claimed = (Gift.query
               .filter(Gift.id == gift_id, or_(Gift.taken_by.is_(None), Gift.taken_by == ""))
               .update({"taken_by": guest_name, "message": _text(data, "message")},
                       synchronize_session=False))
    if not claimed:
        db.session.rollback()
        raise ValidationFailure("Someone already claimed this gift.")
    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        log.exception("Claim Error")
        raise SaveFailed("Could not claim this gift.") from e
    return jsonify(ok=True)

# ----- Serve hosted uploads (public links) -----
@app.get("/u/<path:subpath>")
def serve_upload(subpath):
    resp = send_from_directory(app.config["UPLOAD_ROOT"], subpath)
    resp.headers["Cache-Control"] = "public, max-age=2592000, immutable"
    return resp

@app.get("/healthz")
def healthz():
    return {"ok": True}, 200

if __name__ == "__main__":
    app.run(host="127.0.0.1", port=8000, debug=False)
