"""
Outside services: image hosting, the roadmap chat assistant, product search.

None of these run inside a database transaction. Callers finish (or skip)
these calls before they write, or only call them after a commit.
"""
import json
import logging
import pathlib
import re
import urllib.parse
import urllib.request
import uuid

from flask import current_app
from openai import OpenAI
from PIL import Image, ImageOps, UnidentifiedImageError
from werkzeug.utils import secure_filename

from errors import IntegrationError, ValidationFailure
from roadmap import parse_structure

logger = logging.getLogger(__name__)

ALLOWED_EXTS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
UPLOAD_FOLDERS = {"gifts", "wedding-covers", "wedding-gallery"}


# ---------------- File hosting ----------------
def _looks_like_image(first_bytes: bytes, ext: str) -> bool:
    if ext not in ALLOWED_EXTS:
        return False
    b = first_bytes
    if b[:3] == b"\xFF\xD8\xFF": return True   # JPEG
    if b[:8] == b"\x89PNG\r\n\x1a\n": return True
    if b[:6] in (b"GIF87a", b"GIF89a"): return True
    if len(b) >= 12 and b[:4] == b"RIFF" and b[8:12] == b"WEBP": return True
    return False


def make_thumbnail(src_path: pathlib.Path, thumb_path: pathlib.Path, max_px: int, quality: int):
    thumb_path.parent.mkdir(parents=True, exist_ok=True)
    with Image.open(src_path) as im:
        im = ImageOps.exif_transpose(im)
        im.thumbnail((max_px, max_px), Image.LANCZOS)
        if im.mode not in ("RGB", "RGBA"):
            im = im.convert("RGB")
        elif im.mode == "RGBA":
            bg = Image.new("RGB", im.size, (255, 255, 255))
            bg.paste(im, mask=im.split()[3])
            im = bg
        im.save(thumb_path, "JPEG", quality=quality, optimize=True, progressive=True)


def public_url(rel_path) -> str:
    base = (current_app.config.get("PUBLIC_BASE_URL") or "").rstrip("/")
    return f"{base}/u/{pathlib.PurePath(rel_path).as_posix()}"


def upload_image(file_storage, folder: str) -> tuple[str, str]:
    """
    Host an uploaded image under UPLOAD_ROOT/<folder>/ with a jpeg thumbnail.
    Returns (url, thumb_url). Non-images are a ValidationFailure; disk or
    decoding trouble is an IntegrationError.
    """
    if not file_storage or not file_storage.filename:
        raise ValidationFailure("No image selected")
    if folder not in UPLOAD_FOLDERS:
        raise ValidationFailure(f"Unknown upload folder: {folder}")

    safe_name = secure_filename(file_storage.filename)
    ext = pathlib.Path(safe_name).suffix.lower()
    head = file_storage.stream.read(16); file_storage.stream.seek(0)
    if not _looks_like_image(head, ext):
        raise ValidationFailure("That file doesn't look like an image.")

    base_dir = pathlib.Path(current_app.config["UPLOAD_ROOT"]) / folder
    thumbs_dir = base_dir / "thumbs"
    base_dir.mkdir(parents=True, exist_ok=True)

    unique = f"{uuid.uuid4().hex}{ext}"
    dest = base_dir / unique
    thumb_name = f"{pathlib.Path(unique).stem}.jpg"
    try:
        file_storage.save(dest)
        make_thumbnail(dest, thumbs_dir / thumb_name,
                       current_app.config["THUMB_MAX_PX"], current_app.config["THUMB_QUALITY"])
    except (OSError, UnidentifiedImageError) as e:
        dest.unlink(missing_ok=True)
        logger.exception("Upload to %s failed", folder)
        raise IntegrationError("Failed to process the image.") from e

    rel = pathlib.Path(folder) / unique
    rel_thumb = pathlib.Path(folder) / "thumbs" / thumb_name
    return public_url(rel), public_url(rel_thumb)


# ---------------- Roadmap assistant ----------------
SYSTEM_INSTRUCTION = """
You are an expert Wedding Planner AI.
Current Plan: {roadmap}

GOAL: Chat with the user. If they request changes, return the MODIFIED roadmap JSON.
Keep the "id" of every phase and task you keep, even when you rename or move it.
Leave "id" out for anything new. Anything you leave out of the roadmap is deleted.

RESPONSE FORMAT (JSON ONLY):
{{
  "text_response": "Conversational reply...",
  "updated_roadmap": null (if no change) OR [ {{ "id": 1, "title": "Phase Name", "tasks": [ {{ "id": 7, "title": "Task Name" }} ] }} ]
}}
"""

FALLBACK_REPLY = "Sorry, I had a hiccup. Try again."


class RoadmapAssistant:
    """Chat about the roadmap with an OpenAI-compatible model (Groq by default)."""

    def __init__(self, api_key, base_url=None, model="llama-3.1-8b-instant", temperature=0.5, client=None):
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.temperature = temperature
        self._client = client

    @classmethod
    def from_config(cls, config):
        api_key = config.get("AI_API_KEY")
        if not api_key:
            raise IntegrationError("AI Key Missing")
        return cls(api_key,
                   base_url=config.get("AI_BASE_URL"),
                   model=config.get("AI_MODEL") or "llama-3.1-8b-instant",
                   temperature=config.get("AI_TEMPERATURE", 0.5))

    @property
    def client(self):
        if self._client is None:
            kwargs = {"api_key": self.api_key}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = OpenAI(**kwargs)
        return self._client

    def build_messages(self, history, current_roadmap):
        messages = [{"role": "system",
                     "content": SYSTEM_INSTRUCTION.format(roadmap=json.dumps(current_roadmap))}]
        for msg in history or []:
            if not isinstance(msg, dict) or not msg.get("content"):
                continue
            role = "assistant" if msg.get("role") in ("ai", "assistant") else "user"
            messages.append({"role": role, "content": str(msg["content"])})
        return messages

    def reply(self, history, current_roadmap):
        """
        Returns {"text_response": str, "updated_roadmap": RoadmapStructure | None}.
        A proposal that does not validate as a roadmap is dropped, never half-used.
        """
        try:
            completion = self.client.chat.completions.create(
                messages=self.build_messages(history, current_roadmap),
                model=self.model,
                temperature=self.temperature,
                response_format={"type": "json_object"},
            )
            text = completion.choices[0].message.content or "{}"
            data = json.loads(text.strip().replace("```json", "").replace("```", ""))
        except Exception:
            logger.exception("AI Error")
            return {"text_response": FALLBACK_REPLY, "updated_roadmap": None}

        if not isinstance(data, dict):
            return {"text_response": FALLBACK_REPLY, "updated_roadmap": None}

        proposal = data.get("updated_roadmap")
        structure = None
        if proposal is not None:
            try:
                structure = parse_structure(proposal)
            except ValidationFailure as e:
                logger.warning("AI returned an unusable roadmap: %s", e.message)
        return {"text_response": str(data.get("text_response") or ""), "updated_roadmap": structure}


# ---------------- Product search ----------------
def _parse_price(raw) -> float:
    if raw is None:
        return 0.0
    cleaned = re.sub(r"[^0-9.]", "", str(raw))
    try:
        return float(cleaned) if cleaned else 0.0
    except ValueError:
        return 0.0


def search_products(query: str, api_key: str | None, limit: int = 6, timeout: float = 15):
    """
    Amazon search through ScraperAPI's autoparse. Never raises: errors come
    back as {"error": ...} so the registry screen can fall back to manual entry.
    """
    query = (query or "").strip()
    if not query:
        return {"error": "Missing query"}
    if not api_key:
        return {"error": "Server misconfiguration: No API Key"}

    amazon_url = "https://www.amazon.com/s?" + urllib.parse.urlencode({"k": query})
    scraper_url = "http://api.scraperapi.com?" + urllib.parse.urlencode({
        "api_key": api_key, "url": amazon_url, "autoparse": "true", "country_code": "us"
    })
    try:
        req = urllib.request.Request(scraper_url, headers={"User-Agent": "WeddingPlanner/1.0"})
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = json.loads(resp.read().decode("utf-8"))
    except Exception:
        logger.exception("Scraping Error")
        return {"error": "Failed to fetch Amazon results"}

    raw = data.get("results") if isinstance(data, dict) else None
    results = []
    for item in (raw or [])[:limit]:
        url = item.get("url") or ""
        if url and not url.startswith("http"):
            url = f"https://www.amazon.com{url}"
        results.append({
            "title": item.get("name") or item.get("title") or "Unknown Item",
            "url": url,
            "imageUrl": item.get("image") or item.get("image_url") or "",
            "price": _parse_price(item.get("price")),
        })

    if not results:
        return {"results": [], "message": "No results found."}
    return {"results": results}
