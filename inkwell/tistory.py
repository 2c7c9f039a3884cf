"""
Importer for Tistory-style static HTML exports.

Layout of an export:

    export/
        1/  some-title.html
            img/  photo.png  …
        2/  …

One numeric directory per post, one ``.html`` file inside, and an optional
``img/`` folder that the HTML refers to as ``./img/<file>``.
"""

from __future__ import annotations

import enum
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from bs4 import BeautifulSoup

log = logging.getLogger(__name__)

################################################################################
# Constants
################################################################################
SELECTORS = {
    "title": (".title-article",),
    "category": (".box-info .category", "p.category"),
    "date": (".box-info .date", "p.date"),
    "tags": (".tags",),
    "content": (".contents_style",),
}
DEFAULT_CATEGORY = "Uncategorized"
IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg"}
HERO_HINTS = ("hero", "main", "cover", "thumb")
LOCAL_IMG_PREFIX = "./img/"
EXCERPT_LEN = 155
ELLIPSIS = "..."

_SLUG_DROP_RE = re.compile(r"[^\w\s-]")
_SLUG_SEP_RE = re.compile(r"[\s_-]+")
_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")
_DATE_RE = re.compile(
    r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[ T](\d{1,2}):(\d{1,2})(?::(\d{1,2}))?)?$"
)


################################################################################
# Pure helpers
################################################################################
def slugify(title: str | None) -> str:
    """Lower-case, hyphen-separated, URL-safe form of *title*."""
    slug = _SLUG_DROP_RE.sub("", (title or "").lower())
    slug = _SLUG_SEP_RE.sub("-", slug)
    return slug.strip("-")


def make_excerpt(content: str | None) -> str:
    """Plain-text summary: tags stripped, whitespace collapsed, ≤155 chars + '...'."""
    text = _WS_RE.sub(" ", _TAG_RE.sub("", content or "")).strip()
    if len(text) > EXCERPT_LEN:
        return text[:EXCERPT_LEN] + ELLIPSIS
    return text


def parse_source_date(text: str) -> datetime:
    """
    ``2021-04-05 00:18:25`` → naive *local* datetime.

    The string is split field by field instead of being handed to a generic
    parser; some exports carry dates that a lenient parser reads as UTC or
    with day/month swapped.
    """
    m = _DATE_RE.match((text or "").strip())
    if not m:
        raise ValueError(f"unrecognised date: {text!r}")
    year, month, day, hour, minute, second = (int(v) if v else 0 for v in m.groups())
    return datetime(year, month, day, hour, minute, second)


def parse_tags(text: str | None) -> list[str]:
    """``#react#nextjs`` → ``["react", "nextjs"]`` (empty segments dropped)."""
    text = (text or "").strip()
    if text.startswith("#"):
        text = text[1:]
    return [t.strip() for t in text.split("#") if t.strip()]


def image_url(post_id: str | int, filename: str) -> str:
    return f"/images/{post_id}/{filename}"


def pick_hero_image(post_id: str | int, files: list[str]) -> str | None:
    """
    • one image            → that one
    • several images       → first whose name hints at a cover, else the first
    • none                 → None
    """
    if not files:
        return None
    if len(files) == 1:
        return image_url(post_id, files[0])
    for name in files:
        if any(hint in name.lower() for hint in HERO_HINTS):
            return image_url(post_id, name)
    return image_url(post_id, files[0])


################################################################################
# Parser + image relocation
################################################################################
class SkipReason(str, enum.Enum):
    NO_HTML_FILE = "no-html-file"
    MISSING_TITLE = "missing-title"
    MISSING_CONTENT = "missing-content"
    NO_SLUG_MAPPING = "no-slug-mapping"
    ERROR = "error"


@dataclass
class ParsedPost:
    title: str
    category: str
    date: str
    content: str
    tags: list[str]
    post_id: str
    images: list[str] = field(default_factory=list)

    @property
    def hero_image_url(self) -> str | None:
        return pick_hero_image(self.post_id, self.images)


@dataclass
class ParseResult:
    post: ParsedPost | None = None
    reason: SkipReason | None = None

    def __bool__(self) -> bool:
        return self.post is not None


def relocate_images(
    src_dir: Path, post_id: str | int, content, *, public_dir: Path
) -> list[str]:
    """
    Copy ``<src_dir>/img/*`` into ``<public_dir>/images/<post_id>/`` and
    point every ``./img/…`` ``<img src>`` inside *content* at the copy.

    *content* is the bs4 node of the post body and is changed in place.
    Copy errors are not caught here.
    """
    img_dir = Path(src_dir) / "img"
    if not img_dir.is_dir():
        return []

    dest = Path(public_dir) / "images" / str(post_id)
    dest.mkdir(parents=True, exist_ok=True)

    copied: list[str] = []
    for src in sorted(img_dir.iterdir()):
        if not src.is_file() or src.suffix.lower() not in IMAGE_EXTS:
            continue
        shutil.copy2(src, dest / src.name)
        copied.append(src.name)
        log.debug("copied image %s → %s", src, dest / src.name)

    for img in content.find_all("img", src=True):
        src = img["src"]
        if src.startswith(LOCAL_IMG_PREFIX):
            img["src"] = image_url(post_id, Path(src).name)

    return copied


def _select(soup, key: str):
    for sel in SELECTORS[key]:
        node = soup.select_one(sel)
        if node is not None:
            return node
    return None


def _text(node) -> str:
    return node.get_text().strip() if node is not None else ""


def find_html_file(post_dir: Path) -> Path | None:
    if not post_dir.is_dir():
        return None
    files = sorted(p for p in post_dir.glob("*.html") if p.is_file())
    return files[0] if files else None


def parse_post_dir(post_dir: Path, *, public_dir: Path) -> ParseResult:
    """
    Parse one exported post directory.

    Missing file / title / content comes back as ``ParseResult.reason``;
    only real I/O problems (image copy) raise.
    """
    post_dir = Path(post_dir)
    html_file = find_html_file(post_dir)
    if html_file is None:
        return ParseResult(reason=SkipReason.NO_HTML_FILE)

    soup = BeautifulSoup(html_file.read_text(encoding="utf-8"), "html.parser")

    title_node = _select(soup, "title")
    if title_node is None:
        return ParseResult(reason=SkipReason.MISSING_TITLE)
    content_node = _select(soup, "content")
    if content_node is None:
        return ParseResult(reason=SkipReason.MISSING_CONTENT)

    post_id = post_dir.name
    images = relocate_images(post_dir, post_id, content_node, public_dir=public_dir)

    return ParseResult(
        post=ParsedPost(
            title=_text(title_node),
            category=_text(_select(soup, "category")) or DEFAULT_CATEGORY,
            date=_text(_select(soup, "date")),
            content=content_node.decode_contents(),
            tags=parse_tags(_text(_select(soup, "tags"))),
            post_id=post_id,
            images=images,
        )
    )


################################################################################
# Persistence
################################################################################
class SqliteStore:
    """
    Import-side view of the blog schema (category / tag / post / post_tag).

    Wraps an open ``sqlite3`` connection; the orchestrator only talks to
    this interface so tests can hand in a fake.
    """

    def __init__(self, db):
        self.db = db

    def ensure_category(self, name: str) -> int:
        self.db.execute("INSERT OR IGNORE INTO category (name) VALUES (?)", (name,))
        return self.db.execute(
            "SELECT id FROM category WHERE name=?", (name,)
        ).fetchone()[0]

    def ensure_tag(self, name: str) -> int:
        self.db.execute("INSERT OR IGNORE INTO tag (name) VALUES (?)", (name,))
        return self.db.execute("SELECT id FROM tag WHERE name=?", (name,)).fetchone()[0]

    def upsert_post(self, post: dict, *, key: str = "id") -> int:
        """
        Insert or update one post row keyed by ``id`` or ``slug``.
        ``views`` survives updates.
        """
        if key not in ("id", "slug"):
            raise ValueError(f"unknown upsert key: {key}")
        cols = [
            "title",
            "slug",
            "content",
            "content_format",
            "hero_image_url",
            "excerpt",
            "is_published",
            "category_id",
            "created_at",
            "updated_at",
        ]
        if key == "id":
            cols.insert(0, "id")
        updates = ", ".join(f"{c}=excluded.{c}" for c in cols if c != key)
        self.db.execute(
            f"INSERT INTO post ({', '.join(cols)}) "
            f"VALUES ({', '.join('?' * len(cols))}) "
            f"ON CONFLICT({key}) DO UPDATE SET {updates}",
            tuple(post[c] for c in cols),
        )
        return self.db.execute(
            f"SELECT id FROM post WHERE {key}=?", (post[key],)
        ).fetchone()[0]

    def replace_post_tags(self, post_id: int, tag_ids: list[int]) -> None:
        self.db.execute("DELETE FROM post_tag WHERE post_id=?", (post_id,))
        self.db.executemany(
            "INSERT INTO post_tag (post_id, tag_id) VALUES (?,?)",
            [(post_id, tid) for tid in dict.fromkeys(tag_ids)],
        )

    def commit(self) -> None:
        self.db.commit()

    def category_distribution(self) -> list[tuple[str, int]]:
        rows = self.db.execute(
            """
            SELECT c.name, COUNT(p.id) AS n
              FROM category c
              JOIN post p ON p.category_id = c.id
          GROUP BY c.id
          ORDER BY n DESC, c.name
            """
        ).fetchall()
        return [(r[0], r[1]) for r in rows]


################################################################################
# Orchestrator
################################################################################
@dataclass
class MigrationReport:
    migrated: int = 0
    skipped: list[tuple[str, str]] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    tags: int = 0
    distribution: list[tuple[str, int]] = field(default_factory=list)


def discover_post_dirs(export_dir: Path) -> list[Path]:
    """Numeric sub-directories of *export_dir*, in numeric order."""
    export_dir = Path(export_dir)
    if not export_dir.is_dir():
        raise FileNotFoundError(f"export directory not found: {export_dir}")
    dirs = [p for p in export_dir.iterdir() if p.is_dir() and p.name.isdigit()]
    return sorted(dirs, key=lambda p: int(p.name))


def _created_at(parsed: ParsedPost, now: datetime) -> datetime:
    try:
        return parse_source_date(parsed.date).astimezone().astimezone(timezone.utc)
    except ValueError:
        log.warning("post %s: bad date %r, using import time", parsed.post_id, parsed.date)
        return now


def migrate_export(
    export_dir: Path,
    *,
    store,
    public_dir: Path,
    slug_map: dict[str, str] | None = None,
    key: str = "id",
    now: datetime | None = None,
) -> MigrationReport:
    """
    discover → parse-all → categories → tags → posts (+ tag links) → report

    Per-post problems are logged and counted as skipped; store errors
    propagate and end the run.
    """
    report = MigrationReport()
    now = now or datetime.now(timezone.utc)

    # ── discover + parse ────────────────────────────────────────────
    parsed: list[ParsedPost] = []
    for post_dir in discover_post_dirs(export_dir):
        name = post_dir.name
        if slug_map is not None and not slug_map.get(name):
            log.warning("post %s: skipped (no slug mapping)", name)
            report.skipped.append((name, SkipReason.NO_SLUG_MAPPING.value))
            continue

        try:
            result = parse_post_dir(post_dir, public_dir=public_dir)
        except Exception:
            log.exception("post %s: parsing failed", name)
            report.skipped.append((name, SkipReason.ERROR.value))
            continue

        if not result:
            log.warning("post %s: skipped (%s)", name, result.reason.value)
            report.skipped.append((name, result.reason.value))
            continue

        parsed.append(result.post)
        log.info("parsed post %s: %s", name, result.post.title)

    # ── categories (first-seen order) ───────────────────────────────
    category_ids: dict[str, int] = {}
    for p in parsed:
        if p.category not in category_ids:
            category_ids[p.category] = store.ensure_category(p.category)
            log.info("category ready: %s", p.category)
    report.categories = list(category_ids)

    # ── tags ────────────────────────────────────────────────────────
    tag_ids: dict[str, int] = {}
    for name in {t for p in parsed for t in p.tags}:
        tag_ids[name] = store.ensure_tag(name)
        log.debug("tag ready: %s", name)
    report.tags = len(tag_ids)

    # ── posts + links ───────────────────────────────────────────────
    for p in parsed:
        if slug_map is not None:
            slug = slug_map[p.post_id]
        else:
            slug = slugify(p.title) or p.post_id
        created = _created_at(p, now).isoformat(timespec="seconds")

        post_id = store.upsert_post(
            {
                "id": int(p.post_id),
                "title": p.title,
                "slug": slug,
                "content": p.content,
                "content_format": "html",
                "hero_image_url": p.hero_image_url,
                "excerpt": make_excerpt(p.content),
                "is_published": 1,
                "category_id": category_ids[p.category],
                "created_at": created,
                "updated_at": created,
            },
            key=key,
        )
        store.replace_post_tags(post_id, [tag_ids[t] for t in p.tags])
        store.commit()

        report.migrated += 1
        log.info("migrated post %s → /blog/%s", p.post_id, slug)

    report.distribution = store.category_distribution()
    return report
