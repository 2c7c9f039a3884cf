"""
tests/test_tistory_import.py
"""
from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import pytest
from bs4 import BeautifulSoup

from inkwell.blog import app, get_db, init_db
from inkwell.tistory import (
    SkipReason,
    SqliteStore,
    discover_post_dirs,
    migrate_export,
    parse_post_dir,
    parse_source_date,
    relocate_images,
)

NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

PAGE = """<!doctype html>
<html><body>
  <div class="title-article">{title}</div>
  <div class="box-info">
    <p class="category">{category}</p>
    <p class="date">{date}</p>
  </div>
  <div class="contents_style">{content}</div>
  <div class="tags">{tags}</div>
</body></html>
"""


def _post(
    root: Path,
    post_id: str,
    *,
    title="Hello World",
    category="Dev",
    date="2021-04-05 00:18:25",
    content='<p>Body <img src="./img/photo.png"></p>',
    tags="#react#nextjs",
    images=("photo.png",),
    html=None,
) -> Path:
    d = root / post_id
    d.mkdir(parents=True)
    if html is None:
        html = PAGE.format(
            title=title, category=category, date=date, content=content, tags=tags
        )
    (d / f"{post_id}.html").write_text(html, encoding="utf-8")
    if images:
        (d / "img").mkdir()
        for name in images:
            (d / "img" / name).write_bytes(b"img:" + name.encode())
    return d


# ───────────────────────── parser ─────────────────────────────────────
def test_parse_full_post(tmp_path):
    d = _post(tmp_path / "export", "42", category="Dev")
    result = parse_post_dir(d, public_dir=tmp_path / "public")

    assert result
    p = result.post
    assert (p.title, p.category, p.date) == ("Hello World", "Dev", "2021-04-05 00:18:25")
    assert p.tags == ["react", "nextjs"]
    assert p.post_id == "42"
    assert 'src="/images/42/photo.png"' in p.content
    assert p.hero_image_url == "/images/42/photo.png"


def test_parse_defaults_missing_category_and_tags(tmp_path):
    html = (
        '<div class="title-article">T</div>'
        '<div class="contents_style"><p>c</p></div>'
    )
    d = _post(tmp_path, "1", html=html, images=())
    p = parse_post_dir(d, public_dir=tmp_path / "public").post

    assert p.category == "Uncategorized"
    assert p.tags == []
    assert p.date == ""
    assert p.hero_image_url is None


def test_parse_category_outside_box_info(tmp_path):
    html = (
        '<div class="title-article">T</div><p class="category">Life</p>'
        '<p class="date">2020-01-01 10:00:00</p>'
        '<div class="contents_style">c</div>'
    )
    p = parse_post_dir(_post(tmp_path, "1", html=html), public_dir=tmp_path).post
    assert p.category == "Life"
    assert p.date == "2020-01-01 10:00:00"


@pytest.mark.parametrize(
    "html, reason",
    [
        ('<div class="contents_style">c</div>', SkipReason.MISSING_TITLE),
        ('<div class="title-article">T</div>', SkipReason.MISSING_CONTENT),
    ],
)
def test_parse_missing_required(tmp_path, html, reason):
    result = parse_post_dir(_post(tmp_path, "9", html=html), public_dir=tmp_path)
    assert not result
    assert result.reason is reason


def test_parse_without_html_file(tmp_path):
    (tmp_path / "5").mkdir()
    result = parse_post_dir(tmp_path / "5", public_dir=tmp_path)
    assert result.reason is SkipReason.NO_HTML_FILE


# ───────────────────────── image relocation ───────────────────────────
def test_relocate_rewrites_only_local_sources(tmp_path):
    src = tmp_path / "42"
    (src / "img").mkdir(parents=True)
    (src / "img" / "photo.png").write_bytes(b"png")
    (src / "img" / "notes.txt").write_text("skip me")
    (src / "img" / "B.JPG").write_bytes(b"jpg")

    soup = BeautifulSoup(
        '<div><img src="./img/photo.png"><img src="https://cdn.example/a.png">'
        "<img alt=nosrc></div>",
        "html.parser",
    )
    public = tmp_path / "public"
    copied = relocate_images(src, "42", soup.div, public_dir=public)

    assert copied == ["B.JPG", "photo.png"]
    assert (public / "images" / "42" / "photo.png").read_bytes() == b"png"
    assert not (public / "images" / "42" / "notes.txt").exists()

    srcs = [img.get("src") for img in soup.find_all("img")]
    assert srcs == ["/images/42/photo.png", "https://cdn.example/a.png", None]


def test_relocate_without_img_dir(tmp_path):
    soup = BeautifulSoup('<img src="./img/x.png">', "html.parser")
    assert relocate_images(tmp_path, "1", soup, public_dir=tmp_path / "pub") == []
    assert soup.img["src"] == "./img/x.png"
    assert not (tmp_path / "pub").exists()


# ───────────────────────── discovery ──────────────────────────────────
def test_discover_numeric_dirs_in_numeric_order(tmp_path):
    for name in ("10", "2", "1", "drafts", "3a"):
        (tmp_path / name).mkdir()
    (tmp_path / "7").write_text("a file, not a dir")

    assert [p.name for p in discover_post_dirs(tmp_path)] == ["1", "2", "10"]


def test_discover_missing_root(tmp_path):
    with pytest.raises(FileNotFoundError):
        discover_post_dirs(tmp_path / "nope")


# ───────────────────────── orchestrator (fake store) ──────────────────
class FakeStore:
    """Dict-backed stand-in for SqliteStore."""

    def __init__(self):
        self.categories: dict[str, int] = {}
        self.tags: dict[str, int] = {}
        self.posts: dict[int, dict] = {}
        self.links: dict[int, list[int]] = {}
        self.commits = 0

    def ensure_category(self, name):
        return self.categories.setdefault(name, len(self.categories) + 1)

    def ensure_tag(self, name):
        return self.tags.setdefault(name, len(self.tags) + 1)

    def upsert_post(self, post, *, key="id"):
        self.posts[post["id"]] = dict(post)
        return post["id"]

    def replace_post_tags(self, post_id, tag_ids):
        self.links[post_id] = list(dict.fromkeys(tag_ids))

    def commit(self):
        self.commits += 1

    def category_distribution(self):
        counts: dict[str, int] = {}
        names = {v: k for k, v in self.categories.items()}
        for p in self.posts.values():
            name = names[p["category_id"]]
            counts[name] = counts.get(name, 0) + 1
        return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))


def _export(tmp_path) -> Path:
    root = tmp_path / "export"
    _post(root, "1", title="First Post", category="Dev", tags="#react#nextjs")
    _post(root, "2", title="Second Post", category="Life", tags="#react#react",
          images=("a.png", "main.png"))
    _post(root, "3", title="Bad Date", category="Dev", date="someday", tags="",
          images=())
    _post(root, "4", html="<p>no title here</p>", images=())
    (root / "5").mkdir()
    return root


def test_migrate_with_fake_store(tmp_path):
    store = FakeStore()
    report = migrate_export(
        _export(tmp_path), store=store, public_dir=tmp_path / "public", now=NOW
    )

    assert report.migrated == 3
    assert report.skipped == [("4", "missing-title"), ("5", "no-html-file")]
    assert report.categories == ["Dev", "Life"]
    assert report.tags == 2
    assert report.distribution == [("Dev", 2), ("Life", 1)]
    assert store.commits == 3

    first = store.posts[1]
    assert first["slug"] == "first-post"
    assert first["content_format"] == "html"
    assert first["is_published"] == 1
    assert first["updated_at"] == first["created_at"]
    expected = parse_source_date("2021-04-05 00:18:25").astimezone().astimezone(
        timezone.utc
    )
    assert first["created_at"] == expected.isoformat(timespec="seconds")

    assert store.posts[2]["hero_image_url"] == "/images/2/main.png"
    assert store.links[2] == [store.tags["react"]]
    assert store.posts[3]["created_at"] == NOW.isoformat(timespec="seconds")


def test_migrate_with_slug_map(tmp_path):
    store = FakeStore()
    report = migrate_export(
        _export(tmp_path),
        store=store,
        public_dir=tmp_path / "public",
        slug_map={"1": "legacy-first", "3": "legacy-third"},
        now=NOW,
    )
    assert report.migrated == 2
    assert ("2", "no-slug-mapping") in report.skipped
    assert store.posts[1]["slug"] == "legacy-first"
    assert store.posts[3]["slug"] == "legacy-third"
    # unmapped posts are not parsed, so their images are never copied
    assert not (tmp_path / "public" / "images" / "2").exists()


def test_migrate_copy_failure_skips_post(tmp_path, monkeypatch):
    import inkwell.tistory as tistory

    def _fail(src, dst):
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(tistory.shutil, "copy2", _fail)
    root = tmp_path / "export"
    _post(root, "1")
    _post(root, "2", title="No Images", images=())

    store = FakeStore()
    report = migrate_export(root, store=store, public_dir=tmp_path / "pub", now=NOW)
    assert report.skipped == [("1", "error")]
    assert list(store.posts) == [2]


# ───────────────────────── orchestrator (sqlite) ──────────────────────
@pytest.fixture
def import_db(tmp_path, monkeypatch):
    """A fresh database just for the importer (ids come from the export)."""
    path = tmp_path / "import.sqlite3"
    monkeypatch.setitem(app.config, "DATABASE", str(path))
    with app.app_context():
        init_db()
        yield get_db()


def _count(db, table: str) -> int:
    return db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def test_migrate_into_sqlite_is_idempotent(tmp_path, import_db):
    db = import_db
    root = _export(tmp_path)
    public = tmp_path / "public"

    report = migrate_export(root, store=SqliteStore(db), public_dir=public, now=NOW)
    assert report.migrated == 3
    assert (_count(db, "post"), _count(db, "category"), _count(db, "tag")) == (3, 2, 2)
    assert _count(db, "post_tag") == 3  # 1 → react+nextjs, 2 → react

    db.execute("UPDATE post SET views = 5 WHERE id = 1")
    db.commit()

    migrate_export(root, store=SqliteStore(db), public_dir=public, now=NOW)
    assert (_count(db, "post"), _count(db, "category"), _count(db, "tag")) == (3, 2, 2)
    assert _count(db, "post_tag") == 3
    row = db.execute("SELECT slug, views, excerpt FROM post WHERE id=1").fetchone()
    assert (row["slug"], row["views"]) == ("first-post", 5)
    assert row["excerpt"] == "Body"
    assert (public / "images" / "2" / "main.png").exists()


def test_migrate_upsert_by_slug(tmp_path, import_db):
    db = import_db
    store = SqliteStore(db)
    root = tmp_path / "export"
    _post(root, "1", title="Same Title", content="<p>old</p>", images=())
    migrate_export(root, store=store, public_dir=tmp_path, key="slug", now=NOW)

    (root / "1" / "1.html").write_text(
        PAGE.format(title="Same Title", category="Dev", date="", content="<p>new</p>",
                    tags=""),
        encoding="utf-8",
    )
    migrate_export(root, store=store, public_dir=tmp_path, key="slug", now=NOW)

    rows = db.execute("SELECT content FROM post WHERE slug='same-title'").fetchall()
    assert [r["content"] for r in rows] == ["<p>new</p>"]


def test_store_rejects_unknown_key(import_db):
    with pytest.raises(ValueError):
        SqliteStore(import_db).upsert_post({}, key="title")


# ───────────────────────── CLI ────────────────────────────────────────
def test_cli_import(tmp_path, monkeypatch):
    db_path = tmp_path / "cli.sqlite3"
    monkeypatch.setitem(app.config, "DATABASE", str(db_path))
    root = _export(tmp_path)
    slug_map = tmp_path / "slugs.json"
    slug_map.write_text(json.dumps({1: "one", 2: "two", 3: "three"}))

    result = app.test_cli_runner().invoke(
        args=[
            "import-tistory",
            str(root),
            "--public-dir",
            str(tmp_path / "public"),
            "--slug-map",
            str(slug_map),
        ]
    )
    assert result.exit_code == 0, result.output
    assert "Migration completed" in result.output
    assert "migrated : 3" in result.output
    assert "no-slug-mapping" in result.output

    with sqlite3.connect(db_path) as db:
        slugs = [r[0] for r in db.execute("SELECT slug FROM post ORDER BY id")]
    assert slugs == ["one", "two", "three"]


def test_cli_import_missing_root(tmp_path, monkeypatch):
    monkeypatch.setitem(app.config, "DATABASE", str(tmp_path / "cli.sqlite3"))
    result = app.test_cli_runner().invoke(
        args=["import-tistory", str(tmp_path / "missing")]
    )
    assert result.exit_code == 1
    assert "Migration failed" in result.output
