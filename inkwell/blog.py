#!/usr/bin/env python3
"""
A small personal blog: posts, categories, tags and a Tistory importer.
"""

import json
import logging
import os
import secrets
import sqlite3
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from html import escape, unescape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from zoneinfo import ZoneInfo, available_timezones

import click
import markdown
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    make_response,
    redirect,
    render_template_string,
    request,
    send_from_directory,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

from inkwell.tistory import SqliteStore, make_excerpt, migrate_export, slugify

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("INKWELL_DATABASE", str(ROOT / "blog.sqlite3")))
PUBLIC_DIR = Path(os.environ.get("INKWELL_PUBLIC_DIR", str(ROOT / "public")))
SITE_URL = os.environ.get("INKWELL_SITE_URL", "http://localhost:5000")

SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = TimestampSigner(SECRET_KEY, salt="login-token")

PAGE_DEFAULT = 12
SITE_NAME_DFLT = "inkwell"
TZ_DFLT = "UTC"
NO_CACHE = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
STARTED_AT = time()

try:
    __version__ = version("inkwell")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=str(DB_FILE),
    PUBLIC_DIR=str(PUBLIC_DIR),
    SITE_URL=SITE_URL,
)
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
    SESSION_COOKIE_HTTPONLY=True,  # mitigate XSS → cookie theft
    SESSION_COOKIE_SECURE=True,  # only if you serve over HTTPS
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.saneheaders",
]


CONTENT_FORMATS = ("markdown", "html")


def render_content(text: str | None, fmt: str = "markdown") -> str:
    """
    Post body → HTML.  Authored posts are Markdown; imported posts are
    stored as HTML and injected verbatim.
    """
    if not text:
        return ""
    if fmt == "html":
        return text
    return markdown.markdown(text, extensions=MD_EXTENSIONS)


@app.template_filter("content")
def content_filter(text: str | None, fmt: str = "markdown") -> Markup:
    return Markup(render_content(text, fmt))


@app.template_filter("plain")
def plain_filter(text: str | None) -> str:
    """Excerpts are stored with HTML entities still encoded."""
    return unescape(text or "")


@app.template_filter("ts")
def ts_filter(iso: str | None, fmt: str = "%B %d, %Y") -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    tz = tz_name()
    zone = timezone.utc if tz == TZ_DFLT else ZoneInfo(tz)
    return dt.astimezone(zone).strftime(fmt)


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        f"""
        ------------------------------------------------------------
        -- 1.  Account
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id          INTEGER PRIMARY KEY,
            username    TEXT UNIQUE NOT NULL,
            token_hash  TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Site-wide key/value settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );
        INSERT OR IGNORE INTO settings (key, value)
            VALUES ('site_name', '{SITE_NAME_DFLT}'),
                   ('site_tagline', 'Thoughts, stories and ideas'),
                   ('author_name', ''),
                   ('about', ''),
                   ('timezone', '{TZ_DFLT}');

        ------------------------------------------------------------
        -- 3.  Categories
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS category (
            id    INTEGER PRIMARY KEY AUTOINCREMENT,
            name  TEXT UNIQUE NOT NULL
        );

        ------------------------------------------------------------
        -- 4.  Posts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS post (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            title           TEXT NOT NULL,
            slug            TEXT UNIQUE NOT NULL,
            content         TEXT NOT NULL,
            content_format  TEXT NOT NULL DEFAULT 'markdown',
            hero_image_url  TEXT,
            excerpt         TEXT,
            is_published    INTEGER NOT NULL DEFAULT 0,
            views           INTEGER NOT NULL DEFAULT 0,
            category_id     INTEGER NOT NULL,
            created_at      TEXT NOT NULL,
            updated_at      TEXT NOT NULL,
            FOREIGN KEY (category_id) REFERENCES category(id)
        );

        CREATE INDEX IF NOT EXISTS idx_post_created ON post(created_at);
        CREATE INDEX IF NOT EXISTS idx_post_category ON post(category_id);

        ------------------------------------------------------------
        -- 5.  Tags
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS tag (
            id   INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL
        );

        CREATE TABLE IF NOT EXISTS post_tag (
            post_id INTEGER NOT NULL,
            tag_id  INTEGER NOT NULL,
            PRIMARY KEY (post_id, tag_id),
            FOREIGN KEY (post_id) REFERENCES post(id) ON DELETE CASCADE,
            FOREIGN KEY (tag_id)  REFERENCES tag(id)  ON DELETE CASCADE
        );
        """
    )
    ensure_post_format_column(db)
    db.commit()


def ensure_post_format_column(db) -> None:
    """
    Add the post.content_format column if it does not exist (older DBs).
    """
    cols = {row["name"] for row in db.execute("PRAGMA table_info(post)")}
    if "content_format" not in cols:
        db.execute(
            "ALTER TABLE post ADD COLUMN content_format TEXT NOT NULL DEFAULT 'markdown'"
        )


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# CLI – create admin + token, import
###############################################################################
def _create_admin(db, *, username: str) -> str:
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute(
        "INSERT INTO user (username, token_hash) VALUES (?,?)",
        (username, hash_token(handle)),
    )
    db.commit()
    return token


def _rotate_token(db) -> str:
    """Generate + store a *new* one-time token, return it for display."""
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute("UPDATE user SET token_hash=? WHERE id=1", (hash_token(handle),))
    db.commit()
    return token


@app.cli.command("init")
@click.option(
    "--username", prompt=True, help="Admin username (will be created if DB empty)"
)
def cli_init(username: str):
    """Initialise DB *and* create the first admin account."""
    init_db()  # no-op if already there
    db = get_db()
    token = _create_admin(db, username=username.strip())

    click.secho("\n✅  Admin created.", fg="green")
    click.echo(f"\nOne-time login token:\n\n{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("token")
def cli_token():
    """Rotate the admin’s one-time login token."""
    db = get_db()
    token = _rotate_token(db)

    click.secho("\n🔑  Fresh login token generated.\n", fg="yellow")
    click.echo(f"{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("import-tistory")
@click.argument("export_dir", type=click.Path(file_okay=False, path_type=Path))
@click.option(
    "--public-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Where images/<post-id>/ folders go (default: PUBLIC_DIR).",
)
@click.option(
    "--slug-map",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file mapping legacy post ids to slugs.",
)
@click.option(
    "--upsert-by",
    type=click.Choice(["id", "slug"]),
    default="id",
    show_default=True,
    help="Natural key used to update posts that already exist.",
)
@click.option("--verbose", "-v", is_flag=True, help="Log every image and tag.")
def cli_import_tistory(
    export_dir: Path,
    public_dir: Path | None,
    slug_map: Path | None,
    upsert_by: str,
    verbose: bool,
):
    """Import a Tistory HTML export (one numeric folder per post)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO, format="%(message)s"
    )
    init_db()

    mapping = None
    if slug_map is not None:
        raw = json.loads(slug_map.read_text(encoding="utf-8"))
        mapping = {str(k): str(v) for k, v in raw.items()}

    click.echo(f"→ importing {export_dir}")
    try:
        report = migrate_export(
            export_dir,
            store=SqliteStore(get_db()),
            public_dir=public_dir or Path(app.config["PUBLIC_DIR"]),
            slug_map=mapping,
            key=upsert_by,
        )
    except (OSError, sqlite3.Error) as exc:
        app.logger.exception("Import aborted")
        raise click.ClickException(f"Migration failed: {exc}") from exc

    click.secho("\n✅  Migration completed.", fg="green")
    click.echo(f"  migrated : {report.migrated}")
    click.echo(f"  skipped  : {len(report.skipped)}")
    for name, reason in report.skipped:
        click.echo(f"    • {name:>8}  {reason}")
    click.echo("\nPosts by category:")
    for name, count in report.distribution:
        click.echo(f"  • {name}: {count}")


###############################################################################
# Content helpers
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    db = get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


def site_name() -> str:
    return get_setting("site_name", SITE_NAME_DFLT) or SITE_NAME_DFLT


def site_url() -> str:
    return (app.config.get("SITE_URL") or SITE_URL).rstrip("/")


def tz_name() -> str:
    tz = get_setting("timezone", TZ_DFLT)
    return tz if tz in available_timezones() else TZ_DFLT


def current_username() -> str:
    """Return the (only) account’s username, falling back to 'admin'."""
    row = get_db().execute("SELECT username FROM user LIMIT 1").fetchone()
    return row["username"] if row else "admin"


# Pagination helpers
def page_size() -> int:
    try:
        return int(get_setting("page_size", PAGE_DEFAULT))
    except (TypeError, ValueError):
        return PAGE_DEFAULT


def paginate(base_sql: str, params: tuple, *, page: int, per_page: int, db):
    total = db.execute(f"SELECT COUNT(*) FROM ({base_sql})", params).fetchone()[0]
    pages = (total + per_page - 1) // per_page
    rows = db.execute(
        f"{base_sql} LIMIT ? OFFSET ?", params + (per_page, (page - 1) * per_page)
    ).fetchall()
    return rows, pages


def parse_tag_list(raw) -> list[str]:
    """
    "react, nextjs ,, react" → ["react", "nextjs"]
    Lists (JSON API) are accepted as-is, minus blanks and repeats.
    """
    if not raw:
        return []
    items = raw.split(",") if isinstance(raw, str) else raw
    return list(dict.fromkeys(str(t).strip() for t in items if str(t).strip()))


def post_tags(post_id: int, *, db) -> list[sqlite3.Row]:
    return db.execute(
        "SELECT t.id, t.name FROM tag t JOIN post_tag pt ON pt.tag_id=t.id "
        "WHERE pt.post_id=? ORDER BY t.name",
        (post_id,),
    ).fetchall()


def all_categories(*, db) -> list[sqlite3.Row]:
    return db.execute("SELECT id, name FROM category ORDER BY name").fetchall()


POST_SQL = """
    SELECT p.*, c.name AS category_name
      FROM post p
      JOIN category c ON c.id = p.category_id
"""


def get_post(id_or_slug, *, db):
    """Numeric → lookup by id, anything else → lookup by slug."""
    key = str(id_or_slug)
    if key.isdigit():
        return db.execute(f"{POST_SQL} WHERE p.id=?", (int(key),)).fetchone()
    return db.execute(f"{POST_SQL} WHERE p.slug=?", (key,)).fetchone()


class PostError(ValueError):
    """A submitted post failed validation (→ 400)."""


def save_post(data: dict, *, db, post_id: int | None = None) -> int:
    """
    Create (``post_id=None``) or update one post plus its tag links.

    *data* keys: title, slug, content, content_format, hero_image_url,
    category_id, tags, is_published.  A missing content_format keeps the
    stored one on update and means Markdown on create.
    """
    title = (data.get("title") or "").strip()
    slug = (data.get("slug") or "").strip()
    content = data.get("content") or ""
    category_id = data.get("category_id")
    fmt = data.get("content_format") or None

    if not title or not slug or not content.strip() or not category_id:
        raise PostError("Missing required fields")
    if fmt is not None and fmt not in CONTENT_FORMATS:
        raise PostError("Unknown content format")
    try:
        category_id = int(category_id)
    except (TypeError, ValueError):
        raise PostError("Invalid category") from None
    if not db.execute("SELECT 1 FROM category WHERE id=?", (category_id,)).fetchone():
        raise PostError("Unknown category")

    clash = db.execute("SELECT id FROM post WHERE slug=?", (slug,)).fetchone()
    if clash and clash["id"] != post_id:
        raise PostError("Slug already exists")
    if fmt is None and post_id is not None:
        row = db.execute(
            "SELECT content_format FROM post WHERE id=?", (post_id,)
        ).fetchone()
        fmt = row["content_format"] if row else None
    fmt = fmt or "markdown"

    now = utc_now().isoformat(timespec="seconds")
    fields = (
        title,
        slug,
        content,
        fmt,
        (data.get("hero_image_url") or "").strip() or None,
        make_excerpt(render_content(content, fmt)),
        1 if data.get("is_published") else 0,
        category_id,
    )
    if post_id is None:
        cur = db.execute(
            """INSERT INTO post (title, slug, content, content_format, hero_image_url,
                                 excerpt, is_published, category_id,
                                 created_at, updated_at)
                    VALUES (?,?,?,?,?,?,?,?,?,?)""",
            fields + (now, now),
        )
        post_id = cur.lastrowid
    else:
        db.execute(
            """UPDATE post
                  SET title=?, slug=?, content=?, content_format=?, hero_image_url=?,
                      excerpt=?, is_published=?, category_id=?, updated_at=?
                WHERE id=?""",
            fields + (now, post_id),
        )

    store = SqliteStore(db)
    tag_ids = [store.ensure_tag(t) for t in parse_tag_list(data.get("tags"))]
    store.replace_post_tags(post_id, tag_ids)
    db.commit()
    return post_id


def post_json(row, *, db) -> dict:
    return {
        "id": row["id"],
        "title": row["title"],
        "slug": row["slug"],
        "content": row["content"],
        "contentFormat": row["content_format"],
        "heroImageURL": row["hero_image_url"],
        "excerpt": row["excerpt"],
        "isPublished": bool(row["is_published"]),
        "views": row["views"],
        "categoryId": row["category_id"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
        "category": {"id": row["category_id"], "name": row["category_name"]},
        "tags": [{"id": t["id"], "name": t["name"]} for t in post_tags(row["id"], db=db)],
    }


def blog_post_json_ld(post, tags, *, url: str) -> Markup:
    """schema.org BlogPosting, safe to drop into a <script> tag."""
    author = {
        "@type": "Person",
        "name": get_setting("author_name") or current_username(),
        "url": f"{site_url()}/about",
    }
    data = {
        "@context": "https://schema.org",
        "@type": "BlogPosting",
        "headline": post["title"],
        "description": unescape(post["excerpt"]) if post["excerpt"] else None,
        "image": post["hero_image_url"] or None,
        "datePublished": post["created_at"],
        "dateModified": post["updated_at"],
        "author": author,
        "publisher": author,
        "mainEntityOfPage": {"@type": "WebPage", "@id": url},
        "keywords": ", ".join(t["name"] for t in tags),
        "articleSection": post["category_name"],
    }
    data = {k: v for k, v in data.items() if v is not None}
    return Markup(json.dumps(data, ensure_ascii=False).replace("<", "\\u003c"))


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


# Expose helpers to templates
app.jinja_env.globals.update(
    get_setting=get_setting,
    site_name=site_name,
    csrf_token=_csrf_token,
    version=__version__,
)
app.jinja_env.globals["post_tags"] = lambda pid: post_tags(pid, db=get_db())


###############################################################################
# Templates + Views
###############################################################################


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<meta name="description" content="{{ description or get_setting('site_tagline', '') }}">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,"Noto Sans","Noto Sans KR",sans-serif}
body{font-size:1.8rem;line-height:1.618;max-width:72rem;margin:auto;color:#c9c9c9;background:#222;padding:13px}
h1,h2,h3{line-height:1.2;margin:2.5rem 0 1.2rem}
a{color:#fff;text-decoration:underline;text-decoration-color:transparent;text-underline-offset:.18em}
a:hover{text-decoration-color:#c9c9c9}
img,video{height:auto;max-width:100%}
pre{background:#4a4a4a;padding:1em;overflow-x:auto}
code{font-size:.9em;background:#4a4a4a;padding:0 .4em}
pre>code{padding:0;background:transparent}
input,textarea,select{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background:#2b2b2b;border:1px solid #555;border-radius:6px;box-sizing:border-box;width:100%}
textarea{min-height:24rem;font-family:ui-monospace,monospace}
button{padding:5px 12px;background:#fff;color:#222;border:1px solid #fff;border-radius:2px;cursor:pointer}
label{display:block;font-weight:600;margin-bottom:.3rem}
.site-nav{display:flex;justify-content:space-between;align-items:baseline;gap:1rem;flex-wrap:wrap}
.site-nav .brand{font-size:1.3em;font-weight:700}
.site-nav nav a{margin-left:1.2rem}
.flash{border-left:4px solid #d3a54a;padding:.4rem .8rem;background:#333;margin:1rem 0}
.cards{display:grid;grid-template-columns:repeat(auto-fill,minmax(30rem,1fr));gap:2rem}
.card{border:1px solid #444;border-radius:8px;overflow:hidden;background:#2a2a2a}
.card a{text-decoration:none}
.card .hero{aspect-ratio:16/9;object-fit:cover;width:100%;display:block;background:#333}
.card .body{padding:1.2rem 1.4rem}
.card h3{margin:0 0 .6rem;font-size:1.1em}
.card p{font-size:.85em;color:#aaa;margin:0 0 .8rem}
.pill{display:inline-block;padding:.1em .6em;margin-right:.4em;background:#444;color:#fff;border-radius:1em;font-size:.75em}
.meta{color:#aaa;font-size:.85em}
.pager{display:flex;justify-content:space-between;margin:2rem 0}
.post-hero{width:100%;border-radius:8px;margin-bottom:2rem}
</style>
<body>
<header class="site-nav">
  <a class="brand" href="{{ url_for('index') }}">{{ site_name() }}</a>
  <nav>
    <a href="{{ url_for('blog') }}">Blog</a>
    <a href="{{ url_for('about') }}">About</a>
    {% if session.get('logged_in') %}
      <a href="{{ url_for('write_post') }}">Write</a>
      <a href="{{ url_for('settings') }}">Settings</a>
      <a href="{{ url_for('logout') }}">Logout</a>
    {% else %}
      <a href="{{ url_for('login') }}">Login</a>
    {% endif %}
  </nav>
</header>
{% with msgs = get_flashed_messages() %}
  {% for m in msgs %}<div class="flash">{{ m }}</div>{% endfor %}
{% endwith %}
<main id="main-content">
"""

TEMPL_EPILOG = """
</main>
<footer class="meta" style="margin-top:4rem;text-align:center;">
  {{ site_name() }} · v{{ version }}
</footer>
</body>
</html>
"""


###############################################################################
# Authentication
###############################################################################
def validate_token(token: str, max_age: int = 60) -> bool:
    """
    • Unsigned  age-check in *one* step (`max_age` seconds).
    • Compare the payload (“handle”) against the hashed copy in the DB.
    """
    try:
        handle = signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return False  # too old ➜ invalid
    except BadSignature:
        return False  # forged ➜ invalid

    row = get_db().execute("SELECT token_hash FROM user LIMIT 1").fetchone()
    return bool(row) and verify_token(row["token_hash"], handle)


def login_required() -> None:
    if not session.get("logged_in"):
        abort(403)


def api_login_required() -> None:
    if not session.get("logged_in"):
        abort(make_response(jsonify(error="Unauthorized"), 401))


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _safe_next(target: str | None) -> str | None:
    """Only same-site absolute paths are allowed as post-login targets."""
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return None


@app.before_request
def admin_gate():
    """Anything under /admin needs a session; send strangers to /login."""
    path = request.path or ""
    if (path == "/admin" or path.startswith("/admin/")) and not session.get(
        "logged_in"
    ):
        return redirect(url_for("login", next=path))


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    # ── read token only from the form ──────────────────────────────
    token = request.form.get("token", "").strip()
    nxt = _safe_next(request.values.get("next"))

    if request.method == "POST" and token and validate_token(token):
        # ── token matched → burn it right away ─────────────────────
        db = get_db()
        db.execute(
            "UPDATE user SET token_hash=? WHERE id=1",
            (hash_token(secrets.token_hex(16)),),
        )
        db.commit()

        session.clear()
        session.permanent = True
        session["logged_in"] = True
        session["csrf"] = secrets.token_hex(16)
        return redirect(nxt or url_for("index"))

    if request.method == "POST":
        flash("Invalid or expired token.")
    return render_template_string(TEMPL_LOGIN, title=site_name(), next=nxt)


TEMPL_LOGIN = wrap("""
{% block body %}
<hr>
<form method="post">
  {% if next %}<input type="hidden" name="next" value="{{ next }}">{% endif %}
  <label for="token">One-time token</label>
  <input id="token" name="token" type="password" autocomplete="current-password">
  <button type="submit">Sign in</button>
</form>
{% endblock %}
""")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


###############################################################################
# Resources
###############################################################################
@app.route("/robots.txt")
def robots():
    rules = (
        "User-agent: *\n"
        "Allow: /\n"
        "Disallow: /admin\n"
        "Disallow: /api/auth\n\n"
        f"Sitemap: {site_url()}/sitemap.xml\n"
    )
    return (
        Response(rules, mimetype="text/plain", direct_passthrough=True),
        200,
        {"Cache-Control": "public, max-age=86400"},
    )  # 1 day cache


@app.route("/sitemap.xml")
def sitemap():
    base = site_url()
    today = utc_now().date().isoformat()
    urls = [
        (f"{base}/", today, "weekly", "1.0"),
        (f"{base}/blog", today, "daily", "0.9"),
        (f"{base}/about", today, "monthly", "0.7"),
    ]
    for row in get_db().execute(
        "SELECT slug, updated_at FROM post WHERE is_published=1 ORDER BY created_at DESC"
    ):
        urls.append(
            (f"{base}/blog/{row['slug']}", row["updated_at"][:10], "monthly", "0.8")
        )

    parts = ['<?xml version="1.0" encoding="UTF-8"?>']
    parts.append('<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">')
    for loc, lastmod, freq, prio in urls:
        parts.append(
            f"<url><loc>{escape(loc)}</loc><lastmod>{lastmod}</lastmod>"
            f"<changefreq>{freq}</changefreq><priority>{prio}</priority></url>"
        )
    parts.append("</urlset>")
    return Response("\n".join(parts), mimetype="application/xml")


@app.route("/images/<int:post_id>/<path:filename>")
def post_image(post_id: int, filename: str):
    """Images copied in by the Tistory importer."""
    folder = Path(app.config["PUBLIC_DIR"]) / "images" / str(post_id)
    return send_from_directory(folder, filename, max_age=86400)


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ no logged-in flag yet ⇒ allow (covers /login POST)
    if not session.get("logged_in"):
        return

    # ➌ for authenticated users we REQUIRE a valid token
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Index + Listings
###############################################################################
@app.route("/")
def index():
    return blog()


@app.route("/blog")
def blog():
    db = get_db()
    page = max(request.args.get("page", 1, type=int) or 1, 1)
    category = request.args.get("category", "").strip()
    tag = request.args.get("tag", "").strip()

    where, params = ["p.is_published = 1"], []
    if category:
        where.append("c.name = ?")
        params.append(category)
    if tag:
        where.append(
            "EXISTS (SELECT 1 FROM post_tag pt JOIN tag t ON t.id = pt.tag_id "
            "WHERE pt.post_id = p.id AND t.name = ?)"
        )
        params.append(tag)

    base_sql = (
        f"{POST_SQL} WHERE {' AND '.join(where)} "
        "ORDER BY p.created_at DESC, p.id DESC"
    )
    posts, pages = paginate(
        base_sql, tuple(params), page=page, per_page=page_size() or PAGE_DEFAULT, db=db
    )
    return render_template_string(
        TEMPL_INDEX,
        posts=posts,
        page=page,
        pages=pages,
        category=category,
        tag=tag,
        title=site_name(),
    )


TEMPL_INDEX = wrap("""
{% block body %}
<hr>
<h1 style="margin-top:0">{{ get_setting('site_tagline', '') }}</h1>
{% if category or tag %}
  <p class="meta">
    Filtered by
    {% if category %}<span class="pill">{{ category }}</span>{% endif %}
    {% if tag %}<span class="pill">#{{ tag }}</span>{% endif %}
    · <a href="{{ url_for('blog') }}">show all</a>
  </p>
{% endif %}

{% if not posts %}
  <p class="meta">No blog posts yet. Check back soon!</p>
{% else %}
<div class="cards">
  {% for p in posts %}
  <article class="card">
    <a href="{{ url_for('post_detail', slug=p['slug']) }}">
      {% if p['hero_image_url'] %}
        <img class="hero" src="{{ p['hero_image_url'] }}" alt="{{ p['title'] }}" loading="lazy">
      {% else %}
        <div class="hero"></div>
      {% endif %}
      <div class="body">
        <h3>{{ p['title'] }}</h3>
        <p>{{ p['excerpt']|plain }}</p>
      </div>
    </a>
    <div class="body meta">
      <a href="{{ url_for('blog', category=p['category_name']) }}" class="pill">{{ p['category_name'] }}</a>
      {% for t in post_tags(p['id'])[:3] %}
        <a href="{{ url_for('blog', tag=t['name']) }}" class="pill">#{{ t['name'] }}</a>
      {% endfor %}
      <br>{{ p['created_at']|ts }} · {{ p['views'] }} views
    </div>
  </article>
  {% endfor %}
</div>
{% endif %}

{% if pages > 1 %}
<nav class="pager">
  {% if page > 1 %}
    <a href="{{ url_for('blog', page=page-1, category=category or None, tag=tag or None) }}">← Newer</a>
  {% else %}<span></span>{% endif %}
  <span class="meta">{{ page }} / {{ pages }}</span>
  {% if page < pages %}
    <a href="{{ url_for('blog', page=page+1, category=category or None, tag=tag or None) }}">Older →</a>
  {% else %}<span></span>{% endif %}
</nav>
{% endif %}
{% endblock %}
""")


###############################################################################
# Posts
###############################################################################
@app.route("/blog/<slug>")
def post_detail(slug):
    db = get_db()
    row = db.execute(f"{POST_SQL} WHERE p.slug=?", (slug,)).fetchone()
    if row is None or (not row["is_published"] and not session.get("logged_in")):
        abort(404)

    views = row["views"]
    try:
        db.execute("UPDATE post SET views = views + 1 WHERE id=?", (row["id"],))
        db.commit()
        views += 1
    except sqlite3.Error:
        app.logger.warning("Could not increment view count for post %s", row["id"])

    tags = post_tags(row["id"], db=db)
    url = f"{site_url()}/blog/{row['slug']}"
    return render_template_string(
        TEMPL_POST,
        p=row,
        tags=tags,
        views=views,
        json_ld=blog_post_json_ld(row, tags, url=url),
        title=f"{row['title']} – {site_name()}",
        description=unescape(row["excerpt"] or ""),
    )


TEMPL_POST = wrap("""
{% block body %}
<hr>
<script type="application/ld+json">{{ json_ld }}</script>
<article>
  {% if p['hero_image_url'] %}
    <img class="post-hero" src="{{ p['hero_image_url'] }}" alt="{{ p['title'] }}">
  {% endif %}
  <h1>{{ p['title'] }}</h1>
  <p class="meta">
    <time datetime="{{ p['created_at'] }}">{{ p['created_at']|ts }}</time>
    · {{ views }} views
    · <a href="{{ url_for('blog', category=p['category_name']) }}" class="pill">{{ p['category_name'] }}</a>
    {% if not p['is_published'] %}<span class="pill" style="background:#a55">draft</span>{% endif %}
    {% if session.get('logged_in') %}
      · <a href="{{ url_for('edit_post', slug=p['slug']) }}">Edit</a>
      · <a href="{{ url_for('delete_post', slug=p['slug']) }}">Delete</a>
    {% endif %}
  </p>

  <div class="e-content">{{ p['content']|content(p['content_format']) }}</div>

  {% if tags %}
  <h3>Tags</h3>
  <p>
    {% for t in tags %}
      <a href="{{ url_for('blog', tag=t['name']) }}" class="pill">#{{ t['name'] }}</a>
    {% endfor %}
  </p>
  {% endif %}
</article>
{% endblock %}
""")


def _post_form() -> dict:
    """Read the editor form; a typed-in new category wins over the select."""
    f = request.form
    category_id = f.get("category_id", "").strip()
    new_category = f.get("new_category", "").strip()
    if new_category:
        category_id = SqliteStore(get_db()).ensure_category(new_category)
    return {
        "title": f.get("title", "").strip(),
        "slug": f.get("slug", "").strip() or slugify(f.get("title", "")),
        "content": f.get("content", ""),
        "content_format": f.get("content_format", "").strip(),
        "hero_image_url": f.get("hero_image_url", ""),
        "category_id": category_id,
        "tags": f.get("tags", ""),
        "is_published": f.get("publish") == "1",
    }


def _render_editor(p: dict, *, heading: str, status: int = 200):
    return (
        render_template_string(
            TEMPL_EDITOR,
            p=p,
            heading=heading,
            categories=all_categories(db=get_db()),
            title=f"{heading} – {site_name()}",
        ),
        status,
    )


@app.route("/admin/write", methods=["GET", "POST"])
def write_post():
    login_required()
    db = get_db()

    if request.method == "POST":
        data = _post_form()
        try:
            save_post(data, db=db)
        except PostError as exc:
            flash(str(exc))
            return _render_editor(data, heading="Write new post", status=400)
        return redirect(url_for("post_detail", slug=data["slug"]))

    return _render_editor({}, heading="Write new post")


@app.route("/admin/edit/<slug>", methods=["GET", "POST"])
def edit_post(slug):
    login_required()
    db = get_db()
    row = db.execute(f"{POST_SQL} WHERE p.slug=?", (slug,)).fetchone()
    if row is None:
        abort(404)

    if request.method == "POST":
        data = _post_form()
        try:
            save_post(data, db=db, post_id=row["id"])
        except PostError as exc:
            flash(str(exc))
            return _render_editor(data, heading="Edit post", status=400)
        return redirect(url_for("post_detail", slug=data["slug"]))

    filled = dict(row)
    filled["tags"] = ", ".join(t["name"] for t in post_tags(row["id"], db=db))
    return _render_editor(filled, heading="Edit post")


TEMPL_EDITOR = wrap("""
{% block body %}
<hr>
<h2>{{ heading }}</h2>
<form method="post">
  {% if csrf_token() %}
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% endif %}

  <label for="title">Title</label>
  <input id="title" name="title" value="{{ p.get('title') or '' }}" required>

  <label for="slug">Slug</label>
  <input id="slug" name="slug" value="{{ p.get('slug') or '' }}"
         placeholder="auto-generated-from-title">

  <label for="hero_image_url">Hero image URL</label>
  <input id="hero_image_url" name="hero_image_url" type="text"
         value="{{ p.get('hero_image_url') or '' }}" placeholder="https://example.com/image.jpg">

  <label for="category_id">Category</label>
  <select id="category_id" name="category_id">
    <option value="">–</option>
    {% for c in categories %}
      <option value="{{ c['id'] }}" {% if c['id']|string == p.get('category_id')|string %}selected{% endif %}>{{ c['name'] }}</option>
    {% endfor %}
  </select>
  <input name="new_category" placeholder="…or a new category">

  <label for="tags">Tags</label>
  <input id="tags" name="tags" value="{{ p.get('tags') or '' }}"
         placeholder="react, nextjs, typescript (comma-separated)">

  <label for="content_format">Format</label>
  <select id="content_format" name="content_format">
    {% for f in ('markdown', 'html') %}
      <option value="{{ f }}" {% if (p.get('content_format') or 'markdown') == f %}selected{% endif %}>{{ f }}</option>
    {% endfor %}
  </select>

  <label for="content">Content (Markdown or HTML)</label>
  <textarea id="content" name="content" required>{{ p.get('content') or '' }}</textarea>

  <button type="submit" name="publish" value="0">Save draft</button>
  <button type="submit" name="publish" value="1">Publish</button>
</form>
{% endblock %}
""")


@app.route("/admin/delete/<slug>", methods=["GET", "POST"])
def delete_post(slug):
    login_required()
    db = get_db()
    row = db.execute(f"{POST_SQL} WHERE p.slug=?", (slug,)).fetchone()
    if row is None:
        abort(404)

    if request.method == "POST":
        db.execute("DELETE FROM post WHERE id=?", (row["id"],))
        db.commit()
        flash(f"Deleted “{row['title']}”.")
        return redirect(url_for("index"))

    return render_template_string(TEMPL_DELETE_POST, p=row, title=site_name())


TEMPL_DELETE_POST = wrap("""
{% block body %}
    <hr>
    <h2>Delete post?</h2>
    <article style="border-left:3px solid #c00; padding-left:1rem;">
        <h3>{{ p['title'] }}</h3>
        <p>{{ p['excerpt']|plain }}</p>
        <small class="meta">{{ p['created_at']|ts }}</small>
    </article>
    <form method="post" style="margin-top:1rem;">
        {% if csrf_token() %}
            <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        {% endif %}
        <button style="background:#c00; color:#fff;">Yes – delete it</button>
        <a href="{{ url_for('post_detail', slug=p['slug']) }}" style="margin-left:1rem;">Cancel</a>
    </form>
{% endblock %}
""")


###############################################################################
# About + Settings
###############################################################################
@app.route("/about")
def about():
    return render_template_string(
        TEMPL_ABOUT,
        body=get_setting("about", ""),
        author=get_setting("author_name") or current_username(),
        title=f"About – {site_name()}",
    )


TEMPL_ABOUT = wrap("""
{% block body %}
<hr>
<h1>{{ author }}</h1>
{% if body %}
  <div class="e-content">{{ body|content }}</div>
{% else %}
  <p class="meta"><em>Work in progress…</em></p>
{% endif %}
{% endblock %}
""")

SETTING_KEYS = ("site_name", "site_tagline", "author_name", "about", "page_size", "timezone")


@app.route("/admin/settings", methods=["GET", "POST"])
def settings():
    login_required()

    if request.method == "POST":
        tz = request.form.get("timezone", "").strip()
        if tz and tz not in available_timezones():
            flash(f"Unknown timezone: {tz}")
            return redirect(url_for("settings"))
        size = request.form.get("page_size", "").strip()
        if size and not size.isdigit():
            flash("Page size must be a number.")
            return redirect(url_for("settings"))

        for key in SETTING_KEYS:
            if key in request.form:
                set_setting(key, request.form[key].strip())
        flash("Settings saved.")
        return redirect(url_for("settings"))

    values = {k: get_setting(k, "") for k in SETTING_KEYS}
    values["page_size"] = values["page_size"] or str(PAGE_DEFAULT)
    return render_template_string(TEMPL_SETTINGS, s=values, title=site_name())


TEMPL_SETTINGS = wrap("""
{% block body %}
<hr>
<h2>Settings</h2>
<form method="post">
  {% if csrf_token() %}
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% endif %}
  <label for="site_name">Site name</label>
  <input id="site_name" name="site_name" value="{{ s.site_name }}">
  <label for="site_tagline">Tagline</label>
  <input id="site_tagline" name="site_tagline" value="{{ s.site_tagline }}">
  <label for="author_name">Author</label>
  <input id="author_name" name="author_name" value="{{ s.author_name }}">
  <label for="page_size">Posts per page</label>
  <input id="page_size" name="page_size" value="{{ s.page_size }}">
  <label for="timezone">Timezone</label>
  <input id="timezone" name="timezone" value="{{ s.timezone }}">
  <label for="about">About page (Markdown)</label>
  <textarea id="about" name="about">{{ s.about }}</textarea>
  <button type="submit">Save</button>
</form>
{% endblock %}
""")


###############################################################################
# JSON API
###############################################################################
def _api_error(msg: str, status: int):
    return jsonify(error=msg), status


def _api_post_data(body: dict) -> dict:
    return {
        "title": body.get("title"),
        "slug": body.get("slug"),
        "content": body.get("content"),
        "content_format": body.get("contentFormat"),
        "hero_image_url": body.get("heroImageURL"),
        "category_id": body.get("categoryId"),
        "tags": body.get("tags") or [],
        "is_published": bool(body.get("isPublished")),
    }


@app.route("/api/posts", methods=["POST"])
def api_create_post():
    api_login_required()
    db = get_db()
    body = request.get_json(silent=True) or {}
    try:
        post_id = save_post(_api_post_data(body), db=db)
    except PostError as exc:
        return _api_error(str(exc), 400)
    return jsonify(post_json(get_post(post_id, db=db), db=db))


@app.route("/api/posts/<id_or_slug>", methods=["GET"])
def api_get_post(id_or_slug):
    db = get_db()
    row = get_post(id_or_slug, db=db)
    if row is None or (not row["is_published"] and not session.get("logged_in")):
        return _api_error("Post not found", 404)
    return jsonify(post_json(row, db=db))


@app.route("/api/posts/<int:post_id>", methods=["PUT"])
def api_update_post(post_id):
    api_login_required()
    db = get_db()
    body = request.get_json(silent=True) or {}
    data = _api_post_data(body)
    if not all((data["title"], data["slug"], data["content"], data["category_id"])):
        return _api_error("Missing required fields", 400)
    if get_post(post_id, db=db) is None:
        return _api_error("Post not found", 404)
    try:
        save_post(data, db=db, post_id=post_id)
    except PostError as exc:
        return _api_error(str(exc), 400)
    return jsonify(post_json(get_post(post_id, db=db), db=db))


@app.route("/api/categories", methods=["GET"])
def api_categories():
    return jsonify([dict(c) for c in all_categories(db=get_db())])


@app.route("/api/categories", methods=["POST"])
def api_create_category():
    api_login_required()
    db = get_db()
    name = str((request.get_json(silent=True) or {}).get("name") or "").strip()
    if not name:
        return _api_error("Name is required", 400)
    if db.execute("SELECT 1 FROM category WHERE name=?", (name,)).fetchone():
        return _api_error("Category already exists", 400)
    cur = db.execute("INSERT INTO category (name) VALUES (?)", (name,))
    db.commit()
    return jsonify(id=cur.lastrowid, name=name)


@app.route("/api/health")
def api_health():
    """Liveness probe for Docker / orchestrators (see inkwell-healthcheck)."""
    now = utc_now().isoformat()
    try:
        get_db().execute("SELECT 1").fetchone()
    except sqlite3.Error:
        app.logger.exception("Health check failed")
        return (
            jsonify(
                status="unhealthy",
                timestamp=now,
                error="Database connection failed",
                database="disconnected",
            ),
            503,
            NO_CACHE,
        )

    return (
        jsonify(
            status="healthy",
            timestamp=now,
            uptime=int(time() - STARTED_AT),
            database="connected",
        ),
        200,
        NO_CACHE,
    )


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    if request.path.startswith("/api/"):
        return _api_error("Not found", 404)
    return render_template_string(TEMPL_404, title=site_name()), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page for production.
    • In debug mode the Werkzeug debugger still shows the traceback,
      because Flask bypasses this handler.
    """
    app.logger.error("Unhandled error on %s", request.path)
    if request.path.startswith("/api/"):
        return _api_error("Internal server error", 500)
    return render_template_string(TEMPL_500, title=site_name()), 500


TEMPL_404 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
{% endblock %}
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "init":
        with app.app_context():
            cli_init()
    else:
        app.run(debug=True)
