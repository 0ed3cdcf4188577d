#!/usr/bin/env python3
"""
A single-file minimal blog: one ``posts`` table, five operations.
"""

import os
import re
import sqlite3
import sys
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from zoneinfo import ZoneInfo, available_timezones

import click
import markdown
from flask import Flask, g, redirect, render_template_string, request, url_for
from jinja2 import TemplateError
from markdown.extensions import Extension
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("POSTBOOK_DB", str(ROOT / "blog.sqlite3")))
PUBLIC_DIR = ROOT / "public"

TIMEZONE = os.environ.get("POSTBOOK_TZ") or None
PORT = int(os.environ.get("POSTBOOK_PORT", "8080"))
SITE_NAME = "postbook"

TS_FORMAT = "%Y-%m-%d %H:%M:%S"
EMPTY_FIELD_MSG = "Please fill in every field."
REQUIRED_FIELDS = ("title", "body", "author")
_ID_RE = re.compile(r"[+-]?[0-9]+")
ID_MIN, ID_MAX = -(2**63), 2**63 - 1

try:
    __version__ = version("postbook")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(
    __name__,
    static_folder=str(PUBLIC_DIR / "css"),
    static_url_path="/css",
)
app.url_map.strict_slashes = False
app.config.update(
    DATABASE=str(DB_FILE),
    TIMEZONE=TIMEZONE,
    PORT=PORT,
    SITE_NAME=SITE_NAME,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


class EscapeHtmlExtension(Extension):
    """Treat raw HTML in a post body as plain text."""

    def extendMarkdown(self, md):
        md.preprocessors.deregister("html_block")
        md.inlinePatterns.deregister("html")


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    html = markdown.markdown(
        text or "", extensions=["fenced_code", "nl2br", EscapeHtmlExtension()]
    )
    return Markup(html)


app.jinja_env.globals["version"] = __version__


###############################################################################
# Errors
###############################################################################
class BlogError(Exception):
    """Base class for every failure a request handler can run into."""


class ParseError(BlogError):
    """The post id in the URL is not a base-10 integer."""


class ValidationError(BlogError):
    """One or more required form fields are empty."""

    def __init__(self, fields: list[str]):
        self.fields = fields
        super().__init__("empty field(s): " + ", ".join(fields))


class NotFound(BlogError):
    """No post with the requested id."""


class StorageError(BlogError):
    """The database driver failed."""


class RenderError(BlogError):
    """A template blew up while rendering."""


###############################################################################
# Storage gateway
###############################################################################
@dataclass(frozen=True)
class Post:
    id: int
    title: str
    body: str
    author: str
    created_at: int


_POST_COLS = "id, title, body, author, created_at"


class PostStore:
    """
    Every SQL statement against ``posts`` goes through here.

    The connection is handed in by the caller. Each call commits on its
    own; nothing spans more than one statement.
    """

    def __init__(self, db: sqlite3.Connection):
        self.db = db

    # -- plumbing -------------------------------------------------------
    def _read(self, sql: str, params: tuple = ()) -> list:
        try:
            return self.db.execute(sql, params).fetchall()
        except (sqlite3.Error, OverflowError) as exc:
            raise StorageError(str(exc)) from exc

    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            cur = self.db.execute(sql, params)
            self.db.commit()
        except (sqlite3.Error, OverflowError) as exc:
            with suppress(sqlite3.Error):
                self.db.rollback()
            raise StorageError(str(exc)) from exc
        return cur

    # -- operations -----------------------------------------------------
    def create_table(self) -> None:
        self._write(
            """
            CREATE TABLE IF NOT EXISTS posts (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                title       TEXT,
                body        TEXT,
                author      TEXT,
                created_at  INTEGER
            )
            """
        )

    def insert(self, title: str, body: str, author: str, created_at: int) -> int:
        cur = self._write(
            "INSERT INTO posts (title, body, author, created_at) VALUES (?,?,?,?)",
            (title, body, author, created_at),
        )
        return cur.lastrowid

    def get_by_id(self, post_id: int) -> Post:
        rows = self._read(f"SELECT {_POST_COLS} FROM posts WHERE id=?", (post_id,))
        if not rows:
            raise NotFound(f"no post with id {post_id}")
        return Post(*rows[0])

    def get_all(self) -> list[Post]:
        """All posts, in whatever order SQLite hands them back."""
        return [Post(*row) for row in self._read(f"SELECT {_POST_COLS} FROM posts")]

    def update(
        self, post_id: int, title: str, body: str, author: str, created_at: int
    ) -> None:
        # zero matched rows is not an error
        self._write(
            "UPDATE posts SET title=?, body=?, author=?, created_at=? WHERE id=?",
            (title, body, author, created_at, post_id),
        )

    def delete_by_id(self, post_id: int) -> None:
        # zero matched rows is not an error
        self._write("DELETE FROM posts WHERE id=?", (post_id,))

    def count(self) -> int:
        return self._read("SELECT COUNT(*) FROM posts")[0][0]


###############################################################################
# Database helpers
###############################################################################
def get_db() -> sqlite3.Connection:
    if "db" not in g:
        try:
            g.db = sqlite3.connect(app.config["DATABASE"])
        except sqlite3.Error as exc:
            raise StorageError(f"{app.config['DATABASE']}: {exc}") from exc
        g.db.row_factory = sqlite3.Row
    return g.db


def get_store() -> PostStore:
    if "store" not in g:
        g.store = PostStore(get_db())
    return g.store


@app.teardown_appcontext
def close_db(error=None):
    g.pop("store", None)
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db() -> None:
    get_store().create_table()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def now_ts() -> int:
    """Current time as epoch seconds."""
    return int(time())


def server_tz() -> ZoneInfo | None:
    """Configured zone, or ``None`` for the machine's local time."""
    tz = app.config.get("TIMEZONE")
    return ZoneInfo(tz) if tz and tz in available_timezones() else None


def format_ts(ts: int, zone: ZoneInfo | None = None) -> str:
    return datetime.fromtimestamp(ts, zone).strftime(TS_FORMAT)


###############################################################################
# Validation + request parsing
###############################################################################
def validate_post(title: str, body: str, author: str) -> None:
    """
    Presence check only. Whitespace is *not* stripped, so ``"  "`` passes.
    """
    empty = [
        name
        for name, value in zip(REQUIRED_FIELDS, (title, body, author))
        if not value
    ]
    if empty:
        raise ValidationError(empty)


def parse_id(raw: str) -> int:
    """Base-10 id that fits an SQLite INTEGER, else ParseError."""
    if not _ID_RE.fullmatch(raw):
        raise ParseError(f"malformed post id: {raw!r:.40}")
    try:
        n = int(raw)
    except ValueError as exc:  # longer than the int-string limit
        raise ParseError(f"malformed post id: {raw!r:.40}") from exc
    if not ID_MIN <= n <= ID_MAX:
        raise ParseError(f"post id out of range: {raw!r:.40}")
    return n


def _form_values() -> dict[str, str]:
    return {name: request.form.get(name, "") for name in REQUIRED_FIELDS}


###############################################################################
# View models
###############################################################################
def index_model(posts: list[Post], *, zone: ZoneInfo | None = None) -> dict:
    return {
        "page_title": "All posts",
        "posts": [
            {
                "id": p.id,
                "title": p.title,
                "author": p.author,
                "created_at": format_ts(p.created_at, zone),
            }
            for p in posts
        ],
    }


def post_model(post: Post, *, zone: ZoneInfo | None = None) -> dict:
    return {
        "page_title": post.title,
        "id": post.id,
        "title": post.title,
        "body": post.body,
        "author": post.author,
        "created_at": format_ts(post.created_at, zone),
    }


def form_model(
    page_title: str,
    *,
    action: str,
    post: Post | None = None,
    values: dict[str, str] | None = None,
    message: str | None = None,
) -> dict:
    """
    Model for the create/edit form. Submitted *values* win over the
    stored *post* so a rejected form comes back as the user typed it.
    """
    model = {"page_title": page_title, "action": action, "message": message}
    model["id"] = post.id if post else None
    for name in REQUIRED_FIELDS:
        if values is not None:
            model[name] = values.get(name, "")
        else:
            model[name] = getattr(post, name) if post else ""
    return model


###############################################################################
# Templates + rendering
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{{ page_title or site_name }}</title>
<link rel="stylesheet" href="{{ url_for('static', filename='style.css') }}">
<body>
<div class="container">
    <header>
        <h1 class="site-name"><a href="{{ url_for('index') }}">{{ site_name }}</a></h1>
        <nav aria-label="Primary">
            <a href="{{ url_for('index') }}">All posts</a>
            <a href="{{ url_for('create_post') }}">New post</a>
        </nav>
    </header>
    <main id="main-content">
"""

TEMPL_EPILOG = """
    </main>
    <footer>Built with postbook v{{ version }}</footer>
</div>
</body>
</html>
"""

TEMPL_INDEX = wrap("""
    <h2>{{ page_title }}</h2>
    {% if posts %}
    <ul class="posts">
        {% for p in posts %}
        <li>
            <a href="{{ url_for('post_detail', post_id=p.id) }}">{{ p.title }}</a>
            <small class="meta">{{ p.author }} &middot; {{ p.created_at }}</small>
        </li>
        {% endfor %}
    </ul>
    {% else %}
    <p>No posts yet.</p>
    {% endif %}
""")

TEMPL_POST = wrap("""
    <article>
        <h2>{{ title }}</h2>
        <p class="meta">by {{ author }} &middot; {{ created_at }}</p>
        <div class="body">{{ body|md }}</div>
    </article>
    <div class="actions">
        <a class="button" href="{{ url_for('edit_post', post_id=id) }}">Edit</a>
        <form method="post" action="{{ url_for('delete_post', post_id=id) }}">
            <button type="submit" class="danger">Delete</button>
        </form>
    </div>
""")

TEMPL_FORM_FIELDS = """
    {% if message %}<p class="message" role="alert">{{ message }}</p>{% endif %}
    <form method="post" action="{{ action }}">
        <label for="title">Title</label>
        <input id="title" name="title" value="{{ title }}">
        <label for="body">Body</label>
        <textarea id="body" name="body" rows="12">{{ body }}</textarea>
        <label for="author">Author</label>
        <input id="author" name="author" value="{{ author }}">
        <button type="submit">Save</button>
    </form>
"""

TEMPL_CREATE = wrap("""
    <h2>{{ page_title }}</h2>
""" + TEMPL_FORM_FIELDS)

TEMPL_EDIT = wrap("""
    <h2>{{ page_title }}</h2>
""" + TEMPL_FORM_FIELDS + """
    <p><a href="{{ url_for('post_detail', post_id=id) }}">Cancel</a></p>
""")

TEMPL_404 = wrap("""
    <h2>Page not found</h2>
    <p>The URL you asked for doesn’t exist.
       <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
""")

TEMPL_500 = wrap("""
    <h2>Internal Server Error</h2>
    <p>Our fault, not yours. Please try again in a minute.</p>
""")

TEMPLATES = {
    "index": TEMPL_INDEX,
    "post": TEMPL_POST,
    "create": TEMPL_CREATE,
    "edit": TEMPL_EDIT,
    "404": TEMPL_404,
    "500": TEMPL_500,
}


def render(name: str, model: dict) -> str:
    """Render the named template with *model* as its context."""
    source = TEMPLATES.get(name)
    if source is None:
        raise RenderError(f"unknown template {name!r}")
    try:
        return render_template_string(
            source, site_name=app.config["SITE_NAME"], **model
        )
    except TemplateError as exc:
        app.logger.exception("Rendering template %r failed", name)
        raise RenderError(f"template {name!r}: {exc}") from exc


###############################################################################
# Posts
###############################################################################
@app.route("/")
def index():
    posts = get_store().get_all()
    return render("index", index_model(posts, zone=server_tz()))


@app.route("/post/<post_id>")
def post_detail(post_id):
    pid = parse_id(post_id)
    post = get_store().get_by_id(pid)
    return render("post", post_model(post, zone=server_tz()))


@app.route("/post/new", methods=["GET", "POST"])
def create_post():
    action = url_for("create_post")
    if request.method == "POST":
        values = _form_values()
        try:
            validate_post(**values)
        except ValidationError as exc:
            app.logger.warning("New post rejected: %s", exc)
            model = form_model(
                "New post", action=action, values=values, message=EMPTY_FIELD_MSG
            )
            return render("create", model), 400

        pid = get_store().insert(created_at=now_ts(), **values)
        app.logger.info("Created post %d", pid)
        return redirect(url_for("post_detail", post_id=pid), code=301)

    return render("create", form_model("New post", action=action))


@app.route("/post/edit/<post_id>", methods=["GET", "POST"])
def edit_post(post_id):
    pid = parse_id(post_id)
    store = get_store()
    post = store.get_by_id(pid)
    action = url_for("edit_post", post_id=pid)

    if request.method == "POST":
        values = _form_values()
        try:
            validate_post(**values)
        except ValidationError as exc:
            app.logger.warning("Edit of post %d rejected: %s", pid, exc)
            model = form_model(
                "Edit post",
                action=action,
                post=post,
                values=values,
                message=EMPTY_FIELD_MSG,
            )
            return render("edit", model), 400

        # created_at is reset on every edit
        store.update(pid, created_at=now_ts(), **values)
        app.logger.info("Updated post %d", pid)
        return redirect(url_for("post_detail", post_id=pid), code=301)

    return render("edit", form_model("Edit post", action=action, post=post))


@app.route("/post/delete/<post_id>", methods=["POST"])
def delete_post(post_id):
    pid = parse_id(post_id)
    get_store().delete_by_id(pid)
    app.logger.info("Deleted post %d", pid)
    return redirect(url_for("index"), code=301)


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(ParseError)
@app.errorhandler(NotFound)
def post_not_found(exc):
    app.logger.warning("%s %s: %s", request.method, request.path, exc)
    return render("404", {"page_title": "Page not found"}), 404


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render("404", {"page_title": "Page not found"}), 404


@app.errorhandler(StorageError)
@app.errorhandler(RenderError)
def server_error(exc):
    app.logger.error(
        "%s %s failed: %s", request.method, request.path, exc, exc_info=exc
    )
    return render("500", {"page_title": "Internal Server Error"}), 500


@app.errorhandler(500)
def internal_error(exc):
    """Generic 500 page for anything not caught above."""
    return render("500", {"page_title": "Internal Server Error"}), 500


###############################################################################
# CLI
###############################################################################
@app.cli.command("init-db")
def cli_init_db():
    """Create the posts table if it is not there yet."""
    try:
        init_db()
    except StorageError as exc:
        click.secho(f"\n❌  Cannot open the database: {exc}", fg="red", err=True)
        sys.exit(1)

    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"\n{app.config['DATABASE']}\n")


@app.cli.command("stats")
def cli_stats():
    """Print how many posts are stored."""
    n = get_store().count()
    click.echo(f"{n} post(s) in {app.config['DATABASE']}")


###############################################################################
# main
###############################################################################
def main() -> None:
    with app.app_context():
        try:
            init_db()
        except StorageError as exc:
            app.logger.critical("Cannot open the database: %s", exc)
            sys.exit(1)

    click.echo(f"Server is listening on http://localhost:{app.config['PORT']}")
    app.run(port=app.config["PORT"], threaded=True)


if __name__ == "__main__":
    main()
