"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

from inkwell.blog import app, init_db

CSRF = "test-token"  # shared constant so the token matches the session


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session")
def public_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("public")


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path, public_dir: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        PUBLIC_DIR=str(public_dir),
        SITE_URL="https://blog.example.com",
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def admin(client) -> FlaskClient:
    """The same client, with a logged-in session and a known CSRF token."""
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["csrf"] = CSRF
    return client


@pytest.fixture(autouse=True, scope="session")
def _fake_clock():
    """
    Patch inkwell.blog.utc_now for the whole session so every call returns
    an ever-increasing timestamp.
    """
    from inkwell import blog

    counter = itertools.count()
    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)
    yield
    mp.undo()
