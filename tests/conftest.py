"""
tests/conftest.py
"""
from __future__ import annotations

import itertools
import sqlite3
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

# The single-file app lives here:
from postbook import blog
from postbook.blog import PostStore, app, get_store, init_db


@pytest.fixture
def _tmp_db_path(tmp_path: Path) -> Path:
    """A fresh file per test, so ids always start at 1."""
    return tmp_path / "test.sqlite3"


@pytest.fixture(autouse=True)
def _configure_app(_tmp_db_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(app.config, "TESTING", True)
    monkeypatch.setitem(app.config, "DATABASE", str(_tmp_db_path))
    monkeypatch.setitem(app.config, "TIMEZONE", "UTC")
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Test client sharing one application context, so ``store`` below
    sees the same connection the requests use.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def store(client) -> PostStore:
    return get_store()


@pytest.fixture
def mem_store() -> Generator[PostStore, None, None]:
    """Gateway over an in-memory database, no Flask involved."""
    db = sqlite3.connect(":memory:")
    s = PostStore(db)
    s.create_table()
    yield s
    db.close()


@pytest.fixture
def frozen_clock(monkeypatch: pytest.MonkeyPatch):
    """
    Patch ``blog.now_ts`` so every call returns an ever-increasing
    timestamp. Yields the base value.
    """
    base = 4_070_908_800  # 2099-01-01 00:00:00 UTC
    counter = itertools.count()
    monkeypatch.setattr(blog, "now_ts", lambda: base + next(counter))
    return base
