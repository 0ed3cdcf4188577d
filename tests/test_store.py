"""
tests/test_store.py
"""
from __future__ import annotations

import sqlite3
from time import time

import pytest

from postbook.blog import NotFound, Post, PostStore, StorageError


def test_create_then_read(mem_store):
    before = int(time())
    pid = mem_store.insert("Title", "Body", "Alice", int(time()))
    after = int(time())

    post = mem_store.get_by_id(pid)
    assert (post.title, post.body, post.author) == ("Title", "Body", "Alice")
    assert before <= post.created_at <= after
    assert post.id == pid


def test_ids_are_assigned_by_storage(mem_store):
    first = mem_store.insert("a", "b", "c", 1)
    second = mem_store.insert("a", "b", "c", 1)
    assert second > first


def test_create_table_is_idempotent(mem_store):
    pid = mem_store.insert("a", "b", "c", 1)
    mem_store.create_table()
    assert mem_store.get_by_id(pid).title == "a"


def test_update_overwrites_everything_but_id(mem_store):
    pid = mem_store.insert("old", "old body", "Bob", 10)
    mem_store.update(pid, "new", "new body", "Carol", 20)

    assert mem_store.get_by_id(pid) == Post(pid, "new", "new body", "Carol", 20)


def test_update_missing_id_is_silent_noop(mem_store):
    """Updating a row that isn't there neither errors nor creates it."""
    mem_store.update(999, "ghost", "ghost", "ghost", 1)

    assert mem_store.count() == 0
    with pytest.raises(NotFound):
        mem_store.get_by_id(999)


def test_delete_removes(mem_store):
    pid = mem_store.insert("a", "b", "c", 1)
    mem_store.delete_by_id(pid)
    with pytest.raises(NotFound):
        mem_store.get_by_id(pid)


def test_delete_missing_id_is_silent_noop(mem_store):
    mem_store.insert("a", "b", "c", 1)
    mem_store.delete_by_id(12345)
    assert mem_store.count() == 1


def test_get_all_empty(mem_store):
    assert mem_store.get_all() == []


def test_get_all_complete(mem_store):
    ids = {mem_store.insert(f"t{n}", "b", "a", n) for n in range(5)}
    posts = mem_store.get_all()

    # order is unspecified – compare as sets
    assert len(posts) == 5
    assert {p.id for p in posts} == ids
    for p in posts:
        assert p.title == f"t{p.created_at}"


def test_row_factory_connection_works():
    """The app hands in ``sqlite3.Row`` connections; Post must unpack those too."""
    db = sqlite3.connect(":memory:")
    db.row_factory = sqlite3.Row
    s = PostStore(db)
    s.create_table()
    pid = s.insert("x", "y", "z", 5)
    assert s.get_by_id(pid) == Post(pid, "x", "y", "z", 5)
    assert s.get_all()[0].author == "z"
    db.close()


def test_driver_failure_becomes_storage_error():
    db = sqlite3.connect(":memory:")
    s = PostStore(db)
    s.create_table()
    db.close()

    with pytest.raises(StorageError):
        s.insert("a", "b", "c", 1)
    with pytest.raises(StorageError):
        s.get_all()


def test_missing_table_is_storage_error():
    s = PostStore(sqlite3.connect(":memory:"))
    with pytest.raises(StorageError):
        s.get_by_id(1)


def test_out_of_range_id_is_storage_error(mem_store):
    with pytest.raises(StorageError):
        mem_store.get_by_id(2**64)
    with pytest.raises(StorageError):
        mem_store.delete_by_id(2**64)
