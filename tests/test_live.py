import json
from datetime import datetime

from conftest import FakeSocket
from live import ConnectionRegistry


def test_broadcast_without_listener_is_a_no_op():
    registry = ConnectionRegistry()
    assert registry.broadcast("user-1", "task_created", {"id": "t1"}) is False


def test_broadcast_sends_typed_json():
    registry = ConnectionRegistry()
    ws = FakeSocket()
    registry.register("user-1", ws)

    assert registry.broadcast("user-1", "task_created", {"id": "t1"}) is True
    assert json.loads(ws.sent[0]) == {"type": "task_created", "data": {"id": "t1"}}


def test_broadcast_only_reaches_the_target_user():
    registry = ConnectionRegistry()
    mine, theirs = FakeSocket(), FakeSocket()
    registry.register("user-1", mine)
    registry.register("user-2", theirs)

    registry.broadcast("user-2", "email_archived", {"messageId": "m1"})
    assert mine.sent == []
    assert len(theirs.sent) == 1


def test_newer_socket_replaces_and_closes_the_older_one():
    registry = ConnectionRegistry()
    old, new = FakeSocket(), FakeSocket()
    registry.register("user-1", old)
    registry.register("user-1", new)

    assert old.closed
    assert len(registry) == 1
    registry.broadcast("user-1", "ping", {})
    assert old.sent == [] and len(new.sent) == 1


def test_stale_unregister_keeps_the_current_socket():
    registry = ConnectionRegistry()
    old, new = FakeSocket(), FakeSocket()
    registry.register("user-1", old)
    registry.register("user-1", new)

    assert registry.unregister("user-1", old) is False
    assert registry.is_connected("user-1")
    assert registry.unregister("user-1", new) is True
    assert not registry.is_connected("user-1")


def test_failed_send_drops_the_connection():
    registry = ConnectionRegistry()
    registry.register("user-1", FakeSocket(fail=True))

    assert registry.broadcast("user-1", "task_created", {}) is False
    assert not registry.is_connected("user-1")


def test_non_json_values_are_stringified():
    registry = ConnectionRegistry()
    ws = FakeSocket()
    registry.register("user-1", ws)
    registry.broadcast("user-1", "meeting_scheduled", {"start": datetime(2026, 10, 19, 9, 0)})
    assert json.loads(ws.sent[0])["data"]["start"] == "2026-10-19 09:00:00"
