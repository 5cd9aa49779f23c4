from datetime import datetime

import requests

from slack_service import SLACK_API_URL, SlackNotifier


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def json(self):
        return self.payload

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def _respond(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        result = self.responses.get(url.rsplit("/", 1)[-1], FakeResponse({"ok": True}))
        if isinstance(result, Exception):
            raise result
        return result

    def get(self, url, **kwargs):
        return self._respond("get", url, kwargs)

    def post(self, url, **kwargs):
        return self._respond("post", url, kwargs)


def notifier(responses, webhook_url=None):
    session = FakeSession(responses)
    return SlackNotifier("xoxb-test", webhook_url=webhook_url, session=session), session


HAPPY_PATH = {
    "users.lookupByEmail": FakeResponse({"ok": True, "user": {"id": "U123"}}),
    "conversations.open": FakeResponse({"ok": True, "channel": {"id": "D456"}}),
    "chat.postMessage": FakeResponse({"ok": True, "ts": "1.0"}),
}


def test_task_reminder_is_sent_as_a_dm():
    slack, session = notifier(HAPPY_PATH)

    assert slack.send_task_reminder("owner@example.com", "File taxes", datetime(2026, 10, 23, 17, 0))

    lookup, open_dm, post = session.calls
    assert lookup[0] == "get"
    assert lookup[1] == f"{SLACK_API_URL}/users.lookupByEmail"
    assert lookup[2]["params"] == {"email": "owner@example.com"}
    assert lookup[2]["headers"]["Authorization"] == "Bearer xoxb-test"
    assert open_dm[2]["json"] == {"users": "U123"}
    assert post[2]["json"]["channel"] == "D456"
    assert "File taxes" in post[2]["json"]["text"]
    assert "Friday, October 23 at 05:00 PM" in post[2]["json"]["text"]


def test_unknown_slack_user_returns_false():
    slack, session = notifier({
        "users.lookupByEmail": FakeResponse({"ok": False, "error": "users_not_found"}),
    })
    assert slack.send_task_reminder("ghost@example.com", "Anything") is False
    assert len(session.calls) == 1


def test_failed_post_returns_false():
    responses = dict(HAPPY_PATH)
    responses["chat.postMessage"] = FakeResponse({"ok": False, "error": "channel_not_found"})
    slack, _ = notifier(responses)
    assert slack.send_meeting_notification(
        "owner@example.com", "Sync", "2026-10-19T10:00:00+00:00", ["a@example.com"]
    ) is False


def test_network_errors_return_false():
    responses = dict(HAPPY_PATH)
    responses["conversations.open"] = requests.ConnectionError("offline")
    slack, _ = notifier(responses)
    assert slack.send_task_reminder("owner@example.com", "Anything") is False


def test_meeting_notification_lists_attendees():
    slack, session = notifier(HAPPY_PATH)
    start = datetime(2026, 10, 19, 10, 0)
    assert slack.send_meeting_notification("a@example.com", "Sync", start, ["a@example.com", "b@example.com"])
    text = session.calls[-1][2]["json"]["text"]
    assert "Sync" in text and "a@example.com, b@example.com" in text


def test_channel_post_needs_a_webhook():
    slack, session = notifier({})
    assert slack.post_to_channel("hello") is False
    assert session.calls == []


def test_channel_post_uses_the_webhook():
    slack, session = notifier({"XXX": FakeResponse({})}, webhook_url="https://hooks.slack.com/services/T000/B000/XXX")
    assert slack.post_to_channel("hello") is True
    assert session.calls[0][2]["json"] == {"text": "hello"}


def test_channel_post_failure_returns_false():
    slack, _ = notifier({"XXX": FakeResponse({}, status=500)}, webhook_url="https://hooks.slack.com/services/XXX")
    assert slack.post_to_channel("hello") is False
