import pytest
from simple_websocket import ConnectionClosed

import storage
from app import create_app
from models import db

TEST_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret",
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "GOOGLE_CLIENT_ID": "client-id",
    "GOOGLE_CLIENT_SECRET": "client-secret",
    "OPENAI_API_KEY": "test-key",
    "SLACK_BOT_TOKEN": "xoxb-test",
    "SLACK_WEBHOOK_URL": None,
    "ALLOWED_EMAIL_DOMAINS": [],
    "DEFAULT_TIMEZONE": "UTC",
}


def make_email(message_id, subject, sender="Alice <alice@example.com>", body="Hello"):
    return {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "sender": sender,
        "replyTo": "",
        "subject": subject,
        "date": "Mon, 19 Oct 2026 09:00:00 +0000",
        "rfcMessageId": f"<{message_id}@mail.example.com>",
        "snippet": body[:50],
        "body": body,
        "labelIds": ["INBOX", "UNREAD"],
    }


class FakeGoogle:
    """In-memory stand-in for GoogleService that records every call."""

    def __init__(self):
        self.unread = []
        self.events = []
        self.freebusy = {"calendars": {}}
        self.failing = set()
        self.sent = []
        self.archived = []
        self.created_events = []
        self.deleted_events = []
        self.freebusy_queries = []
        self.created_tasks = []
        self.task_updates = []
        self.deleted_tasks = []

    def _maybe_fail(self, name):
        if name in self.failing:
            raise RuntimeError(f"{name} failed")

    def get_unread_emails(self, max_results=10):
        self._maybe_fail("get_unread_emails")
        return list(self.unread)[:max_results]

    def get_email(self, message_id):
        self._maybe_fail("get_email")
        for email in self.unread:
            if email["id"] == message_id:
                return email
        return make_email(message_id, "")

    def send_email(self, to, subject, body, thread_id=None, in_reply_to=None):
        self._maybe_fail("send_email")
        self.sent.append({
            "to": to, "subject": subject, "body": body,
            "thread_id": thread_id, "in_reply_to": in_reply_to,
        })
        return {"id": f"sent-{len(self.sent)}", "threadId": thread_id}

    def archive_email(self, message_id):
        self._maybe_fail("archive_email")
        self.archived.append(message_id)
        return {"id": message_id}

    def get_calendar_events(self, time_min=None, time_max=None, max_results=20):
        self._maybe_fail("get_calendar_events")
        return list(self.events)

    def get_all_calendar_events(self, time_min, time_max):
        self._maybe_fail("get_all_calendar_events")
        return list(self.events)

    def create_calendar_event(self, body):
        self._maybe_fail("create_calendar_event")
        event = dict(body, id=f"evt-{len(self.created_events) + 1}", status="confirmed")
        self.created_events.append(event)
        return event

    def delete_calendar_event(self, event_id):
        self.deleted_events.append(event_id)

    def check_free_busy(self, emails, time_min, time_max):
        self._maybe_fail("check_free_busy")
        self.freebusy_queries.append((emails, time_min, time_max))
        return self.freebusy

    def create_task(self, title, notes=None, due=None):
        self._maybe_fail("create_task")
        task = {"id": f"gtask-{len(self.created_tasks) + 1}", "title": title, "notes": notes, "due": due}
        self.created_tasks.append(task)
        return task

    def update_task(self, task_id, updates):
        self._maybe_fail("update_task")
        self.task_updates.append((task_id, updates))
        return {"id": task_id, **updates}

    def delete_task(self, task_id):
        self.deleted_tasks.append(task_id)


class FakeAI:
    def __init__(self):
        self.classified = []
        self.drafted = []
        self.classification = {
            "classification": "normal",
            "confidence": 0.9,
            "summary": "A short summary.",
            "suggestedReplies": ["Sounds good", "No thanks", "Tell me more"],
            "actionRequired": False,
            "priority": 5,
        }
        self.suggestions = []
        self.task_drafts = []
        self.suggestion_contexts = []

    def classify_email(self, sender, subject, body):
        self.classified.append(subject)
        return dict(self.classification)

    def draft_email_reply(self, email, reply_type, custom_instructions=None):
        self.drafted.append((email, reply_type))
        return f"Drafted {reply_type} reply"

    def generate_proactive_suggestions(self, context):
        self.suggestion_contexts.append(context)
        return list(self.suggestions)

    def generate_meeting_agenda(self, title, attendees, duration, context=None):
        return {"title": title, "objectives": [], "agenda_items": [], "preparation_notes": []}

    def extract_task_drafts(self, text, today):
        return [dict(d) for d in self.task_drafts]


class FakeSlack:
    def __init__(self):
        self.meeting_notifications = []
        self.reminders = []
        self.channel_posts = []
        self.failing_emails = set()
        self.reminder_result = True

    def send_meeting_notification(self, email, title, start, attendees):
        if email in self.failing_emails:
            raise RuntimeError("slack is down")
        self.meeting_notifications.append(email)
        return True

    def send_task_reminder(self, email, title, due=None):
        self.reminders.append((email, title))
        return self.reminder_result

    def post_to_channel(self, text):
        self.channel_posts.append(text)
        return False


class FakeSocket:
    def __init__(self, fail=False, incoming=()):
        self.sent = []
        self.closed = False
        self.close_reason = None
        self.fail = fail
        self.incoming = list(incoming)
        self.on_receive = None

    def receive(self):
        if self.on_receive:
            self.on_receive()
        if not self.incoming:
            raise ConnectionClosed()
        return self.incoming.pop(0)

    def send(self, data):
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append(data)

    def close(self, reason=None, message=None):
        self.closed = True
        self.close_reason = reason


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def ai():
    return FakeAI()


@pytest.fixture
def slack():
    return FakeSlack()


@pytest.fixture
def app(google, ai, slack):
    app = create_app(TEST_CONFIG)
    app.extensions["google_factory"] = lambda user: google
    app.extensions["ai"] = ai
    app.extensions["slack"] = slack
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def user(app):
    return storage.create_user(
        email="owner@example.com",
        name="Owner",
        google_id="google-owner",
        access_token="access-token",
        refresh_token="refresh-token",
    )


@pytest.fixture
def other_user(app):
    return storage.create_user(
        email="someone@example.com",
        name="Someone Else",
        google_id="google-other",
        access_token="other-token",
    )


@pytest.fixture
def logged_in(client, user):
    with client.session_transaction() as sess:
        sess["user_id"] = user.id
    return client
