import base64
import logging
import time
from datetime import datetime
from email.mime.text import MIMEText
from http.client import RemoteDisconnected

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from urllib3.exceptions import ProtocolError

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
SCOPES = [
    "openid",
    "email",
    "profile",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/tasks",
]

RETRY_LIMIT = 3
RETRY_DELAY = 2


def build_credentials(user, client_id, client_secret):
    return Credentials(
        token=user.access_token,
        refresh_token=user.refresh_token,
        token_uri=TOKEN_URI,
        client_id=client_id,
        client_secret=client_secret,
        expiry=user.token_expiry,
    )


def refresh_if_expired(creds):
    """Refresh an expired access token in place. Returns True if it refreshed."""
    if creds.expired and creds.refresh_token:
        creds.refresh(Request())
        return True
    return False


def extract_body(payload):
    if payload.get("body", {}).get("data"):
        return _decode(payload["body"]["data"])
    for part in payload.get("parts") or []:
        if part.get("mimeType") == "text/plain" and part.get("body", {}).get("data"):
            return _decode(part["body"]["data"])
    for part in payload.get("parts") or []:
        if part.get("parts"):
            nested = extract_body(part)
            if nested:
                return nested
    return ""


def _decode(data):
    return base64.urlsafe_b64decode(data.encode("utf-8")).decode("utf-8", errors="replace")


def header(headers, name):
    return next((h["value"] for h in headers if h["name"].lower() == name.lower()), "")


def safe_execute(request):
    """Execute a read-only request, retrying dropped connections."""
    for attempt in range(RETRY_LIMIT):
        try:
            return request.execute()
        except (ProtocolError, RemoteDisconnected) as e:
            logger.warning(f"Network error on attempt {attempt + 1}: {e}")
            if attempt == RETRY_LIMIT - 1:
                raise
            time.sleep(RETRY_DELAY)


def parse_message(msg):
    payload = msg.get("payload", {})
    headers = payload.get("headers", [])
    return {
        "id": msg["id"],
        "threadId": msg.get("threadId"),
        "sender": header(headers, "From"),
        "replyTo": header(headers, "Reply-To"),
        "subject": header(headers, "Subject"),
        "date": header(headers, "Date"),
        "rfcMessageId": header(headers, "Message-ID"),
        "snippet": msg.get("snippet", ""),
        "body": extract_body(payload),
        "labelIds": msg.get("labelIds", []),
    }


class GoogleService:
    """Gmail, Calendar and Tasks calls for one user's credentials."""

    def __init__(self, credentials):
        self.credentials = credentials
        self._services = {}

    def _service(self, name, version):
        if name not in self._services:
            self._services[name] = build(
                name, version, credentials=self.credentials, cache_discovery=False
            )
        return self._services[name]

    @property
    def gmail(self):
        return self._service("gmail", "v1")

    @property
    def calendar(self):
        return self._service("calendar", "v3")

    @property
    def tasks(self):
        return self._service("tasks", "v1")

    # ── Gmail ────────────────────────────────────────────────────────────

    def get_unread_emails(self, max_results=10):
        results = safe_execute(
            self.gmail.users().messages().list(userId="me", q="is:unread", maxResults=max_results)
        )
        emails = []
        for m in results.get("messages", []):
            emails.append(self.get_email(m["id"]))
        return emails

    def get_email(self, message_id):
        msg = safe_execute(
            self.gmail.users().messages().get(userId="me", id=message_id, format="full")
        )
        return parse_message(msg)

    def send_email(self, to, subject, body, thread_id=None, in_reply_to=None):
        mime = MIMEText(body)
        mime["to"] = to
        mime["subject"] = subject
        if in_reply_to:
            mime["In-Reply-To"] = in_reply_to
            mime["References"] = in_reply_to
        message = {"raw": base64.urlsafe_b64encode(mime.as_bytes()).decode()}
        if thread_id:
            message["threadId"] = thread_id
        return self.gmail.users().messages().send(userId="me", body=message).execute()

    def archive_email(self, message_id):
        return self.gmail.users().messages().modify(
            userId="me", id=message_id, body={"removeLabelIds": ["INBOX", "UNREAD"]}
        ).execute()

    def mark_as_read(self, message_id):
        return self.gmail.users().messages().modify(
            userId="me", id=message_id, body={"removeLabelIds": ["UNREAD"]}
        ).execute()

    # ── Calendar ─────────────────────────────────────────────────────────

    def get_calendar_events(self, time_min=None, time_max=None, max_results=20):
        time_min = time_min or datetime.utcnow().isoformat() + "Z"
        events_result = safe_execute(
            self.calendar.events().list(
                calendarId="primary",
                timeMin=time_min,
                timeMax=time_max,
                maxResults=max_results,
                singleEvents=True,
                orderBy="startTime",
            )
        )
        return events_result.get("items", [])

    def get_all_calendar_events(self, time_min, time_max, page_size=250):
        """Every event between time_min and time_max, following nextPageToken."""
        events, page_token = [], None
        while True:
            page = safe_execute(
                self.calendar.events().list(
                    calendarId="primary",
                    timeMin=time_min,
                    timeMax=time_max,
                    maxResults=page_size,
                    singleEvents=True,
                    orderBy="startTime",
                    pageToken=page_token,
                )
            )
            events.extend(page.get("items", []))
            page_token = page.get("nextPageToken")
            if not page_token:
                return events

    def create_calendar_event(self, event_body):
        return self.calendar.events().insert(
            calendarId="primary", body=event_body, sendUpdates="all"
        ).execute()

    def delete_calendar_event(self, event_id):
        return self.calendar.events().delete(calendarId="primary", eventId=event_id).execute()

    def check_free_busy(self, emails, time_min, time_max):
        body = {
            "timeMin": time_min,
            "timeMax": time_max,
            "items": [{"id": e} for e in emails],
        }
        return safe_execute(self.calendar.freebusy().query(body=body))

    # ── Tasks ────────────────────────────────────────────────────────────

    def _default_tasklist_id(self):
        lists = safe_execute(self.tasks.tasklists().list())
        items = lists.get("items") or []
        if not items:
            raise RuntimeError("No task lists found")
        return items[0]["id"]

    def get_tasks(self):
        tasklist = self._default_tasklist_id()
        return safe_execute(self.tasks.tasks().list(tasklist=tasklist)).get("items", [])

    def create_task(self, title, notes=None, due=None):
        body = {"title": title}
        if notes:
            body["notes"] = notes
        if due:
            body["due"] = due
        return self.tasks.tasks().insert(tasklist=self._default_tasklist_id(), body=body).execute()

    def update_task(self, task_id, updates):
        return self.tasks.tasks().patch(
            tasklist=self._default_tasklist_id(), task=task_id, body=updates
        ).execute()

    def delete_task(self, task_id):
        return self.tasks.tasks().delete(tasklist=self._default_tasklist_id(), task=task_id).execute()
