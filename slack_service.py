import logging

import requests
from dateutil.parser import parse as date_parse

logger = logging.getLogger(__name__)

SLACK_API_URL = "https://slack.com/api"


class SlackError(Exception):
    pass


class SlackNotifier:
    """Slack Web API calls made with a bot token, plus an optional channel webhook."""

    def __init__(self, token, webhook_url=None, session=None, timeout=30):
        self.token = token
        self.webhook_url = webhook_url
        self.session = session or requests.Session()
        self.timeout = timeout

    def _call(self, method, http_method="post", **params):
        headers = {"Authorization": f"Bearer {self.token}"}
        if http_method == "get":
            resp = self.session.get(
                f"{SLACK_API_URL}/{method}", params=params, headers=headers, timeout=self.timeout
            )
        else:
            resp = self.session.post(
                f"{SLACK_API_URL}/{method}", json=params, headers=headers, timeout=self.timeout
            )
        resp.raise_for_status()
        data = resp.json()
        if not data.get("ok"):
            raise SlackError(f"{method}: {data.get('error', 'unknown_error')}")
        return data

    def lookup_user_id(self, email):
        try:
            data = self._call("users.lookupByEmail", http_method="get", email=email)
        except (SlackError, requests.RequestException) as e:
            logger.warning(f"Slack user lookup failed for {email}: {e}")
            return None
        return data.get("user", {}).get("id")

    def send_dm(self, slack_user_id, text):
        channel = self._call("conversations.open", users=slack_user_id)["channel"]["id"]
        return self._call("chat.postMessage", channel=channel, text=text).get("ts")

    def _notify(self, email, text):
        slack_user_id = self.lookup_user_id(email)
        if not slack_user_id:
            logger.error(f"User not found in Slack: {email}")
            return False
        try:
            self.send_dm(slack_user_id, text)
        except (SlackError, requests.RequestException) as e:
            logger.error(f"Failed to send Slack DM to {email}: {e}")
            return False
        return True

    def send_task_reminder(self, email, title, due=None):
        due_text = f" (due {_format_time(due)})" if due else ""
        return self._notify(email, f"⏰ Task Reminder: \"{title}\"{due_text}")

    def send_meeting_notification(self, email, title, start, attendees):
        attendee_list = f"\nAttendees: {', '.join(attendees)}" if attendees else ""
        return self._notify(
            email,
            f"📅 Meeting scheduled: \"{title}\" at {_format_time(start)}{attendee_list}",
        )

    def post_to_channel(self, text):
        if not self.webhook_url:
            return False
        try:
            resp = self.session.post(self.webhook_url, json={"text": text}, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Slack webhook post failed: {e}")
            return False
        return True


def _format_time(value):
    if isinstance(value, str):
        try:
            value = date_parse(value)
        except (ValueError, OverflowError):
            return value
    return value.strftime("%A, %B %d at %I:%M %p")
