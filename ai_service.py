import json
import logging

from errors import UpstreamError

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 4000
CLASSIFICATIONS = ("urgent", "normal", "low", "spam")
REPLY_TYPES = ("approve", "decline", "request_info", "schedule_meeting", "custom")
PRIORITIES = ("low", "normal", "high", "urgent")

CLASSIFY_PROMPT = """You are an AI email assistant that classifies emails and generates helpful responses. Analyze the email and provide:
1. Classification (urgent/normal/low/spam)
2. Confidence score (0-1)
3. Brief summary (1-2 sentences)
4. 3 suggested reply options
5. Whether action is required
6. Priority score (1-10)

Respond with JSON in this exact format: {
  "classification": "urgent|normal|low|spam",
  "confidence": 0.85,
  "summary": "Brief summary here",
  "suggestedReplies": ["Reply 1", "Reply 2", "Reply 3"],
  "actionRequired": true,
  "priority": 8
}"""

REPLY_PROMPT = (
    "You are an AI email assistant that drafts professional email replies. "
    "Write a clear, concise, and appropriate response based on the original email "
    "and reply type requested. Return only the body of the reply."
)

SUGGESTIONS_PROMPT = """You are an AI productivity assistant that analyzes user patterns and suggests proactive actions. Based on the user's recent activity, generate helpful suggestions. Respond with JSON in this format:
{"suggestions": [
  {
    "type": "email_follow_up|meeting_preparation|task_reminder|schedule_optimization",
    "title": "Short actionable title",
    "description": "Detailed description of the suggestion",
    "priority": 1-10,
    "actionData": {"key": "value"}
  }
]}"""

AGENDA_PROMPT = """You are an AI meeting assistant that creates professional meeting agendas. Generate a structured agenda with clear objectives, time-boxed items, and preparation notes. Respond with JSON in this format: {
  "title": "Meeting Title",
  "objectives": ["Objective 1", "Objective 2"],
  "agenda_items": [
    {"topic": "Topic name", "duration": 15, "presenter": "Name or null"}
  ],
  "preparation_notes": ["Note 1", "Note 2"]
}"""

TASKS_PROMPT = """You turn free-form notes into to-do items. Extract every actionable task. Respond with JSON in this format:
{"tasks": [
  {"title": "Short imperative title", "description": "Optional detail", "dueDate": "natural language or ISO date, or null", "priority": "low|normal|high|urgent"}
]}"""


class AIService:
    """Thin wrapper around an OpenAI chat client.

    Every method returns plain dicts/strings; failures of the API call or of
    JSON decoding are raised as UpstreamError.
    """

    def __init__(self, client, model="gpt-4o"):
        self.client = client
        self.model = model

    def _complete(self, system, user, json_mode=False):
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            **kwargs,
        )
        return resp.choices[0].message.content or ""

    def _complete_json(self, action, system, user):
        try:
            return json.loads(self._complete(system, user, json_mode=True))
        except Exception as e:
            logger.error(f"Failed to {action}: {e}")
            raise UpstreamError(f"Failed to {action}") from e

    def classify_email(self, sender, subject, body):
        result = self._complete_json(
            "classify email",
            CLASSIFY_PROMPT,
            f"Email from: {sender}\nSubject: {subject}\nBody: {(body or '')[:MAX_BODY_CHARS]}",
        )
        label = str(result.get("classification", "")).lower()
        replies = result.get("suggestedReplies") or []
        return {
            "classification": label if label in CLASSIFICATIONS else "normal",
            "confidence": result.get("confidence"),
            "summary": result.get("summary", ""),
            "suggestedReplies": [str(r) for r in replies][:3],
            "actionRequired": bool(result.get("actionRequired", False)),
            "priority": result.get("priority"),
        }

    def draft_email_reply(self, email, reply_type, custom_instructions=None):
        instructions = f" with these instructions: {custom_instructions}" if custom_instructions else ""
        prompt = (
            f"Original email from {email.get('sender', '')}:\n"
            f"Subject: {email.get('subject', '')}\n"
            f"Body: {(email.get('body') or '')[:MAX_BODY_CHARS]}\n\n"
            f"Draft a {reply_type} reply{instructions}."
        )
        try:
            text = self._complete(REPLY_PROMPT, prompt)
        except Exception as e:
            logger.error(f"Failed to draft email reply: {e}")
            raise UpstreamError("Failed to draft email reply") from e
        if not text.strip():
            raise UpstreamError("Failed to draft email reply")
        return text.strip()

    def generate_proactive_suggestions(self, context):
        result = self._complete_json(
            "generate proactive suggestions",
            SUGGESTIONS_PROMPT,
            "User context:\n"
            f"Recent emails: {json.dumps(context.get('recentEmails', []))}\n"
            f"Upcoming meetings: {json.dumps(context.get('upcomingMeetings', []))}\n"
            f"Pending tasks: {json.dumps(context.get('pendingTasks', []))}",
        )
        if isinstance(result, list):
            return result
        return result.get("suggestions") or []

    def generate_meeting_agenda(self, title, attendees, duration, context=None):
        return self._complete_json(
            "generate meeting agenda",
            AGENDA_PROMPT,
            f"Create agenda for: {title}\n"
            f"Attendees: {', '.join(attendees)}\n"
            f"Duration: {duration} minutes\n"
            f"Context: {context or 'General business meeting'}",
        )

    def extract_task_drafts(self, text, today):
        result = self._complete_json(
            "extract tasks",
            TASKS_PROMPT,
            f"Today is {today.isoformat()}.\nNotes:\n{text}",
        )
        drafts = []
        for item in result.get("tasks") or []:
            if not item.get("title"):
                continue
            priority = str(item.get("priority") or "normal").lower()
            drafts.append({
                "title": item["title"],
                "description": item.get("description") or "",
                "dueDate": item.get("dueDate"),
                "priority": priority if priority in PRIORITIES else "normal",
            })
        return drafts
