import uuid
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _uuid():
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = "users"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    email = db.Column(db.String, nullable=False, unique=True)
    name = db.Column(db.String, nullable=False)
    google_id = db.Column(db.String, nullable=False, unique=True)
    access_token = db.Column(db.Text)
    refresh_token = db.Column(db.Text)
    token_expiry = db.Column(db.DateTime)
    preferences = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "preferences": self.preferences or {},
        }


class EmailTriage(db.Model):
    __tablename__ = "email_triages"
    __table_args__ = (
        db.UniqueConstraint("user_id", "message_id", name="uq_email_triage_message"),
    )
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    message_id = db.Column(db.String, nullable=False)
    thread_id = db.Column(db.String)
    sender = db.Column(db.String, nullable=False)
    subject = db.Column(db.String, nullable=False)
    classification = db.Column(db.String, nullable=False)  # urgent, normal, low, spam
    ai_summary = db.Column(db.Text)
    suggested_replies = db.Column(db.JSON, default=list)
    processed = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "messageId": self.message_id,
            "threadId": self.thread_id,
            "sender": self.sender,
            "subject": self.subject,
            "classification": self.classification,
            "aiSummary": self.ai_summary,
            "suggestedReplies": self.suggested_replies or [],
            "processed": self.processed,
            "createdAt": _iso(self.created_at),
        }


class Meeting(db.Model):
    __tablename__ = "meetings"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    title = db.Column(db.String, nullable=False)
    description = db.Column(db.Text)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    attendees = db.Column(db.JSON, default=list)
    has_conflicts = db.Column(db.Boolean, default=False, nullable=False)
    status = db.Column(db.String, default="pending")  # pending, scheduled, completed, cancelled
    calendar_event_id = db.Column(db.String)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "description": self.description,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "attendees": self.attendees or [],
            "hasConflicts": self.has_conflicts,
            "status": self.status,
            "calendarEventId": self.calendar_event_id,
            "createdAt": _iso(self.created_at),
        }


class Task(db.Model):
    __tablename__ = "tasks"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    title = db.Column(db.String, nullable=False)
    description = db.Column(db.Text)
    due_date = db.Column(db.DateTime)
    completed = db.Column(db.Boolean, default=False, nullable=False)
    priority = db.Column(db.String, default="normal")  # low, normal, high, urgent
    google_task_id = db.Column(db.String)
    slack_reminder_sent = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "description": self.description,
            "dueDate": _iso(self.due_date),
            "completed": self.completed,
            "priority": self.priority,
            "googleTaskId": self.google_task_id,
            "slackReminderSent": self.slack_reminder_sent,
            "createdAt": _iso(self.created_at),
            "completedAt": _iso(self.completed_at),
        }


class AiSuggestion(db.Model):
    __tablename__ = "ai_suggestions"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    type = db.Column(db.String, nullable=False)  # email_follow_up, meeting_preparation, ...
    title = db.Column(db.String, nullable=False)
    description = db.Column(db.Text, nullable=False)
    action_data = db.Column(db.JSON, default=dict)
    accepted = db.Column(db.Boolean, default=False, nullable=False)
    dismissed = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "actionData": self.action_data or {},
            "accepted": self.accepted,
            "dismissed": self.dismissed,
            "createdAt": _iso(self.created_at),
        }
