"""
Persistence helpers for users, triaged emails, meetings, tasks and suggestions.

Every function works on the Flask-SQLAlchemy session and commits its own
write. Callers pass the owning user id so a lookup never crosses users.
"""
import copy
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from models import db, User, EmailTriage, Meeting, Task, AiSuggestion

DEFAULT_SETTINGS = {
    "emailFilters": {
        "skipCatchAll": True,
        "skipPrefixes": ["[CMAC_CATCHALL]"],
        "autoClassify": True,
        "allowedDomains": [],
    },
    "aiSettings": {
        "autoTaskCreation": True,
        "proactiveSuggestions": True,
        "meetingPrep": True,
        "smartReplies": True,
        "responseStyle": "professional",
    },
    "notifications": {
        "slack": True,
        "urgentOnly": False,
    },
    "calendar": {
        "bufferTime": 15,
        "workingHours": {"start": "09:00", "end": "17:00"},
        "timeZone": None,
    },
    "security": {
        "dataRetention": 90,
    },
}


def deep_merge(base, updates):
    merged = copy.deepcopy(base)
    for key, value in (updates or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _apply(obj, updates):
    for key, value in updates.items():
        setattr(obj, key, value)


# ── Users ────────────────────────────────────────────────────────────────

def get_user(user_id):
    return db.session.get(User, user_id)


def get_user_by_email(email):
    return User.query.filter_by(email=email).first()


def get_user_by_google_id(google_id):
    return User.query.filter_by(google_id=google_id).first()


def create_user(**fields):
    user = User(**fields)
    db.session.add(user)
    db.session.commit()
    return user


def update_user(user, **updates):
    _apply(user, updates)
    db.session.commit()
    return user


def update_user_tokens(user, access_token, refresh_token=None, expiry=None):
    user.access_token = access_token
    # Google only returns a refresh token on the first consent.
    if refresh_token:
        user.refresh_token = refresh_token
    if expiry is not None:
        user.token_expiry = expiry
    db.session.commit()
    return user


def get_user_settings(user):
    return deep_merge(DEFAULT_SETTINGS, user.preferences or {})


def update_user_settings(user, updates):
    # Assign a fresh dict so the JSON column is flagged dirty.
    user.preferences = deep_merge(user.preferences or {}, updates)
    db.session.commit()
    return get_user_settings(user)


# ── Email triage ─────────────────────────────────────────────────────────

def get_email_triage(user_id, triage_id):
    return EmailTriage.query.filter_by(user_id=user_id, id=triage_id).first()


def get_email_triage_by_message_id(user_id, message_id):
    return EmailTriage.query.filter_by(user_id=user_id, message_id=message_id).first()


def get_email_triages(user_id):
    return (
        EmailTriage.query
        .filter_by(user_id=user_id)
        .order_by(EmailTriage.created_at.desc())
        .all()
    )


def get_recent_email_triages(user_id, limit):
    return (
        EmailTriage.query
        .filter_by(user_id=user_id)
        .order_by(EmailTriage.created_at.desc())
        .limit(limit)
        .all()
    )


def create_email_triage(**fields):
    """Insert a triage row, or return None if one for the message already exists."""
    triage = EmailTriage(**fields)
    db.session.add(triage)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return None
    return triage


def update_email_triage(triage, **updates):
    _apply(triage, updates)
    db.session.commit()
    return triage


def count_email_triages(user_id):
    return EmailTriage.query.filter_by(user_id=user_id).count()


# ── Meetings ─────────────────────────────────────────────────────────────

def get_meeting(user_id, meeting_id):
    return Meeting.query.filter_by(user_id=user_id, id=meeting_id).first()


def get_meetings(user_id):
    return (
        Meeting.query
        .filter_by(user_id=user_id)
        .order_by(Meeting.start_time.desc())
        .all()
    )


def get_upcoming_meetings(user_id, now=None):
    now = now or datetime.utcnow()
    return (
        Meeting.query
        .filter(Meeting.user_id == user_id, Meeting.start_time >= now)
        .order_by(Meeting.start_time)
        .all()
    )


def create_meeting(**fields):
    meeting = Meeting(**fields)
    db.session.add(meeting)
    db.session.commit()
    return meeting


def update_meeting(meeting, **updates):
    _apply(meeting, updates)
    db.session.commit()
    return meeting


def count_meetings(user_id):
    return Meeting.query.filter_by(user_id=user_id).count()


# ── Tasks ────────────────────────────────────────────────────────────────

def get_task(user_id, task_id):
    return Task.query.filter_by(user_id=user_id, id=task_id).first()


def get_tasks(user_id):
    return (
        Task.query
        .filter_by(user_id=user_id)
        .order_by(Task.created_at.desc())
        .all()
    )


def get_pending_tasks(user_id):
    return (
        Task.query
        .filter_by(user_id=user_id, completed=False)
        .order_by(Task.due_date)
        .all()
    )


def get_completed_tasks(user_id):
    return (
        Task.query
        .filter_by(user_id=user_id, completed=True)
        .order_by(Task.completed_at.desc())
        .all()
    )


def create_task(**fields):
    task = Task(**fields)
    db.session.add(task)
    db.session.commit()
    return task


def update_task(task, **updates):
    if "completed" in updates:
        if updates["completed"] and not task.completed:
            updates.setdefault("completed_at", datetime.utcnow())
        elif not updates["completed"]:
            updates["completed_at"] = None
    _apply(task, updates)
    db.session.commit()
    return task


def count_completed_tasks(user_id):
    return Task.query.filter_by(user_id=user_id, completed=True).count()


# ── Suggestions ──────────────────────────────────────────────────────────

def get_suggestion(user_id, suggestion_id):
    return AiSuggestion.query.filter_by(user_id=user_id, id=suggestion_id).first()


def get_suggestions(user_id):
    return (
        AiSuggestion.query
        .filter_by(user_id=user_id)
        .order_by(AiSuggestion.created_at.desc())
        .all()
    )


def create_suggestion(**fields):
    suggestion = AiSuggestion(**fields)
    db.session.add(suggestion)
    db.session.commit()
    return suggestion


def update_suggestion(suggestion, **updates):
    _apply(suggestion, updates)
    db.session.commit()
    return suggestion


def count_open_suggestions(user_id):
    return AiSuggestion.query.filter_by(user_id=user_id, dismissed=False).count()


# ── Whole-account data ───────────────────────────────────────────────────

def export_user_data(user):
    return {
        "user": user.to_dict(),
        "emailTriages": [t.to_dict() for t in get_email_triages(user.id)],
        "meetings": [m.to_dict() for m in get_meetings(user.id)],
        "tasks": [t.to_dict() for t in get_tasks(user.id)],
        "suggestions": [s.to_dict() for s in get_suggestions(user.id)],
        "exportedAt": datetime.utcnow().isoformat(),
    }


def clear_user_data(user_id):
    deleted = {}
    for name, model in (
        ("emailTriages", EmailTriage),
        ("meetings", Meeting),
        ("tasks", Task),
        ("suggestions", AiSuggestion),
    ):
        deleted[name] = model.query.filter_by(user_id=user_id).delete()
    db.session.commit()
    return deleted
