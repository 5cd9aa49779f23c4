from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import dateparser
from dateutil.parser import parse as date_parse
from flask import Blueprint, current_app, jsonify, request

import storage
from ai_service import PRIORITIES, REPLY_TYPES
from auth import current_user
from errors import AuthError, BadRequestError, ConflictError, NotFoundError, upstream_errors
from models import db
from scheduling import find_free_slots, has_conflicts

bp = Blueprint("api", __name__, url_prefix="/api")

MAX_FREE_TIME_DAYS = 30
RECENT_EMAIL_CONTEXT = 10


# ── Helpers ──────────────────────────────────────────────────────────────

def _ai():
    return current_app.extensions["ai"]


def _slack():
    return current_app.extensions["slack"]


def _broadcast(user, event_type, data):
    return current_app.extensions["live"].broadcast(user.id, event_type, data)


def google_for(user):
    if not user.access_token:
        raise AuthError("User not authenticated with Google")
    return current_app.extensions["google_factory"](user)


def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _required(data, field):
    value = data.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise BadRequestError(f"{field} is required")
    return value


def _flag(data, field):
    value = data[field]
    if not isinstance(value, bool):
        raise BadRequestError(f"{field} must be true or false")
    return value


def _user_tz(user):
    name = storage.get_user_settings(user).get("calendar", {}).get("timeZone")
    try:
        return ZoneInfo(name or current_app.config["DEFAULT_TIMEZONE"])
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(current_app.config["DEFAULT_TIMEZONE"])


def _parse_datetime(value, field, tz):
    try:
        parsed = date_parse(value)
    except (TypeError, ValueError, OverflowError):
        raise BadRequestError(f"{field} must be an ISO-8601 datetime")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _parse_due(value, tz):
    """Parse an ISO or natural-language due date ("next friday 5pm")."""
    if not value:
        return None
    settings = {
        "PREFER_DATES_FROM": "future",
        "TIMEZONE": str(tz),
        "RETURN_AS_TIMEZONE_AWARE": True,
    }
    parsed = dateparser.parse(str(value), settings=settings)
    if parsed is None:
        try:
            parsed = date_parse(str(value), fuzzy=True)
        except (ValueError, OverflowError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _utc_naive(value):
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _rfc3339(value):
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_attendees(raw):
    attendees = []
    for item in raw or []:
        email = item.get("email") if isinstance(item, dict) else item
        if not email or "@" not in str(email):
            raise BadRequestError(f"Invalid attendee: {item!r}")
        attendees.append({"email": str(email).strip()})
    return attendees


def _skip_prefixes(settings):
    filters = settings.get("emailFilters", {})
    if not filters.get("skipCatchAll", True):
        return []
    return [p for p in filters.get("skipPrefixes") or [] if p]


def _undo(action, description):
    try:
        action()
        current_app.logger.info(f"Rolled back {description}")
    except Exception:
        current_app.logger.exception(f"Failed to roll back {description}")


# ── Profile & settings ───────────────────────────────────────────────────

@bp.route("/user/profile")
def user_profile():
    return jsonify(current_user().to_dict())


@bp.route("/user/settings", methods=["GET"])
@bp.route("/settings", methods=["GET"])
def get_settings():
    return jsonify(storage.get_user_settings(current_user()))


@bp.route("/user/settings", methods=["PUT"])
@bp.route("/settings", methods=["POST"])
@upstream_errors("Failed to save settings")
def save_settings():
    user = current_user()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequestError("Settings must be a JSON object")
    return jsonify(storage.update_user_settings(user, data))


# ── Email ────────────────────────────────────────────────────────────────

@bp.route("/emails/triage", methods=["GET", "POST"])
@upstream_errors("Failed to process email triage")
def email_triage():
    user = current_user()
    google = google_for(user)
    prefixes = _skip_prefixes(storage.get_user_settings(user))

    emails = google.get_unread_emails(current_app.config["EMAIL_FETCH_LIMIT"])
    current_app.logger.info(f"[Triage] Fetched {len(emails)} unread emails for {user.email}")

    for email in emails:
        subject = (email.get("subject") or "").strip()
        if any(subject.startswith(p) for p in prefixes):
            current_app.logger.debug(f"[Triage] Skipping {email['id']}: excluded subject prefix")
            continue
        if storage.get_email_triage_by_message_id(user.id, email["id"]):
            continue

        result = _ai().classify_email(email.get("sender"), subject, email.get("body"))
        triage = storage.create_email_triage(
            user_id=user.id,
            message_id=email["id"],
            thread_id=email.get("threadId"),
            sender=email.get("sender") or "Unknown sender",
            subject=subject or "(no subject)",
            classification=result["classification"],
            ai_summary=result["summary"],
            suggested_replies=result["suggestedReplies"],
            processed=False,
        )
        if triage is None:
            current_app.logger.info(f"[Triage] {email['id']} was triaged by a concurrent request")
            continue

        current_app.logger.info(f"[Triage] {email['id']} classified as {triage.classification}")
        _broadcast(user, "email_triaged", {
            "email": {k: email.get(k) for k in ("id", "threadId", "sender", "subject", "date")},
            "triage": triage.to_dict(),
        })

    return jsonify([t.to_dict() for t in storage.get_email_triages(user.id)])


@bp.route("/emails/reply", methods=["POST"])
@upstream_errors("Failed to send email reply")
def email_reply():
    user = current_user()
    data = _body()
    message_id = _required(data, "messageId")
    reply_type = data.get("replyType") or "custom"
    if reply_type not in REPLY_TYPES:
        raise BadRequestError(f"replyType must be one of: {', '.join(REPLY_TYPES)}")
    custom_message = (data.get("customMessage") or "").strip()
    if reply_type == "custom" and not custom_message:
        raise BadRequestError("customMessage is required for custom replies")

    google = google_for(user)
    triage = storage.get_email_triage_by_message_id(user.id, message_id)
    if triage is None:
        raise NotFoundError("Email triage not found")
    if triage.processed:
        raise ConflictError("This email was already handled")

    original = google.get_email(message_id)
    reply_text = custom_message or _ai().draft_email_reply(
        {"sender": triage.sender, "subject": triage.subject, "body": original.get("body")},
        reply_type,
    )
    subject = triage.subject if triage.subject.lower().startswith("re:") else f"Re: {triage.subject}"
    google.send_email(
        original.get("replyTo") or triage.sender,
        subject,
        reply_text,
        thread_id=triage.thread_id,
        in_reply_to=original.get("rfcMessageId") or None,
    )
    storage.update_email_triage(triage, processed=True)
    current_app.logger.info(f"[Reply] Sent {reply_type} reply for {message_id}")

    _broadcast(user, "email_replied", {"messageId": message_id, "replyType": reply_type})
    return jsonify({"success": True, "message": "Reply sent successfully", "reply": reply_text})


@bp.route("/emails/archive", methods=["POST"])
@upstream_errors("Failed to archive email")
def email_archive():
    user = current_user()
    message_id = _required(_body(), "messageId")
    google = google_for(user)
    triage = storage.get_email_triage_by_message_id(user.id, message_id)
    if triage is None:
        raise NotFoundError("Email triage not found")

    google.archive_email(message_id)
    storage.update_email_triage(triage, processed=True)
    current_app.logger.info(f"[Archive] Archived {message_id}")

    _broadcast(user, "email_archived", {"messageId": message_id})
    return jsonify({"success": True, "message": "Email archived successfully"})


# ── Calendar ─────────────────────────────────────────────────────────────

@bp.route("/calendar/events")
@upstream_errors("Failed to fetch calendar events")
def calendar_events():
    user = current_user()
    google = google_for(user)
    events = google.get_calendar_events(request.args.get("timeMin"), request.args.get("timeMax"))
    return jsonify(events)


@bp.route("/calendar/meetings", methods=["POST"])
@upstream_errors("Failed to create meeting")
def create_meeting():
    user = current_user()
    data = _body()
    title = _required(data, "title").strip()
    tz = _user_tz(user)
    start = _parse_datetime(_required(data, "startTime"), "startTime", tz)
    end = _parse_datetime(_required(data, "endTime"), "endTime", tz)
    if end <= start:
        raise BadRequestError("endTime must be after startTime")
    attendees = _normalize_attendees(data.get("attendees"))
    emails = [a["email"] for a in attendees]
    description = data.get("description")

    google = google_for(user)
    conflicts = False
    if emails:
        freebusy = google.check_free_busy(emails, _rfc3339(start), _rfc3339(end))
        conflicts = has_conflicts(freebusy, start, end)
        current_app.logger.info(f"[Calendar] Free/busy for {emails}: conflicts={conflicts}")

    # Conflicts are informational; the event is always created.
    event = google.create_calendar_event({
        "summary": title,
        "description": description,
        "start": {"dateTime": start.isoformat(), "timeZone": str(tz)},
        "end": {"dateTime": end.isoformat(), "timeZone": str(tz)},
        "attendees": attendees,
    })

    try:
        meeting = storage.create_meeting(
            user_id=user.id,
            title=title,
            description=description,
            start_time=_utc_naive(start),
            end_time=_utc_naive(end),
            attendees=attendees,
            has_conflicts=conflicts,
            status="scheduled",
            calendar_event_id=event.get("id"),
        )
    except Exception:
        db.session.rollback()
        if event.get("id"):
            _undo(lambda: google.delete_calendar_event(event["id"]), f"calendar event {event['id']}")
        raise

    for email in emails:
        try:
            _slack().send_meeting_notification(email, title, start, emails)
        except Exception:
            current_app.logger.exception(f"[Calendar] Slack notification to {email} failed")
    _slack().post_to_channel(f"📅 {user.name} scheduled \"{title}\" for {start.strftime('%A, %B %d at %I:%M %p')}")

    _broadcast(user, "meeting_scheduled", meeting.to_dict())
    return jsonify({
        "meeting": meeting.to_dict(),
        "calendarEvent": event,
        "hasConflicts": conflicts,
    }), 201


@bp.route("/calendar/find-free-time", methods=["POST"])
@upstream_errors("Failed to find free time")
def find_free_time():
    user = current_user()
    data = _body()
    try:
        duration = int(data.get("duration", 60))
        date_range = int(data.get("dateRange", 7))
    except (TypeError, ValueError):
        raise BadRequestError("duration and dateRange must be integers")
    if not 0 < duration <= 9 * 60:
        raise BadRequestError("duration must be between 1 and 540 minutes")
    if not 0 < date_range <= MAX_FREE_TIME_DAYS:
        raise BadRequestError(f"dateRange must be between 1 and {MAX_FREE_TIME_DAYS} days")

    google = google_for(user)
    tz = _user_tz(user)
    now = datetime.now(tz)
    window_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    window_end = window_start + timedelta(days=date_range)
    events = google.get_all_calendar_events(_rfc3339(window_start), _rfc3339(window_end))

    slots = find_free_slots(events, duration, date_range, tz, now=now)
    current_app.logger.info(f"[Calendar] Found {len(slots)} free slots of {duration} min")
    return jsonify({
        "freeSlots": slots,
        "duration": duration,
        "dateRange": date_range,
        "timeZone": str(tz),
    })


@bp.route("/calendar/agenda", methods=["POST"])
@upstream_errors("Failed to generate meeting agenda")
def meeting_agenda():
    current_user()
    data = _body()
    title = _required(data, "title")
    attendees = [a["email"] for a in _normalize_attendees(data.get("attendees"))]
    try:
        duration = int(data.get("duration") or 30)
    except (TypeError, ValueError):
        raise BadRequestError("duration must be an integer")
    agenda = _ai().generate_meeting_agenda(title, attendees, duration, data.get("context"))
    return jsonify(agenda)


# ── Tasks ────────────────────────────────────────────────────────────────

@bp.route("/tasks", methods=["GET"])
def list_tasks():
    user = current_user()
    return jsonify([t.to_dict() for t in storage.get_tasks(user.id)])


def _create_task(user, data):
    title = _required(data, "title").strip()
    priority = data.get("priority") or "normal"
    if priority not in PRIORITIES:
        raise BadRequestError(f"priority must be one of: {', '.join(PRIORITIES)}")
    description = data.get("description") or None
    due = _parse_due(data.get("dueDate"), _user_tz(user))
    if data.get("dueDate") and due is None:
        raise BadRequestError("dueDate could not be parsed")

    google = google_for(user)
    google_task = google.create_task(title, description, _rfc3339(due) if due else None)
    try:
        task = storage.create_task(
            user_id=user.id,
            title=title,
            description=description,
            due_date=_utc_naive(due) if due else None,
            priority=priority,
            google_task_id=google_task.get("id"),
        )
    except Exception:
        db.session.rollback()
        if google_task.get("id"):
            _undo(lambda: google.delete_task(google_task["id"]), f"Google task {google_task['id']}")
        raise

    current_app.logger.info(f"[Tasks] Created task {task.id} ({title})")
    _broadcast(user, "task_created", task.to_dict())
    return task


@bp.route("/tasks", methods=["POST"])
@upstream_errors("Failed to create task")
def create_task():
    user = current_user()
    return jsonify(_create_task(user, _body()).to_dict()), 201


@bp.route("/tasks/approve-draft", methods=["POST"])
@upstream_errors("Failed to create task")
def approve_task_draft():
    user = current_user()
    return jsonify(_create_task(user, _body()).to_dict()), 201


@bp.route("/tasks/ai-create", methods=["POST"])
@upstream_errors("Failed to generate task drafts")
def ai_create_tasks():
    user = current_user()
    data = _body()
    text = data.get("text") or data.get("prompt")
    if not text or not str(text).strip():
        raise BadRequestError("text is required")
    tz = _user_tz(user)
    drafts = _ai().extract_task_drafts(str(text), datetime.now(tz).date())
    for draft in drafts:
        due = _parse_due(draft.get("dueDate"), tz)
        draft["dueText"] = draft.get("dueDate")
        draft["dueDate"] = due.isoformat() if due else None
    return jsonify({"drafts": drafts})


TASK_FIELDS = {
    "title": "title",
    "description": "description",
    "priority": "priority",
    "completed": "completed",
    "slackReminderSent": "slack_reminder_sent",
}


@bp.route("/tasks/<task_id>", methods=["PATCH"])
@upstream_errors("Failed to update task")
def update_task(task_id):
    user = current_user()
    task = storage.get_task(user.id, task_id)
    if task is None:
        raise NotFoundError("Task not found")

    data = _body()
    updates = {column: data[key] for key, column in TASK_FIELDS.items() if key in data}
    for key in ("completed", "slackReminderSent"):
        if key in data:
            updates[TASK_FIELDS[key]] = _flag(data, key)
    if "priority" in updates and updates["priority"] not in PRIORITIES:
        raise BadRequestError(f"priority must be one of: {', '.join(PRIORITIES)}")
    if "title" in updates and not str(updates["title"] or "").strip():
        raise BadRequestError("title cannot be empty")
    if "dueDate" in data:
        due = _parse_due(data["dueDate"], _user_tz(user))
        if data["dueDate"] and due is None:
            raise BadRequestError("dueDate could not be parsed")
        updates["due_date"] = _utc_naive(due) if due else None

    was_completed = task.completed
    task = storage.update_task(task, **updates)

    if task.completed != was_completed and task.google_task_id and user.access_token:
        status = "completed" if task.completed else "needsAction"
        # The local change stands even if Google rejects the update.
        try:
            google_for(user).update_task(task.google_task_id, {"status": status})
        except Exception:
            current_app.logger.exception(
                f"[Tasks] Could not mark Google task {task.google_task_id} as {status}"
            )

    if task.completed and not was_completed:
        _broadcast(user, "task_completed", task.to_dict())
    return jsonify(task.to_dict())


@bp.route("/slack/reminder", methods=["POST"])
@upstream_errors("Failed to send Slack reminder")
def slack_reminder():
    user = current_user()
    task = storage.get_task(user.id, _required(_body(), "taskId"))
    if task is None:
        raise NotFoundError("Task not found")

    success = _slack().send_task_reminder(user.email, task.title, task.due_date)
    if success:
        storage.update_task(task, slack_reminder_sent=True)
    return jsonify({
        "success": success,
        "message": "Reminder sent" if success else "Failed to send reminder",
    })


# ── Suggestions ──────────────────────────────────────────────────────────

@bp.route("/suggestions", methods=["GET"])
def list_suggestions():
    user = current_user()
    return jsonify([s.to_dict() for s in storage.get_suggestions(user.id)])


@bp.route("/suggestions", methods=["POST"])
@bp.route("/suggestions/generate", methods=["POST"])
@upstream_errors("Failed to generate AI suggestions")
def generate_suggestions():
    user = current_user()
    context = {
        "recentEmails": [
            {"subject": e.subject, "sender": e.sender, "date": e.created_at.isoformat()}
            for e in storage.get_recent_email_triages(user.id, RECENT_EMAIL_CONTEXT)
        ],
        "upcomingMeetings": [
            {
                "title": m.title,
                "date": m.start_time.isoformat(),
                "attendees": [a.get("email", a) if isinstance(a, dict) else a for a in m.attendees or []],
            }
            for m in storage.get_upcoming_meetings(user.id)
        ],
        "pendingTasks": [
            {"title": t.title, "dueDate": t.due_date.isoformat() if t.due_date else None}
            for t in storage.get_pending_tasks(user.id)
        ],
    }

    stored = []
    for item in _ai().generate_proactive_suggestions(context):
        if not isinstance(item, dict):
            continue
        stored.append(storage.create_suggestion(
            user_id=user.id,
            type=str(item.get("type") or "general"),
            title=item.get("title") or "Suggestion",
            description=item.get("description") or "",
            action_data=item.get("actionData") or {},
        ))
    current_app.logger.info(f"[Suggestions] Stored {len(stored)} suggestions for {user.email}")

    payload = [s.to_dict() for s in stored]
    _broadcast(user, "suggestions_generated", payload)
    return jsonify(payload)


@bp.route("/suggestions/<suggestion_id>", methods=["PATCH"])
@upstream_errors("Failed to update AI suggestion")
def update_suggestion(suggestion_id):
    user = current_user()
    suggestion = storage.get_suggestion(user.id, suggestion_id)
    if suggestion is None:
        raise NotFoundError("Suggestion not found")
    data = _body()
    updates = {key: _flag(data, key) for key in ("accepted", "dismissed") if key in data}
    return jsonify(storage.update_suggestion(suggestion, **updates).to_dict())


# ── Stats & data ─────────────────────────────────────────────────────────

@bp.route("/stats")
def stats():
    user = current_user()
    return jsonify({
        "emailsTriaged": storage.count_email_triages(user.id),
        "meetingsScheduled": storage.count_meetings(user.id),
        "tasksCompleted": storage.count_completed_tasks(user.id),
        "aiSuggestions": storage.count_open_suggestions(user.id),
    })


@bp.route("/data/export")
def export_data():
    return jsonify(storage.export_user_data(current_user()))


@bp.route("/data/clear", methods=["DELETE"])
@upstream_errors("Failed to clear data")
def clear_data():
    user = current_user()
    deleted = storage.clear_user_data(user.id)
    current_app.logger.info(f"[Data] Cleared data for {user.email}: {deleted}")
    return jsonify({"success": True, "deleted": deleted})
