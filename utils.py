from datetime import date, datetime
from fastapi import HTTPException
from io import StringIO
import csv

from errors import ValidationFailure

CSV_HEADERS = ["Event Title", "Type", "Date", "Time", "Location", "Status", "Attend", "Reg Date"]
TITLE_MAX_LENGTH = 20


def parse_date(date_str: str) -> datetime:
    """Parse a date string into a datetime object."""
    try:
        return datetime.fromisoformat(date_str.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        try:
            return datetime.strptime(date_str, "%Y-%m-%d %H:%M")
        except (ValueError, TypeError):
            raise ValidationFailure(f"Invalid date format: {date_str}")


def today() -> str:
    """Registration date in YYYY-MM-DD form."""
    return date.today().isoformat()


def check_admin(current_user):
    """Only admins may manage events, users and maintenance actions."""
    if current_user["role"] != "admin":
        raise HTTPException(status_code=403, detail="Access denied: admin role required")


def check_self_or_admin(user_id, current_user):
    """Users may act on their own records; admins on anyone's."""
    if current_user["role"] == "admin":
        return
    if current_user["id"] != user_id:
        raise HTTPException(status_code=403, detail="Access denied: not your record")


def truncate_text(text, max_length: int = TITLE_MAX_LENGTH) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def format_csv_date(value) -> str:
    """Render a date as MM/DD/YY; unparseable values pass through unchanged."""
    if not value:
        return ""
    try:
        return parse_date(value).strftime("%m/%d/%y")
    except ValidationFailure:
        return value


def filter_participations(participations, status=None, attendance=None, start=None, end=None):
    """Keep participations matching status/attendance and a registration-date range (inclusive days)."""
    start_day = parse_date(start).date() if start else None
    end_day = parse_date(end).date() if end else None
    result = []
    for p in participations:
        if status and p.get("status") != status:
            continue
        if attendance and p.get("attendance") != attendance:
            continue
        if start_day or end_day:
            try:
                registered = parse_date(p.get("registrationDate")).date()
            except ValidationFailure:
                continue
            if start_day and registered < start_day:
                continue
            if end_day and registered > end_day:
                continue
        result.append(p)
    return result


def generate_participations_csv(participations, events) -> str:
    """Generate a CSV string of participations joined with their events.

    Participations whose event no longer exists are left out.
    """
    events_by_id = {e["id"]: e for e in events}
    buffer = StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for p in participations:
        event = events_by_id.get(p.get("eventId"))
        if event is None:
            continue
        writer.writerow([
            truncate_text(event.get("title")),
            event.get("type", ""),
            format_csv_date(event.get("date")),
            event.get("time", ""),
            event.get("location", ""),
            p.get("status") or "",
            p.get("attendance") or "",
            format_csv_date(p.get("registrationDate")),
        ])
    return buffer.getvalue()


def export_statistics(participations) -> dict:
    """Count participations overall, per status and per attendance."""
    by_status = {}
    by_attendance = {}
    for p in participations:
        by_status[p.get("status")] = by_status.get(p.get("status"), 0) + 1
        key = p.get("attendance") or "Not Set"
        by_attendance[key] = by_attendance.get(key, 0) + 1
    return {"total": len(participations), "byStatus": by_status, "byAttendance": by_attendance}
