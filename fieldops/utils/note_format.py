"""
Audit note text for the work order notes log.

Timestamps are stored as naive UTC; notes show them in the configured
``DEFAULT_TIMEZONE`` as ``MM/DD/YYYY, hh:mm AM``.
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from fieldops.config import settings

NOTE_TIMESTAMP_FORMAT = "%m/%d/%Y, %I:%M %p"


def format_note_timestamp(moment: datetime, tz_name: Optional[str] = None) -> str:
    """Render a (naive UTC or aware) datetime in the note timezone."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    local = moment.astimezone(ZoneInfo(tz_name or settings.DEFAULT_TIMEZONE))
    return local.strftime(NOTE_TIMESTAMP_FORMAT)


def _by(actor: Optional[str]) -> str:
    return f" by {actor}" if actor else ""


def scheduled_note(now: datetime, actor: Optional[str], appointment: datetime, tz_name: Optional[str] = None) -> str:
    return (
        f"Scheduled at {format_note_timestamp(now, tz_name)}{_by(actor)}"
        f" for {format_note_timestamp(appointment, tz_name)}"
    )


def completed_note(now: datetime, actor: Optional[str], tz_name: Optional[str] = None) -> str:
    return f"Completed at {format_note_timestamp(now, tz_name)}{_by(actor)}"


def trouble_note(code: str, label: Optional[str], now: datetime, tz_name: Optional[str] = None) -> str:
    """Trouble line; falls back to the raw code when the label lookup missed."""
    stamp = format_note_timestamp(now, tz_name)
    if label:
        return f"Trouble Code: {code} - {label} - {stamp}"
    return f"Trouble Code: {code} - {stamp}"
