"""
Ticket Value Objects
====================

Value objects for the ticket lifecycle domain:
- TicketExtendedState: typed view of the ticket metadata document
- TATCalculator: stateless TAT parsing and deadline arithmetic
- EscalationConfig: thresholds for the escalation sweep and TAT engine
"""

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.core import TATParseException


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class TATExtension:
    """One entry of the TAT extension history."""
    previous_tat: Optional[str]
    new_tat: str
    previous_tat_date: Optional[datetime]
    new_tat_date: datetime
    extended_at: datetime
    extended_by: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previous_tat": self.previous_tat,
            "new_tat": self.new_tat,
            "previous_tat_date": _to_iso(self.previous_tat_date),
            "new_tat_date": _to_iso(self.new_tat_date),
            "extended_at": _to_iso(self.extended_at),
            "extended_by": self.extended_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TATExtension":
        return cls(
            previous_tat=data.get("previous_tat"),
            new_tat=data["new_tat"],
            previous_tat_date=_from_iso(data.get("previous_tat_date")),
            new_tat_date=_from_iso(data["new_tat_date"]),
            extended_at=_from_iso(data["extended_at"]),
            extended_by=data.get("extended_by", ""),
        )


@dataclass(frozen=True)
class TicketComment:
    """Comment stored alongside the ticket."""
    text: str
    author: str
    created_at: datetime
    is_internal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "author": self.author,
            "created_at": _to_iso(self.created_at),
            "is_internal": self.is_internal,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TicketComment":
        return cls(
            text=data.get("text", ""),
            author=data.get("author", ""),
            created_at=_from_iso(data.get("created_at")),
            is_internal=bool(data.get("is_internal", False)),
        )


_KNOWN_KEYS = {
    "tat", "tat_date", "tat_set_at", "tat_set_by", "tat_extensions",
    "tat_pause_start", "tat_paused_seconds", "comments", "fields",
}


@dataclass
class TicketExtendedState:
    """
    TAT, pause bookkeeping, comments and dynamic field values of a ticket.

    The ticket is TAT-paused iff tat_pause_start is set. Only the
    persistence layer converts this to and from the stored JSON document.
    """
    tat: Optional[str] = None
    tat_date: Optional[datetime] = None
    tat_set_at: Optional[datetime] = None
    tat_set_by: Optional[str] = None
    tat_extensions: List[TATExtension] = field(default_factory=list)
    tat_pause_start: Optional[datetime] = None
    tat_paused_seconds: float = 0.0
    comments: List[TicketComment] = field(default_factory=list)
    fields: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_tat(self) -> bool:
        return self.tat_date is not None

    @property
    def is_tat_paused(self) -> bool:
        return self.tat_pause_start is not None

    @property
    def tat_paused_duration(self) -> timedelta:
        return timedelta(seconds=self.tat_paused_seconds)

    @property
    def field_slugs(self) -> List[str]:
        return [slug for slug, value in self.fields.items() if value not in (None, "", [])]

    def pause(self, at: datetime) -> bool:
        """Start a pause; returns False if one is already running."""
        if self.tat_pause_start is not None:
            return False
        self.tat_pause_start = at
        return True

    def resume(self, at: datetime) -> timedelta:
        """Fold the running pause into the paused total and clear it."""
        if self.tat_pause_start is None:
            return timedelta(0)
        interval = max(at - self.tat_pause_start, timedelta(0))
        self.tat_paused_seconds += interval.total_seconds()
        self.tat_pause_start = None
        return interval

    def reset_tat_cycle(self) -> None:
        """Drop every piece of TAT state; a new TAT must be set explicitly."""
        self.tat = None
        self.tat_date = None
        self.tat_set_at = None
        self.tat_set_by = None
        self.tat_extensions = []
        self.tat_pause_start = None
        self.tat_paused_seconds = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "tat": self.tat,
            "tat_date": _to_iso(self.tat_date),
            "tat_set_at": _to_iso(self.tat_set_at),
            "tat_set_by": self.tat_set_by,
            "tat_extensions": [ext.to_dict() for ext in self.tat_extensions],
            "tat_pause_start": _to_iso(self.tat_pause_start),
            "tat_paused_seconds": self.tat_paused_seconds,
            "comments": [comment.to_dict() for comment in self.comments],
            "fields": dict(self.fields),
        })
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TicketExtendedState":
        data = data or {}
        return cls(
            tat=data.get("tat"),
            tat_date=_from_iso(data.get("tat_date")),
            tat_set_at=_from_iso(data.get("tat_set_at")),
            tat_set_by=data.get("tat_set_by"),
            tat_extensions=[TATExtension.from_dict(e) for e in data.get("tat_extensions") or []],
            tat_pause_start=_from_iso(data.get("tat_pause_start")),
            tat_paused_seconds=float(data.get("tat_paused_seconds") or 0.0),
            comments=[TicketComment.from_dict(c) for c in data.get("comments") or []],
            fields=dict(data.get("fields") or {}),
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )


class TATCalculator:
    """
    Pure functions for TAT calculations.

    Durations: "<n> hours|days|weeks|months" (and short forms), a bare
    number of hours, "today", "tomorrow", or an ISO date/datetime. Free
    text is searched for the first of these when it is not one exactly.
    """

    DEFAULT_EXPECTED_RESOLUTION = "48 hours"

    _DURATION_RE = re.compile(
        r"^(\d+(?:\.\d+)?)\s*(hours?|hrs?|h|days?|d|weeks?|wks?|w|months?)$"
    )
    # Free text such as "about 2 days (waiting on vendor)"
    _EMBEDDED_DURATION_RE = re.compile(
        r"(?<![\w.])(\d+(?:\.\d+)?)\s*(hours?|hrs?|h|days?|d|weeks?|wks?|w|months?)\b"
    )
    _EMBEDDED_DATE_RE = re.compile(
        r"\b\d{4}-\d{2}-\d{2}(?:t\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:z|[+-]\d{2}:\d{2})?)?\b"
    )
    _KEYWORD_RE = re.compile(r"\b(today|tomorrow)\b")
    _UNIT_HOURS = {
        "h": 1, "hr": 1, "hrs": 1, "hour": 1, "hours": 1,
        "d": 24, "day": 24, "days": 24,
        "w": 168, "wk": 168, "wks": 168, "week": 168, "weeks": 168,
        "month": 720, "months": 720,
    }

    @staticmethod
    def parse_deadline(tat: Union[str, int, float], now: datetime) -> datetime:
        """
        Turn a human-entered TAT into an absolute deadline.

        Raises:
            TATParseException: unparsable, non-positive, or in the past
        """
        if isinstance(tat, bool):
            raise TATParseException(tat)
        if isinstance(tat, (int, float)):
            return TATCalculator._from_hours(float(tat), now, tat)

        text = str(tat or "").strip().lower()
        if not text:
            raise TATParseException(tat)

        if text in ("today", "tomorrow"):
            deadline = TATCalculator._from_keyword(text, now)
        else:
            match = TATCalculator._DURATION_RE.match(text)
            if match:
                return TATCalculator._from_duration(match, now, tat)
            try:
                return TATCalculator._from_hours(float(text), now, tat)
            except ValueError:
                pass
            deadline = TATCalculator._parse_absolute(text, now)
            if deadline is None:
                deadline = TATCalculator._search_text(text, now, tat)

        if deadline is None or deadline <= now:
            raise TATParseException(tat)
        return deadline

    @staticmethod
    def tat_text(tat: Union[str, int, float]) -> str:
        """Stored form of a TAT: text as entered, numbers as hours."""
        if isinstance(tat, (int, float)) and not isinstance(tat, bool):
            return f"{tat:g} hour" if tat == 1 else f"{tat:g} hours"
        return str(tat).strip()

    @staticmethod
    def _search_text(text: str, now: datetime, original: Any) -> Optional[datetime]:
        """First duration, ISO date or day keyword found anywhere in the text."""
        match = TATCalculator._EMBEDDED_DURATION_RE.search(text)
        if match:
            return TATCalculator._from_duration(match, now, original)
        match = TATCalculator._EMBEDDED_DATE_RE.search(text)
        if match:
            return TATCalculator._parse_absolute(match.group(0), now)
        match = TATCalculator._KEYWORD_RE.search(text)
        if match:
            return TATCalculator._from_keyword(match.group(1), now)
        return None

    @staticmethod
    def _from_keyword(keyword: str, now: datetime) -> datetime:
        if keyword == "today":
            return datetime.combine(now.date(), time.max, tzinfo=now.tzinfo)
        return now + timedelta(days=1)

    @staticmethod
    def _from_duration(match: "re.Match", now: datetime, original: Any) -> datetime:
        hours = float(match.group(1)) * TATCalculator._UNIT_HOURS[match.group(2)]
        return TATCalculator._from_hours(hours, now, original)

    @staticmethod
    def _from_hours(hours: float, now: datetime, original: Any) -> datetime:
        if not math.isfinite(hours) or hours <= 0:
            raise TATParseException(original)
        try:
            return now + timedelta(hours=hours)
        except OverflowError:
            raise TATParseException(original)

    @staticmethod
    def _parse_absolute(text: str, now: datetime) -> Optional[datetime]:
        try:
            parsed = datetime.fromisoformat(text.upper().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=now.tzinfo or timezone.utc)
        if len(text) == 10:
            # Bare date means end of that day
            parsed = datetime.combine(parsed.date(), time.max, tzinfo=parsed.tzinfo)
        return parsed

    @staticmethod
    def effective_deadline(state: TicketExtendedState) -> Optional[datetime]:
        """tat_date pushed back by the accumulated paused duration."""
        if state.tat_date is None:
            return None
        return state.tat_date + state.tat_paused_duration

    @staticmethod
    def running_deadline(state: TicketExtendedState, now: datetime) -> Optional[datetime]:
        """Effective deadline that also counts a pause still in progress."""
        deadline = TATCalculator.effective_deadline(state)
        if deadline is None:
            return None
        if state.tat_pause_start is not None and now > state.tat_pause_start:
            deadline += now - state.tat_pause_start
        return deadline

    @staticmethod
    def is_breached(state: TicketExtendedState, now: datetime, is_final: bool = False) -> bool:
        if is_final:
            return False
        deadline = TATCalculator.running_deadline(state, now)
        return deadline is not None and now > deadline

    @staticmethod
    def hours_overdue(state: TicketExtendedState, now: datetime) -> float:
        deadline = TATCalculator.running_deadline(state, now)
        if deadline is None or now <= deadline:
            return 0.0
        return round((now - deadline).total_seconds() / 3600, 1)

    @staticmethod
    def is_due_on(state: TicketExtendedState, day: date, tz: timezone = timezone.utc) -> bool:
        deadline = TATCalculator.effective_deadline(state)
        return deadline is not None and deadline.astimezone(tz).date() == day


class EscalationConfig(BaseModel):
    """
    Thresholds for the escalation sweep.

    Loaded from escalation_config.yaml with environment defaults and passed
    explicitly into the sweep and TAT services.
    """
    model_config = ConfigDict(frozen=True)

    inactivity_days: int = Field(default=7, ge=1)
    cooldown_days: int = Field(default=2, ge=0)
    extension_cap: int = Field(default=3, ge=1)
    lifecycle_days: int = Field(default=30, ge=1)
    reopen_cap: int = Field(default=3, ge=1)
    stalled_in_progress_hours: Optional[int] = Field(default=None, ge=1)
    urgent_level: int = Field(default=2, ge=1)

    @field_validator("lifecycle_days")
    @classmethod
    def validate_lifecycle(cls, v: int, info) -> int:
        """Lifecycle breach cannot fire before inactivity would."""
        inactivity = info.data.get("inactivity_days")
        if inactivity is not None and v < inactivity:
            raise ValueError("lifecycle_days must be >= inactivity_days")
        return v

    @property
    def inactivity(self) -> timedelta:
        return timedelta(days=self.inactivity_days)

    @property
    def cooldown(self) -> timedelta:
        return timedelta(days=self.cooldown_days)

    @property
    def lifecycle(self) -> timedelta:
        return timedelta(days=self.lifecycle_days)
