"""
Plain records returned by every Store.

Records are detached dataclasses, so nothing downstream can lazily hit the
database or hold a session open across an await.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from voyaj.exceptions import UnknownStageError


class TripStage(str, Enum):
    CREATED = "created"
    COLLECTING_MEMBERS = "collecting_members"
    PLANNING = "planning"
    VOTING_DESTINATION = "voting_destination"
    VOTING_DATES = "voting_dates"
    DESTINATION_SET = "destination_set"
    DATES_SET = "dates_set"
    TRACKING_FLIGHTS = "tracking_flights"
    TRIP_CONFIRMED = "trip_confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @classmethod
    def parse(cls, value) -> Optional["TripStage"]:
        """Return the stage for a raw value, or None if it is not declared."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


TERMINAL_STAGES = {TripStage.COMPLETED, TripStage.ABANDONED}


def stage_value(value) -> str:
    """Stored form of a stage; stores refuse anything undeclared."""
    stage = TripStage.parse(value)
    if stage is None:
        raise UnknownStageError(f"Undeclared trip stage {value!r}")
    return stage.value


class PollType(str, Enum):
    DESTINATION = "destination"
    DATES = "dates"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TripRecord:
    id: int
    stage: str = TripStage.CREATED.value
    stage_entered_at: Optional[datetime] = None
    destination: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    nudge_count: int = 0
    last_nudge_at: Optional[datetime] = None
    group_chat_id: Optional[str] = None
    invite_code: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def has_destination(self) -> bool:
        return bool(self.destination)

    @property
    def has_dates(self) -> bool:
        return self.start_date is not None and self.end_date is not None


@dataclass
class MemberRecord:
    id: int
    trip_id: int
    phone_number: str
    name: str
    joined_at: Optional[datetime] = None


@dataclass
class VoteRecord:
    id: int
    trip_id: int
    poll_type: str
    member_id: int
    choice: str
    voted_at: Optional[datetime] = None


@dataclass
class VoteResult:
    choice: str
    count: int


@dataclass
class DestinationSuggestionRecord:
    id: int
    trip_id: int
    member_id: int
    destinations: List[str] = field(default_factory=list)
    member_name: Optional[str] = None
    suggested_at: Optional[datetime] = None


@dataclass
class DateAvailabilityRecord:
    id: int
    trip_id: int
    member_id: int
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_flexible: bool = False
    member_name: Optional[str] = None
    submitted_at: Optional[datetime] = None


@dataclass
class FlightRecord:
    id: int
    trip_id: int
    member_id: int
    airline: Optional[str] = None
    flight_number: Optional[str] = None
    booked: bool = True
    member_name: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class MessageRecord:
    id: int
    trip_id: int
    from_phone: str
    body: str
    group_chat_id: Optional[str] = None
    received_at: Optional[datetime] = None


@dataclass
class InboundMessage:
    """A message as it enters the engine, before it is tied to a member."""

    from_phone: str
    body: str
    group_chat_id: Optional[str] = None
    channel: str = "sms"
    received_at: datetime = field(default_factory=utcnow)


BOT_SENDER = "bot"
