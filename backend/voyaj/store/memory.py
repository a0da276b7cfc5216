"""
In-process Store used by tests and by ``ENV=dev`` runs without a database.

Semantics mirror SqlStore: member rows are unique per phone, votes per
(trip, poll_type, member), suggestions and availability per (trip, member).
"""

import itertools
import logging
from dataclasses import replace
from datetime import date
from typing import Any, Dict, List, Optional

from voyaj.exceptions import TripNotFoundError
from voyaj.store.base import Store
from voyaj.store.records import (
    TERMINAL_STAGES,
    DateAvailabilityRecord,
    DestinationSuggestionRecord,
    FlightRecord,
    MemberRecord,
    MessageRecord,
    TripRecord,
    TripStage,
    VoteRecord,
    stage_value,
    utcnow,
)

logger = logging.getLogger(__name__)

TRIP_FIELDS = {
    "stage", "stage_entered_at", "destination", "start_date", "end_date",
    "nudge_count", "last_nudge_at", "group_chat_id", "invite_code",
}


class MemoryStore(Store):
    def __init__(self):
        self._ids = itertools.count(1)
        self.trips: Dict[int, TripRecord] = {}
        self.members: Dict[int, MemberRecord] = {}
        self.votes: Dict[tuple, VoteRecord] = {}
        self.suggestions: Dict[tuple, DestinationSuggestionRecord] = {}
        self.availability: Dict[tuple, DateAvailabilityRecord] = {}
        self.flights: Dict[tuple, FlightRecord] = {}
        self.messages: List[MessageRecord] = []
        self.errors: List[Dict[str, Any]] = []

    def _next_id(self) -> int:
        return next(self._ids)

    def _member_name(self, member_id: int) -> Optional[str]:
        member = self.members.get(member_id)
        return member.name if member else None

    # Trips

    async def create_trip(self, group_chat_id=None, invite_code=None) -> TripRecord:
        now = utcnow()
        trip = TripRecord(
            id=self._next_id(),
            stage=TripStage.CREATED.value,
            stage_entered_at=now,
            group_chat_id=group_chat_id,
            invite_code=invite_code,
            created_at=now,
        )
        self.trips[trip.id] = trip
        return replace(trip)

    async def get_trip(self, trip_id: int) -> Optional[TripRecord]:
        trip = self.trips.get(trip_id)
        return replace(trip) if trip else None

    async def get_trip_by_group_chat_id(self, group_chat_id: str) -> Optional[TripRecord]:
        for trip in self.trips.values():
            if group_chat_id and trip.group_chat_id == group_chat_id:
                return replace(trip)
        return None

    async def get_open_trip_for_sender(self, phone_number: str) -> Optional[TripRecord]:
        terminal = {stage.value for stage in TERMINAL_STAGES}
        for message in reversed(self.messages):
            if message.from_phone != phone_number:
                continue
            trip = self.trips.get(message.trip_id)
            if trip is not None and trip.stage not in terminal:
                return replace(trip)
        return None

    async def update_trip(self, trip_id: int, **fields) -> TripRecord:
        trip = self.trips.get(trip_id)
        if trip is None:
            raise TripNotFoundError(trip_id)
        unknown = set(fields) - TRIP_FIELDS
        if unknown:
            raise ValueError(f"Unknown trip fields: {sorted(unknown)}")
        if "stage" in fields:
            fields["stage"] = stage_value(fields["stage"])
        updated = replace(trip, **fields)
        self.trips[trip_id] = updated
        return replace(updated)

    async def get_active_trips(self) -> List[TripRecord]:
        terminal = {stage.value for stage in TERMINAL_STAGES}
        return [replace(t) for t in self.trips.values() if t.stage not in terminal]

    async def delete_trip(self, trip_id: int) -> None:
        self.trips.pop(trip_id, None)
        self.members = {k: m for k, m in self.members.items() if m.trip_id != trip_id}
        for table in (self.votes, self.suggestions, self.availability, self.flights):
            for key in [k for k, row in table.items() if row.trip_id == trip_id]:
                del table[key]
        self.messages = [m for m in self.messages if m.trip_id != trip_id]

    # Members

    async def create_member(self, trip_id: int, phone_number: str, name: str) -> MemberRecord:
        for member in self.members.values():
            if member.phone_number == phone_number:
                if member.trip_id != trip_id:
                    logger.info(f"Moving {phone_number} from trip {member.trip_id} to trip {trip_id}")
                updated = replace(member, trip_id=trip_id, name=name)
                self.members[member.id] = updated
                return replace(updated)
        member = MemberRecord(
            id=self._next_id(), trip_id=trip_id, phone_number=phone_number,
            name=name, joined_at=utcnow(),
        )
        self.members[member.id] = member
        return replace(member)

    async def get_member(self, member_id: int) -> Optional[MemberRecord]:
        member = self.members.get(member_id)
        return replace(member) if member else None

    async def get_member_by_phone(self, phone_number: str) -> Optional[MemberRecord]:
        for member in self.members.values():
            if member.phone_number == phone_number:
                return replace(member)
        return None

    async def get_members(self, trip_id: int) -> List[MemberRecord]:
        members = [replace(m) for m in self.members.values() if m.trip_id == trip_id]
        return sorted(members, key=lambda m: (m.joined_at, m.id))

    # Votes

    async def create_vote(self, trip_id: int, poll_type: str, member_id: int, choice: str) -> VoteRecord:
        key = (trip_id, str(poll_type), member_id)
        existing = self.votes.get(key)
        vote = VoteRecord(
            id=existing.id if existing else self._next_id(),
            trip_id=trip_id, poll_type=str(poll_type), member_id=member_id,
            choice=choice, voted_at=utcnow(),
        )
        self.votes[key] = vote
        return replace(vote)

    async def get_votes(self, trip_id: int, poll_type: str) -> List[VoteRecord]:
        votes = [replace(v) for (t, p, _), v in self.votes.items() if t == trip_id and p == str(poll_type)]
        return sorted(votes, key=lambda v: (v.voted_at, v.id))

    # Suggestions and availability

    async def upsert_destination_suggestion(self, trip_id, member_id, destinations) -> DestinationSuggestionRecord:
        key = (trip_id, member_id)
        existing = self.suggestions.get(key)
        row = DestinationSuggestionRecord(
            id=existing.id if existing else self._next_id(),
            trip_id=trip_id, member_id=member_id,
            destinations=list(destinations), suggested_at=utcnow(),
        )
        self.suggestions[key] = row
        return replace(row, member_name=self._member_name(member_id))

    async def get_destination_suggestions(self, trip_id: int) -> List[DestinationSuggestionRecord]:
        rows = [
            replace(s, member_name=self._member_name(s.member_id))
            for s in self.suggestions.values() if s.trip_id == trip_id
        ]
        return sorted(rows, key=lambda s: (s.suggested_at, s.id))

    async def upsert_date_availability(self, trip_id: int, member_id: int, start_date: Optional[date],
                                       end_date: Optional[date], is_flexible: bool = False) -> DateAvailabilityRecord:
        key = (trip_id, member_id)
        existing = self.availability.get(key)
        row = DateAvailabilityRecord(
            id=existing.id if existing else self._next_id(),
            trip_id=trip_id, member_id=member_id,
            start_date=start_date, end_date=end_date,
            is_flexible=is_flexible, submitted_at=utcnow(),
        )
        self.availability[key] = row
        return replace(row, member_name=self._member_name(member_id))

    async def get_date_availability(self, trip_id: int) -> List[DateAvailabilityRecord]:
        rows = [
            replace(a, member_name=self._member_name(a.member_id))
            for a in self.availability.values() if a.trip_id == trip_id
        ]
        return sorted(rows, key=lambda a: (a.submitted_at, a.id))

    # Flights

    async def create_flight(self, trip_id, member_id, airline=None, flight_number=None, booked=True) -> FlightRecord:
        key = (trip_id, member_id)
        existing = self.flights.get(key)
        row = FlightRecord(
            id=existing.id if existing else self._next_id(),
            trip_id=trip_id, member_id=member_id,
            airline=airline, flight_number=flight_number,
            booked=booked, created_at=utcnow(),
        )
        self.flights[key] = row
        return replace(row, member_name=self._member_name(member_id))

    async def get_flights(self, trip_id: int) -> List[FlightRecord]:
        rows = [
            replace(f, member_name=self._member_name(f.member_id))
            for f in self.flights.values() if f.trip_id == trip_id
        ]
        return sorted(rows, key=lambda f: (f.created_at, f.id))

    # Messages and errors

    async def create_message(self, trip_id, from_phone, body, group_chat_id=None) -> MessageRecord:
        message = MessageRecord(
            id=self._next_id(), trip_id=trip_id, from_phone=from_phone,
            body=body, group_chat_id=group_chat_id, received_at=utcnow(),
        )
        self.messages.append(message)
        return replace(message)

    async def get_recent_messages(self, trip_id: int, limit: int = 10) -> List[MessageRecord]:
        rows = [replace(m) for m in self.messages if m.trip_id == trip_id]
        return list(reversed(rows))[:limit]

    async def log_error(self, trip_id, error_type, message, context=None) -> None:
        self.errors.append({
            "trip_id": trip_id,
            "error_type": error_type,
            "message": message,
            "context": context or {},
            "created_at": utcnow(),
        })
