"""
SQLAlchemy-backed Store.

Each call opens a short-lived session from the injected factory and returns
detached records. Sessions are sync, like the rest of the app's database
access, so every session block runs on a worker thread via asyncio.to_thread
and a slow query for one trip never stalls the event loop for the others.
Sessions never cross threads: each one is opened, committed and closed
inside a single ``_call``.
"""

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, List, Optional, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from voyaj.exceptions import TripNotFoundError
from voyaj.models import (
    DateAvailability,
    DestinationSuggestion,
    ErrorLog,
    Flight,
    Member,
    Message,
    Trip,
    Vote,
)
from voyaj.store.base import Store
from voyaj.store.memory import TRIP_FIELDS
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

T = TypeVar("T")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _trip_record(trip: Trip) -> TripRecord:
    return TripRecord(
        id=trip.id,
        stage=trip.stage,
        stage_entered_at=_aware(trip.stage_entered_at),
        destination=trip.destination,
        start_date=trip.start_date,
        end_date=trip.end_date,
        nudge_count=trip.nudge_count or 0,
        last_nudge_at=_aware(trip.last_nudge_at),
        group_chat_id=trip.group_chat_id,
        invite_code=trip.invite_code,
        created_at=_aware(trip.created_at),
    )


def _member_record(member: Member) -> MemberRecord:
    return MemberRecord(
        id=member.id,
        trip_id=member.trip_id,
        phone_number=member.phone_number,
        name=member.name,
        joined_at=_aware(member.joined_at),
    )


def _vote_record(vote: Vote) -> VoteRecord:
    return VoteRecord(
        id=vote.id,
        trip_id=vote.trip_id,
        poll_type=vote.poll_type,
        member_id=vote.member_id,
        choice=vote.choice,
        voted_at=_aware(vote.voted_at),
    )


def _suggestion_record(row: DestinationSuggestion) -> DestinationSuggestionRecord:
    return DestinationSuggestionRecord(
        id=row.id,
        trip_id=row.trip_id,
        member_id=row.member_id,
        destinations=list(row.destinations or []),
        member_name=row.member.name if row.member else None,
        suggested_at=_aware(row.suggested_at),
    )


def _availability_record(row: DateAvailability) -> DateAvailabilityRecord:
    return DateAvailabilityRecord(
        id=row.id,
        trip_id=row.trip_id,
        member_id=row.member_id,
        start_date=row.start_date,
        end_date=row.end_date,
        is_flexible=bool(row.is_flexible),
        member_name=row.member.name if row.member else None,
        submitted_at=_aware(row.submitted_at),
    )


def _flight_record(row: Flight) -> FlightRecord:
    return FlightRecord(
        id=row.id,
        trip_id=row.trip_id,
        member_id=row.member_id,
        airline=row.airline,
        flight_number=row.flight_number,
        booked=bool(row.booked),
        member_name=row.member.name if row.member else None,
        created_at=_aware(row.created_at),
    )


def _message_record(row: Message) -> MessageRecord:
    return MessageRecord(
        id=row.id,
        trip_id=row.trip_id,
        from_phone=row.from_phone,
        body=row.body,
        group_chat_id=row.group_chat_id,
        received_at=_aware(row.received_at),
    )


class SqlStore(Store):
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        db: Session = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _call(self, work: Callable[[Session], T]) -> T:
        with self._session() as db:
            return work(db)

    async def _run(self, work: Callable[[Session], T]) -> T:
        """Run ``work`` in its own session on a worker thread."""
        return await asyncio.to_thread(self._call, work)

    # Trips

    async def create_trip(self, group_chat_id=None, invite_code=None) -> TripRecord:
        now = utcnow()

        def work(db):
            trip = Trip(
                stage=TripStage.CREATED.value,
                stage_entered_at=now,
                group_chat_id=group_chat_id,
                invite_code=invite_code,
                nudge_count=0,
                created_at=now,
            )
            db.add(trip)
            db.flush()
            return _trip_record(trip)

        return await self._run(work)

    async def get_trip(self, trip_id: int) -> Optional[TripRecord]:
        def work(db):
            trip = db.get(Trip, trip_id)
            return _trip_record(trip) if trip else None

        return await self._run(work)

    async def get_trip_by_group_chat_id(self, group_chat_id: str) -> Optional[TripRecord]:
        def work(db):
            trip = db.query(Trip).filter(Trip.group_chat_id == group_chat_id).first()
            return _trip_record(trip) if trip else None

        return await self._run(work)

    async def get_open_trip_for_sender(self, phone_number: str) -> Optional[TripRecord]:
        terminal = [stage.value for stage in TERMINAL_STAGES]

        def work(db):
            trip = (
                db.query(Trip)
                .join(Message, Message.trip_id == Trip.id)
                .filter(Message.from_phone == phone_number, Trip.stage.notin_(terminal))
                .order_by(Message.received_at.desc(), Message.id.desc())
                .first()
            )
            return _trip_record(trip) if trip else None

        return await self._run(work)

    async def update_trip(self, trip_id: int, **fields) -> TripRecord:
        unknown = set(fields) - TRIP_FIELDS
        if unknown:
            raise ValueError(f"Unknown trip fields: {sorted(unknown)}")
        if "stage" in fields:
            fields["stage"] = stage_value(fields["stage"])

        def work(db):
            trip = db.get(Trip, trip_id)
            if trip is None:
                raise TripNotFoundError(trip_id)
            for name, value in fields.items():
                setattr(trip, name, value)
            db.flush()
            return _trip_record(trip)

        return await self._run(work)

    async def get_active_trips(self) -> List[TripRecord]:
        terminal = [stage.value for stage in TERMINAL_STAGES]

        def work(db):
            trips = db.query(Trip).filter(Trip.stage.notin_(terminal)).order_by(Trip.id).all()
            return [_trip_record(t) for t in trips]

        return await self._run(work)

    async def delete_trip(self, trip_id: int) -> None:
        def work(db):
            trip = db.get(Trip, trip_id)
            if trip is not None:
                db.delete(trip)

        await self._run(work)

    # Members

    async def create_member(self, trip_id: int, phone_number: str, name: str) -> MemberRecord:
        def work(db):
            member = db.query(Member).filter(Member.phone_number == phone_number).first()
            if member is None:
                member = Member(trip_id=trip_id, phone_number=phone_number, name=name, joined_at=utcnow())
                db.add(member)
            else:
                if member.trip_id != trip_id:
                    logger.info(f"Moving {phone_number} from trip {member.trip_id} to trip {trip_id}")
                member.trip_id = trip_id
                member.name = name
            db.flush()
            return _member_record(member)

        return await self._run(work)

    async def get_member(self, member_id: int) -> Optional[MemberRecord]:
        def work(db):
            member = db.get(Member, member_id)
            return _member_record(member) if member else None

        return await self._run(work)

    async def get_member_by_phone(self, phone_number: str) -> Optional[MemberRecord]:
        def work(db):
            member = db.query(Member).filter(Member.phone_number == phone_number).first()
            return _member_record(member) if member else None

        return await self._run(work)

    async def get_members(self, trip_id: int) -> List[MemberRecord]:
        def work(db):
            members = (
                db.query(Member)
                .filter(Member.trip_id == trip_id)
                .order_by(Member.joined_at, Member.id)
                .all()
            )
            return [_member_record(m) for m in members]

        return await self._run(work)

    # Votes

    async def create_vote(self, trip_id: int, poll_type: str, member_id: int, choice: str) -> VoteRecord:
        poll_type = str(getattr(poll_type, "value", poll_type))

        def work(db):
            vote = (
                db.query(Vote)
                .filter(Vote.trip_id == trip_id, Vote.poll_type == poll_type, Vote.member_id == member_id)
                .first()
            )
            if vote is None:
                vote = Vote(trip_id=trip_id, poll_type=poll_type, member_id=member_id)
                db.add(vote)
            vote.choice = choice
            vote.voted_at = utcnow()
            db.flush()
            return _vote_record(vote)

        return await self._run(work)

    async def get_votes(self, trip_id: int, poll_type: str) -> List[VoteRecord]:
        poll_type = str(getattr(poll_type, "value", poll_type))

        def work(db):
            votes = (
                db.query(Vote)
                .filter(Vote.trip_id == trip_id, Vote.poll_type == poll_type)
                .order_by(Vote.voted_at, Vote.id)
                .all()
            )
            return [_vote_record(v) for v in votes]

        return await self._run(work)

    # Suggestions and availability

    async def upsert_destination_suggestion(self, trip_id, member_id, destinations) -> DestinationSuggestionRecord:
        destinations = list(destinations)

        def work(db):
            row = (
                db.query(DestinationSuggestion)
                .filter(DestinationSuggestion.trip_id == trip_id, DestinationSuggestion.member_id == member_id)
                .first()
            )
            if row is None:
                row = DestinationSuggestion(trip_id=trip_id, member_id=member_id)
                db.add(row)
            row.destinations = destinations
            row.suggested_at = utcnow()
            db.flush()
            return _suggestion_record(row)

        return await self._run(work)

    async def get_destination_suggestions(self, trip_id: int) -> List[DestinationSuggestionRecord]:
        def work(db):
            rows = (
                db.query(DestinationSuggestion)
                .filter(DestinationSuggestion.trip_id == trip_id)
                .order_by(DestinationSuggestion.suggested_at, DestinationSuggestion.id)
                .all()
            )
            return [_suggestion_record(r) for r in rows]

        return await self._run(work)

    async def upsert_date_availability(self, trip_id, member_id, start_date, end_date,
                                       is_flexible=False) -> DateAvailabilityRecord:
        def work(db):
            row = (
                db.query(DateAvailability)
                .filter(DateAvailability.trip_id == trip_id, DateAvailability.member_id == member_id)
                .first()
            )
            if row is None:
                row = DateAvailability(trip_id=trip_id, member_id=member_id)
                db.add(row)
            row.start_date = start_date
            row.end_date = end_date
            row.is_flexible = is_flexible
            row.submitted_at = utcnow()
            db.flush()
            return _availability_record(row)

        return await self._run(work)

    async def get_date_availability(self, trip_id: int) -> List[DateAvailabilityRecord]:
        def work(db):
            rows = (
                db.query(DateAvailability)
                .filter(DateAvailability.trip_id == trip_id)
                .order_by(DateAvailability.submitted_at, DateAvailability.id)
                .all()
            )
            return [_availability_record(r) for r in rows]

        return await self._run(work)

    # Flights

    async def create_flight(self, trip_id, member_id, airline=None, flight_number=None, booked=True) -> FlightRecord:
        def work(db):
            row = (
                db.query(Flight)
                .filter(Flight.trip_id == trip_id, Flight.member_id == member_id)
                .first()
            )
            if row is None:
                row = Flight(trip_id=trip_id, member_id=member_id)
                db.add(row)
            row.airline = airline
            row.flight_number = flight_number
            row.booked = booked
            row.created_at = utcnow()
            db.flush()
            return _flight_record(row)

        return await self._run(work)

    async def get_flights(self, trip_id: int) -> List[FlightRecord]:
        def work(db):
            rows = (
                db.query(Flight)
                .filter(Flight.trip_id == trip_id)
                .order_by(Flight.created_at, Flight.id)
                .all()
            )
            return [_flight_record(r) for r in rows]

        return await self._run(work)

    # Messages and errors

    async def create_message(self, trip_id, from_phone, body, group_chat_id=None) -> MessageRecord:
        def work(db):
            row = Message(
                trip_id=trip_id, from_phone=from_phone, body=body,
                group_chat_id=group_chat_id, received_at=utcnow(),
            )
            db.add(row)
            db.flush()
            return _message_record(row)

        return await self._run(work)

    async def get_recent_messages(self, trip_id: int, limit: int = 10) -> List[MessageRecord]:
        def work(db):
            rows = (
                db.query(Message)
                .filter(Message.trip_id == trip_id)
                .order_by(Message.received_at.desc(), Message.id.desc())
                .limit(limit)
                .all()
            )
            return [_message_record(r) for r in rows]

        return await self._run(work)

    async def log_error(self, trip_id, error_type, message, context=None) -> None:
        def work(db):
            db.add(ErrorLog(
                trip_id=trip_id,
                error_type=error_type,
                message=message[:2000],
                context=context or {},
                created_at=utcnow(),
            ))

        await self._run(work)
