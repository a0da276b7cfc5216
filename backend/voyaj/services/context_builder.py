"""
Builds what a handler needs to see for one message.

Every handler gets the trip, the sender's member row and the member list.
On top of that each handler gets only the data it uses, loaded fresh per
dispatch, so a handoff target gets a context built for its own needs.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from voyaj.exceptions import TripNotFoundError
from voyaj.services.consensus import DateOverlapResolver, consolidate_suggestions, majority_threshold
from voyaj.services.state_machine import poll_type_for_stage
from voyaj.store.base import Store
from voyaj.store.records import (
    DateAvailabilityRecord,
    DestinationSuggestionRecord,
    FlightRecord,
    InboundMessage,
    MemberRecord,
    MessageRecord,
    PollType,
    TripRecord,
    VoteRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class Intent:
    label: str
    handler: str
    source: str = "rules"
    confidence: float = 1.0


@dataclass
class PollContext:
    """An open poll, recomputed on demand and never stored."""

    poll_type: PollType
    options: List[str]
    option_keys: List[str]
    member_count: int
    majority_threshold: int

    def display_for(self, key: str) -> str:
        if key in self.option_keys:
            return self.options[self.option_keys.index(key)]
        return key


@dataclass
class HandlerContext:
    trip: TripRecord
    message: InboundMessage
    intent: Intent
    member: Optional[MemberRecord] = None
    members: List[MemberRecord] = field(default_factory=list)
    poll: Optional[PollContext] = None
    suggestions: List[DestinationSuggestionRecord] = field(default_factory=list)
    availability: List[DateAvailabilityRecord] = field(default_factory=list)
    flights: List[FlightRecord] = field(default_factory=list)
    votes: List[VoteRecord] = field(default_factory=list)
    recent_messages: List[MessageRecord] = field(default_factory=list)

    @property
    def is_member(self) -> bool:
        return self.member is not None and self.member.trip_id == self.trip.id

    @property
    def sender_phone(self) -> str:
        return self.message.from_phone

    @property
    def member_names(self) -> List[str]:
        return [m.name for m in self.members]


class ContextBuilder:
    def __init__(self, store: Store, date_resolver: Optional[DateOverlapResolver] = None,
                 majority_ratio: float = 0.6):
        self.store = store
        self.date_resolver = date_resolver or DateOverlapResolver()
        self.majority_ratio = majority_ratio

    async def build(self, trip_id: int, message: InboundMessage, intent: Intent,
                    handler_name: Optional[str] = None) -> HandlerContext:
        trip = await self.store.get_trip(trip_id)
        if trip is None:
            raise TripNotFoundError(trip_id)

        member = await self.store.get_member_by_phone(message.from_phone)
        if member is not None and member.trip_id != trip.id:
            # Their phone is registered to another trip; they join this one by name
            member = None
        members = await self.store.get_members(trip.id)
        context = HandlerContext(trip=trip, message=message, intent=intent, member=member, members=members)

        handler_name = handler_name or intent.handler
        if handler_name == "voting":
            context.suggestions = await self.store.get_destination_suggestions(trip.id)
            context.poll = await self.build_poll(trip, members)
            if context.poll:
                context.votes = await self.store.get_votes(trip.id, context.poll.poll_type.value)
        elif handler_name == "parser":
            context.availability = await self.store.get_date_availability(trip.id)
            context.flights = await self.store.get_flights(trip.id)
        elif handler_name == "coordinator":
            context.flights = await self.store.get_flights(trip.id)
        elif handler_name == "conversation":
            context.recent_messages = await self.store.get_recent_messages(trip.id, limit=10)
        return context

    async def build_poll(self, trip: TripRecord, members: List[MemberRecord]) -> Optional[PollContext]:
        poll_type = poll_type_for_stage(trip.stage)
        if poll_type is None:
            return None

        if poll_type == PollType.DESTINATION:
            options = consolidate_suggestions(await self.store.get_destination_suggestions(trip.id))
            keys = list(options)
        else:
            date_options = self.date_resolver.resolve(await self.store.get_date_availability(trip.id))
            options = [o.display for o in date_options]
            keys = [o.key for o in date_options]

        return PollContext(
            poll_type=poll_type,
            options=options,
            option_keys=keys,
            member_count=len(members),
            majority_threshold=majority_threshold(len(members), self.majority_ratio),
        )
