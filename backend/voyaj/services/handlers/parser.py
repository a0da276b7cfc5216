import logging
from dataclasses import asdict

from voyaj.services import rules
from voyaj.services.consensus import DateOption, DateOverlapResolver
from voyaj.services.event_bus import FLIGHT_ADDED
from voyaj.services.handlers.base import Handler, HandlerResult
from voyaj.services.outputs import Output
from voyaj.store.records import TripStage

logger = logging.getLogger(__name__)


class ParserHandler(Handler):
    """Date availability while planning, flight bookings once dates and place are set."""

    name = "parser"

    def __init__(self, *args, date_resolver: DateOverlapResolver = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.date_resolver = date_resolver or DateOverlapResolver()

    async def handle(self, context):
        stage = TripStage.parse(context.trip.stage)
        if stage == TripStage.TRACKING_FLIGHTS:
            if not context.is_member:
                return HandlerResult.ok(Output.individual("join_required"))
            return await self._flight(context)
        if stage in rules.PLANNING_STAGES:
            if not context.is_member:
                return HandlerResult.ok(Output.individual("join_required"))
            return await self._dates(context)
        return HandlerResult.skipped()

    async def _dates(self, context):
        trip = context.trip
        if trip.has_dates:
            return HandlerResult.skipped()

        text = context.message.body
        if rules.is_flexible(text):
            parsed = rules.ParsedDates(flexible=True)
        else:
            parsed = await self.classify("parse_date_range", text, context.message.received_at.date())
        if parsed is None:
            return HandlerResult.clarify(Output.individual("dates_unclear"))

        member = context.member
        await self.store.upsert_date_availability(
            trip.id, member.id,
            start_date=None if parsed.flexible else parsed.start,
            end_date=None if parsed.flexible else parsed.end,
            is_flexible=parsed.flexible,
        )
        updated = await self.transitions.advance(trip.id)

        availability = await self.store.get_date_availability(trip.id)
        members = await self.store.get_members(trip.id)
        still_here = updated is not None and updated.stage == trip.stage and not updated.has_dates
        if still_here and len(availability) >= len(members) and not self.date_resolver.resolve(availability):
            logger.info(f"Trip {trip.id}: availability does not overlap")
            return HandlerResult.ok(Output.group(
                "date_conflict",
                availability=[asdict(a) for a in self.date_resolver.describe_conflict(availability)],
            ))

        submitted = {a.member_id for a in availability}
        dates = None if parsed.flexible else DateOption.between(parsed.start, parsed.end).display
        return HandlerResult.ok(Output.group(
            "date_availability_submitted",
            member_name=member.name,
            dates=dates,
            flexible=parsed.flexible,
            availability_count=len(availability),
            member_count=len(members),
            pending_members=[m.name for m in members if m.id not in submitted],
        ))

    async def _flight(self, context):
        trip = context.trip
        parsed = rules.parse_flight(context.message.body)
        if parsed is None:
            return HandlerResult.clarify(Output.individual("flight_unclear"))

        member = context.member
        await self.store.create_flight(
            trip.id, member.id,
            airline=parsed.airline, flight_number=parsed.flight_number, booked=parsed.booked,
        )
        self.publish(FLIGHT_ADDED, trip.id, member_id=member.id, flight_number=parsed.flight_number)

        flights = await self.store.get_flights(trip.id)
        members = await self.store.get_members(trip.id)
        booked = len([f for f in flights if f.booked])
        await self.transitions.advance(trip.id)

        return HandlerResult.ok(Output.group(
            "flight_booked",
            member_name=member.name,
            airline=parsed.airline,
            flight_number=parsed.flight_number,
            booked_count=booked,
            member_count=len(members),
            all_booked=booked >= len(members),
        ))
