import logging

from voyaj.services import rules
from voyaj.services.consensus import DateOption
from voyaj.services.event_bus import MEMBER_JOINED
from voyaj.services.handlers.base import Handler, HandlerResult
from voyaj.services.outputs import Output
from voyaj.store.records import TripStage

logger = logging.getLogger(__name__)


class CoordinatorHandler(Handler):
    """Joins members, answers status commands and routes poll replies to voting."""

    name = "coordinator"

    async def handle(self, context):
        trip = context.trip
        stage = TripStage.parse(trip.stage)
        text = context.message.body

        if stage == TripStage.CREATED:
            # The first message opens the trip; the entry action asks for names
            await self.transitions.advance(trip.id)
            return HandlerResult.ok()

        if context.intent.label == rules.COMMAND or rules.is_status_command(text):
            return HandlerResult.ok(self._status(context))

        if not context.is_member and (
            context.intent.label == rules.MEMBER_JOIN or stage == TripStage.COLLECTING_MEMBERS
        ):
            return await self._join(context)

        if context.is_member and context.intent.label == rules.MEMBER_JOIN:
            return HandlerResult.ok(Output.individual("already_member", name=context.member.name))

        if stage in rules.VOTING_STAGES and context.is_member:
            return HandlerResult.handoff_to("voting")

        if stage == TripStage.TRACKING_FLIGHTS and "flight" in text.lower():
            return HandlerResult.ok(self._flight_status(context))

        return HandlerResult.skipped()

    async def _join(self, context):
        trip = context.trip
        if TripStage.parse(trip.stage) not in rules.JOINABLE_STAGES:
            return HandlerResult.skipped()

        text = context.message.body
        if not await self.classify("is_name", text):
            return HandlerResult.clarify(Output.individual("name_request"))
        name = rules.clean_name(text)
        if not name:
            return HandlerResult.clarify(Output.individual("name_request"))

        member = await self.store.create_member(trip.id, context.sender_phone, name)
        logger.info(f"👋 {name} joined trip {trip.id}")
        self.publish(MEMBER_JOINED, trip.id, member_id=member.id, name=name)

        await self.transitions.advance(trip.id)
        members = await self.store.get_members(trip.id)
        return HandlerResult.ok(Output.group("member_joined", name=name, member_count=len(members)))

    def _status(self, context):
        trip = context.trip
        dates = None
        if trip.has_dates:
            dates = DateOption.between(trip.start_date, trip.end_date).display
        return Output.individual(
            "trip_status",
            stage=trip.stage,
            destination=trip.destination,
            dates=dates,
            member_names=context.member_names,
        )

    def _flight_status(self, context):
        booked_ids = {f.member_id for f in context.flights if f.booked}
        return Output.individual(
            "flight_status",
            booked=[m.name for m in context.members if m.id in booked_ids],
            pending=[m.name for m in context.members if m.id not in booked_ids],
        )
