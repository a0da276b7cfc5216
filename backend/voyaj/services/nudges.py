"""
Reminders for trips that have gone quiet.

A sweep first lets the stage machine apply any time-based transitions
(planning and voting timeouts), then, for trips still waiting on people,
sends an escalating reminder naming the non-responders. Past a stage's
give-up ceiling the trip is abandoned instead.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from voyaj.services.consensus import VoteTally
from voyaj.services.outputs import Output
from voyaj.services.responder import Responder, ResponseContext
from voyaj.services.notification import Notifier
from voyaj.services.state_machine import TripStateMachine, poll_type_for_stage
from voyaj.store.base import Store
from voyaj.store.records import MemberRecord, TripRecord, TripStage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NudgeRule:
    first: timedelta
    second: timedelta
    give_up: timedelta
    escalate: Optional[timedelta] = None
    min_gap: timedelta = timedelta(hours=6)


def default_rules(testing_mode: bool = False) -> Dict[TripStage, NudgeRule]:
    # Testing mode keeps the same shape with minutes in place of hours
    unit = timedelta(minutes=1) if testing_mode else timedelta(hours=1)
    planning = NudgeRule(first=6 * unit, second=24 * unit, give_up=72 * unit, min_gap=6 * unit)
    flights = NudgeRule(
        first=24 * unit, second=48 * unit, escalate=72 * unit,
        give_up=14 * 24 * unit, min_gap=6 * unit,
    )
    return {
        TripStage.PLANNING: planning,
        TripStage.DESTINATION_SET: planning,
        TripStage.DATES_SET: planning,
        TripStage.VOTING_DESTINATION: planning,
        TripStage.VOTING_DATES: planning,
        TripStage.TRACKING_FLIGHTS: flights,
    }


# What a non-responder is being asked to do, by stage
ACTIONS = {
    "destination": "suggest where you'd like to go",
    "dates": "send the dates you're free",
    "vote": "vote in the poll",
    "flight": "send your flight details",
}


@dataclass
class SweepSummary:
    checked: int = 0
    nudged: int = 0
    advanced: int = 0
    abandoned: int = 0
    errors: int = 0
    outcomes: Dict[int, str] = field(default_factory=dict)


class NudgeScheduler:
    def __init__(
        self,
        store: Store,
        state_machine: TripStateMachine,
        responder: Responder,
        notifier: Notifier,
        rules: Optional[Dict[TripStage, NudgeRule]] = None,
    ):
        self.store = store
        self.state_machine = state_machine
        self.responder = responder
        self.notifier = notifier
        self.rules = rules or default_rules()

    async def sweep(self) -> SweepSummary:
        summary = SweepSummary()
        for trip in await self.store.get_active_trips():
            summary.checked += 1
            try:
                outcome = await self.process_trip(trip)
            except Exception as e:
                summary.errors += 1
                summary.outcomes[trip.id] = "error"
                logger.exception(f"Nudge sweep failed for trip {trip.id}: {e}")
                continue
            summary.outcomes[trip.id] = outcome
            if outcome == "nudged":
                summary.nudged += 1
            elif outcome == "advanced":
                summary.advanced += 1
            elif outcome == "abandoned":
                summary.abandoned += 1
        if summary.nudged or summary.abandoned or summary.errors:
            logger.info(
                f"Nudge sweep: {summary.checked} checked, {summary.nudged} nudged, "
                f"{summary.advanced} advanced, {summary.abandoned} abandoned, {summary.errors} errors"
            )
        return summary

    async def process_trip(self, trip: TripRecord) -> str:
        current = await self.state_machine.advance(trip.id)
        if current is None:
            return "missing"
        if current.stage != trip.stage:
            return "advanced"
        trip = current

        stage = TripStage.parse(trip.stage)
        rule = self.rules.get(stage)
        if rule is None:
            return "no_rule"

        now = self.state_machine.now()
        elapsed = now - trip.stage_entered_at if trip.stage_entered_at else timedelta(0)
        if elapsed >= rule.give_up:
            await self.state_machine.request_transition(
                trip.id, TripStage.ABANDONED, reason=f"no progress in {stage.value} for {elapsed}",
            )
            return "abandoned"

        if trip.last_nudge_at is not None and now - trip.last_nudge_at < rule.min_gap:
            return "recent"

        urgency = self._urgency(trip, rule, elapsed)
        if urgency is None:
            return "waiting"

        members = await self.store.get_members(trip.id)
        action, pending = await self.non_responders(trip, members)
        if not pending:
            return "complete"

        output = Output.group(
            "nudge",
            stage=trip.stage,
            urgency=urgency,
            action=ACTIONS[action],
            names=[m.name for m in pending],
            nudge_number=trip.nudge_count + 1,
        )
        rendered = await self.responder.format(output, ResponseContext(trip=trip, members=members))
        for member in members:
            await self.notifier.send(member.phone_number, rendered.text)

        await self.store.update_trip(trip.id, nudge_count=trip.nudge_count + 1, last_nudge_at=now)
        logger.info(f"🔔 Trip {trip.id}: {urgency} nudge for {len(pending)} non-responders in {trip.stage}")
        return "nudged"

    @staticmethod
    def _urgency(trip: TripRecord, rule: NudgeRule, elapsed: timedelta) -> Optional[str]:
        if trip.nudge_count == 0 and elapsed >= rule.first:
            return "gentle"
        if trip.nudge_count == 1 and elapsed >= rule.second:
            return "urgent"
        if trip.nudge_count == 2 and rule.escalate is not None and elapsed >= rule.escalate:
            return "final"
        return None

    async def non_responders(self, trip: TripRecord, members: List[MemberRecord]):
        """(action, members who have not done it) for the trip's stage."""
        stage = TripStage.parse(trip.stage)
        poll_type = poll_type_for_stage(stage)
        if poll_type is not None:
            votes = await self.store.get_votes(trip.id, poll_type.value)
            return "vote", VoteTally.pending_voters(members, votes)

        if stage == TripStage.TRACKING_FLIGHTS:
            done = {f.member_id for f in await self.store.get_flights(trip.id) if f.booked}
            return "flight", [m for m in members if m.id not in done]

        # Planning stages: chase dates first, matching the planning resolver's preference
        if not trip.has_dates:
            done = {a.member_id for a in await self.store.get_date_availability(trip.id)}
            pending = [m for m in members if m.id not in done]
            if pending or trip.has_destination:
                return "dates", pending
        done = {s.member_id for s in await self.store.get_destination_suggestions(trip.id)}
        return "destination", [m for m in members if m.id not in done]


