"""
Trip stage machine.

The STAGES table declares, per stage, either a fixed ``next`` stage behind an
optional condition or a resolver that picks the next stage itself, plus the
entry action announcing the stage. ``evaluate`` is pure: it decides from the
trip and a StageCounts snapshot that ``load_counts`` reads fresh from the
store right before every decision.

``advance`` applies decisions in a loop so pass-through stages cascade
without waiting for another message. Each applied transition is one store
write (stage, stage_entered_at and any consensus result together) followed by
one StageChanged event on the bus.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from voyaj.exceptions import CascadeLimitError
from voyaj.services.consensus import (
    DateOption,
    DateOverlapResolver,
    VoteTally,
    consolidate_suggestions,
    majority_threshold,
)
from voyaj.services.event_bus import EventBus, StageChanged
from voyaj.services.outputs import Output
from voyaj.store.base import Store
from voyaj.store.records import (
    MemberRecord,
    PollType,
    TripRecord,
    TripStage,
    VoteResult,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class TransitionPolicy:
    min_members: int = 2
    majority_ratio: float = 0.6
    planning_timeout: timedelta = timedelta(hours=12)
    voting_timeout: timedelta = timedelta(hours=48)
    just_entered: timedelta = timedelta(seconds=5)
    max_cascade_steps: int = 10

    @classmethod
    def from_settings(cls, settings) -> "TransitionPolicy":
        return cls(
            min_members=settings.min_members,
            majority_ratio=settings.majority_ratio,
            planning_timeout=timedelta(hours=settings.planning_timeout_hours),
            voting_timeout=timedelta(hours=settings.voting_timeout_hours),
            just_entered=timedelta(seconds=settings.just_entered_seconds),
            max_cascade_steps=settings.max_cascade_steps,
        )


@dataclass
class StageCounts:
    """Everything a stage decision may look at, read fresh from the store."""

    now: datetime
    members: List[MemberRecord] = field(default_factory=list)
    suggestion_count: int = 0
    availability_count: int = 0
    flight_count: int = 0
    vote_count: int = 0
    vote_results: List[VoteResult] = field(default_factory=list)
    destination_options: List[str] = field(default_factory=list)
    date_options: List[DateOption] = field(default_factory=list)

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def member_names(self) -> List[str]:
        return [m.name for m in self.members]

    def elapsed(self, trip: TripRecord) -> timedelta:
        # A missing timestamp counts as "just entered"
        if trip.stage_entered_at is None:
            return timedelta(0)
        return max(self.now - trip.stage_entered_at, timedelta(0))


@dataclass
class TransitionDecision:
    to_stage: TripStage
    reason: str = ""
    updates: Dict[str, Any] = field(default_factory=dict)


Condition = Callable[[TripRecord, StageCounts, TransitionPolicy], bool]
Resolver = Callable[[TripRecord, StageCounts, TransitionPolicy], Optional[TransitionDecision]]
EntryAction = Callable[[TripRecord, StageCounts, TransitionPolicy], Optional[Output]]


@dataclass(frozen=True)
class StageDefinition:
    stage: TripStage
    next: Optional[TripStage] = None
    condition: Optional[Condition] = None
    resolver: Optional[Resolver] = None
    entry_action: Optional[EntryAction] = None
    trigger: str = "event"
    terminal: bool = False

    @property
    def immediate(self) -> bool:
        return self.trigger == "immediate"


class ActionExecutor(ABC):
    """Runs a stage's entry action. Implemented by the orchestrator."""

    @abstractmethod
    async def execute_entry_action(self, event: StageChanged) -> bool:
        """Return False when the action was suppressed as a duplicate."""


class TransitionRequester(ABC):
    """What handlers may ask of the stage machine."""

    @abstractmethod
    async def advance(self, trip_id: int) -> Optional[TripRecord]:
        """Re-evaluate the trip against fresh counts and apply any transitions."""

    @abstractmethod
    async def request_transition(self, trip_id: int, to_stage: TripStage, reason: str = "") -> bool:
        """Move the trip to ``to_stage`` unconditionally, then cascade."""


def poll_type_for_stage(stage) -> Optional[PollType]:
    stage = TripStage.parse(stage)
    if stage == TripStage.VOTING_DESTINATION:
        return PollType.DESTINATION
    if stage == TripStage.VOTING_DATES:
        return PollType.DATES
    return None


# Conditions

def _enough_members(trip, counts, policy) -> bool:
    return counts.member_count >= policy.min_members


def _all_flights_booked(trip, counts, policy) -> bool:
    return counts.member_count > 0 and counts.flight_count >= counts.member_count


def _travel_started(trip, counts, policy) -> bool:
    return trip.start_date is not None and counts.now.date() >= trip.start_date


def _travel_ended(trip, counts, policy) -> bool:
    return trip.end_date is not None and counts.now.date() > trip.end_date


# Resolvers

def _advance_destination(counts: StageCounts) -> Optional[TransitionDecision]:
    options = counts.destination_options
    if len(options) == 1:
        return TransitionDecision(
            TripStage.DESTINATION_SET,
            reason="single destination suggested",
            updates={"destination": options[0]},
        )
    if len(options) >= 2:
        return TransitionDecision(TripStage.VOTING_DESTINATION, reason=f"{len(options)} destinations to vote on")
    return None


def _advance_dates(counts: StageCounts) -> Optional[TransitionDecision]:
    options = counts.date_options
    if len(options) == 1:
        return TransitionDecision(
            TripStage.DATES_SET,
            reason="single overlapping date window",
            updates={"start_date": options[0].start, "end_date": options[0].end},
        )
    if len(options) >= 2:
        return TransitionDecision(TripStage.VOTING_DATES, reason=f"{len(options)} date windows to vote on")
    return None


def resolve_planning(trip: TripRecord, counts: StageCounts, policy: TransitionPolicy) -> Optional[TransitionDecision]:
    """
    Pick the next planning step.

    Once both destination and dates are settled the trip moves on to flights.
    Otherwise a side qualifies when it is unresolved, has at least one
    submission, and either everyone has submitted or the stage timed out.
    Dates win when both qualify, except on a bare double timeout where the
    side with more submissions goes first. A dates side whose submissions do
    not overlap has nothing to vote on and does not qualify.
    """
    if trip.has_destination and trip.has_dates:
        return TransitionDecision(TripStage.TRACKING_FLIGHTS, reason="destination and dates resolved")

    members = counts.member_count
    if members == 0:
        return None
    timed_out = counts.elapsed(trip) >= policy.planning_timeout

    destination_full = not trip.has_destination and counts.suggestion_count >= members
    dates_full = not trip.has_dates and counts.availability_count >= members

    destination_ready = (
        not trip.has_destination
        and counts.suggestion_count > 0
        and (destination_full or timed_out)
        and len(counts.destination_options) > 0
    )
    dates_ready = (
        not trip.has_dates
        and counts.availability_count > 0
        and (dates_full or timed_out)
        and len(counts.date_options) > 0
    )

    if destination_ready and dates_ready:
        if not destination_full and not dates_full and counts.suggestion_count > counts.availability_count:
            return _advance_destination(counts)
        return _advance_dates(counts)
    if dates_ready:
        return _advance_dates(counts)
    if destination_ready:
        return _advance_destination(counts)
    return None


def _poll_winner(trip: TripRecord, counts: StageCounts, policy: TransitionPolicy) -> Optional[VoteResult]:
    results = counts.vote_results
    if not results:
        return None
    threshold = majority_threshold(counts.member_count, policy.majority_ratio)
    timed_out = counts.elapsed(trip) >= policy.voting_timeout
    if counts.vote_count < threshold and not timed_out:
        return None
    if VoteTally.is_tie(results):
        # A tie keeps the poll open until someone changes their vote or joins
        logger.info(f"Trip {trip.id}: poll tied between {VoteTally.tied_choices(results)}")
        return None
    return results[0]


def resolve_destination_poll(trip, counts, policy) -> Optional[TransitionDecision]:
    winner = _poll_winner(trip, counts, policy)
    if winner is None:
        return None
    return TransitionDecision(
        TripStage.DESTINATION_SET,
        reason=f"destination poll won by {winner.choice} ({winner.count} votes)",
        updates={"destination": winner.choice},
    )


def resolve_dates_poll(trip, counts, policy) -> Optional[TransitionDecision]:
    winner = _poll_winner(trip, counts, policy)
    if winner is None:
        return None
    option = next((o for o in counts.date_options if o.key == winner.choice), None)
    option = option or DateOption.from_key(winner.choice)
    if option is None:
        logger.error(f"Trip {trip.id}: winning date choice {winner.choice!r} is not a date option key")
        return None
    return TransitionDecision(
        TripStage.DATES_SET,
        reason=f"date poll won by {option.display} ({winner.count} votes)",
        updates={"start_date": option.start, "end_date": option.end},
    )


# Entry actions

def _dates_display(trip: TripRecord) -> Optional[str]:
    if not trip.has_dates:
        return None
    return DateOption.between(trip.start_date, trip.end_date).display


def _trip_started(trip, counts, policy):
    return Output.group("trip_started", min_members=policy.min_members)


def _planning_started(trip, counts, policy):
    return Output.group(
        "planning_started",
        member_names=counts.member_names,
        member_count=counts.member_count,
        has_destination=trip.has_destination,
        destination=trip.destination,
        has_dates=trip.has_dates,
        dates=_dates_display(trip),
    )


def _destination_poll_started(trip, counts, policy):
    return Output.group(
        "poll_started",
        poll_type=PollType.DESTINATION.value,
        options=list(counts.destination_options),
        option_keys=list(counts.destination_options),
        member_count=counts.member_count,
        majority_threshold=majority_threshold(counts.member_count, policy.majority_ratio),
    )


def _dates_poll_started(trip, counts, policy):
    return Output.group(
        "poll_started",
        poll_type=PollType.DATES.value,
        options=[o.display for o in counts.date_options],
        option_keys=[o.key for o in counts.date_options],
        member_count=counts.member_count,
        majority_threshold=majority_threshold(counts.member_count, policy.majority_ratio),
    )


def _destination_locked(trip, counts, policy):
    return Output.group(
        "destination_locked",
        destination=trip.destination,
        has_dates=trip.has_dates,
        dates=_dates_display(trip),
    )


def _dates_locked(trip, counts, policy):
    return Output.group(
        "dates_locked",
        dates=_dates_display(trip),
        start_date=trip.start_date.isoformat() if trip.start_date else None,
        end_date=trip.end_date.isoformat() if trip.end_date else None,
        has_destination=trip.has_destination,
        destination=trip.destination,
    )


def _flights_open(trip, counts, policy):
    return Output.group(
        "flights_open",
        destination=trip.destination,
        dates=_dates_display(trip),
        member_count=counts.member_count,
    )


def _simple(output_type: str) -> EntryAction:
    def action(trip, counts, policy):
        return Output.group(output_type, destination=trip.destination, dates=_dates_display(trip))
    action.__name__ = f"_{output_type}"
    return action


STAGES: Dict[TripStage, StageDefinition] = {
    TripStage.CREATED: StageDefinition(
        TripStage.CREATED,
        next=TripStage.COLLECTING_MEMBERS,
        trigger="first_message",
    ),
    TripStage.COLLECTING_MEMBERS: StageDefinition(
        TripStage.COLLECTING_MEMBERS,
        next=TripStage.PLANNING,
        condition=_enough_members,
        entry_action=_trip_started,
    ),
    TripStage.PLANNING: StageDefinition(
        TripStage.PLANNING,
        resolver=resolve_planning,
        entry_action=_planning_started,
    ),
    TripStage.VOTING_DESTINATION: StageDefinition(
        TripStage.VOTING_DESTINATION,
        resolver=resolve_destination_poll,
        entry_action=_destination_poll_started,
    ),
    TripStage.VOTING_DATES: StageDefinition(
        TripStage.VOTING_DATES,
        resolver=resolve_dates_poll,
        entry_action=_dates_poll_started,
    ),
    TripStage.DESTINATION_SET: StageDefinition(
        TripStage.DESTINATION_SET,
        resolver=resolve_planning,
        entry_action=_destination_locked,
        trigger="immediate",
    ),
    TripStage.DATES_SET: StageDefinition(
        TripStage.DATES_SET,
        resolver=resolve_planning,
        entry_action=_dates_locked,
        trigger="immediate",
    ),
    TripStage.TRACKING_FLIGHTS: StageDefinition(
        TripStage.TRACKING_FLIGHTS,
        next=TripStage.TRIP_CONFIRMED,
        condition=_all_flights_booked,
        entry_action=_flights_open,
    ),
    TripStage.TRIP_CONFIRMED: StageDefinition(
        TripStage.TRIP_CONFIRMED,
        next=TripStage.ACTIVE,
        condition=_travel_started,
        entry_action=_simple("trip_confirmed"),
    ),
    TripStage.ACTIVE: StageDefinition(
        TripStage.ACTIVE,
        next=TripStage.COMPLETED,
        condition=_travel_ended,
        entry_action=_simple("trip_active"),
    ),
    TripStage.COMPLETED: StageDefinition(
        TripStage.COMPLETED,
        entry_action=_simple("trip_completed"),
        terminal=True,
    ),
    TripStage.ABANDONED: StageDefinition(
        TripStage.ABANDONED,
        entry_action=_simple("trip_abandoned"),
        terminal=True,
    ),
}


class TripStateMachine(TransitionRequester):
    def __init__(
        self,
        store: Store,
        bus: EventBus,
        policy: Optional[TransitionPolicy] = None,
        date_resolver: Optional[DateOverlapResolver] = None,
        executor: Optional[ActionExecutor] = None,
        clock: Optional[Callable[[], datetime]] = None,
        stages: Optional[Dict[TripStage, StageDefinition]] = None,
    ):
        self.store = store
        self.bus = bus
        self.policy = policy or TransitionPolicy()
        self.date_resolver = date_resolver or DateOverlapResolver()
        self.executor = executor
        self.stages = stages or STAGES
        self._clock = clock or utcnow

    def bind_executor(self, executor: ActionExecutor):
        self.executor = executor

    def definition(self, stage) -> Optional[StageDefinition]:
        parsed = TripStage.parse(stage)
        return self.stages.get(parsed) if parsed else None

    def now(self) -> datetime:
        return self._clock()

    def evaluate(self, trip: TripRecord, counts: StageCounts) -> Optional[TransitionDecision]:
        definition = self.definition(trip.stage)
        if definition is None:
            logger.error(f"Trip {trip.id} has unknown stage {trip.stage!r}; treating as terminal")
            return None
        if definition.terminal:
            return None
        if definition.resolver is not None:
            return definition.resolver(trip, counts, self.policy)
        if definition.next is None:
            return None
        if definition.condition is None or definition.condition(trip, counts, self.policy):
            return TransitionDecision(definition.next, reason=definition.trigger)
        return None

    async def load_counts(self, trip: TripRecord) -> StageCounts:
        now = self.now()
        members = await self.store.get_members(trip.id)
        suggestions = await self.store.get_destination_suggestions(trip.id)
        availability = await self.store.get_date_availability(trip.id)
        flights = await self.store.get_flights(trip.id)

        poll_type = poll_type_for_stage(trip.stage)
        votes = await self.store.get_votes(trip.id, poll_type.value) if poll_type else []

        return StageCounts(
            now=now,
            members=members,
            suggestion_count=len(suggestions),
            availability_count=len(availability),
            flight_count=len([f for f in flights if f.booked]),
            vote_count=len(votes),
            vote_results=VoteTally.results(votes),
            destination_options=consolidate_suggestions(suggestions),
            date_options=self.date_resolver.resolve(availability, today=now.date()),
        )

    def entry_output(self, trip: TripRecord, stage, counts: StageCounts) -> Optional[Output]:
        definition = self.definition(stage)
        if definition is None or definition.entry_action is None:
            return None
        return definition.entry_action(trip, counts, self.policy)

    def just_entered(self, trip: TripRecord, now: Optional[datetime] = None) -> bool:
        if trip.stage_entered_at is None:
            return True
        now = now or self.now()
        return now - trip.stage_entered_at < self.policy.just_entered

    async def advance(self, trip_id: int) -> Optional[TripRecord]:
        trip = await self.store.get_trip(trip_id)
        if trip is None:
            logger.warning(f"Cannot advance trip {trip_id}: not found")
            return None

        transitions = 0
        while True:
            definition = self.definition(trip.stage)
            if definition is None:
                logger.error(f"Trip {trip.id} has unknown stage {trip.stage!r}; treating as terminal")
                return trip

            counts = await self.load_counts(trip)

            # Only announce a stage this call did not enter itself
            if transitions == 0 and definition.immediate and self.just_entered(trip, counts.now):
                await self._reannounce(trip)

            decision = self.evaluate(trip, counts)
            if decision is None:
                return trip
            if decision.to_stage.value == trip.stage:
                logger.warning(f"Trip {trip.id}: ignoring self-transition on {trip.stage}")
                return trip
            if transitions >= self.policy.max_cascade_steps:
                raise CascadeLimitError(
                    f"Trip {trip.id} still transitioning after {transitions} steps "
                    f"({trip.stage} -> {decision.to_stage.value})"
                )

            trip = await self._apply(trip, decision)
            transitions += 1

    async def request_transition(self, trip_id: int, to_stage: TripStage, reason: str = "") -> bool:
        target = TripStage.parse(to_stage)
        if target is None:
            logger.error(f"Refusing transition of trip {trip_id} to undeclared stage {to_stage!r}")
            return False
        trip = await self.store.get_trip(trip_id)
        if trip is None:
            logger.warning(f"Cannot transition trip {trip_id}: not found")
            return False
        if trip.stage == target.value:
            return False
        current = self.definition(trip.stage)
        if current is not None and current.terminal:
            logger.warning(f"Trip {trip_id} is {trip.stage}; not moving to {target.value}")
            return False

        await self._apply(trip, TransitionDecision(target, reason=reason or "requested"))
        await self.advance(trip_id)
        return True

    async def _apply(self, trip: TripRecord, decision: TransitionDecision) -> TripRecord:
        now = self.now()
        from_stage = trip.stage
        updates = dict(decision.updates)
        updates.update(
            stage=decision.to_stage.value,
            stage_entered_at=now,
            nudge_count=0,
            last_nudge_at=None,
        )
        updated = await self.store.update_trip(trip.id, **updates)
        logger.info(f"Trip {trip.id}: {from_stage} -> {decision.to_stage.value} ({decision.reason})")

        self.bus.publish(StageChanged(
            trip_id=trip.id,
            from_stage=from_stage,
            to_stage=decision.to_stage.value,
            occurred_at=now,
            reason=decision.reason,
        ))
        return updated

    async def _reannounce(self, trip: TripRecord):
        event = StageChanged(trip_id=trip.id, from_stage=trip.stage, to_stage=trip.stage, occurred_at=self.now())
        if self.executor is None:
            self.bus.publish(event)
            return
        try:
            await self.executor.execute_entry_action(event)
        except Exception as e:
            logger.exception(f"Entry action for trip {trip.id} ({trip.stage}) failed: {e}")
