"""Tests for TripStateMachine: stage table, planning resolver, polls and cascades."""
from dataclasses import replace
from datetime import date, timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import add_members, make_trip
from voyaj.exceptions import CascadeLimitError
from voyaj.services.event_bus import STAGE_CHANGED, EventBus
from voyaj.services.state_machine import (
    STAGES,
    ActionExecutor,
    StageDefinition,
    TransitionPolicy,
    TripStateMachine,
)
from voyaj.store.records import TripStage


def build_machine(store, clock, **policy):
    bus = EventBus()
    events = []
    bus.subscribe(STAGE_CHANGED, events.append, name="recorder")
    machine = TripStateMachine(store, bus, policy=TransitionPolicy(**policy), clock=clock)
    return machine, events


def transitions(events):
    return [(e.from_stage, e.to_stage) for e in events]


async def submit_dates(store, trip_id, members, start, end):
    for member in members:
        await store.upsert_date_availability(trip_id, member.id, start, end)


class TestMemberCollection:
    @pytest.mark.asyncio
    async def test_first_advance_opens_collecting_members(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await store.create_trip()

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.COLLECTING_MEMBERS.value
        assert transitions(events) == [("created", "collecting_members")]

    @pytest.mark.asyncio
    async def test_waits_for_minimum_members(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.COLLECTING_MEMBERS, members=["Ana"])

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.COLLECTING_MEMBERS.value
        assert events == []

    @pytest.mark.asyncio
    async def test_second_member_starts_planning(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.COLLECTING_MEMBERS, members=["Ana", "Ben"])

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.PLANNING.value
        assert transitions(events) == [("collecting_members", "planning")]


class TestPlanningResolver:
    @pytest.mark.asyncio
    async def test_full_date_coverage_with_one_overlap_locks_dates(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING)
        members = await add_members(store, trip.id, ["Ana", "Ben"])
        await submit_dates(store, trip.id, members, date(2025, 3, 15), date(2025, 3, 22))

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.DATES_SET.value
        assert updated.start_date == date(2025, 3, 15)
        assert updated.end_date == date(2025, 3, 22)
        assert transitions(events) == [("planning", "dates_set")]

    @pytest.mark.asyncio
    async def test_partial_coverage_waits(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING)
        members = await add_members(store, trip.id, ["Ana", "Ben", "Cy"])
        await submit_dates(store, trip.id, members[:2], date(2025, 3, 15), date(2025, 3, 22))

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.PLANNING.value
        assert events == []

    @pytest.mark.asyncio
    async def test_both_sides_full_prefers_dates_then_cascades(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING)
        members = await add_members(store, trip.id, ["Ana", "Ben"])
        await submit_dates(store, trip.id, members, date(2030, 3, 15), date(2030, 3, 22))
        for member in members:
            await store.upsert_destination_suggestion(trip.id, member.id, ["Tokyo"])

        updated = await machine.advance(trip.id)

        assert transitions(events) == [
            ("planning", "dates_set"),
            ("dates_set", "destination_set"),
            ("destination_set", "tracking_flights"),
        ]
        assert updated.stage == TripStage.TRACKING_FLIGHTS.value
        assert updated.destination == "Tokyo"

    @pytest.mark.asyncio
    async def test_multiple_destinations_open_a_poll(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING)
        ana, ben = await add_members(store, trip.id, ["Ana", "Ben"])
        await store.upsert_destination_suggestion(trip.id, ana.id, ["Tokyo"])
        await store.upsert_destination_suggestion(trip.id, ben.id, ["Bali"])

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.VOTING_DESTINATION.value
        assert updated.destination is None

    @pytest.mark.asyncio
    async def test_double_timeout_prefers_larger_count(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING, stage_entered_at=clock.now - timedelta(hours=13))
        ana, ben, cy, di = await add_members(store, trip.id, ["Ana", "Ben", "Cy", "Di"])
        await store.upsert_destination_suggestion(trip.id, ana.id, ["Tokyo"])
        await store.upsert_destination_suggestion(trip.id, ben.id, ["Bali"])
        await store.upsert_date_availability(trip.id, cy.id, date(2030, 3, 15), date(2030, 3, 22))

        updated = await machine.advance(trip.id)

        assert transitions(events)[0] == ("planning", "voting_destination")
        assert updated.stage == TripStage.VOTING_DESTINATION.value

    @pytest.mark.asyncio
    async def test_double_timeout_equal_counts_prefers_dates(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING, stage_entered_at=clock.now - timedelta(hours=13))
        ana, ben, cy = await add_members(store, trip.id, ["Ana", "Ben", "Cy"])
        await store.upsert_destination_suggestion(trip.id, ana.id, ["Tokyo"])
        await store.upsert_date_availability(trip.id, ben.id, date(2030, 3, 15), date(2030, 3, 22))

        updated = await machine.advance(trip.id)

        assert transitions(events) == [("planning", "dates_set")]
        # The timeout clock restarts in dates_set, so the destination side waits
        assert updated.stage == TripStage.DATES_SET.value

    @pytest.mark.asyncio
    async def test_no_overlap_keeps_planning(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING)
        ana, ben = await add_members(store, trip.id, ["Ana", "Ben"])
        await store.upsert_date_availability(trip.id, ana.id, date(2030, 3, 1), date(2030, 3, 5))
        await store.upsert_date_availability(trip.id, ben.id, date(2030, 4, 1), date(2030, 4, 5))

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.PLANNING.value
        assert events == []

    @pytest.mark.asyncio
    async def test_long_overlap_opens_date_poll(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING)
        members = await add_members(store, trip.id, ["Ana", "Ben"])
        await submit_dates(store, trip.id, members, date(2030, 6, 1), date(2030, 6, 11))

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.VOTING_DATES.value
        assert updated.start_date is None


class TestPolls:
    async def _voting_trip(self, store, clock, stage, names, **fields):
        trip = await make_trip(store, stage, **fields)
        members = await add_members(store, trip.id, names)
        return trip, members

    @pytest.mark.asyncio
    async def test_majority_closes_destination_poll(self, store, clock):
        machine, events = build_machine(store, clock)
        trip, members = await self._voting_trip(
            store, clock, TripStage.VOTING_DESTINATION, ["Ana", "Ben", "Cy", "Di", "Ed"],
        )
        for member, choice in zip(members, ["Tokyo", "Tokyo", "Tokyo", "Bali", "Bali"]):
            await store.create_vote(trip.id, "destination", member.id, choice)

        updated = await machine.advance(trip.id)

        assert updated.destination == "Tokyo"
        assert transitions(events)[0] == ("voting_destination", "destination_set")

    @pytest.mark.asyncio
    async def test_below_threshold_stays_open(self, store, clock):
        machine, events = build_machine(store, clock)
        trip, members = await self._voting_trip(
            store, clock, TripStage.VOTING_DESTINATION, ["Ana", "Ben", "Cy", "Di", "Ed"],
        )
        for member, choice in zip(members[:2], ["Tokyo", "Tokyo"]):
            await store.create_vote(trip.id, "destination", member.id, choice)

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.VOTING_DESTINATION.value
        assert events == []

    @pytest.mark.asyncio
    async def test_tie_suppresses_closure(self, store, clock):
        machine, events = build_machine(store, clock)
        trip, members = await self._voting_trip(
            store, clock, TripStage.VOTING_DESTINATION, ["Ana", "Ben", "Cy", "Di"],
        )
        for member, choice in zip(members, ["Tokyo", "Tokyo", "Bali", "Bali"]):
            await store.create_vote(trip.id, "destination", member.id, choice)

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.VOTING_DESTINATION.value
        assert updated.destination is None
        assert events == []

    @pytest.mark.asyncio
    async def test_tie_also_blocks_timeout(self, store, clock):
        machine, events = build_machine(store, clock)
        trip, members = await self._voting_trip(
            store, clock, TripStage.VOTING_DESTINATION, ["Ana", "Ben", "Cy", "Di"],
            stage_entered_at=clock.now - timedelta(hours=49),
        )
        await store.create_vote(trip.id, "destination", members[0].id, "Tokyo")
        await store.create_vote(trip.id, "destination", members[1].id, "Bali")

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.VOTING_DESTINATION.value

    @pytest.mark.asyncio
    async def test_timeout_closes_with_leader(self, store, clock):
        machine, events = build_machine(store, clock)
        trip, members = await self._voting_trip(
            store, clock, TripStage.VOTING_DESTINATION, ["Ana", "Ben", "Cy", "Di", "Ed"],
            stage_entered_at=clock.now - timedelta(hours=48),
        )
        await store.create_vote(trip.id, "destination", members[0].id, "Bali")

        updated = await machine.advance(trip.id)

        assert updated.destination == "Bali"

    @pytest.mark.asyncio
    async def test_timeout_without_votes_stays_open(self, store, clock):
        machine, events = build_machine(store, clock)
        trip, _ = await self._voting_trip(
            store, clock, TripStage.VOTING_DESTINATION, ["Ana", "Ben"],
            stage_entered_at=clock.now - timedelta(hours=72),
        )

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.VOTING_DESTINATION.value

    @pytest.mark.asyncio
    async def test_date_poll_winner_sets_window_from_key(self, store, clock):
        machine, events = build_machine(store, clock)
        trip, members = await self._voting_trip(store, clock, TripStage.VOTING_DATES, ["Ana", "Ben", "Cy"])
        for member in members:
            await store.upsert_date_availability(trip.id, member.id, date(2030, 6, 1), date(2030, 6, 11))
        await store.create_vote(trip.id, "dates", members[0].id, "2030-06-06/2030-06-11")
        await store.create_vote(trip.id, "dates", members[1].id, "2030-06-06/2030-06-11")

        updated = await machine.advance(trip.id)

        assert updated.start_date == date(2030, 6, 6)
        assert updated.end_date == date(2030, 6, 11)
        assert transitions(events)[0] == ("voting_dates", "dates_set")


class TestLateStages:
    @pytest.mark.asyncio
    async def test_all_flights_booked_confirms_trip(self, store, clock):
        machine, events = build_machine(store, clock)
        start = (clock.now + timedelta(days=60)).date()
        trip = await make_trip(
            store, TripStage.TRACKING_FLIGHTS,
            destination="Tokyo", start_date=start, end_date=start + timedelta(days=7),
        )
        members = await add_members(store, trip.id, ["Ana", "Ben"])
        await store.create_flight(trip.id, members[0].id, "AA", "AA123")

        assert (await machine.advance(trip.id)).stage == TripStage.TRACKING_FLIGHTS.value

        await store.create_flight(trip.id, members[1].id, "UA", "UA9")
        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.TRIP_CONFIRMED.value

    @pytest.mark.asyncio
    async def test_travel_dates_drive_active_and_completed(self, store, clock):
        machine, events = build_machine(store, clock)
        start = (clock.now + timedelta(days=10)).date()
        trip = await make_trip(
            store, TripStage.TRIP_CONFIRMED,
            destination="Tokyo", start_date=start, end_date=start + timedelta(days=3),
        )

        assert (await machine.advance(trip.id)).stage == TripStage.TRIP_CONFIRMED.value

        clock.advance(days=10)
        assert (await machine.advance(trip.id)).stage == TripStage.ACTIVE.value

        clock.advance(days=4)
        assert (await machine.advance(trip.id)).stage == TripStage.COMPLETED.value

    @pytest.mark.asyncio
    async def test_terminal_stage_never_moves(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.COMPLETED, members=["Ana", "Ben"])

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.COMPLETED.value
        assert events == []


class TestTransitionWrites:
    @pytest.mark.asyncio
    async def test_transition_resets_nudges_and_stamps_entry(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(
            store, TripStage.COLLECTING_MEMBERS, members=["Ana", "Ben"],
            nudge_count=2, last_nudge_at=clock.now - timedelta(hours=7),
        )

        updated = await machine.advance(trip.id)

        assert updated.stage == TripStage.PLANNING.value
        assert updated.nudge_count == 0
        assert updated.last_nudge_at is None
        assert updated.stage_entered_at == clock.now

    @pytest.mark.asyncio
    async def test_unknown_stage_is_left_alone(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING, members=["Ana", "Ben"])
        # Rows written before a stage was retired
        store.trips[trip.id] = replace(store.trips[trip.id], stage="brainstorming")

        updated = await machine.advance(trip.id)

        assert updated.stage == "brainstorming"
        assert events == []

    @pytest.mark.asyncio
    async def test_missing_trip_returns_none(self, store, clock):
        machine, _ = build_machine(store, clock)
        assert await machine.advance(404) is None

    @pytest.mark.asyncio
    async def test_runaway_cascade_raises(self, store, clock):
        bus = EventBus()
        looping = {
            TripStage.PLANNING: StageDefinition(TripStage.PLANNING, next=TripStage.VOTING_DATES),
            TripStage.VOTING_DATES: StageDefinition(TripStage.VOTING_DATES, next=TripStage.PLANNING),
        }
        machine = TripStateMachine(
            store, bus, policy=TransitionPolicy(max_cascade_steps=4), clock=clock, stages=looping,
        )
        trip = await make_trip(store, TripStage.PLANNING)

        with pytest.raises(CascadeLimitError):
            await machine.advance(trip.id)

        stored = await store.get_trip(trip.id)
        assert TripStage.parse(stored.stage) in looping


class TestRequestTransition:
    @pytest.mark.asyncio
    async def test_abandon_publishes_event(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING, members=["Ana", "Ben"])

        assert await machine.request_transition(trip.id, TripStage.ABANDONED, reason="quiet") is True

        assert (await store.get_trip(trip.id)).stage == TripStage.ABANDONED.value
        assert transitions(events) == [("planning", "abandoned")]
        assert events[0].reason == "quiet"

    @pytest.mark.asyncio
    async def test_refuses_to_leave_terminal_stage(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.ABANDONED)

        assert await machine.request_transition(trip.id, TripStage.PLANNING) is False
        assert events == []

    @pytest.mark.asyncio
    async def test_refuses_undeclared_stage(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING)

        assert await machine.request_transition(trip.id, "brainstorming") is False
        assert (await store.get_trip(trip.id)).stage == TripStage.PLANNING.value

    @pytest.mark.asyncio
    async def test_same_stage_is_a_no_op(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.PLANNING)

        assert await machine.request_transition(trip.id, TripStage.PLANNING) is False
        assert events == []


class RecordingExecutor(ActionExecutor):
    def __init__(self):
        self.events = []

    async def execute_entry_action(self, event):
        self.events.append(event)
        return True


class TestImmediateReannouncement:
    @pytest.mark.asyncio
    async def test_just_entered_immediate_stage_is_reannounced(self, store, clock):
        machine, events = build_machine(store, clock)
        executor = RecordingExecutor()
        machine.bind_executor(executor)
        trip = await make_trip(store, TripStage.DATES_SET, members=["Ana", "Ben"], stage_entered_at=clock.now)

        await machine.advance(trip.id)

        assert len(executor.events) == 1
        assert executor.events[0].is_reannouncement
        assert executor.events[0].to_stage == "dates_set"
        # Direct execution, not a bus event
        assert events == []

    @pytest.mark.asyncio
    async def test_stale_immediate_stage_is_not_reannounced(self, store, clock):
        machine, events = build_machine(store, clock)
        executor = RecordingExecutor()
        machine.bind_executor(executor)
        trip = await make_trip(
            store, TripStage.DATES_SET, members=["Ana", "Ben"],
            stage_entered_at=clock.now - timedelta(seconds=30),
        )

        await machine.advance(trip.id)

        assert executor.events == []

    @pytest.mark.asyncio
    async def test_without_executor_reannounces_on_bus(self, store, clock):
        machine, events = build_machine(store, clock)
        trip = await make_trip(store, TripStage.DESTINATION_SET, members=["Ana", "Ben"], stage_entered_at=clock.now)

        await machine.advance(trip.id)

        assert transitions(events) == [("destination_set", "destination_set")]

    @pytest.mark.asyncio
    async def test_stage_entered_by_this_call_is_not_reannounced(self, store, clock):
        machine, events = build_machine(store, clock)
        executor = AsyncMock(spec=ActionExecutor)
        machine.bind_executor(executor)
        trip = await make_trip(store, TripStage.PLANNING)
        members = await add_members(store, trip.id, ["Ana", "Ben"])
        await submit_dates(store, trip.id, members, date(2030, 3, 15), date(2030, 3, 22))

        await machine.advance(trip.id)

        executor.execute_entry_action.assert_not_called()
        assert transitions(events) == [("planning", "dates_set")]


class TestEntryOutputs:
    @pytest.mark.asyncio
    async def test_date_poll_announces_display_and_keys(self, store, clock):
        machine, _ = build_machine(store, clock)
        trip = await make_trip(store, TripStage.VOTING_DATES)
        members = await add_members(store, trip.id, ["Ana", "Ben", "Cy", "Di"])
        await submit_dates(store, trip.id, members, date(2030, 6, 1), date(2030, 6, 11))

        counts = await machine.load_counts(trip)
        output = machine.entry_output(trip, TripStage.VOTING_DATES, counts)

        assert output.type == "poll_started"
        assert output.get("option_keys") == ["2030-06-01/2030-06-05", "2030-06-06/2030-06-11"]
        assert output.get("options") == ["June 1-5", "June 6-11"]
        assert output.get("majority_threshold") == 3

    def test_every_declared_stage_has_a_definition(self):
        assert set(STAGES) == set(TripStage)

    def test_created_has_no_entry_action(self):
        assert STAGES[TripStage.CREATED].entry_action is None
        assert STAGES[TripStage.DATES_SET].immediate
        assert STAGES[TripStage.DESTINATION_SET].immediate
