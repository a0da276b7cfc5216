"""Tests for ConversationOrchestrator: routing, handoffs, fallbacks and entry actions."""
import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import add_members, make_message, make_trip, phone_for
from voyaj.exceptions import ClassifierError
from voyaj.services.classifier import Classification, RuleClassifier
from voyaj.services.event_bus import STAGE_CHANGED, EventBus, StageChanged
from voyaj.services.handlers import HandlerResult
from voyaj.services.orchestrator import SUBSCRIBER_NAME, ConversationOrchestrator
from voyaj.services.outputs import Output
from voyaj.services.responder import FALLBACK_TEXT, TemplateResponder
from voyaj.services.state_machine import TripStateMachine
from voyaj.store.records import BOT_SENDER, TripStage


def fake_handler(*results):
    handler = MagicMock()
    handler.handle = AsyncMock(side_effect=list(results))
    return handler


def build_orchestrator(store, notifier, clock, handlers=None, classifier=None, **kwargs):
    bus = EventBus()
    machine = TripStateMachine(store, bus, clock=clock)
    return ConversationOrchestrator(
        store, machine, classifier or RuleClassifier(), TemplateResponder(), notifier,
        bus=bus, handlers=handlers, **kwargs,
    )


class TestJoinFlow:
    @pytest.mark.asyncio
    async def test_first_message_opens_trip_and_greets_sender(self, engine, store, notifier):
        trip = await store.create_trip()
        ana = phone_for("Ana")

        result = await engine.orchestrator.process(trip.id, make_message(ana, "hey everyone"))
        await engine.bus.drain()

        assert result.success
        assert (await store.get_trip(trip.id)).stage == TripStage.COLLECTING_MEMBERS.value
        # No members yet, so the group greeting goes to whoever texted
        assert any("New trip" in body for body in notifier.messages_for(ana))

    @pytest.mark.asyncio
    async def test_two_names_start_planning(self, engine, store, notifier):
        trip = await store.create_trip()
        ana, ben = phone_for("Ana"), phone_for("Ben")

        await engine.orchestrator.process(trip.id, make_message(ana, "hi"))
        await engine.orchestrator.process(trip.id, make_message(ana, "Ana"))
        await engine.orchestrator.process(trip.id, make_message(ben, "I'm ben"))
        await engine.bus.drain()

        trip = await store.get_trip(trip.id)
        members = await store.get_members(trip.id)
        assert trip.stage == TripStage.PLANNING.value
        assert [m.name for m in members] == ["Ana", "Ben"]
        assert any("Time to plan" in body for body in notifier.messages_for(ben))

    @pytest.mark.asyncio
    async def test_bot_replies_are_logged_as_messages(self, engine, store):
        trip = await store.create_trip()
        await engine.orchestrator.process(trip.id, make_message(phone_for("Ana"), "hi"))
        await engine.bus.drain()

        senders = [m.from_phone for m in await store.get_recent_messages(trip.id)]
        assert BOT_SENDER in senders
        assert phone_for("Ana") in senders


class TestEntryActionDedup:
    @pytest.mark.asyncio
    async def test_repeated_evaluation_after_entering_immediate_stage_announces_once(
        self, engine, store, notifier, clock,
    ):
        trip = await make_trip(store, TripStage.PLANNING)
        members = await add_members(store, trip.id, ["Ana", "Ben"])
        for member in members:
            await store.upsert_date_availability(trip.id, member.id, date(2030, 3, 15), date(2030, 3, 22))

        await engine.state_machine.advance(trip.id)
        await engine.state_machine.advance(trip.id)
        await engine.state_machine.advance(trip.id)
        await engine.bus.drain()

        locked = [b for b in notifier.messages_for(members[0].phone_number) if "Dates locked" in b]
        assert len(locked) == 1

    @pytest.mark.asyncio
    async def test_reannouncement_without_prior_transition_fires_once(self, engine, store, notifier, clock):
        trip = await make_trip(
            store, TripStage.DESTINATION_SET, members=["Ana", "Ben"],
            destination="Tokyo", stage_entered_at=clock.now,
        )

        await engine.state_machine.advance(trip.id)
        await engine.state_machine.advance(trip.id)
        await engine.bus.drain()

        decided = [b for b in notifier.messages_for(phone_for("Ana")) if "decided: Tokyo" in b]
        assert len(decided) == 1

    @pytest.mark.asyncio
    async def test_execute_entry_action_reports_duplicates(self, engine, store, clock):
        trip = await make_trip(store, TripStage.DATES_SET, members=["Ana", "Ben"])
        event = StageChanged(trip_id=trip.id, from_stage="dates_set", to_stage="dates_set")

        assert await engine.orchestrator.execute_entry_action(event) is True
        assert await engine.orchestrator.execute_entry_action(event) is False

    def test_subscribes_once_per_bus(self, store, notifier, clock):
        first = build_orchestrator(store, notifier, clock)
        ConversationOrchestrator(
            store, first.state_machine, RuleClassifier(), TemplateResponder(), notifier, bus=first.bus,
        )
        assert first.bus.subscriber_count(STAGE_CHANGED) == 1
        assert first.bus.is_subscribed(STAGE_CHANGED, SUBSCRIBER_NAME)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_single_handoff_is_followed(self, store, notifier, clock):
        handlers = {
            "coordinator": fake_handler(HandlerResult.handoff_to("voting")),
            "voting": fake_handler(HandlerResult.ok(Output.individual("already_member", name="Ana"))),
        }
        orchestrator = build_orchestrator(store, notifier, clock, handlers=handlers)
        trip = await make_trip(store, TripStage.PLANNING, members=["Ana", "Ben"])

        result = await orchestrator.process(trip.id, make_message(phone_for("Ana"), "what's the plan?"))

        assert result.success
        assert result.handler == "voting"
        assert notifier.messages_for(phone_for("Ana")) == ["You're already in, Ana! 👍"]

    @pytest.mark.asyncio
    async def test_handoff_back_to_visited_handler_falls_back(self, store, notifier, clock):
        handlers = {
            "coordinator": fake_handler(HandlerResult.handoff_to("voting")),
            "voting": fake_handler(HandlerResult.handoff_to("coordinator")),
        }
        orchestrator = build_orchestrator(store, notifier, clock, handlers=handlers)
        trip = await make_trip(store, TripStage.PLANNING, members=["Ana", "Ben"])

        result = await orchestrator.process(trip.id, make_message(phone_for("Ana"), "what's the plan?"))

        assert result.success is False
        assert "HandoffError" in store.errors[0]["error_type"]
        assert notifier.messages_for(phone_for("Ana")) == [FALLBACK_TEXT]

    @pytest.mark.asyncio
    async def test_second_handoff_is_refused(self, store, notifier, clock):
        handlers = {
            "coordinator": fake_handler(HandlerResult.handoff_to("voting")),
            "voting": fake_handler(HandlerResult.handoff_to("parser")),
            "parser": fake_handler(HandlerResult.ok()),
        }
        orchestrator = build_orchestrator(store, notifier, clock, handlers=handlers)
        trip = await make_trip(store, TripStage.PLANNING, members=["Ana", "Ben"])

        result = await orchestrator.process(trip.id, make_message(phone_for("Ana"), "what's the plan?"))

        assert result.success is False
        handlers["parser"].handle.assert_not_called()

    @pytest.mark.asyncio
    async def test_skip_routes_to_conversation(self, store, notifier, clock):
        handlers = {
            "coordinator": fake_handler(HandlerResult.skipped()),
            "conversation": fake_handler(HandlerResult.ok(Output.individual("conversation"))),
        }
        orchestrator = build_orchestrator(store, notifier, clock, handlers=handlers)
        trip = await make_trip(store, TripStage.PLANNING, members=["Ana", "Ben"])

        result = await orchestrator.process(trip.id, make_message(phone_for("Ana"), "lol"))

        assert result.handler == "conversation"
        assert len(notifier.messages_for(phone_for("Ana"))) == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_handler_exception_sends_fallback_and_logs_error(self, engine, store, notifier):
        trip = await make_trip(store, TripStage.PLANNING, members=["Ana", "Ben"])
        engine.orchestrator.handlers["voting"].handle = AsyncMock(side_effect=RuntimeError("boom"))

        result = await engine.orchestrator.process(trip.id, make_message(phone_for("Ana"), "Tokyo"))

        assert result.success is False
        assert result.error == "boom"
        assert notifier.messages_for(phone_for("Ana")) == [FALLBACK_TEXT]
        assert store.errors[0]["trip_id"] == trip.id
        assert store.errors[0]["context"]["body"] == "Tokyo"

    @pytest.mark.asyncio
    async def test_missing_trip_sends_fallback(self, engine, store, notifier):
        result = await engine.orchestrator.process(999, make_message(phone_for("Ana"), "hello"))

        assert result.success is False
        assert notifier.messages_for(phone_for("Ana")) == [FALLBACK_TEXT]
        assert store.errors[0]["error_type"] == "TripNotFoundError"

    @pytest.mark.asyncio
    async def test_responder_failure_on_fallback_still_replies(self, engine, store, notifier):
        engine.orchestrator.responder.format = AsyncMock(side_effect=RuntimeError("templates gone"))
        trip = await make_trip(store, TripStage.PLANNING, members=["Ana", "Ben"])

        await engine.orchestrator.process(trip.id, make_message(phone_for("Ana"), "@bot status"))

        assert notifier.messages_for(phone_for("Ana")) == [FALLBACK_TEXT]


class TestIntentResolution:
    @pytest.mark.asyncio
    async def test_fast_path_skips_classifier(self, store, notifier, clock):
        classifier = MagicMock(wraps=RuleClassifier())
        classifier.classify_intent = AsyncMock()
        orchestrator = build_orchestrator(store, notifier, clock, classifier=classifier)
        trip = await make_trip(store, TripStage.VOTING_DESTINATION, members=["Ana", "Ben"])

        intent = await orchestrator.resolve_intent(trip, make_message(phone_for("Ana"), "2"))

        assert intent.label == "vote"
        assert intent.source == "fast_path"
        classifier.classify_intent.assert_not_called()

    @pytest.mark.asyncio
    async def test_classifier_error_falls_back_to_rules(self, store, notifier, clock):
        classifier = MagicMock(wraps=RuleClassifier())
        classifier.classify_intent = AsyncMock(side_effect=ClassifierError("provider down"))
        orchestrator = build_orchestrator(store, notifier, clock, classifier=classifier)
        trip = await make_trip(store, TripStage.PLANNING, members=["Ana", "Ben"])

        intent = await orchestrator.resolve_intent(trip, make_message(phone_for("Ana"), "Tokyo or Bali"))

        assert intent.source == "fallback"
        assert intent.label == "destination_suggestion"
        assert intent.handler == "voting"

    @pytest.mark.asyncio
    async def test_slow_classifier_times_out(self, store, notifier, clock):
        async def slow(context, text):
            await asyncio.sleep(1)
            return Classification(label="question")

        classifier = MagicMock(wraps=RuleClassifier())
        classifier.classify_intent = slow
        orchestrator = build_orchestrator(store, notifier, clock, classifier=classifier, classifier_timeout=0.01)
        trip = await make_trip(store, TripStage.PLANNING, members=["Ana", "Ben"])

        intent = await orchestrator.resolve_intent(trip, make_message(phone_for("Ana"), "thanks"))

        assert intent.source == "fallback"
        assert intent.label == "conversation"

    @pytest.mark.asyncio
    async def test_classifier_label_routes_to_handler(self, store, notifier, clock):
        classifier = MagicMock(wraps=RuleClassifier())
        classifier.classify_intent = AsyncMock(return_value=Classification(label="date_availability", confidence=0.9))
        orchestrator = build_orchestrator(store, notifier, clock, classifier=classifier)
        trip = await make_trip(store, TripStage.PLANNING, members=["Ana", "Ben"])

        intent = await orchestrator.resolve_intent(trip, make_message(phone_for("Ana"), "sometime in spring"))

        assert intent.handler == "parser"
        assert intent.confidence == 0.9
