"""
Top-level message processing.

``process`` is called once per dequeued message (see PerTripSequencer). It
resolves the intent, builds the handler's context, dispatches, follows at
most one handoff, and delivers whatever the handler produced. It is the only
place exceptions stop: every message ends in a side effect or a fallback
reply, plus a log entry.

The orchestrator also runs stage entry actions. It subscribes to the bus once
at construction and implements ActionExecutor for the stage machine's
direct re-announcements; both paths share one TTL dedup cache.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from voyaj.exceptions import HandoffError, TripNotFoundError
from voyaj.services import rules
from voyaj.services.classifier import Classifier, StageContext
from voyaj.services.context_builder import ContextBuilder, Intent
from voyaj.services.event_bus import STAGE_CHANGED, EventBus, StageChanged, TTLCache
from voyaj.services.handlers import Handler, build_handlers
from voyaj.services.notification import Notifier
from voyaj.services.outputs import GROUP, Output
from voyaj.services.responder import FALLBACK_TEXT, Responder, ResponderResult, ResponseContext
from voyaj.services.state_machine import ActionExecutor, TripStateMachine, poll_type_for_stage
from voyaj.store.base import Store
from voyaj.store.records import BOT_SENDER, InboundMessage, TripRecord

logger = logging.getLogger(__name__)

SUBSCRIBER_NAME = "orchestrator.entry_actions"

# Intent label -> handler name
INTENT_HANDLERS: Dict[str, str] = {
    rules.MEMBER_JOIN: "coordinator",
    rules.DESTINATION_SUGGESTION: "voting",
    rules.DATE_AVAILABILITY: "parser",
    rules.VOTE: "voting",
    rules.FLIGHT: "parser",
    rules.QUESTION: "coordinator",
    rules.CONVERSATION: "coordinator",
    rules.COMMAND: "coordinator",
}
CONVERSATION_HANDLER = "conversation"


@dataclass
class ProcessResult:
    success: bool
    handler: Optional[str] = None
    output: Optional[Output] = None
    error: Optional[str] = None


class ConversationOrchestrator(ActionExecutor):
    def __init__(
        self,
        store: Store,
        state_machine: TripStateMachine,
        classifier: Classifier,
        responder: Responder,
        notifier: Notifier,
        bus: Optional[EventBus] = None,
        handlers: Optional[Dict[str, Handler]] = None,
        context_builder: Optional[ContextBuilder] = None,
        classifier_timeout: float = 15.0,
        dedup_seconds: float = 5.0,
    ):
        self.store = store
        self.state_machine = state_machine
        self.classifier = classifier
        self.responder = responder
        self.notifier = notifier
        self.bus = bus or state_machine.bus
        self.classifier_timeout = classifier_timeout
        self.context_builder = context_builder or ContextBuilder(
            store,
            date_resolver=state_machine.date_resolver,
            majority_ratio=state_machine.policy.majority_ratio,
        )
        self.handlers = handlers or build_handlers(
            store, state_machine, classifier, bus=self.bus,
            date_resolver=state_machine.date_resolver,
        )
        self._recent_transitions = TTLCache(ttl_seconds=dedup_seconds)

        state_machine.bind_executor(self)
        if not self.bus.subscribe(STAGE_CHANGED, self._on_stage_changed, name=SUBSCRIBER_NAME):
            logger.warning("Entry-action subscriber was already registered on this bus")

    # Message processing

    async def process(self, trip_id: int, message: InboundMessage) -> ProcessResult:
        try:
            trip = await self.store.get_trip(trip_id)
            if trip is None:
                raise TripNotFoundError(trip_id)
            await self.store.create_message(trip_id, message.from_phone, message.body, message.group_chat_id)

            intent = await self.resolve_intent(trip, message)
            logger.info(f"Trip {trip_id}: {message.from_phone} -> {intent.label} ({intent.source}) -> {intent.handler}")
            return await self._dispatch(trip_id, message, intent)
        except Exception as e:
            logger.exception(f"Failed to process message for trip {trip_id} from {message.from_phone}: {e}")
            await self._record_failure(trip_id, message, e)
            await self._send_fallback(message)
            return ProcessResult(success=False, error=str(e))

    async def resolve_intent(self, trip: TripRecord, message: InboundMessage) -> Intent:
        member = await self.store.get_member_by_phone(message.from_phone)
        is_member = member is not None and member.trip_id == trip.id

        label = rules.fast_path_intent(trip.stage, message.body, is_member)
        if label:
            return Intent(label=label, handler=INTENT_HANDLERS[label], source="fast_path")

        try:
            context = await self._stage_context(trip, is_member)
            classification = await asyncio.wait_for(
                self.classifier.classify_intent(context, message.body),
                timeout=self.classifier_timeout,
            )
            handler = INTENT_HANDLERS.get(classification.label, "coordinator")
            return Intent(classification.label, handler, source="classifier", confidence=classification.confidence)
        except Exception as e:
            logger.warning(f"Intent classification failed for trip {trip.id} ({e!r}); using rules")

        label = rules.fallback_intent(trip.stage, message.body, is_member)
        return Intent(label=label, handler=INTENT_HANDLERS.get(label, "coordinator"), source="fallback")

    async def _stage_context(self, trip: TripRecord, is_member: bool) -> StageContext:
        members = await self.store.get_members(trip.id)
        poll_type = poll_type_for_stage(trip.stage)
        poll_options: List[str] = []
        vote_count = 0
        if poll_type is not None:
            poll = await self.context_builder.build_poll(trip, members)
            poll_options = poll.options if poll else []
            vote_count = len(await self.store.get_votes(trip.id, poll_type.value))
        return StageContext(
            stage=trip.stage,
            is_member=is_member,
            member_names=[m.name for m in members],
            destination=trip.destination,
            has_dates=trip.has_dates,
            suggestion_count=len(await self.store.get_destination_suggestions(trip.id)),
            availability_count=len(await self.store.get_date_availability(trip.id)),
            vote_count=vote_count,
            poll_options=poll_options,
        )

    async def _dispatch(self, trip_id: int, message: InboundMessage, intent: Intent) -> ProcessResult:
        handler_name = intent.handler
        visited = [handler_name]
        context = await self.context_builder.build(trip_id, message, intent, handler_name)
        result = await self._handler(handler_name).handle(context)

        if result.handoff:
            target = result.handoff
            if target in visited:
                raise HandoffError(f"{handler_name} handed off to {target}, which already ran")
            logger.info(f"Trip {trip_id}: handoff {handler_name} -> {target}")
            handler_name = target
            visited.append(target)
            context = await self.context_builder.build(trip_id, message, intent, handler_name)
            result = await self._handler(handler_name).handle(context)
            if result.handoff:
                raise HandoffError(f"{handler_name} tried a second handoff to {result.handoff}")

        if result.skip:
            handler_name = CONVERSATION_HANDLER
            context = await self.context_builder.build(trip_id, message, intent, handler_name)
            result = await self._handler(handler_name).handle(context)

        if result.output is not None:
            await self.deliver(result.output, context.trip, context.members, message.from_phone)
        return ProcessResult(success=result.success, handler=handler_name, output=result.output)

    def _handler(self, name: str) -> Handler:
        handler = self.handlers.get(name)
        if handler is None:
            raise HandoffError(f"No handler named {name!r}")
        return handler

    # Delivery

    async def deliver(self, output: Output, trip: TripRecord, members=None, sender_phone: Optional[str] = None):
        members = members if members is not None else await self.store.get_members(trip.id)
        rendered = await self.responder.format(
            output, ResponseContext(trip=trip, members=members, sender_phone=sender_phone),
        )
        if not rendered.text:
            return
        recipients = await self._recipients(rendered, trip, members)
        if not recipients:
            logger.warning(f"Trip {trip.id}: nobody to send {output.type} to")
            return
        await self.store.create_message(trip.id, BOT_SENDER, rendered.text, trip.group_chat_id)
        for recipient in recipients:
            await self.notifier.send(recipient, rendered.text)

    async def _recipients(self, rendered: ResponderResult, trip: TripRecord, members) -> List[str]:
        if rendered.audience != GROUP:
            return [rendered.recipient] if rendered.recipient else []
        phones = [m.phone_number for m in members]
        if phones:
            return phones
        # No members yet: reply to whoever has been texting this trip
        recent = await self.store.get_recent_messages(trip.id, limit=20)
        seen = []
        for message in recent:
            if message.from_phone != BOT_SENDER and message.from_phone not in seen:
                seen.append(message.from_phone)
        return seen

    async def _send_fallback(self, message: InboundMessage):
        try:
            rendered = await self.responder.format(
                Output.individual("fallback", recipient=message.from_phone),
                ResponseContext(sender_phone=message.from_phone),
            )
            text = rendered.text or FALLBACK_TEXT
        except Exception as e:
            logger.error(f"Responder failed on fallback: {e}")
            text = FALLBACK_TEXT
        await self.notifier.send(message.from_phone, text)

    async def _record_failure(self, trip_id: int, message: InboundMessage, error: Exception):
        try:
            await self.store.log_error(
                trip_id,
                type(error).__name__,
                str(error),
                {"from": message.from_phone, "body": message.body},
            )
        except Exception as e:
            logger.error(f"Could not write error log for trip {trip_id}: {e}")

    # Entry actions

    def _claim(self, event: StageChanged) -> bool:
        """
        Reserve the right to run this transition's entry action.

        A transition marks both its own key and the stage entry, so a
        re-announcement of the same stage within the window is a duplicate.
        """
        transition_key = (event.trip_id, event.from_stage, event.to_stage)
        entry_key = (event.trip_id, event.to_stage, event.to_stage)
        if transition_key in self._recent_transitions or entry_key in self._recent_transitions:
            logger.info(f"Skipping duplicate entry action: trip {event.trip_id} {event.from_stage} -> {event.to_stage}")
            return False
        self._recent_transitions.add(transition_key)
        self._recent_transitions.add(entry_key)
        return True

    def _on_stage_changed(self, event: StageChanged):
        # Claimed synchronously so a re-evaluation later in this tick sees it
        if not self._claim(event):
            return None
        return self._run_entry_action(event)

    async def execute_entry_action(self, event: StageChanged) -> bool:
        if not self._claim(event):
            return False
        await self._run_entry_action(event)
        return True

    async def _run_entry_action(self, event: StageChanged):
        try:
            trip = await self.store.get_trip(event.trip_id)
            if trip is None:
                logger.warning(f"Trip {event.trip_id} vanished before its {event.to_stage} entry action")
                return
            counts = await self.state_machine.load_counts(trip)
            output = self.state_machine.entry_output(trip, event.to_stage, counts)
            if output is None:
                return
            logger.info(f"Trip {trip.id}: entry action for {event.to_stage} ({output.type})")
            await self.deliver(output, trip, counts.members)
        except Exception as e:
            logger.exception(f"Entry action for trip {event.trip_id} ({event.to_stage}) failed: {e}")
