"""
Wires the coordination components together.

The FastAPI lifespan builds one Engine over a SqlStore; tests build one
over a MemoryStore with an InMemoryNotifier.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from voyaj.config import Settings, get_settings
from voyaj.services.classifier import Classifier, build_classifier
from voyaj.services.consensus import DateOverlapResolver
from voyaj.services.event_bus import EventBus
from voyaj.services.handlers import build_handlers
from voyaj.services.notification import Notifier
from voyaj.services.nudges import NudgeScheduler, default_rules
from voyaj.services.orchestrator import ConversationOrchestrator
from voyaj.services.responder import Responder, TemplateResponder
from voyaj.services.sequencer import PerTripSequencer
from voyaj.services.state_machine import TransitionPolicy, TripStateMachine
from voyaj.store.base import Store

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    store: Store
    bus: EventBus
    state_machine: TripStateMachine
    orchestrator: ConversationOrchestrator
    sequencer: PerTripSequencer
    nudger: NudgeScheduler
    notifier: Notifier

    async def shutdown(self):
        await self.sequencer.shutdown()
        await self.bus.drain()


def build_engine(
    store: Store,
    notifier: Notifier,
    settings: Optional[Settings] = None,
    classifier: Optional[Classifier] = None,
    responder: Optional[Responder] = None,
    clock=None,
) -> Engine:
    settings = settings or get_settings()
    bus = EventBus()
    date_resolver = DateOverlapResolver()
    state_machine = TripStateMachine(
        store,
        bus,
        policy=TransitionPolicy.from_settings(settings),
        date_resolver=date_resolver,
        clock=clock,
    )
    classifier = classifier or build_classifier()
    responder = responder or TemplateResponder()
    handlers = build_handlers(
        store, state_machine, classifier, bus=bus, date_resolver=date_resolver, settings=settings,
    )
    orchestrator = ConversationOrchestrator(
        store,
        state_machine,
        classifier,
        responder,
        notifier,
        bus=bus,
        handlers=handlers,
        classifier_timeout=settings.classifier_timeout_seconds,
        dedup_seconds=settings.stage_change_dedup_seconds,
    )
    sequencer = PerTripSequencer(orchestrator.process)
    nudger = NudgeScheduler(
        store, state_machine, responder, notifier, rules=default_rules(settings.testing_mode),
    )
    logger.info(f"Engine ready ({type(store).__name__}, {type(classifier).__name__}, {type(notifier).__name__})")
    return Engine(
        store=store,
        bus=bus,
        state_machine=state_machine,
        orchestrator=orchestrator,
        sequencer=sequencer,
        nudger=nudger,
        notifier=notifier,
    )
