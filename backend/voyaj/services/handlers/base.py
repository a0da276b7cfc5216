import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from voyaj.exceptions import ClassifierError
from voyaj.services.classifier import Classifier, RuleClassifier
from voyaj.services.context_builder import HandlerContext
from voyaj.services.event_bus import EventBus, TripEvent
from voyaj.services.outputs import Output
from voyaj.services.state_machine import TransitionRequester
from voyaj.store.base import Store

logger = logging.getLogger(__name__)


@dataclass
class HandlerResult:
    success: bool = True
    output: Optional[Output] = None
    skip: bool = False
    handoff: Optional[str] = None

    @classmethod
    def ok(cls, output: Optional[Output] = None) -> "HandlerResult":
        return cls(success=True, output=output)

    @classmethod
    def clarify(cls, output: Output) -> "HandlerResult":
        """Input we could not use; the output asks the sender to rephrase."""
        return cls(success=False, output=output)

    @classmethod
    def skipped(cls) -> "HandlerResult":
        return cls(success=True, skip=True)

    @classmethod
    def handoff_to(cls, handler_name: str) -> "HandlerResult":
        return cls(success=True, handoff=handler_name)


class Handler(ABC):
    name = "handler"

    def __init__(
        self,
        store: Store,
        transitions: TransitionRequester,
        classifier: Classifier,
        bus: Optional[EventBus] = None,
        classifier_timeout: float = 15.0,
        majority_ratio: float = 0.6,
    ):
        self.store = store
        self.transitions = transitions
        self.classifier = classifier
        self.bus = bus
        self.classifier_timeout = classifier_timeout
        self.majority_ratio = majority_ratio
        self._rules = RuleClassifier()

    @abstractmethod
    async def handle(self, context: HandlerContext) -> HandlerResult:
        pass

    async def classify(self, method: str, *args):
        """Call a classifier extractor, answering from the rules if it fails."""
        try:
            return await asyncio.wait_for(
                getattr(self.classifier, method)(*args),
                timeout=self.classifier_timeout,
            )
        except (ClassifierError, asyncio.TimeoutError) as e:
            logger.warning(f"{self.name}: classifier {method} failed ({e!r}); using rules")
            return await getattr(self._rules, method)(*args)

    def publish(self, event_type: str, trip_id: int, **data):
        if self.bus is not None:
            self.bus.publish(TripEvent(event_type=event_type, trip_id=trip_id, data=data))
