from voyaj.services.handlers.base import Handler, HandlerResult
from voyaj.services.handlers.coordinator import CoordinatorHandler
from voyaj.services.handlers.conversation import ConversationHandler
from voyaj.services.handlers.parser import ParserHandler
from voyaj.services.handlers.voting import VotingHandler

HANDLER_CLASSES = (CoordinatorHandler, VotingHandler, ParserHandler, ConversationHandler)


def build_handlers(store, transitions, classifier, bus=None, date_resolver=None, settings=None):
    """One instance of each handler, keyed by name."""
    options = {}
    if settings is not None:
        options = {
            "classifier_timeout": settings.classifier_timeout_seconds,
            "majority_ratio": settings.majority_ratio,
        }
    handlers = {}
    for handler_class in HANDLER_CLASSES:
        extra = {}
        if handler_class is VotingHandler and settings is not None:
            extra["max_suggestions"] = settings.max_suggestions_per_member
        if handler_class is ParserHandler and date_resolver is not None:
            extra["date_resolver"] = date_resolver
        handler = handler_class(store, transitions, classifier, bus=bus, **options, **extra)
        handlers[handler.name] = handler
    return handlers


__all__ = [
    "Handler",
    "HandlerResult",
    "CoordinatorHandler",
    "ConversationHandler",
    "ParserHandler",
    "VotingHandler",
    "build_handlers",
]
