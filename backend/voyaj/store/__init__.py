from voyaj.store.base import Store
from voyaj.store.memory import MemoryStore
from voyaj.store.records import (
    BOT_SENDER,
    TERMINAL_STAGES,
    DateAvailabilityRecord,
    DestinationSuggestionRecord,
    FlightRecord,
    InboundMessage,
    MemberRecord,
    MessageRecord,
    PollType,
    TripRecord,
    TripStage,
    VoteRecord,
    VoteResult,
)

__all__ = [
    "Store",
    "MemoryStore",
    "BOT_SENDER",
    "TERMINAL_STAGES",
    "DateAvailabilityRecord",
    "DestinationSuggestionRecord",
    "FlightRecord",
    "InboundMessage",
    "MemberRecord",
    "MessageRecord",
    "PollType",
    "TripRecord",
    "TripStage",
    "VoteRecord",
    "VoteResult",
]
