# SQLAlchemy models
from voyaj.models.trip import Trip
from voyaj.models.member import Member
from voyaj.models.vote import Vote
from voyaj.models.suggestion import DestinationSuggestion, DateAvailability
from voyaj.models.flight import Flight
from voyaj.models.message import Message, ErrorLog

__all__ = [
    "Trip",
    "Member",
    "Vote",
    "DestinationSuggestion",
    "DateAvailability",
    "Flight",
    "Message",
    "ErrorLog",
]
