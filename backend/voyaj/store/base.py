from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Dict, List, Optional

from voyaj.services.consensus import VoteTally
from voyaj.store.records import (
    DateAvailabilityRecord,
    DestinationSuggestionRecord,
    FlightRecord,
    MemberRecord,
    MessageRecord,
    TripRecord,
    VoteRecord,
    VoteResult,
)


class Store(ABC):
    """Async persistence boundary. No multi-statement transactions are assumed."""

    @abstractmethod
    async def create_trip(self, group_chat_id: Optional[str] = None,
                          invite_code: Optional[str] = None) -> TripRecord:
        pass

    @abstractmethod
    async def get_trip(self, trip_id: int) -> Optional[TripRecord]:
        pass

    @abstractmethod
    async def get_trip_by_group_chat_id(self, group_chat_id: str) -> Optional[TripRecord]:
        pass

    @abstractmethod
    async def get_open_trip_for_sender(self, phone_number: str) -> Optional[TripRecord]:
        """The open trip this phone most recently texted, member or not."""
        pass

    @abstractmethod
    async def update_trip(self, trip_id: int, **fields: Any) -> TripRecord:
        """Write all fields in one statement and return the fresh trip.

        Raises TripNotFoundError for a missing trip and UnknownStageError when
        ``stage`` is not a declared TripStage.
        """
        pass

    @abstractmethod
    async def get_active_trips(self) -> List[TripRecord]:
        """Trips that are neither completed nor abandoned."""
        pass

    @abstractmethod
    async def delete_trip(self, trip_id: int) -> None:
        pass

    @abstractmethod
    async def create_member(self, trip_id: int, phone_number: str, name: str) -> MemberRecord:
        """Idempotent: an existing phone is moved to ``trip_id`` and renamed."""
        pass

    @abstractmethod
    async def get_member(self, member_id: int) -> Optional[MemberRecord]:
        pass

    @abstractmethod
    async def get_member_by_phone(self, phone_number: str) -> Optional[MemberRecord]:
        pass

    @abstractmethod
    async def get_members(self, trip_id: int) -> List[MemberRecord]:
        pass

    @abstractmethod
    async def create_vote(self, trip_id: int, poll_type: str, member_id: int, choice: str) -> VoteRecord:
        """Upsert on (trip, poll_type, member): re-voting overwrites the choice."""
        pass

    @abstractmethod
    async def get_votes(self, trip_id: int, poll_type: str) -> List[VoteRecord]:
        pass

    async def get_vote_results(self, trip_id: int, poll_type: str) -> List[VoteResult]:
        return VoteTally.results(await self.get_votes(trip_id, poll_type))

    @abstractmethod
    async def upsert_destination_suggestion(self, trip_id: int, member_id: int,
                                            destinations: List[str]) -> DestinationSuggestionRecord:
        pass

    @abstractmethod
    async def get_destination_suggestions(self, trip_id: int) -> List[DestinationSuggestionRecord]:
        """Ordered by submission time."""
        pass

    @abstractmethod
    async def upsert_date_availability(self, trip_id: int, member_id: int,
                                       start_date: Optional[date], end_date: Optional[date],
                                       is_flexible: bool = False) -> DateAvailabilityRecord:
        pass

    @abstractmethod
    async def get_date_availability(self, trip_id: int) -> List[DateAvailabilityRecord]:
        """Ordered by submission time."""
        pass

    @abstractmethod
    async def create_flight(self, trip_id: int, member_id: int, airline: Optional[str] = None,
                            flight_number: Optional[str] = None, booked: bool = True) -> FlightRecord:
        pass

    @abstractmethod
    async def get_flights(self, trip_id: int) -> List[FlightRecord]:
        pass

    @abstractmethod
    async def create_message(self, trip_id: int, from_phone: str, body: str,
                             group_chat_id: Optional[str] = None) -> MessageRecord:
        pass

    @abstractmethod
    async def get_recent_messages(self, trip_id: int, limit: int = 10) -> List[MessageRecord]:
        """Newest first."""
        pass

    @abstractmethod
    async def log_error(self, trip_id: Optional[int], error_type: str, message: str,
                        context: Optional[Dict[str, Any]] = None) -> None:
        pass
