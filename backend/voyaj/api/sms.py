import logging
import secrets
import string
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from voyaj.config import get_settings
from voyaj.engine import Engine
from voyaj.schemas.sms import IncomingSMS, IncomingSMSResponse, TestSMSRequest
from voyaj.services.sequencer import PerTripSequencer
from voyaj.store.base import Store
from voyaj.store.records import TERMINAL_STAGES, InboundMessage, TripRecord

logger = logging.getLogger(__name__)

router = APIRouter()

INVITE_ALPHABET = string.ascii_uppercase + string.digits
INVITE_CODE_LENGTH = 6


def get_engine(request: Request) -> Engine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return engine


def generate_invite_code() -> str:
    return "".join(secrets.choice(INVITE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


def _is_open(trip: Optional[TripRecord]) -> bool:
    terminal = {stage.value for stage in TERMINAL_STAGES}
    return trip is not None and trip.stage not in terminal


async def find_or_create_trip(store: Store, from_phone: str, group_id: Optional[str],
                              sequencer: Optional[PerTripSequencer] = None) -> TripRecord:
    """
    Route a message to its trip.

    A group chat maps to one open trip. Without a group id the sender's
    existing membership decides, then any open trip the sender has already
    texted (still queued, or in the message log). Only a sender seen nowhere
    starts a new trip in ``created``.
    """
    if group_id:
        trip = await store.get_trip_by_group_chat_id(group_id)
        if _is_open(trip):
            return trip
        if trip is not None:
            # Free the id so the group can start over
            await store.update_trip(trip.id, group_chat_id=None)

    if not group_id:
        member = await store.get_member_by_phone(from_phone)
        if member is not None:
            trip = await store.get_trip(member.trip_id)
            if _is_open(trip):
                return trip

        pending = sequencer.pending_trip_for(from_phone) if sequencer else None
        if pending is not None:
            trip = await store.get_trip(pending)
            if _is_open(trip):
                return trip

        trip = await store.get_open_trip_for_sender(from_phone)
        if trip is not None:
            return trip

    trip = await store.create_trip(group_chat_id=group_id, invite_code=generate_invite_code())
    logger.info(f"🆕 Created trip {trip.id} (invite {trip.invite_code}) for {from_phone}")
    return trip


async def _accept(engine: Engine, from_phone: str, body: str, group_id: Optional[str]) -> IncomingSMSResponse:
    trip = await find_or_create_trip(engine.store, from_phone, group_id, engine.sequencer)
    message = InboundMessage(from_phone=from_phone, body=body or "", group_chat_id=group_id)
    queue_length = engine.sequencer.enqueue(trip.id, message)
    return IncomingSMSResponse(trip_id=trip.id, queue_length=queue_length)


@router.post("/sms/incoming", response_model=IncomingSMSResponse)
async def incoming_sms(payload: IncomingSMS, engine: Engine = Depends(get_engine)):
    """Webhook for inbound messages. Processing happens after the response."""
    return await _accept(engine, payload.from_phone, payload.body, payload.group_id)


@router.post("/test/sms", response_model=IncomingSMSResponse)
async def test_sms(payload: TestSMSRequest, engine: Engine = Depends(get_engine)):
    if get_settings().env == "prod":
        raise HTTPException(status_code=404, detail="Not found")
    return await _accept(engine, payload.from_phone, payload.body, payload.group_id)
