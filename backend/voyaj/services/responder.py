"""
Turns structured Outputs into SMS text.

TemplateResponder covers every output type the engine emits. Unknown types
get a neutral reply rather than an error so a new output never silences the
conversation.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from voyaj.services.outputs import GROUP, INDIVIDUAL, Output
from voyaj.store.records import MemberRecord, TripRecord

logger = logging.getLogger(__name__)

FALLBACK_TEXT = "I didn't quite catch that. Can you rephrase? Or visit voyaj.app for help."


@dataclass
class ResponseContext:
    trip: Optional[TripRecord] = None
    members: List[MemberRecord] = field(default_factory=list)
    sender_phone: Optional[str] = None


@dataclass
class ResponderResult:
    text: Optional[str]
    audience: str = GROUP
    recipient: Optional[str] = None


class Responder(ABC):
    @abstractmethod
    async def format(self, output: Output, context: ResponseContext) -> ResponderResult:
        pass


def _names(names: List[str]) -> str:
    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + f" and {names[-1]}"


def _numbered(options: List[str]) -> str:
    return "\n".join(f"{i}. {option}" for i, option in enumerate(options, 1))


def _trip_started(d):
    return "New trip! 🎉 Everyone reply with your name to join."


def _member_joined(d):
    count = d.get("member_count", 0)
    return f"Welcome {d.get('name')}! 👋 {count} {'person' if count == 1 else 'people'} in so far."


def _planning_started(d):
    lines = [f"We have {d.get('member_count')} people: {_names(d.get('member_names', []))}. Time to plan! ✈️"]
    if not d.get("has_destination"):
        lines.append("Where should we go? Reply with up to 3 destinations.")
    if not d.get("has_dates"):
        lines.append("When are you free? Reply with dates like 'March 15-22' or 'flexible'.")
    return "\n".join(lines)


def _poll_started(d):
    subject = "where to go" if d.get("poll_type") == "destination" else "when to go"
    return (
        f"🗳️ Time to vote on {subject}!\n{_numbered(d.get('options', []))}\n"
        f"Reply with a number. {d.get('majority_threshold')} votes closes the poll."
    )


def _destination_locked(d):
    text = f"📍 It's decided: {d.get('destination')}!"
    if not d.get("has_dates"):
        text += " Now, when is everyone free?"
    return text


def _dates_locked(d):
    text = f"📅 Dates locked: {d.get('dates')}!"
    if not d.get("has_destination"):
        text += " Now, where should we go?"
    return text


def _flights_open(d):
    return (
        f"🎉 {d.get('destination')}, {d.get('dates')}. Time to book flights! "
        "Reply with your flight number (e.g. 'AA 123') once you've booked."
    )


def _destination_suggested(d):
    pending = d.get("pending_members") or []
    text = f"Got it, {d.get('member_name')}: {', '.join(d.get('destinations', []))}."
    if pending:
        text += f" Still waiting on {_names(pending)}."
    return text


def _date_submitted(d):
    dates = "flexible" if d.get("flexible") else d.get("dates")
    text = f"Thanks {d.get('member_name')}, noted: {dates}."
    pending = d.get("pending_members") or []
    if pending:
        text += f" Still waiting on {_names(pending)}."
    return text


def _date_conflict(d):
    lines = ["😬 No dates work for everyone yet:"]
    lines += [f"- {a['member_name']}: {a['display']}" for a in d.get("availability", [])]
    lines.append("Can anyone adjust? Reply with new dates.")
    return "\n".join(lines)


def _vote_recorded(d):
    needed = d.get("votes_needed", 0)
    text = f"Vote for {d.get('choice')} recorded ✅"
    if needed:
        text += f" {needed} more {'vote' if needed == 1 else 'votes'} needed."
    return text


def _vote_tie(d):
    return (
        f"🤝 It's a tie between {_names(d.get('tied_options', []))}! "
        "Anyone want to change their vote to break it?"
    )


def _flight_booked(d):
    flight = f" ({d.get('flight_number')})" if d.get("flight_number") else ""
    text = f"✈️ {d.get('member_name')} booked{flight}! {d.get('booked_count')}/{d.get('member_count')} booked."
    if d.get("all_booked"):
        text += " Everyone's booked! 🎉"
    return text


def _flight_status(d):
    booked = d.get("booked") or []
    pending = d.get("pending") or []
    return f"Booked: {_names(booked) or 'nobody yet'}. Waiting on: {_names(pending) or 'nobody'}."


def _trip_status(d):
    parts = [f"Stage: {d.get('stage', '').replace('_', ' ')}"]
    parts.append(f"Destination: {d.get('destination') or 'TBD'}")
    parts.append(f"Dates: {d.get('dates') or 'TBD'}")
    parts.append(f"Members: {_names(d.get('member_names', [])) or 'none yet'}")
    return "\n".join(parts)


def _nudge(d):
    names = _names(d.get("names", []))
    action = d.get("action", "reply")
    urgency = d.get("urgency")
    if urgency == "final":
        return f"⏰ Last call, {names}: please {action} so we can keep the trip moving!"
    if urgency == "urgent":
        return f"Hey {names}, we're still waiting on you to {action} 🙏"
    return f"Friendly reminder, {names}: {action} when you get a sec 😊"


TEMPLATES: Dict[str, Callable[[dict], str]] = {
    "trip_started": _trip_started,
    "member_joined": _member_joined,
    "already_member": lambda d: f"You're already in, {d.get('name')}! 👍",
    "name_request": lambda d: "Welcome! What's your name?",
    "join_required": lambda d: "Reply with your name to join this trip first!",
    "planning_started": _planning_started,
    "poll_started": _poll_started,
    "destination_locked": _destination_locked,
    "dates_locked": _dates_locked,
    "flights_open": _flights_open,
    "trip_confirmed": lambda d: f"✅ Everyone's booked for {d.get('destination')}! Trip confirmed.",
    "trip_active": lambda d: f"🌴 Have an amazing time in {d.get('destination')}!",
    "trip_completed": lambda d: f"Welcome home! Hope {d.get('destination')} was great. 💛",
    "trip_abandoned": lambda d: "This trip has gone quiet, so I'm closing it. Text me anytime to start a new one!",
    "destination_suggested": _destination_suggested,
    "suggestion_limit_reached": lambda d: f"You've already suggested {d.get('limit')} places: {', '.join(d.get('destinations', []))}.",
    "destination_unclear": lambda d: "Which destination(s) are you suggesting? e.g. 'Tokyo, Lisbon'",
    "date_availability_submitted": _date_submitted,
    "dates_unclear": lambda d: "I couldn't read those dates. Try 'March 15-22', '2025-03-15 to 2025-03-22' or 'flexible'.",
    "date_conflict": _date_conflict,
    "vote_recorded": _vote_recorded,
    "vote_unclear": lambda d: f"Which option? Reply with a number:\n{_numbered(d.get('options', []))}",
    "vote_tie_detected": _vote_tie,
    "flight_booked": _flight_booked,
    "flight_unclear": lambda d: "Reply with your flight number (e.g. 'AA 123') or just 'booked'.",
    "flight_status": _flight_status,
    "trip_status": _trip_status,
    "nudge": _nudge,
    "conversation": lambda d: "👋 I'm here to help plan the trip! Text '@bot status' to see where things stand.",
    "fallback": lambda d: FALLBACK_TEXT,
}


class TemplateResponder(Responder):
    def __init__(self, templates: Optional[Dict[str, Callable[[dict], str]]] = None):
        self.templates = dict(TEMPLATES)
        if templates:
            self.templates.update(templates)

    async def format(self, output: Output, context: ResponseContext) -> ResponderResult:
        template = self.templates.get(output.type)
        if template is None:
            logger.warning(f"No template for output type {output.type!r}")
            text = FALLBACK_TEXT
        else:
            text = template(output.data)

        if output.send_to == INDIVIDUAL:
            return ResponderResult(text=text, audience=INDIVIDUAL, recipient=output.recipient or context.sender_phone)
        return ResponderResult(text=text, audience=GROUP)
