"""
Deterministic text rules.

These run first as the orchestrator's fast path and again as the fallback
whenever the AI classifier fails or is not configured. They only recognise
unambiguous shapes; anything else is left to the classifier.
"""

import re
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Sequence

from voyaj.store.records import TripStage

MEMBER_JOIN = "member_join"
DESTINATION_SUGGESTION = "destination_suggestion"
DATE_AVAILABILITY = "date_availability"
VOTE = "vote"
FLIGHT = "flight"
QUESTION = "question"
CONVERSATION = "conversation"
COMMAND = "command"

INTENT_LABELS = (
    MEMBER_JOIN, DESTINATION_SUGGESTION, DATE_AVAILABILITY, VOTE,
    FLIGHT, QUESTION, CONVERSATION, COMMAND,
)

VOTING_STAGES = {TripStage.VOTING_DESTINATION, TripStage.VOTING_DATES}
PLANNING_STAGES = {TripStage.PLANNING, TripStage.DESTINATION_SET, TripStage.DATES_SET}
JOINABLE_STAGES = {TripStage.COLLECTING_MEMBERS} | PLANNING_STAGES | VOTING_STAGES

CASUAL_WORDS = {
    "ok", "okay", "k", "kk", "yes", "yeah", "yep", "yup", "no", "nope", "nah",
    "sure", "cool", "nice", "great", "thanks", "thank you", "thx", "ty", "lol",
    "haha", "hi", "hey", "hello", "yo", "sounds good", "awesome", "perfect",
    "maybe", "idk", "hmm", "wow", "same", "agreed", "done",
}

FLEXIBLE_PHRASES = ("flexible", "any time", "anytime", "whenever", "open schedule", "free whenever")
BOOKED_PHRASES = ("booked", "got my flight", "got my ticket", "bought my ticket", "bought tickets", "purchased")

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH = r"\b(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\.?"
_DAY = r"(\d{1,2})(?:st|nd|rd|th)?"
_SEP = r"\s*(?:-|–|—|to|through|thru|until|till|\.\.)\s*"

ISO_RANGE = re.compile(r"(\d{4}-\d{2}-\d{2})" + _SEP + r"(\d{4}-\d{2}-\d{2})")
MONTH_DAY_MONTH_DAY = re.compile(_MONTH + r"\s+" + _DAY + r"(?:,?\s*(\d{4}))?" + _SEP + _MONTH + r"\s+" + _DAY + r"(?:,?\s*(\d{4}))?", re.IGNORECASE)
MONTH_DAY_DAY = re.compile(_MONTH + r"\s+" + _DAY + _SEP + _DAY + r"(?:,?\s*(\d{4}))?", re.IGNORECASE)
NUMERIC_RANGE = re.compile(r"(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?" + _SEP + r"(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?")

FLIGHT_NUMBER = re.compile(r"\b([A-Z]{2})\s*(\d{2,4})\b")
BARE_NUMBER = re.compile(r"^\s*#?(\d{1,2})\s*[.!)]?\s*$")
LEADING_NUMBER = re.compile(r"^\s*#?(\d{1,2})\b")

SUGGESTION_PREFIXES = re.compile(
    r"^(?:i\s+(?:vote|suggest|want|think)\s+(?:for\s+|we\s+go\s+to\s+|to\s+go\s+to\s+)?|"
    r"(?:how|what)\s+about\s+|let'?s\s+go\s+to\s+|we\s+should\s+go\s+to\s+|maybe\s+|"
    r"my\s+vote\s+is\s+|i'?d\s+love\s+to\s+go\s+to\s+)",
    re.IGNORECASE,
)
NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z'\-.]*(?:\s+[A-Za-z][A-Za-z'\-.]*){0,2}$")


@dataclass
class ParsedDates:
    start: Optional[date] = None
    end: Optional[date] = None
    flexible: bool = False


@dataclass
class ParsedFlight:
    airline: Optional[str] = None
    flight_number: Optional[str] = None
    booked: bool = True


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip())


def is_casual(text: str) -> bool:
    cleaned = _normalize(text).lower().strip("!.?,")
    return cleaned in CASUAL_WORDS


def is_status_command(text: str) -> bool:
    return _normalize(text).lower().startswith("@bot")


def is_flexible(text: str) -> bool:
    lowered = _normalize(text).lower()
    return any(phrase in lowered for phrase in FLEXIBLE_PHRASES)


NAME_PREFIXES = re.compile(r"^(?:hi[,!]?\s+)?(?:i'?m|i am|im|this is|it'?s|my name is|name'?s|call me)\s+", re.IGNORECASE)


def clean_name(text: str) -> str:
    """Strip lead-ins like "I'm" and capitalise: "i'm sarah!" -> "Sarah"."""
    cleaned = NAME_PREFIXES.sub("", _normalize(text)).strip(" !.,")
    return " ".join(word[:1].upper() + word[1:] for word in cleaned.split())


def looks_like_name(text: str) -> bool:
    cleaned = _normalize(text).strip("!.")
    if not cleaned or len(cleaned) > 30 or is_casual(cleaned):
        return False
    return bool(NAME_PATTERN.match(cleaned))


def bare_number(text: str) -> Optional[int]:
    match = BARE_NUMBER.match(text or "")
    return int(match.group(1)) if match else None


def parse_vote_choice(text: str, options: Sequence[str]) -> Optional[int]:
    """Index into ``options`` picked by ``text``: a number, or an option name."""
    if not options:
        return None
    match = LEADING_NUMBER.match(text or "")
    if match:
        number = int(match.group(1))
        if 1 <= number <= len(options):
            return number - 1
        return None
    lowered = _normalize(text).lower()
    if not lowered:
        return None
    exact = [i for i, option in enumerate(options) if option.lower() == lowered]
    if exact:
        return exact[0]
    contained = [i for i, option in enumerate(options) if option.lower() in lowered]
    if len(contained) == 1:
        return contained[0]
    return None


def extract_destinations(text: str, exclude: Sequence[str] = ()) -> List[str]:
    """Split a suggestion like "Tokyo or bali, maybe Lisbon" into place names."""
    cleaned = _normalize(text).strip(" .!?")
    if not cleaned or is_casual(cleaned) or "?" in (text or ""):
        return []
    excluded = {e.lower() for e in exclude}

    destinations = []
    for part in re.split(r",|/|\bor\b|\band\b|&|\+", cleaned, flags=re.IGNORECASE):
        part = SUGGESTION_PREFIXES.sub("", part.strip()).strip(" .!-")
        if not part or len(part) > 40 or any(ch.isdigit() for ch in part):
            continue
        if is_casual(part) or part.lower() in excluded:
            continue
        if len(part.split()) > 4:
            continue
        name = part if any(ch.isupper() for ch in part) else part.title()
        if name.lower() not in {d.lower() for d in destinations}:
            destinations.append(name)
    return destinations


def _month(value: str) -> int:
    return MONTHS[value[:3].lower()]


def _year(raw: Optional[str], default: int) -> int:
    if not raw:
        return default
    year = int(raw)
    return year + 2000 if year < 100 else year


def _roll_forward(start: date, end: date, today: date, explicit_year: bool) -> Optional[ParsedDates]:
    if end < start:
        end = end.replace(year=end.year + 1)
    if not explicit_year and end < today:
        start = start.replace(year=start.year + 1)
        end = end.replace(year=end.year + 1)
    return ParsedDates(start=start, end=end)


def parse_date_range(text: str, today: Optional[date] = None) -> Optional[ParsedDates]:
    """
    Recognise "flexible", ISO ranges, "March 15-22", "March 28 - April 3"
    and "3/15 - 3/22". Years default to the next occurrence after ``today``.
    """
    today = today or date.today()
    if is_flexible(text):
        return ParsedDates(flexible=True)
    text = _normalize(text)

    try:
        match = ISO_RANGE.search(text)
        if match:
            start, end = date.fromisoformat(match.group(1)), date.fromisoformat(match.group(2))
            if end < start:
                return None
            return ParsedDates(start=start, end=end)

        match = MONTH_DAY_MONTH_DAY.search(text)
        if match:
            start_month, start_day, start_year, end_month, end_day, end_year = match.groups()
            explicit = bool(start_year or end_year)
            year = _year(start_year or end_year, today.year)
            start = date(year, _month(start_month), int(start_day))
            end = date(_year(end_year, year), _month(end_month), int(end_day))
            return _roll_forward(start, end, today, explicit)

        match = MONTH_DAY_DAY.search(text)
        if match:
            month, start_day, end_day, year_raw = match.groups()
            year = _year(year_raw, today.year)
            start = date(year, _month(month), int(start_day))
            end = date(year, _month(month), int(end_day))
            if end < start:
                return None
            return _roll_forward(start, end, today, bool(year_raw))

        match = NUMERIC_RANGE.search(text)
        if match:
            start_month, start_day, start_year, end_month, end_day, end_year = match.groups()
            explicit = bool(start_year or end_year)
            year = _year(start_year or end_year, today.year)
            start = date(year, int(start_month), int(start_day))
            end = date(_year(end_year, year), int(end_month), int(end_day))
            return _roll_forward(start, end, today, explicit)
    except ValueError:
        # Matched the shape but not a real calendar date, e.g. "Feb 30-31"
        return None
    return None


def looks_like_dates(text: str) -> bool:
    return parse_date_range(text) is not None


def parse_flight(text: str) -> Optional[ParsedFlight]:
    match = FLIGHT_NUMBER.search(text or "")
    if match:
        return ParsedFlight(airline=match.group(1), flight_number=f"{match.group(1)}{match.group(2)}")
    lowered = _normalize(text).lower()
    if any(phrase in lowered for phrase in BOOKED_PHRASES):
        return ParsedFlight()
    return None


def fast_path_intent(stage, text: str, is_member: bool) -> Optional[str]:
    """Cheap, unambiguous intents keyed on the current stage."""
    stage = TripStage.parse(stage)
    if stage is None:
        return None
    if is_status_command(text):
        return COMMAND
    if stage == TripStage.CREATED:
        return MEMBER_JOIN
    if stage in VOTING_STAGES and bare_number(text) is not None:
        return VOTE
    if stage == TripStage.COLLECTING_MEMBERS and not is_member and looks_like_name(text):
        return MEMBER_JOIN
    if stage == TripStage.TRACKING_FLIGHTS and FLIGHT_NUMBER.search(text or ""):
        return FLIGHT
    if stage in PLANNING_STAGES and is_member and looks_like_dates(text):
        return DATE_AVAILABILITY
    return None


def fallback_intent(stage, text: str, is_member: bool) -> str:
    """Best guess when the classifier is unavailable. Never returns None."""
    intent = fast_path_intent(stage, text, is_member)
    if intent:
        return intent
    stage = TripStage.parse(stage)
    if not is_member and stage in JOINABLE_STAGES and looks_like_name(text):
        # Non-members cannot suggest or vote, so a bare name is a join
        return MEMBER_JOIN
    if "?" in (text or ""):
        return QUESTION
    if is_casual(text):
        return CONVERSATION
    if stage in VOTING_STAGES:
        return VOTE
    if stage == TripStage.TRACKING_FLIGHTS and parse_flight(text):
        return FLIGHT
    if stage in PLANNING_STAGES:
        if is_flexible(text):
            return DATE_AVAILABILITY
        if extract_destinations(text):
            return DESTINATION_SUGGESTION
    return CONVERSATION
