"""
Free-text classification.

RuleClassifier answers from the deterministic rules. AIClassifier asks the
configured LLM and raises ClassifierError when it cannot; callers catch that
and use the rules instead, so a flaky provider never blocks a conversation.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Sequence

from voyaj.exceptions import ClassifierError
from voyaj.services import rules
from voyaj.services.ai_service import AIService, AIServiceError, parse_json_response
from voyaj.services.rules import ParsedDates

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """The light view of a trip the intent classifier gets to see."""

    stage: str
    is_member: bool = False
    member_names: List[str] = field(default_factory=list)
    destination: Optional[str] = None
    has_dates: bool = False
    suggestion_count: int = 0
    availability_count: int = 0
    vote_count: int = 0
    poll_options: List[str] = field(default_factory=list)


@dataclass
class Classification:
    label: str
    confidence: float = 1.0
    reasoning: str = ""


class Classifier(ABC):
    @abstractmethod
    async def classify_intent(self, context: StageContext, text: str) -> Classification:
        pass

    @abstractmethod
    async def extract_vote_choice(self, text: str, options: Sequence[str]) -> Optional[int]:
        """Index of the chosen option, or None."""

    @abstractmethod
    async def extract_destinations(self, text: str, exclude: Sequence[str] = ()) -> List[str]:
        pass

    @abstractmethod
    async def parse_date_range(self, text: str, today: Optional[date] = None) -> Optional[ParsedDates]:
        pass

    @abstractmethod
    async def is_name(self, text: str) -> bool:
        pass


class RuleClassifier(Classifier):
    async def classify_intent(self, context: StageContext, text: str) -> Classification:
        label = rules.fallback_intent(context.stage, text, context.is_member)
        return Classification(label=label, confidence=0.5, reasoning="rules")

    async def extract_vote_choice(self, text, options):
        return rules.parse_vote_choice(text, options)

    async def extract_destinations(self, text, exclude=()):
        return rules.extract_destinations(text, exclude)

    async def parse_date_range(self, text, today=None):
        return rules.parse_date_range(text, today)

    async def is_name(self, text):
        return rules.looks_like_name(text)


INTENT_SYSTEM_PROMPT = """You classify messages in a group chat that is planning a trip together.
Reply with JSON only: {"intent": "<label>", "confidence": <0..1>, "reasoning": "<short>"}
Labels: member_join, destination_suggestion, date_availability, vote, flight, question, conversation, command."""

INTENT_PROMPT = """Trip stage: {stage}
Sender is a member: {is_member}
Members: {members}
Destination: {destination}
Dates decided: {has_dates}
Suggestions so far: {suggestion_count}, availability replies: {availability_count}, votes: {vote_count}
Poll options: {poll_options}

Message: "{text}"
"""

VOTE_PROMPT = """Which option does this message vote for? Options:
{options}

Message: "{text}"
Reply with JSON only: {{"option": <number or null>}}"""

DESTINATIONS_PROMPT = """List the travel destinations suggested in this message, at most 3.
Ignore these names of people: {exclude}

Message: "{text}"
Reply with JSON only: {{"destinations": ["..."]}}"""

DATES_PROMPT = """Today is {today}. Extract the date range this person is available to travel.
If they say they are flexible, set flexible to true.

Message: "{text}"
Reply with JSON only: {{"start": "YYYY-MM-DD" or null, "end": "YYYY-MM-DD" or null, "flexible": true/false}}"""

NAME_PROMPT = """Is this message just someone telling a group chat their name?

Message: "{text}"
Reply with JSON only: {{"is_name": true/false}}"""


class AIClassifier(Classifier):
    """LLM-backed classifier. Every method raises ClassifierError on failure."""

    async def _ask(self, prompt: str, system_prompt: Optional[str] = None) -> dict:
        try:
            response = await AIService.complete(prompt, system_prompt=system_prompt)
            data = parse_json_response(response)
        except AIServiceError as e:
            raise ClassifierError(str(e)) from e
        except ValueError as e:
            raise ClassifierError(f"Unparseable classifier reply: {e}") from e
        if not isinstance(data, dict):
            raise ClassifierError(f"Expected a JSON object, got {type(data).__name__}")
        return data

    async def classify_intent(self, context: StageContext, text: str) -> Classification:
        prompt = INTENT_PROMPT.format(
            stage=context.stage,
            is_member=context.is_member,
            members=", ".join(context.member_names) or "none yet",
            destination=context.destination or "not decided",
            has_dates=context.has_dates,
            suggestion_count=context.suggestion_count,
            availability_count=context.availability_count,
            vote_count=context.vote_count,
            poll_options=", ".join(context.poll_options) or "none",
            text=text,
        )
        data = await self._ask(prompt, INTENT_SYSTEM_PROMPT)
        label = data.get("intent")
        if label not in rules.INTENT_LABELS:
            raise ClassifierError(f"Unknown intent label {label!r}")
        return Classification(
            label=label,
            confidence=float(data.get("confidence") or 0.0),
            reasoning=str(data.get("reasoning") or ""),
        )

    async def extract_vote_choice(self, text, options):
        numbered = "\n".join(f"{i}. {option}" for i, option in enumerate(options, 1))
        data = await self._ask(VOTE_PROMPT.format(options=numbered, text=text))
        choice = data.get("option")
        if choice is None:
            return None
        try:
            index = int(choice) - 1
        except (TypeError, ValueError) as e:
            raise ClassifierError(f"Bad vote option {choice!r}") from e
        return index if 0 <= index < len(options) else None

    async def extract_destinations(self, text, exclude=()):
        data = await self._ask(DESTINATIONS_PROMPT.format(exclude=", ".join(exclude) or "none", text=text))
        destinations = data.get("destinations") or []
        if not isinstance(destinations, list):
            raise ClassifierError("destinations is not a list")
        excluded = {e.lower() for e in exclude}
        return [str(d).strip() for d in destinations if str(d).strip() and str(d).strip().lower() not in excluded]

    async def parse_date_range(self, text, today=None):
        today = today or date.today()
        data = await self._ask(DATES_PROMPT.format(today=today.isoformat(), text=text))
        if data.get("flexible"):
            return ParsedDates(flexible=True)
        if not data.get("start") or not data.get("end"):
            return None
        try:
            start = date.fromisoformat(data["start"])
            end = date.fromisoformat(data["end"])
        except (TypeError, ValueError) as e:
            raise ClassifierError(f"Bad dates in classifier reply: {data}") from e
        if end < start:
            return None
        return ParsedDates(start=start, end=end)

    async def is_name(self, text):
        data = await self._ask(NAME_PROMPT.format(text=text))
        return bool(data.get("is_name"))


def build_classifier() -> Classifier:
    if AIService.is_configured():
        logger.info(f"Using AI classifier ({AIService.get_provider().value})")
        return AIClassifier()
    logger.info("No AI provider configured; classifying with rules only")
    return RuleClassifier()
