import logging

from voyaj.services import rules
from voyaj.services.consensus import VoteTally, majority_threshold
from voyaj.services.event_bus import VOTE_RECORDED
from voyaj.services.handlers.base import Handler, HandlerResult
from voyaj.services.outputs import Output
from voyaj.store.records import TripStage

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS_PER_MEMBER = 3


class VotingHandler(Handler):
    """Destination suggestions while planning, ballots while a poll is open."""

    name = "voting"

    def __init__(self, *args, max_suggestions: int = MAX_SUGGESTIONS_PER_MEMBER, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_suggestions = max_suggestions

    async def handle(self, context):
        stage = TripStage.parse(context.trip.stage)
        if stage in rules.VOTING_STAGES:
            return await self._vote(context)
        if stage in rules.PLANNING_STAGES:
            return await self._suggest(context)
        return HandlerResult.skipped()

    async def _suggest(self, context):
        trip = context.trip
        if trip.has_destination:
            return HandlerResult.skipped()
        if not context.is_member:
            return HandlerResult.ok(Output.individual("join_required"))

        member = context.member
        existing = next((s.destinations for s in context.suggestions if s.member_id == member.id), [])
        if len(existing) >= self.max_suggestions:
            return HandlerResult.ok(Output.individual(
                "suggestion_limit_reached", limit=self.max_suggestions, destinations=existing,
            ))

        found = await self.classify("extract_destinations", context.message.body, context.member_names)
        if not found:
            return HandlerResult.clarify(Output.individual("destination_unclear"))

        merged = list(existing)
        for destination in found:
            if destination.lower() not in {d.lower() for d in merged}:
                merged.append(destination)
        merged = merged[:self.max_suggestions]

        await self.store.upsert_destination_suggestion(trip.id, member.id, merged)
        logger.info(f"Trip {trip.id}: {member.name} suggested {merged}")
        await self.transitions.advance(trip.id)

        suggestions = await self.store.get_destination_suggestions(trip.id)
        members = await self.store.get_members(trip.id)
        suggested = {s.member_id for s in suggestions}
        return HandlerResult.ok(Output.group(
            "destination_suggested",
            member_name=member.name,
            destinations=merged,
            suggestion_count=len(suggestions),
            member_count=len(members),
            pending_members=[m.name for m in members if m.id not in suggested],
        ))

    async def _vote(self, context):
        trip = context.trip
        if not context.is_member:
            return HandlerResult.ok(Output.individual("join_required"))

        poll = context.poll
        if poll is None or not poll.options:
            logger.error(f"Trip {trip.id} is {trip.stage} but has no poll options")
            return HandlerResult.skipped()

        text = context.message.body
        number = rules.bare_number(text)
        if number is not None:
            index = number - 1 if 1 <= number <= len(poll.options) else None
        else:
            index = await self.classify("extract_vote_choice", text, poll.options)
        if index is None:
            return HandlerResult.clarify(Output.individual("vote_unclear", options=poll.options))

        member = context.member
        choice = poll.option_keys[index]
        display = poll.options[index]
        await self.store.create_vote(trip.id, poll.poll_type.value, member.id, choice)
        self.publish(VOTE_RECORDED, trip.id, member_id=member.id, poll_type=poll.poll_type.value, choice=choice)

        updated = await self.transitions.advance(trip.id)
        if updated is not None and updated.stage != trip.stage:
            # Poll closed; the new stage's entry action announces the result
            return HandlerResult.ok(Output.individual("vote_recorded", choice=display, votes_needed=0, poll_closed=True))

        votes = await self.store.get_votes(trip.id, poll.poll_type.value)
        members = await self.store.get_members(trip.id)
        results = VoteTally.results(votes)
        threshold = majority_threshold(len(members), self.majority_ratio)

        if VoteTally.is_tie(results) and len(votes) >= threshold:
            return HandlerResult.ok(Output.group(
                "vote_tie_detected",
                poll_type=poll.poll_type.value,
                tied_options=[poll.display_for(c) for c in VoteTally.tied_choices(results)],
                results=[{"choice": poll.display_for(r.choice), "count": r.count} for r in results],
                vote_count=len(votes),
                member_count=len(members),
            ))

        return HandlerResult.ok(Output.individual(
            "vote_recorded",
            choice=display,
            vote_count=len(votes),
            member_count=len(members),
            votes_needed=VoteTally.votes_still_needed(len(members), len(votes), self.majority_ratio),
            pending_voters=[m.name for m in VoteTally.pending_voters(members, votes)],
        ))
