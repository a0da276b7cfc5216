from voyaj.services.handlers.base import Handler, HandlerResult
from voyaj.services.outputs import Output


class ConversationHandler(Handler):
    """Catch-all for chatter, questions and anything another handler skipped."""

    name = "conversation"

    async def handle(self, context):
        return HandlerResult.ok(Output.individual(
            "conversation",
            text=context.message.body,
            stage=context.trip.stage,
            intent=context.intent.label,
        ))
