"""Rule-based last-resort responder used when no provider produced a result."""

from __future__ import annotations

from collections.abc import Sequence

from socratic_gateway.core.llm.models import RequestContext
from socratic_gateway.core.utils import stable_index

SOCRATIC_QUESTIONS: tuple[str, ...] = (
    "Let's return to the fundamentals: what do you think is the key legal relationship in this case?",
    "Looking at the evidence, which facts seem most important to you, and why?",
    "If you were the judge, how would you balance the interests of the parties?",
    "Which legal principles does this case bring to mind?",
    "Can you look at this problem from a different angle?",
)


class RuleBasedResponder:
    """Picks a generic Socratic question from a fixed pool.

    The choice depends only on the session id and the history length, so a
    retried request gets the same question while a new turn may not. When
    the request names a topic the question is anchored to it.
    """

    def __init__(self, pool: Sequence[str] = SOCRATIC_QUESTIONS) -> None:
        if not pool:
            raise ValueError("Rule-based responder needs at least one question")
        self.pool = tuple(pool)

    def respond(self, context: RequestContext) -> str:
        key = f"{context.session_id}:{len(context.messages)}"
        question = self.pool[stable_index(key, len(self.pool))]
        if context.topic:
            return f"On {context.topic}: {question}"
        return question
