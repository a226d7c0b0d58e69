"""Tests for the rule-based responder, request background and stable hashing."""

import pytest

from socratic_gateway.core.llm.models import RequestContext
from socratic_gateway.core.llm.stub import SOCRATIC_QUESTIONS, RuleBasedResponder
from socratic_gateway.core.utils import stable_index


def context(session_id, turns):
    return RequestContext.from_dicts(
        session_id, [{"role": "user", "content": f"turn {i}"} for i in range(turns)]
    )


def test_same_session_and_length_gives_same_question():
    responder = RuleBasedResponder()

    assert responder.respond(context("s1", 3)) == responder.respond(context("s1", 3))


def test_questions_come_from_pool():
    responder = RuleBasedResponder()

    answers = {responder.respond(context(f"session-{i}", 1)) for i in range(50)}

    assert answers <= set(SOCRATIC_QUESTIONS)
    assert len(answers) > 1


def test_custom_pool():
    assert RuleBasedResponder(["Only one?"]).respond(context("x", 1)) == "Only one?"


def test_empty_pool_is_rejected():
    with pytest.raises(ValueError):
        RuleBasedResponder([])


def test_stable_index_bounds():
    assert all(0 <= stable_index(f"k{i}", 7) < 7 for i in range(100))
    assert stable_index("abc", 5) == stable_index("abc", 5)
    with pytest.raises(ValueError):
        stable_index("abc", 0)


def test_topic_anchors_the_question():
    plain = context("s1", 2)
    with_topic = RequestContext.from_dicts(
        "s1", [{"role": "user", "content": f"turn {i}"} for i in range(2)], topic="Negligence"
    )

    answer = RuleBasedResponder().respond(with_topic)

    assert answer == f"On Negligence: {RuleBasedResponder().respond(plain)}"


def test_background_is_counted_for_budgeting():
    ctx = RequestContext.from_dicts(
        "s1", [{"role": "user", "content": "hi"}], case_context="A lent B money."
    )

    assert ctx.serialize() == "system: Case background: A lent B money.\nuser: hi"
    assert RequestContext.from_dicts("s1", [{"role": "user", "content": "hi"}]).background() is None
