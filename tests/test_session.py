"""
Conversation session state machine.

Covers:
* exit sentinel (any case) closes without provider calls
* successful turns append exactly human-then-AI messages
* failed turns leave history untouched and the session keeps going
* rewritten query vs. literal question across a multi-turn conversation
* run() loop with scripted input and end of input
"""

from __future__ import annotations

import pytest
from langchain_core.documents import Document
from langchain_core.messages import AIMessage, HumanMessage

import rag_cli
from conftest import FakeChatProvider, RecordingRetriever, is_rewrite_call

MEMORY = Document(page_content="The portal gun needs fresh fluid, Morty.", metadata={"season": "1", "episode": "1", "episode_name": "Pilot"})


def make_session(llm=None, retriever=None):
    llm = llm or FakeChatProvider()
    retriever = retriever or RecordingRetriever([MEMORY])
    pipeline = rag_cli.PersonaPipeline(
        rewriter=rag_cli.QueryRewriter(llm),
        retriever=retriever,
        synthesizer=rag_cli.AnswerSynthesizer(llm),
    )
    return rag_cli.ConversationSession(pipeline), llm, retriever


@pytest.mark.parametrize("sentinel", ["exit", "EXIT", "Exit", "eXiT"])
def test_exit_sentinel_closes_without_provider_calls(sentinel):
    session, llm, retriever = make_session()

    outcome = session.handle(sentinel)

    assert outcome.state is rag_cli.SessionState.CLOSED
    assert session.state is rag_cli.SessionState.CLOSED
    assert llm.calls == []
    assert retriever.queries == []
    assert session.messages == []


def test_near_miss_sentinel_is_a_question():
    session, llm, _retriever = make_session()

    outcome = session.handle("exit please")

    assert outcome.state is rag_cli.SessionState.APPENDED_TURN
    assert len(llm.calls) == 1


def test_closed_session_rejects_input():
    session, _llm, _retriever = make_session()
    session.handle("exit")

    with pytest.raises(RuntimeError):
        session.handle("hello?")


def test_successful_turn_appends_human_then_ai():
    session, _llm, _retriever = make_session()
    assert session.state is rag_cli.SessionState.IDLE

    outcome = session.handle("Tell me about the portal gun.")

    assert outcome.state is rag_cli.SessionState.APPENDED_TURN
    assert outcome.answer == "Wubba lubba dub dub"
    assert session.state is rag_cli.SessionState.AWAITING_INPUT
    assert session.messages == [
        HumanMessage(content="Tell me about the portal gun."),
        AIMessage(content="Wubba lubba dub dub"),
    ]


def test_each_turn_adds_exactly_two_messages():
    session, _llm, _retriever = make_session()

    for n, question in enumerate(["first?", "second?", "third?"], start=1):
        session.handle(question)
        assert len(session.messages) == 2 * n

    assert [m.type for m in session.messages] == ["human", "ai"] * 3


def test_synthesis_failure_leaves_history_unchanged():
    def responder(messages):
        if is_rewrite_call(messages):
            return "portal gun maintenance"
        if messages[-1]["content"].endswith("does it break?"):
            raise ConnectionError("model crashed")
        return "Sure, Morty."

    session, llm, retriever = make_session(FakeChatProvider(responder))
    session.handle("Tell me about the portal gun.")
    before = session.messages

    outcome = session.handle("does it break?")

    assert outcome.state is rag_cli.SessionState.FAILED
    assert outcome.error.stage == "synthesize"
    assert outcome.answer is None
    assert retriever.queries[-1] == "portal gun maintenance"
    assert session.messages == before
    assert session.state is rag_cli.SessionState.AWAITING_INPUT

    recovered = session.handle("ok, anything else?")
    assert recovered.state is rag_cli.SessionState.APPENDED_TURN
    assert len(session.messages) == 4


def test_retrieval_failure_leaves_history_unchanged():
    session, _llm, _retriever = make_session(retriever=RecordingRetriever(error=RuntimeError("chroma exploded")))

    outcome = session.handle("anything?")

    assert outcome.state is rag_cli.SessionState.FAILED
    assert outcome.error.stage == "retrieve"
    assert session.messages == []


def test_follow_up_is_rewritten_for_retrieval_but_not_for_the_answer():
    def responder(messages):
        if is_rewrite_call(messages):
            return "How does Rick's portal gun work?"
        return "It's science, Morty."

    session, llm, retriever = make_session(FakeChatProvider(responder))
    session.handle("Tell me about the portal gun.")

    outcome = session.handle("what about it?")

    # First turn had no history, so only the follow-up was rewritten
    assert len(llm.rewrite_calls) == 1
    assert retriever.queries == ["Tell me about the portal gun.", "How does Rick's portal gun work?"]
    answer_prompt = llm.answer_calls[-1][-1]["content"]
    assert answer_prompt.endswith("STUPID QUESTION FROM A FLESH-BAG: what about it?")
    assert outcome.result.query != outcome.question
    assert session.messages[-2] == HumanMessage(content="what about it?")


def test_stages_receive_prior_history_only():
    session, llm, _retriever = make_session()
    session.handle("first question")

    session.handle("second question")

    rewrite_messages = llm.rewrite_calls[0]
    assert rewrite_messages[:2] == [
        {"role": "user", "content": "first question"},
        {"role": "assistant", "content": "Wubba lubba dub dub"},
    ]
    assert rewrite_messages[2] == {"role": "user", "content": "second question"}


def test_run_loop_until_sentinel():
    session, llm, _retriever = make_session()
    lines = iter(["Hey Rick", "", "   ", "EXIT", "never read"])
    outcomes = []

    session.run(lambda: next(lines), outcomes.append)

    assert [o.state for o in outcomes] == [rag_cli.SessionState.APPENDED_TURN, rag_cli.SessionState.CLOSED]
    assert len(llm.calls) == 1
    assert next(lines) == "never read"


def test_run_loop_closes_on_end_of_input():
    session, _llm, _retriever = make_session()
    lines = iter(["Hey Rick"])

    def read_line():
        try:
            return next(lines)
        except StopIteration:
            raise EOFError

    outcomes = []
    session.run(read_line, outcomes.append)

    assert session.state is rag_cli.SessionState.CLOSED
    assert outcomes[-1].state is rag_cli.SessionState.CLOSED
    assert len(session.messages) == 2
