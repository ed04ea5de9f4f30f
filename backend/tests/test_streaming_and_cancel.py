from __future__ import annotations

import asyncio

from chat_core import EngineUnavailable
from chat_core.handoff import StaffDesk
from chat_core.safety_rules import DEFLECTION_MESSAGE, EMERGENCY_MESSAGE, URGENT_MESSAGE
from fake_engine import ScriptedEngine


async def _collect(stream, on_event=None):
    events = []
    async for event in stream:
        events.append(event)
        if on_event is not None:
            on_event(event)
    return events


def _names(events):
    return [event.event for event in events]


def _assistant_turns(orchestrator, session_id):
    return [message for message in orchestrator.get_history(session_id)[1:] if message.role == "assistant"]


def test_stream_emits_start_tokens_then_done(orchestrator, engine):
    engine.replies = ["Rest well and drink fluids."]
    conversation = orchestrator.create_session()

    events = asyncio.run(_collect(orchestrator.stream_message(conversation.session_id, "cold tips?")))

    assert _names(events) == ["start", "token", "token", "token", "token", "token", "done"]
    assert events[0].data["session_id"] == conversation.session_id
    tokens = [event.data for event in events if event.event == "token"]
    assert tokens[0] == {"token": "Rest ", "content": "Rest "}
    assert tokens[-1]["content"] == "Rest well and drink fluids."

    done = events[-1].data
    assert done["message"] == "Rest well and drink fluids."
    assert done["role"] == "assistant"
    assert done["metadata"]["streamed"] is True
    assert done["metadata"]["validated"] is True
    assert [turn.content for turn in _assistant_turns(orchestrator, conversation.session_id)] == [done["message"]]
    assert len(orchestrator.generations) == 0


def test_stream_emergency_short_circuit(orchestrator, engine):
    conversation = orchestrator.create_session()

    events = asyncio.run(_collect(orchestrator.stream_message(conversation.session_id, "my friend is unconscious")))

    assert _names(events) == ["start", "token", "done"]
    assert events[-1].data["message"] == EMERGENCY_MESSAGE
    assert engine.calls == []
    assert orchestrator.handoffs.list_for_conversation(conversation.id)[0].priority == "emergency"


def test_stream_rejection_is_single_error_event(orchestrator, staff_desk):
    conversation = orchestrator.create_session()
    staff_desk.takeover(conversation.session_id, "nurse-ana")

    events = asyncio.run(_collect(orchestrator.stream_message(conversation.session_id, "hello?")))

    assert _names(events) == ["error"]
    assert events[0].data["error"] == "STAFF_OWNED"


def test_cancel_stops_events_and_skips_persistence(make_orchestrator):
    engine = ScriptedEngine(["One two three four five six."], hold_after=2)
    orchestrator = make_orchestrator(inference=engine)
    conversation = orchestrator.create_session()
    outcomes = []

    def cancel_on_second_token(event):
        if event.event == "token" and event.data["content"] == "One two ":
            outcomes.append(orchestrator.cancel_generation(conversation.session_id))

    events = asyncio.run(
        _collect(orchestrator.stream_message(conversation.session_id, "count for me"), cancel_on_second_token)
    )

    assert outcomes == [True]
    assert _names(events) == ["start", "token", "token"]
    assert engine.saw_cancel
    assert _assistant_turns(orchestrator, conversation.session_id) == []
    assert len(orchestrator.generations) == 0
    assert orchestrator.cancel_generation(conversation.session_id) is False


def test_consumer_disconnect_cancels_generation(make_orchestrator):
    engine = ScriptedEngine(["Slow and steady answer."], hold_after=1)
    orchestrator = make_orchestrator(inference=engine)
    conversation = orchestrator.create_session()

    async def run():
        stream = orchestrator.stream_message(conversation.session_id, "tell me slowly")
        first = [await stream.__anext__(), await stream.__anext__()]
        await stream.aclose()
        for _ in range(50):
            if not len(orchestrator.generations):
                break
            await asyncio.sleep(0.01)
        return first

    first = asyncio.run(run())

    assert _names(first) == ["start", "token"]
    assert engine.saw_cancel
    assert len(orchestrator.generations) == 0
    assert _assistant_turns(orchestrator, conversation.session_id) == []


def test_heartbeats_flow_while_generating(make_orchestrator):
    engine = ScriptedEngine(["Take it easy today."], fragment_delay=0.05)
    orchestrator = make_orchestrator(inference=engine, heartbeat_seconds=0.01)
    conversation = orchestrator.create_session()

    events = asyncio.run(_collect(orchestrator.stream_message(conversation.session_id, "tired")))

    names = _names(events)
    assert names[0] == "start"
    assert names[-1] == "done"
    assert "heartbeat" in names
    assert all(event.data == {} for event in events if event.event == "heartbeat")


def test_unsafe_fragments_are_not_relayed(make_orchestrator):
    engine = ScriptedEngine(["Okay, you have a migraine so rest."])
    orchestrator = make_orchestrator(inference=engine)
    conversation = orchestrator.create_session()

    events = asyncio.run(_collect(orchestrator.stream_message(conversation.session_id, "my head hurts")))

    tokens = [event.data["content"] for event in events if event.event == "token"]
    assert tokens
    assert all("migraine" not in content for content in tokens)
    assert events[-1].event == "done"
    assert events[-1].data["message"] == DEFLECTION_MESSAGE
    assert events[-1].data["metadata"]["safety_override"] is True
    assert _assistant_turns(orchestrator, conversation.session_id)[0].content == DEFLECTION_MESSAGE


def test_urgent_advisory_is_leading_token(make_orchestrator):
    engine = ScriptedEngine(["Sip water slowly."])
    orchestrator = make_orchestrator(inference=engine)
    conversation = orchestrator.create_session()

    events = asyncio.run(_collect(orchestrator.stream_message(conversation.session_id, "I feel dehydrated")))

    tokens = [event.data for event in events if event.event == "token"]
    prefix = f"{URGENT_MESSAGE}\n\n"
    assert tokens[0] == {"token": prefix, "content": prefix}
    assert tokens[-1]["content"] == f"{prefix}Sip water slowly."
    assert events[-1].data["message"] == f"{prefix}Sip water slowly."


def test_engine_failure_becomes_error_event(make_orchestrator):
    engine = ScriptedEngine(error=EngineUnavailable("engine offline"))
    orchestrator = make_orchestrator(inference=engine)
    conversation = orchestrator.create_session()

    events = asyncio.run(_collect(orchestrator.stream_message(conversation.session_id, "hello")))

    assert _names(events) == ["start", "error"]
    assert events[-1].data == {"error": "ENGINE_UNAVAILABLE", "message": "engine offline"}
    assert len(orchestrator.generations) == 0
    assert [message.role for message in orchestrator.get_history(conversation.session_id)] == ["assistant", "user"]


def _stream_interrupted_after_first_token(orchestrator, session_id, interrupt):
    def on_event(event):
        if event.event == "token":
            interrupt()

    return asyncio.run(_collect(orchestrator.stream_message(session_id, "talk me through it"), on_event))


def test_staff_takeover_cancels_active_stream(make_orchestrator):
    engine = ScriptedEngine(["Let us go step by step."], hold_after=1)
    orchestrator = make_orchestrator(inference=engine)
    desk = StaffDesk(orchestrator.store, orchestrator.handoffs, generations=orchestrator.generations)
    conversation = orchestrator.create_session()

    events = _stream_interrupted_after_first_token(
        orchestrator,
        conversation.session_id,
        lambda: desk.takeover(conversation.session_id, "nurse-ana"),
    )

    assert _names(events) == ["start", "token"]
    assert engine.saw_cancel
    assert _assistant_turns(orchestrator, conversation.session_id) == []
    assert orchestrator.get_history(conversation.session_id)[-1].role == "system"
    assert len(orchestrator.generations) == 0


def test_closing_session_cancels_active_stream(make_orchestrator):
    engine = ScriptedEngine(["Let us go step by step."], hold_after=1)
    orchestrator = make_orchestrator(inference=engine)
    conversation = orchestrator.create_session()

    events = _stream_interrupted_after_first_token(
        orchestrator,
        conversation.session_id,
        lambda: orchestrator.close_session(conversation.session_id),
    )

    assert _names(events) == ["start", "token"]
    assert engine.saw_cancel
    assert _assistant_turns(orchestrator, conversation.session_id) == []
    assert orchestrator.store.get_conversation(conversation.session_id).status == "closed"
    assert len(orchestrator.generations) == 0
