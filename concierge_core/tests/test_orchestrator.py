import asyncio
import json

import pytest

from concierge_core.agents.orchestrator import OrchestratorConfig, TurnOrchestrator
from concierge_core.domain.exceptions import ConversationNotFoundError, ProviderStreamError
from concierge_core.domain.models import TextBlock, ToolResultBlock, ToolUseBlock
from concierge_core.infrastructure.storage.memory_store import InMemoryConversationStore
from concierge_core.tests.fakes import ScriptedProvider, collect, text_block, tool_block, turn
from concierge_core.tools.definitions import ToolDef
from concierge_core.tools.executor import ToolRegistry

FIXED_NOW = "2024-01-01T00:00:00.000Z"


async def _fixed_date(args):
    return FIXED_NOW


def _registry(**extra_tools):
    registry = ToolRegistry({"determine_date": _fixed_date}, [ToolDef(name="determine_date", description="", params={})])
    for name, func in extra_tools.items():
        registry.register(ToolDef(name=name, description="", params={}), func)
    return registry


def _agent(provider, registry=None, **config):
    store = InMemoryConversationStore()
    agent = TurnOrchestrator(
        store=store,
        provider_client=provider,
        tool_registry=registry or _registry(),
        config=OrchestratorConfig(provider=provider.name, **config),
        system_prompt="You are a test concierge.",
    )
    return agent, store


def _send(agent, conversation_id, message):
    return asyncio.run(collect(agent.send_message(conversation_id, message)))


def test_plain_answer_is_a_single_pass():
    provider = ScriptedProvider([turn(text_block(0, "Hi", " there"))])
    agent, store = _agent(provider)
    conv = asyncio.run(store.create_conversation())

    events = _send(agent, conv.id, "hello")

    assert [e.to_dict() for e in events] == [
        {"type": "text", "text": "Hi"},
        {"type": "text", "text": " there"},
        {"type": "done"},
    ]
    msgs = asyncio.run(store.get_conversation(conv.id))
    assert [(m.role, m.content) for m in msgs] == [("user", "hello"), ("assistant", "Hi there")]
    assert len(provider.requests) == 1
    req = provider.requests[0]
    assert req.system == "You are a test concierge."
    assert req.tool_choice == "auto"
    assert [t.name for t in req.tools] == ["determine_date"]


def test_book_dinner_with_one_tool_round():
    provider = ScriptedProvider(
        [
            turn(text_block(0, "Sure", " thing"), tool_block(1, "tu_1", "determine_date"), stop_reason="tool_use"),
            turn(text_block(0, "Today is 2024-01-01")),
        ]
    )
    agent, store = _agent(provider)
    conv = asyncio.run(store.create_conversation())

    events = _send(agent, conv.id, "Book me dinner")

    assert [e.type for e in events] == ["text", "text", "tool_use_start", "tool_use_stop", "text", "done"]
    assert events[2].name == "determine_date" and events[2].id == "tu_1"
    msgs = asyncio.run(store.get_conversation(conv.id))
    assert len(msgs) == 4
    assert (msgs[0].role, msgs[0].content) == ("user", "Book me dinner")
    assert msgs[1].role == "assistant"
    assert msgs[1].content == [TextBlock(text="Sure thing"), ToolUseBlock(id="tu_1", name="determine_date", input={})]
    assert msgs[2].role == "user"
    assert msgs[2].content == [ToolResultBlock(tool_use_id="tu_1", content=json.dumps(FIXED_NOW))]
    assert (msgs[3].role, msgs[3].content) == ("assistant", "Today is 2024-01-01")

    # 第二轮请求完整重放了工具调用与结果
    second = provider.requests[1]
    assert [m.role for m in second.messages] == ["user", "assistant", "user"]


def test_tool_use_without_text_stores_only_tool_blocks():
    provider = ScriptedProvider(
        [
            turn(tool_block(0, "tu_1", "determine_date"), tool_block(1, "tu_2", "determine_date"), stop_reason="tool_use"),
            turn(text_block(0, "Done")),
        ]
    )
    agent, store = _agent(provider)
    conv = asyncio.run(store.create_conversation())
    _send(agent, conv.id, "when?")

    msgs = asyncio.run(store.get_conversation(conv.id))
    assert [b.type for b in msgs[1].content] == ["tool_use", "tool_use"]
    assert [b.tool_use_id for b in msgs[2].content] == ["tu_1", "tu_2"]


def test_failing_tool_is_reported_to_model_and_loop_continues():
    async def explode(args):
        raise RuntimeError("kitchen closed")

    provider = ScriptedProvider(
        [
            turn(tool_block(0, "tu_1", "explode"), stop_reason="tool_use"),
            turn(text_block(0, "Sorry, that failed")),
        ]
    )
    agent, store = _agent(provider, registry=_registry(explode=explode))
    conv = asyncio.run(store.create_conversation())

    events = _send(agent, conv.id, "try it")

    assert events[-1].type == "done"
    msgs = asyncio.run(store.get_conversation(conv.id))
    assert json.loads(msgs[2].content[0].content) == {"error": "kitchen closed"}
    assert msgs[3].content == "Sorry, that failed"


def test_unknown_tool_gets_error_result():
    provider = ScriptedProvider(
        [
            turn(tool_block(0, "tu_1", "book_table", '{"party": 2}'), stop_reason="tool_use"),
            turn(text_block(0, "I can't book tables")),
        ]
    )
    agent, store = _agent(provider)
    conv = asyncio.run(store.create_conversation())
    _send(agent, conv.id, "book it")

    msgs = asyncio.run(store.get_conversation(conv.id))
    assert msgs[1].content == [ToolUseBlock(id="tu_1", name="book_table", input={"party": 2})]
    assert json.loads(msgs[2].content[0].content) == {"error": "Unknown tool: book_table"}


def test_geocode_results_are_forwarded_as_side_channel_event():
    pins = [{"name": "Via Carota", "lat": 40.7336, "lng": -74.0037, "address": "51 Grove St"}]

    async def geocode(args):
        return pins

    provider = ScriptedProvider(
        [
            turn(
                tool_block(0, "tu_1", "geocode_venues", '{"venues": [{"name": "Via Carota"}]}'),
                stop_reason="tool_use",
            ),
            turn(text_block(0, "Mapped it")),
        ]
    )
    agent, store = _agent(provider, registry=_registry(geocode_venues=geocode))
    conv = asyncio.run(store.create_conversation())

    events = _send(agent, conv.id, "show me on a map")

    assert [e.type for e in events] == [
        "tool_use_start",
        "tool_input",
        "tool_use_stop",
        "geocode_results",
        "text",
        "done",
    ]
    assert events[3].to_dict() == {"type": "geocode_results", "payload": pins}


def test_geocode_error_is_not_forwarded():
    async def geocode(args):
        raise RuntimeError("MAPBOX_ACCESS_TOKEN is not set.")

    provider = ScriptedProvider(
        [
            turn(tool_block(0, "tu_1", "geocode_venues"), stop_reason="tool_use"),
            turn(text_block(0, "No map today")),
        ]
    )
    agent, store = _agent(provider, registry=_registry(geocode_venues=geocode))
    conv = asyncio.run(store.create_conversation())

    events = _send(agent, conv.id, "map")
    assert "geocode_results" not in [e.type for e in events]


def test_provider_failure_ends_with_single_error_event():
    provider = ScriptedProvider(
        [[{"type": "message_start", "message": {}}] + text_block(0, "Hel")[:2] + [ProviderStreamError("Overloaded")]]
    )
    agent, store = _agent(provider)
    conv = asyncio.run(store.create_conversation())

    events = _send(agent, conv.id, "hello")

    assert [e.to_dict() for e in events] == [
        {"type": "text", "text": "Hel"},
        {"type": "error", "message": "Overloaded"},
    ]
    msgs = asyncio.run(store.get_conversation(conv.id))
    assert [(m.role, m.content) for m in msgs] == [("user", "hello")]
    assert provider.closed == 1


def test_failure_in_later_round_keeps_earlier_rounds():
    provider = ScriptedProvider(
        [
            turn(tool_block(0, "tu_1", "determine_date"), stop_reason="tool_use"),
            [RuntimeError("socket closed")],
        ]
    )
    agent, store = _agent(provider)
    conv = asyncio.run(store.create_conversation())

    events = _send(agent, conv.id, "when?")

    assert events[-1].to_dict() == {"type": "error", "message": "socket closed"}
    assert [e.type for e in events].count("error") == 1
    assert "done" not in [e.type for e in events]
    msgs = asyncio.run(store.get_conversation(conv.id))
    assert [m.role for m in msgs] == ["user", "assistant", "user"]
    assert isinstance(msgs[2].content[0], ToolResultBlock)


def test_unknown_conversation_raises_before_any_event():
    provider = ScriptedProvider([turn(text_block(0, "never"))])
    agent, _ = _agent(provider)

    with pytest.raises(ConversationNotFoundError):
        _send(agent, "missing", "hello")
    assert provider.requests == []


def test_tool_rounds_are_capped():
    looping = turn(text_block(0, "checking"), tool_block(1, "tu_x", "determine_date"), stop_reason="tool_use")
    provider = ScriptedProvider([looping, looping, looping])
    agent, store = _agent(provider, max_tool_rounds=2)
    conv = asyncio.run(store.create_conversation())

    events = _send(agent, conv.id, "loop forever")

    assert events[-1].type == "done"
    assert [r.tool_choice for r in provider.requests] == ["auto", "auto", "none"]
    msgs = asyncio.run(store.get_conversation(conv.id))
    assert [m.role for m in msgs] == ["user", "assistant", "user", "assistant", "user", "assistant"]
    assert msgs[-1].content == "checking"


def test_tool_use_stop_without_invocations_finalizes():
    provider = ScriptedProvider([turn(text_block(0, "hmm"), stop_reason="tool_use")])
    agent, store = _agent(provider)
    conv = asyncio.run(store.create_conversation())

    events = _send(agent, conv.id, "?")

    assert [e.type for e in events] == ["text", "done"]
    msgs = asyncio.run(store.get_conversation(conv.id))
    assert [(m.role, m.content) for m in msgs] == [("user", "?"), ("assistant", "hmm")]


def test_empty_final_answer_is_not_stored():
    provider = ScriptedProvider([turn()])
    agent, store = _agent(provider)
    conv = asyncio.run(store.create_conversation())

    assert [e.type for e in _send(agent, conv.id, "hello")] == ["done"]
    assert len(asyncio.run(store.get_conversation(conv.id))) == 1


def test_abandoned_stream_persists_nothing_for_open_turn():
    provider = ScriptedProvider(
        [
            turn(text_block(0, "Partial", " answer")),
            turn(text_block(0, "Second try")),
        ]
    )
    agent, store = _agent(provider)
    conv = asyncio.run(store.create_conversation())

    async def abandon():
        stream = agent.send_message(conv.id, "hello")
        first = await stream.__anext__()
        await stream.aclose()
        return first

    first = asyncio.run(abandon())
    assert first.to_dict() == {"type": "text", "text": "Partial"}
    assert provider.closed == 1
    msgs = asyncio.run(store.get_conversation(conv.id))
    assert [(m.role, m.content) for m in msgs] == [("user", "hello")]

    # 放弃的请求不会占住会话锁
    events = _send(agent, conv.id, "again")
    assert events[-1].type == "done"


def test_same_conversation_requests_are_serialized():
    provider = ScriptedProvider([turn(text_block(0, "reply", " one")), turn(text_block(0, "reply", " two"))])
    agent, store = _agent(provider)
    conv = asyncio.run(store.create_conversation())

    async def both():
        return await asyncio.gather(
            collect(agent.send_message(conv.id, "first")),
            collect(agent.send_message(conv.id, "second")),
        )

    first_events, second_events = asyncio.run(both())
    assert first_events[-1].type == "done" and second_events[-1].type == "done"
    msgs = asyncio.run(store.get_conversation(conv.id))
    assert [m.content for m in msgs] == ["first", "reply one", "second", "reply two"]


def test_default_system_prompt_is_loaded():
    provider = ScriptedProvider([turn(text_block(0, "ok"))])
    store = InMemoryConversationStore()
    agent = TurnOrchestrator(store=store, provider_client=provider)
    conv = asyncio.run(store.create_conversation())
    _send(agent, conv.id, "hi")
    assert provider.requests[0].system.strip()
    assert provider.requests[0].tools is None


def test_truncated_stream_is_an_error_and_stores_nothing():
    provider = ScriptedProvider(
        [[{"type": "message_start", "message": {}}] + text_block(0, "Half an ans")[:2]]
    )
    agent, store = _agent(provider)
    conv = asyncio.run(store.create_conversation())

    events = _send(agent, conv.id, "hi")

    assert [e.to_dict() for e in events] == [
        {"type": "text", "text": "Half an ans"},
        {"type": "error", "message": "Stream ended without a stop reason"},
    ]
    msgs = asyncio.run(store.get_conversation(conv.id))
    assert [(m.role, m.content) for m in msgs] == [("user", "hi")]


def test_cancel_while_tool_runs_leaves_no_unanswered_tool_use():
    provider = ScriptedProvider([turn(tool_block(0, "tu_1", "slow_lookup"), stop_reason="tool_use")])
    store = InMemoryConversationStore()

    async def scenario():
        started = asyncio.Event()

        async def slow_lookup(args):
            started.set()
            await asyncio.sleep(10)
            return "too late"

        agent = TurnOrchestrator(
            store=store,
            provider_client=provider,
            tool_registry=_registry(slow_lookup=slow_lookup),
            config=OrchestratorConfig(provider=provider.name),
            system_prompt="test",
        )
        conv = await store.create_conversation()
        task = asyncio.create_task(collect(agent.send_message(conv.id, "hi")))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return await store.get_conversation(conv.id)

    msgs = asyncio.run(scenario())
    assert [(m.role, m.content) for m in msgs] == [("user", "hi")]


def test_close_after_side_channel_event_keeps_tool_round_paired():
    async def geocode(args):
        return [{"name": "Via Carota", "lat": 40.7336, "lng": -74.0037}]

    provider = ScriptedProvider(
        [
            turn(tool_block(0, "tu_1", "geocode_venues", '{"venues": [{"name": "Via Carota"}]}'), stop_reason="tool_use"),
            turn(text_block(0, "never sent")),
        ]
    )
    agent, store = _agent(provider, registry=_registry(geocode_venues=geocode))
    conv = asyncio.run(store.create_conversation())

    async def stop_at_map_pins():
        stream = agent.send_message(conv.id, "map")
        async for event in stream:
            if event.type == "geocode_results":
                break
        await stream.aclose()

    asyncio.run(stop_at_map_pins())

    msgs = asyncio.run(store.get_conversation(conv.id))
    assert [m.role for m in msgs] == ["user", "assistant", "user"]
    assert msgs[1].content == [
        ToolUseBlock(id="tu_1", name="geocode_venues", input={"venues": [{"name": "Via Carota"}]})
    ]
    assert [b.tool_use_id for b in msgs[2].content] == ["tu_1"]
    assert len(provider.requests) == 1


class SlowWriteStore(InMemoryConversationStore):
    """写入 assistant 工具调用消息时停顿，便于在两次写入之间取消。"""

    def __init__(self):
        super().__init__()
        self.writing = None

    async def push_message(self, conversation_id, role, content):
        if role == "assistant" and not isinstance(content, str):
            self.writing.set()
            await asyncio.sleep(0.05)
        return await super().push_message(conversation_id, role, content)


def test_cancel_between_paired_writes_still_stores_both():
    provider = ScriptedProvider([turn(tool_block(0, "tu_1", "determine_date"), stop_reason="tool_use")])
    store = SlowWriteStore()

    async def scenario():
        store.writing = asyncio.Event()
        agent = TurnOrchestrator(
            store=store,
            provider_client=provider,
            tool_registry=_registry(),
            config=OrchestratorConfig(provider=provider.name),
            system_prompt="test",
        )
        conv = await store.create_conversation()
        task = asyncio.create_task(collect(agent.send_message(conv.id, "when?")))
        await store.writing.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return await store.get_conversation(conv.id)

    msgs = asyncio.run(scenario())
    assert [m.role for m in msgs] == ["user", "assistant", "user"]
    assert msgs[2].content == [ToolResultBlock(tool_use_id="tu_1", content=json.dumps(FIXED_NOW))]
