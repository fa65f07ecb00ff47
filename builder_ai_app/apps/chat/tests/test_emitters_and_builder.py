# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter
#
# Stream-event emitters and the build orchestrator, wired to a recording bridge.

import pytest

import builder_ai_app.utils.retry as retry_mod
from builder_ai_app.apps.chat.builder import BuildOrchestrator, SUMMARY_EVENT
from builder_ai_app.apps.chat.emitters import BrokerRelayEmitter, SessionEmitter
from builder_ai_app.infra.llm.llm_data_model import ModelDelta
from builder_ai_app.infra.llm.tool_call_driver import ChunkedToolCallDriver, DriverConfig
from builder_ai_app.infra.service_hub.errors import ServiceError, ServiceException, ServiceKind


class _FakeConnections:
    outbound_topic = "socket.events.outbound"

    def __init__(self):
        self.direct = []
        self.published = []

    async def emit_to_session(self, session_id, event, payload=None):
        self.direct.append((session_id, event, payload))
        return True

    async def publish_event(self, event, payload=None, *, room=None, session_id=None, topic=None):
        self.published.append({"event": event, "payload": payload, "session_id": session_id, "topic": topic})
        return topic


class _ScriptedClient:
    provider = "fake"
    model = "fake"

    def __init__(self, final, failures=()):
        self.final = final
        self.failures = list(failures)
        self.calls = 0

    async def create_streaming_completion(self, messages, *, tools=None, tool_choice="none",
                                          max_tokens=4000, temperature=0.0):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        if tool_choice == "none":
            yield ModelDelta(text="Understood.")
        else:
            for d in self.final:
                yield d


def _transport_error(retryable):
    return ServiceException(ServiceError(kind=ServiceKind.llm, service_name="fake", error_type="X",
                                         message="upstream", stage="stream_open", retryable=retryable))


@pytest.fixture
def no_sleep(monkeypatch):
    async def _sleep(delay):
        return None
    monkeypatch.setattr(retry_mod.asyncio, "sleep", _sleep)


@pytest.mark.asyncio
async def test_session_emitter_targets_one_session():
    conns = _FakeConnections()
    await SessionEmitter(conns).emit("ai:chunk", {"text": "x"}, "sid-1")
    assert conns.direct == [("sid-1", "ai:chunk", {"text": "x"})]


@pytest.mark.asyncio
async def test_relay_emitter_publishes_with_socket_id():
    conns = _FakeConnections()
    emitter = BrokerRelayEmitter(conns)
    await emitter.emit("ai:done", {"toolCallName": "emitFiles"}, "sid-2")
    assert conns.published == [{
        "event": "ai:done",
        "payload": {"toolCallName": "emitFiles"},
        "session_id": "sid-2",
        "topic": "socket.events.outbound",
    }]


@pytest.mark.asyncio
async def test_build_applies_tool_call_and_publishes_summary():
    conns = _FakeConnections()
    client = _ScriptedClient(final=[
        ModelDelta(tool_name="emitFiles"),
        ModelDelta(tool_args='{"operations": [{"path": "a.txt", "action": "create", "content": "hi"}]}'),
    ])
    applied = []

    async def apply(tool_name, args, session_id):
        applied.append((tool_name, args, session_id))
        return "written"

    driver = ChunkedToolCallDriver(client, emitter=SessionEmitter(conns))
    outcome = await BuildOrchestrator(driver, conns, apply_tool_call=apply).run("make a file", "sid-3")

    assert outcome.applied == "written"
    assert applied[0][0] == "emitFiles"
    assert applied[0][1]["operations"][0]["path"] == "a.txt"
    assert outcome.result.acknowledged is True

    (summary,) = [p for p in conns.published if p["event"] == SUMMARY_EVENT]
    assert summary["session_id"] == "sid-3"
    assert summary["topic"] == "socket.events.outbound"
    assert summary["payload"]["operations"] == 1
    assert summary["payload"]["toolCallName"] == "emitFiles"

    direct_events = [e for (_, e, _) in conns.direct]
    assert direct_events[-1] == "ai:done"


@pytest.mark.asyncio
async def test_build_retries_only_retryable_transport_errors(no_sleep):
    conns = _FakeConnections()
    client = _ScriptedClient(final=[ModelDelta(tool_name="emitFiles"), ModelDelta(tool_args='{"operations": []}')],
                             failures=[_transport_error(True)])
    orchestrator = BuildOrchestrator(ChunkedToolCallDriver(client), conns, max_attempts=3, retry_delay_s=0)
    outcome = await orchestrator.run("x", "sid")
    assert outcome.args == {"operations": []}
    # failed first chunk call, then one full run (chunk + final)
    assert client.calls == 3

    client = _ScriptedClient(final=[], failures=[_transport_error(False)])
    orchestrator = BuildOrchestrator(ChunkedToolCallDriver(client), conns, max_attempts=3, retry_delay_s=0)
    with pytest.raises(ServiceException):
        await orchestrator.run("x", "sid")
    assert client.calls == 1


@pytest.mark.asyncio
async def test_build_with_misbehaving_model_still_returns_args():
    conns = _FakeConnections()
    client = _ScriptedClient(final=[ModelDelta(text="I cannot do that.")])
    cfg = DriverConfig(require_ack=False)
    outcome = await BuildOrchestrator(ChunkedToolCallDriver(client), conns).run("x", "sid", config=cfg)
    assert outcome.result.tool_call_name == "unknown"
    assert outcome.args["id"] == "root"
    assert conns.published[-1]["payload"]["argKeys"] == ["children", "description", "id", "name"]
