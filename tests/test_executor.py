import os

import pytest
from engine_doubles import ScriptedEngine, assistant

from agent_sidecar.abort import CancellationToken
from agent_sidecar.engines import API_KEY_ENV
from agent_sidecar.errors import ConfigError, EngineError
from agent_sidecar.executor import run_agent_request


def _config(**overrides):
    base = {"prompt": "plan it", "agentName": "planner", "cwd": "/work"}
    base.update(overrides)
    return base


@pytest.mark.anyio
async def test_forwards_messages_in_order_between_lifecycle_events(worker_config):
    script = {"plan it": [assistant("one"), assistant("two"), {"type": "result"}]}
    engine = ScriptedEngine(script)
    seen = []

    completed = await run_agent_request(
        _config(), seen.append, engine=engine, worker_config=worker_config
    )

    assert completed is True
    assert [m["type"] for m in seen] == ["system", "system", "assistant", "assistant", "result"]
    assert seen[0]["subtype"] == "init_start"
    assert seen[1]["subtype"] == "sdk_ready"
    assert isinstance(seen[0]["timestamp"], int)
    assert [m["message"]["content"][0]["text"] for m in seen[2:4]] == ["one", "two"]


@pytest.mark.anyio
async def test_invalid_config_fails_before_engine_call(worker_config):
    engine = ScriptedEngine()
    seen = []

    with pytest.raises(ConfigError):
        await run_agent_request(
            {"prompt": "x", "cwd": "/w"}, seen.append, engine=engine, worker_config=worker_config
        )

    assert engine.calls == []
    assert seen == []


@pytest.mark.anyio
async def test_engine_errors_propagate_unconverted(worker_config):
    engine = ScriptedEngine({"plan it": [assistant("partial")]}, fail_with=EngineError("exploded"))
    seen = []

    with pytest.raises(EngineError, match="exploded"):
        await run_agent_request(_config(), seen.append, engine=engine, worker_config=worker_config)

    assert seen[-1]["type"] == "assistant"


@pytest.mark.anyio
async def test_abort_stops_forwarding(worker_config):
    script = {"plan it": [assistant("first"), assistant("second"), {"type": "result"}]}
    engine = ScriptedEngine(script)
    external = CancellationToken()
    seen = []

    def on_message(message):
        seen.append(message)
        if message["type"] == "assistant":
            external.cancel()

    completed = await run_agent_request(
        _config(), on_message, external, engine=engine, worker_config=worker_config
    )

    assert completed is False
    assert [m["type"] for m in seen] == ["system", "system", "assistant"]
    assert engine.active == 0


@pytest.mark.anyio
async def test_already_fired_signal_forwards_nothing_from_engine(worker_config):
    engine = ScriptedEngine({"plan it": [assistant("never")]})
    external = CancellationToken()
    external.cancel()
    seen = []

    completed = await run_agent_request(
        _config(), seen.append, external, engine=engine, worker_config=worker_config
    )

    assert completed is False
    assert all(m["type"] == "system" for m in seen)


@pytest.mark.anyio
async def test_credential_is_scoped_to_the_call(worker_config, monkeypatch):
    monkeypatch.delenv(API_KEY_ENV, raising=False)
    engine = ScriptedEngine()

    await run_agent_request(
        _config(apiKey="sk-secret", model="opus", maxThinkingTokens=1024),
        lambda m: None,
        engine=engine,
        worker_config=worker_config,
    )

    options = engine.calls[0]
    assert options.env[API_KEY_ENV] == "sk-secret"
    assert options.env["MAX_THINKING_TOKENS"] == "1024"
    assert API_KEY_ENV not in os.environ
    assert options.agent == "planner"
    assert options.model == "opus"
    assert options.cwd == "/work"
    assert options.max_turns == worker_config.default_max_turns
    assert options.permission_mode == "bypassPermissions"
    assert options.setting_sources == ["project"]


@pytest.mark.anyio
async def test_engine_stderr_is_relayed(worker_config):
    class StderrEngine(ScriptedEngine):
        async def query(self, prompt, options, token):
            options.stderr("warming up\n")
            async for message in super().query(prompt, options, token):
                yield message

    seen = []
    await run_agent_request(_config(), seen.append, engine=StderrEngine(), worker_config=worker_config)

    relayed = [m for m in seen if m.get("subtype") == "sdk_stderr"]
    assert len(relayed) == 1
    assert relayed[0]["data"] == "warming up"
