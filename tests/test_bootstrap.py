import asyncio
import json
import os
import signal

import pytest
from engine_doubles import ScriptedEngine, assistant, wait_until

from agent_sidecar.abort import create_abort_state
from agent_sidecar.bootstrap import (
    SHUTDOWN_SIGNALS,
    install_fatal_handler,
    install_signal_handlers,
    run_entrypoint,
    run_once,
    run_persistent,
)
from agent_sidecar.errors import EngineError

CONFIG = {"prompt": "go", "agentName": "worker", "cwd": "/work"}


@pytest.mark.anyio
async def test_run_once_writes_untagged_messages(worker_config):
    lines = []
    engine = ScriptedEngine({"go": [assistant("hi"), {"type": "result", "subtype": "success"}]})
    code = await run_once(
        json.dumps(CONFIG), worker_config, engine=engine, write=lines.append, install_signals=False
    )
    assert code == 0
    assert [line["type"] for line in lines] == ["system", "system", "assistant", "result"]
    assert all("request_id" not in line for line in lines)


@pytest.mark.anyio
async def test_run_once_rejects_unparseable_config(worker_config):
    lines = []
    code = await run_once("{nope", worker_config, engine=ScriptedEngine(), write=lines.append)
    assert code == 1
    assert lines[0]["type"] == "error"
    assert lines[0]["error"].startswith("Failed to parse config: ")


@pytest.mark.anyio
async def test_run_once_invalid_config_exits_nonzero(worker_config):
    lines = []
    code = await run_once(
        json.dumps({"prompt": "go", "cwd": "/work"}),
        worker_config,
        engine=ScriptedEngine(),
        write=lines.append,
        install_signals=False,
    )
    assert code == 1
    assert lines == [{"type": "error", "error": "Invalid config: config requires a model or an agentName"}]


@pytest.mark.anyio
async def test_run_once_engine_failure_exits_nonzero(worker_config):
    lines = []
    code = await run_once(
        json.dumps(CONFIG),
        worker_config,
        engine=ScriptedEngine(fail_with=EngineError("no credits")),
        write=lines.append,
        install_signals=False,
    )
    assert code == 1
    assert lines[-1] == {"type": "error", "error": "no credits"}


@pytest.mark.anyio
async def test_run_once_cancelled_by_signal_exits_cleanly(worker_config):
    lines = []
    state = create_abort_state()
    state.abort()
    code = await run_once(
        json.dumps(CONFIG),
        worker_config,
        engine=ScriptedEngine(fail_with=EngineError("interrupted")),
        write=lines.append,
        state=state,
        install_signals=False,
    )
    assert code == 0
    assert lines == []


@pytest.mark.anyio
async def test_run_persistent_serves_until_input_closes(worker_config):
    lines = []
    reader = asyncio.StreamReader()
    reader.feed_data(b'{"type":"ping"}\n')
    reader.feed_eof()
    code = await run_persistent(
        worker_config,
        engine=ScriptedEngine(),
        reader=reader,
        write=lines.append,
        install_signals=False,
    )
    assert code == 0
    assert lines == [{"type": "sidecar_ready"}, {"type": "pong"}]


@pytest.mark.anyio
async def test_signal_aborts_state_and_arms_exit(worker_config):
    worker_config.shutdown_grace_seconds = 0.01
    state = create_abort_state()
    stopped = []
    exits = []
    loop = asyncio.get_running_loop()
    install_signal_handlers(
        state, worker_config, on_signal=lambda: stopped.append(True), exit_fn=exits.append
    )
    try:
        os.kill(os.getpid(), signal.SIGTERM)
        await wait_until(lambda: stopped and exits)
    finally:
        for signum in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(signum)

    assert state.aborted is True
    assert exits == [0]


@pytest.mark.anyio
async def test_fatal_handler_exits_nonzero(capsys):
    exits = []
    loop = asyncio.get_running_loop()
    install_fatal_handler(exits.append)
    try:
        loop.call_exception_handler({"message": "boom", "exception": RuntimeError("kaput")})
    finally:
        loop.set_exception_handler(None)
    assert exits == [1]
    assert "kaput" in capsys.readouterr().err


def test_run_entrypoint_contains_faults(capsys):
    async def explode():
        raise RuntimeError("unexpected")

    assert run_entrypoint(explode) == 1
    assert "unexpected" in capsys.readouterr().err


def test_run_entrypoint_returns_exit_code():
    async def finish():
        return 0

    assert run_entrypoint(finish) == 0


def test_run_entrypoint_treats_interrupt_as_clean_exit():
    async def interrupted():
        raise KeyboardInterrupt

    assert run_entrypoint(interrupted) == 0
