import asyncio
import shlex
import stat
import sys
from pathlib import Path

import pytest

from agent_sidecar.abort import CancellationToken
from agent_sidecar.engines import ClaudeCliEngine, EngineOptions, user_turn
from agent_sidecar.engines.claude_cli import build_command
from agent_sidecar.errors import EngineError

FIXTURE_PATH = Path(__file__).parent / "fixtures" / "fake_claude.py"


def fixture_executable(tmp_path: Path, scenario: str) -> str:
    script = tmp_path / f"claude-{scenario}"
    script.write_text(
        "#!/bin/sh\n"
        f"exec {shlex.quote(sys.executable)} -u {shlex.quote(str(FIXTURE_PATH))} "
        f"--scenario {scenario} \"$@\"\n",
        encoding="utf-8",
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


def _options(tmp_path: Path, scenario: str, **overrides) -> EngineOptions:
    options = EngineOptions(cwd=str(tmp_path), executable=fixture_executable(tmp_path, scenario))
    for key, value in overrides.items():
        setattr(options, key, value)
    return options


async def _collect(engine, prompt, options, token=None):
    token = token or CancellationToken()
    return [message async for message in engine.query(prompt, options, token)]


def test_build_command_flags():
    options = EngineOptions(
        cwd="/work",
        model="claude-opus",
        agent="reviewer",
        allowed_tools=["Read", "Grep"],
        max_turns=7,
        permission_mode="plan",
        resume="sess-1",
        betas=["b1", "b2"],
        extra_args=["--debug"],
    )
    cmd = build_command(options)
    assert cmd[:8] == [
        "claude",
        "--print",
        "--output-format",
        "stream-json",
        "--input-format",
        "stream-json",
        "--verbose",
        "--max-turns",
    ]
    assert cmd[cmd.index("--max-turns") + 1] == "7"
    assert cmd[cmd.index("--permission-mode") + 1] == "plan"
    assert cmd[cmd.index("--agent") + 1] == "reviewer"
    assert cmd[cmd.index("--model") + 1] == "claude-opus"
    assert cmd[cmd.index("--allowedTools") + 1] == "Read,Grep"
    assert cmd[cmd.index("--setting-sources") + 1] == "project"
    assert cmd[cmd.index("--resume") + 1] == "sess-1"
    assert cmd[cmd.index("--betas") + 1 : cmd.index("--betas") + 3] == ["b1", "b2"]
    assert cmd[-1] == "--debug"


def test_build_command_omits_unset_options():
    cmd = build_command(EngineOptions(cwd="/work", agent="planner"))
    for flag in ("--model", "--allowedTools", "--resume", "--betas"):
        assert flag not in cmd


@pytest.mark.anyio
async def test_string_prompt_round_trip(tmp_path: Path):
    messages = await _collect(ClaudeCliEngine(), "hello there", _options(tmp_path, "basic"))
    assert [m["type"] for m in messages] == ["system", "assistant", "result"]
    assert messages[1]["message"]["content"][0]["text"] == "echo: hello there"
    assert Path(messages[0]["cwd"]).resolve() == tmp_path.resolve()


@pytest.mark.anyio
async def test_streaming_prompt_sends_every_turn(tmp_path: Path):
    async def turns():
        yield user_turn("first")
        yield user_turn("second")

    messages = await _collect(ClaudeCliEngine(), turns(), _options(tmp_path, "basic"))
    texts = [m["message"]["content"][0]["text"] for m in messages if m["type"] == "assistant"]
    assert texts == ["echo: first", "echo: second"]
    assert messages[-1]["num_turns"] == 2


@pytest.mark.anyio
async def test_credential_and_flags_reach_the_child(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    options = _options(
        tmp_path, "inspect", agent="planner", model="claude-sonnet", env={"ANTHROPIC_API_KEY": "sk-call"}
    )
    messages = await _collect(ClaudeCliEngine(), "inspect me", options)
    inspect = messages[0]
    assert inspect["api_key"] == "sk-call"
    assert inspect["prompt"] == "inspect me"
    assert "--agent" in inspect["argv"]
    assert "planner" in inspect["argv"]
    assert inspect["argv"][inspect["argv"].index("--model") + 1] == "claude-sonnet"


@pytest.mark.anyio
async def test_non_json_stdout_is_ignored(tmp_path: Path):
    messages = await _collect(ClaudeCliEngine(), "x", _options(tmp_path, "noise"))
    assert [m["type"] for m in messages] == ["assistant", "result"]


@pytest.mark.anyio
async def test_failed_exit_raises_with_stderr_tail(tmp_path: Path):
    relayed = []
    options = _options(tmp_path, "stderr_fail", stderr=relayed.append)
    with pytest.raises(EngineError) as excinfo:
        await _collect(ClaudeCliEngine(), "x", options)
    assert excinfo.value.returncode == 3
    assert "credentials rejected" in str(excinfo.value)
    assert relayed == ["loading settings", "fatal: credentials rejected"]


@pytest.mark.anyio
async def test_nonzero_exit_after_result_is_not_an_error(tmp_path: Path):
    messages = await _collect(ClaudeCliEngine(), "x", _options(tmp_path, "fail_after_result"))
    assert messages[-1]["type"] == "result"


@pytest.mark.anyio
async def test_missing_executable_raises_engine_error(tmp_path: Path):
    options = EngineOptions(cwd=str(tmp_path), executable=str(tmp_path / "no-such-claude"))
    with pytest.raises(EngineError, match="Failed to start"):
        await _collect(ClaudeCliEngine(), "x", options)


@pytest.mark.anyio
async def test_cancellation_terminates_the_child(tmp_path: Path):
    engine = ClaudeCliEngine()
    token = CancellationToken()
    seen = []

    async def consume():
        async for message in engine.query("x", _options(tmp_path, "hang"), token):
            seen.append(message)

    task = asyncio.create_task(consume())
    while not seen:
        await asyncio.sleep(0.01)
    token.cancel()

    await asyncio.wait_for(task, timeout=5)
    assert [m["subtype"] for m in seen] == ["init"]
