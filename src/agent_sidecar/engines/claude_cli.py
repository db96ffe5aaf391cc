import asyncio
import collections
import collections.abc
import contextlib
import json
import logging
import os
from typing import AsyncIterator, Deque, List, Optional

from ..abort import CancellationToken
from ..errors import EngineError
from ..logging_utils import log_event
from .ports import EngineMessage, EngineOptions, Prompt, user_turn

_READ_CHUNK_SIZE = 64 * 1024
_MAX_MESSAGE_BYTES = 50 * 1024 * 1024
_STDERR_TAIL_LINES = 20
_TERMINATE_TIMEOUT_SECONDS = 1.0

_logger = logging.getLogger(__name__)


def build_command(options: EngineOptions) -> List[str]:
    cmd = [
        options.executable,
        "--print",
        "--output-format",
        "stream-json",
        "--input-format",
        "stream-json",
        "--verbose",
        "--max-turns",
        str(options.max_turns),
        "--permission-mode",
        options.permission_mode,
    ]
    if options.agent:
        cmd.extend(["--agent", options.agent])
    if options.model:
        cmd.extend(["--model", options.model])
    if options.allowed_tools is not None:
        cmd.extend(["--allowedTools", ",".join(options.allowed_tools)])
    if options.setting_sources:
        cmd.extend(["--setting-sources", ",".join(options.setting_sources)])
    if options.resume:
        cmd.extend(["--resume", options.resume])
    if options.betas:
        cmd.append("--betas")
        cmd.extend(options.betas)
    cmd.extend(options.extra_args)
    return cmd


class ClaudeCliEngine:
    """Runs the Claude Code CLI in stream-json mode as the conversation engine.

    User turns are written to the child's stdin as JSON lines; closing stdin
    ends the conversation. Each stdout JSON line is one engine message.
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or _logger

    async def query(
        self,
        prompt: Prompt,
        options: EngineOptions,
        token: CancellationToken,
    ) -> AsyncIterator[EngineMessage]:
        if token.cancelled:
            return
        cmd = build_command(options)
        env = os.environ.copy()
        env.update(options.env)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=options.cwd,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            raise EngineError(f"Failed to start {options.executable}: {exc}") from exc
        log_event(
            self._logger,
            logging.INFO,
            "engine.spawned",
            pid=process.pid,
            executable=options.executable,
            cwd=options.cwd,
            model=options.model,
            agent=options.agent,
        )

        def _on_cancel() -> None:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()

        stderr_tail: Deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)
        writer_task = asyncio.create_task(self._pump_prompt(process, prompt))
        stderr_task = asyncio.create_task(self._drain_stderr(process, options, stderr_tail))
        token.add_listener(_on_cancel)
        saw_result = False
        try:
            async with contextlib.aclosing(self._iter_messages(process)) as messages:
                async for message in messages:
                    if token.cancelled:
                        break
                    if message.get("type") == "result":
                        saw_result = True
                    yield message
            returncode = await process.wait()
            await stderr_task
            if token.cancelled:
                log_event(self._logger, logging.INFO, "engine.cancelled", pid=process.pid)
                return
            if returncode != 0 and not saw_result:
                detail = "\n".join(stderr_tail)
                raise EngineError(
                    f"{options.executable} exited with code {returncode}"
                    + (f": {detail}" if detail else ""),
                    returncode=returncode,
                )
            log_event(
                self._logger,
                logging.INFO,
                "engine.exited",
                pid=process.pid,
                returncode=returncode,
            )
        finally:
            token.remove_listener(_on_cancel)
            writer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer_task
            await _terminate_process(process)
            if not stderr_task.done():
                stderr_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stderr_task

    async def _pump_prompt(
        self, process: asyncio.subprocess.Process, prompt: Prompt
    ) -> None:
        stdin = process.stdin
        if stdin is None:
            return
        try:
            if isinstance(prompt, str):
                await _write_turn(stdin, user_turn(prompt))
            else:
                async for turn in prompt:
                    await _write_turn(stdin, turn)
        except (BrokenPipeError, ConnectionResetError) as exc:
            log_event(self._logger, logging.WARNING, "engine.stdin.closed", exc=exc)
        finally:
            if not stdin.is_closing():
                stdin.close()
            if isinstance(prompt, collections.abc.AsyncGenerator):
                await prompt.aclose()

    async def _iter_messages(
        self, process: asyncio.subprocess.Process
    ) -> AsyncIterator[EngineMessage]:
        stdout = process.stdout
        if stdout is None:
            raise EngineError("Engine stdout missing")
        buffer = bytearray()
        while True:
            chunk = await stdout.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            buffer.extend(chunk)
            while True:
                newline_index = buffer.find(b"\n")
                if newline_index == -1:
                    break
                line = bytes(buffer[:newline_index])
                del buffer[: newline_index + 1]
                message = self._decode_line(line)
                if message is not None:
                    yield message
            if len(buffer) > _MAX_MESSAGE_BYTES:
                raise EngineError(
                    f"Engine message exceeded {_MAX_MESSAGE_BYTES} bytes without newline"
                )
        if buffer:
            message = self._decode_line(bytes(buffer))
            if message is not None:
                yield message

    def _decode_line(self, line: bytes) -> Optional[EngineMessage]:
        payload = line.decode("utf-8", errors="replace").strip()
        if not payload:
            return None
        try:
            message = json.loads(payload)
        except json.JSONDecodeError:
            log_event(self._logger, logging.DEBUG, "engine.stdout.non_json", line_len=len(payload))
            return None
        if not isinstance(message, dict):
            return None
        return message

    async def _drain_stderr(
        self,
        process: asyncio.subprocess.Process,
        options: EngineOptions,
        tail: Deque[str],
    ) -> None:
        stderr = process.stderr
        if stderr is None:
            return
        while True:
            line = await stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if not text:
                continue
            tail.append(text)
            if options.stderr is not None:
                options.stderr(text)


async def _write_turn(stdin: asyncio.StreamWriter, turn: dict) -> None:
    payload = json.dumps(turn, separators=(",", ":"), ensure_ascii=False)
    stdin.write((payload + "\n").encode("utf-8"))
    await stdin.drain()


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=_TERMINATE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
