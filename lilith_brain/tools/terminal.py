from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import uuid

from ..common import truncate

logger = logging.getLogger("lilith_brain.tools.terminal")

MAX_OUTPUT_CHARS = 1500


class PersistentShell:
    """One long-lived ``sh`` session; working directory and variables persist between commands.

    Each command is followed by an echo of a done marker. Commands that do not finish within
    ``timeout_seconds`` get SIGINT sent to the shell's process group and a timeout result.
    """

    def __init__(self, timeout_seconds: float = 30.0, shell: str = "sh") -> None:
        self.timeout_seconds = timeout_seconds
        self.shell = shell
        self._process: asyncio.subprocess.Process | None = None
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def _ensure_process(self) -> asyncio.subprocess.Process:
        if self._process is not None and self._process.returncode is None:
            return self._process
        logger.info("[terminal] starting persistent shell")
        self._process = await asyncio.create_subprocess_exec(
            self.shell,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        return self._process

    @staticmethod
    async def _read_until_marker(process: asyncio.subprocess.Process, marker: str, buffer: list[str]) -> None:
        assert process.stdout is not None
        while True:
            line = await process.stdout.readline()
            if not line:
                raise ConnectionResetError(f"shell exited with code {process.returncode}")
            text = line.decode("utf-8", errors="replace")
            if marker in text:
                return
            buffer.append(text)

    def _interrupt(self, process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(os.getpgid(process.pid), signal.SIGINT)

    async def run(self, command: str) -> str:
        if self._busy:
            return "[System Warning] Terminal is busy (previous command still running). Wait or let it time out."
        self._busy = True
        try:
            process = await self._ensure_process()
            assert process.stdin is not None
            # Fresh marker per command so output left over from a timed-out command cannot end this one.
            marker = f"[__LILITH_CMD_DONE_{uuid.uuid4().hex[:8]}__]"
            logger.info("[terminal] executing: %s", command)
            process.stdin.write(f"{command}\necho '{marker}'\n".encode("utf-8"))
            await process.stdin.drain()

            buffer: list[str] = []
            try:
                await asyncio.wait_for(
                    self._read_until_marker(process, marker, buffer),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                self._interrupt(process)
                partial = "".join(buffer)
                return truncate(
                    f"[Timeout] Command ran longer than {self.timeout_seconds:g}s; interrupt sent.\n"
                    f"Output so far:\n{partial}",
                    MAX_OUTPUT_CHARS,
                )
            except ConnectionResetError as exc:
                self._process = None
                return f"[Terminal closed] {exc}"

            output = "".join(buffer).strip() or "(ok, no output)"
            result = f"[Result]:\n{output}"
            if len(result) > MAX_OUTPUT_CHARS:
                result = result[:MAX_OUTPUT_CHARS] + "\n...[terminal output truncated]..."
            return result
        finally:
            self._busy = False

    async def close(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(process.wait(), timeout=5.0)
