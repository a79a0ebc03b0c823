from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence, Union

LOG = logging.getLogger("codecanvas.runner")


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class CommandRunner(Protocol):
    async def run(
        self,
        args: Sequence[str],
        cwd: Union[str, Path, None] = None,
        timeout: float = 60.0,
        input_text: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:  # pragma: no cover - interface
        ...


class AsyncSubprocessRunner:
    """Run external tools on the event loop with a hard timeout.

    A timed-out process is killed and reaped before returning. A missing
    executable is reported as exit code 127 instead of raising.
    """

    async def run(
        self,
        args: Sequence[str],
        cwd: Union[str, Path, None] = None,
        timeout: float = 60.0,
        input_text: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        started = time.perf_counter()
        merged_env = dict(os.environ)
        if env:
            merged_env.update(env)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=merged_env,
            )
        except (FileNotFoundError, PermissionError) as exc:
            LOG.warning("command_not_startable", extra={"cmd": args[0] if args else "", "err": str(exc)})
            return CommandResult(127, "", str(exc), _elapsed_ms(started))

        payload = input_text.encode("utf-8") if input_text is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            LOG.warning("command_timed_out", extra={"cmd": args[0] if args else "", "timeout": timeout})
            return CommandResult(-1, "", f"timed out after {timeout:.0f}s", _elapsed_ms(started), timed_out=True)

        return CommandResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=_elapsed_ms(started),
        )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
