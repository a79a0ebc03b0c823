from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from src.codecanvas.services.command_runner import CommandResult


class FakeRunner:
    """Stands in for npm and esbuild.

    Installs create ``node_modules/<name>/package.json`` under ``cwd``; bundles
    write a small IIFE to the ``--outfile`` path.
    """

    def __init__(
        self,
        install_delay: float = 0.0,
        skip_packages: Sequence[str] = (),
        install_exit: int = 0,
        install_timeout: bool = False,
        bundle_exit: int = 0,
        bundle_stderr: str = "",
    ) -> None:
        self.install_delay = install_delay
        self.skip_packages: Set[str] = set(skip_packages)
        self.install_exit = install_exit
        self.install_timeout = install_timeout
        self.bundle_exit = bundle_exit
        self.bundle_stderr = bundle_stderr
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []

    @property
    def install_calls(self) -> List[List[str]]:
        return [c for c in self.calls if len(c) > 1 and c[1] in ("install", "add")]

    @property
    def bundle_calls(self) -> List[List[str]]:
        return [c for c in self.calls if "--bundle" in c]

    async def run(
        self,
        args: Sequence[str],
        cwd: Any = None,
        timeout: float = 60.0,
        input_text: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        args = list(args)
        self.calls.append(args)
        self.inputs.append(input_text)
        if len(args) > 1 and args[1] in ("install", "add"):
            return await self._install(args, Path(cwd))
        return self._bundle(args)

    async def _install(self, args: List[str], cwd: Path) -> CommandResult:
        await asyncio.sleep(self.install_delay)
        if self.install_timeout:
            return CommandResult(-1, "", "timed out", 0, timed_out=True)
        if self.install_exit != 0:
            return CommandResult(self.install_exit, "", "npm ERR! 404 Not Found", 0)
        for name in (a for a in args[2:] if not a.startswith("-")):
            if name in self.skip_packages:
                continue
            pkg_dir = cwd.joinpath("node_modules", *name.split("/"))
            pkg_dir.mkdir(parents=True, exist_ok=True)
            (pkg_dir / "package.json").write_text(json.dumps({"name": name}), encoding="utf-8")
        return CommandResult(0, "added packages", "", 5)

    def _bundle(self, args: List[str]) -> CommandResult:
        if self.bundle_exit != 0:
            return CommandResult(self.bundle_exit, "", self.bundle_stderr, 3)
        outfile = next(a.split("=", 1)[1] for a in args if a.startswith("--outfile="))
        Path(outfile).write_text('(()=>{console.log("bundled")})();\n', encoding="utf-8")
        metafile = next(a.split("=", 1)[1] for a in args if a.startswith("--metafile="))
        Path(metafile).write_text(json.dumps({"inputs": {"<stdin>": {"bytes": 42}}, "outputs": {}}), encoding="utf-8")
        return CommandResult(0, "", self.bundle_stderr, 3)


class RecordingSink:
    def __init__(self, fail_after: Optional[int] = None) -> None:
        self.frames: List[str] = []
        self.closed = False
        self.fail_after = fail_after
        self.writes_after_close = 0

    def write(self, frame: str) -> None:
        if self.closed:
            self.writes_after_close += 1
            raise ConnectionError("closed")
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            raise ConnectionError("client went away")
        self.frames.append(frame)

    def close(self) -> None:
        self.closed = True

    def events(self) -> List[Dict[str, Any]]:
        out = []
        for frame in self.frames:
            for line in frame.splitlines():
                if line.startswith("data: "):
                    out.append(json.loads(line[6:]))
        return out

    def types(self) -> List[str]:
        return [e["type"] for e in self.events()]


class ManualClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def parse_sse(text: str) -> List[Dict[str, Any]]:
    events = []
    for line in text.splitlines():
        if line.startswith("data: "):
            events.append(json.loads(line[6:]))
    return events
