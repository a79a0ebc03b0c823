from __future__ import annotations

import json
import logging
import re
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..domain.artifact_models import BuildResult
from ..observability.metrics import BUILD_DURATION
from .command_runner import AsyncSubprocessRunner, CommandResult, CommandRunner
from .dependency_resolver import resolve
from .language_rules import JSX_LANGUAGES, normalize_language
from .package_installer import PackageInstaller
from .preview_document import render_preview

LOG = logging.getLogger("codecanvas.bundler")

LOADERS: Dict[str, str] = {
    "javascript": "js",
    "typescript": "ts",
    "react": "tsx",
    "jsx": "jsx",
    "tsx": "tsx",
}

BROWSER_TARGETS = "es2020,chrome80,firefox80,safari14"

FALLBACK_COMPONENT = "GeneratedComponent"

_REACT_IMPORT = re.compile(
    r"""^\s*(?:import\s+(?:\*\s+as\s+)?React\b|(?:const|let|var)\s+React\s*=\s*require\(\s*['"]react['"]\s*\))""",
    re.MULTILINE,
)
_REACT_USAGE = re.compile(
    r"""from\s+['"]react['"]|require\(\s*['"]react['"]\s*\)|\bReact\."""
    r"""|\buse(?:State|Effect|Ref|Memo|Callback|Reducer|Context)\("""
)
_MOUNT_CALL = re.compile(r"ReactDOM\.render\(|render\(\s*React\.createElement|createRoot\(|hydrateRoot\(|root\.render\(")
_DEFAULT_NAMED = [
    re.compile(r"export\s+default\s+(?:async\s+)?function\s*\*?\s*(?P<name>[A-Za-z_$][\w$]*)\s*\("),
    re.compile(r"export\s+default\s+class\s+(?P<name>[A-Za-z_$][\w$]*)"),
    re.compile(r"export\s+default\s+(?:React\.)?(?:memo|forwardRef)\(\s*(?P<name>[A-Z][\w$]*)\s*\)"),
    re.compile(r"export\s+default\s+(?P<name>[A-Za-z_$][\w$]*)\s*;?\s*$", re.MULTILINE),
    re.compile(r"export\s*\{\s*(?P<name>[A-Za-z_$][\w$]*)\s+as\s+default\s*\}"),
]
_DEFAULT_ANON_FUNCTION = re.compile(r"export\s+default\s+(async\s+)?function\s*\(")
_DEFAULT_ANON_CLASS = re.compile(r"export\s+default\s+class\s*(?=extends\b|\{)")
_DEFAULT_EXPRESSION = re.compile(r"export\s+default\s+(?=[(\[{]|[A-Za-z_$][\w$.]*\()")

_DIAGNOSTIC = re.compile(r"\[(?P<kind>ERROR|WARNING)\]\s*(?P<text>.+)$")
_LOCATION = re.compile(r"^\s*(?P<file><stdin>|[^\s:]+):(?P<line>\d+):(?P<col>\d+):\s*$")

MOUNT_TEMPLATE = """

// Mount the default export into #root
if (typeof document !== "undefined" && document.getElementById("root")) {{
  const __ccRootElement = document.getElementById("root");
  const __ccElement = React.createElement({name});
  if (typeof __ccReactDOMClient.createRoot === "function") {{
    __ccReactDOMClient.createRoot(__ccRootElement).render(__ccElement);
  }} else if (typeof __ccReactDOM.render === "function") {{
    __ccReactDOM.render(__ccElement, __ccRootElement);
  }} else {{
    console.error("No React mount API available");
  }}
}}
"""


def is_react_source(code: str, language: str) -> bool:
    return normalize_language(language) in JSX_LANGUAGES or bool(_REACT_USAGE.search(code))


def default_export_name(code: str) -> Optional[str]:
    for pattern in _DEFAULT_NAMED:
        match = pattern.search(code)
        if match:
            return match.group("name")
    return None


def _name_anonymous_default(code: str) -> Tuple[str, Optional[str]]:
    """Give an anonymous default export a binding so it can be mounted."""
    if _DEFAULT_ANON_FUNCTION.search(code):
        code = _DEFAULT_ANON_FUNCTION.sub(
            lambda m: f"export default {m.group(1) or ''}function {FALLBACK_COMPONENT}(", code, count=1
        )
        return code, FALLBACK_COMPONENT
    if _DEFAULT_ANON_CLASS.search(code):
        return _DEFAULT_ANON_CLASS.sub(f"export default class {FALLBACK_COMPONENT} ", code, count=1), FALLBACK_COMPONENT
    if _DEFAULT_EXPRESSION.search(code):
        code = _DEFAULT_EXPRESSION.sub(f"const {FALLBACK_COMPONENT} = ", code, count=1)
        return f"{code.rstrip()}\nexport default {FALLBACK_COMPONENT};\n", FALLBACK_COMPONENT
    return code, None


def prepare_source(code: str, language: str) -> str:
    """Inject the React import and a mount call for component-style sources.

    Running it twice is a no-op on the second pass.
    """
    if not is_react_source(code, language):
        return code
    if not _REACT_IMPORT.search(code):
        code = "import React from 'react';\n" + code
    if _MOUNT_CALL.search(code):
        return code
    if "export default" not in code and not re.search(r"as\s+default\s*\}", code):
        return code
    name = default_export_name(code)
    if name is None:
        code, name = _name_anonymous_default(code)
    if name is None:
        LOG.debug("mount_skipped_no_component")
        return code
    header = "import * as __ccReactDOM from 'react-dom';\nimport * as __ccReactDOMClient from 'react-dom/client';\n"
    return header + code.rstrip() + "\n" + MOUNT_TEMPLATE.format(name=name)


def parse_diagnostics(stderr: str) -> Tuple[List[str], List[str]]:
    errors: List[str] = []
    warnings: List[str] = []
    current: Optional[List[str]] = None
    for line in stderr.splitlines():
        match = _DIAGNOSTIC.search(line)
        if match:
            current = errors if match.group("kind") == "ERROR" else warnings
            current.append(match.group("text").strip())
            continue
        location = _LOCATION.match(line)
        if location and current:
            current[-1] = f"{current[-1]} ({location.group('line')}:{location.group('col')})"
            current = None
    return errors, warnings


class BundlerAdapter:
    """Build single-file script sources into a self-contained preview."""

    def __init__(
        self,
        installer: PackageInstaller,
        runner: Optional[CommandRunner] = None,
        executable: str = "esbuild",
        timeout: float = 30.0,
    ) -> None:
        self.installer = installer
        self.runner = runner or AsyncSubprocessRunner()
        self.executable = executable
        self.timeout = timeout

    def command(self, language: str, outfile: Path, metafile: Path) -> List[str]:
        loader = LOADERS.get(language, "js")
        args = [
            self.executable,
            "--bundle",
            "--format=iife",
            "--platform=browser",
            f"--target={BROWSER_TARGETS}",
            "--minify",
            "--sourcemap=inline",
            "--tree-shaking=true",
            f"--loader={loader}",
            f"--sourcefile=input.{loader}",
            f"--outfile={outfile}",
            f"--metafile={metafile}",
            '--define:process.env.NODE_ENV="development"',
            "--define:global=globalThis",
            "--resolve-extensions=.tsx,.ts,.jsx,.js,.json",
            "--conditions=development,browser",
            "--main-fields=browser,module,main",
            "--legal-comments=none",
            "--log-level=warning",
            "--color=false",
        ]
        if loader in ("jsx", "tsx"):
            args += ["--jsx=automatic", "--jsx-import-source=react"]
        return args

    async def build(self, code: str, language: str, title: str = "Code Preview") -> BuildResult:
        """Bundle ``code`` and wrap it in a preview document.

        Failures come back as ``success=False`` with diagnostics; this method
        does not raise.
        """
        started = time.perf_counter()
        language = normalize_language(language)
        try:
            result = await self._build(code, language, title, started)
        except Exception as exc:
            LOG.exception("build_crashed", extra={"language": language})
            result = BuildResult(success=False, errors=[f"Build error: {exc}"], build_time_ms=_ms_since(started))
        BUILD_DURATION.labels(outcome="success" if result.success else "failed").observe(result.build_time_ms / 1000.0)
        return result

    async def _build(self, code: str, language: str, title: str, started: float) -> BuildResult:
        if language == "html":
            return BuildResult(
                success=True,
                preview_html=code,
                build_time_ms=_ms_since(started),
                bundle_size_bytes=len(code.encode("utf-8")),
            )
        if language not in LOADERS:
            return BuildResult(
                success=False,
                errors=[f"Language '{language}' is not buildable"],
                build_time_ms=_ms_since(started),
            )

        source = prepare_source(code, language)
        dependencies = resolve(source)
        installed = await self.installer.ensure_installed(dependencies)
        missing = [name for name in dependencies if name not in installed]

        with tempfile.TemporaryDirectory(prefix="codecanvas-build-") as workdir:
            outfile = Path(workdir) / "bundle.js"
            metafile = Path(workdir) / "meta.json"
            run = await self.runner.run(
                self.command(language, outfile, metafile),
                cwd=self.installer.sandbox_dir if self.installer.sandbox_dir.is_dir() else None,
                timeout=self.timeout,
                input_text=source,
                env={"NODE_PATH": str(self.installer.node_modules.resolve())},
            )
            errors, warnings = self._diagnostics(run)
            bundled = outfile.read_text(encoding="utf-8") if run.ok and outfile.is_file() else None
            if bundled is not None:
                self._log_metafile(metafile)

        if missing:
            errors.append("Packages not installed: " + ", ".join(missing))
        if bundled is None:
            LOG.info("build_failed", extra={"language": language, "errors": errors[:5]})
            return BuildResult(
                success=False,
                dependencies=dependencies,
                installed_packages=installed,
                errors=errors,
                warnings=warnings,
                build_time_ms=_ms_since(started),
            )

        preview = render_preview(bundled, title=title, react=is_react_source(code, language))
        LOG.info("build_succeeded", extra={"language": language, "bytes": len(bundled), "ms": run.duration_ms})
        return BuildResult(
            success=True,
            bundled_code=bundled,
            preview_html=preview,
            dependencies=dependencies,
            installed_packages=installed,
            warnings=warnings,
            build_time_ms=_ms_since(started),
            bundle_size_bytes=len(bundled.encode("utf-8")),
        )

    def _diagnostics(self, run: CommandResult) -> Tuple[List[str], List[str]]:
        if run.timed_out:
            return [f"Bundler timed out after {self.timeout:.0f}s"], []
        if run.exit_code == 127:
            return [f"Bundler '{self.executable}' is not available: {run.stderr.strip()}"], []
        errors, warnings = parse_diagnostics(run.stderr)
        if run.exit_code != 0 and not errors:
            tail = run.stderr.strip().splitlines()[-1:] or [f"Bundler exited with code {run.exit_code}"]
            errors = tail
        return errors, warnings

    def _log_metafile(self, metafile: Path) -> None:
        if not metafile.is_file():
            return
        try:
            meta = json.loads(metafile.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOG.debug("metafile_unreadable", extra={"err": str(exc)})
            return
        inputs = meta.get("inputs") or {}
        largest = sorted(inputs.items(), key=lambda kv: kv[1].get("bytes", 0), reverse=True)[:5]
        LOG.debug(
            "bundle_analysis",
            extra={"inputs": len(inputs), "largest": [(path, info.get("bytes", 0)) for path, info in largest]},
        )

    def stats(self) -> Dict[str, object]:
        data = dict(self.installer.stats())
        data["bundler"] = self.executable
        return data

    def clear_package_cache(self) -> None:
        self.installer.clear_cache()


def _ms_since(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 2)
