from __future__ import annotations

import re
import sys
from typing import Iterable, List, Optional

NODE_BUILTINS = frozenset(
    {
        "assert", "async_hooks", "buffer", "child_process", "cluster", "console", "constants",
        "crypto", "dgram", "diagnostics_channel", "dns", "domain", "events", "fs", "http", "http2",
        "https", "inspector", "module", "net", "os", "path", "perf_hooks", "process", "punycode",
        "querystring", "readline", "repl", "stream", "string_decoder", "sys", "timers", "tls",
        "trace_events", "tty", "url", "util", "v8", "vm", "wasi", "worker_threads", "zlib",
    }
)

_BUILTIN_PREFIXES = ("node:", "bun:", "deno:")
_URL_PREFIXES = ("http://", "https://", "data:", "blob:", "//")

_IMPORT_PATTERNS = [
    re.compile(r"""\bfrom\s*(['"])(?P<path>[^'"\n]+)\1"""),
    re.compile(r"""^\s*import\s*(['"])(?P<path>[^'"\n]+)\1""", re.MULTILINE),
    re.compile(r"""\bimport\s*\(\s*(['"])(?P<path>[^'"\n]+)\1\s*\)"""),
    re.compile(r"""\brequire\s*\(\s*(['"])(?P<path>[^'"\n]+)\1\s*\)"""),
]

_NPM_NAME = re.compile(r"^(?:@[a-z0-9~][a-z0-9._~-]*/)?[a-z0-9~][a-z0-9._~-]*$")

_PY_IMPORT = re.compile(r"^\s*(?:from\s+(?P<from>[\w.]+)\s+import\b|import\s+(?P<mods>[\w., ]+))", re.MULTILINE)


def package_identity(path: str) -> Optional[str]:
    """Map an import specifier to its installable package name, or ``None``."""
    specifier = path.strip()
    if not specifier or specifier.startswith((".", "/", "~/")):
        return None
    lowered = specifier.lower()
    if lowered.startswith(_BUILTIN_PREFIXES) or lowered.startswith(_URL_PREFIXES):
        return None
    segments = specifier.split("/")
    if specifier.startswith("@"):
        if len(segments) < 2 or not segments[1]:
            return None
        name = "/".join(segments[:2])
    else:
        name = segments[0]
    if name in NODE_BUILTINS:
        return None
    if not _NPM_NAME.match(name) or len(name) > 214:
        return None
    return name


def resolve(code: str) -> List[str]:
    """Return package names referenced by ``code`` in order of first appearance."""
    if not code:
        return []
    found = []
    for pattern in _IMPORT_PATTERNS:
        for match in pattern.finditer(code):
            found.append((match.start("path"), match.group("path")))
    found.sort(key=lambda item: item[0])
    return _unique(package_identity(path) for _, path in found)


def resolve_python(code: str) -> List[str]:
    """Third-party top-level modules imported by Python ``code``."""
    if not code:
        return []
    names = []
    for match in _PY_IMPORT.finditer(code):
        if match.group("from"):
            names.append(match.group("from"))
        else:
            names.extend(part.strip().split(" ")[0] for part in match.group("mods").split(","))
    stdlib = getattr(sys, "stdlib_module_names", frozenset())
    tops = []
    for name in names:
        if not name or name.startswith("."):
            continue
        top = name.split(".")[0]
        if top in stdlib or top == "__future__":
            continue
        tops.append(top)
    return _unique(tops)


def _unique(names: Iterable[Optional[str]]) -> List[str]:
    seen = set()
    out = []
    for name in names:
        if name and name not in seen:
            seen.add(name)
            out.append(name)
    return out
