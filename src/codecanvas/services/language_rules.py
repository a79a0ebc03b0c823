"""Language tables shared by the extractor and the consolidator.

Detection precedence lives in ``DETECTION_RULES`` as ordered data. The first
matching rule wins, so Python has to stay ahead of the typed-script rules
(both use ``name: type`` annotations).
"""

from __future__ import annotations

import re
from typing import Dict, FrozenSet, List, Optional, Pattern, Tuple

LANGUAGE_ALIASES: Dict[str, str] = {
    "js": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "node": "javascript",
    "ts": "typescript",
    "py": "python",
    "python3": "python",
    "rb": "ruby",
    "cpp": "c++",
    "cs": "csharp",
    "sh": "shell",
    "bash": "shell",
    "zsh": "shell",
    "yml": "yaml",
    "htm": "html",
    "xhtml": "html",
    "react": "jsx",
    "md": "markdown",
}

EXTENSION_LANGUAGES: Dict[str, str] = {
    "js": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "jsx": "jsx",
    "ts": "typescript",
    "tsx": "tsx",
    "py": "python",
    "html": "html",
    "htm": "html",
    "css": "css",
    "json": "json",
    "md": "markdown",
    "yml": "yaml",
    "yaml": "yaml",
    "txt": "text",
    "sh": "shell",
    "sql": "sql",
    "go": "go",
    "rs": "rust",
    "java": "java",
    "cpp": "c++",
    "c": "c",
    "h": "c",
}

LANGUAGE_EXTENSIONS: Dict[str, str] = {
    "javascript": ".js",
    "typescript": ".ts",
    "jsx": ".jsx",
    "tsx": ".tsx",
    "python": ".py",
    "html": ".html",
    "css": ".css",
    "json": ".json",
    "markdown": ".md",
    "yaml": ".yaml",
    "shell": ".sh",
}

CONTENT_TYPES: Dict[str, str] = {
    "javascript": "application/javascript",
    "typescript": "application/typescript",
    "jsx": "application/javascript",
    "tsx": "application/typescript",
    "python": "text/x-python",
    "html": "text/html",
    "css": "text/css",
    "json": "application/json",
    "markdown": "text/markdown",
    "yaml": "application/x-yaml",
}

SCRIPT_FAMILY: FrozenSet[str] = frozenset({"javascript", "typescript", "jsx", "tsx"})
MARKUP_FAMILY: FrozenSet[str] = frozenset({"html", "css"})
JSX_LANGUAGES: FrozenSet[str] = frozenset({"jsx", "tsx"})

_M = re.MULTILINE

# (language, pattern) in priority order.
DETECTION_RULES: List[Tuple[str, Pattern[str]]] = [
    ("html", re.compile(r"\A\s*(?:<!DOCTYPE\s+html|<html[\s>])", re.IGNORECASE)),
    ("html", re.compile(r"<head[\s>][\s\S]*<body[\s>]", re.IGNORECASE)),
    ("python", re.compile(r"^\s*(?:async\s+)?def\s+\w+\s*\([^)]*\)\s*(?:->\s*[^:]+)?:", _M)),
    ("python", re.compile(r"^\s*from\s+[\w.]+\s+import\s+[\w*(]", _M)),
    ("python", re.compile(r"__name__\s*==\s*['\"]__main__['\"]")),
    ("python", re.compile(r"^\s*import\s+[\w.]+(?:\s+as\s+\w+)?\s*$", _M)),
    ("python", re.compile(r"^\s*class\s+\w+(?:\([^)]*\))?:\s*$", _M)),
    ("python", re.compile(r"^\s+self\.\w+\s*=[^=]", _M)),
    ("jsx", re.compile(r"^\s*import\s+React\b|from\s+['\"]react['\"]", _M)),
    ("jsx", re.compile(r"return\s*\(?\s*<[A-Za-z]")),
    ("jsx", re.compile(r"<[A-Z]\w*[\s/>]")),
    ("jsx", re.compile(r"\buse(?:State|Effect|Reducer|Ref)\s*\(")),
    ("typescript", re.compile(r"^\s*(?:export\s+)?(?:interface|enum)\s+\w+", _M)),
    ("typescript", re.compile(r"^\s*(?:export\s+)?type\s+\w+\s*(?:<[^>]*>)?\s*=", _M)),
    ("typescript", re.compile(r"\b(?:const|let|var)\s+\w+\s*:\s*[\w<>\[\]|]+\s*=")),
    ("typescript", re.compile(r"\)\s*:\s*(?:string|number|boolean|void|Promise<[^>]*>)\s*[{=]")),
    ("javascript", re.compile(r"^\s*(?:export\s+)?(?:async\s+)?function\s*\*?\s*\w*\s*\(", _M)),
    ("javascript", re.compile(r"\b(?:const|let|var)\s+\w+\s*=")),
    ("javascript", re.compile(r"\brequire\(\s*['\"]|^\s*import\s+.+\s+from\s+['\"]|=>", _M)),
    ("javascript", re.compile(r"\b(?:document|window|console)\.\w+")),
    ("html", re.compile(r"<(?:div|span|p|section|main|button|form|ul|table|h[1-6])[\s>]", re.IGNORECASE)),
    ("css", re.compile(r"^\s*(?:[.#]?[\w-]+(?:\s*[,>+~]?\s*[.#]?[\w:-]+)*|@media[^{]*)\s*\{[^}]*:[^}]*\}", _M)),
]

# Line-start signatures that mark unfenced text as code at all.
CODE_SIGNATURES: List[Pattern[str]] = [
    re.compile(r"^\s*(?:export\s+)?(?:async\s+)?function\s+\w+\s*\(", _M),
    re.compile(r"^\s*(?:export\s+)?(?:default\s+)?class\s+\w+", _M),
    re.compile(r"^\s*import\s+[\w{*]", _M),
    re.compile(r"^\s*from\s+[\w.]+\s+import\s", _M),
    re.compile(r"^\s*(?:async\s+)?def\s+\w+\s*\(", _M),
    re.compile(r"^\s*(?:const|let)\s+\w+\s*=", _M),
    re.compile(r"\A\s*<!DOCTYPE\s+html", re.IGNORECASE),
]

_JSX_MARKUP = re.compile(r"<[A-Za-z][\w.]*(?:\s+[\w-]+(?:=(?:\{[^}]*\}|\"[^\"]*\"|'[^']*'))?)*\s*/?>[\s\S]*?(?:</|/>)")
_TS_HINT = re.compile(
    r"^\s*(?:export\s+)?(?:interface|type)\s+\w+|:\s*(?:React\.)?(?:FC|string|number|boolean)\b|\buseState<",
    _M,
)


def normalize_language(tag: Optional[str]) -> str:
    if not tag:
        return "text"
    lowered = tag.strip().lower()
    return LANGUAGE_ALIASES.get(lowered, lowered)


def language_from_filename(file_name: Optional[str]) -> Optional[str]:
    if not file_name or "." not in file_name:
        return None
    ext = file_name.rsplit(".", 1)[-1].lower()
    return EXTENSION_LANGUAGES.get(ext)


def detect_language(code: str) -> str:
    """Classify ``code`` by the first matching rule in ``DETECTION_RULES``."""
    for language, pattern in DETECTION_RULES:
        if pattern.search(code):
            if language == "jsx" and _TS_HINT.search(code):
                return "tsx"
            return language
    return "text"


def looks_like_code(text: str) -> bool:
    return any(pattern.search(text) for pattern in CODE_SIGNATURES)


def has_jsx(code: str) -> bool:
    return bool(_JSX_MARKUP.search(code)) and bool(re.search(r"return\s*\(?\s*<|=>\s*\(?\s*<|render\(\s*<", code))


def family_of(language: str) -> str:
    if language in SCRIPT_FAMILY:
        return "script"
    if language in MARKUP_FAMILY:
        return "web"
    if language == "python":
        return "python"
    return "other:" + language


def extension_for(language: str) -> str:
    return LANGUAGE_EXTENSIONS.get(language, ".txt")


def content_type_for(language: str) -> str:
    return CONTENT_TYPES.get(language, "text/plain")
