from __future__ import annotations

"""Merge extracted blocks into one artifact per model response.

``consolidate`` is pure: the same block list always produces byte-identical
code, which the content-addressed cache relies on.
"""

import hashlib
import logging
import math
import re
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Sequence

from ..domain.artifact_models import ArtifactMetadata, CodeBlock, ConsolidatedArtifact
from .dependency_resolver import resolve, resolve_python
from .language_rules import JSX_LANGUAGES, SCRIPT_FAMILY, family_of, has_jsx

LOG = logging.getLogger("codecanvas.consolidator")

SIMILARITY_THRESHOLD = 0.8

DEFAULT_HTML_SHELL = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Generated Application</title>
</head>
<body>
    <div id="root"></div>
</body>
</html>"""

_LINE_COMMENT: Dict[str, str] = {
    "python": "#",
    "shell": "#",
    "yaml": "#",
    "ruby": "#",
    "r": "#",
    "perl": "#",
    "toml": "#",
    "sql": "--",
    "lua": "--",
}

_DISPLAY_NAMES: Dict[str, str] = {
    "javascript": "JavaScript",
    "typescript": "TypeScript",
    "jsx": "React",
    "tsx": "React",
    "html": "HTML",
    "css": "CSS",
    "python": "Python",
    "json": "JSON",
}

_COMPLEXITY_PATTERNS = [
    re.compile(r"\bif\s*\("),
    re.compile(r"\belse\s*\{"),
    re.compile(r"\bwhile\s*\("),
    re.compile(r"\bfor\s*\("),
    re.compile(r"\bswitch\s*\("),
    re.compile(r"\bcase\s+"),
    re.compile(r"\bcatch\s*\("),
    re.compile(r"\?[^:;\n]*:"),
    re.compile(r"&&|\|\|"),
    re.compile(r"\basync\s+"),
    re.compile(r"\bawait\s+"),
    # Python branching keywords at line start
    re.compile(r"^\s*(?:if|elif|for|while|except|with)\b.*:\s*$", re.MULTILINE),
]

_WS = re.compile(r"\s+")
_DOCUMENT = re.compile(r"<html[\s>]|<body[\s>]", re.IGNORECASE)
_ROOT_DIV = '<div id="root"></div>'
_TITLE_TAG = re.compile(r"<title[^>]*>\s*(?P<title>[^<]+?)\s*</title>", re.IGNORECASE)
_COMPONENT = re.compile(
    r"(?:export\s+default\s+)?(?:function|class|const|let)\s+(?P<name>[A-Z][A-Za-z0-9_]*)\s*(?:=|\(|extends|\{|<)"
)
_PY_CLASS = re.compile(r"^class\s+(?P<name>\w+)", re.MULTILINE)
_FUNCTION = re.compile(r"^(?:export\s+)?(?:async\s+)?(?:function|def)\s+(?P<name>[A-Za-z_]\w*)", re.MULTILINE)

_FRAMEWORK_SIGNS = [
    ("react", re.compile(r"""from\s+['"]react(?:-dom)?(?:/client)?['"]|require\(\s*['"]react['"]|\bReact\.""")),
    ("vue", re.compile(r"""from\s+['"]vue['"]|\bcreateApp\(""")),
    ("svelte", re.compile(r"""from\s+['"]svelte""")),
    ("angular", re.compile(r"""from\s+['"]@angular/""")),
    ("express", re.compile(r"""require\(\s*['"]express['"]\)|from\s+['"]express['"]""")),
    ("fastapi", re.compile(r"^\s*(?:from\s+fastapi\s+import|import\s+fastapi)", re.MULTILINE)),
    ("flask", re.compile(r"^\s*(?:from\s+flask\s+import|import\s+flask)", re.MULTILINE)),
    ("django", re.compile(r"^\s*(?:from\s+django[\s.]|import\s+django)", re.MULTILINE)),
]


def content_hash(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def _normalize(text: str) -> str:
    return _WS.sub(" ", text).strip()


def _is_duplicate(a: str, b: str) -> bool:
    na, nb = _normalize(a), _normalize(b)
    if not na or not nb:
        return na == nb
    if na in nb or nb in na:
        return True
    shorter, longer = sorted((len(na), len(nb)))
    # ratio() is bounded by 2*min/(min+max)
    if 2.0 * shorter / (shorter + longer) <= SIMILARITY_THRESHOLD:
        return False
    matcher = SequenceMatcher(None, na, nb, autojunk=False)
    if matcher.real_quick_ratio() <= SIMILARITY_THRESHOLD or matcher.quick_ratio() <= SIMILARITY_THRESHOLD:
        return False
    return matcher.ratio() > SIMILARITY_THRESHOLD


def dedupe_blocks(blocks: Sequence[CodeBlock]) -> List[CodeBlock]:
    """Drop near-identical blocks of the same language, keeping the longer one in the earlier slot."""
    kept: List[CodeBlock] = []
    for block in blocks:
        for index, existing in enumerate(kept):
            if existing.language != block.language:
                continue
            if _is_duplicate(existing.body, block.body):
                if len(block.body) > len(existing.body):
                    kept[index] = block
                break
        else:
            kept.append(block)
    return kept


def _family_key(block: CodeBlock, has_html: bool) -> str:
    if has_html and block.language == "javascript":
        return "web"
    return family_of(block.language)


def primary_family(blocks: Sequence[CodeBlock]) -> Optional[str]:
    if not blocks:
        return None
    has_html = any(b.language == "html" for b in blocks)
    mass: Dict[str, int] = {}
    for block in blocks:
        key = _family_key(block, has_html)
        mass[key] = mass.get(key, 0) + len(block.body)
    # dict preserves first occurrence, max() keeps the first of equal values
    return max(mass, key=lambda k: mass[k])


def _separator(marker: str, label: str, closer: str = "") -> str:
    line = f"{marker} ==================== {label} ===================="
    return f"{line} {closer}" if closer else line


def _merge_with_separators(blocks: Sequence[CodeBlock], marker: str, closer: str = "") -> str:
    if len(blocks) == 1:
        return blocks[0].body
    sections: List[str] = []
    for index, block in enumerate(blocks):
        if index > 0:
            sections.append("")
        label = block.file_hint.upper() if block.file_hint else f"BLOCK {index + 1}"
        sections.append(_separator(marker, label, closer))
        sections.append(block.body)
    return "\n".join(sections)


def _insert_before(document: str, tag: str, snippet: str, last: bool = False) -> Optional[str]:
    lowered = document.lower()
    index = lowered.rfind(tag) if last else lowered.find(tag)
    if index < 0:
        return None
    return document[:index] + snippet + document[index:]


def merge_web(blocks: Sequence[CodeBlock]) -> str:
    html_blocks = [b for b in blocks if b.language == "html"]
    css = [b.body for b in blocks if b.language == "css"]
    scripts = [b.body for b in blocks if b.language == "javascript"]

    documents = [b.body for b in html_blocks if _DOCUMENT.search(b.body)]
    if documents:
        document = documents[-1]
    else:
        fragments = "\n".join(b.body for b in html_blocks)
        document = DEFAULT_HTML_SHELL.replace(_ROOT_DIV, f"<div id=\"root\">\n{fragments}\n    </div>")
    if css:
        style = "<style>\n" + "\n\n".join(css) + "\n</style>\n"
        merged = _insert_before(document, "</head>", style)
        if merged is None:
            merged = _insert_before(document, "<body", style) or style + document
        document = merged
    if scripts:
        script = "<script>\n" + "\n\n".join(scripts) + "\n</script>\n"
        merged = _insert_before(document, "</body>", script, last=True)
        document = merged if merged is not None else document + "\n" + script.rstrip("\n")
    return document


def _artifact_language(family: str, blocks: Sequence[CodeBlock], code: str) -> str:
    languages = {b.language for b in blocks}
    if family == "script":
        typed = bool(languages & {"typescript", "tsx"})
        if languages & JSX_LANGUAGES or has_jsx(code):
            return "tsx" if typed else "jsx"
        return "typescript" if typed else "javascript"
    if family == "web":
        return "html" if "html" in languages else "css"
    return blocks[0].language


def nesting_depth(code: str) -> int:
    depth = deepest = 0
    for char in code:
        if char == "{":
            depth += 1
            deepest = max(deepest, depth)
        elif char == "}":
            depth = max(depth - 1, 0)
    return deepest


def complexity_tier(code: str, language: str = "") -> str:
    lines = code.count("\n") + 1
    score = 3 if lines > 100 else 2 if lines > 50 else 1
    for pattern in _COMPLEXITY_PATTERNS:
        score += len(pattern.findall(code))
    if language == "python":
        depth = max((len(l) - len(l.lstrip(" "))) // 4 for l in code.splitlines() or [""])
    else:
        depth = nesting_depth(code)
    score += 3 if depth > 4 else 2 if depth > 2 else 1
    if score > 20:
        return "high"
    if score > 10:
        return "medium"
    return "low"


def detect_framework(code: str, language: str) -> Optional[str]:
    for name, pattern in _FRAMEWORK_SIGNS:
        if pattern.search(code):
            return name
    if language in JSX_LANGUAGES:
        return "react"
    return None


def derive_title(code: str, language: str) -> str:
    match = _TITLE_TAG.search(code)
    if match:
        return match.group("title")
    if language in SCRIPT_FAMILY:
        match = _COMPONENT.search(code)
        if match:
            return match.group("name")
    if language == "python":
        match = _PY_CLASS.search(code)
        if match:
            return match.group("name")
    match = _FUNCTION.search(code)
    if match:
        return match.group("name")
    return f"{_DISPLAY_NAMES.get(language, language.title())} Snippet"


def artifact_type(language: str, framework: Optional[str]) -> str:
    if language == "html":
        return "HTML"
    if language in JSX_LANGUAGES or framework == "react":
        return "REACT"
    if language in ("javascript", "typescript"):
        return "JAVASCRIPT"
    if language == "python":
        return "PYTHON"
    return "CODE"


def is_buildable(language: str) -> bool:
    return language in SCRIPT_FAMILY or language == "html"


def build_metadata(code: str, language: str, original_blocks: int) -> ArtifactMetadata:
    if language == "python":
        dependencies = resolve_python(code)
    elif language in SCRIPT_FAMILY or language == "html":
        dependencies = resolve(code)
    else:
        dependencies = []
    buildable = is_buildable(language)
    return ArtifactMetadata(
        dependencies=dependencies,
        framework=detect_framework(code, language),
        has_jsx=language in JSX_LANGUAGES or has_jsx(code),
        estimated_lines=code.count("\n") + 1,
        estimated_tokens=math.ceil(len(code) / 4),
        complexity=complexity_tier(code, language),
        buildable=buildable,
        previewable=buildable or language == "css",
        original_blocks=original_blocks,
    )


def make_artifact(code: str, language: str, original_blocks: int = 1) -> ConsolidatedArtifact:
    digest = content_hash(code)
    metadata = build_metadata(code, language, original_blocks)
    return ConsolidatedArtifact(
        id=digest[:12],
        title=derive_title(code, language),
        language=language,
        code=code,
        hash=digest[:16],
        type=artifact_type(language, metadata.framework),
        metadata=metadata,
    )


def consolidate(blocks: Sequence[CodeBlock]) -> Optional[ConsolidatedArtifact]:
    """Merge ``blocks`` into a single artifact, or ``None`` when nothing survives."""
    if not blocks:
        return None
    family = primary_family(blocks)
    has_html = any(b.language == "html" for b in blocks)
    chosen = dedupe_blocks([b for b in blocks if _family_key(b, has_html) == family])
    if not chosen:
        return None

    if family == "web" and has_html:
        code = merge_web(chosen)
    elif family == "web":
        code = _merge_with_separators(chosen, "/*", "*/")
    elif family in ("script", "python"):
        code = _merge_with_separators(chosen, "//" if family == "script" else "#")
    else:
        marker = _LINE_COMMENT.get(chosen[0].language, "//")
        code = _merge_with_separators(chosen, marker)

    language = _artifact_language(family, chosen, code)
    artifact = make_artifact(code, language, original_blocks=len(blocks))
    LOG.debug(
        "artifact_consolidated",
        extra={"artifact_id": artifact.id, "language": language, "blocks": len(chosen), "family": family},
    )
    return artifact
