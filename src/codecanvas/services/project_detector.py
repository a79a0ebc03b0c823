from __future__ import annotations

import re
from typing import List, Optional, Sequence

from ..domain.artifact_models import CodeBlock, ProjectArtifact, ProjectFile, ProjectMetadata
from .consolidator import content_hash, detect_framework
from .dependency_resolver import resolve, resolve_python
from .language_rules import SCRIPT_FAMILY, extension_for, family_of

DEV_DEPENDENCY_PATTERNS = (
    "typescript", "@types/", "eslint", "prettier", "jest", "vitest", "webpack", "vite", "rollup",
    "parcel", "@babel/", "ts-node", "nodemon", "concurrently", "cross-env", "@testing-library/",
)

ENTRY_POINTS = ("index.tsx", "index.ts", "index.jsx", "index.js", "main.tsx", "main.ts", "app.tsx", "app.ts")

CONFIG_FILES = re.compile(
    r"(?:^|/)(?:package\.json|tsconfig(?:\.\w+)?\.json|vite\.config\.\w+|webpack\.config\.\w+|"
    r"babel\.config\.\w+|\.babelrc|\.eslintrc(?:\.\w+)?|tailwind\.config\.\w+|postcss\.config\.\w+)$",
    re.IGNORECASE,
)

BUILDABLE_FRAMEWORKS = ("react", "vue", "angular", "svelte", "next")

_TITLE_PATTERNS = [
    re.compile(r"project\s*(?:name|title):\s*([^\n]+)", re.IGNORECASE),
    re.compile(r"building\s+(?:a\s+)?([^\n]+?)\s+(?:project|app)", re.IGNORECASE),
    re.compile(r"^#\s*([^\n]+)", re.MULTILINE),
]


def is_dev_dependency(name: str) -> bool:
    return any(pattern in name for pattern in DEV_DEPENDENCY_PATTERNS)


def is_config_file(file_name: Optional[str]) -> bool:
    return bool(file_name) and bool(CONFIG_FILES.search(file_name))


def find_entry_point(files: Sequence[ProjectFile]) -> Optional[str]:
    for candidate in ENTRY_POINTS:
        for item in files:
            if item.file_name.lower().endswith(candidate):
                return item.file_name
    return None


def _directory(file_name: str) -> str:
    return file_name.rsplit("/", 1)[0] if "/" in file_name else ""


def _stem(file_name: str) -> str:
    base = file_name.rsplit("/", 1)[-1]
    return base.split(".", 1)[0]


def _same_family(a: CodeBlock, b: CodeBlock) -> bool:
    fa, fb = family_of(a.language), family_of(b.language)
    # stylesheets and json configs travel with script projects
    loose = {"web", "other:json"}
    return fa == fb or (fa == "script" and fb in loose) or (fb == "script" and fa in loose)


def _imports_between(a: CodeBlock, group: Sequence[CodeBlock], b: CodeBlock) -> bool:
    stem = _stem(b.file_hint or "")
    if not stem:
        return False
    ref = re.compile(r"""['"][./]*(?:[\w@.-]+/)*""" + re.escape(stem) + r"""(?:\.\w+)?['"]""")
    return any(ref.search(member.body) for member in (a, *group))


def _related(a: CodeBlock, b: CodeBlock, group: Sequence[CodeBlock]) -> bool:
    if not _same_family(a, b):
        return False
    dir_a, dir_b = _directory(a.file_hint or ""), _directory(b.file_hint or "")
    if dir_a and dir_b and (dir_a.startswith(dir_b) or dir_b.startswith(dir_a)):
        return True
    if is_config_file(b.file_hint):
        return True
    return _imports_between(a, group, b)


def group_files(blocks: Sequence[CodeBlock]) -> List[List[CodeBlock]]:
    pending = list(blocks)
    groups: List[List[CodeBlock]] = []
    while pending:
        head = pending.pop(0)
        group = [head]
        index = 0
        while index < len(pending):
            candidate = pending[index]
            if _related(head, candidate, group):
                group.append(candidate)
                pending.pop(index)
            else:
                index += 1
        groups.append(group)
    return groups


def _project_title(files: Sequence[ProjectFile], source_text: str, framework: Optional[str]) -> str:
    for pattern in _TITLE_PATTERNS:
        match = pattern.search(source_text)
        if match:
            return match.group(1).strip()
    if framework:
        return f"{framework.capitalize()} Application"
    return f"Project ({len(files)} files)"


def build_project(group: Sequence[CodeBlock], source_text: str = "") -> Optional[ProjectArtifact]:
    if len(group) < 2:
        return None
    files: List[ProjectFile] = []
    runtime: List[str] = []
    dev: List[str] = []
    framework: Optional[str] = None
    total_lines = 0
    for index, block in enumerate(group):
        deps = resolve_python(block.body) if block.language == "python" else resolve(block.body)
        for dep in deps:
            bucket = dev if is_dev_dependency(dep) else runtime
            if dep not in bucket:
                bucket.append(dep)
        framework = framework or detect_framework(block.body, block.language)
        total_lines += block.body.count("\n") + 1
        files.append(
            ProjectFile(
                file_name=block.file_hint or f"file_{index + 1}{extension_for(block.language)}",
                content=block.body,
                language=block.language,
                hash=content_hash(block.body)[:16],
                dependencies=deps,
            )
        )
    buildable = (framework in BUILDABLE_FRAMEWORKS) or any(f.language in SCRIPT_FAMILY for f in files)
    digest = content_hash("\n".join(f.content for f in files))
    return ProjectArtifact(
        id=digest[:12],
        title=_project_title(files, source_text, framework),
        framework=framework,
        files=files,
        metadata=ProjectMetadata(
            total_files=len(files),
            total_lines=total_lines,
            dependencies=runtime,
            dev_dependencies=dev,
            entry_point=find_entry_point(files),
            buildable=buildable,
        ),
    )


def detect_projects(blocks: Sequence[CodeBlock], source_text: str = "") -> List[ProjectArtifact]:
    """Group file-hinted blocks into multi-file projects (two or more related files)."""
    file_blocks = [b for b in blocks if b.is_file]
    if len(file_blocks) < 2:
        return []
    projects = []
    for group in group_files(file_blocks):
        project = build_project(group, source_text)
        if project is not None:
            projects.append(project)
    return projects
