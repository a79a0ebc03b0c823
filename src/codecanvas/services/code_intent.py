from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Pattern, Sequence

CODE_KEYWORDS: List[str] = [
    # languages and frameworks
    "javascript", "typescript", "python", "java", "html", "css", "react", "vue", "angular",
    "php", "c++", "c#", "golang", "rust", "kotlin", "swift", "ruby", "scala", "nodejs",
    # programming terms
    "function", "variable", "class", "method", "algorithm", "code", "programming", "script",
    "component", "api", "database", "sql", "query", "debug", "fix", "error", "bug",
    "implement", "build", "create", "develop", "app", "application", "website", "web",
    "software", "program", "page", "widget", "button", "form",
]

NON_CODE_KEYWORDS: List[str] = [
    "how are you", "hello", "hi", "thanks", "thank you", "goodbye", "bye",
    "weather", "news", "story", "joke", "recipe", "travel", "advice", "opinion",
    "explain", "what is", "who is", "where is", "why",
    "health", "fitness", "cooking", "music", "movie", "book", "art", "history",
    "science", "math", "philosophy", "psychology", "business", "marketing",
    "essay", "letter", "email", "poem", "creative writing",
    "tell me about", "what do you think", "i need advice", "recommend", "suggest",
    "opinion on", "thoughts on",
]

CODE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"function\s+\w+\s*\("),
    re.compile(r"\b(?:const|let|var)\s+\w+\s*="),
    re.compile(r"\bclass\s+\w+\s*[:{(]"),
    re.compile(r"\bimport\s+.*\bfrom\b"),
    re.compile(r"\bexport\s+(?:default|const|function|class)\b"),
    re.compile(r"console\.log"),
    re.compile(r"\b(?:document|window)\.\w+"),
    re.compile(r"<[a-z][\w-]*[^>]*>"),
    re.compile(r"\{\s*\w+:\s*\w+"),
    re.compile(r"\(\w*\)\s*=>"),
    re.compile(r"```"),
]

RESPONSE_THRESHOLD = 0.6
SUBSTANTIAL_LINES = 5

_FENCED = re.compile(r"```[\s\S]*?```")
_FENCED_BODY = re.compile(r"```[^\n`]*\n([\s\S]*?)```")


@dataclass(frozen=True)
class IntentResult:
    is_code_related: bool
    confidence: float
    reasoning: str

    @property
    def action(self) -> str:
        return "extract_code" if self.is_code_related else "skip_extraction"


def _phrase(keyword: str) -> Pattern[str]:
    return re.compile(r"(?<!\w)" + re.escape(keyword) + r"(?!\w)")


_CODE_TERMS = [_phrase(k) for k in CODE_KEYWORDS]
_NON_CODE_TERMS = [_phrase(k) for k in NON_CODE_KEYWORDS]


def keyword_score(text: str, terms: Sequence[Pattern[str]]) -> int:
    return sum(1 for term in terms if term.search(text))


def has_code_patterns(text: str) -> bool:
    return any(p.search(text) for p in CODE_PATTERNS)


def analyze_prompt(message: str) -> IntentResult:
    """Decide whether a user message asks for code."""
    lowered = message.lower()
    code = keyword_score(lowered, _CODE_TERMS)
    other = keyword_score(lowered, _NON_CODE_TERMS)
    patterns = has_code_patterns(message)

    confidence = abs(code - other) / max(code + other, 1)
    if patterns:
        confidence += 0.3
    related = code > other or patterns
    if related:
        reasoning = "message contains code syntax" if patterns else f"code keywords dominate ({code} vs {other})"
    else:
        reasoning = f"non-code keywords dominate ({other} vs {code})"
    return IntentResult(related, round(min(confidence, 1.0), 3), reasoning)


def code_ratio(content: str) -> float:
    if not content:
        return 0.0
    return sum(len(m) for m in _FENCED.findall(content)) / len(content)


def code_line_count(content: str) -> int:
    return sum(
        1 for body in _FENCED_BODY.findall(content) for line in body.splitlines() if line.strip()
    )


def analyze_response(content: str) -> IntentResult:
    """Decide whether model output carries code worth extracting."""
    blocks = len(_FENCED.findall(content))
    if not blocks:
        return IntentResult(False, 0.9, "no fenced code in response")
    ratio = code_ratio(content)
    if code_line_count(content) >= SUBSTANTIAL_LINES and ratio > 0.2:
        confidence = min(0.7 + ratio * 0.3, 1.0)
        return IntentResult(True, round(confidence, 3), f"substantial code ({blocks} blocks, {ratio:.0%} of text)")
    if ratio > 0.05:
        return IntentResult(True, round(0.5 + ratio * 0.3, 3), f"some code ({blocks} blocks, {ratio:.0%} of text)")
    return IntentResult(False, 0.8, f"mostly prose ({ratio:.0%} code)")


def should_extract(prompt: IntentResult, response: IntentResult, threshold: float = RESPONSE_THRESHOLD) -> bool:
    return prompt.is_code_related and response.is_code_related and response.confidence > threshold
