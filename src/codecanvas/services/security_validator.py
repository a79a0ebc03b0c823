from __future__ import annotations

"""Static security scan of generated code.

Rules are plain data: a pattern, the languages it applies to and the issue it
raises. ``validate`` walks the table, adds the external-request and
obfuscation checks, then scores the result.
"""

import logging
import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Pattern, Sequence
from urllib.parse import urlparse

from ..domain.artifact_models import SecurityIssue, SecurityReport
from .language_rules import SCRIPT_FAMILY, normalize_language

LOG = logging.getLogger("codecanvas.security")

WEB_LANGUAGES: FrozenSet[str] = SCRIPT_FAMILY | {"html"}

SEVERITY_PENALTY = {"critical": 25, "high": 15, "medium": 8, "low": 3}

DEFAULT_ALLOWED_DOMAINS = ("localhost", "127.0.0.1", "github.com", "npmjs.com")

OBFUSCATION_THRESHOLD = 10


@dataclass(frozen=True)
class SecurityRule:
    rule_id: str
    type: str
    severity: str
    description: str
    pattern: Pattern[str]
    suggestion: str = ""
    languages: FrozenSet[str] = frozenset()
    once: bool = False

    def applies_to(self, language: str) -> bool:
        return not self.languages or language in self.languages


_I = re.IGNORECASE

SECURITY_RULES: List[SecurityRule] = [
    SecurityRule(
        "xss-innerhtml", "xss", "high",
        "Direct innerHTML assignment can lead to XSS vulnerabilities",
        re.compile(r"\.(?:inner|outer)HTML\s*\+?=(?!=)"),
        "Use textContent or sanitize HTML content",
        WEB_LANGUAGES,
    ),
    SecurityRule(
        "xss-document-write", "xss", "critical",
        "document.write() can introduce XSS vulnerabilities",
        re.compile(r"\bdocument\.write(?:ln)?\s*\("),
        "Use DOM manipulation methods instead",
        WEB_LANGUAGES,
    ),
    SecurityRule(
        "xss-insert-adjacent", "xss", "high",
        "insertAdjacentHTML without sanitization can lead to XSS",
        re.compile(r"\binsertAdjacentHTML\s*\("),
        "Use textContent or a trusted sanitization library",
        WEB_LANGUAGES,
    ),
    SecurityRule(
        "xss-jquery-html", "xss", "high",
        "jQuery html() method can introduce XSS vulnerabilities",
        re.compile(r"\$\([^)]*\)\.html\(\s*[^)\s]"),
        "Use .text() or sanitize the markup first",
        WEB_LANGUAGES,
    ),
    SecurityRule(
        "xss-dangerous-html", "xss", "high",
        "dangerouslySetInnerHTML renders unsanitized markup",
        re.compile(r"\bdangerouslySetInnerHTML\b"),
        "Render text children or sanitize the markup first",
        WEB_LANGUAGES,
    ),
    SecurityRule(
        "html-inline-js", "xss", "high",
        "Inline JavaScript detected in HTML",
        re.compile(r"\son[a-z]+\s*=\s*[\"']|javascript:", _I),
        "Use external JavaScript files and CSP headers",
        frozenset({"html"}),
    ),
    SecurityRule(
        "injection-eval", "injection", "critical",
        "eval() can execute arbitrary code and is extremely dangerous",
        re.compile(r"(?<![.\w])eval\s*\("),
        "Remove eval() and use safer alternatives",
    ),
    SecurityRule(
        "injection-function-constructor", "injection", "critical",
        "Function constructor can execute arbitrary code",
        re.compile(r"\bnew\s+Function\s*\(|(?<![.\w])Function\s*\([^)]*\)\s*\("),
        "Use regular function declarations",
        WEB_LANGUAGES,
    ),
    SecurityRule(
        "dangerous-settimeout", "injection", "high",
        "setTimeout or setInterval with a string argument can execute arbitrary code",
        re.compile(r"\bset(?:Timeout|Interval)\s*\(\s*[\"'`]"),
        "Pass a function reference instead",
        WEB_LANGUAGES,
    ),
    SecurityRule(
        "sql-injection", "injection", "critical",
        "Potential SQL injection vulnerability detected",
        re.compile(
            r"\b(?:SELECT\b[^\n]*?(?:\+|\$\{)[^\n]*?\bFROM|FROM\b[^\n]*?\bWHERE\b[^\n]*?(?:\+|\$\{)"
            r"|INSERT\b[^\n]*?(?:\+|\$\{)[^\n]*?\bINTO|INSERT\s+INTO\b[^\n]*?(?:\+|\$\{)"
            r"|UPDATE\b[^\n]*?\bSET\b[^\n]*?(?:\+|\$\{)|DELETE\b[^\n]*?\bWHERE\b[^\n]*?(?:\+|\$\{))",
            _I,
        ),
        "Use parameterized queries or prepared statements",
    ),
    SecurityRule(
        "command-injection", "injection", "critical",
        "Command execution function detected - potential injection risk",
        re.compile(
            r"(?<![.\w])(?:system|shell_exec|passthru|execSync|spawnSync)\s*\("
            r"|\bchild_process\b|\bos\.system\s*\("
        ),
        "Validate and sanitize all inputs, use safer alternatives",
    ),
    SecurityRule(
        "python-dangerous-call", "injection", "critical",
        "Dangerous Python builtin call",
        re.compile(r"(?<![.\w])(?:exec|compile|__import__)\s*\("),
        "Use safer alternatives or validate inputs thoroughly",
        frozenset({"python"}),
    ),
    SecurityRule(
        "dangerous-api", "dangerous-api", "medium",
        "Usage of a permission-gated browser API",
        re.compile(
            r"\bnavigator\.(?:geolocation|mediaDevices|bluetooth|usb|serial)\b"
            r"|\bgetUserMedia\s*\(|\bNotification\.requestPermission\s*\("
        ),
        "Ensure proper user consent and security measures",
        WEB_LANGUAGES,
    ),
    SecurityRule(
        "external-script", "privacy", "medium",
        "Loading external scripts can compromise security",
        re.compile(r"<script[^>]+src\s*=\s*[\"']https?://(?!localhost|127\.0\.0\.1)", _I),
        "Verify the source and use integrity hashes",
        frozenset({"html"}),
    ),
    SecurityRule(
        "privacy-password", "privacy", "high",
        "Hardcoded password detected",
        re.compile(r"\b(?:password|passwd|pwd)\s*[=:]\s*[\"'`][^\"'`\s]+[\"'`]", _I),
        "Use environment variables or secure configuration",
    ),
    SecurityRule(
        "privacy-api-key", "privacy", "high",
        "Hardcoded API key detected",
        re.compile(r"\bapi[_-]?key\s*[=:]\s*[\"'`][^\"'`\s]+[\"'`]", _I),
        "Use environment variables or secure configuration",
    ),
    SecurityRule(
        "privacy-secret", "privacy", "high",
        "Hardcoded secret or token detected",
        re.compile(r"\b(?:secret|token)\s*[=:]\s*[\"'`][^\"'`\s]+[\"'`]", _I),
        "Use environment variables or secure configuration",
    ),
    SecurityRule(
        "js-prototype-pollution", "malicious", "high",
        "Potential prototype pollution detected",
        re.compile(r"__proto__|constructor\.prototype"),
        "Avoid direct prototype manipulation",
        WEB_LANGUAGES,
        once=True,
    ),
    SecurityRule(
        "js-unsafe-json", "injection", "medium",
        "JSON.parse without validation can be dangerous",
        re.compile(r"\bJSON\.parse\s*\("),
        "Validate JSON data before parsing",
        WEB_LANGUAGES,
    ),
]

_REQUEST_URL = re.compile(
    r"""(?:\bfetch|\baxios(?:\.\w+)?|\$\.ajax|\.open)\s*\(\s*(?:["'`]\w+["'`]\s*,\s*)?["'`](https?://[^"'`\s]+)["'`]"""
)

_OBFUSCATION = [
    re.compile(r"\\x[0-9a-f]{2}", _I),
    re.compile(r"\\u[0-9a-f]{4}", _I),
    re.compile(r"\b[A-Za-z_][A-Za-z0-9_]{30,}\b"),
    re.compile(r"\[[^\]\n]*\]\[[^\]\n]*\]\[[^\]\n]*\]"),
]

_RECOMMENDATIONS = {
    "xss": ["Implement proper input sanitization and output encoding", "Use Content Security Policy (CSP) headers"],
    "injection": ["Use parameterized queries and prepared statements", "Implement strict input validation"],
    "privacy": ["Use environment variables for sensitive configuration", "Implement proper access controls"],
    "dangerous-api": [
        "Request minimal permissions and implement user consent",
        "Use secure communication protocols (HTTPS)",
    ],
    "malicious": ["Review the code manually before running it"],
}


def line_of(code: str, index: int) -> int:
    return code.count("\n", 0, index) + 1


def _issue(
    rule_id: str,
    kind: str,
    severity: str,
    description: str,
    code: str,
    index: Optional[int],
    suggestion: str = "",
) -> SecurityIssue:
    if index is None:
        return SecurityIssue(
            id=rule_id, type=kind, severity=severity, description=description, suggestion=suggestion or None
        )
    line = line_of(code, index)
    snippet = code.splitlines()[line - 1].strip()[:120] if code else None
    return SecurityIssue(
        id=f"{rule_id}-{line}",
        type=kind,
        severity=severity,
        description=description,
        line=line,
        suggestion=suggestion or None,
        snippet=snippet,
    )


def scan_rules(code: str, language: str, rules: Sequence[SecurityRule] = SECURITY_RULES) -> List[SecurityIssue]:
    issues: List[SecurityIssue] = []
    for rule in rules:
        if not rule.applies_to(language):
            continue
        for match in rule.pattern.finditer(code):
            issues.append(
                _issue(rule.rule_id, rule.type, rule.severity, rule.description, code, match.start(), rule.suggestion)
            )
            if rule.once:
                break
    return issues


def is_allowed_domain(url: str, allowed: Iterable[str] = DEFAULT_ALLOWED_DOMAINS) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(host == domain or host.endswith("." + domain) for domain in allowed)


def scan_requests(code: str, allowed: Iterable[str] = DEFAULT_ALLOWED_DOMAINS) -> List[SecurityIssue]:
    allowed = tuple(allowed)
    issues = []
    for match in _REQUEST_URL.finditer(code):
        url = match.group(1)
        if is_allowed_domain(url, allowed):
            continue
        issues.append(
            _issue(
                "external-request",
                "privacy",
                "medium",
                f"Network request to external domain: {url}",
                code,
                match.start(),
                "Verify the destination is trusted and secure",
            )
        )
    return issues


def obfuscation_score(code: str) -> int:
    return sum(len(p.findall(code)) for p in _OBFUSCATION)


def security_score(issues: Sequence[SecurityIssue]) -> int:
    return max(0, 100 - sum(SEVERITY_PENALTY.get(i.severity, 0) for i in issues))


def risk_level(issues: Sequence[SecurityIssue], score: int) -> str:
    critical = sum(1 for i in issues if i.severity == "critical")
    high = sum(1 for i in issues if i.severity == "high")
    if critical:
        return "critical"
    if high > 2 or score < 50:
        return "high"
    if high or score < 75:
        return "medium"
    return "low"


def recommendations(issues: Sequence[SecurityIssue], language: str) -> List[str]:
    out: List[str] = []
    for kind in _RECOMMENDATIONS:
        if any(i.type == kind for i in issues):
            out.extend(r for r in _RECOMMENDATIONS[kind] if r not in out)
    if issues and language in SCRIPT_FAMILY:
        out.append("Enable strict mode and handle errors explicitly")
    return out


def validate(
    code: str,
    language: str,
    heuristics: bool = True,
    allowed_domains: Iterable[str] = DEFAULT_ALLOWED_DOMAINS,
) -> SecurityReport:
    """Scan ``code`` and return a scored report.

    Score starts at 100 and loses a fixed penalty per issue severity. The code
    counts as secure when no high or critical issue was found.
    """
    language = normalize_language(language)
    issues = scan_rules(code, language)
    if language in WEB_LANGUAGES:
        issues.extend(scan_requests(code, allowed_domains))
    if heuristics and obfuscation_score(code) > OBFUSCATION_THRESHOLD:
        issues.append(
            _issue(
                "heuristic-obfuscation",
                "malicious",
                "medium",
                "Code appears to be obfuscated",
                code,
                None,
                "Review for potential malicious intent",
            )
        )

    score = security_score(issues)
    report = SecurityReport(
        is_secure=not any(i.severity in ("high", "critical") for i in issues),
        risk_level=risk_level(issues, score),
        score=score,
        issues=issues,
        recommendations=recommendations(issues, language),
    )
    LOG.info(
        "security_scan_completed",
        extra={"language": language, "issues": len(issues), "score": score, "risk": report.risk_level},
    )
    return report
