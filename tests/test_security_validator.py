from src.codecanvas.domain.artifact_models import SecurityIssue
from src.codecanvas.services.security_validator import (
    is_allowed_domain,
    risk_level,
    security_score,
    validate,
)


def _ids(report):
    return {issue.id for issue in report.issues}


def test_clean_component_scores_full_marks():
    code = (
        "export default function Counter() {\n"
        "  const [n, setN] = useState(0);\n"
        "  return <button onClick={() => setN(n + 1)}>{n}</button>;\n"
        "}\n"
    )
    report = validate(code, "jsx")
    assert report.issues == []
    assert report.score == 100
    assert report.risk_level == "low"
    assert report.is_secure
    assert report.recommendations == []


def test_innerhtml_and_eval_are_flagged_with_lines():
    code = "const el = document.getElementById('out');\nel.innerHTML = userInput;\neval(userInput);\n"
    report = validate(code, "javascript")
    assert _ids(report) == {"xss-innerhtml-2", "injection-eval-3"}
    inner = next(i for i in report.issues if i.type == "xss")
    assert inner.snippet == "el.innerHTML = userInput;"
    assert report.score == 60
    assert report.risk_level == "critical"
    assert not report.is_secure
    assert "Use Content Security Policy (CSP) headers" in report.recommendations


def test_python_rules_only_apply_to_python():
    code = "import os\ncode = input()\nexec(code)\nos.system('ls ' + code)\n"
    report = validate(code, "python")
    assert _ids(report) == {"python-dangerous-call-3", "command-injection-4"}
    assert report.score == 50
    js = validate("const re = /a/;\nre.exec('abc');\n", "javascript")
    assert js.issues == []


def test_markup_rules_for_html_documents():
    page = '<button onclick="go()">Go</button>\n<script src="https://cdn.example.net/x.js"></script>'
    report = validate(page, "html")
    assert _ids(report) == {"html-inline-js-1", "external-script-2"}
    assert report.score == 77
    assert report.risk_level == "medium"
    assert not report.is_secure


def test_external_requests_respect_allowed_domains():
    code = "fetch('https://api.example.com/data').then(r => r.json());\nfetch('http://localhost:3000/api');\n"
    report = validate(code, "javascript")
    (issue,) = report.issues
    assert issue.id == "external-request-1"
    assert "api.example.com" in issue.description
    assert report.is_secure and report.risk_level == "low"
    assert is_allowed_domain("https://raw.github.com/x")
    assert not is_allowed_domain("https://notgithub.com/x")


def test_hardcoded_credentials_are_privacy_issues():
    report = validate('const apiKey = "sk-123456";\n', "javascript")
    assert [(i.type, i.severity) for i in report.issues] == [("privacy", "high")]


def test_obfuscation_heuristic_can_be_disabled():
    code = "const s = '" + "\\x41" * 12 + "';\n"
    assert "heuristic-obfuscation" in _ids(validate(code, "javascript"))
    assert validate(code, "javascript", heuristics=False).issues == []


def test_score_and_risk_tiers():
    high = [SecurityIssue(id=f"h{n}", type="xss", severity="high", description="x") for n in range(3)]
    assert security_score(high) == 55
    assert risk_level(high, security_score(high)) == "high"
    low = [SecurityIssue(id="l", type="privacy", severity="low", description="x")]
    assert risk_level(low, security_score(low)) == "low"
    assert security_score(high * 3) == 0
