from src.codecanvas.services.code_intent import (
    IntentResult,
    analyze_prompt,
    analyze_response,
    should_extract,
)

COMPONENT_REPLY = (
    "Here you go:\n\n"
    "```jsx\n"
    "import { useState } from 'react';\n"
    "export default function Counter() {\n"
    "  const [n, setN] = useState(0);\n"
    "  return (\n"
    "    <button onClick={() => setN(n + 1)}>{n}</button>\n"
    "  );\n"
    "}\n"
    "```\n"
)


def test_code_request_is_detected():
    intent = analyze_prompt("Build a React component that shows a counter")
    assert intent.is_code_related
    assert intent.action == "extract_code"
    assert intent.confidence > 0.5


def test_small_talk_is_not_code():
    intent = analyze_prompt("Tell me a joke about the weather")
    assert not intent.is_code_related
    assert intent.action == "skip_extraction"


def test_code_syntax_in_prompt_wins_over_keywords():
    assert analyze_prompt("why does const total = items.length fail?").is_code_related


def test_response_without_fences_is_skipped():
    result = analyze_response("Paris is the capital of France.")
    assert not result.is_code_related
    assert result.confidence == 0.9


def test_substantial_code_response_is_confident():
    result = analyze_response(COMPONENT_REPLY)
    assert result.is_code_related
    assert result.confidence > 0.9


def test_mostly_prose_response_is_skipped():
    prose = "This is a long explanation of the idea. " * 12
    result = analyze_response(prose + "```js\nx()\n```")
    assert not result.is_code_related


def test_should_extract_needs_both_sides():
    yes = IntentResult(True, 1.0, "code")
    no = IntentResult(False, 0.9, "chat")
    weak = IntentResult(True, 0.55, "some code")
    assert should_extract(yes, yes)
    assert not should_extract(no, yes)
    assert not should_extract(yes, weak)
