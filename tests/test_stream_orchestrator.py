import asyncio

import pytest

from src.codecanvas.core import state_machine as sm
from src.codecanvas.infrastructure.object_storage import InMemoryObjectStorage, UrlSigner
from src.codecanvas.services.artifact_cache import ContentAddressedCache
from src.codecanvas.services.bundler import BundlerAdapter
from src.codecanvas.services.package_installer import PackageInstaller
from src.codecanvas.services.stream_orchestrator import StreamOrchestrator
from src.codecanvas.services.stream_session import StreamOptions
from tests.utils import FakeRunner, ManualClock, RecordingSink

WIDGET_REPLY = (
    "Here is a component:\n\n"
    "```jsx\n"
    "export default function Widget() {\n"
    "  return <div className=\"widget\">Hello</div>;\n"
    "}\n"
    "```\n\n"
    "Let me know if you want changes."
)


class BrokenStorage(InMemoryObjectStorage):
    async def put(self, key, data, metadata=None):
        raise OSError("bucket unreachable")


def _orchestrator(tmp_path, runner=None, storage=None, clock=None, **kwargs):
    runner = runner or FakeRunner()
    installer = PackageInstaller(tmp_path / "sandbox", runner=runner)
    bundler = BundlerAdapter(installer, runner=runner)
    cache = ContentAddressedCache(storage or InMemoryObjectStorage(UrlSigner(secret="s3cret")))
    return StreamOrchestrator(bundler, cache, clock=clock or ManualClock(), **kwargs)


async def _chunks(text, size=17):
    for start in range(0, len(text), size):
        yield text[start:start + size]


def _data(sink, event_type):
    return [e["data"] for e in sink.events() if e["type"] == event_type]


@pytest.mark.asyncio
async def test_artifact_then_build_events_in_order(tmp_path):
    orchestrator = _orchestrator(tmp_path)
    sink = RecordingSink()
    session = orchestrator.create_session(sink)
    await orchestrator.run(session, _chunks(WIDGET_REPLY))

    types = sink.types()
    assert types[0] == "connection"
    assert types[-1] == "complete"
    assert types.count("artifact") == 1
    builds = _data(sink, "build")
    assert [b["status"] for b in builds] == ["started", "completed"]
    assert types.index("artifact") < types.index("build")
    artifact = _data(sink, "artifact")[0]
    assert artifact["title"] == "Widget"
    assert artifact["url"] and artifact["storage_key"].endswith(".jsx")
    result = builds[1]["build_result"]
    assert result["success"] is True
    assert result["bundle_url"] and result["preview_url"]
    assert sorted(result["installed_packages"]) == ["react", "react-dom"]
    assert _data(sink, "complete")[0]["reason"] == "completed"
    assert session.state == sm.COMPLETED
    assert sink.closed and sink.writes_after_close == 0
    assert orchestrator.get_session(session.id) is None


@pytest.mark.asyncio
async def test_chunks_are_forwarded_verbatim(tmp_path):
    orchestrator = _orchestrator(tmp_path)
    sink = RecordingSink()
    session = orchestrator.create_session(sink)
    await orchestrator.run(session, _chunks(WIDGET_REPLY, size=9))
    assert "".join(d["content"] for d in _data(sink, "chunk")) == WIDGET_REPLY
    assert session.total_chunks == len(_data(sink, "chunk"))


@pytest.mark.asyncio
async def test_failed_build_reports_errors(tmp_path):
    stderr = '✘ [ERROR] Unexpected "<"\n\n    <stdin>:2:9:\n'
    orchestrator = _orchestrator(tmp_path, runner=FakeRunner(bundle_exit=1, bundle_stderr=stderr))
    sink = RecordingSink()
    session = orchestrator.create_session(sink)
    await orchestrator.run(session, _chunks(WIDGET_REPLY))
    builds = _data(sink, "build")
    assert [b["status"] for b in builds] == ["started", "failed"]
    assert builds[1]["errors"] == ['Unexpected "<" (2:9)']
    assert sink.types()[-1] == "complete"


@pytest.mark.asyncio
async def test_building_disabled_emits_artifact_only(tmp_path):
    runner = FakeRunner()
    orchestrator = _orchestrator(tmp_path, runner=runner)
    sink = RecordingSink()
    session = orchestrator.create_session(sink, options=StreamOptions(enable_building=False))
    await orchestrator.run(session, _chunks(WIDGET_REPLY))
    assert "build" not in sink.types()
    assert "artifact" in sink.types()
    assert runner.calls == []
    assert _data(sink, "connection")[0]["capabilities"]["building"] is False


@pytest.mark.asyncio
async def test_unfenced_code_is_picked_up_at_completion(tmp_path):
    orchestrator = _orchestrator(tmp_path)
    sink = RecordingSink()
    session = orchestrator.create_session(sink)
    reply = "function greet(name) {\n  return 'hi ' + name;\n}\nconsole.log(greet('you'));\n"
    await orchestrator.run(session, _chunks(reply))
    (artifact,) = _data(sink, "artifact")
    assert artifact["language"] == "javascript"
    assert [b["status"] for b in _data(sink, "build")] == ["started", "completed"]


@pytest.mark.asyncio
async def test_growing_artifact_is_reemitted_when_content_changes(tmp_path):
    orchestrator = _orchestrator(tmp_path, runner=FakeRunner())
    sink = RecordingSink()
    session = orchestrator.create_session(sink, options=StreamOptions(enable_building=False))
    first = "```css\n.card { color: red; padding: 4px; }\n```\n"
    second = "```html\n<main class=\"card\">Hello there</main>\n```\n"
    await orchestrator.on_chunk(session, first)
    await orchestrator.on_chunk(session, first)
    await orchestrator.on_chunk(session, second)
    await orchestrator.on_stream_complete(session)
    artifacts = _data(sink, "artifact")
    assert len(artifacts) == 2
    assert artifacts[0]["hash"] != artifacts[1]["hash"]
    assert artifacts[1]["language"] == "html"


@pytest.mark.asyncio
async def test_oldest_session_is_evicted_at_capacity(tmp_path):
    clock = ManualClock()
    orchestrator = _orchestrator(tmp_path, clock=clock, max_sessions=2)
    sinks = [RecordingSink() for _ in range(3)]
    sessions = []
    for sink in sinks:
        sessions.append(orchestrator.create_session(sink))
        clock.advance(1)
    assert sessions[0].state == sm.EVICTED
    assert sinks[0].closed
    assert _data(sinks[0], "complete")[0]["reason"] == "capacity_limit"
    assert orchestrator.stats()["total_sessions"] == 2
    assert orchestrator.closed_counts == {"capacity_limit": 1}
    assert not sinks[1].closed and not sinks[2].closed


@pytest.mark.asyncio
async def test_stalled_stream_times_out(tmp_path):
    orchestrator = _orchestrator(tmp_path, session_timeout=0.05)
    sink = RecordingSink()
    session = orchestrator.create_session(sink)

    async def stalled():
        yield "```js\nconsole.log('start');"
        await asyncio.sleep(1)
        yield "\n```"

    await orchestrator.run(session, stalled())
    assert session.state == sm.TIMEOUT
    assert _data(sink, "complete")[0]["reason"] == "timeout"
    assert "artifact" not in sink.types()


@pytest.mark.asyncio
async def test_sweep_times_out_idle_sessions(tmp_path):
    clock = ManualClock()
    orchestrator = _orchestrator(tmp_path, clock=clock, session_timeout=300)
    idle = orchestrator.create_session(RecordingSink())
    clock.advance(200)
    busy = orchestrator.create_session(RecordingSink())
    clock.advance(150)
    assert await orchestrator.sweep_inactive() == 1
    assert idle.state == sm.TIMEOUT
    assert not busy.terminal


@pytest.mark.asyncio
async def test_stream_error_closes_with_error_event(tmp_path):
    orchestrator = _orchestrator(tmp_path)
    sink = RecordingSink()
    session = orchestrator.create_session(sink)

    async def failing():
        yield "partial"
        raise RuntimeError("model connection reset")

    await orchestrator.run(session, failing())
    assert session.state == sm.ERROR
    assert sink.types()[-2:] == ["error", "complete"]
    assert _data(sink, "error")[0]["message"] == "model connection reset"


@pytest.mark.asyncio
async def test_storage_failure_does_not_stop_the_stream(tmp_path):
    orchestrator = _orchestrator(tmp_path, storage=BrokenStorage(UrlSigner(secret="s3cret")))
    sink = RecordingSink()
    session = orchestrator.create_session(sink)
    await orchestrator.run(session, _chunks(WIDGET_REPLY))
    artifact = _data(sink, "artifact")[0]
    assert artifact["url"] is None and artifact["storage_key"] is None
    completed = _data(sink, "build")[-1]
    assert completed["status"] == "completed"
    assert completed["build_result"]["bundle_url"] is None
    assert session.state == sm.COMPLETED


@pytest.mark.asyncio
async def test_client_disconnect_stops_event_writes(tmp_path):
    orchestrator = _orchestrator(tmp_path)
    sink = RecordingSink(fail_after=2)
    session = orchestrator.create_session(sink)
    await orchestrator.run(session, _chunks(WIDGET_REPLY))
    assert session.state == sm.ERROR
    assert session.close_reason == "write_error"
    assert len(sink.frames) == 2
    assert sink.writes_after_close == 0


@pytest.mark.asyncio
async def test_multi_file_reply_emits_project(tmp_path):
    orchestrator = _orchestrator(tmp_path)
    sink = RecordingSink()
    session = orchestrator.create_session(sink)
    reply = (
        "```jsx\n// src/App.jsx\nimport Button from './Button';\n"
        "export default function App() { return <Button />; }\n```\n"
        "```jsx\n// src/Button.jsx\nexport default function Button() { return <button>Go</button>; }\n```\n"
    )
    await orchestrator.run(session, _chunks(reply))
    (project,) = _data(sink, "project")
    assert [f["file_name"] for f in project["files"]] == ["src/App.jsx", "src/Button.jsx"]
    assert len(project["storage_keys"]) == 2
    project_builds = [b for b in _data(sink, "build") if b["type"] == "project"]
    assert [b["status"] for b in project_builds] == ["started", "completed"]
    assert session.projects_processed == 1


@pytest.mark.asyncio
async def test_shutdown_evicts_live_sessions(tmp_path):
    orchestrator = _orchestrator(tmp_path)
    sink = RecordingSink()
    session = orchestrator.create_session(sink)
    orchestrator.start()
    await orchestrator.shutdown()
    assert session.state == sm.EVICTED
    assert _data(sink, "complete")[0]["reason"] == "server_shutdown"
    assert orchestrator.stats()["active_sessions"] == 0


async def _pending_build_session(tmp_path, **kwargs):
    orchestrator = _orchestrator(tmp_path, runner=FakeRunner(install_delay=0.1), **kwargs)
    sink = RecordingSink()
    session = orchestrator.create_session(sink)
    await orchestrator.on_chunk(session, WIDGET_REPLY)
    pending = list(session.pending_builds)
    assert len(pending) == 1
    return orchestrator, sink, session, pending


@pytest.mark.asyncio
async def test_build_finishing_after_timeout_writes_nothing(tmp_path):
    orchestrator, sink, session, pending = await _pending_build_session(tmp_path)
    await orchestrator.on_timeout(session)
    await asyncio.gather(*pending)
    assert session.state == sm.TIMEOUT
    assert sink.writes_after_close == 0
    assert sink.types()[-1] == "complete"
    assert [b["status"] for b in _data(sink, "build")] == ["started"]


@pytest.mark.asyncio
async def test_build_finishing_after_eviction_writes_nothing(tmp_path):
    orchestrator, sink, session, pending = await _pending_build_session(tmp_path, max_sessions=1)
    orchestrator.create_session(RecordingSink())
    await asyncio.gather(*pending)
    assert session.state == sm.EVICTED
    assert sink.writes_after_close == 0
    assert _data(sink, "complete")[0]["reason"] == "capacity_limit"
    assert [b["status"] for b in _data(sink, "build")] == ["started"]


@pytest.mark.asyncio
async def test_later_artifact_is_emitted_while_earlier_build_runs(tmp_path):
    orchestrator = _orchestrator(tmp_path, runner=FakeRunner(install_delay=0.1))
    sink = RecordingSink()
    session = orchestrator.create_session(sink)
    first = "```jsx\nexport default function Widget() {\n  return <div className=\"widget\">Hello</div>;\n}\n```\n"
    second = (
        "```javascript\nexport const formatPrice = (cents) => `$${(cents / 100).toFixed(2)}`;\n"
        "console.log(formatPrice(1999));\n```\n"
    )
    await orchestrator.on_chunk(session, first)
    await orchestrator.on_chunk(session, second)
    assert [b["status"] for b in _data(sink, "build")] == ["started", "started"]
    assert len(session.pending_builds) == 2

    await orchestrator.on_stream_complete(session)
    events = [(e["type"], e["data"]) for e in sink.events()]
    artifact_positions = [n for n, (t, _) in enumerate(events) if t == "artifact"]
    completed_positions = [n for n, (t, d) in enumerate(events) if t == "build" and d["status"] == "completed"]
    assert len(artifact_positions) == 2
    assert len(completed_positions) == 2
    assert artifact_positions[1] < completed_positions[0]
    first_id = events[artifact_positions[0]][1]["id"]
    started = [d["artifact_id"] for t, d in events if t == "build" and d["status"] == "started"]
    assert started[0] == first_id


@pytest.mark.asyncio
async def test_session_cap_below_one_is_clamped(tmp_path):
    orchestrator = _orchestrator(tmp_path, max_sessions=0)
    assert orchestrator.max_sessions == 1
    first = orchestrator.create_session(RecordingSink())
    second = orchestrator.create_session(RecordingSink())
    assert first.state == sm.EVICTED
    assert orchestrator.get_session(second.id) is second


@pytest.mark.asyncio
async def test_chat_prompt_skips_extraction(tmp_path):
    orchestrator = _orchestrator(tmp_path)
    sink = RecordingSink()
    session = orchestrator.create_session(sink, prompt="Tell me a joke about the weather")
    await orchestrator.run(session, _chunks(WIDGET_REPLY))
    assert not session.prompt_intent.is_code_related
    assert _data(sink, "artifact") == []
    assert "security" not in sink.types()
    assert session.state == sm.COMPLETED


@pytest.mark.asyncio
async def test_code_prompt_extracts(tmp_path):
    orchestrator = _orchestrator(tmp_path)
    sink = RecordingSink()
    session = orchestrator.create_session(sink, prompt="Build a React widget")
    await orchestrator.run(session, _chunks(WIDGET_REPLY))
    assert session.prompt_intent.is_code_related
    assert len(_data(sink, "artifact")) == 1


@pytest.mark.asyncio
async def test_security_report_precedes_complete(tmp_path):
    orchestrator = _orchestrator(tmp_path)
    sink = RecordingSink()
    session = orchestrator.create_session(sink, options=StreamOptions(enable_building=False))
    reply = "```javascript\ndocument.write('<p>' + location.hash + '</p>');\n```\n"
    await orchestrator.run(session, _chunks(reply))
    assert sink.types()[-2:] == ["security", "complete"]
    (report,) = _data(sink, "security")
    assert report["artifact_id"] == _data(sink, "artifact")[0]["id"]
    assert report["risk_level"] == "critical"
    assert report["is_secure"] is False
    assert report["issues"][0]["id"] == "xss-document-write-1"


@pytest.mark.asyncio
async def test_security_report_can_be_disabled(tmp_path):
    orchestrator = _orchestrator(tmp_path)
    sink = RecordingSink()
    session = orchestrator.create_session(sink, options=StreamOptions(enable_building=False, enable_security=False))
    await orchestrator.run(session, _chunks(WIDGET_REPLY))
    assert "security" not in sink.types()
    assert sink.types()[-1] == "complete"
