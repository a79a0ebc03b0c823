from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

LOG = logging.getLogger("codecanvas.llm")

SYSTEM_PROMPT = (
    "You are a coding assistant. When you write code, return one runnable single-file "
    "artifact inside fenced code blocks tagged with the language. Prefer React function "
    "components with a default export, or a complete HTML document."
)


class ModelStreamError(RuntimeError):
    pass


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def parse_sse_line(raw_line: Any) -> Tuple[Optional[str], bool]:
    """Return ``(token, done)`` for one line of an OpenAI-style event stream."""
    if not raw_line:
        return None, False
    line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
    if not line.startswith("data: "):
        return None, False
    data = line[6:].strip()
    if data == "[DONE]":
        return None, True
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        return None, False
    delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
    return (delta.get("content") or None), False


class ModelStreamClient:
    """OpenAI-compatible chat completion streaming."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        model: str,
        session: Optional[requests.Session] = None,
        timeout: Tuple[float, float] = (5.0, 120.0),
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self._session = session or _build_session()
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def build_messages(self, prompt: str, history: Optional[List[Dict[str, str]]] = None) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        for item in history or []:
            role = item.get("role")
            if role in ("user", "assistant") and item.get("content"):
                messages.append({"role": role, "content": item["content"]})
        messages.append({"role": "user", "content": prompt})
        return messages

    def iter_tokens(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        if not self.configured:
            raise ModelStreamError("language model is not configured")
        LOG.debug("llm_stream", extra={"model": self.model, "base_url": self.base_url})
        with self._session.post(
            f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"model": self.model, "messages": messages, "stream": True},
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                token, done = parse_sse_line(raw_line)
                if done:
                    break
                if token:
                    yield token

    async def stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        """Run the blocking HTTP stream in a worker thread and yield tokens on the loop."""
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue()

        def worker() -> None:
            try:
                for token in self.iter_tokens(messages):
                    loop.call_soon_threadsafe(queue.put_nowait, ("token", token))
            except (requests.RequestException, ModelStreamError) as exc:
                loop.call_soon_threadsafe(queue.put_nowait, ("error", exc))
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, ("done", None))

        pending = loop.run_in_executor(None, worker)
        try:
            while True:
                kind, value = await queue.get()
                if kind == "token":
                    yield value
                elif kind == "error":
                    LOG.warning("llm_stream_failed", extra={"model": self.model, "err": str(value)})
                    raise ModelStreamError(str(value)) from value
                else:
                    break
        finally:
            if pending.done():
                pending.result()
