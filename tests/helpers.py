"""Shared test helpers and fakes."""

from __future__ import annotations

import asyncio
from typing import Any

from relic.config import MethodConfig, RelicConfig
from relic.errors import TransportError
from relic.reliability.models import BinaryPayload

# Smallest valid-looking PNG capture the encoder accepts
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
PNG_BYTES = PNG_MAGIC + b"\x00" * 2040

GLB_BYTES = b"glTF" + b"\x02\x00\x00\x00" + b"\x01" * 64


def http_error(status: int, body: str = "") -> TransportError:
    """A TransportError as RequestsTransport raises it for an HTTP failure."""
    return TransportError(f"HTTP {status} from service", status_code=status, body=body)


class Gate:
    """Scripted outcome that blocks the call until released."""

    def __init__(self, value: Any = None) -> None:
        self.value = value
        self.entered = asyncio.Event()
        self.release = asyncio.Event()


class FakeTransport:
    """Transport returning scripted outcomes per method.

    Each ``script`` entry is consumed by one ``invoke``: an exception instance
    is raised, a Gate blocks until released, anything else is returned. A
    method called past the end of its script repeats the last entry.
    """

    def __init__(self, config: RelicConfig) -> None:
        self._names = {method.url: name for name, method in config.methods.items()}
        self._scripts: dict[str, list[Any]] = {}
        self.files: dict[str, Any] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fetches: list[str] = []

    def script(self, name: str, *outcomes: Any) -> None:
        self._scripts[name] = list(outcomes)

    def calls_to(self, name: str) -> int:
        return sum(1 for called, _ in self.calls if called == name)

    async def invoke(self, method: MethodConfig, body: dict[str, Any]) -> Any:
        name = self._names[method.url]
        self.calls.append((name, body))
        script = self._scripts.get(name)
        if not script:
            raise http_error(500, f"no script for {name}")
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, Gate):
            outcome.entered.set()
            await outcome.release.wait()
            outcome = outcome.value
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def fetch(self, url: str, *, timeout: float = 120.0) -> BinaryPayload:
        self.fetches.append(url)
        if url not in self.files:
            raise http_error(404, f"no file at {url}")
        outcome = self.files[url]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        # Yield like a real sleep so other tasks can run
        await asyncio.sleep(0)


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(
        self,
        status_code: int = 200,
        *,
        json_body: Any = None,
        text: str = "",
        content: bytes = b"",
        content_type: str = "",
        reason: str = "",
    ) -> None:
        self.status_code = status_code
        self._json = json_body
        self.text = text
        self.content = content
        self.reason = reason
        self.headers = {"Content-Type": content_type} if content_type else {}

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """Stand-in for requests.Session recording calls and replaying responses."""

    def __init__(self, responses: list[Any]) -> None:
        self._responses = responses
        self.requests: list[dict[str, Any]] = []
        self.closed = False

    def __enter__(self) -> FakeSession:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.closed = True

    def _next(self, **request: Any) -> FakeResponse:
        self.requests.append(request)
        outcome = self._responses.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next(verb="POST", url=url, **kwargs)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next(verb="GET", url=url, **kwargs)

    def head(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next(verb="HEAD", url=url, **kwargs)
