"""Transport layer for remote inference services.

The executor talks to services only through the Transport protocol, so tests
substitute a fake without touching global state. The default
RequestsTransport acquires a fresh ``requests.Session`` for each call and
closes it when the call returns; nothing is shared between calls.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import Any, Protocol
from urllib.parse import unquote, urlparse

import requests

from contracts.encoding import EncodedMedia
from relic.config import MethodConfig
from relic.errors import ConfigurationError, TransportError
from relic.reliability.models import BinaryPayload
from relic.utils.async_utils import run_in_thread

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "relic-orchestrator/0.1"
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_FETCH_TIMEOUT = 120.0

# Keys that mark a JSON body as a result rather than an error envelope
RESULT_KEYS = frozenset({"url", "path", "data", "choices", "output", "outputs"})


class Transport(Protocol):
    """Interface for performing one network call."""

    async def invoke(self, method: MethodConfig, body: dict[str, Any]) -> Any:
        """Call a method's inference endpoint once.

        Args:
            method: Resolved method configuration.
            body: JSON request body.

        Returns:
            The raw, un-normalized service payload.

        Raises:
            TransportError: If the call failed at the network or HTTP level.
        """
        ...

    async def fetch(self, url: str, *, timeout: float = DEFAULT_FETCH_TIMEOUT) -> BinaryPayload:
        """Download a file referenced by a service result.

        Raises:
            TransportError: If the download failed.
        """
        ...


def build_request_body(
    method: MethodConfig,
    encoded: EncodedMedia,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the JSON body for one call to a method.

    Plan-step params override the method's configured defaults. For "chat"
    methods the ``user_message`` param becomes the text part of the user turn.

    Args:
        method: Resolved method configuration.
        encoded: Input media in transferable form.
        params: Per-step parameter overrides.

    Returns:
        Request body ready to be posted as JSON.
    """
    merged = {**method.params, **(params or {})}

    if method.request_style == "chat":
        user_text = merged.pop("user_message", "Analyze this image.")
        messages: list[dict[str, Any]] = []
        if method.system_prompt:
            messages.append({"role": "system", "content": method.system_prompt})
        messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": user_text},
                    {"type": "image_url", "image_url": {"url": encoded.data_uri}},
                ],
            }
        )
        body = {**merged, "messages": messages}
        body.setdefault("response_format", {"type": "json_object"})
        return body

    return {**merged, method.input_field: encoded.data_uri}


def _file_name(url: str) -> str | None:
    path = urlparse(url).path
    name = unquote(path.rsplit("/", 1)[-1]) if path else ""
    return name or None


def _service_error(payload: Any) -> str | None:
    """Extract the message from a JSON error envelope, if that is what this is."""
    if not isinstance(payload, dict) or RESULT_KEYS & payload.keys():
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        error = error.get("message")
    if isinstance(error, str) and error:
        return error
    return None


class RequestsTransport:
    """Transport backed by ``requests`` with one session per call.

    Example:
        >>> transport = RequestsTransport()
        >>> payload = await transport.invoke(config.get_method("triposr"), body)
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        """Initialize the transport.

        Args:
            user_agent: User-Agent header sent with every call.
            connect_timeout: Connect timeout in seconds.
            session_factory: Creates the per-call session.
        """
        self._user_agent = user_agent
        self._connect_timeout = connect_timeout
        self._session_factory = session_factory

    def _headers(self, method: MethodConfig | None = None) -> dict[str, str]:
        headers = {"User-Agent": self._user_agent}
        if method is not None and method.api_key_env:
            api_key = os.environ.get(method.api_key_env)
            if not api_key:
                raise ConfigurationError(
                    f"{method.api_key_env} not configured",
                    details={"env": method.api_key_env},
                )
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def invoke(self, method: MethodConfig, body: dict[str, Any]) -> Any:
        return await run_in_thread(self._post, method, body)

    async def fetch(self, url: str, *, timeout: float = DEFAULT_FETCH_TIMEOUT) -> BinaryPayload:
        return await run_in_thread(self._get, url, timeout)

    def _post(self, method: MethodConfig, body: dict[str, Any]) -> Any:
        headers = self._headers(method)
        headers["Accept"] = "application/json, */*"
        url = method.url

        with self._session_factory() as session:
            try:
                response = session.post(
                    url,
                    json=body,
                    headers=headers,
                    timeout=(self._connect_timeout, method.timeout_seconds),
                )
            except requests.exceptions.RequestException as e:
                raise TransportError(f"Request to {url} failed: {e}", url=url, cause=e) from e

            return self._decode(response, url)

    def _get(self, url: str, timeout: float) -> BinaryPayload:
        with self._session_factory() as session:
            try:
                response = session.get(
                    url,
                    headers=self._headers(),
                    timeout=(self._connect_timeout, timeout),
                )
            except requests.exceptions.RequestException as e:
                raise TransportError(f"Failed to fetch {url}: {e}", url=url, cause=e) from e

            if response.status_code >= 400:
                raise TransportError(
                    f"Failed to fetch file: {response.status_code} {response.reason}",
                    status_code=response.status_code,
                    url=url,
                )
            content_type = response.headers.get("Content-Type") or None
            return BinaryPayload(
                data=response.content, content_type=content_type, name=_file_name(url)
            )

    def _decode(self, response: requests.Response, url: str) -> Any:
        if response.status_code >= 400:
            raise TransportError(
                f"HTTP {response.status_code} from {url}",
                status_code=response.status_code,
                url=url,
                body=response.text[:500],
            )

        content_type = response.headers.get("Content-Type", "")
        if "json" in content_type:
            try:
                payload = response.json()
            except ValueError as e:
                raise TransportError(f"Invalid JSON from {url}", url=url, cause=e) from e
            message = _service_error(payload)
            if message is not None:
                raise TransportError(message, url=url)
            return payload

        if content_type.startswith("text/"):
            return response.text

        return BinaryPayload(
            data=response.content,
            content_type=content_type or None,
            name=_file_name(url),
        )
