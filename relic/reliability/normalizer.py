"""Response normalizer: resolve loosely-shaped service results to bytes.

Hosted model spaces answer with a binary blob, a file reference object
(``url`` or ``path``), a data URI, a bare URL, or an array of outputs in
which the wanted artifact is not necessarily first. The rules below are
applied in strict order and the first match wins:

1. binary payload: returned as-is
2. object with ``url``: fetched (relative URLs resolve against the base URL)
3. object with ``path``: fetched from ``{base_url}{file_route}{path}``
4. ``data:`` URI string: base64 payload decoded in place
5. absolute URL string: fetched
6. array: scanned for an element whose declared format is accepted; an
   exact ``type``/MIME match ranks above one inferred from a file extension,
   ties keep array order; otherwise the first element that resolves at all

Also understood: ``{"data": [...]}`` envelopes (scanned as arrays), objects
carrying an inline base64 ``data`` string, and chat completions, whose
``choices[0].message.content`` must be a JSON document.

Any fetch failure or unresolvable payload raises NormalizationError, which
is fatal for the method attempt.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any
from urllib.parse import unquote_to_bytes, urlparse

from relic.config import MethodConfig
from relic.errors import ErrorCode, NormalizationError, RelicError
from relic.reliability.models import BinaryPayload, NormalizedArtifact
from relic.reliability.transport import Transport

logger = logging.getLogger(__name__)

MIME_FORMATS = {
    "model/gltf-binary": "glb",
    "model/gltf+json": "gltf",
    "model/obj": "obj",
    "application/json": "json",
    "image/jpeg": "jpg",
    "image/svg+xml": "svg",
}

# Keys an output object may use to declare what it is
DECLARED_KEYS = ("type", "format", "mime_type", "mime")

BINARY_TYPES = (bytes, bytearray, memoryview)

EXACT_MATCH = 0
INFERRED_MATCH = 1
NO_MATCH = 2


def format_from_mime(mime: str | None) -> str | None:
    """Map a MIME type to a short format name ("model/gltf-binary" -> "glb")."""
    if not mime:
        return None
    mime = mime.split(";", 1)[0].strip().lower()
    if not mime or mime == "application/octet-stream":
        return None
    if mime in MIME_FORMATS:
        return MIME_FORMATS[mime]
    return mime.rsplit("/", 1)[-1] or None


def format_from_name(name: str | None) -> str | None:
    """Format from a file name or URL extension, if it has one."""
    if not name:
        return None
    path = urlparse(name).path if "://" in name else name
    leaf = path.rsplit("/", 1)[-1]
    if "." not in leaf:
        return None
    ext = leaf.rsplit(".", 1)[-1].lower()
    return ext or None


def _is_absolute_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def _declared(item: Any) -> list[str]:
    """Format labels an output declares explicitly."""
    if isinstance(item, BinaryPayload):
        labels = [item.content_type or ""]
    elif isinstance(item, dict):
        labels = [str(item[key]) for key in DECLARED_KEYS if item.get(key)]
    else:
        return []
    declared: list[str] = []
    for label in labels:
        label = label.strip().lower()
        if not label:
            continue
        declared.append(label)
        mapped = format_from_mime(label) if "/" in label else None
        if mapped:
            declared.append(mapped)
    return declared


def _inferred(item: Any) -> list[str]:
    """Format labels inferred from file names or URLs."""
    names: list[str | None] = []
    if isinstance(item, BinaryPayload):
        names.append(item.name)
    elif isinstance(item, dict):
        names.extend(item.get(key) for key in ("url", "path", "orig_name", "name"))
    elif isinstance(item, str):
        if item.startswith("data:"):
            return [f] if (f := format_from_mime(item[5:].split(",", 1)[0])) else []
        names.append(item)
    return [f for n in names if isinstance(n, str) and (f := format_from_name(n))]


def _match_rank(item: Any, accept: set[str]) -> int:
    if not accept:
        return NO_MATCH
    if any(label in accept for label in _declared(item)):
        return EXACT_MATCH
    if any(label in accept for label in _inferred(item)):
        return INFERRED_MATCH
    return NO_MATCH


def _has_location(item: dict[str, Any]) -> bool:
    return any(isinstance(item.get(key), str) and item.get(key) for key in ("url", "path"))


def _is_resolvable(item: Any) -> bool:
    """Whether rules 1-5 (or the inline-data form) apply to an element."""
    if isinstance(item, (BinaryPayload, *BINARY_TYPES)):
        return True
    if isinstance(item, str):
        return item.startswith("data:") or _is_absolute_url(item)
    if isinstance(item, dict):
        return (
            isinstance(item.get("url"), str)
            or isinstance(item.get("path"), str)
            or isinstance(item.get("data"), str)
        )
    return False


def decode_data_uri(uri: str) -> tuple[bytes, str | None]:
    """Decode a ``data:`` URI into its bytes and MIME type.

    Raises:
        NormalizationError: If the URI is malformed or not valid base64.
    """
    header, sep, payload = uri[5:].partition(",")
    if not sep:
        raise NormalizationError(
            "Malformed data URI: missing ',' separator", code=ErrorCode.NRM_INVALID_CONTENT
        )
    parts = header.split(";")
    mime = parts[0] or None
    if "base64" in parts[1:]:
        try:
            return base64.b64decode(payload, validate=True), mime
        except (binascii.Error, ValueError) as e:
            raise NormalizationError(
                f"Invalid base64 in data URI: {e}",
                code=ErrorCode.NRM_INVALID_CONTENT,
                cause=e,
            ) from e
    return unquote_to_bytes(payload), mime


class ResponseNormalizer:
    """Turns a raw service payload into a NormalizedArtifact."""

    def __init__(self, transport: Transport) -> None:
        """Initialize the normalizer.

        Args:
            transport: Transport used to fetch referenced files.
        """
        self.transport = transport

    async def normalize(
        self,
        raw: Any,
        method: MethodConfig,
        accept_formats: list[str] | None = None,
    ) -> NormalizedArtifact:
        """Resolve a raw payload to artifact bytes and a declared format.

        Args:
            raw: Payload returned by the transport.
            method: Configuration of the method that produced the payload.
            accept_formats: Preferred formats when scanning arrays. Defaults to
                the method's ``accept_formats``.

        Returns:
            NormalizedArtifact with bytes and format.

        Raises:
            NormalizationError: If no artifact can be resolved.
        """
        accept = {f.lower() for f in (accept_formats or method.accept_formats)}

        # Envelopes only apply to objects that carry no url or path of their own
        if isinstance(raw, dict) and not _has_location(raw):
            if isinstance(raw.get("choices"), list):
                return self._from_chat_completion(raw)
            if isinstance(raw.get("data"), list):
                raw = raw["data"]

        if isinstance(raw, list):
            return await self._scan(raw, method, accept)

        return await self._resolve(raw, method)

    async def _scan(
        self, items: list[Any], method: MethodConfig, accept: set[str]
    ) -> NormalizedArtifact:
        if not items:
            raise NormalizationError("Service returned an empty output array")

        resolvable = [(i, item) for i, item in enumerate(items) if _is_resolvable(item)]
        if not resolvable:
            raise NormalizationError(
                f"No resolvable artifact among {len(items)} outputs",
                details={"outputs": len(items)},
            )

        # sorted() is stable, so equal ranks keep array order
        ranked = sorted(resolvable, key=lambda pair: _match_rank(pair[1], accept))
        index, chosen = ranked[0]
        rank = _match_rank(chosen, accept)
        if accept and rank == NO_MATCH:
            logger.debug(
                "No output matched %s; falling back to first resolvable (index %d)",
                sorted(accept),
                index,
            )
        else:
            logger.debug("Selected output %d of %d (rank %d)", index, len(items), rank)

        return await self._resolve(chosen, method)

    async def _resolve(self, item: Any, method: MethodConfig) -> NormalizedArtifact:
        # Rule 1: binary
        if isinstance(item, BinaryPayload):
            fmt = (
                format_from_mime(item.content_type)
                or format_from_name(item.name)
                or method.default_format
            )
            return self._checked(item.data, fmt)
        if isinstance(item, BINARY_TYPES):
            return self._checked(bytes(item), method.default_format)

        if isinstance(item, dict):
            hint = self._hint(item)
            # Rule 2: url
            url = item.get("url")
            if isinstance(url, str) and url:
                return await self._fetch(self._absolute(url, method), method, hint)
            # Rule 3: path
            path = item.get("path")
            if isinstance(path, str) and path:
                target = path if _is_absolute_url(path) else (
                    f"{method.base_url}{method.file_route}{path}"
                )
                return await self._fetch(target, method, hint)
            data = item.get("data")
            if isinstance(data, str) and data:
                return self._from_inline(data, method, hint)

        if isinstance(item, str):
            # Rule 4: data URI
            if item.startswith("data:"):
                data, mime = decode_data_uri(item)
                return self._checked(data, format_from_mime(mime) or method.default_format)
            # Rule 5: absolute URL
            if _is_absolute_url(item):
                return await self._fetch(item, method, None)

        raise NormalizationError(
            f"Unrecognized response shape: {type(item).__name__}",
            details={"shape": type(item).__name__},
        )

    def _hint(self, item: dict[str, Any]) -> str | None:
        for key in ("format", "mime_type", "mime"):
            value = item.get(key)
            if isinstance(value, str) and value:
                return format_from_mime(value) if "/" in value else value.lower()
        return format_from_name(item.get("orig_name") or item.get("name"))

    def _absolute(self, url: str, method: MethodConfig) -> str:
        if _is_absolute_url(url):
            return url
        return f"{method.base_url}/{url.lstrip('/')}"

    async def _fetch(self, url: str, method: MethodConfig, hint: str | None) -> NormalizedArtifact:
        try:
            payload = await self.transport.fetch(url, timeout=method.timeout_seconds)
        except RelicError as e:
            raise NormalizationError(
                f"Failed to fetch result file: {e.message}",
                code=ErrorCode.NRM_FETCH_FAILED,
                details={"url": url},
                cause=e,
            ) from e
        except Exception as e:
            raise NormalizationError(
                f"Failed to fetch result file: {e}",
                code=ErrorCode.NRM_FETCH_FAILED,
                details={"url": url},
                cause=e,
            ) from e

        fmt = (
            format_from_name(url)
            or hint
            or format_from_mime(payload.content_type)
            or format_from_name(payload.name)
            or method.default_format
        )
        logger.debug("Fetched %d bytes (%s) from %s", len(payload.data), fmt, url)
        return self._checked(payload.data, fmt)

    def _from_inline(self, data: str, method: MethodConfig, hint: str | None) -> NormalizedArtifact:
        if data.startswith("data:"):
            decoded, mime = decode_data_uri(data)
            return self._checked(decoded, hint or format_from_mime(mime) or method.default_format)
        try:
            decoded = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise NormalizationError(
                f"Invalid inline base64 data: {e}",
                code=ErrorCode.NRM_INVALID_CONTENT,
                cause=e,
            ) from e
        return self._checked(decoded, hint or method.default_format)

    def _from_chat_completion(self, raw: dict[str, Any]) -> NormalizedArtifact:
        choices = raw["choices"]
        content = None
        if choices and isinstance(choices[0], dict):
            content = (choices[0].get("message") or {}).get("content")
        if not content or not isinstance(content, str):
            raise NormalizationError("Empty response from chat completion")
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise NormalizationError(
                "Model returned invalid JSON response",
                code=ErrorCode.NRM_INVALID_CONTENT,
                cause=e,
            ) from e
        if not isinstance(parsed, dict):
            raise NormalizationError(
                "Model returned JSON that is not an object",
                code=ErrorCode.NRM_INVALID_CONTENT,
            )
        return NormalizedArtifact(data=json.dumps(parsed).encode("utf-8"), format="json")

    def _checked(self, data: bytes, fmt: str) -> NormalizedArtifact:
        if not data:
            raise NormalizationError(
                "Resolved artifact is empty", code=ErrorCode.NRM_INVALID_CONTENT
            )
        fmt = fmt.lower()
        if fmt == "jpeg":
            fmt = "jpg"
        return NormalizedArtifact(data=data, format=fmt)

