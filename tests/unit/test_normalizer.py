"""Unit tests for the response normalizer.

Covers each resolution rule in priority order, array scanning, the
tolerated envelope shapes and failure handling.
"""

import base64
import json

import pytest

from relic.config import MethodConfig
from relic.errors import ErrorCode, NormalizationError
from relic.reliability.models import BinaryPayload
from relic.reliability.normalizer import (
    ResponseNormalizer,
    decode_data_uri,
    format_from_mime,
    format_from_name,
)
from tests.helpers import GLB_BYTES, http_error

BASE = "https://space.example"


@pytest.fixture
def method():
    return MethodConfig(
        base_url=BASE, accept_formats=["glb", "mesh", "model/gltf-binary"], default_format="bin"
    )


@pytest.fixture
def normalizer(transport):
    return ResponseNormalizer(transport)


class TestFormatHelpers:
    """Tests for format inference helpers."""

    def test_format_from_mime(self):
        assert format_from_mime("model/gltf-binary") == "glb"
        assert format_from_mime("image/png; charset=binary") == "png"
        assert format_from_mime("image/jpeg") == "jpg"
        assert format_from_mime("application/octet-stream") is None
        assert format_from_mime(None) is None

    def test_format_from_name(self):
        assert format_from_name("model.GLB") == "glb"
        assert format_from_name("https://x.example/file=/tmp/a.png?download=1") == "png"
        assert format_from_name("https://x.example/predict") is None

    def test_decode_data_uri(self):
        data, mime = decode_data_uri("data:image/png;base64," + base64.b64encode(b"px").decode())
        assert data == b"px"
        assert mime == "image/png"

    def test_decode_data_uri_invalid_base64(self):
        with pytest.raises(NormalizationError) as exc_info:
            decode_data_uri("data:image/png;base64,@@@")
        assert exc_info.value.code == ErrorCode.NRM_INVALID_CONTENT


class TestResolutionRules:
    """Tests for the single-value resolution rules."""

    @pytest.mark.asyncio
    async def test_binary_payload(self, normalizer, method):
        """Binary results are returned as-is with their declared format."""
        raw = BinaryPayload(GLB_BYTES, content_type="model/gltf-binary")
        artifact = await normalizer.normalize(raw, method)
        assert artifact.data == GLB_BYTES
        assert artifact.format == "glb"

    @pytest.mark.asyncio
    async def test_raw_bytes_use_default_format(self, normalizer, method):
        artifact = await normalizer.normalize(b"\x00\x01", method)
        assert artifact.format == "bin"

    @pytest.mark.asyncio
    async def test_url_object(self, normalizer, method, transport):
        """Objects with a url are fetched."""
        transport.files[f"{BASE}/out/model.glb"] = BinaryPayload(GLB_BYTES)
        artifact = await normalizer.normalize({"url": f"{BASE}/out/model.glb"}, method)
        assert artifact.data == GLB_BYTES
        assert artifact.format == "glb"

    @pytest.mark.asyncio
    async def test_relative_url_resolves_against_base(self, normalizer, method, transport):
        transport.files[f"{BASE}/file=/tmp/model.glb"] = BinaryPayload(GLB_BYTES)
        artifact = await normalizer.normalize({"url": "/file=/tmp/model.glb"}, method)
        assert artifact.format == "glb"
        assert transport.fetches == [f"{BASE}/file=/tmp/model.glb"]

    @pytest.mark.asyncio
    async def test_path_object_uses_file_route(self, normalizer, method, transport):
        """Objects with only a path are fetched through the file route."""
        transport.files[f"{BASE}/file=/tmp/gradio/abc/mesh.glb"] = BinaryPayload(GLB_BYTES)
        artifact = await normalizer.normalize({"path": "/tmp/gradio/abc/mesh.glb"}, method)
        assert artifact.data == GLB_BYTES

    @pytest.mark.asyncio
    async def test_url_wins_over_path(self, normalizer, method, transport):
        transport.files[f"{BASE}/a.glb"] = BinaryPayload(b"from-url")
        artifact = await normalizer.normalize({"url": f"{BASE}/a.glb", "path": "/b.glb"}, method)
        assert artifact.data == b"from-url"

    @pytest.mark.asyncio
    async def test_data_uri(self, normalizer, method, transport):
        """Data URIs are decoded without any fetch."""
        uri = "data:image/png;base64," + base64.b64encode(b"pixels").decode()
        artifact = await normalizer.normalize(uri, method)
        assert artifact.data == b"pixels"
        assert artifact.format == "png"
        assert transport.fetches == []

    @pytest.mark.asyncio
    async def test_absolute_url_string(self, normalizer, method, transport):
        transport.files["https://cdn.example/x.png"] = BinaryPayload(b"img")
        artifact = await normalizer.normalize("https://cdn.example/x.png", method)
        assert artifact.format == "png"

    @pytest.mark.asyncio
    async def test_inline_base64_data(self, normalizer, method):
        """Objects carrying inline base64 data are decoded."""
        raw = {"data": base64.b64encode(b"inline").decode(), "format": "glb"}
        artifact = await normalizer.normalize(raw, method)
        assert artifact.data == b"inline"
        assert artifact.format == "glb"

    @pytest.mark.asyncio
    async def test_fetch_format_from_content_type(self, normalizer, method, transport):
        """Without an extension the fetched content type names the format."""
        transport.files[f"{BASE}/download"] = BinaryPayload(b"img", content_type="image/webp")
        artifact = await normalizer.normalize({"url": f"{BASE}/download"}, method)
        assert artifact.format == "webp"

    @pytest.mark.asyncio
    async def test_jpeg_reported_as_jpg(self, normalizer, method, transport):
        transport.files[f"{BASE}/photo.jpeg"] = BinaryPayload(b"img")
        artifact = await normalizer.normalize({"url": f"{BASE}/photo.jpeg"}, method)
        assert artifact.format == "jpg"


class TestArrayScanning:
    """Tests for array results."""

    @pytest.mark.asyncio
    async def test_skips_preview_for_mesh(self, normalizer, method, transport):
        """The declared mesh wins over an earlier preview entry."""
        transport.files[f"{BASE}/m.glb"] = BinaryPayload(GLB_BYTES)
        raw = [{"type": "preview"}, {"type": "mesh", "url": f"{BASE}/m.glb"}]
        artifact = await normalizer.normalize(raw, method)
        assert artifact.data == GLB_BYTES
        assert artifact.format == "glb"

    @pytest.mark.asyncio
    async def test_declared_type_beats_extension(self, normalizer, method, transport):
        """An exact declared match ranks above one inferred from a file name."""
        transport.files[f"{BASE}/first.glb"] = BinaryPayload(b"inferred")
        transport.files[f"{BASE}/second"] = BinaryPayload(b"declared")
        raw = [
            {"url": f"{BASE}/first.glb"},
            {"url": f"{BASE}/second", "mime_type": "model/gltf-binary"},
        ]
        artifact = await normalizer.normalize(raw, method)
        assert artifact.data == b"declared"

    @pytest.mark.asyncio
    async def test_ties_keep_array_order(self, normalizer, method, transport):
        transport.files[f"{BASE}/a.glb"] = BinaryPayload(b"a")
        transport.files[f"{BASE}/b.glb"] = BinaryPayload(b"b")
        artifact = await normalizer.normalize(
            [{"url": f"{BASE}/a.glb"}, {"url": f"{BASE}/b.glb"}], method
        )
        assert artifact.data == b"a"

    @pytest.mark.asyncio
    async def test_falls_back_to_first_resolvable(self, normalizer, method, transport):
        """With no accepted format, the first resolvable element is used."""
        transport.files[f"{BASE}/video.mp4"] = BinaryPayload(b"video")
        raw = ["not a url", {"url": f"{BASE}/video.mp4"}]
        artifact = await normalizer.normalize(raw, method)
        assert artifact.data == b"video"
        assert artifact.format == "mp4"

    @pytest.mark.asyncio
    async def test_accept_formats_override(self, normalizer, method, transport):
        """Caller-supplied formats replace the method's preference."""
        transport.files[f"{BASE}/m.glb"] = BinaryPayload(b"mesh")
        transport.files[f"{BASE}/p.png"] = BinaryPayload(b"image")
        raw = [{"url": f"{BASE}/m.glb"}, {"url": f"{BASE}/p.png"}]
        artifact = await normalizer.normalize(raw, method, accept_formats=["png"])
        assert artifact.data == b"image"

    @pytest.mark.asyncio
    async def test_data_envelope(self, normalizer, method, transport):
        """{"data": [...]} envelopes are scanned like arrays."""
        transport.files[f"{BASE}/file=/tmp/m.glb"] = BinaryPayload(GLB_BYTES)
        raw = {"data": [None, {"path": "/tmp/m.glb"}]}
        artifact = await normalizer.normalize(raw, method)
        assert artifact.data == GLB_BYTES

    @pytest.mark.asyncio
    async def test_url_wins_over_data_envelope(self, normalizer, method, transport):
        transport.files[f"{BASE}/a.glb"] = BinaryPayload(b"from-url")
        raw = {"url": f"{BASE}/a.glb", "data": [{"path": "/tmp/m.glb"}]}
        artifact = await normalizer.normalize(raw, method)
        assert artifact.data == b"from-url"
        assert transport.fetches == [f"{BASE}/a.glb"]

    @pytest.mark.asyncio
    async def test_empty_array(self, normalizer, method):
        with pytest.raises(NormalizationError):
            await normalizer.normalize([], method)

    @pytest.mark.asyncio
    async def test_nothing_resolvable(self, normalizer, method):
        with pytest.raises(NormalizationError) as exc_info:
            await normalizer.normalize([{"type": "preview"}, 42], method)
        assert exc_info.value.details == {"outputs": 2}


class TestChatCompletion:
    """Tests for chat completion results."""

    @pytest.mark.asyncio
    async def test_json_content(self, normalizer, method):
        content = json.dumps({"material": "Bronze"})
        raw = {"choices": [{"message": {"content": content}}]}
        artifact = await normalizer.normalize(raw, method)
        assert artifact.format == "json"
        assert json.loads(artifact.data) == {"material": "Bronze"}

    @pytest.mark.asyncio
    async def test_invalid_json_content(self, normalizer, method):
        raw = {"choices": [{"message": {"content": "I think it is bronze"}}]}
        with pytest.raises(NormalizationError) as exc_info:
            await normalizer.normalize(raw, method)
        assert exc_info.value.code == ErrorCode.NRM_INVALID_CONTENT

    @pytest.mark.asyncio
    async def test_empty_choices(self, normalizer, method):
        with pytest.raises(NormalizationError):
            await normalizer.normalize({"choices": []}, method)


class TestFailures:
    """Tests for unresolvable responses."""

    @pytest.mark.asyncio
    async def test_fetch_failure(self, normalizer, method, transport):
        """A failed fetch is a normalization failure."""
        transport.files[f"{BASE}/m.glb"] = http_error(502)
        with pytest.raises(NormalizationError) as exc_info:
            await normalizer.normalize({"url": f"{BASE}/m.glb"}, method)
        assert exc_info.value.code == ErrorCode.NRM_FETCH_FAILED

    @pytest.mark.asyncio
    async def test_empty_fetched_file(self, normalizer, method, transport):
        transport.files[f"{BASE}/m.glb"] = BinaryPayload(b"")
        with pytest.raises(NormalizationError):
            await normalizer.normalize({"url": f"{BASE}/m.glb"}, method)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [None, 42, "plain text", {"status": "done"}])
    async def test_unrecognized_shapes(self, normalizer, method, raw):
        with pytest.raises(NormalizationError):
            await normalizer.normalize(raw, method)
