"""Base64 media encoder.

Converts captured image or mesh bytes into the data-URI form the hosted
model spaces accept. Rejects input that is empty, too small to be a real
capture, or of a type no service can read.
"""

from __future__ import annotations

import base64
import logging

from contracts.encoding import EncodedMedia, MediaInput
from relic.config import get_config
from relic.errors import EncodingError

logger = logging.getLogger(__name__)

ACCEPTED_PREFIXES = ("image/", "model/")
GENERIC_MIME = "application/octet-stream"

# Leading bytes of formats worth identifying when the declared type is generic
MAGIC_NUMBERS: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF8", "image/gif"),
    (b"glTF", "model/gltf-binary"),
)


def sniff_mime(data: bytes) -> str | None:
    """Identify common media formats from their leading bytes."""
    for magic, mime in MAGIC_NUMBERS:
        if data.startswith(magic):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


class Base64MediaEncoder:
    """MediaEncoder producing base64 payloads.

    Example:
        >>> encoder = Base64MediaEncoder(min_bytes=1024)
        >>> encoded = encoder.encode(MediaInput(data=png_bytes, mime_type="image/png"))
        >>> encoded.data_uri[:22]
        'data:image/png;base64,'
    """

    def __init__(self, min_bytes: int | None = None) -> None:
        """Initialize the encoder.

        Args:
            min_bytes: Smallest accepted input. Defaults to jobs.min_input_bytes.
        """
        self.min_bytes = get_config().jobs.min_input_bytes if min_bytes is None else min_bytes

    def encode(self, media: MediaInput) -> EncodedMedia:
        data = media.data
        if not data:
            raise EncodingError("Input media is empty")
        if len(data) < self.min_bytes:
            raise EncodingError(
                f"Input media too small ({len(data)} bytes, need {self.min_bytes})",
                details={"size": len(data), "min_bytes": self.min_bytes},
            )

        mime = (media.mime_type or GENERIC_MIME).split(";", 1)[0].strip().lower()
        if mime == GENERIC_MIME or not mime:
            mime = sniff_mime(data) or ""
        if not mime.startswith(ACCEPTED_PREFIXES):
            raise EncodingError(
                f"Unsupported media type: {media.mime_type}",
                details={"mime_type": media.mime_type},
            )

        encoded = base64.b64encode(data).decode("ascii")
        logger.debug(f"Encoded {len(data)} bytes of {mime} ({len(encoded)} base64 chars)")
        return EncodedMedia(base64=encoded, mime_type=mime, size=len(data))
