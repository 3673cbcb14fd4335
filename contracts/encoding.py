"""Input-encoding interface contracts.

Captured media (image or mesh bytes) must be converted into the transferable
encoding remote services accept before the uploading phase can finish.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class MediaInput:
    """Raw captured media handed to a job.

    Attributes:
        data: Media bytes as captured.
        mime_type: MIME type reported by the capture source.
        name: Optional original file name.
    """

    data: bytes
    mime_type: str = "image/png"
    name: str | None = None


@dataclass(frozen=True)
class EncodedMedia:
    """Media in the transferable form remote services expect.

    Attributes:
        base64: Base64 payload without any data-URI prefix.
        mime_type: MIME type of the encoded media.
        size: Size of the original bytes.
    """

    base64: str
    mime_type: str
    size: int

    @property
    def data_uri(self) -> str:
        """The media as a ``data:`` URI."""
        return f"data:{self.mime_type};base64,{self.base64}"


class MediaEncoder(Protocol):
    """Interface for converting captured media to the transferable encoding."""

    def encode(self, media: MediaInput) -> EncodedMedia:
        """Encode media for upload.

        Args:
            media: Raw captured media.

        Returns:
            Encoded media.

        Raises:
            EncodingError: If the media is empty, unreadable or unusable.
        """
        ...
