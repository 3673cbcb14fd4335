"""Operation types and how each turns into a job.

Three operations produce artifacts for a captured entity:
- reconstruct3d: image to 3D mesh; trellis falls back to triposr
- colorize: restores plausible color with a cultural color scheme
- generate_info_card: vision-language analysis rendered as a JSON card

An operation is described by its type and a JSON-serializable params dict,
which is also what the offline queue stores for replay.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from contracts.encoding import MediaInput
from contracts.storage import ArtifactKind
from relic.config import MESH_FORMATS
from relic.errors import (
    ConfigurationError,
    EncodingError,
    ErrorCode,
    NormalizationError,
    unknown_operation,
)
from relic.reliability.models import FallbackPlan, MethodStep

AI_DISCLAIMER = (
    "This analysis was generated by AI and should be verified by qualified "
    "archaeologists. All estimates are speculative based on visual analysis."
)

DEFAULT_INFO_CARD_MESSAGE = (
    "Analyze this archaeological artifact image and generate an information card."
)

# Historically grounded pigment descriptions per scheme
COLOR_SCHEME_PROMPTS = {
    "roman": (
        "Rich Roman colors with deep crimson reds, burnt sienna, gold leaf accents, "
        "marble white, terracotta, ochre"
    ),
    "greek": (
        "Classical Greek palette with terracotta orange, black-figure pottery black, "
        "red ochre, Mediterranean cerulean blue, white marble"
    ),
    "egyptian": (
        "Ancient Egyptian colors with lapis lazuli blue, gold, turquoise, rich emerald "
        "green, burnt sienna, white alabaster"
    ),
    "mesopotamian": (
        "Mesopotamian palette with deep ultramarine blue, burnished gold, brick red, "
        "earth tones, ivory"
    ),
    "weathered": (
        "Subtle weathered appearance with muted earth tones showing centuries of age, "
        "faded pigments"
    ),
    "original": (
        "Reconstruct vibrant original colors as the artifact would have appeared when new"
    ),
}
CUSTOM_SCHEME = "custom"
COLOR_SCHEMES = (*COLOR_SCHEME_PROMPTS, CUSTOM_SCHEME)

RECONSTRUCTION_PLANS = {
    "trellis": ("trellis", "triposr"),
    "triposr": ("triposr",),
}

# Metadata keys included in the info-card user message, in order
INFO_CARD_CONTEXT = (
    ("discovery_location", "Discovery Location"),
    ("excavation_layer", "Excavation Layer"),
    ("site_name", "Site Name"),
    ("notes", "Additional Notes"),
)


class OperationType(str, Enum):
    """Artifact-producing operations."""

    RECONSTRUCT_3D = "reconstruct3d"
    COLORIZE = "colorize"
    GENERATE_INFO_CARD = "generate_info_card"

    @classmethod
    def parse(cls, value: str | OperationType) -> OperationType:
        try:
            return cls(value)
        except ValueError:
            raise unknown_operation(str(value)) from None


@dataclass(frozen=True)
class FinalizedArtifact:
    """Artifact bytes after operation-specific post-processing."""

    data: bytes
    format: str
    method_label: str
    metadata: dict[str, Any] = field(default_factory=dict)


Finalizer = Callable[[bytes, str, str], FinalizedArtifact]


def passthrough(data: bytes, fmt: str, method: str) -> FinalizedArtifact:
    return FinalizedArtifact(data=data, format=fmt, method_label=method)


@dataclass(frozen=True)
class PreparedOperation:
    """Everything a job needs to run one operation.

    Attributes:
        op_type: Operation type.
        plan: Methods to try, with per-step params.
        kind: Kind of artifact produced.
        accept_formats: Formats preferred when a result holds several outputs.
        finalize: Post-processes the chain result (labels, disclaimers).
    """

    op_type: OperationType
    plan: FallbackPlan
    kind: ArtifactKind
    accept_formats: list[str] | None = None
    finalize: Finalizer = passthrough


def build_reconstruct_plan(params: dict[str, Any]) -> FallbackPlan:
    """Plan for 3D reconstruction.

    ``method="trellis"`` (default) falls back to triposr; ``"triposr"`` runs
    alone. ``remove_background``, ``trellis_params`` and ``triposr_params``
    override the configured defaults.
    """
    method = params.get("method", "trellis")
    if method not in RECONSTRUCTION_PLANS:
        raise ConfigurationError(
            f'Invalid method. Must be "trellis" or "triposr", got {method!r}',
            details={"method": method},
        )

    triposr_params = dict(params.get("triposr_params") or {})
    if "remove_background" in params:
        triposr_params["do_remove_background"] = bool(params["remove_background"])
    step_params = {
        "trellis": dict(params.get("trellis_params") or {}),
        "triposr": triposr_params,
    }
    return FallbackPlan(
        steps=tuple(MethodStep(name, step_params[name]) for name in RECONSTRUCTION_PLANS[method])
    )


def color_scheme_prompt(scheme: str, custom_prompt: str | None = None) -> str:
    """Text description of a color scheme.

    Raises:
        ConfigurationError: For unknown schemes, or "custom" without a prompt.
    """
    if scheme == CUSTOM_SCHEME:
        if not custom_prompt or not custom_prompt.strip():
            raise ConfigurationError(
                'custom_prompt is required when color_scheme is "custom"',
                details={"color_scheme": scheme},
            )
        return custom_prompt.strip()
    try:
        return COLOR_SCHEME_PROMPTS[scheme]
    except KeyError:
        raise ConfigurationError(
            f"Invalid color_scheme. Must be one of: {', '.join(COLOR_SCHEMES)}",
            details={"color_scheme": scheme},
        ) from None


def build_info_card_message(metadata: dict[str, Any] | None) -> str:
    """User message for the info-card model, with any discovery context."""
    lines = [DEFAULT_INFO_CARD_MESSAGE]
    context = [
        f"{label}: {metadata[key]}"
        for key, label in INFO_CARD_CONTEXT
        if metadata and metadata.get(key)
    ]
    if context:
        lines.append("")
        lines.extend(context)
    return "\n".join(lines)


def finalize_info_card(data: bytes, fmt: str, method: str) -> FinalizedArtifact:
    """Attach the AI disclaimer to the generated card."""
    try:
        card = json.loads(data)
    except ValueError as e:
        raise NormalizationError(
            "Info card is not valid JSON", code=ErrorCode.NRM_INVALID_CONTENT, cause=e
        ) from e
    if not isinstance(card, dict):
        raise NormalizationError(
            "Info card must be a JSON object", code=ErrorCode.NRM_INVALID_CONTENT
        )
    card["disclaimer"] = AI_DISCLAIMER
    return FinalizedArtifact(
        data=json.dumps(card).encode("utf-8"),
        format="json",
        method_label=method,
        metadata={"ai_confidence": card.get("aiConfidence")},
    )


def prepare_operation(op_type: str | OperationType, params: dict[str, Any]) -> PreparedOperation:
    """Turn an operation type and its params into a runnable job description.

    Raises:
        ConfigurationError: For unknown operation types or invalid params.
    """
    op = OperationType.parse(op_type)

    if op == OperationType.RECONSTRUCT_3D:
        return PreparedOperation(
            op_type=op,
            plan=build_reconstruct_plan(params),
            kind=ArtifactKind.MODEL_3D,
            accept_formats=list(MESH_FORMATS),
        )

    if op == OperationType.COLORIZE:
        scheme = params.get("color_scheme", "original")
        prompt = color_scheme_prompt(scheme, params.get("custom_prompt"))

        def finalize_color(data: bytes, fmt: str, method: str) -> FinalizedArtifact:
            return FinalizedArtifact(
                data=data,
                format=fmt,
                method_label=f"{method}-{scheme}",
                metadata={"color_scheme": scheme, "prompt": prompt},
            )

        return PreparedOperation(
            op_type=op,
            plan=FallbackPlan.of(
                "deoldify", params={"deoldify": params.get("deoldify_params") or {}}
            ),
            kind=ArtifactKind.COLOR_VARIANT,
            finalize=finalize_color,
        )

    message = build_info_card_message(params.get("metadata"))
    return PreparedOperation(
        op_type=op,
        plan=FallbackPlan(steps=(MethodStep("groq-vision", {"user_message": message}),)),
        kind=ArtifactKind.INFO_CARD,
        accept_formats=["json"],
        finalize=finalize_info_card,
    )


def media_to_payload(media: MediaInput) -> dict[str, Any]:
    """Serialize input media for an offline queue payload."""
    return {
        "media_b64": base64.b64encode(media.data).decode("ascii"),
        "mime_type": media.mime_type,
        "media_name": media.name,
    }


def media_from_payload(payload: dict[str, Any]) -> MediaInput:
    """Rebuild input media from a queue payload.

    Raises:
        EncodingError: If the stored media is missing or corrupt.
    """
    try:
        data = base64.b64decode(payload["media_b64"], validate=True)
    except (KeyError, TypeError, binascii.Error, ValueError) as e:
        raise EncodingError(f"Queued media unreadable: {e}", cause=e) from e
    return MediaInput(
        data=data,
        mime_type=payload.get("mime_type") or "image/png",
        name=payload.get("media_name"),
    )
