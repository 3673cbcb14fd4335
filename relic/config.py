"""relic configuration system.

Loads and validates configuration from ~/.relic/config.json.
Uses Pydantic for schema validation with sensible defaults.

The ``methods`` section is the single source of truth for where each named
inference method lives and how it is called. Plans name methods; the mapping
to endpoints is resolved once per plan, never guessed per call.

Usage:
    from relic.config import get_config, save_config

    config = get_config()
    trellis = config.get_method("trellis")
    print(trellis.url)

    config.offline_queue.max_retries = 5
    save_config(config)
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from relic.errors import unknown_method

logger = logging.getLogger(__name__)

RELIC_HOME = Path.home() / ".relic"
CONFIG_PATH = RELIC_HOME / "config.json"

# Schema version written to config files
CONFIG_VERSION = 1

MESH_FORMATS = ["glb", "mesh", "model/gltf-binary"]
IMAGE_FORMATS = ["png", "jpg", "jpeg", "webp", "image"]

INFO_CARD_SYSTEM_PROMPT = """You are an expert archaeological artifact analyst. Given an image of an artifact and optional context, generate a detailed information card.

IMPORTANT: Be factual and note uncertainties. All conclusions are speculative based on visual analysis alone.

Respond in JSON format with these exact fields:
{
  "material": "Identified or likely material (e.g., 'Terracotta', 'Bronze', 'Stone')",
  "estimatedAge": {
    "range": "Time period range (e.g., '500-300 BCE', '2nd century CE')",
    "confidence": "high|medium|low",
    "reasoning": "Brief explanation of dating estimate"
  },
  "possibleUse": "Likely function or purpose of the artifact",
  "culturalContext": "Cultural/historical context and significance",
  "similarArtifacts": ["List of similar known artifacts or types"],
  "preservationNotes": "Recommendations for preservation and handling",
  "aiConfidence": 0.75
}

Always include uncertainties in your analysis. This is AI-generated speculation, not expert verification."""


class MethodConfig(BaseModel):
    """Endpoint mapping and retry budget for one named inference method.

    Attributes:
        base_url: Service base address; relative result URLs resolve against it.
        endpoint: Route appended to base_url for the inference call.
        request_style: "fields" posts {input_field: input, **params};
            "chat" posts an OpenAI-style vision chat completion.
        input_field: Request field carrying the encoded input ("fields" style).
        params: Default request parameters, overridable per plan step.
        max_attempts: Total attempts before the method is abandoned.
        base_delay_seconds: Backoff base for retryable failures.
        rate_limit_delay_seconds: Larger backoff base for rate-limit signals.
        timeout_seconds: Per-call read timeout.
        accept_formats: Declared formats preferred when scanning result arrays.
        default_format: Format reported when the result does not declare one.
        file_route: Route prefix used to turn a result ``path`` into a URL.
        api_key_env: Environment variable holding a bearer token, if any.
        system_prompt: System message for "chat" style methods.
    """

    base_url: str
    endpoint: str = "/predict"
    request_style: Literal["fields", "chat"] = "fields"
    input_field: str = "image"
    params: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=2.0, ge=0.0, le=300.0)
    rate_limit_delay_seconds: float = Field(default=5.0, ge=0.0, le=600.0)
    timeout_seconds: float = Field(default=120.0, ge=1.0, le=900.0)
    accept_formats: list[str] = Field(default_factory=list)
    default_format: str = "bin"
    file_route: str = "/file="
    api_key_env: str | None = None
    system_prompt: str | None = None

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def url(self) -> str:
        """Fully-qualified inference URL."""
        return f"{self.base_url}{self.endpoint}"


def _default_methods() -> dict[str, MethodConfig]:
    return {
        "trellis": MethodConfig(
            base_url="https://microsoft-trellis-2.hf.space",
            endpoint="/generate",
            input_field="image_prompt",
            params={
                "seed": 42,
                "ss_guidance_rescale": 0.7,
                "ss_sampling_steps": 12,
                "ss_rescale_t": 5.0,
                "shape_slat_guidance_rescale": 0.5,
                "shape_slat_sampling_steps": 12,
                "shape_slat_rescale_t": 3.0,
                "tex_slat_guidance_rescale": 0.0,
                "tex_slat_sampling_steps": 12,
                "tex_slat_rescale_t": 3.0,
                "decimation_target": 500000,
                "texture_size": 2048,
            },
            timeout_seconds=600.0,
            accept_formats=list(MESH_FORMATS),
            default_format="glb",
        ),
        "triposr": MethodConfig(
            base_url="https://stabilityai-triposr.hf.space",
            endpoint="/generate",
            params={
                "do_remove_background": True,
                "foreground_ratio": 0.85,
                "mc_resolution": 256,
            },
            timeout_seconds=300.0,
            accept_formats=list(MESH_FORMATS),
            default_format="glb",
        ),
        "deoldify": MethodConfig(
            base_url="https://akhaliq-deoldify.hf.space",
            endpoint="/predict",
            params={"render_factor": 35},
            accept_formats=list(IMAGE_FORMATS),
            default_format="png",
        ),
        "groq-vision": MethodConfig(
            base_url="https://api.groq.com/openai/v1",
            endpoint="/chat/completions",
            request_style="chat",
            params={
                "model": "llama-3.2-90b-vision-preview",
                "temperature": 0.3,
                "max_tokens": 1024,
            },
            base_delay_seconds=1.0,
            rate_limit_delay_seconds=5.0,
            timeout_seconds=60.0,
            accept_formats=["json"],
            default_format="json",
            api_key_env="GROQ_API_KEY",
            system_prompt=INFO_CARD_SYSTEM_PROMPT,
        ),
    }


class OfflineQueueConfig(BaseModel):
    """Offline operation queue configuration.

    Attributes:
        path: JSON file the queue persists to.
        max_retries: Replays allowed before an operation is dropped.
        max_queue_size: Maximum pending operations.
        max_age_hours: Operations older than this are dropped on load.
        replay_interval_seconds: Periodic replay while online; None disables it
            and replay happens once per offline-to-online transition only.
    """

    path: Path = Field(default_factory=lambda: RELIC_HOME / "offline_queue.json")
    max_retries: int = Field(default=3, ge=1, le=20)
    max_queue_size: int = Field(default=1000, ge=1, le=100_000)
    max_age_hours: int = Field(default=24 * 7, ge=1)
    replay_interval_seconds: float | None = Field(default=None, ge=1.0)


class JobsConfig(BaseModel):
    """Entity job configuration.

    Attributes:
        uploading_range: Progress span (percent) of the uploading phase.
        processing_range: Progress span (percent) of the processing phase.
        min_input_bytes: Inputs smaller than this are rejected as unreadable.
        queue_when_offline: Hand requests to the offline queue when offline.
    """

    uploading_range: tuple[float, float] = (0.0, 30.0)
    processing_range: tuple[float, float] = (30.0, 95.0)
    min_input_bytes: int = Field(default=1024, ge=1)
    queue_when_offline: bool = True


class ConnectivityConfig(BaseModel):
    """Connectivity probing configuration.

    Attributes:
        probe_urls: URLs probed with HEAD requests; any success means online.
        check_interval_seconds: Seconds between probes.
        timeout_seconds: Per-probe timeout.
    """

    probe_urls: list[str] = Field(default_factory=lambda: ["https://huggingface.co"])
    check_interval_seconds: float = Field(default=30.0, ge=1.0, le=3600.0)
    timeout_seconds: float = Field(default=5.0, ge=0.5, le=60.0)


class RelicConfig(BaseModel):
    """relic configuration schema.

    Attributes:
        config_version: Schema version for migration tracking.
        methods: Method name to endpoint/retry mapping.
        offline_queue: Offline queue persistence and replay settings.
        jobs: Entity job progress and input settings.
        connectivity: Connectivity probing settings.
    """

    config_version: int = CONFIG_VERSION
    methods: dict[str, MethodConfig] = Field(default_factory=_default_methods)
    offline_queue: OfflineQueueConfig = Field(default_factory=OfflineQueueConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)

    def get_method(self, name: str) -> MethodConfig:
        """Resolve a method name to its configuration.

        Raises:
            ConfigurationError: If the method is not configured.
        """
        try:
            return self.methods[name]
        except KeyError:
            raise unknown_method(name, list(self.methods)) from None


# Module-level singleton with thread safety
_config: RelicConfig | None = None
_config_lock = threading.Lock()


def _check_version(data: dict[str, Any]) -> None:
    """Warn about files written by a newer schema; unknown fields are ignored."""
    version = data.get("config_version", CONFIG_VERSION)
    if isinstance(version, int) and version > CONFIG_VERSION:
        logger.warning(
            f"Config file is schema v{version}, newer than supported v{CONFIG_VERSION}"
        )


def load_config(config_path: Path | None = None) -> RelicConfig:
    """Load configuration from file, return defaults if missing/invalid.

    Args:
        config_path: Optional path to config file. Defaults to ~/.relic/config.json.

    Returns:
        RelicConfig instance with loaded or default values.
    """
    path = config_path or CONFIG_PATH

    if not path.exists():
        logger.debug(f"Config file not found at {path}, using defaults")
        return RelicConfig()

    try:
        with path.open() as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in config file {path}: {e}, using defaults")
        return RelicConfig()
    except OSError as e:
        logger.warning(f"Cannot read config file {path}: {e}, using defaults")
        return RelicConfig()

    if not isinstance(data, dict):
        logger.warning(f"Config file {path} is not a JSON object, using defaults")
        return RelicConfig()

    _check_version(data)

    try:
        return RelicConfig.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Config validation failed: {e}, using defaults")
        return RelicConfig()


def save_config(config: RelicConfig, config_path: Path | None = None) -> bool:
    """Save configuration to file.

    Args:
        config: Configuration to save.
        config_path: Optional path to config file. Defaults to ~/.relic/config.json.

    Returns:
        True if saved successfully, False otherwise.
    """
    path = config_path or CONFIG_PATH

    try:
        path.parent.mkdir(parents=True, exist_ok=True)

        with path.open("w") as f:
            json.dump(config.model_dump(mode="json"), f, indent=2)

        # Owner-only: method entries may name API key variables
        os.chmod(path, 0o600)

        logger.debug(f"Configuration saved to {path}")
        return True

    except OSError as e:
        logger.error(f"Failed to save config to {path}: {e}")
        return False


def get_config() -> RelicConfig:
    """Get singleton configuration instance.

    Uses double-check locking for thread safety.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_config()
    return _config


def reset_config() -> None:
    """Reset singleton configuration for testing."""
    global _config
    with _config_lock:
        _config = None
