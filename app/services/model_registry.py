"""Static registry of the generation models the upstream services expose."""

import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from app.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class UpstreamProtocol(str, Enum):
    # Conversation-completion endpoint: {query, model_name, history, ...}
    CONVERSATION = "conversation"
    # Message-list endpoint: {model, messages, temperature}
    MESSAGES = "messages"


@dataclass(frozen=True)
class ModelCapability:
    name: str
    label: str
    protocol: UpstreamProtocol
    supports_media: bool = False
    supports_reasoning: bool = False


_MODELS = (
    ModelCapability(
        name="Qwen2.5-VL-72B",
        label="qwen2.5-vl-72b",
        protocol=UpstreamProtocol.MESSAGES,
        supports_media=True,
    ),
    ModelCapability(
        name="deepseek-r1-distill",
        label="deepseekR1-14b",
        protocol=UpstreamProtocol.CONVERSATION,
        supports_reasoning=True,
    ),
    ModelCapability(
        name="qwen2.5-32b",
        label="qwen2.5-32b",
        protocol=UpstreamProtocol.CONVERSATION,
    ),
    ModelCapability(
        name="Qwen3-32B",
        label="qwen3-32b",
        protocol=UpstreamProtocol.MESSAGES,
        supports_reasoning=True,
    ),
    ModelCapability(
        name="Qwen3-235B-A22B",
        label="qwen3-235b-a22b",
        protocol=UpstreamProtocol.MESSAGES,
        supports_reasoning=True,
    ),
)

MODEL_REGISTRY: MappingProxyType[str, ModelCapability] = MappingProxyType({m.name: m for m in _MODELS})


def lookup_model(model_id: str) -> ModelCapability | None:
    return MODEL_REGISTRY.get(model_id)


def resolve_model(model_id: str, default_model: str, strict: bool = False) -> ModelCapability:
    """Return the capability entry for ``model_id``.

    Unknown identifiers resolve to the default model's capabilities unless
    ``strict`` is set, in which case they raise ``ConfigurationError``.
    """
    capability = MODEL_REGISTRY.get(model_id)
    if capability is not None:
        return capability

    if strict:
        raise ConfigurationError(f"Unknown model identifier: '{model_id}'")

    default = MODEL_REGISTRY.get(default_model)
    if default is None:
        raise ConfigurationError(f"Default model '{default_model}' is not in the model registry")
    logger.warning(
        "Unknown model '%s', using capabilities of default model '%s'",
        model_id,
        default_model,
    )
    return default
