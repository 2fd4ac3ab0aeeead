"""
Model invocation gateway for OpenAI, Anthropic and Google providers.
"""

from vibe_gen.gateway.gateway import ProviderGateway, classify_error
from vibe_gen.gateway.parsing import ImagePayload, ResponseParser, parse_image_payload
from vibe_gen.gateway.providers import (
    AnthropicProvider,
    GenerativeProvider,
    GoogleProvider,
    OpenAIProvider,
    ProviderRequest,
    ProviderResponse,
)

__all__ = [
    "ProviderGateway",
    "classify_error",
    "ImagePayload",
    "ResponseParser",
    "parse_image_payload",
    "GenerativeProvider",
    "OpenAIProvider",
    "AnthropicProvider",
    "GoogleProvider",
    "ProviderRequest",
    "ProviderResponse",
]
