"""
Provider adapters. Each one turns a prompt (plus an optional screenshot)
into the request shape its API expects and returns the raw response text.
"""

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from google import genai
from google.genai import types
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from vibe_gen.config import DEFAULT_MODELS
from vibe_gen.gateway.parsing import ImagePayload, ResponseParser
from vibe_gen.models import ProviderKind, ResponseFormat


TextCallback = Callable[[str], None]


@dataclass
class ProviderRequest:
    """Provider-neutral description of a single model call."""
    prompt: str
    model: str
    system: Optional[str] = None
    image: Optional[ImagePayload] = None
    response_format: ResponseFormat = ResponseFormat.TEXT
    on_text: Optional[TextCallback] = None


@dataclass
class ProviderResponse:
    text: str
    usage: Dict[str, Any] = field(default_factory=dict)


class GenerativeProvider(ABC):
    """Base class for provider adapters."""

    kind: ProviderKind

    def __init__(self, temperature: float = 0.3, max_tokens: int = 8192):
        """
        Initialize the adapter.

        Args:
            temperature: Sampling temperature for every call.
            max_tokens: Maximum tokens to generate per call.
        """
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def default_model(self) -> str:
        return DEFAULT_MODELS[self.kind]

    @abstractmethod
    async def generate(self, request: ProviderRequest, api_key: str) -> ProviderResponse:
        """Run one call and return the raw text."""

    def parse(self, text: str, response_format: ResponseFormat) -> Any:
        """Convert raw response text into the requested shape."""
        if response_format == ResponseFormat.JSON:
            return ResponseParser.extract_json(text)
        if response_format == ResponseFormat.HTML:
            return ResponseParser.extract_html(text)
        return text.strip()


def _content_text(content: Any) -> str:
    """Flatten LangChain message content (str or content blocks) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return str(content or "")


async def _run_chat_model(llm: Any, messages: List[Any], on_text: Optional[TextCallback]) -> ProviderResponse:
    """Invoke a LangChain chat model, streaming when a text callback is given."""
    if on_text is None:
        response = await llm.ainvoke(messages)
        usage = dict(getattr(response, "usage_metadata", None) or {})
        return ProviderResponse(text=_content_text(response.content), usage=usage)

    text = ""
    usage: Dict[str, Any] = {}
    async for chunk in llm.astream(messages):
        piece = _content_text(chunk.content)
        if piece:
            text += piece
            on_text(text)
        if getattr(chunk, "usage_metadata", None):
            usage = dict(chunk.usage_metadata)
    return ProviderResponse(text=text, usage=usage)


class OpenAIProvider(GenerativeProvider):
    """OpenAI chat models through LangChain, with JSON mode."""

    kind = ProviderKind.OPENAI

    def _messages(self, request: ProviderRequest) -> List[Any]:
        messages = []
        if request.system:
            messages.append(SystemMessage(content=request.system))

        content: List[Dict[str, Any]] = [{"type": "text", "text": request.prompt}]
        if request.image:
            content.append({
                "type": "image_url",
                "image_url": {"url": request.image.data_url},
            })
        messages.append(HumanMessage(content=content))
        return messages

    async def generate(self, request: ProviderRequest, api_key: str) -> ProviderResponse:
        llm = ChatOpenAI(
            model=request.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            api_key=api_key,
            max_retries=0,
        )
        if request.response_format == ResponseFormat.JSON:
            llm = llm.bind(response_format={"type": "json_object"})
        return await _run_chat_model(llm, self._messages(request), request.on_text)

    def parse(self, text: str, response_format: ResponseFormat) -> Any:
        # JSON mode guarantees a bare object
        if response_format == ResponseFormat.JSON:
            return ResponseParser.extract_json(text, strict=True)
        return super().parse(text, response_format)


class AnthropicProvider(GenerativeProvider):
    """Anthropic Claude models through LangChain."""

    kind = ProviderKind.ANTHROPIC

    def _messages(self, request: ProviderRequest) -> List[Any]:
        messages = []
        if request.system:
            messages.append(SystemMessage(content=request.system))

        content: List[Dict[str, Any]] = []
        if request.image:
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": request.image.media_type,
                    "data": request.image.data,
                },
            })
        content.append({"type": "text", "text": request.prompt})
        messages.append(HumanMessage(content=content))
        return messages

    async def generate(self, request: ProviderRequest, api_key: str) -> ProviderResponse:
        llm = ChatAnthropic(
            model=request.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            api_key=api_key,
            max_retries=0,
        )
        return await _run_chat_model(llm, self._messages(request), request.on_text)


class GoogleProvider(GenerativeProvider):
    """Gemini models through the google-genai async client."""

    kind = ProviderKind.GOOGLE

    def _contents(self, request: ProviderRequest) -> List[Any]:
        contents: List[Any] = []
        if request.image:
            contents.append(types.Part.from_bytes(
                data=base64.b64decode(request.image.data),
                mime_type=request.image.media_type,
            ))
        contents.append(request.prompt)
        return contents

    def _config(self, request: ProviderRequest) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            temperature=self.temperature,
            max_output_tokens=self.max_tokens,
            system_instruction=request.system,
            response_mime_type="application/json" if request.response_format == ResponseFormat.JSON else None,
        )

    @staticmethod
    def _usage(metadata: Any) -> Dict[str, Any]:
        if metadata is None:
            return {}
        return {
            "input_tokens": getattr(metadata, "prompt_token_count", None),
            "output_tokens": getattr(metadata, "candidates_token_count", None),
            "total_tokens": getattr(metadata, "total_token_count", None),
        }

    async def generate(self, request: ProviderRequest, api_key: str) -> ProviderResponse:
        client = genai.Client(api_key=api_key)
        contents = self._contents(request)
        config = self._config(request)

        if request.on_text is None:
            response = await client.aio.models.generate_content(
                model=request.model, contents=contents, config=config,
            )
            return ProviderResponse(text=response.text or "", usage=self._usage(response.usage_metadata))

        text = ""
        usage: Dict[str, Any] = {}
        stream = await client.aio.models.generate_content_stream(
            model=request.model, contents=contents, config=config,
        )
        async for chunk in stream:
            if chunk.text:
                text += chunk.text
                request.on_text(text)
            if chunk.usage_metadata is not None:
                usage = self._usage(chunk.usage_metadata)
        return ProviderResponse(text=text, usage=usage)


PROVIDER_CLASSES = {
    ProviderKind.OPENAI: OpenAIProvider,
    ProviderKind.ANTHROPIC: AnthropicProvider,
    ProviderKind.GOOGLE: GoogleProvider,
}


def build_providers(temperature: float = 0.3, max_tokens: int = 8192) -> Dict[ProviderKind, GenerativeProvider]:
    """Instantiate one adapter per supported provider."""
    return {
        kind: provider_class(temperature=temperature, max_tokens=max_tokens)
        for kind, provider_class in PROVIDER_CLASSES.items()
    }
