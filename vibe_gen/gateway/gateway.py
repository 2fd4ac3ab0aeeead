"""
Single entry point for model calls: key lookup, deadline, logging and
error classification around the provider adapters.
"""

import asyncio
import json
import logging
import time
from typing import Dict, Optional, Union

import anthropic
import httpx
import openai
from google.genai import errors as genai_errors
from pydantic import ValidationError as SchemaError

from vibe_gen.config import PROVIDER_PREFERENCE, Settings
from vibe_gen.errors import ErrorKind, ProviderError
from vibe_gen.gateway.parsing import parse_image_payload
from vibe_gen.gateway.providers import (
    GenerativeProvider,
    ProviderRequest,
    TextCallback,
    build_providers,
)
from vibe_gen.io.stores import SecretsVault
from vibe_gen.models import ProviderKind, ResponseFormat, StructuredResult
from vibe_gen.utils.llm_logger import get_logger


log = logging.getLogger(__name__)

TIMEOUT_ERRORS = (
    asyncio.TimeoutError,
    openai.APITimeoutError,
    anthropic.APITimeoutError,
    httpx.TimeoutException,
)
RATE_LIMIT_ERRORS = (openai.RateLimitError, anthropic.RateLimitError)
AUTH_ERRORS = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
)
NETWORK_ERRORS = (
    openai.APIConnectionError,
    anthropic.APIConnectionError,
    httpx.TransportError,
    ConnectionError,
)


def _kind_for_status(status: Optional[int]) -> ErrorKind:
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (401, 403):
        return ErrorKind.API_KEY_MISSING
    if status in (408, 504):
        return ErrorKind.TIMEOUT
    return ErrorKind.NETWORK_ERROR


def classify_error(error: BaseException, provider: ProviderKind, model: str) -> ProviderError:
    """
    Map any exception raised during a provider call onto the error taxonomy.

    Args:
        error: The raised exception.
        provider: Provider the call was made against.
        model: Model name used for the call.

    Returns:
        A ProviderError carrying provider/model context.
    """
    if isinstance(error, ProviderError):
        error.provider = error.provider or provider.value
        error.model = error.model or model
        return error

    # Timeout subclasses of connection errors must be checked first
    if isinstance(error, TIMEOUT_ERRORS):
        kind = ErrorKind.TIMEOUT
    elif isinstance(error, RATE_LIMIT_ERRORS):
        kind = ErrorKind.RATE_LIMITED
    elif isinstance(error, AUTH_ERRORS):
        kind = ErrorKind.API_KEY_MISSING
    elif isinstance(error, genai_errors.APIError):
        kind = _kind_for_status(error.code)
    elif isinstance(error, NETWORK_ERRORS):
        kind = ErrorKind.NETWORK_ERROR
    elif isinstance(error, (json.JSONDecodeError, SchemaError)):
        kind = ErrorKind.MALFORMED_RESPONSE
    else:
        status = getattr(error, "status_code", None)
        kind = _kind_for_status(status if isinstance(status, int) else None)

    message = str(error) or type(error).__name__
    return ProviderError(kind, message, provider=provider.value, model=model)


class ProviderGateway:
    """Invokes a configured provider and returns parsed, classified results."""

    def __init__(
        self,
        vault: SecretsVault,
        providers: Optional[Dict[ProviderKind, GenerativeProvider]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the gateway.

        Args:
            vault: Source of API keys, consulted before every call.
            providers: Adapters by provider kind (defaults to the real ones).
            settings: Pipeline settings (defaults and deadlines).
        """
        self.settings = settings or Settings()
        self.vault = vault
        self.providers = providers or build_providers(
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )
        self.llm_logger = get_logger()

    def resolve_provider(self, user_id: Optional[str] = None) -> ProviderKind:
        """Configured provider, else the first one the user holds a key for."""
        if self.settings.provider is not None:
            return self.settings.provider
        for kind in PROVIDER_PREFERENCE:
            if kind in self.providers and self.vault.get_api_key(user_id, kind):
                return kind
        return PROVIDER_PREFERENCE[0]

    def default_model(self, provider: ProviderKind) -> str:
        if self.settings.model and self.settings.provider == provider:
            return self.settings.model
        return self.providers[provider].default_model

    async def invoke(
        self,
        prompt: str,
        image: Optional[str] = None,
        provider: Optional[Union[ProviderKind, str]] = None,
        model: Optional[str] = None,
        deadline: Optional[float] = None,
        response_format: ResponseFormat = ResponseFormat.JSON,
        system: Optional[str] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        component: str = "gateway",
        on_text: Optional[TextCallback] = None,
    ) -> StructuredResult:
        """
        Run one model call.

        Args:
            prompt: User prompt text.
            image: Optional screenshot as data URL or base64.
            provider: Provider to use (defaults to the resolved one).
            model: Model name (defaults to the provider's default).
            deadline: Seconds allowed for the call (defaults to settings).
            response_format: Expected shape of the response.
            system: Optional system prompt.
            user_id: Owner of the API key to use.
            session_id: Session the call belongs to (for call logs).
            component: Caller name for call logs.
            on_text: Streaming callback receiving the accumulated text.

        Returns:
            StructuredResult with parsed content and raw text.

        Raises:
            ProviderError: Classified failure. No retries happen here.
        """
        kind = ProviderKind(provider) if provider else self.resolve_provider(user_id)
        if kind not in self.providers:
            raise ProviderError(ErrorKind.API_KEY_MISSING, "Provider is not configured", provider=kind.value)
        adapter = self.providers[kind]
        model_name = model or self.default_model(kind)

        api_key = self.vault.get_api_key(user_id, kind)
        if not api_key:
            raise ProviderError(
                ErrorKind.API_KEY_MISSING,
                f"No API key configured for {kind.value}",
                provider=kind.value,
                model=model_name,
            )

        payload = parse_image_payload(image) if image else None
        request = ProviderRequest(
            prompt=prompt,
            model=model_name,
            system=system,
            image=payload,
            response_format=response_format,
            on_text=on_text,
        )
        timeout = deadline if deadline is not None else self.settings.call_deadline_s

        invocation_id = self.llm_logger.log_invocation(component, kind.value, model_name, session_id)
        if invocation_id:
            self.llm_logger.log_request(
                invocation_id=invocation_id,
                component=component,
                provider=kind.value,
                model=model_name,
                prompt=prompt,
                system=system,
                image_summary=self.llm_logger.describe_image(
                    payload.media_type if payload else None,
                    payload.data if payload else None,
                ),
                temperature=adapter.temperature,
                max_tokens=adapter.max_tokens,
                session_id=session_id,
                metadata={"response_format": response_format.value},
            )

        start_time = time.time()
        try:
            call = adapter.generate(request, api_key)
            response = await asyncio.wait_for(call, timeout) if timeout else await call
            content = adapter.parse(response.text, response_format)
        except Exception as e:
            error = classify_error(e, kind, model_name)
            log.warning("Provider call failed (%s/%s): %s", kind.value, model_name, error)
            self.llm_logger.log_error(invocation_id, component, kind.value, model_name, error, session_id)
            raise error from e
        end_time = time.time()

        if invocation_id:
            self.llm_logger.log_response(
                invocation_id=invocation_id,
                component=component,
                provider=kind.value,
                model=model_name,
                text=response.text,
                start_time=start_time,
                end_time=end_time,
                usage=response.usage,
                session_id=session_id,
            )

        return StructuredResult(
            content=content,
            raw_text=response.text,
            provider=kind.value,
            model=model_name,
            duration_ms=int((end_time - start_time) * 1000),
            usage=response.usage,
        )
