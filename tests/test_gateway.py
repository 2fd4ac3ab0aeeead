"""
Tests for the provider gateway, response parsing and error classification.
"""

import asyncio
import json

import pytest

from vibe_gen.errors import ErrorKind, ProviderError
from vibe_gen.gateway import (
    OpenAIProvider,
    ProviderGateway,
    ResponseParser,
    classify_error,
    parse_image_payload,
)
from vibe_gen.io.stores import InMemorySecretsVault
from vibe_gen.models import ProviderKind, ResponseFormat

from conftest import SCREENSHOT, FakeProvider


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def make_gateway(settings, respond, vault=None, delay=0.0, kinds=(ProviderKind.ANTHROPIC,)):
    providers = {kind: FakeProvider(respond, kind=kind, delay=delay) for kind in kinds}
    vault = vault if vault is not None else InMemorySecretsVault({(None, ProviderKind.ANTHROPIC): "key"})
    return ProviderGateway(vault, providers=providers, settings=settings), providers


async def test_missing_key_fails_before_any_call(settings):
    """Test a missing API key fails without calling the provider."""
    gateway, providers = make_gateway(settings, lambda r: "{}", vault=InMemorySecretsVault())

    with pytest.raises(ProviderError) as excinfo:
        await gateway.invoke("hello")

    assert excinfo.value.kind == ErrorKind.API_KEY_MISSING
    assert excinfo.value.retryable_with_other_provider
    assert providers[ProviderKind.ANTHROPIC].calls == []


async def test_json_is_extracted_from_prose(settings):
    """Test JSON is recovered from a chatty response."""
    gateway, _ = make_gateway(settings, lambda r: 'Sure! Here it is:\n```json\n{"a": 1}\n```\nAnything else?')

    result = await gateway.invoke("give json", response_format=ResponseFormat.JSON)

    assert result.content == {"a": 1}
    assert result.provider == "anthropic"
    assert result.model == "claude-sonnet-4-20250514"
    assert result.usage["output_tokens"] > 0


async def test_html_response_and_image_payload(settings):
    gateway, providers = make_gateway(settings, lambda r: "Here you go\n<!DOCTYPE html><html><body>x</body></html>")

    result = await gateway.invoke("page", image=SCREENSHOT, response_format=ResponseFormat.HTML)

    assert result.content.startswith("<!DOCTYPE html>")
    request = providers[ProviderKind.ANTHROPIC].calls[0]
    assert request.image.media_type == "image/png"
    assert not request.image.data.startswith("data:")


async def test_call_deadline_is_a_timeout(settings):
    """Test the per-call deadline is classified as a timeout."""
    gateway, _ = make_gateway(settings, lambda r: "{}", delay=1.0)

    with pytest.raises(ProviderError) as excinfo:
        await gateway.invoke("slow", deadline=0.05)

    assert excinfo.value.kind == ErrorKind.TIMEOUT
    assert excinfo.value.provider == "anthropic"


async def test_malformed_json_is_classified(settings):
    gateway, _ = make_gateway(settings, lambda r: "no json here")

    with pytest.raises(ProviderError) as excinfo:
        await gateway.invoke("x", response_format=ResponseFormat.JSON)

    assert excinfo.value.kind == ErrorKind.MALFORMED_RESPONSE


async def test_provider_auto_selection_follows_held_keys(settings):
    """Test the provider defaults to the first one with a key."""
    settings = settings.model_copy(update={"provider": None})
    vault = InMemorySecretsVault({(None, ProviderKind.GOOGLE): "g-key"})
    gateway, providers = make_gateway(
        settings, lambda r: "ok", vault=vault,
        kinds=(ProviderKind.ANTHROPIC, ProviderKind.OPENAI, ProviderKind.GOOGLE),
    )

    result = await gateway.invoke("hi", response_format=ResponseFormat.TEXT)

    assert gateway.resolve_provider() == ProviderKind.GOOGLE
    assert result.provider == "google"
    assert len(providers[ProviderKind.GOOGLE].calls) == 1
    assert providers[ProviderKind.ANTHROPIC].calls == []


async def test_per_user_keys(settings):
    """Test keys are looked up per user."""
    vault = InMemorySecretsVault({("alice", ProviderKind.ANTHROPIC): "alice-key"})
    gateway, _ = make_gateway(settings, lambda r: "ok", vault=vault)

    result = await gateway.invoke("hi", user_id="alice", response_format=ResponseFormat.TEXT)
    assert result.content == "ok"

    with pytest.raises(ProviderError):
        await gateway.invoke("hi", user_id="bob", response_format=ResponseFormat.TEXT)


async def test_streaming_callback_receives_text(settings):
    gateway, _ = make_gateway(settings, lambda r: "<html>streamed</html>")
    seen = []

    await gateway.invoke("x", response_format=ResponseFormat.HTML, on_text=seen.append)

    assert seen == ["<html>streamed</html>"]


@pytest.mark.parametrize("error, kind", [
    (asyncio.TimeoutError(), ErrorKind.TIMEOUT),
    (ConnectionError("reset"), ErrorKind.NETWORK_ERROR),
    (json.JSONDecodeError("bad", "x", 0), ErrorKind.MALFORMED_RESPONSE),
    (StatusError(429), ErrorKind.RATE_LIMITED),
    (StatusError(401), ErrorKind.API_KEY_MISSING),
    (StatusError(500), ErrorKind.NETWORK_ERROR),
])
def test_classify_error(error, kind):
    """Test error classification by exception type and status code."""
    classified = classify_error(error, ProviderKind.OPENAI, "gpt-4o")

    assert classified.kind == kind
    assert classified.provider == "openai"
    assert classified.model == "gpt-4o"


def test_classify_keeps_existing_provider_errors():
    original = ProviderError(ErrorKind.MALFORMED_RESPONSE, "bad")

    classified = classify_error(original, ProviderKind.GOOGLE, "gemini-1.5-pro")

    assert classified is original
    assert str(classified) == "[malformed_response] google/gemini-1.5-pro: bad"


def test_openai_json_mode_is_strict():
    """Test OpenAI JSON mode responses must parse as-is."""
    provider = OpenAIProvider()

    assert provider.parse('{"a": 1}', ResponseFormat.JSON) == {"a": 1}
    with pytest.raises(ProviderError):
        provider.parse('Sure: {"a": 1}', ResponseFormat.JSON)


def test_parse_data_url():
    payload = parse_image_payload("data:image/jpg;base64,/9j/AAAA")

    assert payload.media_type == "image/jpeg"
    assert payload.data == "/9j/AAAA"
    assert payload.data_url == "data:image/jpeg;base64,/9j/AAAA"


@pytest.mark.parametrize("data, media_type", [
    ("/9j/4AAQ", "image/jpeg"),
    ("iVBORw0KGgo", "image/png"),
    ("R0lGODlh", "image/gif"),
    ("UklGRiQA", "image/webp"),
    ("AAAA", "image/png"),
])
def test_sniff_bare_base64(data, media_type):
    """Test media type sniffing from base64 magic bytes."""
    assert parse_image_payload(data).media_type == media_type


def test_extract_json_array_fallback():
    assert ResponseParser.extract_json("The list: [1, 2, 3] done") == [1, 2, 3]


def test_extract_html_without_markup_fails():
    with pytest.raises(ProviderError):
        ResponseParser.extract_html("I cannot help with that.")
