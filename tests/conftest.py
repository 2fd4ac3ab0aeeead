"""
Shared fixtures and fake providers for pipeline tests.
"""

import asyncio
import json
from typing import Callable, List, Optional, Set

import pytest

from vibe_gen.config import Settings
from vibe_gen.errors import ErrorKind, ProviderError
from vibe_gen.gateway import GenerativeProvider, ProviderGateway, ProviderRequest, ProviderResponse
from vibe_gen.io.stores import InMemorySecretsVault, LocalArtifactStore
from vibe_gen.models import ProviderKind, SourceScreen
from vibe_gen.pipeline.controller import PipelineController
from vibe_gen.pipeline.prompts import (
    EDIT_SYSTEM_PROMPT,
    ITERATION_SYSTEM_PROMPT,
    PLAN_SYSTEM_PROMPT,
    REGENERATION_SYSTEM_PROMPT,
    UNDERSTANDING_SYSTEM_PROMPT,
    WIREFRAME_SYSTEM_PROMPT,
)


SOURCE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <title>Acme Shop</title>
  <style>body { background: #ffffff; color: #111111; font-family: Inter, sans-serif; }</style>
  <script>console.log("tracking");</script>
</head>
<body>
  <header id="top">
    <h1 class="title">Acme Shop</h1>
    <nav><a href="/">Home</a><a href="/cart">Cart</a></nav>
  </header>
  <main>
    <section class="hero">
      <p class="tagline">Great things, small prices</p>
      <button id="buy" class="btn primary">Buy now</button>
    </section>
    <ul class="features">
      <li class="item">Fast shipping</li>
      <li class="item">Easy returns</li>
    </ul>
  </main>
  <footer><p>Acme Inc.</p></footer>
</body>
</html>"""

SCREENSHOT = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="

PLANS = [
    {
        "title": f"Direction {i}",
        "description": f"Alternative layout number {i}",
        "keyChanges": [f"Change {i}"],
        "styleNotes": "Keep brand colors",
    }
    for i in range(1, 5)
]

EDITS = {
    "operations": [
        {"type": "updateText", "selector": "#buy", "newText": "Shop now", "description": "Stronger CTA"},
    ],
    "summary": "Renamed the call to action",
}

ITERATED_HTML = "<html><body><h1>Iterated</h1></body></html>"


class FakeProvider(GenerativeProvider):
    """Provider that answers from a callable and records every request."""

    def __init__(
        self,
        respond: Callable[[ProviderRequest], str],
        kind: ProviderKind = ProviderKind.ANTHROPIC,
        delay: float = 0.0,
    ):
        super().__init__()
        self.kind = kind
        self.respond = respond
        self.delay = delay
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[ProviderRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, request: ProviderRequest, api_key: str) -> ProviderResponse:
        self.calls.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            text = self.respond(request)
        finally:
            self.in_flight -= 1
        if request.on_text is not None:
            request.on_text(text)
        return ProviderResponse(text=text, usage={"output_tokens": len(text)})

    def calls_for(self, system: str) -> List[ProviderRequest]:
        return [call for call in self.calls if call.system == system]


class PipelineResponder:
    """Canned answers for each pipeline phase, keyed by system prompt."""

    def __init__(self):
        self.failing_titles: Set[str] = set()
        self.plans = PLANS

    def __call__(self, request: ProviderRequest) -> str:
        system = request.system
        if system == UNDERSTANDING_SYSTEM_PROMPT:
            return json.dumps({
                "summary": "Make the purchase button more prominent",
                "goals": ["Increase conversions"],
                "scope": "Hero section only",
                "assumptions": [],
                "clarifyingQuestions": ["Should the color change?"],
            })
        if system == PLAN_SYSTEM_PROMPT:
            return "Here are the plans:\n```json\n" + json.dumps({"plans": self.plans}) + "\n```"
        if system == WIREFRAME_SYSTEM_PROMPT:
            return "<html><body><div style=\"border:1px solid #999\">Wireframe</div></body></html>"
        if system in (EDIT_SYSTEM_PROMPT, REGENERATION_SYSTEM_PROMPT):
            for title in self.failing_titles:
                if f"**Title:** {title}\n" in request.prompt:
                    raise ProviderError(ErrorKind.RATE_LIMITED, "429 Too Many Requests")
            if system == EDIT_SYSTEM_PROMPT:
                return json.dumps(EDITS)
            return "<!DOCTYPE html><html><body><h1>Regenerated</h1></body></html>"
        if system == ITERATION_SYSTEM_PROMPT:
            return ITERATED_HTML
        raise AssertionError(f"Unexpected system prompt: {system!r}")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        provider=ProviderKind.ANTHROPIC,
        call_deadline_s=5.0,
        variant_timeout_s=5.0,
        extraction_timeout_s=5.0,
        edit_debounce_s=0.05,
        partial_interval_s=0.05,
        output_dir=tmp_path / "outputs",
    )


@pytest.fixture
def responder() -> PipelineResponder:
    return PipelineResponder()


@pytest.fixture
def provider(responder) -> FakeProvider:
    return FakeProvider(responder, delay=0.01)


@pytest.fixture
def vault() -> InMemorySecretsVault:
    return InMemorySecretsVault({(None, ProviderKind.ANTHROPIC): "test-key"})


@pytest.fixture
def gateway(provider, vault, settings) -> ProviderGateway:
    return ProviderGateway(vault, providers={ProviderKind.ANTHROPIC: provider}, settings=settings)


@pytest.fixture
def store(settings) -> LocalArtifactStore:
    return LocalArtifactStore(settings.output_dir)


@pytest.fixture
def controller(gateway, store, settings) -> PipelineController:
    return PipelineController(gateway, store, settings=settings)


@pytest.fixture
def screen() -> SourceScreen:
    return SourceScreen(name="shop", html=SOURCE_HTML, screenshot=SCREENSHOT)
