"""
Tests for component extraction and deduplication.
"""

import json

from vibe_gen.extraction.components import (
    ComponentExtractor,
    dedupe_components,
    normalize_component_name,
    parse_components,
)
from vibe_gen.gateway import ProviderGateway
from vibe_gen.models import (
    ComponentCategory,
    ComponentVariant,
    ExtractedComponent,
    ExtractionState,
    ExtractionStep,
    ProviderKind,
    SourceScreen,
)

from conftest import SCREENSHOT, SOURCE_HTML, FakeProvider


def component(name, category=ComponentCategory.BUTTON, screen="s1", occurrences=1, variants=(), props=()):
    return ExtractedComponent(
        name=name,
        category=category,
        occurrences=occurrences,
        source_screen_ids=[screen],
        variants=[ComponentVariant(name=v) for v in variants],
        props=list(props),
    )


def test_normalize_component_name():
    """Test name normalization for deduplication keys."""
    assert normalize_component_name("Primary Button!") == "primarybutton"
    assert len(normalize_component_name("x" * 50)) == 30


def test_dedupe_merges_by_category_and_name():
    """Test components merge on category and normalized name."""
    merged = dedupe_components([
        component("Primary Button", screen="s1", variants=["large"], props=["label"]),
        component("primary-button", screen="s2", variants=["Large", "small"], props=["label", "icon"]),
        component("Primary Button", category=ComponentCategory.NAVIGATION, screen="s3"),
        component("Card", category=ComponentCategory.CARD, screen="s1"),
        component("PRIMARY BUTTON", screen="s1"),
    ])

    button = next(c for c in merged if c.category == ComponentCategory.BUTTON)
    assert button.occurrences == 3
    assert button.source_screen_ids == ["s1", "s2"]
    assert [v.name for v in button.variants] == ["large", "small"]
    assert button.props == ["label", "icon"]
    assert len(merged) == 3
    assert merged[0] is button


def test_dedupe_does_not_mutate_inputs():
    original = component("Nav", category=ComponentCategory.NAVIGATION)

    dedupe_components([original, component("nav", category=ComponentCategory.NAVIGATION, screen="s2")])

    assert original.occurrences == 1
    assert original.source_screen_ids == ["s1"]


def test_parse_components_defaults_unknown_category():
    """Test unknown categories fall back to other and nameless entries are dropped."""
    components = parse_components({"components": [
        {"name": "Hero", "category": "banner-thing", "html": "<div></div>"},
        {"category": "button"},
        "junk",
    ]}, "screen-9")

    assert len(components) == 1
    assert components[0].category == ComponentCategory.OTHER
    assert components[0].source_screen_ids == ["screen-9"]


async def test_extractor_processes_screens_and_isolates_failures(settings, vault):
    """Test one failing screen does not stop the others."""
    def respond(request):
        if '("broken")' in request.prompt:
            raise ValueError("model exploded")
        return json.dumps({"components": [{"name": "Buy Button", "category": "button", "html": "<button></button>"}]})

    provider = FakeProvider(respond)
    gateway = ProviderGateway(vault, providers={ProviderKind.ANTHROPIC: provider}, settings=settings)
    extractor = ComponentExtractor(gateway, settings=settings)
    screens = [
        SourceScreen(id="a", name="home", html=SOURCE_HTML, screenshot=SCREENSHOT),
        SourceScreen(id="b", name="cart", html=SOURCE_HTML),
        SourceScreen(id="c", name="broken", html=SOURCE_HTML),
    ]
    found = []

    result = await extractor.extract(screens, on_components_found=lambda comps, name: found.append(name))

    assert not result.success
    assert set(result.errors) == {"c"}
    assert len(result.components) == 1
    assert result.components[0].occurrences == 2
    assert result.components[0].source_screen_ids == ["a", "b"]
    assert sorted(found) == ["cart", "home"]

    tasks = {task.screen_id: task for task in result.tasks}
    assert tasks["a"].state == ExtractionState.COMPLETE
    assert tasks["a"].step == ExtractionStep.DONE
    assert tasks["a"].components_found == 1
    assert tasks["c"].state == ExtractionState.ERROR
    assert "model exploded" in tasks["c"].error
    assert provider.max_in_flight <= settings.extraction_concurrency
