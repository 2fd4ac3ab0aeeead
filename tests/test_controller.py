"""
Tests for the pipeline controller lifecycle.
"""

import asyncio

import pytest

from vibe_gen.errors import (
    CommandInProgressError,
    InvalidTransitionError,
    PreconditionError,
    ValidationError,
)
from vibe_gen.io.stores import InMemorySecretsVault
from vibe_gen.models import GenerationStrategy, SessionStatus, SourceScreen, VariantStatus
from vibe_gen.pipeline.controller import PipelineController
from vibe_gen.pipeline.prompts import EDIT_SYSTEM_PROMPT, PLAN_SYSTEM_PROMPT, UNDERSTANDING_SYSTEM_PROMPT
from vibe_gen.rendering.capture import ScreenCapturer

from conftest import ITERATED_HTML, SCREENSHOT, SOURCE_HTML, PLANS


PROMPT = "Make the buy button stand out"


class StaticCapturer(ScreenCapturer):
    def __init__(self, screenshot):
        self.screenshot = screenshot
        self.captured = 0

    async def capture(self, html):
        self.captured += 1
        return self.screenshot


async def reach_wireframes(controller, screen, selected=(1, 2, 3, 4)):
    await controller.start(PROMPT, screen)
    await controller.approve_understanding()
    return await controller.approve_plan(list(selected))


async def test_full_pipeline_reaches_complete(controller, screen, store):
    """Every gate in order ends with all selected variants stored."""
    view = await controller.start(PROMPT, screen)
    assert view.status == SessionStatus.UNDERSTANDING_READY
    assert view.understanding.summary == "Make the purchase button more prominent"
    assert view.understanding.clarifying_questions == ["Should the color change?"]
    assert view.metadata.layout.has_header

    view = await controller.approve_understanding()
    assert view.status == SessionStatus.PLAN_READY
    assert [plan.title for plan in view.plan] == [plan["title"] for plan in PLANS]
    assert view.session.understanding_approved_at is not None

    view = await controller.approve_plan([3, 1, 3])
    assert view.status == SessionStatus.WIREFRAME_READY
    assert view.selected_indices == [1, 3]
    assert "Wireframe" in view.plan[0].wireframe_html
    assert view.plan[1].wireframe_html is None

    view = await controller.build_high_fidelity()
    assert view.status == SessionStatus.COMPLETE
    assert view.progress.percent == 100.0
    for index in (1, 3):
        variant = view.variant(index)
        assert variant.status == VariantStatus.COMPLETE
        html = await store.get(variant.html_url)
        assert "Shop now" in html
        assert "Buy now" not in html
    assert view.variant(2) is None
    assert view.plan[0].edit_summary == "Renamed the call to action"


async def test_edit_prompt_carries_summary_not_source(controller, screen, provider):
    """Edit-based generation sends the element summary, never the full document."""
    await reach_wireframes(controller, screen, selected=(1,))
    await controller.build_high_fidelity()

    edit_calls = provider.calls_for(EDIT_SYSTEM_PROMPT)
    assert len(edit_calls) == 1
    assert "#buy" in edit_calls[0].prompt
    assert "<button" not in edit_calls[0].prompt
    assert edit_calls[0].image is not None


async def test_product_context_and_guidelines_reach_prompts(controller, screen, provider):
    """Product context and UX guidelines are passed on, cut to each phase's limit."""
    product_context = "Acme sells refurbished gadgets. " + "c" * 4000
    guidelines = "Buttons use sentence case. " + "g" * 5000

    await controller.start(PROMPT, screen, product_context=product_context, ux_guidelines=guidelines)
    await controller.approve_understanding()

    understanding_prompt = provider.calls_for(UNDERSTANDING_SYSTEM_PROMPT)[0].prompt
    plan_prompt = provider.calls_for(PLAN_SYSTEM_PROMPT)[0].prompt
    assert "## Product Context\nAcme sells refurbished gadgets." in understanding_prompt
    assert product_context[:1500] in understanding_prompt
    assert product_context[:1501] not in understanding_prompt
    assert "## UX Guidelines" not in understanding_prompt
    assert product_context[:2000] in plan_prompt
    assert product_context[:2001] not in plan_prompt
    assert guidelines[:3000] in plan_prompt
    assert guidelines[:3001] not in plan_prompt


async def test_prompts_omit_missing_context(controller, screen, provider):
    await controller.start(PROMPT, screen)
    await controller.approve_understanding()

    assert "## Product Context" not in provider.calls_for(UNDERSTANDING_SYSTEM_PROMPT)[0].prompt
    plan_prompt = provider.calls_for(PLAN_SYSTEM_PROMPT)[0].prompt
    assert "## Product Context" not in plan_prompt
    assert "## UX Guidelines" not in plan_prompt


async def test_full_regeneration_strategy(controller, screen, store):
    """Full regeneration streams a complete document into the variant."""
    await reach_wireframes(controller, screen, selected=(2,))
    view = await controller.build_high_fidelity(GenerationStrategy.FULL_REGENERATION)

    assert view.status == SessionStatus.COMPLETE
    variant = view.variant(2)
    assert variant.partial_html is None
    assert "Regenerated" in await store.get(variant.html_url)


async def test_start_requires_screenshot(controller, provider):
    """Without a screenshot no model call is made and the session stays idle."""
    screen = SourceScreen(name="shop", html=SOURCE_HTML)

    with pytest.raises(PreconditionError):
        await controller.start(PROMPT, screen)

    assert provider.calls == []
    assert controller.view.status == SessionStatus.IDLE


async def test_start_captures_missing_screenshot(gateway, store, settings, provider):
    capturer = StaticCapturer(SCREENSHOT)
    controller = PipelineController(gateway, store, capturer=capturer, settings=settings)

    view = await controller.start(PROMPT, SourceScreen(name="shop", html=SOURCE_HTML))

    assert view.status == SessionStatus.UNDERSTANDING_READY
    assert capturer.captured == 1
    assert provider.calls_for(UNDERSTANDING_SYSTEM_PROMPT)[0].image is not None


async def test_start_rejects_empty_prompt(controller, screen):
    with pytest.raises(ValidationError):
        await controller.start("   ", screen)


async def test_command_from_wrong_status(controller, screen):
    with pytest.raises(PreconditionError):
        await controller.approve_understanding()

    await controller.start(PROMPT, screen)
    with pytest.raises(InvalidTransitionError):
        await controller.build_high_fidelity()


async def test_clarify_reruns_understanding(controller, screen, provider):
    await controller.start(PROMPT, screen)

    view = await controller.clarify("Yes, use the accent green")

    assert view.status == SessionStatus.UNDERSTANDING_READY
    calls = provider.calls_for(UNDERSTANDING_SYSTEM_PROMPT)
    assert len(calls) == 2
    assert "Yes, use the accent green" in calls[1].prompt


async def test_plan_with_too_few_variants_reverts(controller, screen, responder):
    """A plan response with fewer than four directions is malformed."""
    responder.plans = PLANS[:2]
    await controller.start(PROMPT, screen)

    view = await controller.approve_understanding()

    assert view.status == SessionStatus.UNDERSTANDING_READY
    assert view.error.kind == "malformed_response"
    assert not view.understanding.approved


async def test_plan_selection_is_validated(controller, screen):
    await controller.start(PROMPT, screen)
    await controller.approve_understanding()

    with pytest.raises(ValidationError):
        await controller.approve_plan([])
    with pytest.raises(ValidationError):
        await controller.approve_plan([1, 5])
    assert controller.view.status == SessionStatus.PLAN_READY


async def test_missing_key_on_build_makes_no_call(controller, screen, gateway, provider):
    """A missing API key reverts generation to wireframing without calling the provider."""
    await reach_wireframes(controller, screen)
    gateway.vault = InMemorySecretsVault()
    calls_before = len(provider.calls)

    view = await controller.build_high_fidelity()

    assert view.status == SessionStatus.WIREFRAMING
    assert view.error.kind == "api_key_missing"
    assert view.error.retryable_with_other_provider
    assert len(provider.calls) == calls_before

    view = await controller.select_provider("anthropic")
    assert view.error is None


async def test_one_rate_limited_variant_does_not_block_others(gateway, store, settings, screen, provider, responder):
    """Variant 2 fails while 1, 3 and 4 complete; the session keeps generating."""
    settings = settings.model_copy(update={"variant_concurrency": 3})
    controller = PipelineController(gateway, store, settings=settings)
    await reach_wireframes(controller, screen)
    responder.failing_titles.add("Direction 2")
    provider.max_in_flight = 0

    view = await controller.build_high_fidelity()

    assert view.status == SessionStatus.GENERATING
    for index in (1, 3, 4):
        assert view.variant(index).status == VariantStatus.COMPLETE
    assert view.variant(2).status == VariantStatus.ERROR
    assert view.variant_errors[2].kind == "rate_limited"
    assert set(view.variant_errors) == {2}
    assert provider.max_in_flight <= 3

    responder.failing_titles.clear()
    view = await controller.retry_variant(2, view.epochs.get(2, 0))

    assert view.status == SessionStatus.COMPLETE
    assert view.variant(2).status == VariantStatus.COMPLETE
    assert view.variant_errors == {}


async def test_stale_retry_is_rejected(controller, screen, responder):
    await reach_wireframes(controller, screen, selected=(1, 2))
    responder.failing_titles.add("Direction 2")
    view = await controller.build_high_fidelity()
    first_epoch = view.epochs.get(2, 0)

    view = await controller.retry_variant(2, first_epoch)
    assert view.status == SessionStatus.GENERATING
    assert view.epochs[2] == first_epoch + 1

    with pytest.raises(ValidationError):
        await controller.retry_variant(2, first_epoch)


async def test_concurrent_retries_share_one_generation(controller, screen, responder, provider):
    await reach_wireframes(controller, screen, selected=(1, 2))
    responder.failing_titles.add("Direction 2")
    view = await controller.build_high_fidelity()
    responder.failing_titles.clear()
    epoch = view.epochs.get(2, 0)
    calls_before = len(provider.calls_for(EDIT_SYSTEM_PROMPT))

    first, second = await asyncio.gather(
        controller.retry_variant(2, epoch),
        controller.retry_variant(2, epoch),
    )

    assert len(provider.calls_for(EDIT_SYSTEM_PROMPT)) == calls_before + 1
    assert first.status == SessionStatus.COMPLETE
    assert second.status == SessionStatus.COMPLETE


async def test_second_command_while_generating(controller, screen, provider):
    await reach_wireframes(controller, screen, selected=(1,))
    provider.gate = asyncio.Event()
    build = asyncio.create_task(controller.build_high_fidelity())
    await asyncio.sleep(0.05)

    with pytest.raises(CommandInProgressError):
        await controller.build_high_fidelity()

    provider.gate.set()
    view = await build
    assert view.status == SessionStatus.COMPLETE


async def test_rollback_discards_in_flight_results(controller, screen, provider):
    await reach_wireframes(controller, screen, selected=(1, 2))
    provider.gate = asyncio.Event()
    build = asyncio.create_task(controller.build_high_fidelity())
    await asyncio.sleep(0.05)

    view = await controller.rollback_to_wireframes()
    assert view.status == SessionStatus.WIREFRAMING

    provider.gate.set()
    view = await build
    assert view.status == SessionStatus.WIREFRAMING
    for index in (1, 2):
        assert view.variant(index).status != VariantStatus.COMPLETE
        assert view.variant(index).html_url is None

    view = await controller.build_high_fidelity()
    assert view.status == SessionStatus.COMPLETE


async def test_rollback_from_complete(controller, screen):
    await reach_wireframes(controller, screen, selected=(1,))
    await controller.build_high_fidelity()

    view = await controller.rollback_to_wireframes()

    assert view.status == SessionStatus.WIREFRAMING
    assert view.epochs[1] == 1


async def test_cancel_variant_abandons_its_result(controller, screen, provider):
    await reach_wireframes(controller, screen, selected=(1,))
    provider.gate = asyncio.Event()
    build = asyncio.create_task(controller.build_high_fidelity())
    await asyncio.sleep(0.05)

    view = await controller.cancel_variant(1)
    assert view.variant(1).error_message == "Cancelled"

    provider.gate.set()
    view = await build
    assert view.status == SessionStatus.GENERATING
    assert view.variant(1).status == VariantStatus.ERROR

    view = await controller.retry_variant(1, view.epochs[1])
    assert view.status == SessionStatus.COMPLETE


async def test_iterate_and_revert(controller, screen, store):
    await reach_wireframes(controller, screen, selected=(1,))
    view = await controller.build_high_fidelity()
    view = await controller.iterate(1, "Make the header sticky")

    assert view.status == SessionStatus.COMPLETE
    variant = view.variant(1)
    assert variant.iteration_count == 1
    assert await store.get(variant.html_url) == ITERATED_HTML
    history = controller.iteration_history(1)
    assert len(history) == 1
    assert history[0].iteration_number == 1
    assert history[0].prompt == "Make the header sticky"
    assert "Shop now" in await store.get(history[0].html_before_url)

    view = await controller.revert(variant.id, history[0].id)

    restored = await store.get(view.variant(1).html_url)
    assert "Shop now" in restored
    assert len(controller.iteration_history(1)) == 1
    assert view.variant(1).html_url == history[0].html_before_url
    assert not list(store.output_dir.rglob("reverts"))


async def test_iterate_requires_complete_variant(controller, screen):
    await reach_wireframes(controller, screen, selected=(1,))

    with pytest.raises(PreconditionError):
        await controller.iterate(1, "Make it blue")


async def test_manual_edits_are_debounced(controller, screen, store):
    await reach_wireframes(controller, screen, selected=(1,))
    view = await controller.build_high_fidelity()
    session_id = view.session.id

    await controller.edit_variant_html(1, "<html><body>draft</body></html>")
    view = await controller.edit_variant_html(1, "<html><body>final edit</body></html>")
    assert view.variant(1).edited_html == "<html><body>final edit</body></html>"

    await asyncio.sleep(0.2)
    key = controller.persistence.content_key(session_id, 1)
    assert await store.get(store.url_for(key)) == "<html><body>final edit</body></html>"


async def test_resume_loads_saved_content(controller, screen):
    await reach_wireframes(controller, screen, selected=(1,))
    view = await controller.build_high_fidelity()

    with pytest.raises(PreconditionError):
        await controller.resume("unknown-session")

    view = await controller.resume(view.session.id)
    assert view.variant(1).status == VariantStatus.COMPLETE


async def test_resume_after_restart(controller, screen, gateway, store, settings):
    """A new controller sharing the store picks the session up where it was left."""
    await reach_wireframes(controller, screen, selected=(1, 2))
    view = await controller.build_high_fidelity()
    session_id = view.session.id
    epochs = view.epochs
    await controller.edit_variant_html(1, "<html><body>edited</body></html>")
    await controller.close()

    restarted = PipelineController(gateway, store, settings=settings)
    with pytest.raises(PreconditionError):
        await restarted.resume("unknown-session")

    view = await restarted.resume(session_id)

    assert view.status == SessionStatus.COMPLETE
    assert view.session.id == session_id
    assert view.session.understanding_approved_at is not None
    assert view.understanding.clarifying_questions == ["Should the color change?"]
    assert [plan.title for plan in view.plan] == [plan["title"] for plan in PLANS]
    assert view.selected_indices == [1, 2]
    assert view.epochs == epochs
    assert view.metadata.layout.has_header
    assert view.variant(1).edited_html == "<html><body>edited</body></html>"
    assert view.variant(2).status == VariantStatus.COMPLETE

    view = await restarted.iterate(1, "Make the header sticky")
    assert view.variant(1).iteration_count == 1
    before = await store.get(restarted.iteration_history(1)[0].html_before_url)
    assert before == "<html><body>edited</body></html>"


async def test_resume_marks_unfinished_variants_for_retry(controller, screen, gateway, store, settings, provider):
    """Variants still building when the process stopped come back as retryable errors."""
    await reach_wireframes(controller, screen, selected=(1, 2))
    provider.gate = asyncio.Event()
    build = asyncio.ensure_future(controller.build_high_fidelity())
    await asyncio.sleep(0.05)
    await controller.cancel_variant(2)
    session_id = controller.view.session.id

    restarted = PipelineController(gateway, store, settings=settings)
    view = await restarted.resume(session_id)

    assert view.status == SessionStatus.GENERATING
    assert view.variant(1).status == VariantStatus.ERROR
    assert view.variant(1).error_message == "Interrupted before completion"
    assert view.variant(2).error_message == "Cancelled"

    provider.gate.set()
    await build
    view = await restarted.retry_variant(1, view.epochs[1])
    assert view.variant(1).status == VariantStatus.COMPLETE
