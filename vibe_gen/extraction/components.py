"""
Reusable component extraction across source screens.

Each screen is one executor task walking screenshot -> compress -> llm-processing
-> parsing -> done. Components found on several screens are merged by category
and normalized name.
"""

import asyncio
import base64
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as SchemaError

from vibe_gen.config import Settings
from vibe_gen.editing.element_summary import extract_element_summary
from vibe_gen.execution.executor import BatchProgress, ConcurrentTaskExecutor, StepReporter, TaskSpec
from vibe_gen.gateway import ProviderGateway, parse_image_payload
from vibe_gen.models import (
    ComponentCategory,
    ComponentVariant,
    ExtractedComponent,
    ExtractionState,
    ExtractionStep,
    ExtractionTask,
    ResponseFormat,
    SourceScreen,
)
from vibe_gen.rendering.capture import ScreenCapturer, compress_image, to_data_url


log = logging.getLogger(__name__)

EXTRACTION_PROMPT = """Identify the reusable UI components on this screen ("{screen_name}").

For each distinct component return its name, a category, a one-line description,
self-contained HTML and CSS reproducing it, any visual variants (e.g. primary/secondary)
and the props a developer would expose.

Categories: {categories}

Page structure:
```
{element_summary}
```

Return ONLY a JSON object:
{{"components": [{{"name": "...", "category": "button", "description": "...", "html": "...", "css": "...",
  "variants": [{{"name": "...", "html": "...", "css": "..."}}], "props": ["..."]}}]}}"""


def normalize_component_name(name: str) -> str:
    """Lowercase alphanumerics only, first 30 characters."""
    return re.sub(r"[^a-z0-9]", "", name.lower())[:30]


def component_signature(component: ExtractedComponent) -> str:
    return f"{component.category.value}:{normalize_component_name(component.name)}"


def merge_variants(existing: List[ComponentVariant], incoming: List[ComponentVariant]) -> List[ComponentVariant]:
    """Union of variants by case-insensitive name, first occurrence wins."""
    merged = list(existing)
    seen = {variant.name.lower() for variant in existing}
    for variant in incoming:
        if variant.name.lower() not in seen:
            seen.add(variant.name.lower())
            merged.append(variant)
    return merged


def dedupe_components(components: List[ExtractedComponent]) -> List[ExtractedComponent]:
    """
    Merge components that share a category and normalized name.

    Occurrences are summed and source screen ids unioned in first-seen order.
    The result is sorted by occurrences, most common first.
    """
    merged: Dict[str, ExtractedComponent] = {}
    for component in components:
        signature = component_signature(component)
        existing = merged.get(signature)
        if existing is None:
            merged[signature] = component.model_copy(deep=True)
            continue

        existing.occurrences += component.occurrences
        for screen_id in component.source_screen_ids:
            if screen_id not in existing.source_screen_ids:
                existing.source_screen_ids.append(screen_id)
        existing.variants = merge_variants(existing.variants, component.variants)
        for prop in component.props:
            if prop not in existing.props:
                existing.props.append(prop)

    return sorted(merged.values(), key=lambda c: c.occurrences, reverse=True)


def parse_components(raw: Any, screen_id: str) -> List[ExtractedComponent]:
    """Validate model output into components attributed to one screen."""
    items = raw.get("components", []) if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        return []

    components = []
    for item in items:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        data = dict(item)
        try:
            data["category"] = ComponentCategory(str(data.get("category", "other")).lower())
        except ValueError:
            data["category"] = ComponentCategory.OTHER
        data["occurrences"] = 1
        data["source_screen_ids"] = [screen_id]
        try:
            components.append(ExtractedComponent.model_validate(data))
        except SchemaError as e:
            log.warning("Dropped component '%s' from %s: %s", item.get("name"), screen_id, e)
    return components


@dataclass
class ExtractionResult:
    components: List[ExtractedComponent]
    tasks: List[ExtractionTask]
    errors: Dict[str, BaseException] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors


ComponentsCallback = Callable[[List[ExtractedComponent], str], None]


class ComponentExtractor:
    """Extracts components from many screens with bounded concurrency."""

    def __init__(
        self,
        gateway: ProviderGateway,
        capturer: Optional[ScreenCapturer] = None,
        settings: Optional[Settings] = None,
    ):
        self.gateway = gateway
        self.capturer = capturer
        self.settings = settings or gateway.settings

    async def _screenshot(self, screen: SourceScreen) -> Optional[str]:
        if screen.screenshot:
            return screen.screenshot
        if self.capturer is None:
            return None
        return await self.capturer.capture(screen.html)

    @staticmethod
    def _compress(screenshot: str) -> str:
        payload = parse_image_payload(screenshot)
        return to_data_url(compress_image(base64.b64decode(payload.data)))

    async def extract_screen(
        self,
        screen: SourceScreen,
        report_step: StepReporter,
        provider: Optional[Any] = None,
        model: Optional[str] = None,
    ) -> List[ExtractedComponent]:
        """Run the extraction steps for a single screen."""
        report_step(ExtractionStep.SCREENSHOT.value)
        screenshot = await self._screenshot(screen)

        report_step(ExtractionStep.COMPRESS.value)
        if screenshot:
            screenshot = await asyncio.to_thread(self._compress, screenshot)

        report_step(ExtractionStep.LLM_PROCESSING.value)
        summary = await asyncio.to_thread(extract_element_summary, screen.html)
        result = await self.gateway.invoke(
            prompt=EXTRACTION_PROMPT.format(
                screen_name=screen.name,
                categories=", ".join(category.value for category in ComponentCategory),
                element_summary=summary.to_prompt_text(self.settings.summary_max_tokens),
            ),
            image=screenshot,
            provider=provider,
            model=model,
            response_format=ResponseFormat.JSON,
            component="component-extraction",
        )

        report_step(ExtractionStep.PARSING.value)
        components = parse_components(result.content, screen.id)

        report_step(ExtractionStep.DONE.value)
        return components

    async def extract(
        self,
        screens: List[SourceScreen],
        on_progress: Optional[Callable[[BatchProgress], None]] = None,
        on_components_found: Optional[ComponentsCallback] = None,
        provider: Optional[Any] = None,
        model: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Extract and deduplicate components from all screens.

        Args:
            screens: Screens to process.
            on_progress: Executor progress callback.
            on_components_found: Called with each screen's components as soon as it finishes.
            provider: Provider override.
            model: Model override.

        Returns:
            ExtractionResult with merged components and per-screen task records.
        """
        tasks = {screen.id: ExtractionTask(screen_id=screen.id, screen_name=screen.name) for screen in screens}

        def make_task(screen: SourceScreen) -> TaskSpec:
            record = tasks[screen.id]

            async def run(report_step: StepReporter) -> List[ExtractedComponent]:
                record.state = ExtractionState.IN_PROGRESS
                record.started_at = datetime.now()

                def track(step: str):
                    record.step = ExtractionStep(step)
                    report_step(step)

                components = await self.extract_screen(screen, track, provider=provider, model=model)
                record.components_found = len(components)
                if components and on_components_found is not None:
                    on_components_found(components, screen.name)
                return components

            return TaskSpec(task_id=screen.id, run=run)

        executor = ConcurrentTaskExecutor(
            concurrency=self.settings.extraction_concurrency,
            per_task_timeout=self.settings.extraction_timeout_s,
            default_estimate=self.settings.extraction_estimate_s,
        )
        batch = await executor.run([make_task(screen) for screen in screens], on_progress=on_progress)

        found: List[ExtractedComponent] = []
        for screen in screens:
            record = tasks[screen.id]
            record.completed_at = datetime.now()
            if screen.id in batch.results:
                record.state = ExtractionState.COMPLETE
                found.extend(batch.results[screen.id])
            else:
                record.state = ExtractionState.ERROR
                record.error = str(batch.errors.get(screen.id))

        return ExtractionResult(
            components=dedupe_components(found),
            tasks=list(tasks.values()),
            errors=batch.errors,
        )
