"""
Strategies for turning an approved variant plan into a high-fidelity document.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, List, Optional

from vibe_gen.editing.operations import apply_operations, parse_operations
from vibe_gen.gateway import ProviderGateway
from vibe_gen.gateway.providers import TextCallback
from vibe_gen.models import (
    EditOperation,
    ElementSummary,
    GenerationStrategy,
    ResponseFormat,
    VariantPlan,
)
from vibe_gen.pipeline.prompts import (
    EDIT_PROMPT_TEMPLATE,
    EDIT_SYSTEM_PROMPT,
    REGENERATION_PROMPT_TEMPLATE,
    REGENERATION_SYSTEM_PROMPT,
    VISION_CONTEXT,
    WIREFRAME_SECTION,
    numbered_list,
)


@dataclass
class VariantBuildResult:
    """Document produced for one variant plus how it was produced."""
    html: str
    provider: str
    model: str
    duration_ms: int = 0
    operations: List[EditOperation] = field(default_factory=list)
    edit_summary: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class EditBasedStrategy:
    """Asks for edit operations against the element summary and applies them to the source."""

    strategy = GenerationStrategy.EDIT_BASED

    def __init__(self, gateway: ProviderGateway, summary_max_tokens: int = 2000):
        self.gateway = gateway
        self.summary_max_tokens = summary_max_tokens

    def build_prompt(self, plan: VariantPlan, summary: ElementSummary, has_screenshot: bool) -> str:
        return EDIT_PROMPT_TEMPLATE.format(
            vision_context=VISION_CONTEXT if has_screenshot else "",
            title=plan.title or "Untitled Variant",
            description=plan.description or "No description provided",
            key_changes=numbered_list(plan.key_changes),
            style_notes=plan.style_notes or "Match existing styles",
            element_summary=summary.to_prompt_text(self.summary_max_tokens),
        )

    async def build(
        self,
        plan: VariantPlan,
        source_html: str,
        summary: ElementSummary,
        screenshot: Optional[str] = None,
        provider: Optional[Any] = None,
        model: Optional[str] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        on_text: Optional[TextCallback] = None,
    ) -> VariantBuildResult:
        """
        Generate a variant by editing the original document.

        Only the element summary is sent to the model; the returned operations
        are applied to ``source_html``.
        """
        result = await self.gateway.invoke(
            prompt=self.build_prompt(plan, summary, screenshot is not None),
            image=screenshot,
            provider=provider,
            model=model,
            response_format=ResponseFormat.JSON,
            system=EDIT_SYSTEM_PROMPT,
            user_id=user_id,
            session_id=session_id,
            component=f"variant-{plan.variant_index}-edits",
        )

        operations, warnings = parse_operations(result.content)
        edit = await asyncio.to_thread(apply_operations, source_html, operations, summary)
        edit_summary = result.content.get("summary") if isinstance(result.content, dict) else None

        return VariantBuildResult(
            html=edit.html,
            provider=result.provider,
            model=result.model,
            duration_ms=result.duration_ms,
            operations=operations,
            edit_summary=edit_summary,
            warnings=warnings + edit.warnings,
        )


class FullRegenerationStrategy:
    """Asks the model for a complete document for the variant."""

    strategy = GenerationStrategy.FULL_REGENERATION

    def __init__(self, gateway: ProviderGateway):
        self.gateway = gateway

    def build_prompt(self, plan: VariantPlan, source_html: str) -> str:
        wireframe_section = (
            WIREFRAME_SECTION.format(wireframe_html=plan.wireframe_html)
            if plan.wireframe_html else ""
        )
        return REGENERATION_PROMPT_TEMPLATE.format(
            title=plan.title or "Untitled Variant",
            description=plan.description or "No description provided",
            key_changes=numbered_list(plan.key_changes),
            style_notes=plan.style_notes or "Match existing styles",
            wireframe_section=wireframe_section,
            source_html=source_html,
        )

    async def build(
        self,
        plan: VariantPlan,
        source_html: str,
        summary: Optional[ElementSummary] = None,
        screenshot: Optional[str] = None,
        provider: Optional[Any] = None,
        model: Optional[str] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        on_text: Optional[TextCallback] = None,
    ) -> VariantBuildResult:
        """Generate a variant as a full document, streaming partial text to on_text."""
        result = await self.gateway.invoke(
            prompt=self.build_prompt(plan, source_html),
            image=screenshot,
            provider=provider,
            model=model,
            response_format=ResponseFormat.HTML,
            system=REGENERATION_SYSTEM_PROMPT,
            user_id=user_id,
            session_id=session_id,
            component=f"variant-{plan.variant_index}-regenerate",
            on_text=on_text,
        )
        return VariantBuildResult(
            html=result.content,
            provider=result.provider,
            model=result.model,
            duration_ms=result.duration_ms,
        )


def build_strategy(
    strategy: GenerationStrategy,
    gateway: ProviderGateway,
    summary_max_tokens: int = 2000,
) -> Any:
    """Strategy object for the requested generation mode."""
    if strategy == GenerationStrategy.FULL_REGENERATION:
        return FullRegenerationStrategy(gateway)
    return EditBasedStrategy(gateway, summary_max_tokens=summary_max_tokens)

