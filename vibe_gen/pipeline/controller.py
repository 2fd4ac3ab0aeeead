"""
Pipeline controller: the user-gated session lifecycle.

A session moves idle -> analyzing -> understanding -> understanding_ready ->
planning -> plan_ready -> wireframing -> wireframe_ready -> generating ->
complete. Each *_ready state waits for an explicit approval command. Busy
phases that fail with a provider error revert to the last settled state and
surface the error on the view instead of raising.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from vibe_gen.analysis.layout import analyze_layout, describe_metadata
from vibe_gen.config import Settings
from vibe_gen.editing.element_summary import ElementSummaryCache
from vibe_gen.editing.strategies import VariantBuildResult, build_strategy
from vibe_gen.errors import (
    CommandInProgressError,
    ErrorKind,
    InvalidTransitionError,
    PreconditionError,
    ProviderError,
    ValidationError,
)
from vibe_gen.execution.executor import BatchProgress, BatchResult, ConcurrentTaskExecutor, StepReporter, TaskSpec
from vibe_gen.gateway import ProviderGateway
from vibe_gen.io.stores import ArtifactStore
from vibe_gen.models import (
    VARIANT_COUNT,
    GenerationStrategy,
    Iteration,
    PipelineView,
    Progress,
    ProviderKind,
    ResponseFormat,
    Session,
    SessionStatus,
    SourceScreen,
    StructuredResult,
    UnderstandingResult,
    VariantPlan,
    VariantStatus,
)
from vibe_gen.persistence.buffer import PersistenceBuffer
from vibe_gen.pipeline.prompts import (
    CLARIFICATION_SECTION,
    ITERATION_PROMPT_TEMPLATE,
    ITERATION_SYSTEM_PROMPT,
    PLAN_CONTEXT_LIMIT,
    PLAN_PROMPT_TEMPLATE,
    PLAN_SYSTEM_PROMPT,
    PRODUCT_CONTEXT_SECTION,
    UNDERSTANDING_CONTEXT_LIMIT,
    UNDERSTANDING_PROMPT_TEMPLATE,
    UNDERSTANDING_SYSTEM_PROMPT,
    UX_GUIDELINES_LIMIT,
    UX_GUIDELINES_SECTION,
    WIREFRAME_PROMPT_TEMPLATE,
    WIREFRAME_SYSTEM_PROMPT,
    bullet_list,
    limited_section,
    numbered_list,
)
from vibe_gen.pipeline.state import SessionContext, error_info
from vibe_gen.rendering.capture import ScreenCapturer


log = logging.getLogger(__name__)


def _validate(model_cls: Type[BaseModel], data: Any, result: StructuredResult) -> Any:
    """Validate model output, turning schema failures into a malformed-response error."""
    try:
        return model_cls.model_validate(data)
    except SchemaError as e:
        raise ProviderError(
            ErrorKind.MALFORMED_RESPONSE,
            f"Response did not match {model_cls.__name__}: {e.error_count()} validation errors",
            provider=result.provider,
            model=result.model,
        ) from e


def _first(item: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if item.get(key):
            return item[key]
    return default


class PipelineController:
    """Drives one session at a time through the staged generation pipeline."""

    def __init__(
        self,
        gateway: ProviderGateway,
        store: ArtifactStore,
        capturer: Optional[ScreenCapturer] = None,
        settings: Optional[Settings] = None,
        persistence: Optional[PersistenceBuffer] = None,
        user_id: Optional[str] = None,
    ):
        """
        Initialize the controller.

        Args:
            gateway: Provider gateway used for every model call.
            store: Artifact store for variant documents and iteration snapshots.
            capturer: Screenshot source used when a screen arrives without one.
            settings: Pipeline settings (defaults to the gateway's).
            persistence: Buffered writer for variant content.
            user_id: Owner of the API keys used by this controller.
        """
        self.gateway = gateway
        self.store = store
        self.capturer = capturer
        self.settings = settings or gateway.settings
        self.persistence = persistence or PersistenceBuffer(
            store,
            edit_debounce=self.settings.edit_debounce_s,
            partial_interval=self.settings.partial_interval_s,
            partial_min_bytes=self.settings.partial_min_bytes,
        )
        self.user_id = user_id
        self.provider: Optional[ProviderKind] = self.settings.provider
        self.model: Optional[str] = self.settings.model
        self.summaries = ElementSummaryCache()
        self.context: Optional[SessionContext] = None
        self._active_phase: Optional[str] = None
        self._retries: Dict[Tuple[str, int, int], asyncio.Task] = {}

    @property
    def view(self) -> PipelineView:
        if self.context is None:
            return PipelineView(status=SessionStatus.IDLE)
        return self.context.snapshot()

    @asynccontextmanager
    async def _phase(self, name: str):
        """Allow a single in-flight phase per controller and save the session once it settles."""
        if self._active_phase is not None:
            raise CommandInProgressError(self._active_phase)
        self._active_phase = name
        try:
            yield
        finally:
            self._active_phase = None
            if self.context is not None:
                await self._checkpoint(self.context)

    async def _checkpoint(self, context: SessionContext):
        await self.persistence.save_session(context.to_record())

    def _require_context(self) -> SessionContext:
        if self.context is None:
            raise PreconditionError("No active session; call start() first")
        return self.context

    def _require_status(self, command: str, *allowed: SessionStatus) -> SessionContext:
        context = self._require_context()
        if context.status not in allowed:
            raise InvalidTransitionError(context.status.value, command)
        return context

    def _require_selected(self, context: SessionContext, variant_index: int) -> int:
        if variant_index not in context.selected:
            raise ValidationError(f"Variant {variant_index} is not part of the approved plan")
        return variant_index

    async def _invoke(
        self,
        context: SessionContext,
        prompt: str,
        response_format: ResponseFormat,
        system: str,
        component: str,
        image: Optional[str] = None,
    ) -> StructuredResult:
        return await self.gateway.invoke(
            prompt=prompt,
            image=image,
            provider=self.provider,
            model=self.model,
            response_format=response_format,
            system=system,
            user_id=self.user_id,
            session_id=context.session.id,
            component=component,
        )

    def _progress_callback(self, context: SessionContext, stage: str, indices: Dict[str, int]):
        def on_progress(progress: BatchProgress):
            context.progress = Progress(
                stage=stage,
                message=(
                    f"{progress.finished}/{progress.total} done, "
                    f"~{progress.eta_ms / 1000:.0f}s remaining"
                ),
                percent=progress.percent,
                variant_index=indices.get(progress.event.task_id),
            )
        return on_progress

    # ------------------------------------------------------------------
    # Understanding
    # ------------------------------------------------------------------

    async def start(
        self,
        prompt: str,
        screen: SourceScreen,
        product_context: Optional[str] = None,
        ux_guidelines: Optional[str] = None,
    ) -> PipelineView:
        """
        Begin a new session from a source screen and a change request.

        Any previous session on this controller is replaced.

        Args:
            prompt: What the user wants changed.
            screen: Source screen HTML and, optionally, its screenshot.
            product_context: Free-text description of the product, shown to
                the understanding and planning steps.
            ux_guidelines: UX guidelines the variant plans should follow.

        Returns:
            The view at understanding_ready, or at idle with an error.

        Raises:
            ValidationError: Empty prompt or empty screen.
            PreconditionError: No screenshot could be obtained.
        """
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt must not be empty")
        if not screen.html or not screen.html.strip():
            raise ValidationError("Source screen has no HTML")

        async with self._phase("analyzing"):
            session = Session(
                source_screen_id=screen.id,
                prompt=prompt.strip(),
                product_context=product_context,
                ux_guidelines=ux_guidelines,
            )
            context = SessionContext(session, screen.model_copy())
            self.context = context
            context.strategy = self.settings.strategy
            context.transition(SessionStatus.ANALYZING, "start")
            context.progress = Progress(stage="analyzing", message="Analyzing source screen")

            if not context.screen.screenshot and self.capturer is not None:
                try:
                    context.screen.screenshot = await self.capturer.capture(screen.html)
                except Exception as e:
                    context.revert()
                    raise PreconditionError(f"Could not capture a screenshot of the source screen: {e}") from e
            if not context.screen.screenshot:
                context.revert()
                raise PreconditionError("A screenshot of the source screen is required")

            context.metadata = await asyncio.to_thread(analyze_layout, screen.html)
            context.summary = await asyncio.to_thread(self.summaries.get, screen.id, screen.html)
            log.info(
                "Session %s: analyzed %s (%d elements)",
                context.session.id, screen.name, context.summary.stats.total_elements,
            )

            context.transition(SessionStatus.UNDERSTANDING, "start")
            context.progress = Progress(stage="understanding", message="Interpreting request")
            try:
                context.understanding = await self._understand(context)
            except ProviderError as e:
                context.revert(error_info(e))
                return context.snapshot()

            context.transition(SessionStatus.UNDERSTANDING_READY, "start")
            context.progress = Progress(stage="understanding", message="Waiting for approval", percent=100.0)
            return context.snapshot()

    async def _understand(self, context: SessionContext) -> UnderstandingResult:
        clarifications = (
            CLARIFICATION_SECTION.format(items=bullet_list(context.clarifications))
            if context.clarifications else ""
        )
        prompt = UNDERSTANDING_PROMPT_TEMPLATE.format(
            prompt=context.session.prompt,
            clarifications=clarifications,
            product_context=limited_section(
                PRODUCT_CONTEXT_SECTION, context.session.product_context, UNDERSTANDING_CONTEXT_LIMIT,
            ),
            metadata=describe_metadata(context.metadata),
            element_summary=context.summary.to_prompt_text(self.settings.summary_max_tokens),
        )
        result = await self._invoke(
            context,
            prompt,
            ResponseFormat.JSON,
            UNDERSTANDING_SYSTEM_PROMPT,
            "understanding",
            image=context.screen.screenshot,
        )
        if not isinstance(result.content, dict):
            raise ProviderError(
                ErrorKind.MALFORMED_RESPONSE,
                "Understanding response is not a JSON object",
                provider=result.provider,
                model=result.model,
            )
        data = {**result.content, "approved": False, "provider": result.provider, "model": result.model}
        return _validate(UnderstandingResult, data, result)

    async def clarify(self, text: str) -> PipelineView:
        """Answer clarifying questions and re-run understanding."""
        if not text or not text.strip():
            raise ValidationError("Clarification must not be empty")

        async with self._phase("understanding"):
            context = self._require_status("clarify", SessionStatus.UNDERSTANDING_READY)
            context.error = None
            context.clarifications.append(text.strip())
            context.transition(SessionStatus.UNDERSTANDING, "clarify")
            try:
                context.understanding = await self._understand(context)
            except ProviderError as e:
                context.clarifications.pop()
                context.revert(error_info(e))
                return context.snapshot()
            context.transition(SessionStatus.UNDERSTANDING_READY, "clarify")
            return context.snapshot()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def approve_understanding(self) -> PipelineView:
        """Approve the understanding and produce the four variant plans."""
        async with self._phase("planning"):
            context = self._require_status("approve_understanding", SessionStatus.UNDERSTANDING_READY)
            context.error = None
            context.understanding.approved = True
            context.approve("understanding")
            context.transition(SessionStatus.PLANNING, "approve_understanding")
            context.progress = Progress(stage="planning", message="Proposing variants")

            try:
                plans = await self._plan(context)
            except ProviderError as e:
                context.understanding.approved = False
                context.session.understanding_approved_at = None
                context.revert(error_info(e))
                return context.snapshot()

            context.plans = {plan.variant_index: plan for plan in plans}
            context.transition(SessionStatus.PLAN_READY, "approve_understanding")
            context.progress = Progress(stage="planning", message="Waiting for plan approval", percent=100.0)
            return context.snapshot()

    async def _plan(self, context: SessionContext) -> List[VariantPlan]:
        understanding = context.understanding
        prompt = PLAN_PROMPT_TEMPLATE.format(
            count=VARIANT_COUNT,
            summary=understanding.summary,
            goals=bullet_list(understanding.goals),
            scope=understanding.scope or "Not specified",
            product_context=limited_section(PRODUCT_CONTEXT_SECTION, context.session.product_context, PLAN_CONTEXT_LIMIT),
            ux_guidelines=limited_section(UX_GUIDELINES_SECTION, context.session.ux_guidelines, UX_GUIDELINES_LIMIT),
            metadata=describe_metadata(context.metadata),
        )
        result = await self._invoke(context, prompt, ResponseFormat.JSON, PLAN_SYSTEM_PROMPT, "planning")

        items = result.content.get("plans") if isinstance(result.content, dict) else result.content
        items = [item for item in items or [] if isinstance(item, dict)] if isinstance(items, list) else []
        if len(items) < VARIANT_COUNT:
            raise ProviderError(
                ErrorKind.MALFORMED_RESPONSE,
                f"Expected {VARIANT_COUNT} variant plans, got {len(items)}",
                provider=result.provider,
                model=result.model,
            )

        plans = []
        for index, item in enumerate(items[:VARIANT_COUNT], start=1):
            plans.append(_validate(VariantPlan, {
                "session_id": context.session.id,
                "variant_index": index,
                "title": _first(item, "title", "name", default=f"Variant {index}"),
                "description": _first(item, "description", default=""),
                "key_changes": _first(item, "keyChanges", "key_changes", default=[]),
                "style_notes": _first(item, "styleNotes", "style_notes", default=""),
            }, result))
        return plans

    # ------------------------------------------------------------------
    # Wireframes
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_selection(selected_indices: Iterable[int]) -> List[int]:
        selected = sorted(set(selected_indices or []))
        if not selected:
            raise ValidationError("Select at least one variant")
        invalid = [i for i in selected if not isinstance(i, int) or not 1 <= i <= VARIANT_COUNT]
        if invalid:
            raise ValidationError(f"Variant indices must be between 1 and {VARIANT_COUNT}, got {invalid}")
        return selected

    async def approve_plan(self, selected_indices: Iterable[int]) -> PipelineView:
        """Approve a subset of the plans and wireframe them."""
        async with self._phase("wireframing"):
            context = self._require_status("approve_plan", SessionStatus.PLAN_READY)
            selected = self._validate_selection(selected_indices)
            context.error = None
            context.selected = selected
            context.approve("plan")
            context.transition(SessionStatus.WIREFRAMING, "approve_plan")
            return await self._run_wireframes(context, selected, "approve_plan")

    async def create_wireframes(self) -> PipelineView:
        """(Re)create wireframes for every selected variant."""
        async with self._phase("wireframing"):
            context = self._require_status(
                "create_wireframes", SessionStatus.WIREFRAMING, SessionStatus.WIREFRAME_READY,
            )
            context.error = None
            if context.status == SessionStatus.WIREFRAME_READY:
                context.transition(SessionStatus.WIREFRAMING, "create_wireframes")
            return await self._run_wireframes(context, context.selected, "create_wireframes")

    async def regenerate_wireframe(self, variant_index: Optional[int] = None) -> PipelineView:
        """Regenerate one wireframe, or all of them when no index is given."""
        async with self._phase("wireframing"):
            context = self._require_status("regenerate_wireframe", SessionStatus.WIREFRAME_READY)
            indices = (
                [self._require_selected(context, variant_index)]
                if variant_index is not None else list(context.selected)
            )
            context.error = None
            context.transition(SessionStatus.WIREFRAMING, "regenerate_wireframe")
            return await self._run_wireframes(context, indices, "regenerate_wireframe")

    async def _run_wireframes(self, context: SessionContext, indices: List[int], command: str) -> PipelineView:
        task_indices = {f"wireframe-{index}": index for index in indices}

        def make_task(index: int) -> TaskSpec:
            plan = context.plans[index]

            async def run(report_step: StepReporter) -> str:
                report_step("wireframe")
                result = await self._invoke(
                    context,
                    WIREFRAME_PROMPT_TEMPLATE.format(
                        title=plan.title,
                        description=plan.description or "No description provided",
                        key_changes=numbered_list(plan.key_changes),
                        element_summary=context.summary.to_prompt_text(self.settings.summary_max_tokens),
                    ),
                    ResponseFormat.HTML,
                    WIREFRAME_SYSTEM_PROMPT,
                    f"wireframe-{index}",
                )
                plan.wireframe_html = result.content
                return result.content

            return TaskSpec(task_id=f"wireframe-{index}", run=run)

        executor = ConcurrentTaskExecutor(
            concurrency=self.settings.variant_concurrency or len(indices),
            per_task_timeout=self.settings.variant_timeout_s,
        )
        batch = await executor.run(
            [make_task(index) for index in indices],
            on_progress=self._progress_callback(context, "wireframing", task_indices),
            deadline=self.settings.pipeline_deadline_s,
        )

        for task_id, error in batch.errors.items():
            index = task_indices[task_id]
            context.variant_errors[index] = error_info(error, index)
        for task_id in batch.results:
            context.variant_errors.pop(task_indices[task_id], None)

        if not batch.results:
            first = next(iter(batch.errors.items()))
            context.revert(error_info(first[1], task_indices[first[0]]))
            log.warning("Session %s: every wireframe failed, reverted to %s", context.session.id, context.status.value)
            return context.snapshot()

        context.transition(SessionStatus.WIREFRAME_READY, command)
        context.progress = Progress(
            stage="wireframing",
            message=f"{len(batch.results)} of {len(indices)} wireframes ready",
            percent=100.0,
        )
        return context.snapshot()

    # ------------------------------------------------------------------
    # High-fidelity generation
    # ------------------------------------------------------------------

    async def build_high_fidelity(self, strategy: Optional[GenerationStrategy] = None) -> PipelineView:
        """
        Generate every selected variant concurrently.

        The session completes only when all selected variants are complete.
        With partial failure it stays in generating and failed variants can
        be retried individually.

        Args:
            strategy: Generation strategy (defaults to settings).

        Returns:
            The view after the batch settles.

        Raises:
            PreconditionError: The source screenshot is missing.
        """
        async with self._phase("generating"):
            context = self._require_status(
                "build_high_fidelity", SessionStatus.WIREFRAME_READY, SessionStatus.WIREFRAMING,
            )
            if not context.screen.screenshot:
                raise PreconditionError("A screenshot of the source screen is required for generation")

            context.strategy = strategy or self.settings.strategy
            context.error = None
            context.approve("wireframes")
            context.transition(SessionStatus.GENERATING, "build_high_fidelity")
            token = context.generation_token

            for index in context.selected:
                variant = context.variant(index)
                variant.status = VariantStatus.QUEUED
                variant.error_message = None
                context.variant_errors.pop(index, None)

            task_indices = {f"variant-{index}": index for index in context.selected}
            tasks = [
                self._variant_task(context, index, context.epoch(index), self.provider, self.model)
                for index in context.selected
            ]
            executor = ConcurrentTaskExecutor(
                concurrency=self.settings.variant_concurrency or len(tasks),
                per_task_timeout=self.settings.variant_timeout_s,
            )
            batch = await executor.run(
                tasks,
                on_progress=self._progress_callback(context, "generating", task_indices),
                deadline=self.settings.pipeline_deadline_s,
            )

            if context.generation_token != token or context.status != SessionStatus.GENERATING:
                log.info("Session %s: generation batch finished after rollback, results discarded", context.session.id)
                return context.snapshot()

            self._record_failures(context, batch, task_indices)
            if context.all_selected_complete():
                context.transition(SessionStatus.COMPLETE, "build_high_fidelity")
                context.progress = Progress(stage="complete", message="All variants complete", percent=100.0)
            elif batch.errors and not any(
                context.variant(index).status == VariantStatus.COMPLETE for index in context.selected
            ):
                task_id, error = next(iter(batch.errors.items()))
                context.revert(error_info(error, task_indices[task_id]))
                log.warning("Session %s: every variant failed, reverted to %s", context.session.id, context.status.value)
            else:
                done = sum(1 for i in context.selected if context.variant(i).status == VariantStatus.COMPLETE)
                context.progress = Progress(
                    stage="generating",
                    message=f"{done} of {len(context.selected)} variants complete",
                    percent=100.0 * done / len(context.selected),
                )
            return context.snapshot()

    def _record_failures(self, context: SessionContext, batch: BatchResult, task_indices: Dict[str, int]):
        """Mark variants whose task failed outside the build (timeouts) as errored."""
        for task_id, error in batch.errors.items():
            index = task_indices[task_id]
            variant = context.variant(index)
            if variant.status not in (VariantStatus.COMPLETE, VariantStatus.ERROR):
                variant.status = VariantStatus.ERROR
                variant.error_message = str(error)
            context.variant_errors.setdefault(index, error_info(error, index))

    def _variant_task(
        self,
        context: SessionContext,
        index: int,
        epoch: int,
        provider: Optional[Any],
        model: Optional[str],
    ) -> TaskSpec:
        plan = context.plans[index]
        strategy_kind = context.strategy or self.settings.strategy
        strategy = build_strategy(strategy_kind, self.gateway, self.settings.summary_max_tokens)
        session_id = context.session.id
        streaming = strategy_kind == GenerationStrategy.FULL_REGENERATION

        async def run(report_step: StepReporter) -> Optional[VariantBuildResult]:
            if not context.is_current(index, epoch):
                return None
            variant = context.variant(index)
            variant.status = VariantStatus.BUILDING
            report_step("building")

            on_text = None
            if streaming:
                self.persistence.begin_stream(session_id, index)

                def on_text(text: str):
                    if context.is_current(index, epoch):
                        variant.partial_html = text
                        self.persistence.update_stream(session_id, index, text)

            try:
                build = await strategy.build(
                    plan,
                    context.screen.html,
                    summary=context.summary,
                    screenshot=context.screen.screenshot,
                    provider=provider,
                    model=model,
                    session_id=session_id,
                    user_id=self.user_id,
                    on_text=on_text,
                )
            except Exception as e:
                if context.is_current(index, epoch):
                    variant.status = VariantStatus.ERROR
                    variant.error_message = str(e)
                    context.variant_errors[index] = error_info(e, index)
                raise
            finally:
                if streaming:
                    await self.persistence.end_stream(session_id, index)

            if not context.is_current(index, epoch):
                log.info("Discarding stale result for variant %d (epoch %d)", index, epoch)
                return None

            report_step("saving")
            self._store_build(context, index, build)
            url = await self.persistence.save(session_id, index, build.html, kind="final")
            if context.is_current(index, epoch):
                variant.html_url = url
            return build

        return TaskSpec(task_id=f"variant-{index}", run=run)

    @staticmethod
    def _store_build(context: SessionContext, index: int, build: VariantBuildResult):
        plan = context.plans[index]
        plan.edit_operations = build.operations
        plan.edit_summary = build.edit_summary

        variant = context.variant(index)
        context.documents[index] = build.html
        variant.status = VariantStatus.COMPLETE
        variant.partial_html = None
        variant.error_message = None
        variant.generation_model = build.model
        variant.generation_duration_ms = build.duration_ms
        variant.warnings = list(build.warnings)
        context.variant_errors.pop(index, None)
        context.warnings.extend(f"Variant {index}: {warning}" for warning in build.warnings)

    async def rollback_to_wireframes(self) -> PipelineView:
        """
        Return to wireframing from generating or complete.

        Allowed while generation is in flight; results of that batch are
        discarded when they arrive.
        """
        context = self._require_context()
        context.rollback("rollback_to_wireframes")
        context.error = None
        for index in context.selected:
            variant = context.variant(index)
            if variant.status == VariantStatus.BUILDING:
                variant.status = VariantStatus.QUEUED
                variant.partial_html = None
        context.progress = Progress(stage="wireframing", message="Rolled back to wireframes")
        log.info("Session %s: rolled back to wireframing", context.session.id)
        await self._checkpoint(context)
        return context.snapshot()

    async def cancel_variant(self, variant_index: int) -> PipelineView:
        """Abandon the in-flight generation of one variant."""
        context = self._require_context()
        self._require_selected(context, variant_index)
        context.bump_epoch(variant_index)
        variant = context.variant(variant_index)
        if variant.status in (VariantStatus.QUEUED, VariantStatus.BUILDING):
            variant.status = VariantStatus.ERROR
            variant.error_message = "Cancelled"
            variant.partial_html = None
        await self._checkpoint(context)
        return context.snapshot()

    async def retry_variant(
        self,
        variant_index: int,
        epoch: int,
        provider: Optional[Any] = None,
        model: Optional[str] = None,
    ) -> PipelineView:
        """
        Regenerate a single variant, optionally with another provider.

        Concurrent retries carrying the same epoch share one generation. A
        retry whose epoch is no longer current is rejected.

        Args:
            variant_index: Variant to regenerate.
            epoch: The variant's epoch as last observed on the view.
            provider: Provider override for this retry.
            model: Model override for this retry.

        Raises:
            ValidationError: Stale epoch or unknown variant.
        """
        context = self._require_context()
        key = (context.session.id, variant_index, epoch)
        pending = self._retries.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        async with self._phase("generating"):
            context = self._require_status("retry_variant", SessionStatus.GENERATING)
            self._require_selected(context, variant_index)
            if epoch != context.epoch(variant_index):
                raise ValidationError(
                    f"Stale retry for variant {variant_index}: epoch {epoch} "
                    f"is not current ({context.epoch(variant_index)})"
                )
            new_epoch = context.bump_epoch(variant_index)
            task = asyncio.ensure_future(self._retry(context, variant_index, new_epoch, provider, model))
            self._retries[key] = task
            try:
                return await asyncio.shield(task)
            finally:
                self._retries.pop(key, None)

    async def _retry(
        self,
        context: SessionContext,
        index: int,
        epoch: int,
        provider: Optional[Any],
        model: Optional[str],
    ) -> PipelineView:
        variant = context.variant(index)
        variant.status = VariantStatus.QUEUED
        variant.error_message = None
        context.variant_errors.pop(index, None)
        token = context.generation_token

        task_indices = {f"variant-{index}": index}
        executor = ConcurrentTaskExecutor(concurrency=1, per_task_timeout=self.settings.variant_timeout_s)
        batch = await executor.run(
            [self._variant_task(context, index, epoch, provider or self.provider, model or self.model)],
            on_progress=self._progress_callback(context, "generating", task_indices),
        )

        if context.generation_token != token or context.status != SessionStatus.GENERATING:
            return context.snapshot()
        if context.is_current(index, epoch):
            self._record_failures(context, batch, task_indices)
        if context.all_selected_complete():
            context.transition(SessionStatus.COMPLETE, "retry_variant")
            context.progress = Progress(stage="complete", message="All variants complete", percent=100.0)
        return context.snapshot()

    # ------------------------------------------------------------------
    # Iteration and manual edits
    # ------------------------------------------------------------------

    async def _current_html(self, context: SessionContext, variant_index: int) -> str:
        if variant_index in context.documents:
            return context.documents[variant_index]
        variant = context.variant(variant_index)
        if not variant.html_url:
            raise PreconditionError(f"Variant {variant_index} has no stored document")
        html = await self.store.get(variant.html_url)
        context.documents[variant_index] = html
        return html

    def _complete_variant(self, context: SessionContext, variant_index: int):
        variant = context.variants.get(variant_index)
        if variant is None or variant.status != VariantStatus.COMPLETE:
            raise PreconditionError(f"Variant {variant_index} is not complete")
        return variant

    async def iterate(self, variant_index: int, prompt: str) -> PipelineView:
        """
        Refine a complete variant with a follow-up instruction.

        The document before the change is stored so the iteration can be
        reverted. Session status does not change.
        """
        if not prompt or not prompt.strip():
            raise ValidationError("Iteration prompt must not be empty")

        async with self._phase("iterating"):
            context = self._require_context()
            variant = self._complete_variant(context, variant_index)
            context.error = None
            html_before = await self._current_html(context, variant_index)

            try:
                result = await self._invoke(
                    context,
                    ITERATION_PROMPT_TEMPLATE.format(prompt=prompt.strip(), html=html_before),
                    ResponseFormat.HTML,
                    ITERATION_SYSTEM_PROMPT,
                    f"variant-{variant_index}-iteration",
                )
            except ProviderError as e:
                context.error = error_info(e, variant_index)
                return context.snapshot()

            history = context.iterations.setdefault(variant_index, [])
            number = len(history) + 1
            base = f"sessions/{context.session.id}/variants/{variant_index}/iterations/{number}"
            before_url = await self.store.put(html_before, key=f"{base}/before.html")
            result_url = await self.store.put(result.content, key=f"{base}/after.html")

            history.append(Iteration(
                variant_id=variant.id,
                iteration_number=number,
                prompt=prompt.strip(),
                result_url=result_url,
                html_before_url=before_url,
                duration_ms=result.duration_ms,
                model=result.model,
            ))
            context.documents[variant_index] = result.content
            variant.html_url = result_url
            variant.edited_html = None
            variant.iteration_count += 1
            await self.persistence.save(context.session.id, variant_index, result.content, kind="iteration")
            log.info("Session %s: variant %d iteration %d stored", context.session.id, variant_index, number)
            return context.snapshot()

    async def revert(self, variant_id: str, iteration_id: str) -> PipelineView:
        """Restore the document a variant had before the given iteration."""
        async with self._phase("reverting"):
            context = self._require_context()
            variant = context.find_variant(variant_id)
            if variant is None:
                raise ValidationError(f"Unknown variant {variant_id}")
            iteration = next(
                (it for it in context.iterations.get(variant.variant_index, []) if it.id == iteration_id),
                None,
            )
            if iteration is None:
                raise ValidationError(f"Unknown iteration {iteration_id} for variant {variant.variant_index}")

            html_before = await self.store.get(iteration.html_before_url)
            context.documents[variant.variant_index] = html_before
            variant.html_url = iteration.html_before_url
            variant.edited_html = None
            await self.persistence.save(context.session.id, variant.variant_index, html_before, kind="revert")
            return context.snapshot()

    def iteration_history(self, variant_index: int) -> List[Iteration]:
        """Iterations of a variant, oldest first."""
        context = self._require_context()
        return [iteration.model_copy() for iteration in context.iterations.get(variant_index, [])]

    async def edit_variant_html(self, variant_index: int, html: str) -> PipelineView:
        """Replace a complete variant's document with a manual edit; saving is debounced."""
        context = self._require_context()
        variant = self._complete_variant(context, variant_index)
        if not html or not html.strip():
            raise ValidationError("Edited HTML must not be empty")
        context.documents[variant_index] = html
        variant.edited_html = html
        self.persistence.schedule_edited_save(context.session.id, variant_index, html)
        await self._checkpoint(context)
        return context.snapshot()

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def resume(self, session_id: str) -> PipelineView:
        """
        Reattach to a session and reload the last persisted content of its variants.

        A session other than the active one is rebuilt from its saved snapshot,
        which replaces any session on this controller. Work that was in flight
        when the snapshot was written is not running any more: a busy phase
        falls back to its last settled state and unfinished variants are
        marked as errored so they can be retried.

        Raises:
            PreconditionError: No snapshot exists for the session.
        """
        async with self._phase("resuming"):
            context = self.context
            if context is None or context.session.id != session_id:
                context = await self._restore(session_id)
            return await self._apply_partials(context)

    async def _restore(self, session_id: str) -> SessionContext:
        record = await self.persistence.load_session(session_id)
        if record is None:
            raise PreconditionError(f"Session {session_id} was not found")

        context = SessionContext.from_record(record)
        context.metadata = await asyncio.to_thread(analyze_layout, context.screen.html)
        context.summary = await asyncio.to_thread(self.summaries.get, context.screen.id, context.screen.html)

        if context.status in (SessionStatus.ANALYZING, SessionStatus.UNDERSTANDING, SessionStatus.PLANNING):
            context.revert()
        elif context.status == SessionStatus.GENERATING:
            for index in context.selected:
                variant = context.variant(index)
                if variant.status in (VariantStatus.QUEUED, VariantStatus.BUILDING):
                    variant.status = VariantStatus.ERROR
                    variant.error_message = "Interrupted before completion"
        self.context = context
        log.info("Session %s: restored at %s", session_id, context.status.value)
        return context

    async def _apply_partials(self, context: SessionContext) -> PipelineView:
        session_id = context.session.id
        partials = await self.persistence.load_partials(session_id)
        for index, content in partials.items():
            variant = context.variant(index)
            if variant.status == VariantStatus.COMPLETE:
                context.documents.setdefault(index, content)
            else:
                variant.partial_html = content
        log.info("Session %s: resumed %d variants", session_id, len(partials))
        return context.snapshot()

    async def select_provider(self, provider: Any, model: Optional[str] = None) -> PipelineView:
        """Switch the provider used by subsequent commands and clear the surfaced error."""
        self.provider = ProviderKind(provider)
        self.model = model
        if self.context is None:
            return self.view
        self.context.error = None
        return self.context.snapshot()

    async def close(self):
        """Flush pending writes."""
        await self.persistence.close()
