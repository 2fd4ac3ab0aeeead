"""
Session state machine and the per-session context the controller mutates.
"""

from datetime import datetime
from typing import Dict, List, Optional, Set

from vibe_gen.errors import ErrorKind, InvalidTransitionError, ProviderError, TaskTimeoutError
from vibe_gen.models import (
    ElementSummary,
    ErrorInfo,
    GenerationStrategy,
    Iteration,
    PipelineView,
    Progress,
    Session,
    SessionRecord,
    SessionStatus,
    SourceScreen,
    UIMetadata,
    UnderstandingResult,
    Variant,
    VariantPlan,
    VariantStatus,
)


# Forward edges of the session lifecycle
TRANSITIONS: Dict[SessionStatus, Set[SessionStatus]] = {
    SessionStatus.IDLE: {SessionStatus.ANALYZING},
    SessionStatus.ANALYZING: {SessionStatus.UNDERSTANDING},
    SessionStatus.UNDERSTANDING: {SessionStatus.UNDERSTANDING_READY},
    SessionStatus.UNDERSTANDING_READY: {SessionStatus.PLANNING, SessionStatus.UNDERSTANDING},
    SessionStatus.PLANNING: {SessionStatus.PLAN_READY},
    SessionStatus.PLAN_READY: {SessionStatus.WIREFRAMING},
    SessionStatus.WIREFRAMING: {SessionStatus.WIREFRAME_READY, SessionStatus.GENERATING},
    SessionStatus.WIREFRAME_READY: {SessionStatus.GENERATING, SessionStatus.WIREFRAMING},
    SessionStatus.GENERATING: {SessionStatus.COMPLETE},
    SessionStatus.COMPLETE: set(),
}

ROLLBACK_EDGES: Dict[SessionStatus, SessionStatus] = {
    SessionStatus.GENERATING: SessionStatus.WIREFRAMING,
    SessionStatus.COMPLETE: SessionStatus.WIREFRAMING,
}

READY_STATES = {
    SessionStatus.IDLE,
    SessionStatus.UNDERSTANDING_READY,
    SessionStatus.PLAN_READY,
    SessionStatus.WIREFRAME_READY,
}

BUSY_STATES = {
    SessionStatus.ANALYZING,
    SessionStatus.UNDERSTANDING,
    SessionStatus.PLANNING,
    SessionStatus.WIREFRAMING,
    SessionStatus.GENERATING,
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in TRANSITIONS[current]


def revert_target(current: SessionStatus, last_ready: SessionStatus) -> SessionStatus:
    """Where a failed busy phase lands: the rollback edge for generation, else the last ready state."""
    if current == SessionStatus.GENERATING:
        return ROLLBACK_EDGES[current]
    return last_ready


def error_info(error: BaseException, variant_index: Optional[int] = None) -> ErrorInfo:
    """Describe any failure for the pipeline view."""
    if isinstance(error, ProviderError):
        return ErrorInfo(
            kind=error.kind.value,
            message=str(error),
            provider=error.provider,
            model=error.model,
            variant_index=variant_index,
            retryable_with_other_provider=error.retryable_with_other_provider,
        )
    if isinstance(error, TaskTimeoutError):
        return ErrorInfo(kind=ErrorKind.TIMEOUT.value, message=str(error), variant_index=variant_index)
    return ErrorInfo(kind=type(error).__name__, message=str(error), variant_index=variant_index)


class SessionContext:
    """All mutable state of the active session.

    Variant-level fields are only written per variant index, and every
    generation result is checked against the variant's epoch before it lands.
    """

    def __init__(self, session: Session, screen: SourceScreen):
        self.session = session
        self.screen = screen
        self.summary: Optional[ElementSummary] = None
        self.metadata: Optional[UIMetadata] = None
        self.understanding: Optional[UnderstandingResult] = None
        self.clarifications: List[str] = []
        self.plans: Dict[int, VariantPlan] = {}
        self.selected: List[int] = []
        self.variants: Dict[int, Variant] = {}
        self.documents: Dict[int, str] = {}
        self.iterations: Dict[int, List[Iteration]] = {}
        self.epochs: Dict[int, int] = {}
        self.last_ready = SessionStatus.IDLE
        self.generation_token = 0
        self.progress = Progress()
        self.error: Optional[ErrorInfo] = None
        self.variant_errors: Dict[int, ErrorInfo] = {}
        self.warnings: List[str] = []
        self.strategy: Optional[GenerationStrategy] = None

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionContext":
        """Rebuild a context from its persisted form; summary and metadata are left to the caller."""
        context = cls(record.session, record.screen)
        context.understanding = record.understanding
        context.clarifications = list(record.clarifications)
        context.plans = {plan.variant_index: plan for plan in record.plans}
        context.selected = list(record.selected_indices)
        context.variants = {variant.variant_index: variant for variant in record.variants}
        context.iterations = {index: list(items) for index, items in record.iterations.items()}
        context.epochs = dict(record.epochs)
        context.last_ready = record.last_ready
        context.strategy = record.strategy
        return context

    def to_record(self) -> SessionRecord:
        return SessionRecord(
            session=self.session,
            screen=self.screen,
            understanding=self.understanding,
            clarifications=list(self.clarifications),
            plans=[self.plans[i] for i in sorted(self.plans)],
            selected_indices=list(self.selected),
            variants=[self.variants[i] for i in sorted(self.variants)],
            iterations={i: list(items) for i, items in self.iterations.items()},
            epochs=dict(self.epochs),
            last_ready=self.last_ready,
            strategy=self.strategy,
        )

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    def transition(self, target: SessionStatus, command: str):
        """Advance along a forward edge or raise InvalidTransitionError."""
        if not can_transition(self.status, target):
            raise InvalidTransitionError(self.status.value, command)
        self._set_status(target)

    def rollback(self, command: str):
        """Take the explicit rollback edge back to wireframing."""
        if self.status not in ROLLBACK_EDGES:
            raise InvalidTransitionError(self.status.value, command)
        self.generation_token += 1
        for index in self.selected:
            self.bump_epoch(index)
        self._set_status(ROLLBACK_EDGES[self.status])

    def revert(self, error: Optional[ErrorInfo] = None):
        """Undo a failed busy phase and surface its error."""
        self.error = error
        self._set_status(revert_target(self.status, self.last_ready))

    def _set_status(self, status: SessionStatus):
        self.session.status = status
        if status in READY_STATES:
            self.last_ready = status

    def epoch(self, variant_index: int) -> int:
        return self.epochs.get(variant_index, 0)

    def bump_epoch(self, variant_index: int) -> int:
        self.epochs[variant_index] = self.epoch(variant_index) + 1
        return self.epochs[variant_index]

    def is_current(self, variant_index: int, epoch: int) -> bool:
        return self.epoch(variant_index) == epoch

    def variant(self, variant_index: int) -> Variant:
        if variant_index not in self.variants:
            self.variants[variant_index] = Variant(session_id=self.session.id, variant_index=variant_index)
        return self.variants[variant_index]

    def find_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants.values():
            if variant.id == variant_id:
                return variant
        return None

    def all_selected_complete(self) -> bool:
        return bool(self.selected) and all(
            index in self.variants and self.variants[index].status == VariantStatus.COMPLETE
            for index in self.selected
        )

    def approve(self, gate: str):
        setattr(self.session, f"{gate}_approved_at", datetime.now())

    def snapshot(self) -> PipelineView:
        """Immutable copy of the observable state."""
        return PipelineView(
            status=self.status,
            progress=self.progress.model_copy(),
            session=self.session.model_copy(),
            understanding=self.understanding.model_copy() if self.understanding else None,
            plan=[self.plans[i].model_copy(deep=True) for i in sorted(self.plans)],
            selected_indices=list(self.selected),
            variants=[self.variants[i].model_copy(deep=True) for i in sorted(self.variants)],
            metadata=self.metadata.model_copy(deep=True) if self.metadata else None,
            error=self.error.model_copy() if self.error else None,
            variant_errors={i: e.model_copy() for i, e in self.variant_errors.items()},
            warnings=list(self.warnings),
            epochs=dict(self.epochs),
        )
