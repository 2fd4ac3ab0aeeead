"""
Data models and schemas for the prototype generation pipeline.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field, field_validator


VARIANT_COUNT = 4


def new_id() -> str:
    return uuid.uuid4().hex


def scalar_to_str(value: Any) -> Any:
    """Models often emit numbers or booleans where markup expects strings."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


class SessionStatus(str, Enum):
    """Lifecycle states of a generation session."""
    IDLE = "idle"
    ANALYZING = "analyzing"
    UNDERSTANDING = "understanding"
    UNDERSTANDING_READY = "understanding_ready"
    PLANNING = "planning"
    PLAN_READY = "plan_ready"
    WIREFRAMING = "wireframing"
    WIREFRAME_READY = "wireframe_ready"
    GENERATING = "generating"
    COMPLETE = "complete"


class VariantStatus(str, Enum):
    """Build status of a single variant."""
    QUEUED = "queued"
    BUILDING = "building"
    COMPLETE = "complete"
    ERROR = "error"


class ProviderKind(str, Enum):
    """Supported model providers."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"


class ResponseFormat(str, Enum):
    """Shape the caller expects back from a model call."""
    JSON = "json"
    HTML = "html"
    TEXT = "text"


class GenerationStrategy(str, Enum):
    """How high-fidelity variants are produced."""
    EDIT_BASED = "edit_based"
    FULL_REGENERATION = "full_regeneration"


class SourceScreen(BaseModel):
    """A captured screen the session starts from."""
    id: str = Field(default_factory=new_id)
    name: str = "Untitled screen"
    html: str
    screenshot: Optional[str] = None  # base64 or data URL


class Session(BaseModel):
    """The single active generation session of a controller."""
    id: str = Field(default_factory=new_id)
    source_screen_id: str
    prompt: str
    status: SessionStatus = SessionStatus.IDLE
    created_at: datetime = Field(default_factory=datetime.now)
    understanding_approved_at: Optional[datetime] = None
    plan_approved_at: Optional[datetime] = None
    wireframes_approved_at: Optional[datetime] = None
    product_context: Optional[str] = None
    ux_guidelines: Optional[str] = None


class UnderstandingResult(BaseModel):
    """The model's interpretation of the user's request."""
    summary: str
    goals: List[str] = Field(default_factory=list)
    scope: str = ""
    assumptions: List[str] = Field(default_factory=list)
    clarifying_questions: List[str] = Field(default_factory=list, alias="clarifyingQuestions")
    approved: bool = False
    provider: Optional[str] = None
    model: Optional[str] = None

    class Config:
        populate_by_name = True


class VariantPlan(BaseModel):
    """One of the four alternative directions proposed for a session."""
    id: str = Field(default_factory=new_id)
    session_id: str
    variant_index: int
    title: str
    description: str = ""
    key_changes: List[str] = Field(default_factory=list)
    style_notes: str = ""
    edit_operations: List["EditOperation"] = Field(default_factory=list)
    edit_summary: Optional[str] = None
    wireframe_html: Optional[str] = None


class Variant(BaseModel):
    """A generated high-fidelity prototype."""
    id: str = Field(default_factory=new_id)
    session_id: str
    variant_index: int
    status: VariantStatus = VariantStatus.QUEUED
    html_url: Optional[str] = None
    edited_html: Optional[str] = None
    partial_html: Optional[str] = None
    iteration_count: int = 0
    error_message: Optional[str] = None
    generation_model: Optional[str] = None
    generation_duration_ms: Optional[int] = None
    warnings: List[str] = Field(default_factory=list)


class Iteration(BaseModel):
    """One refinement of a complete variant. Append-only."""
    id: str = Field(default_factory=new_id)
    variant_id: str
    iteration_number: int
    prompt: str
    result_url: str
    html_before_url: str
    duration_ms: int = 0
    model: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class EditOperationType(str, Enum):
    """Supported structured edit operations."""
    UPDATE_TEXT = "updateText"
    UPDATE_ATTRIBUTE = "updateAttribute"
    UPDATE_STYLE = "updateStyle"
    ADD_CLASS = "addClass"
    REMOVE_CLASS = "removeClass"
    INSERT_ELEMENT = "insertElement"
    REMOVE_ELEMENT = "removeElement"
    REPLACE_ELEMENT = "replaceElement"
    REPLACE_INNER_HTML = "replaceInnerHtml"


class InsertPosition(str, Enum):
    """Where an inserted fragment goes relative to its target."""
    BEFORE = "before"
    AFTER = "after"
    PREPEND = "prepend"
    APPEND = "append"


class EditOperation(BaseModel):
    """A single targeted DOM change addressed by CSS selector."""
    type: EditOperationType
    selector: str
    description: str = ""
    new_text: Optional[str] = Field(default=None, alias="newText")
    attribute: Optional[str] = None
    value: Optional[str] = None
    styles: Optional[Dict[str, str]] = None
    class_name: Optional[str] = Field(default=None, alias="className")
    position: Optional[InsertPosition] = None
    html: Optional[str] = None

    class Config:
        populate_by_name = True

    @field_validator("new_text", "value", mode="before")
    @classmethod
    def _coerce_scalar(cls, value):
        return scalar_to_str(value)

    @field_validator("styles", mode="before")
    @classmethod
    def _coerce_styles(cls, styles):
        if isinstance(styles, dict):
            return {name: scalar_to_str(value) for name, value in styles.items()}
        return styles


class ElementNode(BaseModel):
    """A compact description of one DOM element."""
    tag: str
    selector: str
    depth: int
    id: Optional[str] = None
    classes: List[str] = Field(default_factory=list)
    data_attrs: Dict[str, str] = Field(default_factory=dict)
    text: Optional[str] = None
    role: Optional[str] = None
    type: Optional[str] = None
    href: Optional[str] = None
    src: Optional[str] = None
    children: List["ElementNode"] = Field(default_factory=list)


class SummaryStats(BaseModel):
    total_elements: int = 0
    max_depth: int = 0
    unique_selectors: int = 0


class ElementSummary(BaseModel):
    """Structural summary of a document used for edit-based generation."""
    tree: Optional[ElementNode] = None
    text_content: str = ""
    stats: SummaryStats = Field(default_factory=SummaryStats)
    selectors: List[str] = Field(default_factory=list)

    def has_selector(self, selector: str) -> bool:
        return selector in self.selectors

    def to_prompt_text(self, max_tokens: int = 2000) -> str:
        """
        Render the summary text within a rough token budget.

        Args:
            max_tokens: Budget, estimated at four characters per token.

        Returns:
            The outline text, truncated if needed.
        """
        max_chars = max_tokens * 4
        if len(self.text_content) <= max_chars:
            return self.text_content
        return self.text_content[:max_chars] + "\n... (truncated)"


class ExtractionState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    ERROR = "error"


class ExtractionStep(str, Enum):
    """Steps a per-screen extraction task walks through."""
    SCREENSHOT = "screenshot"
    COMPRESS = "compress"
    LLM_PROCESSING = "llm-processing"
    PARSING = "parsing"
    DONE = "done"


class ExtractionTask(BaseModel):
    """Tracking record for extracting components from one screen."""
    screen_id: str
    screen_name: str = ""
    state: ExtractionState = ExtractionState.PENDING
    step: Optional[ExtractionStep] = None
    components_found: int = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ComponentCategory(str, Enum):
    BUTTON = "button"
    INPUT = "input"
    CARD = "card"
    NAVIGATION = "navigation"
    HEADER = "header"
    FOOTER = "footer"
    MODAL = "modal"
    LIST = "list"
    TABLE = "table"
    IMAGE = "image"
    ICON = "icon"
    BADGE = "badge"
    ALERT = "alert"
    FORM = "form"
    DROPDOWN = "dropdown"
    TABS = "tabs"
    OTHER = "other"


class ComponentVariant(BaseModel):
    name: str
    html: str = ""
    css: str = ""


class ExtractedComponent(BaseModel):
    """A reusable UI component found across one or more screens."""
    name: str
    category: ComponentCategory = ComponentCategory.OTHER
    description: str = ""
    html: str = ""
    css: str = ""
    variants: List[ComponentVariant] = Field(default_factory=list)
    props: List[str] = Field(default_factory=list)
    occurrences: int = 1
    source_screen_ids: List[str] = Field(default_factory=list)


class ColorPalette(BaseModel):
    primary: List[str] = Field(default_factory=list)
    secondary: List[str] = Field(default_factory=list)
    background: List[str] = Field(default_factory=list)
    text: List[str] = Field(default_factory=list)
    accent: List[str] = Field(default_factory=list)


class Typography(BaseModel):
    font_families: List[str] = Field(default_factory=list)
    font_sizes: List[str] = Field(default_factory=list)
    font_weights: List[str] = Field(default_factory=list)
    line_heights: List[str] = Field(default_factory=list)


class LayoutInfo(BaseModel):
    type: str = "single-column"
    has_header: bool = False
    has_sidebar: bool = False
    has_footer: bool = False
    uses_grid: bool = False
    uses_flexbox: bool = False
    spacing: List[str] = Field(default_factory=list)


class ComponentCount(BaseModel):
    type: str
    count: int
    examples: List[str] = Field(default_factory=list)


class AccessibilityInfo(BaseModel):
    has_aria_labels: bool = False
    has_alt_text: bool = False
    images_missing_alt: int = 0
    heading_hierarchy: List[str] = Field(default_factory=list)
    has_lang: bool = False


class UIMetadata(BaseModel):
    """Layout and style facts extracted from a source screen."""
    colors: ColorPalette = Field(default_factory=ColorPalette)
    typography: Typography = Field(default_factory=Typography)
    layout: LayoutInfo = Field(default_factory=LayoutInfo)
    components: List[ComponentCount] = Field(default_factory=list)
    accessibility: AccessibilityInfo = Field(default_factory=AccessibilityInfo)


class Progress(BaseModel):
    stage: str = ""
    message: str = ""
    percent: float = 0.0
    variant_index: Optional[int] = None


class ErrorInfo(BaseModel):
    """A failure surfaced on the pipeline view."""
    kind: str
    message: str
    provider: Optional[str] = None
    model: Optional[str] = None
    variant_index: Optional[int] = None
    retryable_with_other_provider: bool = False


class StructuredResult(BaseModel):
    """Parsed output of one provider call."""
    content: Any = None
    raw_text: str = ""
    provider: str
    model: str
    duration_ms: int = 0
    usage: Dict[str, Any] = Field(default_factory=dict)


class SessionRecord(BaseModel):
    """Persisted form of a session, enough to rebuild it after a restart."""
    session: Session
    screen: SourceScreen
    understanding: Optional[UnderstandingResult] = None
    clarifications: List[str] = Field(default_factory=list)
    plans: List[VariantPlan] = Field(default_factory=list)
    selected_indices: List[int] = Field(default_factory=list)
    variants: List[Variant] = Field(default_factory=list)
    iterations: Dict[int, List[Iteration]] = Field(default_factory=dict)
    epochs: Dict[int, int] = Field(default_factory=dict)
    last_ready: SessionStatus = SessionStatus.IDLE
    strategy: Optional[GenerationStrategy] = None
    saved_at: datetime = Field(default_factory=datetime.now)


class PipelineView(BaseModel):
    """Snapshot of the observable pipeline state."""
    status: SessionStatus
    progress: Progress = Field(default_factory=Progress)
    session: Optional[Session] = None
    understanding: Optional[UnderstandingResult] = None
    plan: List[VariantPlan] = Field(default_factory=list)
    selected_indices: List[int] = Field(default_factory=list)
    variants: List[Variant] = Field(default_factory=list)
    metadata: Optional[UIMetadata] = None
    error: Optional[ErrorInfo] = None
    variant_errors: Dict[int, ErrorInfo] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)
    epochs: Dict[int, int] = Field(default_factory=dict)

    def variant(self, variant_index: int) -> Optional[Variant]:
        for variant in self.variants:
            if variant.variant_index == variant_index:
                return variant
        return None


VariantPlan.model_rebuild()
SessionRecord.model_rebuild()
ElementNode.model_rebuild()
