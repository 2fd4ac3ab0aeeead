"""
Applies structured edit operations to an HTML document.

Operations run strictly in list order against one parsed tree. A selector is
accepted when it appears in the document's element summary, or when it
resolves to content inserted by an earlier operation in the same batch.
Anything else is skipped with a warning; the remaining operations still apply.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from bs4 import BeautifulSoup, Tag
from bs4.element import PageElement
from pydantic import ValidationError as SchemaError
from soupsieve import SelectorSyntaxError

from vibe_gen.errors import SelectorResolutionError, ValidationError
from vibe_gen.models import EditOperation, EditOperationType, ElementSummary, InsertPosition


log = logging.getLogger(__name__)


@dataclass
class EditResult:
    """Outcome of applying a batch of operations."""
    html: str
    applied: List[EditOperation] = field(default_factory=list)
    skipped: List[EditOperation] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def parse_operations(raw: Any) -> Tuple[List[EditOperation], List[str]]:
    """
    Validate model output into EditOperations.

    Args:
        raw: Either ``{"operations": [...]}`` or a bare list of operation dicts.

    Returns:
        Tuple of (valid operations, warnings for dropped entries).
    """
    if isinstance(raw, dict):
        items = raw.get("operations") or []
    elif isinstance(raw, list):
        items = raw
    else:
        return [], [f"Expected a list of operations, got {type(raw).__name__}"]

    operations: List[EditOperation] = []
    warnings: List[str] = []
    for i, item in enumerate(items, start=1):
        try:
            operations.append(EditOperation.model_validate(item))
        except SchemaError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            warnings.append(f"Dropped malformed operation #{i} ({location}: {first.get('msg')})")
    return operations, warnings


def parse_style(style: str) -> Dict[str, str]:
    """Parse an inline style attribute into an ordered property map."""
    properties: Dict[str, str] = {}
    for declaration in style.split(";"):
        if ":" not in declaration:
            continue
        name, value = declaration.split(":", 1)
        name = name.strip().lower()
        if name:
            properties[name] = value.strip()
    return properties


def format_style(properties: Dict[str, str]) -> str:
    return "; ".join(f"{name}: {value}" for name, value in properties.items())


def _fragment(html: str) -> List[PageElement]:
    """Parse a markup fragment into detached nodes."""
    fragment = BeautifulSoup(html, "html.parser")
    return [node.extract() for node in list(fragment.contents)]


def _require(op: EditOperation, attribute: str) -> Any:
    value = getattr(op, attribute)
    if value is None:
        raise ValidationError(f"{op.type.value} on '{op.selector}' is missing '{attribute}'")
    return value


class _Batch:
    """Mutable state of one apply_operations call."""

    def __init__(self, html: str, summary: Optional[ElementSummary]):
        self.soup = BeautifulSoup(html, "html.parser")
        self.allowed: Optional[Set[str]] = set(summary.selectors) if summary is not None else None
        self.inserted: List[Tag] = []

    def track(self, nodes: List[PageElement]):
        self.inserted.extend(node for node in nodes if isinstance(node, Tag))

    def _is_inserted(self, element: Tag) -> bool:
        node: Optional[PageElement] = element
        while node is not None:
            if any(node is inserted for inserted in self.inserted):
                return True
            node = node.parent
        return False

    def resolve(self, selector: str) -> Tag:
        try:
            matches = self.soup.select(selector)
        except SelectorSyntaxError as e:
            raise SelectorResolutionError(selector, "is not a valid CSS selector") from e

        if self.allowed is not None and selector not in self.allowed:
            if not any(self._is_inserted(match) for match in matches):
                raise SelectorResolutionError(selector, "is not in the element summary")
        if not matches:
            raise SelectorResolutionError(selector, "matches no element")
        return matches[0]


def _update_text(batch: _Batch, target: Tag, op: EditOperation):
    target.string = _require(op, "new_text")


def _update_attribute(batch: _Batch, target: Tag, op: EditOperation):
    target[_require(op, "attribute")] = op.value if op.value is not None else ""


def _update_style(batch: _Batch, target: Tag, op: EditOperation):
    styles = _require(op, "styles")
    properties = parse_style(target.get("style", ""))
    for name, value in styles.items():
        properties[name.strip().lower()] = str(value).strip()
    target["style"] = format_style(properties)


def _add_class(batch: _Batch, target: Tag, op: EditOperation):
    classes = list(target.get("class", []))
    for name in _require(op, "class_name").split():
        if name not in classes:
            classes.append(name)
    target["class"] = classes


def _remove_class(batch: _Batch, target: Tag, op: EditOperation):
    removed = set(_require(op, "class_name").split())
    classes = [c for c in target.get("class", []) if c not in removed]
    if classes:
        target["class"] = classes
    elif target.has_attr("class"):
        del target["class"]


def _insert_element(batch: _Batch, target: Tag, op: EditOperation):
    nodes = _fragment(_require(op, "html"))
    position = op.position or InsertPosition.APPEND
    if position == InsertPosition.BEFORE:
        for node in nodes:
            target.insert_before(node)
    elif position == InsertPosition.AFTER:
        anchor: PageElement = target
        for node in nodes:
            anchor.insert_after(node)
            anchor = node
    elif position == InsertPosition.PREPEND:
        for i, node in enumerate(nodes):
            target.insert(i, node)
    else:
        for node in nodes:
            target.append(node)
    batch.track(nodes)


def _remove_element(batch: _Batch, target: Tag, op: EditOperation):
    target.decompose()


def _replace_element(batch: _Batch, target: Tag, op: EditOperation):
    nodes = _fragment(_require(op, "html"))
    if not nodes:
        target.decompose()
        return
    anchor: PageElement = target
    for node in nodes:
        anchor.insert_after(node)
        anchor = node
    target.decompose()
    batch.track(nodes)


def _replace_inner_html(batch: _Batch, target: Tag, op: EditOperation):
    nodes = _fragment(_require(op, "html"))
    target.clear()
    for node in nodes:
        target.append(node)
    batch.track(nodes)


HANDLERS: Dict[EditOperationType, Callable[[_Batch, Tag, EditOperation], None]] = {
    EditOperationType.UPDATE_TEXT: _update_text,
    EditOperationType.UPDATE_ATTRIBUTE: _update_attribute,
    EditOperationType.UPDATE_STYLE: _update_style,
    EditOperationType.ADD_CLASS: _add_class,
    EditOperationType.REMOVE_CLASS: _remove_class,
    EditOperationType.INSERT_ELEMENT: _insert_element,
    EditOperationType.REMOVE_ELEMENT: _remove_element,
    EditOperationType.REPLACE_ELEMENT: _replace_element,
    EditOperationType.REPLACE_INNER_HTML: _replace_inner_html,
}


def apply_operations(
    html: str,
    operations: List[EditOperation],
    summary: Optional[ElementSummary] = None,
) -> EditResult:
    """
    Apply operations to a document in order.

    The function is pure: the same document and operation list always yield
    the same output.

    Args:
        html: Source document.
        operations: Operations to apply, in order.
        summary: Element summary of the source document. When given, selectors
            must come from it (or address content inserted earlier in the batch).

    Returns:
        EditResult with the edited document and per-operation bookkeeping.
    """
    batch = _Batch(html, summary)
    result = EditResult(html=html)

    for op in operations:
        try:
            target = batch.resolve(op.selector)
            HANDLERS[op.type](batch, target, op)
        except (SelectorResolutionError, ValidationError) as e:
            warning = f"Skipped {op.type.value}: {e}"
            log.warning(warning)
            result.warnings.append(warning)
            result.skipped.append(op)
            continue
        result.applied.append(op)

    result.html = str(batch.soup)
    return result
