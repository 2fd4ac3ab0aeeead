"""
Compact, model-friendly outline of an HTML document.

The outline lists every kept element with a CSS selector that resolves to
exactly that element, so a model can target edits without seeing the markup.
"""

import re
from collections import Counter, defaultdict
from typing import Dict, List, Optional, Set, Tuple

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import Comment

from vibe_gen.models import ElementNode, ElementSummary, SummaryStats


SKIP_TAGS = {"script", "style", "noscript", "svg", "path", "meta", "link", "head"}

SEMANTIC_ROLES = {
    "button": "button",
    "a": "link",
    "input": "input",
    "textarea": "input",
    "select": "dropdown",
    "img": "image",
    "video": "video",
    "audio": "audio",
    "form": "form",
    "table": "table",
    "ul": "list",
    "ol": "list",
    "li": "list-item",
    "h1": "heading-1",
    "h2": "heading-2",
    "h3": "heading-3",
    "h4": "heading-4",
    "h5": "heading-5",
    "h6": "heading-6",
    "p": "paragraph",
    "label": "label",
    "span": "text",
    "div": "container",
}

# Roles too generic to be worth printing in the outline
QUIET_ROLES = {"container", "text"}

MAX_TEXT_LENGTH = 100
MAX_ATTR_LENGTH = 50
MAX_DEPTH = 15
MAX_CHILDREN = 50

GENERATED_CLASS = re.compile(r"^(css-|sc-|emotion-|__|\d|MuiBox-|MuiTypography-|MuiButton-|MuiIcon-|chakra-)", re.I)
SHORT_HASH_CLASS = re.compile(r"^[a-z]{1,2}\d+$", re.I)
GENERATED_ID = re.compile(r"^(:|css-|sc-|:r|mui-|\d)", re.I)
SAFE_VALUE = re.compile(r'^[^"\\\n]*$')
SAFE_IDENT = re.compile(r"^-?[A-Za-z_][A-Za-z0-9_-]*$")
PRIORITY_DATA_ATTRS = ["data-id", "data-name", "data-type", "data-value", "data-key", "data-index"]
IGNORED_DATA_ATTRS = re.compile(r"^data-(reactid|reactroot|emotion|radix)", re.I)


def meaningful_classes(element: Tag) -> List[str]:
    """Classes that look hand-written rather than generated by CSS-in-JS tooling."""
    return [
        c for c in element.get("class", [])
        if not GENERATED_CLASS.match(c)
        and 1 < len(c) < 40
        and not SHORT_HASH_CLASS.match(c)
        and SAFE_IDENT.match(c)
    ]


def _attr(element: Tag, name: str) -> Optional[str]:
    value = element.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    return value


class SelectorIndex:
    """
    Occurrence counts of tags, ids, classes and attribute values in a document.

    Built in one pass so each candidate selector can be checked for uniqueness
    without querying the whole document again.
    """

    def __init__(self, soup: BeautifulSoup):
        self.tags: Counter = Counter()
        self.ids: Counter = Counter()
        self.attrs: Counter = Counter()
        self.classes: Dict[Tuple[str, str], List[Tag]] = defaultdict(list)
        self._class_counts: Dict[Tuple[str, Tuple[str, ...]], int] = {}

        for element in soup.find_all(True):
            tag = element.name
            self.tags[tag] += 1
            for name in element.attrs:
                if name == "class":
                    for class_name in set(element.get("class", [])):
                        self.classes[(tag, class_name)].append(element)
                    continue
                value = _attr(element, name)
                if name == "id":
                    self.ids[value] += 1
                self.attrs[(tag, name, value)] += 1
                self.attrs[(None, name, value)] += 1

    def _count_classes(self, tag: str, class_names: Tuple[str, ...]) -> int:
        key = (tag, class_names)
        if key not in self._class_counts:
            candidates = min((self.classes[(tag, c)] for c in class_names), key=len)
            wanted = set(class_names)
            self._class_counts[key] = sum(
                1 for element in candidates if wanted.issubset(element.get("class", []))
            )
        return self._class_counts[key]

    def matches_only(self, element: Tag, match: Tuple) -> bool:
        """True when the selector described by ``match`` resolves to ``element`` alone."""
        kind = match[0]
        if kind == "id":
            return self.ids[match[1]] == 1
        if kind == "attr":
            _, tag, name, value = match
            return _attr(element, name) == value and self.attrs[(tag, name, value)] == 1
        if kind == "classes":
            return self._count_classes(match[1], match[2]) == 1
        if kind == "child":
            return len(element.parent.find_all(match[1], recursive=False)) == 1
        return self.tags[match[1]] == 1


def _candidate_selector(element: Tag, parent_selector: Optional[str]) -> Tuple[str, Tuple]:
    """
    Most specific readable selector for an element, before uniqueness checks.

    Returns the selector and a match key describing what it selects, for
    SelectorIndex.matches_only.
    """
    tag = element.name

    element_id = _attr(element, "id")
    if element_id and not GENERATED_ID.match(element_id) and len(element_id) < 50 and SAFE_IDENT.match(element_id):
        return f"#{element_id}", ("id", element_id)

    test_id = _attr(element, "data-testid")
    if test_id and len(test_id) < 50 and SAFE_VALUE.match(test_id):
        return f'[data-testid="{test_id}"]', ("attr", None, "data-testid", test_id)

    aria_label = _attr(element, "aria-label")
    if aria_label and 2 < len(aria_label) < 50 and SAFE_VALUE.match(aria_label):
        return f'{tag}[aria-label="{aria_label}"]', ("attr", tag, "aria-label", aria_label)

    role = _attr(element, "role")
    if role in ("button", "link", "menuitem", "tab", "option"):
        return f'{tag}[role="{role}"]', ("attr", tag, "role", role)

    if tag == "a":
        href = _attr(element, "href") or ""
        if href and len(href) < 50 and not href.startswith(("javascript:", "#")):
            clean_href = href.split("?")[0][:40]
            if len(clean_href) > 1 and SAFE_VALUE.match(clean_href):
                return f'a[href="{clean_href}"]', ("attr", "a", "href", clean_href)

    classes = meaningful_classes(element)
    if classes:
        chosen = tuple(classes[:4])
        return tag + "".join(f".{c}" for c in chosen), ("classes", tag, chosen)

    for name in PRIORITY_DATA_ATTRS:
        value = _attr(element, name)
        if value and len(value) < 40 and SAFE_VALUE.match(value):
            return f'{tag}[{name}="{value}"]', ("attr", tag, name, value)

    for name, value in element.attrs.items():
        if name.startswith("data-") and not IGNORED_DATA_ATTRS.match(name) and isinstance(value, str):
            if len(value) < 40 and SAFE_VALUE.match(value):
                return f'{tag}[{name}="{value}"]', ("attr", tag, name, value)

    if tag in ("input", "select", "textarea", "button"):
        name = _attr(element, "name")
        if name and len(name) < 40 and SAFE_VALUE.match(name):
            return f'{tag}[name="{name}"]', ("attr", tag, "name", name)
        input_type = _attr(element, "type")
        if input_type and SAFE_VALUE.match(input_type):
            return f'{tag}[type="{input_type}"]', ("attr", tag, "type", input_type)

    if parent_selector and parent_selector != "body":
        return f"{parent_selector} > {tag}", ("child", tag)
    return tag, ("tag", tag)


def _nth_of_type(element: Tag) -> int:
    index = 1
    for sibling in element.previous_siblings:
        if isinstance(sibling, Tag) and sibling.name == element.name:
            index += 1
    return index


def unique_selector(index: SelectorIndex, element: Tag, parent_selector: Optional[str]) -> str:
    """
    Pick a selector that resolves to exactly this element.

    Falls back to a structural ``parent > tag:nth-of-type(n)`` path when the
    readable candidate is ambiguous. The parent selector is itself unique, so
    the structural form needs no further check.
    """
    candidate, match = _candidate_selector(element, parent_selector)
    if index.matches_only(element, match):
        return candidate

    step = f"{element.name}:nth-of-type({_nth_of_type(element)})"
    if parent_selector:
        return f"{parent_selector} > {step}"

    path = []
    node = element
    while isinstance(node, Tag) and node.name != "[document]":
        path.append(f"{node.name}:nth-of-type({_nth_of_type(node)})")
        node = node.parent
    return " > ".join(reversed(path))


def _direct_text(element: Tag) -> str:
    parts = [
        str(child) for child in element.children
        if isinstance(child, NavigableString) and not isinstance(child, Comment)
    ]
    return re.sub(r"\s+", " ", "".join(parts)).strip()[:MAX_TEXT_LENGTH]


def _process(
    index: SelectorIndex,
    element: Tag,
    parent_selector: Optional[str],
    depth: int,
) -> Optional[ElementNode]:
    tag = element.name
    if tag in SKIP_TAGS or depth > MAX_DEPTH:
        return None

    node = ElementNode(tag=tag, selector=unique_selector(index, element, parent_selector), depth=depth)

    element_id = _attr(element, "id")
    if element_id and not re.match(r"^(:|css-|sc-)", element_id):
        node.id = element_id

    node.classes = meaningful_classes(element)[:5]
    node.data_attrs = {
        name: value for name, value in element.attrs.items()
        if name.startswith("data-") and isinstance(value, str) and len(value) < MAX_ATTR_LENGTH
    }
    node.role = _attr(element, "role") or SEMANTIC_ROLES.get(tag)

    if tag == "input":
        node.type = _attr(element, "type") or "text"
    if tag == "a":
        href = _attr(element, "href")
        if href and not href.startswith("javascript:"):
            node.href = href[:MAX_ATTR_LENGTH]
    if tag == "img":
        src = _attr(element, "src")
        alt = _attr(element, "alt")
        if src:
            node.src = src[:MAX_ATTR_LENGTH]
        if alt:
            node.text = alt[:MAX_TEXT_LENGTH]

    text = _direct_text(element)
    if text:
        node.text = text

    for child in element.find_all(True, recursive=False):
        if len(node.children) >= MAX_CHILDREN:
            break
        child_node = _process(index, child, node.selector, depth + 1)
        if child_node:
            node.children.append(child_node)

    return node


def tree_to_text(node: ElementNode, indent: str = "") -> str:
    """Indented outline: selector, quoted text and role hint per line."""
    line = f"{indent}{node.selector}"
    if node.text:
        line += f' "{node.text}"'
    if node.role and node.role not in QUIET_ROLES:
        line += f" [{node.role}]"
    lines = [line]
    for child in node.children:
        lines.append(tree_to_text(child, indent + "  "))
    return "\n".join(lines)


def _walk(node: ElementNode):
    yield node
    for child in node.children:
        yield from _walk(child)


def extract_element_summary(html: str) -> ElementSummary:
    """
    Build an ElementSummary for an HTML document.

    Args:
        html: Full document or fragment.

    Returns:
        ElementSummary whose selectors each resolve to one element.
    """
    soup = BeautifulSoup(html, "html.parser")
    root = soup.body or soup.find(True)
    if root is None:
        return ElementSummary()

    tree = _process(SelectorIndex(soup), root, None, 0)
    if tree is None:
        return ElementSummary()

    nodes = list(_walk(tree))
    selectors: List[str] = []
    seen: Set[str] = set()
    for node in nodes:
        if node.selector not in seen:
            seen.add(node.selector)
            selectors.append(node.selector)

    return ElementSummary(
        tree=tree,
        text_content=tree_to_text(tree),
        stats=SummaryStats(
            total_elements=len(nodes),
            max_depth=max(node.depth for node in nodes),
            unique_selectors=len(selectors),
        ),
        selectors=selectors,
    )


class ElementSummaryCache:
    """Summaries keyed by source id; each source is summarized once."""

    def __init__(self):
        self._summaries: Dict[str, ElementSummary] = {}

    def get(self, source_id: str, html: str) -> ElementSummary:
        if source_id not in self._summaries:
            self._summaries[source_id] = extract_element_summary(html)
        return self._summaries[source_id]

    def clear(self):
        self._summaries.clear()
