"""
Static extraction of layout and style facts from a source screen's HTML.

The result grounds the understanding and planning prompts in the design
language the screen already uses.
"""

import re
from collections import Counter
from typing import Dict, Iterable, List

from bs4 import BeautifulSoup

from vibe_gen.models import (
    AccessibilityInfo,
    ColorPalette,
    ComponentCount,
    LayoutInfo,
    Typography,
    UIMetadata,
)


COLOR_PATTERN = re.compile(r"#[0-9a-fA-F]{3,8}\b|rgba?\([^)]*\)|hsla?\([^)]*\)")
DECLARATION_PATTERN = re.compile(r"([a-zA-Z-]+)\s*:\s*([^;{}]+)")

# Component type -> CSS selector used to count it
COMPONENT_SELECTORS = {
    "button": "button, [role=button], input[type=submit], a.btn, a.button",
    "input": "input:not([type=submit]):not([type=hidden]), textarea, select",
    "card": "[class*=card]",
    "navigation": "nav, [role=navigation]",
    "form": "form",
    "table": "table",
    "list": "ul, ol",
    "image": "img, picture",
    "modal": "dialog, [role=dialog], [class*=modal]",
    "tabs": "[role=tablist], [class*=tabs]",
}


def _top(values: Iterable[str], limit: int) -> List[str]:
    return [value for value, _ in Counter(values).most_common(limit)]


def _css_sources(soup: BeautifulSoup) -> str:
    blocks = [style.get_text() for style in soup.find_all("style")]
    blocks.extend(tag.get("style", "") for tag in soup.find_all(style=True))
    return "\n".join(blocks)


def _declarations(css: str) -> Dict[str, List[str]]:
    found: Dict[str, List[str]] = {}
    for name, value in DECLARATION_PATTERN.findall(css):
        found.setdefault(name.lower(), []).append(value.strip())
    return found


def _colors(declarations: Dict[str, List[str]]) -> ColorPalette:
    def colors_of(*properties: str) -> List[str]:
        values = []
        for prop in properties:
            for value in declarations.get(prop, []):
                values.extend(c.lower() for c in COLOR_PATTERN.findall(value))
        return values

    backgrounds = colors_of("background", "background-color")
    texts = colors_of("color")
    borders = colors_of("border", "border-color", "outline", "box-shadow")

    ranked_backgrounds = _top(backgrounds, 6)
    return ColorPalette(
        primary=ranked_backgrounds[1:3],
        secondary=ranked_backgrounds[3:6],
        background=ranked_backgrounds[:1],
        text=_top(texts, 3),
        accent=_top(borders, 3),
    )


def _typography(declarations: Dict[str, List[str]]) -> Typography:
    families = [
        value.split(",")[0].strip().strip("'\"")
        for value in declarations.get("font-family", [])
    ]
    return Typography(
        font_families=_top(families, 3),
        font_sizes=_top(declarations.get("font-size", []), 6),
        font_weights=_top(declarations.get("font-weight", []), 4),
        line_heights=_top(declarations.get("line-height", []), 3),
    )


def _layout(soup: BeautifulSoup, declarations: Dict[str, List[str]]) -> LayoutInfo:
    displays = declarations.get("display", [])
    has_sidebar = bool(soup.select("aside, [class*=sidebar], [class*=side-nav]"))
    uses_grid = any("grid" in value for value in displays)

    if has_sidebar:
        layout_type = "sidebar"
    elif uses_grid:
        layout_type = "grid"
    else:
        layout_type = "single-column"

    spacing = declarations.get("padding", []) + declarations.get("margin", []) + declarations.get("gap", [])
    return LayoutInfo(
        type=layout_type,
        has_header=bool(soup.select("header, [role=banner]")),
        has_sidebar=has_sidebar,
        has_footer=bool(soup.select("footer, [role=contentinfo]")),
        uses_grid=uses_grid,
        uses_flexbox=any("flex" in value for value in displays),
        spacing=_top(spacing, 5),
    )


def _components(soup: BeautifulSoup) -> List[ComponentCount]:
    counts = []
    for component_type, selector in COMPONENT_SELECTORS.items():
        matches = soup.select(selector)
        if not matches:
            continue
        examples = []
        for element in matches[:3]:
            label = element.get_text(" ", strip=True) or element.get("aria-label") or element.get("alt") or element.name
            examples.append(label[:40])
        counts.append(ComponentCount(type=component_type, count=len(matches), examples=examples))
    return counts


def _accessibility(soup: BeautifulSoup) -> AccessibilityInfo:
    images = soup.find_all("img")
    missing_alt = sum(1 for img in images if not img.get("alt"))
    html_tag = soup.find("html")
    return AccessibilityInfo(
        has_aria_labels=bool(soup.find(attrs={"aria-label": True})),
        has_alt_text=bool(images) and missing_alt == 0,
        images_missing_alt=missing_alt,
        heading_hierarchy=[h.name for h in soup.find_all(re.compile(r"^h[1-6]$"))][:20],
        has_lang=bool(html_tag is not None and html_tag.get("lang")),
    )


def analyze_layout(html: str) -> UIMetadata:
    """
    Extract colors, typography, layout, component counts and accessibility signals.

    Args:
        html: Source screen HTML.

    Returns:
        UIMetadata describing the screen.
    """
    soup = BeautifulSoup(html, "html.parser")
    declarations = _declarations(_css_sources(soup))
    return UIMetadata(
        colors=_colors(declarations),
        typography=_typography(declarations),
        layout=_layout(soup, declarations),
        components=_components(soup),
        accessibility=_accessibility(soup),
    )


def describe_metadata(metadata: UIMetadata) -> str:
    """Short text rendering of UIMetadata for prompts."""
    lines = [
        f"Layout: {metadata.layout.type}"
        + (" with header" if metadata.layout.has_header else "")
        + (" and footer" if metadata.layout.has_footer else ""),
    ]
    palette = metadata.colors
    colors = palette.background + palette.primary + palette.secondary + palette.text
    if colors:
        lines.append(f"Colors: {', '.join(colors)}")
    if metadata.typography.font_families:
        lines.append(f"Fonts: {', '.join(metadata.typography.font_families)}")
    if metadata.components:
        lines.append("Components: " + ", ".join(f"{c.count} {c.type}" for c in metadata.components))
    return "\n".join(lines)
