"""
Prompts for the staged pipeline phases.
"""

from typing import Optional

UNDERSTANDING_SYSTEM_PROMPT = """You are a senior product designer. You read a user's request for
changes to an existing screen and restate it precisely before any design work starts."""

UNDERSTANDING_PROMPT_TEMPLATE = """A user wants to change the screen shown in the attached screenshot.

## User Request
{prompt}
{clarifications}{product_context}
## Screen Facts
{metadata}

## Screen Structure
```
{element_summary}
```

Restate what the user wants. Return ONLY a JSON object:
{{
  "summary": "One paragraph restating the request",
  "goals": ["..."],
  "scope": "What will and will not change",
  "assumptions": ["..."],
  "clarifyingQuestions": ["Only questions whose answers would change the design"]
}}"""

CLARIFICATION_SECTION = """
## Clarifications From The User
{items}
"""

PRODUCT_CONTEXT_SECTION = """
## Product Context
{text}
"""

UX_GUIDELINES_SECTION = """
## UX Guidelines
Follow these guidelines extracted from the product:
{text}
"""

# Character limits for optional context passed into prompts
UNDERSTANDING_CONTEXT_LIMIT = 1500
PLAN_CONTEXT_LIMIT = 2000
UX_GUIDELINES_LIMIT = 3000

PLAN_SYSTEM_PROMPT = """You are a senior product designer proposing alternative directions
for a screen redesign. Directions must be meaningfully different from each other."""

PLAN_PROMPT_TEMPLATE = """Propose exactly {count} distinct design variants for this request.

## Agreed Understanding
Summary: {summary}
Goals:
{goals}
Scope: {scope}
{product_context}{ux_guidelines}
## Screen Facts
{metadata}

Return ONLY a JSON object:
{{
  "plans": [
    {{"title": "...", "description": "...", "keyChanges": ["..."], "styleNotes": "..."}}
  ]
}}
The "plans" array must contain exactly {count} entries."""

WIREFRAME_SYSTEM_PROMPT = """You are a UX designer producing low-fidelity wireframes as HTML.
Use only grayscale boxes, placeholder text and simple borders. No images, no colors, no JavaScript."""

WIREFRAME_PROMPT_TEMPLATE = """Create a low-fidelity wireframe for this variant of the screen.

## Variant
**Title:** {title}
**Description:** {description}

**Key Changes:**
{key_changes}

## Current Screen Structure
```
{element_summary}
```

Return a single complete HTML document with inline CSS.
Generate ONLY the HTML code, no explanations."""

ITERATION_SYSTEM_PROMPT = """You are an expert frontend developer refining an existing prototype.
Apply exactly the requested change and keep everything else identical."""

ITERATION_PROMPT_TEMPLATE = """Apply this change to the page below:

{prompt}

## Current Page
```html
{html}
```

Return the complete updated HTML document.
Generate ONLY the HTML code, no explanations."""

EDIT_SYSTEM_PROMPT = """You are a UI/UX expert specializing in precise DOM manipulation.
You never regenerate pages. You describe surgical edits that are applied to the original
document so the variant stays consistent with the existing design system."""

EDIT_PROMPT_TEMPLATE = """Generate edit operations that turn the current page into this variant.
{vision_context}
## Variant to Implement
**Title:** {title}
**Description:** {description}

**Key Changes Required:**
{key_changes}

**Style Notes:** {style_notes}

## Element Summary (DOM Structure)
Use ONLY selectors that appear in this summary:
```
{element_summary}
```

## Available Edit Operations
1. updateText: {{"type": "updateText", "selector": "#main-title", "newText": "New Title", "description": "..."}}
2. updateAttribute: {{"type": "updateAttribute", "selector": "img#hero", "attribute": "src", "value": "/new.png", "description": "..."}}
3. updateStyle (merges with existing inline styles): {{"type": "updateStyle", "selector": "button.primary", "styles": {{"background-color": "#3B82F6"}}, "description": "..."}}
4. addClass: {{"type": "addClass", "selector": ".card", "className": "highlighted", "description": "..."}}
5. removeClass: {{"type": "removeClass", "selector": ".alert", "className": "hidden", "description": "..."}}
6. insertElement (position: before, after, prepend, append): {{"type": "insertElement", "selector": "nav.main-nav", "position": "append", "html": "<a href=\\"/new\\">New</a>", "description": "..."}}
7. removeElement: {{"type": "removeElement", "selector": ".old-banner", "description": "..."}}
8. replaceElement: {{"type": "replaceElement", "selector": ".old-widget", "html": "<div class=\\"new-widget\\">...</div>", "description": "..."}}
9. replaceInnerHtml: {{"type": "replaceInnerHtml", "selector": ".content", "html": "<p>...</p>", "description": "..."}}

## Rules
1. Every selector MUST appear in the element summary, or target an element you inserted earlier in the list.
2. Preserve the existing colors, fonts and spacing. Only change what the variant requires.
3. Make the fewest operations necessary, structure first, then content, then styling.
4. Every operation needs a "description".

Return ONLY a JSON object:
{{"operations": [...], "summary": "Brief summary of all changes"}}"""

VISION_CONTEXT = """
## Visual Reference
A screenshot of the current page is attached. Use it to understand layout, styling
and element positions, and match your operations to what you see.
"""

REGENERATION_SYSTEM_PROMPT = """You are an expert frontend developer. You produce a single,
complete, static HTML file with all CSS inline in a <style> tag and no JavaScript."""

REGENERATION_PROMPT_TEMPLATE = """Rebuild the page below as the following variant.

## Variant
**Title:** {title}
**Description:** {description}

**Key Changes:**
{key_changes}

**Style Notes:** {style_notes}
{wireframe_section}
## Original Page
```html
{source_html}
```

Keep the original design language unless the variant changes it.
Generate ONLY the HTML code, no explanations."""

WIREFRAME_SECTION = """
## Approved Wireframe
Follow this low-fidelity structure:
```html
{wireframe_html}
```
"""


def limited_section(template: str, text: Optional[str], limit: int) -> str:
    """Fill an optional prompt section, truncating its text; empty when there is no text."""
    if not text or not text.strip():
        return ""
    return template.format(text=text.strip()[:limit])


def bullet_list(items) -> str:
    if not items:
        return "- (none)"
    return "\n".join(f"- {item}" for item in items)


def numbered_list(items) -> str:
    if not items:
        return "(No specific changes listed)"
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, start=1))
