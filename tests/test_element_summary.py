"""
Tests for element summary extraction.
"""

from bs4 import BeautifulSoup, Tag

from vibe_gen.editing.element_summary import ElementSummaryCache, extract_element_summary, meaningful_classes

from conftest import SOURCE_HTML


def test_every_selector_resolves_to_one_element():
    """Test every summarized selector matches exactly one element."""
    summary = extract_element_summary(SOURCE_HTML)
    soup = BeautifulSoup(SOURCE_HTML, "html.parser")

    assert summary.selectors
    for selector in summary.selectors:
        assert len(soup.select(selector)) == 1, selector


def test_repeated_classes_get_distinct_selectors():
    """Test repeated class names get positional selectors."""
    html = '<body><ul><li class="item">A</li><li class="item">B</li><li class="item">C</li></ul></body>'
    summary = extract_element_summary(html)
    soup = BeautifulSoup(html, "html.parser")

    items = [s for s in summary.selectors if "li" in s]
    assert len(items) == 3
    assert [soup.select_one(s).get_text() for s in items] == ["A", "B", "C"]


def test_preferred_selectors():
    summary = extract_element_summary(SOURCE_HTML)

    assert "#buy" in summary.selectors
    assert "#top" in summary.selectors
    assert 'a[href="/cart"]' in summary.selectors
    assert "p.tagline" in summary.selectors


def test_skips_scripts_and_styles():
    """Test script and style elements are not summarized."""
    summary = extract_element_summary(SOURCE_HTML)

    assert "tracking" not in summary.text_content
    assert not any(s.startswith(("script", "style")) for s in summary.selectors)


def test_text_outline_contains_roles_and_text():
    summary = extract_element_summary(SOURCE_HTML)

    assert '#buy "Buy now" [button]' in summary.text_content
    assert summary.stats.total_elements == len(summary.selectors)
    assert summary.stats.max_depth >= 3


def test_generated_classes_are_ignored():
    soup = BeautifulSoup('<div class="css-1x2y sc-abc card a1 featured">x</div>', "html.parser")

    assert meaningful_classes(soup.div) == ["card", "featured"]


def test_prompt_text_is_truncated_to_budget():
    """Test prompt text respects the token budget."""
    summary = extract_element_summary(SOURCE_HTML)

    text = summary.to_prompt_text(max_tokens=10)

    assert text.endswith("... (truncated)")
    assert len(text) <= 40 + len("\n... (truncated)")


def test_empty_document():
    summary = extract_element_summary("")

    assert summary.tree is None
    assert summary.selectors == []


def test_cache_summarizes_each_source_once():
    """Test the cache reuses summaries per source screen."""
    cache = ElementSummaryCache()

    first = cache.get("screen-1", SOURCE_HTML)
    second = cache.get("screen-1", "<p>ignored</p>")

    assert first is second


def card_grid(sections=40, cards=8):
    parts = ["<body><main>"]
    for s in range(sections):
        parts.append(f'<section class="grid" aria-label="Section {s % 3}">')
        for c in range(cards):
            parts.append(
                f'<div class="card featured" data-kind="product">'
                f'<h3 id="dup">Item {c}</h3>'
                f'<a href="/items?page={s}">More</a>'
                f'<button type="button">Add</button>'
                f'</div>'
            )
        parts.append("</section>")
    parts.append("</main></body>")
    return "".join(parts)


def test_large_page_selectors_are_unique_without_requerying(monkeypatch):
    """Test selector uniqueness comes from a single indexing pass over the document."""
    html = card_grid()

    def no_select(*args, **kwargs):
        raise AssertionError("summary extraction should not query the document")

    monkeypatch.setattr(Tag, "select", no_select)
    summary = extract_element_summary(html)
    monkeypatch.undo()

    soup = BeautifulSoup(html, "html.parser")
    assert summary.stats.total_elements > 1000
    assert len(summary.selectors) == summary.stats.total_elements
    for selector in summary.selectors:
        assert len(soup.select(selector)) == 1, selector


def test_duplicate_ids_and_labels_fall_back_to_structure():
    html = (
        '<body><nav aria-label="Main"><a href="/x" id="go">x</a></nav>'
        '<nav aria-label="Main"><a href="/x" id="go">y</a></nav></body>'
    )
    summary = extract_element_summary(html)
    soup = BeautifulSoup(html, "html.parser")

    assert "#go" not in summary.selectors
    assert 'nav[aria-label="Main"]' not in summary.selectors
    assert [soup.select_one(s).get_text() for s in summary.selectors if s.endswith("> a:nth-of-type(1)")] == ["x", "y"]
