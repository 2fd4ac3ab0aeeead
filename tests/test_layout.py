"""
Tests for static layout and style analysis.
"""

from vibe_gen.analysis.layout import analyze_layout, describe_metadata

from conftest import SOURCE_HTML


DASHBOARD_HTML = """<html><head><style>
.shell { display: grid; gap: 16px; }
.toolbar { display: flex; padding: 8px; }
h1 { font-family: 'Roboto', sans-serif; font-size: 24px; font-weight: 700; }
.card { background-color: #f5f5f5; border: 1px solid #dddddd; color: #333333; }
</style></head>
<body>
  <aside class="sidebar"><nav><a href="/a">A</a></nav></aside>
  <div class="shell">
    <h1>Dashboard</h1>
    <div class="card"><img src="chart.png"><button>Refresh</button></div>
    <div class="card"><img src="pie.png" alt="Pie chart"></div>
    <form><input type="text" name="q"><input type="submit" value="Go"></form>
  </div>
</body></html>"""


def test_simple_page():
    """Test metadata for a single-column page."""
    metadata = analyze_layout(SOURCE_HTML)

    assert metadata.layout.type == "single-column"
    assert metadata.layout.has_header
    assert metadata.layout.has_footer
    assert not metadata.layout.has_sidebar
    assert metadata.colors.background == ["#ffffff"]
    assert metadata.colors.text == ["#111111"]
    assert metadata.typography.font_families == ["Inter"]
    assert metadata.accessibility.has_lang


def test_sidebar_dashboard():
    """Test layout, style and component signals for a dashboard."""
    metadata = analyze_layout(DASHBOARD_HTML)

    assert metadata.layout.type == "sidebar"
    assert metadata.layout.uses_grid
    assert metadata.layout.uses_flexbox
    assert "16px" in metadata.layout.spacing
    assert metadata.typography.font_families == ["Roboto"]
    assert metadata.typography.font_sizes == ["24px"]
    assert "#dddddd" in metadata.colors.accent

    counts = {c.type: c.count for c in metadata.components}
    assert counts["card"] == 2
    assert counts["image"] == 2
    assert counts["button"] == 2
    assert counts["input"] == 1
    assert counts["navigation"] == 1

    assert metadata.accessibility.images_missing_alt == 1
    assert not metadata.accessibility.has_alt_text
    assert metadata.accessibility.heading_hierarchy == ["h1"]
    assert not metadata.accessibility.has_lang


def test_describe_metadata():
    text = describe_metadata(analyze_layout(SOURCE_HTML))

    assert text.startswith("Layout: single-column with header and footer")
    assert "Fonts: Inter" in text
    assert "1 button" in text
