"""
Unit tests for plotgrouper_config.

Run with: pytest tests/test_plot_defaults.py -v
"""

import math

import pytest

from plotgrouper_config import (
    DEFAULT_GEOMS, DEFAULTS, GEOMS, SignificanceScale, expand_geoms,
    get_marker_style, normalize_p_label,
)


class TestPLabels:
    """Dotted and snake_case p-label spellings."""

    @pytest.mark.parametrize("label,expected", [
        ("p.signif", "p_signif"),
        ("p.format", "p_format"),
        ("p.adj", "p_adj"),
        ("p.adj.signif", "p_adj_signif"),
        ("p_adj_signif", "p_adj_signif"),
    ])
    def test_normalizes(self, label, expected):
        assert normalize_p_label(label) == expected

    def test_unknown_label_raises(self):
        with pytest.raises(ValueError, match="Unknown p-value label"):
            normalize_p_label("p.value")


class TestGeoms:
    """Geom validation and shortcut expansion."""

    def test_defaults_are_known(self):
        assert set(DEFAULT_GEOMS) <= set(GEOMS)

    def test_line_point_stat_expands(self):
        assert expand_geoms(["line_point_stat"]) == ["line", "line_error", "line_point", "stat"]

    def test_plain_geoms_unchanged(self):
        assert expand_geoms(["box", "point"]) == ["box", "point"]

    def test_unknown_geom_raises(self):
        with pytest.raises(ValueError, match="histogram"):
            expand_geoms(["bar", "histogram"])


class TestSignificanceScale:
    """Right-closed cutpoint intervals."""

    @pytest.mark.parametrize("p,symbol", [
        (0.0, "****"),
        (0.00005, "****"),
        (0.0001, "****"),
        (0.0005, "***"),
        (0.001, "***"),
        (0.005, "**"),
        (0.03, "*"),
        (0.05, "*"),
        (0.2, None),
        (1.0, None),
    ])
    def test_symbols(self, p, symbol):
        assert SignificanceScale().symbol_for(p) == symbol

    def test_missing_pvalue(self):
        assert SignificanceScale().symbol_for(math.nan) is None
        assert SignificanceScale().symbol_for(None) is None

    def test_mismatched_symbols_raise(self):
        with pytest.raises(ValueError):
            SignificanceScale(cutpoints=(0, 0.05, 1), symbols=("*",))


class TestMarkerStyles:
    """Numeric point shapes."""

    def test_solid_circle_uses_line_colour(self):
        style = get_marker_style(19)
        assert style.marker == 'o'
        assert style.facecolor('black', '#A33838') == 'black'

    def test_fillable_circle_uses_fill(self):
        style = get_marker_style(21)
        assert style.facecolor('black', '#A33838') == '#A33838'
        assert style.facecolor('black', None) == 'none'

    def test_hollow_shape(self):
        assert get_marker_style(1).facecolor('black', 'red') == 'none'

    def test_matplotlib_marker_string(self):
        assert get_marker_style('h').marker == 'h'

    def test_unknown_shape_raises(self):
        with pytest.raises(ValueError, match="Unsupported point shape"):
            get_marker_style(99)


def test_plot_defaults():
    assert DEFAULTS.plot_width == 30
    assert DEFAULTS.plot_height == 40
    assert DEFAULTS.shape_groups == (19, 21)
    assert DEFAULTS.fill_groups[1] is None
