"""
Plot Defaults Configuration
============================

Defines the geometries, error summaries, statistical tests, p-value labels,
point shapes and aesthetic defaults understood by ``gplot``.

Point shapes follow the numeric codes used by most publication plotting
tools (19 = solid circle, 21 = fillable circle, 17 = solid triangle, ...).
To add a new shape:
1. Add an entry to SHAPE_CODES
2. Choose the matplotlib marker and how its face is coloured

Example:
    26: MarkerStyle(marker='h', face='fill'),
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union
import math


# =============================================================================
# GEOMETRIES
# =============================================================================

GEOMS: List[str] = [
    'bar',
    'errorbar',
    'point',
    'point_noJitter',
    'crossbar',
    'stat',
    'seg',
    'violin',
    'box',
    'line',
    'line_error',
    'line_point',
    'line_point_stat',
    'dot',
    'density',
]

DEFAULT_GEOMS: List[str] = ['bar', 'errorbar', 'point', 'stat', 'seg']

# Shortcut geoms that expand into several layers
GEOM_ALIASES: Dict[str, List[str]] = {
    'line_point_stat': ['line', 'line_error', 'line_point', 'stat'],
}

# Geoms whose legend key is a filled rectangle
FILLED_GEOMS = {'bar', 'box', 'violin', 'density'}

# Geoms whose legend key is a marker
MARKER_GEOMS = {'point', 'point_noJitter', 'line_point', 'dot'}


# =============================================================================
# ERROR SUMMARIES AND TESTS
# =============================================================================

ERROR_TYPES: Dict[str, str] = {
    'mean_sdl': 'Mean +/- standard deviation',
    'mean_se': 'Mean +/- standard error',
    'mean_cl_normal': 'Mean with t-based 95% confidence interval',
    'mean_cl_boot': 'Mean with bootstrapped 95% confidence interval',
    'median_hilow': 'Median with 2.5% / 97.5% quantiles',
}

TEST_METHODS: Dict[str, str] = {
    't.test': 'Welch two-sample t-test',
    'wilcox.test': 'Wilcoxon rank-sum (Mann-Whitney U) test',
    'anova': 'One-way ANOVA',
    'kruskal.test': 'Kruskal-Wallis rank-sum test',
}

PAIRWISE_METHODS = ('t.test', 'wilcox.test')

P_LABELS: Dict[str, str] = {
    'p_signif': 'Asterisks for the raw p-value',
    'p_format': 'Formatted raw p-value',
    'p_adj': 'Adjusted p-value',
    'p_adj_signif': 'Asterisks for the adjusted p-value',
}

STAR_LABELS = ('p_signif', 'p_adj_signif')

# Pooled reference group for one-vs-all comparisons
ALL_GROUPS_REF = '.all.'

TRANSFORMS = ('identity', 'log10', 'log2', 'log', 'sqrt', 'reverse')

LEGEND_POSITIONS = ('top', 'bottom', 'left', 'right', 'none')


def normalize_p_label(p: str) -> str:
    """Map dotted p-label spellings ('p.adj.signif') onto column names."""
    key = p.replace('.', '_')
    if key not in P_LABELS:
        raise ValueError(
            f"Unknown p-value label '{p}'. Choose from: {', '.join(P_LABELS)}"
        )
    return key


def expand_geoms(geoms: Sequence[str]) -> List[str]:
    """Validate geom names and expand shortcut geoms."""
    unknown = [g for g in geoms if g not in GEOMS]
    if unknown:
        raise ValueError(f"Unknown geom(s): {', '.join(unknown)}")

    for alias, layers in GEOM_ALIASES.items():
        if alias in geoms:
            return list(layers)
    return list(geoms)


# =============================================================================
# SIGNIFICANCE SCALE
# =============================================================================

@dataclass
class SignificanceScale:
    """Cutpoints and symbols used to turn p-values into asterisks."""
    cutpoints: Tuple[float, ...] = (0, 0.0001, 0.001, 0.01, 0.05, 1)
    symbols: Tuple[Optional[str], ...] = ('****', '***', '**', '*', None)

    def __post_init__(self):
        if len(self.symbols) != len(self.cutpoints) - 1:
            raise ValueError("Need exactly one symbol per cutpoint interval")

    def symbol_for(self, p: Optional[float]) -> Optional[str]:
        """Symbol of the interval containing p, or None."""
        if p is None or (isinstance(p, float) and math.isnan(p)):
            return None

        lowest = self.cutpoints[0]
        if p == lowest:
            return self.symbols[0]

        for upper, symbol in zip(self.cutpoints[1:], self.symbols):
            if lowest < p <= upper:
                return symbol
            lowest = upper
        return None


DEFAULT_SCALE = SignificanceScale()


# =============================================================================
# POINT SHAPES
# =============================================================================

@dataclass
class MarkerStyle:
    """How a numeric shape code is drawn with matplotlib."""
    marker: str
    face: str = 'color'  # 'color', 'fill' or 'none'

    def facecolor(self, color, fill):
        if self.face == 'fill':
            return fill if fill is not None else 'none'
        if self.face == 'none':
            return 'none'
        return color


SHAPE_CODES: Dict[int, MarkerStyle] = {
    0: MarkerStyle('s', 'none'),
    1: MarkerStyle('o', 'none'),
    2: MarkerStyle('^', 'none'),
    3: MarkerStyle('+', 'none'),
    4: MarkerStyle('x', 'none'),
    5: MarkerStyle('D', 'none'),
    6: MarkerStyle('v', 'none'),
    8: MarkerStyle('*', 'none'),
    15: MarkerStyle('s'),
    16: MarkerStyle('o'),
    17: MarkerStyle('^'),
    18: MarkerStyle('D'),
    19: MarkerStyle('o'),
    20: MarkerStyle('.'),
    21: MarkerStyle('o', 'fill'),
    22: MarkerStyle('s', 'fill'),
    23: MarkerStyle('D', 'fill'),
    24: MarkerStyle('^', 'fill'),
    25: MarkerStyle('v', 'fill'),
}


def get_marker_style(shape: Union[int, str]) -> MarkerStyle:
    """Resolve a numeric shape code or a matplotlib marker string."""
    if isinstance(shape, str):
        return MarkerStyle(shape, 'fill')
    try:
        return SHAPE_CODES[int(shape)]
    except (KeyError, ValueError):
        raise ValueError(f"Unsupported point shape: {shape}") from None


# =============================================================================
# AESTHETIC DEFAULTS
# =============================================================================

# Line widths and point sizes are given in millimetres; matplotlib wants points
MM_PER_INCH = 25.4
PT_PER_MM = 72.27 / MM_PER_INCH


@dataclass
class PlotDefaults:
    """Default aesthetics for grouped plots."""
    shape_groups: Tuple = (19, 21)
    color_groups: Tuple = ('black', 'black')
    fill_groups: Tuple = ('#444444', None, '#A33838')
    stroke: float = 0.25       # line width in mm
    font_size: float = 9       # pt
    size: float = 1            # point size in mm
    width: float = 0.8         # width of a group of bars
    dodge: float = 0.8         # distance between dodged comparisons
    plot_width: float = 30     # panel width in mm
    plot_height: float = 40    # panel height in mm
    plot_margin: float = 5     # mm above and below the plot
    leg_pos: str = 'top'
    jitter_width: float = 0.25
    y_headroom: float = 1.08   # automatic upper limit multiplier


DEFAULTS = PlotDefaults()
