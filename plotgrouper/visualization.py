"""
Visualization Module for Grouped Plots
=======================================

Generates publication-quality grouped plots:
1. Bars, boxes, violins, dot plots and densities dodged by comparison
2. Replicate points, error bars, mean crossbars and mean lines
3. Significance brackets and p-value labels
4. Linear, log, square-root and reversed axes
5. Fixed physical panel sizes so panels line up in multi-figure layouts
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.figure import Figure
from matplotlib.legend_handler import HandlerTuple
from matplotlib.lines import Line2D
from matplotlib.patches import Patch
from matplotlib.ticker import FixedLocator, FuncFormatter, LogFormatterMathtext
from matplotlib.transforms import Bbox

from plotgrouper_config import (
    DEFAULTS, DEFAULT_GEOMS, ERROR_TYPES, FILLED_GEOMS, LEGEND_POSITIONS,
    MARKER_GEOMS, MM_PER_INCH, PT_PER_MM, TRANSFORMS, MarkerStyle,
    expand_geoms, get_marker_style, normalize_p_label,
)
from .data_processing import (
    PreparedData, extreme_values, make_group_labeller, overall_max,
    prepare_dataset, summarize_groups,
)
from .statistical_tests import (
    PairwiseComparer, TestMethod, format_pvalue, is_placeholder,
    position_annotations,
)

# Set publication-quality defaults
plt.rcParams.update({
    'font.family': 'sans-serif',
    'font.sans-serif': ['Arial', 'DejaVu Sans'],
    'font.size': 9,
    'axes.labelsize': 9,
    'xtick.labelsize': 9,
    'ytick.labelsize': 9,
    'legend.fontsize': 9,
    'figure.dpi': 150,
    'savefig.dpi': 300,
    'axes.spines.top': False,
    'axes.spines.right': False,
    'pdf.fonttype': 42,
})

# Line width of marker outlines, in points per mm of stroke
STROKE_PT_PER_MM = 96 / MM_PER_INCH

# Gap between the plot and its legend
LEGEND_GAP_MM = 2

LOG_BASES = {'log10': 10, 'log2': 2, 'log': np.e}

TRANSFORM_FUNCS = {
    'identity': (lambda v: v, lambda v: v),
    'log10': (np.log10, lambda v: np.power(10.0, v)),
    'log2': (np.log2, lambda v: np.power(2.0, v)),
    'log': (np.log, np.exp),
    'sqrt': (np.sqrt, np.square),
    'reverse': (lambda v: v, lambda v: v),
}


def _is_missing(value) -> bool:
    if value is None:
        return True
    try:
        return bool(np.isnan(value))
    except TypeError:
        return False


def _to_color(value):
    """Missing colours are drawn as transparent."""
    return 'none' if _is_missing(value) else value


def _solid(value, default='black'):
    color = _to_color(value)
    return default if color == 'none' else color


def aesthetic_map(values, levels: Sequence[Any], name: str) -> Dict[Any, Any]:
    """Assign aesthetic values to comparison levels in order."""
    if isinstance(values, (str, int, float)) or values is None:
        values = [values] * len(levels)
    values = list(values)
    if len(values) < len(levels):
        raise ValueError(
            f"Insufficient values in {name}: {len(levels)} needed but only "
            f"{len(values)} provided"
        )
    return dict(zip(levels, values))


@dataclass
class GroupedPlotStyle:
    """Resolved aesthetics for one plot; sizes are in mm unless noted."""
    shapes: Dict[Any, MarkerStyle]
    colors: Dict[Any, Any]
    fills: Dict[Any, Any]
    stroke: float = DEFAULTS.stroke
    font_size: float = DEFAULTS.font_size
    size: float = DEFAULTS.size
    width: float = DEFAULTS.width
    dodge: float = DEFAULTS.dodge
    jitter_width: float = DEFAULTS.jitter_width

    @classmethod
    def for_levels(
        cls,
        levels: Sequence[Any],
        shape_groups=DEFAULTS.shape_groups,
        color_groups=DEFAULTS.color_groups,
        fill_groups=DEFAULTS.fill_groups,
        **kwargs
    ) -> "GroupedPlotStyle":
        shapes = aesthetic_map(shape_groups, levels, 'shape_groups')
        return cls(
            shapes={level: get_marker_style(s) for level, s in shapes.items()},
            colors=aesthetic_map(color_groups, levels, 'color_groups'),
            fills=aesthetic_map(fill_groups, levels, 'fill_groups'),
            **kwargs
        )

    @property
    def linewidth(self) -> float:
        """Stroke in points."""
        return self.stroke * PT_PER_MM

    @property
    def marker_size(self) -> float:
        """Marker diameter in points."""
        return self.size * PT_PER_MM + self.stroke * STROKE_PT_PER_MM / 2

    def color(self, level):
        return _to_color(self.colors[level])

    def fill(self, level):
        return _to_color(self.fills[level])

    def marker_face(self, level):
        style = self.shapes[level]
        return style.facecolor(self.color(level), self.fill(level))


class GroupedPlotRenderer:
    """
    Draw geometry layers of a grouped plot onto one Axes.

    Comparison level k (0-based) of K is drawn at
    x + (k - (K - 1) / 2) * dodge / K around its group position x.
    """

    UNFILLED_MARKERS = {'+', 'x', '|', '_', '1', '2', '3', '4', '.'}

    def __init__(
        self,
        ax: plt.Axes,
        prepared: PreparedData,
        style: GroupedPlotStyle,
        errortype: str = "mean_sdl",
        seed: Optional[int] = None
    ):
        self.ax = ax
        self.prepared = prepared
        self.style = style
        self.errortype = errortype
        self.rng = np.random.default_rng(seed)
        self.annotations: List[Any] = []

        g, c = prepared.group_by, prepared.comparison
        self.levels = prepared.comparison_levels
        n_levels = max(prepared.n_comparisons, 1)
        self.slot = style.dodge / n_levels
        self.element_width = style.width / n_levels
        self.offsets = {
            level: (i - (n_levels - 1) / 2) * self.slot
            for i, level in enumerate(self.levels)
        }

        summary = summarize_groups(prepared, errortype)
        means = prepared.data.groupby([g, c], observed=True)['value'].mean()
        if not summary.empty:
            summary['mean'] = [means.get((gr, cr), np.nan) for gr, cr in zip(summary[g], summary[c])]
            summary['x'] = summary[g].map(prepared.group_positions).astype(float)
        self.summary = summary

        self.draw_methods = {
            'bar': self.draw_bar,
            'errorbar': self.draw_errorbar,
            'point': self.draw_point,
            'point_noJitter': self.draw_point_no_jitter,
            'crossbar': self.draw_crossbar,
            'violin': self.draw_violin,
            'box': self.draw_box,
            'line': self.draw_line,
            'line_error': self.draw_line_error,
            'line_point': self.draw_line_point,
            'dot': self.draw_dot,
            'density': self.draw_density,
        }

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _cells(self, level) -> pd.DataFrame:
        if self.summary.empty:
            return self.summary
        return self.summary[self.summary[self.prepared.comparison] == level].sort_values('x')

    def _replicates(self, level) -> Tuple[np.ndarray, np.ndarray]:
        data = self.prepared.data
        rows = data[(data[self.prepared.comparison] == level) & data['value'].notna()]
        x = rows[self.prepared.group_by].map(self.prepared.group_positions).astype(float)
        return x.to_numpy(), rows['value'].to_numpy(dtype=float)

    def _cell_samples(self, level) -> Tuple[List[float], List[np.ndarray]]:
        data = self.prepared.data
        rows = data[data[self.prepared.comparison] == level]
        positions, samples = [], []
        for group, sub in rows.groupby(self.prepared.group_by, observed=True, sort=True):
            values = sub['value'].dropna().to_numpy(dtype=float)
            if len(values):
                positions.append(self.prepared.group_positions[group] + self.offsets[level])
                samples.append(values)
        return positions, samples

    def _scatter(self, x, y, level, zorder=3):
        style = self.style
        marker = style.shapes[level].marker
        kwargs = dict(marker=marker, s=style.marker_size ** 2, linewidths=style.linewidth, zorder=zorder)
        if marker in self.UNFILLED_MARKERS:
            return self.ax.scatter(x, y, color=_solid(style.colors[level]), **kwargs)
        return self.ax.scatter(
            x, y,
            facecolors=style.marker_face(level),
            edgecolors=style.color(level),
            **kwargs
        )

    def _errorbars(self, x, lower, upper):
        keep = ~(np.isnan(x) | np.isnan(lower) | np.isnan(upper))
        x, lower, upper = x[keep], lower[keep], upper[keep]
        half = 0.25 * self.style.width / 2
        lw = self.style.linewidth
        self.ax.vlines(x, lower, upper, colors='black', linewidth=lw, zorder=2)
        self.ax.hlines(lower, x - half, x + half, colors='black', linewidth=lw, zorder=2)
        self.ax.hlines(upper, x - half, x + half, colors='black', linewidth=lw, zorder=2)

    def draw(self, geom: str):
        self.draw_methods[geom]()

    # =========================================================================
    # DODGED GEOMS
    # =========================================================================

    def draw_bar(self):
        for level in self.levels:
            cells = self._cells(level)
            if cells.empty:
                continue
            self.ax.bar(
                cells['x'] + self.offsets[level], cells['mean'],
                width=self.element_width,
                color=self.style.fill(level),
                edgecolor='black',
                linewidth=self.style.linewidth,
                zorder=1
            )

    def draw_errorbar(self):
        for level in self.levels:
            cells = self._cells(level)
            if cells.empty:
                continue
            self._errorbars(
                (cells['x'] + self.offsets[level]).to_numpy(dtype=float),
                cells['ymin'].to_numpy(dtype=float),
                cells['ymax'].to_numpy(dtype=float)
            )

    def draw_point(self):
        spread = self.style.jitter_width / (self.prepared.n_comparisons + 2)
        for level in self.levels:
            x, y = self._replicates(level)
            jitter = self.rng.uniform(-spread, spread, size=len(x))
            self._scatter(x + self.offsets[level] + jitter, y, level)

    def draw_point_no_jitter(self):
        for level in self.levels:
            x, y = self._replicates(level)
            self._scatter(x + self.offsets[level], y, level)

    def draw_crossbar(self):
        for level in self.levels:
            cells = self._cells(level)
            if cells.empty:
                continue
            x = cells['x'] + self.offsets[level]
            self.ax.hlines(
                cells['mean'], x - self.element_width / 2, x + self.element_width / 2,
                colors=_solid(self.style.colors[level]),
                linewidth=self.style.linewidth / 3,
                zorder=2
            )

    def draw_violin(self):
        for level in self.levels:
            positions, samples = self._cell_samples(level)
            # A density needs at least two distinct values
            keep = [i for i, s in enumerate(samples) if len(np.unique(s)) > 1]
            if not keep:
                continue
            parts = self.ax.violinplot(
                [samples[i] for i in keep],
                positions=[positions[i] for i in keep],
                widths=self.element_width,
                showextrema=False
            )
            for body in parts['bodies']:
                body.set_facecolor(self.style.fill(level))
                body.set_edgecolor(self.style.color(level))
                body.set_linewidth(self.style.linewidth)
                body.set_alpha(1)
                body.set_zorder(1)

    def draw_box(self):
        lw = self.style.linewidth
        for level in self.levels:
            positions, samples = self._cell_samples(level)
            if not samples:
                continue
            edge = _solid(self.style.colors[level])
            self.ax.boxplot(
                samples,
                positions=positions,
                widths=self.element_width,
                patch_artist=True,
                manage_ticks=False,
                showcaps=False,
                boxprops=dict(facecolor=self.style.fill(level), edgecolor=edge, linewidth=lw),
                medianprops=dict(color=edge, linewidth=lw * 2),
                whiskerprops=dict(color=edge, linewidth=lw),
                flierprops=dict(marker='o', markersize=self.style.marker_size,
                                markerfacecolor=edge, markeredgecolor=edge),
                zorder=1
            )

    def draw_dot(self):
        data = self.prepared.data.dropna(subset=['value'])
        palette = {level: _solid(self.style.colors[level]) for level in self.levels}
        sns.swarmplot(
            data=data,
            x=self.prepared.group_by,
            y='value',
            hue=self.prepared.comparison,
            hue_order=self.levels,
            order=None if self.prepared.numeric_x else self.prepared.group_levels,
            palette=palette,
            dodge=True,
            native_scale=self.prepared.numeric_x,
            size=self.style.marker_size,
            legend=False,
            ax=self.ax,
            zorder=3
        )

    # =========================================================================
    # UNDODGED GEOMS
    # =========================================================================

    def draw_line(self):
        for level in self.levels:
            cells = self._cells(level)
            if cells.empty:
                continue
            self.ax.plot(
                cells['x'], cells['mean'],
                color=_solid(self.style.colors[level]),
                linewidth=self.style.linewidth,
                zorder=2
            )

    def draw_line_error(self):
        for level in self.levels:
            cells = self._cells(level)
            if cells.empty:
                continue
            self._errorbars(
                cells['x'].to_numpy(dtype=float),
                cells['ymin'].to_numpy(dtype=float),
                cells['ymax'].to_numpy(dtype=float)
            )

    def draw_line_point(self):
        for level in self.levels:
            cells = self._cells(level)
            if cells.empty:
                continue
            self._scatter(cells['x'], cells['mean'], level)

    def draw_density(self):
        for level in self.levels:
            _, values = self._replicates(level)
            face = self.style.fill(level)
            edge = _solid(self.style.colors[level])
            if len(np.unique(values)) < 2:
                continue
            if face != 'none':
                sns.kdeplot(x=values, ax=self.ax, fill=True, color=face, alpha=1, linewidth=0)
            sns.kdeplot(x=values, ax=self.ax, color=edge, linewidth=self.style.linewidth)

    # =========================================================================
    # ANNOTATIONS
    # =========================================================================

    def draw_stat(self, statistics: pd.DataFrame, p_label: str):
        """Write p-value labels at (x_pos, h_p)."""
        if is_placeholder(statistics) or p_label not in statistics.columns:
            return
        for _, row in statistics.iterrows():
            label = row[p_label]
            if _is_missing(label) or _is_missing(row['x_pos']) or _is_missing(row['h_p']):
                continue
            if not isinstance(label, str):
                label = format_pvalue(float(label))
            text = self.ax.text(
                row['x_pos'], row['h_p'], label,
                ha='center', va='center',
                fontsize=self.style.font_size,
                color='black',
                clip_on=False,
                zorder=4
            )
            self.annotations.append(text)

    def draw_seg(self, statistics: pd.DataFrame):
        """Draw significance brackets from w_start to w_stop at h_s."""
        if is_placeholder(statistics):
            return
        segs = statistics.dropna(subset=['w_start', 'w_stop', 'h_s'])
        if segs.empty:
            return
        lines = self.ax.hlines(
            segs['h_s'], segs['w_start'], segs['w_stop'],
            colors='black',
            linewidth=self.style.linewidth,
            clip_on=False,
            zorder=4
        )
        self.annotations.append(lines)

    def legend_handles(self, geoms: Sequence[str]) -> List[Any]:
        """One legend key per comparison level, overlaying the drawn geoms."""
        handles = []
        lw = self.style.linewidth
        for level in self.levels:
            parts = []
            if FILLED_GEOMS.intersection(geoms):
                edge = 'black' if 'bar' in geoms else _solid(self.style.colors[level])
                parts.append(Patch(facecolor=self.style.fill(level), edgecolor=edge, linewidth=lw))
            if MARKER_GEOMS.intersection(geoms):
                marker = self.style.shapes[level].marker
                parts.append(Line2D(
                    [], [], linestyle='none', marker=marker,
                    markersize=self.style.marker_size,
                    markerfacecolor=self.style.marker_face(level),
                    markeredgecolor=_solid(self.style.colors[level]),
                    markeredgewidth=lw
                ))
            elif 'line' in geoms or 'crossbar' in geoms:
                parts.append(Line2D([], [], color=_solid(self.style.colors[level]), linewidth=lw))
            if parts:
                handles.append(tuple(parts) if len(parts) > 1 else parts[0])
        return handles


# =============================================================================
# SCALES
# =============================================================================

def _limit_pair(limits) -> Tuple[Optional[float], Optional[float]]:
    if limits is None:
        return None, None
    lo, hi = limits
    return (None if _is_missing(lo) else float(lo)), (None if _is_missing(hi) else float(hi))


def resolve_y_limits(
    y_lim,
    peak: float,
    trans_y: str = "identity",
    geoms: Sequence[str] = (),
    headroom: float = DEFAULTS.y_headroom
) -> Tuple[Optional[float], Optional[float]]:
    """
    Y-axis limits; None means the limit is chosen automatically.

    The automatic upper limit leaves room above the tallest replicate or
    error bar for significance annotations.
    """
    top = peak * headroom if np.isfinite(peak) else None
    if 'density' in geoms:
        return 0.0, None
    if trans_y != 'identity':
        return None, top

    lo, hi = _limit_pair(y_lim)
    if lo is None and hi is None:
        return 0.0, top
    if hi is None:
        return lo, top
    if lo is None:
        return 0.0, hi
    return lo, hi


def expand_limits(lo, hi, expand=(0, 0), trans: str = "identity"):
    """Widen limits by (mult, add) or (mult_lo, add_lo, mult_hi, add_hi)."""
    if lo is None or hi is None:
        return lo, hi
    expand = tuple(expand)
    if len(expand) == 2:
        expand = expand * 2
    mult_lo, add_lo, mult_hi, add_hi = expand
    if not any(expand):
        return lo, hi

    forward, inverse = TRANSFORM_FUNCS[trans]
    t_lo, t_hi = forward(lo), forward(hi)
    span = t_hi - t_lo
    return (float(inverse(t_lo - span * mult_lo - add_lo)),
            float(inverse(t_hi + span * mult_hi + add_hi)))


def _apply_transform(ax: plt.Axes, axis: str, trans: str):
    set_scale = getattr(ax, f"set_{axis}scale")
    target = ax.yaxis if axis == 'y' else ax.xaxis
    if trans in LOG_BASES:
        base = LOG_BASES[trans]
        set_scale('log', base=base)
        target.set_major_formatter(LogFormatterMathtext(base=base))
    elif trans == 'sqrt':
        set_scale('function', functions=TRANSFORM_FUNCS['sqrt'])


def scientific_exponent(value: float) -> int:
    if _is_missing(value) or value == 0:
        return 0
    return int(np.floor(np.log10(abs(value))))


def _apply_x_scale(ax, prepared, geoms, labeller, x_lim, trans_x):
    lo, hi = _limit_pair(x_lim)

    if 'density' in geoms:
        ax.margins(x=0)
        ax.set_xlim(left=lo, right=hi)
        return

    if prepared.numeric_x:
        _apply_transform(ax, 'x', trans_x)
        ax.xaxis.set_major_locator(FixedLocator(prepared.group_levels))
        ax.xaxis.set_major_formatter(FuncFormatter(lambda v, pos: f"{v:g}"))
        ax.xaxis.set_minor_locator(FixedLocator([]))
        ax.set_xlim(left=lo, right=hi)
        if trans_x == 'reverse':
            ax.invert_xaxis()
        return

    n_groups = len(prepared.group_levels)
    ax.set_xticks(range(n_groups))
    ax.set_xticklabels(labeller(prepared.group_levels))
    ax.set_xlim(-0.6, n_groups - 0.4)


def _apply_y_scale(ax, y_limits, expand_y, trans_y, sci, peak):
    _apply_transform(ax, 'y', trans_y)
    # Log axes keep their power-of-base labels
    if sci and trans_y not in LOG_BASES:
        scale = 10.0 ** scientific_exponent(peak)
        ax.yaxis.set_major_formatter(FuncFormatter(lambda v, pos: f"{v / scale:g}"))

    lo, hi = expand_limits(*y_limits, expand=expand_y, trans=trans_y)
    ax.set_ylim(bottom=lo, top=hi)
    if trans_y == 'reverse':
        ax.invert_yaxis()


def _apply_theme(ax, style: GroupedPlotStyle, angle_x: bool):
    lw = style.linewidth
    for side in ('top', 'right'):
        ax.spines[side].set_visible(False)
    for side in ('left', 'bottom'):
        ax.spines[side].set_linewidth(lw)
        ax.spines[side].set_color('black')

    ax.grid(False)
    ax.patch.set_visible(False)
    ax.tick_params(axis='x', length=0, labelsize=style.font_size, colors='black')
    ax.tick_params(axis='y', width=lw, labelsize=style.font_size, colors='black')
    ax.xaxis.label.set_size(style.font_size)
    ax.yaxis.label.set_size(style.font_size)

    if angle_x:
        ax.tick_params(axis='x', labelrotation=45)
        for label in ax.get_xticklabels():
            label.set_ha('right')
            label.set_rotation_mode('anchor')


def _unclip(ax: plt.Axes):
    """Let every data layer draw past the panel edges."""
    for artist in [*ax.collections, *ax.patches, *ax.lines, *ax.texts]:
        artist.set_clip_on(False)


# =============================================================================
# LAYOUT
# =============================================================================

def _artists_bbox(artists, renderer) -> Optional[Bbox]:
    boxes = [a.get_window_extent(renderer) for a in artists]
    boxes = [b for b in boxes if np.all(np.isfinite(b.get_points()))]
    return Bbox.union(boxes) if boxes else None


def place_legend(
    fig: Figure,
    ax: plt.Axes,
    handles: List[Any],
    labels: List[str],
    title: str,
    leg_pos: str,
    style: GroupedPlotStyle,
    avoid: Sequence[Any] = ()
):
    """
    Put the legend outside the panel at `leg_pos`.

    A top legend sits above any annotation artists in `avoid`; a bottom or
    left legend clears the axis labels.
    """
    if leg_pos == 'none' or not handles:
        return None

    renderer = fig.canvas.get_renderer()
    to_axes = ax.transAxes.inverted()
    bbox = ax.get_window_extent(renderer)
    gap_x = LEGEND_GAP_MM / MM_PER_INCH * fig.dpi / bbox.width
    gap_y = LEGEND_GAP_MM / MM_PER_INCH * fig.dpi / bbox.height

    kwargs = dict(
        title=title,
        frameon=False,
        fontsize=style.font_size,
        title_fontsize=style.font_size,
        handler_map={tuple: HandlerTuple(ndivide=1)},
        borderaxespad=0,
        borderpad=0,
    )

    if leg_pos == 'top':
        top = 1.0
        extent = _artists_bbox(avoid, renderer)
        if extent is not None:
            top = max(top, to_axes.transform((0, extent.y1))[1])
        return ax.legend(handles, labels, loc='lower center', bbox_to_anchor=(0.5, top + gap_y),
                         ncol=len(handles), **kwargs)

    if leg_pos == 'bottom':
        extent = ax.xaxis.get_tightbbox(renderer)
        bottom = min(0.0, to_axes.transform((0, extent.y0))[1]) if extent is not None else 0.0
        return ax.legend(handles, labels, loc='upper center', bbox_to_anchor=(0.5, bottom - gap_y),
                         ncol=len(handles), **kwargs)

    if leg_pos == 'left':
        extent = ax.yaxis.get_tightbbox(renderer)
        left = min(0.0, to_axes.transform((extent.x0, 0))[0]) if extent is not None else 0.0
        return ax.legend(handles, labels, loc='center right', bbox_to_anchor=(left - gap_x, 0.5), **kwargs)

    return ax.legend(handles, labels, loc='center left', bbox_to_anchor=(1 + gap_x, 0.5), **kwargs)


def new_panel_figure(plot_width: float, plot_height: float) -> Tuple[Figure, plt.Axes]:
    """Figure with one axes of exactly plot_width x plot_height mm."""
    w_in, h_in = plot_width / MM_PER_INCH, plot_height / MM_PER_INCH
    pad = 2.0
    fig = Figure(figsize=(w_in + 2 * pad, h_in + 2 * pad))
    FigureCanvasAgg(fig)
    fig.patch.set_alpha(0)
    ax = fig.add_axes([
        pad / (w_in + 2 * pad), pad / (h_in + 2 * pad),
        w_in / (w_in + 2 * pad), h_in / (h_in + 2 * pad)
    ])
    return fig, ax


def set_panel_size(
    fig: Figure,
    ax: plt.Axes,
    plot_width: float = DEFAULTS.plot_width,
    plot_height: float = DEFAULTS.plot_height,
    margin: float = DEFAULTS.plot_margin
) -> Figure:
    """
    Resize the figure around a panel of fixed physical size.

    The figure grows to hold everything drawn outside the panel (tick labels,
    axis titles, legend, out-of-panel annotations) plus `margin` mm above and
    below. All sizes in mm.
    """
    renderer = fig.canvas.get_renderer()
    panel = ax.get_window_extent(renderer)
    tight = ax.get_tightbbox(renderer)
    dpi = fig.dpi

    left = max(0.0, panel.x0 - tight.x0) / dpi
    right = max(0.0, tight.x1 - panel.x1) / dpi
    bottom = max(0.0, panel.y0 - tight.y0) / dpi + margin / MM_PER_INCH
    top = max(0.0, tight.y1 - panel.y1) / dpi + margin / MM_PER_INCH

    w_in, h_in = plot_width / MM_PER_INCH, plot_height / MM_PER_INCH
    fig_w, fig_h = left + w_in + right, bottom + h_in + top
    fig.set_size_inches(fig_w, fig_h)
    ax.set_position([left / fig_w, bottom / fig_h, w_in / fig_w, h_in / fig_h])
    return fig


def panel_size_mm(fig: Figure, ax: plt.Axes) -> Tuple[float, float]:
    """Physical size of an axes in mm."""
    fig_w, fig_h = fig.get_size_inches()
    pos = ax.get_position()
    return pos.width * fig_w * MM_PER_INCH, pos.height * fig_h * MM_PER_INCH


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def _validate_choice(value, choices, name):
    if value not in choices:
        raise ValueError(f"Unknown {name} '{value}'. Choose from: {', '.join(choices)}")


def gplot(
    dataset: pd.DataFrame,
    comparison: str,
    group_by: str,
    levs: Optional[Sequence] = None,
    val: str = "value",
    geom: Optional[Sequence[str]] = None,
    p: str = "p.signif",
    ref_group: Optional[Any] = None,
    p_adjust_method: str = "holm",
    comparisons: Optional[Sequence[Any]] = None,
    method: str = "t.test",
    paired: bool = False,
    errortype: str = "mean_sdl",
    y_lim: Optional[Tuple[Optional[float], Optional[float]]] = None,
    y_lab: Optional[str] = None,
    trans_y: str = "identity",
    x_lim: Tuple[Optional[float], Optional[float]] = (None, None),
    expand_y: Sequence[float] = (0, 0),
    x_lab: Optional[str] = None,
    trans_x: str = "identity",
    sci: bool = False,
    angle_x: bool = False,
    levs_comps: Optional[Sequence] = None,
    group_labs=None,
    stats: bool = False,
    with_stats: bool = False,
    split: bool = True,
    split_str: Optional[str] = None,
    trim: Optional[str] = None,
    leg_pos: str = DEFAULTS.leg_pos,
    stroke: float = DEFAULTS.stroke,
    font_size: float = DEFAULTS.font_size,
    size: float = DEFAULTS.size,
    width: float = DEFAULTS.width,
    dodge: float = DEFAULTS.dodge,
    plot_width: float = DEFAULTS.plot_width,
    plot_height: float = DEFAULTS.plot_height,
    shape_groups=DEFAULTS.shape_groups,
    color_groups=DEFAULTS.color_groups,
    fill_groups=DEFAULTS.fill_groups,
    seed: Optional[int] = None
) -> Union[Figure, pd.DataFrame, Tuple[Figure, pd.DataFrame]]:
    """
    Plot replicate data grouped by `group_by` and dodged by `comparison`,
    with significance annotations.

    Args:
        dataset: Tidy data, one replicate per row
        comparison: Column whose levels are compared within each group
        group_by: Column placed on the x axis (numeric gives a continuous axis)
        levs: Order / subset of group levels (labels or 0-based positions)
        val: Value column
        geom: Layers to draw, see plotgrouper_config.GEOMS
        p: Label for annotations: 'p.signif', 'p.format', 'p.adj',
            'p.adj.signif' (underscores also accepted)
        ref_group: Reference level for pairwise tests, or '.all.'
        p_adjust_method: holm, hochberg, bonferroni, BH, BY, fdr or none
        comparisons: Levels whose pairwise tests are annotated
        method: t.test, wilcox.test, anova or kruskal.test
        paired: Paired tests (replicates matched by order)
        errortype: mean_sdl, mean_se, mean_cl_normal, mean_cl_boot or
            median_hilow
        y_lim: (lower, upper); None entries are automatic
        y_lab / x_lab: Axis titles
        trans_y / trans_x: identity, log10, log2, log, sqrt or reverse
        x_lim: Limits of a continuous x axis
        expand_y: (mult, add) expansion of the y range
        sci: Scientific y tick labels with the exponent in the title
        angle_x: Rotate x labels by 45 degrees
        levs_comps: Order / subset of comparison levels
        group_labs: Explicit x labels (callable, mapping or sequence)
        stats: Return the statistics table instead of a figure
        with_stats: Return (figure, statistics) from a single run of the tests
        split / split_str / trim: Automatic shortening of x labels
        leg_pos: top, bottom, left, right or none
        stroke: Line width (mm)
        font_size: Text size (pt)
        size: Point size (mm)
        width: Width of a group of bars
        dodge: Distance spanned by the dodged comparison levels
        plot_width / plot_height: Panel size (mm)
        shape_groups / color_groups / fill_groups: Per-level aesthetics;
            None means no colour
        seed: Seed for point jitter

    Returns:
        Figure with a panel of exactly plot_width x plot_height mm, the
        statistics DataFrame when stats=True, or both as a tuple when
        with_stats=True
    """
    geoms = expand_geoms(DEFAULT_GEOMS if geom is None else list(geom))
    p_label = normalize_p_label(p)
    test_method = TestMethod.parse(method)
    _validate_choice(errortype, ERROR_TYPES, 'error type')
    _validate_choice(trans_y, TRANSFORMS, 'y transformation')
    _validate_choice(trans_x, TRANSFORMS, 'x transformation')
    _validate_choice(leg_pos, LEGEND_POSITIONS, 'legend position')

    prepared = prepare_dataset(dataset, comparison, group_by, val, levs, levs_comps)
    labeller = make_group_labeller(group_labs, split, split_str, trim)
    d_min, d_max = extreme_values(prepared, errortype)
    peak = overall_max(d_max)

    comparer = PairwiseComparer(test_method, paired, p_adjust_method, ref_group)
    stat_out = comparer.compare(prepared.data, 'value', comparison, group_by)
    if stats:
        return stat_out

    statistics = position_annotations(
        stat_out, d_max, prepared, test_method, p_label, width, dodge, comparisons
    )
    if stat_out.empty or stat_out['p_signif'].isna().all():
        geoms = [g for g in geoms if g not in ('stat', 'seg')]

    if y_lab is None:
        if 'variable' in dataset.columns and dataset['variable'].notna().any():
            y_lab = str(dataset['variable'].dropna().iloc[0])
        else:
            y_lab = val
    if sci:
        stripped = re.sub(r'\s*#\s*', '', y_lab)
        y_lab = f"{stripped} ($10^{{{scientific_exponent(peak)}}}$)"

    style = GroupedPlotStyle.for_levels(
        prepared.comparison_levels,
        shape_groups=shape_groups,
        color_groups=color_groups,
        fill_groups=fill_groups,
        stroke=stroke,
        font_size=font_size,
        size=size,
        width=width,
        dodge=dodge,
    )

    fig, ax = new_panel_figure(plot_width, plot_height)
    renderer = GroupedPlotRenderer(ax, prepared, style, errortype, seed)
    for layer in geoms:
        if layer == 'stat':
            renderer.draw_stat(statistics, p_label)
        elif layer == 'seg':
            renderer.draw_seg(statistics)
        else:
            renderer.draw(layer)

    _apply_x_scale(ax, prepared, geoms, labeller, x_lim, trans_x)
    y_limits = resolve_y_limits(y_lim, peak, trans_y, geoms)
    _apply_y_scale(ax, y_limits, expand_y, trans_y, sci, peak)

    ax.set_xlabel('' if x_lab is None else x_lab)
    ax.set_ylabel(y_lab)
    _apply_theme(ax, style, angle_x)
    _unclip(ax)

    handles = renderer.legend_handles(geoms)
    place_legend(
        fig, ax, handles, [str(level) for level in renderer.levels[:len(handles)]],
        comparison, leg_pos, style, avoid=renderer.annotations
    )

    set_panel_size(fig, ax, plot_width, plot_height)
    if with_stats:
        return fig, stat_out
    return fig
