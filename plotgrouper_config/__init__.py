"""Plot grouper configuration module."""
from .plot_defaults import (
    GEOMS, DEFAULT_GEOMS, GEOM_ALIASES, FILLED_GEOMS, MARKER_GEOMS,
    ERROR_TYPES, TEST_METHODS, PAIRWISE_METHODS, P_LABELS, STAR_LABELS,
    ALL_GROUPS_REF, TRANSFORMS, LEGEND_POSITIONS,
    SignificanceScale, DEFAULT_SCALE, MarkerStyle, SHAPE_CODES,
    PlotDefaults, DEFAULTS, MM_PER_INCH, PT_PER_MM,
    normalize_p_label, expand_geoms, get_marker_style,
)
