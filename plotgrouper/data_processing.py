"""
Data Processing Module for Grouped Plots
=========================================

Handles:
1. Loading wide replicate data from CSV/TSV/Excel files
2. Detecting sample, comparison and measurement columns
3. Gathering wide data into tidy (long) form
4. Ordering comparisons and grouping variables
5. X-axis label functions
6. Error summaries and per-group extremes used to place annotations
"""

import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats

from plotgrouper_config import ERROR_TYPES


# Removed from the last '/'-separated word of a default x-axis label
LABEL_NOISE_PATTERN = r' %| #|% |# '

BOOTSTRAP_RESAMPLES = 1000


@dataclass
class DataStructureInfo:
    """Information about detected data structure."""
    n_rows: int
    n_cols: int
    sample_id_col: Optional[str] = None
    comparison_col: Optional[str] = None
    id_cols: List[str] = field(default_factory=list)
    value_cols: List[str] = field(default_factory=list)
    sheets: List[str] = field(default_factory=list)


@dataclass
class PreparedData:
    """Tidy data with resolved level orders and x positions."""
    data: pd.DataFrame
    comparison: str
    group_by: str
    comparison_levels: List[Any]
    group_levels: List[Any]
    numeric_x: bool
    group_positions: Dict[Any, float]

    @property
    def n_comparisons(self) -> int:
        return len(self.comparison_levels)

    def comparison_code(self, level) -> int:
        """1-based position of a comparison level."""
        return self.comparison_levels.index(level) + 1

    def x_position(self, group) -> float:
        return self.group_positions[group]


class GroupedDataProcessor:
    """
    Load replicate measurements and reshape them for plotting.

    Usage:
        processor = GroupedDataProcessor()
        wide = processor.load_file("data.xlsx")
        tidy = processor.gather(wide, id_cols=['Genotype'])
    """

    # Common patterns for identifying columns
    SAMPLE_ID_PATTERNS = [
        r'^sample[\s_-]*(id|name|#)?$',
        r'^name$',
        r'^id$',
        r'^mouse[\s_-]*(id|#)?$',
        r'^specimen$',
    ]

    COMPARISON_PATTERNS = [
        r'^(group|genotype|type|category|class|condition|treatment|species)$',
        r'^sample[\s_-]*type$',
    ]

    EXCEL_SUFFIXES = ('.xlsx', '.xlsm')
    TEXT_SEPARATORS = {'.csv': ',', '.tsv': '\t', '.txt': '\t'}

    def __init__(self, sheet_col: str = "Sheet", sample_col: str = "Sample"):
        self.sheet_col = sheet_col
        self.sample_col = sample_col

    def _suffix(self, source, filename: Optional[str]) -> str:
        name = filename if filename is not None else str(getattr(source, 'name', source))
        return Path(name).suffix.lower()

    def get_available_sheets(
        self,
        source: Union[str, Path, BinaryIO],
        filename: Optional[str] = None
    ) -> List[str]:
        """Get list of available sheet names in a file."""
        if self._suffix(source, filename) not in self.EXCEL_SUFFIXES:
            return []
        return pd.ExcelFile(source, engine='openpyxl').sheet_names

    def load_file(
        self,
        source: Union[str, Path, BinaryIO],
        sheets: Optional[Sequence[str]] = None,
        filename: Optional[str] = None
    ) -> pd.DataFrame:
        """
        Load a wide data file.

        Args:
            source: Path or file-like object
            sheets: Excel sheets to read (all sheets if None)
            filename: Name used to infer the format when source is a buffer

        Returns:
            DataFrame with a Sheet column identifying where each row came from
        """
        suffix = self._suffix(source, filename)

        if suffix in self.EXCEL_SUFFIXES:
            xlsx = pd.ExcelFile(source, engine='openpyxl')
            selected = list(sheets) if sheets else xlsx.sheet_names
            missing = [s for s in selected if s not in xlsx.sheet_names]
            if missing:
                raise ValueError(f"Sheet(s) not found: {', '.join(missing)}")
            frames = [self._tag_sheet(xlsx.parse(s), s) for s in selected]
        elif suffix in self.TEXT_SEPARATORS:
            df = pd.read_csv(source, sep=self.TEXT_SEPARATORS[suffix])
            stem = Path(filename or str(getattr(source, 'name', source))).stem
            frames = [self._tag_sheet(df, stem)]
        else:
            raise ValueError(f"Unsupported file type: '{suffix}'")

        return pd.concat(frames, ignore_index=True)

    def _tag_sheet(self, df: pd.DataFrame, sheet: str) -> pd.DataFrame:
        df = df.dropna(how='all').dropna(axis=1, how='all')
        df.columns = [str(c).strip() for c in df.columns]
        if self.sheet_col not in df.columns:
            df.insert(0, self.sheet_col, sheet)
        return df

    def detect_structure(self, df: pd.DataFrame) -> DataStructureInfo:
        """Guess sample id, comparison and measurement columns."""
        info = DataStructureInfo(n_rows=len(df), n_cols=len(df.columns))

        if self.sheet_col in df.columns:
            info.sheets = [str(s) for s in pd.unique(df[self.sheet_col])]

        for col in df.columns:
            name = str(col).strip().lower()
            if info.sample_id_col is None and any(
                re.match(p, name) for p in self.SAMPLE_ID_PATTERNS
            ):
                info.sample_id_col = col
            elif info.comparison_col is None and any(
                re.match(p, name) for p in self.COMPARISON_PATTERNS
            ):
                info.comparison_col = col

        skip = {self.sheet_col, info.sample_id_col, info.comparison_col}
        for col in df.columns:
            if col in skip:
                continue
            numeric = pd.to_numeric(df[col], errors='coerce')
            # Mostly numeric columns are measurements
            if numeric.notna().sum() >= 0.5 * df[col].notna().sum() and df[col].notna().any():
                info.value_cols.append(col)
            else:
                info.id_cols.append(col)

        # First text column stands in for a missing comparison column
        if info.comparison_col is None and info.id_cols:
            info.comparison_col = info.id_cols.pop(0)

        return info

    def gather(
        self,
        wide: pd.DataFrame,
        id_cols: Sequence[str],
        value_cols: Optional[Sequence[str]] = None,
        var_name: str = "variable",
        value_name: str = "value"
    ) -> pd.DataFrame:
        """
        Gather measurement columns into variable/value pairs.

        Every column not listed in id_cols (or in value_cols when given) is
        treated as a measurement. A Sample column is added when missing,
        numbering rows within each sheet.
        """
        wide = wide.copy()

        if self.sample_col not in wide.columns:
            if self.sheet_col in wide.columns:
                wide[self.sample_col] = wide.groupby(self.sheet_col, sort=False).cumcount() + 1
            else:
                wide[self.sample_col] = np.arange(1, len(wide) + 1)

        ids = [self.sample_col]
        if self.sheet_col in wide.columns:
            ids.append(self.sheet_col)
        ids += [c for c in id_cols if c not in ids]

        missing = [c for c in ids if c not in wide.columns]
        if missing:
            raise KeyError(f"Column(s) not found in dataset: {', '.join(missing)}")

        if value_cols is None:
            value_cols = [c for c in wide.columns if c not in ids]

        tidy = wide.melt(
            id_vars=ids,
            value_vars=list(value_cols),
            var_name=var_name,
            value_name=value_name
        )
        tidy[value_name] = pd.to_numeric(tidy[value_name], errors='coerce')
        return tidy


def load_dataset(
    source: Union[str, Path, BinaryIO],
    sheets: Optional[Sequence[str]] = None,
    filename: Optional[str] = None
) -> pd.DataFrame:
    """Load a wide CSV/TSV/Excel file with the default processor."""
    return GroupedDataProcessor().load_file(source, sheets, filename)


def gather_dataset(
    wide: pd.DataFrame,
    id_cols: Sequence[str],
    var_name: str = "variable",
    value_name: str = "value"
) -> pd.DataFrame:
    """Wide-to-tidy reshape with the default processor."""
    return GroupedDataProcessor().gather(wide, id_cols, var_name=var_name, value_name=value_name)


# =============================================================================
# LEVEL ORDERING AND LABELS
# =============================================================================

def _ordered_levels(series: pd.Series, order: Optional[Sequence] = None) -> List[Any]:
    """
    Resolve the level order of a column.

    Existing categorical order wins. Otherwise levels follow their order of
    appearance, optionally reordered / subset by `order`, which holds either
    level labels or 0-based positions into the order of appearance.
    """
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)

    appearance = list(pd.unique(series.dropna()))
    if order is None:
        return appearance

    order = list(order)
    is_index = all(
        isinstance(o, (int, np.integer)) and not isinstance(o, bool) for o in order
    )
    if is_index and not set(order) <= set(appearance):
        try:
            return [appearance[i] for i in order]
        except IndexError:
            raise ValueError(
                f"Level index out of range; only {len(appearance)} levels present"
            ) from None

    unknown = [o for o in order if o not in appearance]
    if unknown:
        raise ValueError(f"Unknown level(s): {', '.join(map(str, unknown))}")
    return order


def _apply_levels(df: pd.DataFrame, col: str, levels: List[Any]) -> pd.DataFrame:
    missing = df[col].isna()
    df[col] = pd.Categorical(df[col], categories=levels, ordered=True)
    unselected = df[col].isna() & ~missing
    if missing.any():
        warnings.warn(f"Dropping {missing.sum()} row(s) with a missing '{col}'")
    if unselected.any():
        warnings.warn(f"Dropping {unselected.sum()} row(s) whose '{col}' is not among the selected levels")
    if missing.any() or unselected.any():
        df = df[df[col].notna()].copy()
        df[col] = df[col].cat.remove_unused_categories()
    return df


def make_group_labeller(
    group_labs: Union[Callable, Dict, Sequence, None] = None,
    split: bool = True,
    split_str: Optional[str] = None,
    trim: Optional[str] = None
) -> Callable[[Sequence], List[str]]:
    """
    Build the function that turns group levels into x-axis labels.

    Args:
        group_labs: Explicit labels - a per-level callable, a mapping from
            level to label, or a sequence of labels in level order
        split: Shorten labels (otherwise levels are shown as-is)
        split_str: Literal separator; the second piece becomes the label
        trim: Regex removed (first match) before splitting

    Returns:
        Function mapping a sequence of levels to a list of labels
    """
    if group_labs is not None:
        if callable(group_labs):
            return lambda levels: [str(group_labs(x)) for x in levels]
        if isinstance(group_labs, dict):
            return lambda levels: [str(group_labs.get(x, x)) for x in levels]
        labels = [str(l) for l in group_labs]
        return lambda levels: [
            labels[i] if i < len(labels) else str(x) for i, x in enumerate(levels)
        ]

    def _trimmed(x) -> str:
        text = str(x)
        if trim:
            text = re.sub(trim, '', text, count=1)
        return text

    if not split:
        return lambda levels: [str(x) for x in levels]

    if split_str is None:
        def _last_word(x) -> str:
            word = _trimmed(x).split('/')[-1]
            return re.sub(LABEL_NOISE_PATTERN, '', word, count=1)
        return lambda levels: [_last_word(x) for x in levels]

    def _second_piece(x) -> str:
        pieces = _trimmed(x).split(split_str)
        return pieces[1] if len(pieces) > 1 else ''
    return lambda levels: [_second_piece(x) for x in levels]


def prepare_dataset(
    dataset: pd.DataFrame,
    comparison: str,
    group_by: str,
    val: str = "value",
    levs: Optional[Sequence] = None,
    levs_comps: Optional[Sequence] = None
) -> PreparedData:
    """
    Normalize a tidy dataset for grouped plotting.

    The value column is renamed to 'value' and made numeric, the comparison
    column becomes an ordered categorical (rows sorted by it), and the
    grouping column becomes categorical unless it is numeric, in which case
    the x axis is continuous.
    """
    if dataset is None or len(dataset) == 0:
        raise ValueError("dataset is empty")

    for col in (comparison, group_by, val):
        if col not in dataset.columns:
            raise KeyError(f"Column '{col}' not found in dataset")

    df = dataset.copy()

    # Drop unused categories
    for col in df.select_dtypes(include='category').columns:
        df[col] = df[col].cat.remove_unused_categories()

    if val != 'value':
        df = df.drop(columns=['value'], errors='ignore').rename(columns={val: 'value'})
    df['value'] = pd.to_numeric(df['value'], errors='coerce')

    comparison_levels = _ordered_levels(df[comparison], levs_comps)
    df = _apply_levels(df, comparison, comparison_levels)
    comparison_levels = list(df[comparison].cat.categories)
    df = df.sort_values(comparison, kind='mergesort').reset_index(drop=True)

    group_series = df[group_by]
    numeric_x = (
        not isinstance(group_series.dtype, pd.CategoricalDtype)
        and pd.api.types.is_numeric_dtype(group_series)
    )

    if numeric_x:
        group_levels = sorted(pd.unique(group_series.dropna()))
        positions = {g: float(g) for g in group_levels}
    else:
        df = _apply_levels(df, group_by, _ordered_levels(group_series, levs))
        group_levels = list(df[group_by].cat.categories)
        positions = {g: float(i) for i, g in enumerate(group_levels)}

    return PreparedData(
        data=df,
        comparison=comparison,
        group_by=group_by,
        comparison_levels=comparison_levels,
        group_levels=group_levels,
        numeric_x=numeric_x,
        group_positions=positions
    )


# =============================================================================
# ERROR SUMMARIES AND EXTREMES
# =============================================================================

def summarize_error(
    values: Union[np.ndarray, pd.Series, Sequence[float]],
    errortype: str = "mean_sdl",
    mult: float = 1,
    seed: int = 0
) -> Tuple[float, float, float]:
    """
    Summarize replicate values as (centre, lower, upper).

    Args:
        values: Replicate measurements (NaN ignored)
        errortype: One of ERROR_TYPES
        mult: Multiplier of the SD / SE for mean_sdl and mean_se
        seed: Random seed for mean_cl_boot
    """
    if errortype not in ERROR_TYPES:
        raise ValueError(
            f"Unknown error type '{errortype}'. Choose from: {', '.join(ERROR_TYPES)}"
        )

    values = np.asarray(values, dtype=float)
    values = values[~np.isnan(values)]
    n = len(values)

    if n == 0:
        return np.nan, np.nan, np.nan

    if errortype == 'median_hilow':
        lower, upper = np.quantile(values, [0.025, 0.975])
        return float(np.median(values)), float(lower), float(upper)

    centre = float(np.mean(values))
    if n < 2:
        return centre, centre, centre

    if errortype == 'mean_cl_boot':
        rng = np.random.default_rng(seed)
        means = rng.choice(values, size=(BOOTSTRAP_RESAMPLES, n), replace=True).mean(axis=1)
        lower, upper = np.quantile(means, [0.025, 0.975])
        return centre, float(lower), float(upper)

    if errortype == 'mean_sdl':
        half = mult * np.std(values, ddof=1)
    elif errortype == 'mean_se':
        half = mult * stats.sem(values)
    else:  # mean_cl_normal
        half = stats.t.ppf(0.975, n - 1) * stats.sem(values)

    return centre, float(centre - half), float(centre + half)


def summarize_groups(
    prepared: PreparedData,
    errortype: str = "mean_sdl",
    mult: float = 1
) -> pd.DataFrame:
    """Centre and error bounds for each (group, comparison) cell."""
    rows = []
    grouped = prepared.data.groupby(
        [prepared.group_by, prepared.comparison], observed=True, sort=True
    )['value']
    for (group, comp), values in grouped:
        y, ymin, ymax = summarize_error(values, errortype, mult)
        rows.append({
            prepared.group_by: group,
            prepared.comparison: comp,
            'n': int(values.notna().sum()),
            'y': y,
            'ymin': ymin,
            'ymax': ymax,
        })
    return pd.DataFrame(rows)


def extreme_values(
    prepared: PreparedData,
    errortype: str = "mean_sdl",
    mult: float = 1
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Per-group extremes used to size the axis and stack annotations.

    Returns:
        Tuple of (d_min, d_max). d_max holds, for each group, the largest
        replicate ('max_value') and the upper error bound of the comparison
        that replicate belongs to ('max_error'). d_min mirrors this with the
        smallest replicate and adds the overall minimum ('min').
    """
    g, c = prepared.group_by, prepared.comparison
    summary = summarize_groups(prepared, errortype, mult)

    bounds = summary.set_index([g, c])
    upper = bounds[['y', 'ymin', 'ymax']].max(axis=1)
    lower = bounds[['y', 'ymin', 'ymax']].min(axis=1)

    valid = prepared.data.dropna(subset=['value'])
    max_rows = valid.loc[valid.groupby(g, observed=True)['value'].idxmax()]
    min_rows = valid.loc[valid.groupby(g, observed=True)['value'].idxmin()]

    d_max = pd.DataFrame({
        g: list(max_rows[g]),
        'max_value': max_rows['value'].values,
        'max_error': [upper.get((gr, cr), np.nan) for gr, cr in zip(max_rows[g], max_rows[c])],
    })
    d_min = pd.DataFrame({
        g: list(min_rows[g]),
        'min_value': min_rows['value'].values,
        'min_error': [lower.get((gr, cr), np.nan) for gr, cr in zip(min_rows[g], min_rows[c])],
    })
    d_min['min'] = np.nanmin(d_min[['min_value', 'min_error']].values) if len(d_min) else np.nan

    return d_min, d_max


def overall_max(d_max: pd.DataFrame) -> float:
    """Largest replicate or upper error bound across all groups."""
    if d_max.empty:
        return np.nan
    return float(np.nanmax(d_max[['max_value', 'max_error']].values))
