"""
Report Generation Module for Grouped Plots
===========================================

Plots a tidy dataset panel by panel and exports:
- A multi-page PDF with one fixed-size figure per panel
- An Excel workbook with an overview sheet and one statistics sheet per panel
- A CSV file with all statistics tables stacked
"""

import io
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from matplotlib.backends.backend_pdf import PdfPages
from matplotlib.figure import Figure

from .statistical_tests import is_placeholder
from .visualization import gplot


@dataclass
class PanelResult:
    """Figure and statistics for one panel of a report."""
    name: str
    figure: Optional[Figure]
    statistics: pd.DataFrame
    n_samples: int
    error: Optional[str] = None


def save_figure(
    fig: Figure,
    filepath: Union[str, Path],
    formats: Sequence[str] = ('png', 'pdf'),
    dpi: int = 300
) -> List[Path]:
    """Save figure in multiple formats, keeping its physical size."""
    filepath = Path(filepath)
    saved = []
    for fmt in formats:
        save_path = filepath.with_suffix(f'.{fmt}')
        fig.savefig(save_path, format=fmt, dpi=dpi, transparent=True)
        saved.append(save_path)
    return saved


def fig_to_bytes(fig: Figure, format: str = 'png', dpi: int = 300) -> bytes:
    """Convert matplotlib figure to bytes for download."""
    buf = io.BytesIO()
    fig.savefig(buf, format=format, dpi=dpi, transparent=True)
    buf.seek(0)
    return buf.getvalue()


class GroupedPlotReport:
    """
    Plot every panel of a tidy dataset and export the results.

    A panel is one value of `panel_col` (by default the sheet a replicate
    came from); without that column the whole dataset is one panel.

    Usage:
        report = GroupedPlotReport(tidy, 'Genotype', geom=['bar', 'point'])
        report.run()
        report.save_pdf('plots.pdf')
        report.save_excel('statistics.xlsx')
    """

    def __init__(
        self,
        dataset: pd.DataFrame,
        comparison: str,
        group_by: str = "variable",
        panel_col: Optional[str] = "Sheet",
        **plot_kwargs: Any
    ):
        """
        Initialize report.

        Args:
            dataset: Tidy replicate data
            comparison: Column compared within each group
            group_by: Column placed on the x axis
            panel_col: Column splitting the data into separate figures
            **plot_kwargs: Passed on to gplot for every panel
        """
        for col in (comparison, group_by):
            if col not in dataset.columns:
                raise KeyError(f"Column '{col}' not found in dataset")

        self.dataset = dataset
        self.comparison = comparison
        self.group_by = group_by
        self.panel_col = panel_col if panel_col in dataset.columns else None
        self.plot_kwargs = plot_kwargs
        self.panels: Dict[str, PanelResult] = {}

    def _panel_frames(self) -> Dict[str, pd.DataFrame]:
        if self.panel_col is None:
            return {'Plot': self.dataset}
        return {
            str(name): frame
            for name, frame in self.dataset.groupby(self.panel_col, sort=False, observed=True)
        }

    def run(self) -> Dict[str, PanelResult]:
        """Plot and test every panel; failing panels are kept with their error."""
        self.panels = {}
        plot_kwargs = {k: v for k, v in self.plot_kwargs.items() if k not in ('stats', 'with_stats')}

        for name, frame in self._panel_frames().items():
            try:
                figure, statistics = gplot(
                    frame, self.comparison, self.group_by, with_stats=True, **plot_kwargs
                )
                error = None
            except (ValueError, KeyError) as e:
                warnings.warn(f"Could not plot panel '{name}': {str(e)}")
                statistics, figure, error = pd.DataFrame(), None, str(e)

            self.panels[name] = PanelResult(
                name=name,
                figure=figure,
                statistics=statistics,
                n_samples=len(frame),
                error=error
            )

        return self.panels

    @property
    def figures(self) -> Dict[str, Figure]:
        if not self.panels:
            self.run()
        return {name: p.figure for name, p in self.panels.items() if p.figure is not None}

    def combined_statistics(self) -> pd.DataFrame:
        """All statistics tables stacked, with a leading panel column."""
        if not self.panels:
            self.run()

        frames = []
        for name, panel in self.panels.items():
            if panel.statistics.empty or is_placeholder(panel.statistics):
                continue
            frames.append(panel.statistics.assign(panel=name))
        if not frames:
            return pd.DataFrame(columns=['panel'])

        combined = pd.concat(frames, ignore_index=True)
        return combined[['panel'] + [c for c in combined.columns if c != 'panel']]

    def save_pdf(self, filepath: Union[str, Path, BinaryIO]) -> Union[str, Path, BinaryIO]:
        """Save every figure as one page of a PDF (path or buffer)."""
        with PdfPages(filepath) as pdf:
            for fig in self.figures.values():
                pdf.savefig(fig, transparent=True)
        return filepath

    def save_csv(self, filepath: Union[str, Path]) -> Union[str, Path]:
        self.combined_statistics().to_csv(filepath, index=False)
        return filepath

    def save_excel(self, filepath) -> Any:
        """Save the overview and per-panel statistics sheets (path or buffer)."""
        if not self.panels:
            self.run()

        with pd.ExcelWriter(filepath, engine='openpyxl') as writer:
            self._write_overview_sheet(writer)
            used = {'Overview'}
            for name, panel in self.panels.items():
                sheet_name = self._sheet_name(name, used)
                used.add(sheet_name)
                self._write_sheet(writer, sheet_name, panel)

        return filepath

    @staticmethod
    def _sheet_name(name: str, used: set) -> str:
        # Excel sheet name limit and forbidden characters
        base = ''.join('_' if ch in '[]:*?/\\' else ch for ch in name)[:31] or 'Sheet'
        candidate, i = base, 1
        while candidate in used:
            suffix = f"_{i}"
            candidate = base[:31 - len(suffix)] + suffix
            i += 1
        return candidate

    def _write_overview_sheet(self, writer: pd.ExcelWriter):
        """Write overview/summary sheet."""
        current_row = 0

        title_df = pd.DataFrame({'': ['GROUPED PLOT REPORT']})
        title_df.to_excel(writer, sheet_name='Overview', startrow=current_row,
                          index=False, header=False)
        current_row += 2

        levels = pd.unique(self.dataset[self.comparison].dropna()).astype(str)
        summary_df = pd.DataFrame({
            'Parameter': ['Total Replicates', 'Comparison', 'Levels', 'Grouped By', 'Test', 'P-value Adjustment'],
            'Value': [
                len(self.dataset),
                self.comparison,
                ', '.join(levels),
                self.group_by,
                self.plot_kwargs.get('method', 't.test'),
                self.plot_kwargs.get('p_adjust_method', 'holm'),
            ]
        })
        summary_df.to_excel(writer, sheet_name='Overview', startrow=current_row, index=False)
        current_row += len(summary_df) + 3

        section_header = pd.DataFrame({'': ['RESULTS SUMMARY']})
        section_header.to_excel(writer, sheet_name='Overview', startrow=current_row,
                                index=False, header=False)
        current_row += 1

        results_rows = []
        for name, panel in self.panels.items():
            table = panel.statistics
            tested = not table.empty and not is_placeholder(table)
            n_signif = int(table['p_signif'].notna().sum()) if tested else 0
            results_rows.append({
                'Panel': name,
                'Replicates': panel.n_samples,
                'Tests': len(table) if tested else 0,
                'Significant': n_signif,
                'Min P-value': float(np.nanmin(table['p'])) if tested and table['p'].notna().any() else np.nan,
                'Note': panel.error or ('' if tested else 'No statistics'),
            })
        pd.DataFrame(results_rows).to_excel(writer, sheet_name='Overview', startrow=current_row, index=False)

    def _write_sheet(self, writer: pd.ExcelWriter, sheet_name: str, panel: PanelResult):
        """Write the statistics of a single panel to Excel."""
        header_df = pd.DataFrame({
            'Panel': [panel.name],
            'Replicates': [panel.n_samples],
        })
        header_df.to_excel(writer, sheet_name=sheet_name, index=False)

        section_header = pd.DataFrame({'': ['STATISTICAL ANALYSIS']})
        section_header.to_excel(writer, sheet_name=sheet_name, startrow=3,
                                index=False, header=False)

        table = panel.statistics
        if panel.error:
            table = pd.DataFrame({'Error': [panel.error]})
        elif table.empty or is_placeholder(table):
            table = pd.DataFrame({'Note': ['Statistics could not be computed']})
        table.to_excel(writer, sheet_name=sheet_name, startrow=4, index=False)

    def close(self):
        """Clear every figure and forget the panels."""
        for panel in self.panels.values():
            if panel.figure is not None:
                panel.figure.clear()
        self.panels = {}
