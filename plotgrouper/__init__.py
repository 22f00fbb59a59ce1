"""Grouped plotting modules."""
from .data_processing import (
    GroupedDataProcessor, PreparedData, DataStructureInfo, load_dataset, gather_dataset,
    prepare_dataset, make_group_labeller, summarize_error, extreme_values,
)
from .statistical_tests import (
    PairwiseComparer, TestMethod, CorrectionMethod, adjust_pvalues, format_pvalue,
    position_annotations, placeholder_table,
)
from .visualization import gplot, set_panel_size, panel_size_mm
from .report_generation import GroupedPlotReport, PanelResult, save_figure, fig_to_bytes
