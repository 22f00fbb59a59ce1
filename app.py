"""
Plot Grouper - Streamlit Application
====================================

Run with: streamlit run app.py
"""

import warnings
import zipfile
from datetime import datetime
from io import BytesIO

import pandas as pd
import streamlit as st

from plotgrouper_config import (
    DEFAULTS, DEFAULT_GEOMS, ERROR_TYPES, GEOMS, LEGEND_POSITIONS, P_LABELS,
    TEST_METHODS, TRANSFORMS,
)
from plotgrouper import GroupedDataProcessor, GroupedPlotReport, fig_to_bytes

st.set_page_config(page_title="Plot Grouper", page_icon="📊", layout="wide")

CORRECTION_OPTIONS = ["holm", "hochberg", "bonferroni", "BH", "BY", "none"]


def init_session_state():
    """Initialize session state variables."""
    defaults = {
        'wide_data': None,
        'tidy_data': None,
        'report': None,
        'last_file': None,
        'last_settings': None  # Track settings that affect plots/stats
    }
    for key, val in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = val


def check_settings_changed(settings):
    """Check if plot settings have changed, reset cached report if so."""
    if st.session_state.last_settings != settings:
        st.session_state.report = None
        st.session_state.last_settings = dict(settings)
        return True
    return False


def render_sidebar():
    """Render sidebar settings."""
    st.sidebar.markdown("## ⚙️ Settings")

    geom = st.sidebar.multiselect("Layers", GEOMS, DEFAULT_GEOMS)
    method = st.sidebar.selectbox("Test", list(TEST_METHODS.keys()),
                                  format_func=lambda x: TEST_METHODS[x])
    paired = st.sidebar.checkbox("Paired test")
    p_adjust_method = st.sidebar.selectbox("P-value adjustment", CORRECTION_OPTIONS)
    p = st.sidebar.selectbox("Annotation", list(P_LABELS.keys()),
                             format_func=lambda x: P_LABELS[x])
    errortype = st.sidebar.selectbox("Error bars", list(ERROR_TYPES.keys()),
                                     format_func=lambda x: ERROR_TYPES[x])
    trans_y = st.sidebar.selectbox("Y transformation", TRANSFORMS)

    st.sidebar.markdown("### 🎨 Appearance")
    leg_pos = st.sidebar.selectbox("Legend", LEGEND_POSITIONS)
    plot_width = st.sidebar.number_input("Panel width (mm)", 10.0, 300.0, float(DEFAULTS.plot_width))
    plot_height = st.sidebar.number_input("Panel height (mm)", 10.0, 300.0, float(DEFAULTS.plot_height))
    font_size = st.sidebar.slider("Font size (pt)", 5, 16, int(DEFAULTS.font_size))
    stroke = st.sidebar.slider("Line width (mm)", 0.05, 1.0, DEFAULTS.stroke, 0.05)
    size = st.sidebar.slider("Point size (mm)", 0.2, 4.0, float(DEFAULTS.size), 0.1)
    sci = st.sidebar.checkbox("Scientific y labels")
    angle_x = st.sidebar.checkbox("Angled x labels")

    return {'geom': tuple(geom), 'method': method, 'paired': paired,
            'p_adjust_method': p_adjust_method, 'p': p, 'errortype': errortype,
            'trans_y': trans_y, 'leg_pos': leg_pos, 'plot_width': plot_width,
            'plot_height': plot_height, 'font_size': font_size, 'stroke': stroke,
            'size': size, 'sci': sci, 'angle_x': angle_x}


def render_data_tab(processor, wide):
    """Column selection and tidy preview; returns the comparison column."""
    structure = processor.detect_structure(wide)

    candidates = [c for c in wide.columns if c != processor.sheet_col]
    default_comp = candidates.index(structure.comparison_col) if structure.comparison_col in candidates else 0
    comparison = st.selectbox("Comparison column", candidates, index=default_comp)

    id_cols = st.multiselect(
        "Other identifier columns",
        [c for c in candidates if c != comparison],
        [c for c in structure.id_cols + [structure.sample_id_col] if c and c != comparison]
    )
    tidy = processor.gather(wide, [comparison] + id_cols)

    variables = list(pd.unique(tidy['variable']))
    selected = st.multiselect("Variables", variables, variables)
    tidy = tidy[tidy['variable'].isin(selected)]

    c1, c2, c3 = st.columns(3)
    c1.metric("Replicates", len(wide))
    c2.metric("Variables", len(selected))
    c3.metric("Levels", tidy[comparison].nunique())

    st.dataframe(tidy.head(200), hide_index=True)
    st.session_state.tidy_data = tidy
    return comparison


def build_report(tidy, comparison, settings):
    """Plot every sheet once and cache the report."""
    if st.session_state.report is not None:
        return st.session_state.report

    kwargs = dict(settings)
    kwargs['geom'] = list(kwargs['geom']) or DEFAULT_GEOMS
    report = GroupedPlotReport(tidy, comparison, group_by='variable', **kwargs)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        report.run()
    for w in caught:
        st.warning(str(w.message))

    st.session_state.report = report
    return report


def render_plots_tab(report):
    """Show each figure with its downloads."""
    for name, panel in report.panels.items():
        st.markdown(f"#### {name}")
        if panel.figure is None:
            st.error(panel.error)
            continue
        st.pyplot(panel.figure, use_container_width=False)
        c1, c2 = st.columns(2)
        c1.download_button("📥 PNG", fig_to_bytes(panel.figure), f"{name}.png", "image/png",
                           key=f"png_{name}")
        c2.download_button("📥 PDF", fig_to_bytes(panel.figure, 'pdf'), f"{name}.pdf",
                           "application/pdf", key=f"pdf_{name}")


def render_statistics_tab(report):
    """Statistics table of every sheet."""
    stats = report.combined_statistics()
    if stats.empty:
        st.info("No statistics could be computed.")
        return
    st.dataframe(stats, hide_index=True)
    st.download_button("📥 Statistics (CSV)", stats.to_csv(index=False), "statistics.csv", "text/csv")


def create_results_zip(report):
    """Create ZIP with all figures and statistics."""
    buf = BytesIO()
    with zipfile.ZipFile(buf, 'w', zipfile.ZIP_DEFLATED) as zf:
        pdf_buf = BytesIO()
        report.save_pdf(pdf_buf)
        zf.writestr('figures/all_plots.pdf', pdf_buf.getvalue())

        excel_buf = BytesIO()
        report.save_excel(excel_buf)
        zf.writestr('reports/statistical_report.xlsx', excel_buf.getvalue())

        zf.writestr('reports/statistics.csv', report.combined_statistics().to_csv(index=False))

        for name, fig in report.figures.items():
            zf.writestr(f'figures/{name}.png', fig_to_bytes(fig, 'png'))
            zf.writestr(f'figures/{name}.pdf', fig_to_bytes(fig, 'pdf'))

    buf.seek(0)
    return buf.getvalue()


def render_export_tab(report):
    """Export tab."""
    st.markdown("### Export Results")

    col1, col2 = st.columns(2)
    with col1:
        pdf_buf = BytesIO()
        report.save_pdf(pdf_buf)
        st.download_button("📥 All Plots (PDF)", pdf_buf.getvalue(),
                           f"plots_{datetime.now():%Y%m%d}.pdf", "application/pdf")
    with col2:
        excel_buf = BytesIO()
        report.save_excel(excel_buf)
        st.download_button("📥 Statistical Report (Excel)", excel_buf.getvalue(),
                           f"statistical_report_{datetime.now():%Y%m%d}.xlsx",
                           "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")

    st.markdown("---")
    if st.button("📦 Generate Complete Package", type="primary"):
        with st.spinner("Creating ZIP..."):
            st.download_button("📥 Download ZIP", create_results_zip(report),
                               f"plot_grouper_{datetime.now():%Y%m%d_%H%M}.zip", "application/zip")


def main():
    """Main entry point."""
    init_session_state()
    settings = render_sidebar()

    st.markdown("# 📊 Plot Grouper")
    uploaded = st.file_uploader("Upload CSV/TSV/Excel file", ['csv', 'tsv', 'txt', 'xlsx', 'xlsm'])
    processor = GroupedDataProcessor()

    if uploaded:
        file_changed = st.session_state.last_file != uploaded.name
        sheets = processor.get_available_sheets(uploaded, filename=uploaded.name)
        selected_sheets = st.multiselect("Sheets", sheets, sheets) if sheets else None

        if file_changed or st.session_state.wide_data is None or sheets:
            try:
                uploaded.seek(0)
                wide = processor.load_file(uploaded, selected_sheets or None, filename=uploaded.name)
            except (ValueError, KeyError) as e:
                st.error(f"Error: {e}")
                return
            if file_changed:
                st.session_state.report = None
                st.session_state.last_file = uploaded.name
                st.success("✅ Data loaded!")
            st.session_state.wide_data = wide

    if st.session_state.wide_data is None:
        st.info("Upload a file with one row per replicate and one column per measured variable.")
        return

    tabs = st.tabs(["🗂️ Data", "📈 Plots", "📊 Statistics", "💾 Export"])
    with tabs[0]:
        comparison = render_data_tab(processor, st.session_state.wide_data)

    tidy = st.session_state.tidy_data
    if tidy is None or tidy.empty:
        return

    check_settings_changed({**settings, 'comparison': comparison, 'n_rows': len(tidy),
                            'variables': tuple(pd.unique(tidy['variable']))})
    report = build_report(tidy, comparison, settings)

    with tabs[1]: render_plots_tab(report)
    with tabs[2]: render_statistics_tab(report)
    with tabs[3]: render_export_tab(report)


if __name__ == "__main__":
    main()
