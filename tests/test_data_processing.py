"""
Unit tests for plotgrouper.data_processing.

Tests cover:
- Loading CSV and Excel files and detecting column roles
- Gathering wide data into tidy form
- Level ordering and x positions
- X-axis label functions
- Error summaries and per-group extremes
"""

import warnings

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from plotgrouper.data_processing import (
    GroupedDataProcessor, extreme_values, gather_dataset, load_dataset,
    make_group_labeller, overall_max, prepare_dataset, summarize_error,
    summarize_groups,
)


# ============================================================================
# Loading and gathering
# ============================================================================

class TestLoading:
    """File loading through GroupedDataProcessor."""

    def test_load_csv_adds_sheet_column(self, tmp_path, wide_frame):
        path = tmp_path / "mice.csv"
        wide_frame.to_csv(path, index=False)

        loaded = load_dataset(path)

        assert list(loaded['Sheet'].unique()) == ['mice']
        assert len(loaded) == 4
        assert 'CD8 %' in loaded.columns

    def test_load_excel_sheets(self, tmp_path, wide_frame):
        path = tmp_path / "panels.xlsx"
        with pd.ExcelWriter(path, engine='openpyxl') as writer:
            wide_frame.to_excel(writer, sheet_name='Spleen', index=False)
            wide_frame.to_excel(writer, sheet_name='Blood', index=False)

        processor = GroupedDataProcessor()
        assert processor.get_available_sheets(path) == ['Spleen', 'Blood']

        everything = processor.load_file(path)
        assert len(everything) == 8
        assert list(pd.unique(everything['Sheet'])) == ['Spleen', 'Blood']

        blood = processor.load_file(path, sheets=['Blood'])
        assert set(blood['Sheet']) == {'Blood'}

    def test_missing_sheet_raises(self, tmp_path, wide_frame):
        path = tmp_path / "panels.xlsx"
        wide_frame.to_excel(path, sheet_name='Spleen', index=False, engine='openpyxl')
        with pytest.raises(ValueError, match="Sheet"):
            GroupedDataProcessor().load_file(path, sheets=['Liver'])

    def test_buffer_needs_filename(self, wide_frame):
        import io
        buf = io.BytesIO(wide_frame.to_csv(index=False).encode())
        loaded = GroupedDataProcessor().load_file(buf, filename="upload.csv")
        assert list(loaded['Sheet'].unique()) == ['upload']

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "data.json"
        path.write_text("{}")
        with pytest.raises(ValueError, match="Unsupported file type"):
            load_dataset(path)

    def test_detect_structure(self, wide_frame):
        info = GroupedDataProcessor().detect_structure(wide_frame)
        assert info.sample_id_col == 'Sample ID'
        assert info.comparison_col == 'Genotype'
        assert info.value_cols == ['CD4 %', 'CD8 %']


class TestGather:
    """Wide-to-tidy reshaping."""

    def test_melts_value_columns(self, wide_frame):
        tidy = gather_dataset(wide_frame, ['Sample ID', 'Genotype'])

        assert len(tidy) == 8
        assert set(tidy['variable']) == {'CD4 %', 'CD8 %'}
        assert tidy['value'].dtype == float
        # 'n/a' becomes missing
        assert tidy['value'].isna().sum() == 1

    def test_adds_sample_numbers_per_sheet(self, wide_frame):
        wide = pd.concat([wide_frame.assign(Sheet='a'), wide_frame.assign(Sheet='b')], ignore_index=True)
        tidy = GroupedDataProcessor().gather(wide, ['Genotype'], value_cols=['CD8 %'])

        assert sorted(tidy.loc[tidy['Sheet'] == 'b', 'Sample']) == [1, 2, 3, 4]

    def test_missing_id_column(self, wide_frame):
        with pytest.raises(KeyError):
            gather_dataset(wide_frame, ['Strain'])


# ============================================================================
# Ordering and positions
# ============================================================================

class TestPrepareDataset:
    """Level resolution and x positions."""

    def test_order_of_appearance(self, two_level_tidy):
        prepared = prepare_dataset(two_level_tidy, 'Genotype', 'variable')

        assert prepared.comparison_levels == ['WT', 'KO']
        assert prepared.group_levels == ['A', 'B', 'C']
        assert prepared.group_positions == {'A': 0.0, 'B': 1.0, 'C': 2.0}
        assert not prepared.numeric_x
        assert prepared.comparison_code('KO') == 2

    def test_explicit_comparison_order(self, two_level_tidy):
        by_label = prepare_dataset(two_level_tidy, 'Genotype', 'variable', levs_comps=['KO', 'WT'])
        by_index = prepare_dataset(two_level_tidy, 'Genotype', 'variable', levs_comps=[1, 0])

        assert by_label.comparison_levels == ['KO', 'WT']
        assert by_index.comparison_levels == ['KO', 'WT']
        # rows sorted by comparison
        assert by_label.data['Genotype'].iloc[0] == 'KO'

    def test_group_subset_warns_and_drops(self, two_level_tidy):
        with pytest.warns(UserWarning, match="Dropping"):
            prepared = prepare_dataset(two_level_tidy, 'Genotype', 'variable', levs=['C', 'A'])

        assert prepared.group_levels == ['C', 'A']
        assert set(prepared.data['variable']) == {'A', 'C'}

    def test_missing_comparison_reported_separately(self, two_level_tidy):
        df = two_level_tidy.copy()
        df.loc[0, 'Genotype'] = None

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            prepared = prepare_dataset(df, 'Genotype', 'variable', levs=['A', 'B'])

        dropped = sorted(str(w.message) for w in caught if str(w.message).startswith('Dropping'))
        assert dropped == [
            "Dropping 1 row(s) with a missing 'Genotype'",
            "Dropping 12 row(s) whose 'variable' is not among the selected levels",
        ]
        assert len(prepared.data) == len(df) - 13

    def test_existing_categorical_order_kept(self, two_level_tidy):
        df = two_level_tidy.copy()
        df['variable'] = pd.Categorical(df['variable'], categories=['C', 'B', 'A', 'Z'])
        prepared = prepare_dataset(df, 'Genotype', 'variable')

        # unused categories are dropped
        assert prepared.group_levels == ['C', 'B', 'A']

    def test_numeric_group_is_continuous(self, numeric_tidy):
        prepared = prepare_dataset(numeric_tidy, 'Treatment', 'Dose')

        assert prepared.numeric_x
        assert prepared.group_positions == {0: 0.0, 10: 10.0, 100: 100.0}

    def test_value_column_renamed(self, two_level_tidy):
        df = two_level_tidy.rename(columns={'value': 'Frequency'})
        prepared = prepare_dataset(df, 'Genotype', 'variable', val='Frequency')
        assert 'value' in prepared.data.columns

    def test_missing_column(self, two_level_tidy):
        with pytest.raises(KeyError, match="Strain"):
            prepare_dataset(two_level_tidy, 'Strain', 'variable')

    def test_empty_dataset(self):
        with pytest.raises(ValueError, match="empty"):
            prepare_dataset(pd.DataFrame(), 'Genotype', 'variable')

    def test_bad_level_index(self, two_level_tidy):
        with pytest.raises(ValueError, match="out of range"):
            prepare_dataset(two_level_tidy, 'Genotype', 'variable', levs_comps=[0, 5])


class TestGroupLabeller:
    """X-axis label shortening."""

    def test_default_keeps_last_path_word(self):
        label = make_group_labeller()
        assert label(['Lymphocytes/Single Cells/CD4 %']) == ['CD4']

    def test_trim_applied_first(self):
        label = make_group_labeller(trim='Freq. of ')
        assert label(['Freq. of CD8']) == ['CD8']

    def test_split_string(self):
        label = make_group_labeller(split_str='_')
        assert label(['Spleen_CD4', 'NoSeparator']) == ['CD4', '']

    def test_no_split(self):
        label = make_group_labeller(split=False)
        assert label(['a/b %']) == ['a/b %']

    def test_explicit_labels(self):
        assert make_group_labeller({'A': 'Alpha'})(['A', 'B']) == ['Alpha', 'B']
        assert make_group_labeller(['one', 'two'])(['A', 'B']) == ['one', 'two']
        assert make_group_labeller(str.lower)(['A']) == ['a']


# ============================================================================
# Summaries
# ============================================================================

class TestSummarizeError:
    """Centre and bounds of each error type."""

    def test_mean_sdl(self):
        assert summarize_error([1, 2, 3], 'mean_sdl') == pytest.approx((2, 1, 3))

    def test_mean_sdl_multiplier(self):
        assert summarize_error([1, 2, 3], 'mean_sdl', mult=2) == pytest.approx((2, 0, 4))

    def test_mean_se(self):
        se = 1 / np.sqrt(3)
        assert summarize_error([1, 2, 3], 'mean_se') == pytest.approx((2, 2 - se, 2 + se))

    def test_mean_cl_normal(self):
        half = stats.t.ppf(0.975, 2) / np.sqrt(3)
        assert summarize_error([1, 2, 3], 'mean_cl_normal') == pytest.approx((2, 2 - half, 2 + half))

    def test_median_hilow(self):
        assert summarize_error([1, 2, 3, 4, 5], 'median_hilow') == pytest.approx((3, 1.1, 4.9))

    def test_mean_cl_boot_is_seeded(self):
        values = [1.0, 2.0, 4.0, 8.0, 3.0]
        first = summarize_error(values, 'mean_cl_boot')
        assert first == summarize_error(values, 'mean_cl_boot')
        assert first[1] <= first[0] <= first[2]

    def test_nan_ignored_and_single_value(self):
        assert summarize_error([np.nan, 4.0], 'mean_sdl') == (4.0, 4.0, 4.0)

    def test_all_missing(self):
        assert all(np.isnan(v) for v in summarize_error([np.nan], 'mean_se'))

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown error type"):
            summarize_error([1, 2], 'mean_iqr')


class TestExtremes:
    """Per-group maxima used to place annotations."""

    def test_summarize_groups(self, two_level_tidy):
        prepared = prepare_dataset(two_level_tidy, 'Genotype', 'variable')
        summary = summarize_groups(prepared)

        assert len(summary) == 6
        row = summary[(summary['variable'] == 'A') & (summary['Genotype'] == 'KO')].iloc[0]
        assert row['y'] == pytest.approx(21.0)
        assert row['n'] == 6

    def test_extreme_values(self, two_level_tidy):
        prepared = prepare_dataset(two_level_tidy, 'Genotype', 'variable')
        d_min, d_max = extreme_values(prepared)

        ko_a_sd = np.std([20, 21, 22, 20, 21, 22], ddof=1)
        a = d_max[d_max['variable'] == 'A'].iloc[0]
        assert a['max_value'] == 22
        assert a['max_error'] == pytest.approx(21 + ko_a_sd)

        assert list(d_max['variable']) == ['A', 'B', 'C']
        assert d_min.loc[d_min['variable'] == 'B', 'min_value'].iloc[0] == 3
        assert overall_max(d_max) == 22
        assert d_min['min'].iloc[0] == pytest.approx(min(d_min['min_value'].min(), d_min['min_error'].min()))
