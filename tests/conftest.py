"""
Pytest configuration and shared fixtures for plot grouper tests.

This module provides:
- Deterministic tidy datasets with two and three comparison levels
- A dataset with a numeric grouping variable
- A wide (one column per variable) frame for loading / gathering tests
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest


# ============================================================================
# Tidy datasets
# ============================================================================

@pytest.fixture
def two_level_tidy() -> pd.DataFrame:
    """WT vs KO for three variables.

    A differs strongly, B slightly (not significant), C not at all.
    """
    values = {
        'A': ([10, 11, 12, 10, 11, 12], [20, 21, 22, 20, 21, 22]),
        'B': ([3, 4, 5, 3, 4, 5], [4, 5, 6, 4, 5, 6]),
        'C': ([5, 6, 7, 5, 6, 7], [6, 5, 7, 6, 5, 7]),
    }
    rows = []
    for variable, (wt, ko) in values.items():
        for genotype, reps in (('WT', wt), ('KO', ko)):
            for i, v in enumerate(reps, start=1):
                rows.append({
                    'Sample': f"{genotype}_{i}",
                    'Genotype': genotype,
                    'variable': variable,
                    'value': float(v),
                })
    return pd.DataFrame(rows)


@pytest.fixture
def three_level_tidy() -> pd.DataFrame:
    """Iris-like measurements: three species, four variables, ten replicates."""
    rng = np.random.default_rng(1)
    means = {
        'setosa': [5.0, 3.4, 1.5, 0.2],
        'versicolor': [5.9, 2.8, 4.3, 1.3],
        'virginica': [6.6, 3.0, 5.6, 2.0],
    }
    variables = ['Sepal.Length', 'Sepal.Width', 'Petal.Length', 'Petal.Width']
    rows = []
    for species, mus in means.items():
        for variable, mu in zip(variables, mus):
            for i, v in enumerate(rng.normal(mu, 0.3, size=10), start=1):
                rows.append({
                    'Sample': f"{species}_{i}",
                    'Species': species,
                    'variable': variable,
                    'value': abs(v),
                })
    return pd.DataFrame(rows)


@pytest.fixture
def numeric_tidy() -> pd.DataFrame:
    """Dose response with a numeric grouping column."""
    rows = []
    for dose, (ctrl, drug) in {
        0: ([1.0, 1.2, 1.1, 0.9], [1.1, 1.0, 1.2, 1.0]),
        10: ([1.1, 1.0, 1.3, 1.2], [2.0, 2.2, 2.1, 2.3]),
        100: ([1.0, 1.1, 0.9, 1.2], [4.0, 4.4, 4.2, 4.1]),
    }.items():
        for treatment, reps in (('ctrl', ctrl), ('drug', drug)):
            for v in reps:
                rows.append({'Dose': dose, 'Treatment': treatment, 'value': v})
    return pd.DataFrame(rows)


@pytest.fixture
def sheeted_tidy(two_level_tidy) -> pd.DataFrame:
    """The two-level data split over two sheets."""
    first = two_level_tidy.assign(Sheet='Spleen')
    second = two_level_tidy.assign(Sheet='Lymph node', value=two_level_tidy['value'] * 2)
    return pd.concat([first, second], ignore_index=True)


# ============================================================================
# Wide data
# ============================================================================

@pytest.fixture
def wide_frame() -> pd.DataFrame:
    """One row per mouse, one column per measured population."""
    return pd.DataFrame({
        'Sample ID': ['m1', 'm2', 'm3', 'm4'],
        'Genotype': ['WT', 'WT', 'KO', 'KO'],
        'CD4 %': [10.0, 12.0, 20.0, 'n/a'],
        'CD8 %': [5.0, 6.0, 7.0, 8.0],
    })
