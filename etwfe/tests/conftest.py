from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

YEARS = (2003, 2004, 2005, 2006, 2007)
COHORTS = (2004, 2006, 2007)


def pytest_configure() -> None:
    """Ensure the repository root is on sys.path.

    The test suite lives inside the package (``etwfe/tests``), so pytest may
    pick ``etwfe/`` as its rootdir. In that case importing the top-level
    package ``etwfe`` fails unless the parent directory is on ``sys.path``.
    """

    repo_root = Path(__file__).resolve().parents[2]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


def make_panel(
    rng: np.random.Generator,
    *,
    never: float = 0,
    units_per_cohort: int = 12,
    poisson: bool = False,
) -> pd.DataFrame:
    """Balanced staggered-adoption panel.

    Cohorts first treated in 2004, 2006, 2007 plus a never-treated cohort coded
    ``never``; years 2003-2007. The treatment effect grows with exposure time.
    """
    rows = []
    unit = 0
    for g in (*COHORTS, never):
        for _ in range(units_per_cohort):
            alpha = rng.normal()
            for t in YEARS:
                rows.append((unit, g, t, alpha))
            unit += 1
    df = pd.DataFrame(rows, columns=["id", "first_treat", "year", "alpha"])
    n = len(df)
    treated = (df["year"] >= df["first_treat"]) & (df["first_treat"] != never)
    tau = np.where(treated, 1.0 + 0.5 * (df["year"] - df["first_treat"]), 0.0)
    df["x"] = rng.normal(size=n) + 0.1 * (df["year"] - 2003)
    year_fe = 0.2 * (df["year"] - 2003)
    index = 0.3 * df["alpha"] + year_fe + 0.5 * df["x"] + tau
    if poisson:
        df["y"] = rng.poisson(np.exp(0.5 + 0.3 * index)).astype(float)
    else:
        df["y"] = index + rng.normal(scale=0.5, size=n)
    return df.drop(columns="alpha")


@pytest.fixture
def rng():
    return np.random.default_rng(999)


@pytest.fixture
def panel(rng):
    """Never-treated cohort coded 0 (needs an explicit ``gref=0``)."""
    return make_panel(rng, never=0)


@pytest.fixture
def panel_late(rng):
    """Never-treated cohort coded 2100, beyond the last period."""
    return make_panel(rng, never=2100)


@pytest.fixture
def panel_counts(rng):
    return make_panel(rng, never=2100, poisson=True)
