from importlib import import_module

import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm

from etwfe import (
    ControlGroup,
    ETWFEResult,
    FEGLM,
    FEOLS,
    FitOptions,
    FixedEffectsMode,
    InvalidReferenceError,
    ReferenceNotFoundError,
    build_spec,
    etwfe,
    resolve_group_ref,
    resolve_time_ref,
    treatment_indicator,
)
from etwfe.utils.terms import CellInteraction, Dummies, SlopeDummies

YEARS = (2003, 2004, 2005, 2006, 2007)
COHORTS = (2004, 2006, 2007)

NOTYET_CELLS = [
    (2004, 2004), (2004, 2005), (2004, 2006), (2004, 2007),
    (2006, 2006), (2006, 2007),
    (2007, 2007),
]


# ---------------------------------------------------------------------
# Treatment indicator
# ---------------------------------------------------------------------


def test_treatment_indicator_notyet(panel_late) -> None:
    d = treatment_indicator(panel_late, "first_treat", "year", 2100, "notyet")
    expected = (panel_late["year"] >= panel_late["first_treat"]) & (panel_late["first_treat"] != 2100)
    assert d.name == ".Dtreat"
    assert d.dtype == bool
    assert (d == expected).all()


def test_treatment_indicator_never_is_all_true(panel_late) -> None:
    d = treatment_indicator(panel_late, "first_treat", "year", 2100, ControlGroup.NEVER)
    assert d.all()
    assert d.index.equals(panel_late.index)


def test_treatment_indicator_missing_cohort_is_false() -> None:
    df = pd.DataFrame({"g": [2004.0, np.nan, 2004.0], "t": [2005, 2005, np.nan]})
    d = treatment_indicator(df, "g", "t", 2100, "notyet")
    assert d.tolist() == [True, False, False]


# ---------------------------------------------------------------------
# Reference levels
# ---------------------------------------------------------------------


def test_group_reference_is_smallest_cohort_after_last_period(panel_late) -> None:
    assert resolve_group_ref(panel_late, "first_treat", "year") == 2100
    df = panel_late.copy()
    df.loc[df.index[:5], "first_treat"] = 2200
    ref = resolve_group_ref(df, "first_treat", "year")
    assert ref == 2100
    assert type(ref) is int


def test_group_reference_not_found_names_variable_and_policy(panel) -> None:
    with pytest.raises(ReferenceNotFoundError) as info:
        resolve_group_ref(panel, "first_treat", "year", cgroup="never")
    msg = str(info.value)
    assert "first_treat" in msg
    assert "never" in msg


def test_supplied_references_must_be_observed(panel_late) -> None:
    with pytest.raises(InvalidReferenceError):
        resolve_group_ref(panel_late, "first_treat", "year", gref=1999)
    with pytest.raises(InvalidReferenceError):
        resolve_time_ref(panel_late, "year", tref=1990)
    assert resolve_group_ref(panel_late, "first_treat", "year", gref=2007) == 2007
    assert resolve_time_ref(panel_late, "year") == 2003
    assert resolve_time_ref(panel_late, "year", tref=2005) == 2005


@pytest.mark.parametrize("kw", [{"gref": 1999}, {"tref": 1990}])
def test_build_spec_rejects_unobserved_reference(panel_late, kw) -> None:
    with pytest.raises(InvalidReferenceError):
        build_spec("y ~ x", "first_treat", "year", panel_late, **kw)


# ---------------------------------------------------------------------
# Specification building
# ---------------------------------------------------------------------


def test_build_spec_vs_formula(panel) -> None:
    spec = build_spec("y ~ x", "first_treat", "year", panel, gref=0)
    assert str(spec.formula) == (
        "y ~ .Dtreat:i(first_treat, i.year, ref = 0, ref2 = 2003) / x_dm"
        " | first_treat[x] + year[x]"
    )
    prov = spec.provenance
    assert (prov.gvar, prov.tvar, prov.gref, prov.tref) == ("first_treat", "year", 0, 2003)
    assert prov.cgroup is ControlGroup.NOTYET
    assert prov.fe is FixedEffectsMode.VS
    assert prov.controls == ("x",)
    assert prov.demeaned_controls == ("x_dm",)
    assert prov.estimator == "etwfe"


def test_build_spec_feo_formula(panel_late) -> None:
    spec = build_spec("y ~ x", "first_treat", "year", panel_late, fe="feo")
    assert str(spec.formula) == (
        "y ~ .Dtreat:i(first_treat, i.year, ref = 2100, ref2 = 2003) / x_dm + x"
        " + i(first_treat, x, ref = 2100) + i(year, x, ref = 2003) | first_treat + year"
    )


def test_demeaned_controls_have_zero_cell_means(panel_late) -> None:
    df = panel_late.assign(z=np.random.default_rng(3).standard_normal(len(panel_late)))
    spec = build_spec("y ~ x + z", "first_treat", "year", df)
    means = spec.data.groupby(["first_treat", "year"])[["x_dm", "z_dm"]].mean()
    np.testing.assert_allclose(means.to_numpy(), 0.0, atol=1e-12)
    assert str(spec.formula.treatment_term).endswith("/ (x_dm + z_dm)")


def test_no_controls_builds_no_slopes(panel_late) -> None:
    for mode in ("vs", "feo", "none"):
        spec = build_spec("y ~ 0", "first_treat", "year", panel_late, fe=mode)
        assert not [c for c in spec.data.columns if c.endswith("_dm")]
        assert all(not fe.slopes for fe in spec.formula.fixed_effects)
        assert not any(isinstance(t, SlopeDummies) for t in spec.formula.terms)
        assert spec.formula.treatment_term.nest == ()
        assert "/" not in str(spec.formula)


@pytest.mark.parametrize("cgroup", ["notyet", "never"])
@pytest.mark.parametrize("mode", ["vs", "feo", "none"])
def test_reference_cells_are_excluded(panel_late, cgroup, mode) -> None:
    spec = build_spec("y ~ x", "first_treat", "year", panel_late, cgroup=cgroup, fe=mode)
    cell = spec.formula.treatment_term
    for _, g, t, _ctrl in cell.coef_map(spec.data):
        assert g != 2100
        assert t != 2003
    names = spec.formula.coefnames(spec.data)
    cell_names = [n for n in names if n.startswith(".Dtreat:")]
    assert not [n for n in cell_names if "first_treat::2100" in n or "year::2003" in n]


def test_cells_by_control_group(panel_late) -> None:
    notyet = build_spec("y ~ 0", "first_treat", "year", panel_late)
    assert notyet.formula.treatment_term.cells(notyet.data) == NOTYET_CELLS
    never = build_spec("y ~ 0", "first_treat", "year", panel_late, cgroup="never")
    cells = never.formula.treatment_term.cells(never.data)
    assert cells == [(g, t) for g in COHORTS for t in YEARS[1:]]


def test_custom_time_reference_is_excluded(panel_late) -> None:
    spec = build_spec("y ~ 0", "first_treat", "year", panel_late, tref=2004)
    cells = spec.formula.treatment_term.cells(spec.data)
    assert all(t != 2004 for _, t in cells)
    assert len(cells) == len(NOTYET_CELLS) - 1


def test_build_spec_is_idempotent(panel_late) -> None:
    a = build_spec("y ~ x", "first_treat", "year", panel_late, fe="feo")
    b = build_spec("y ~ x", "first_treat", "year", panel_late, fe="feo")
    assert a.equals(b)
    assert a.formula == b.formula
    assert a.data is not b.data


def test_failures_are_repeatable(panel) -> None:
    kinds = []
    for _ in range(2):
        with pytest.raises(ReferenceNotFoundError) as info:
            build_spec("y ~ x", "first_treat", "year", panel)
        kinds.append((type(info.value), str(info.value)))
    assert kinds[0] == kinds[1]


def test_input_data_is_not_modified(panel_late) -> None:
    before = panel_late.copy()
    etwfe("y ~ x", "first_treat", "year", panel_late)
    pd.testing.assert_frame_equal(panel_late, before)
    assert ".Dtreat" not in panel_late.columns


# ---------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------


def test_estimators_export_is_the_builder_function() -> None:
    builder = import_module("etwfe.estimators.builder")
    from etwfe.estimators import build_spec as exported_build_spec
    from etwfe.estimators import etwfe as exported

    assert callable(exported)
    assert exported is etwfe
    assert exported_build_spec is build_spec
    assert builder.etwfe is etwfe


def test_etwfe_returns_wrapped_result(panel_late) -> None:
    res = etwfe("y ~ x", "first_treat", "year", panel_late)
    assert isinstance(res, ETWFEResult)
    assert isinstance(res.estimator, FEOLS)
    assert res.gvar == "first_treat"
    assert res.tvar == "year"
    assert res.n_obs == len(panel_late)
    assert res.model.model_info["vcov"] == "CRV1 (first_treat)"
    assert res.model.model_info["fixef"] == "first_treat[x] + year[x]"
    expected = [
        f".Dtreat:first_treat::{g}:year::{t}" for g, t in NOTYET_CELLS
    ] + [f".Dtreat:first_treat::{g}:year::{t}:x_dm" for g, t in NOTYET_CELLS]
    assert list(res.params.index) == expected


def test_treatment_effects_table(panel_late) -> None:
    res = etwfe("y ~ x", "first_treat", "year", panel_late, vcov={"CRV1": "id"})
    te = res.treatment_effects()
    assert list(te.columns) == ["term", "first_treat", "year", "control", "estimate", "std_error"]
    assert len(te) == 2 * len(NOTYET_CELLS)
    base = te[te["control"].isna()]
    assert list(zip(base["first_treat"], base["year"])) == NOTYET_CELLS
    assert set(te["control"].dropna()) == {"x"}
    np.testing.assert_allclose(te["estimate"], res.params[te["term"]].to_numpy())
    np.testing.assert_allclose(te["std_error"], res.se[te["term"]].to_numpy())
    # Effects grow with exposure time in the simulated panel
    first = base.set_index(["first_treat", "year"])["estimate"]
    assert first[(2004, 2007)] > first[(2004, 2004)]


def test_cell_effects_match_dummy_regression(panel_late) -> None:
    res = etwfe("y ~ 0", "first_treat", "year", panel_late, fe="feo", vcov="iid")
    df = panel_late
    cols = {}
    for g, t in NOTYET_CELLS:
        cols[f".Dtreat:first_treat::{g}:year::{t}"] = (
            (df["first_treat"] == g) & (df["year"] == t)
        ).astype(float)
    X = pd.concat(
        [
            pd.DataFrame(cols),
            pd.get_dummies(df["first_treat"], prefix="g", drop_first=True, dtype=float),
            pd.get_dummies(df["year"], prefix="t", drop_first=True, dtype=float),
        ],
        axis=1,
    )
    ref = sm.OLS(df["y"], sm.add_constant(X)).fit()
    names = list(cols)
    np.testing.assert_allclose(res.params[names], ref.params[names], atol=1e-8)
    np.testing.assert_allclose(res.se[names], ref.bse[names], rtol=1e-6)


@pytest.mark.parametrize("cgroup", ["notyet", "never"])
def test_fixed_effect_modes_agree(panel_late, cgroup) -> None:
    kw = {"cgroup": cgroup, "vcov": "iid", "fixef_tol": 1e-11}
    res = {
        mode: etwfe("y ~ x", "first_treat", "year", panel_late, fe=mode, **kw)
        for mode in ("vs", "feo", "none")
    }
    cells = res["vs"].treatment_effects()["term"].tolist()
    for mode in ("feo", "none"):
        np.testing.assert_allclose(
            res[mode].params[cells], res["vs"].params[cells], atol=1e-6,
        )
    np.testing.assert_allclose(res["feo"].se[cells], res["none"].se[cells], rtol=1e-6)


def test_mode_none_uses_dummies_and_intercept(panel_late) -> None:
    res = etwfe("y ~ x", "first_treat", "year", panel_late, fe="none")
    assert not res.formula.fixed_effects
    assert Dummies("first_treat", 2100) in res.formula.terms
    assert Dummies("year", 2003) in res.formula.terms
    assert res.model.model_info["vcov"] == "iid"
    idx = set(res.params.index)
    assert {"(Intercept)", "x", "first_treat::2004:x", "year::2007:x"} <= idx
    assert "first_treat::2100" not in idx


def _short_early_cohort(panel_late):
    # cohort 2004 seen only in 2004 and 2005, so its dummy equals the sum of its two cells
    keep = (panel_late["first_treat"] != 2004) | panel_late["year"].isin([2004, 2005])
    return panel_late[keep].reset_index(drop=True)


def test_collinear_cohort_dummy_is_dropped_not_the_cell(panel_late) -> None:
    df = _short_early_cohort(panel_late)
    res = etwfe("y ~ 0", "first_treat", "year", df, fe="none", vcov="iid")
    assert res.model.extra["diagnostics"]["dropped_collinear"] == ["first_treat::2004"]
    te = res.treatment_effects()
    cells = list(zip(te["first_treat"], te["year"]))
    assert (2004, 2004) in cells
    assert (2004, 2005) in cells
    assert "first_treat::2006" in res.params.index


def test_collinear_cells_keep_the_earlier_one(panel_late) -> None:
    df = _short_early_cohort(panel_late)
    res = etwfe("y ~ 0", "first_treat", "year", df, fe="feo", vcov="iid", fixef_tol=1e-12)
    assert res.model.extra["diagnostics"]["dropped_collinear"] == [
        ".Dtreat:first_treat::2004:year::2005",
    ]
    assert ".Dtreat:first_treat::2004:year::2004" in res.params.index


def test_poisson_family_routes_to_glm(panel_counts) -> None:
    res = etwfe("y ~ x", "first_treat", "year", panel_counts, family="poisson", fe="feo")
    assert isinstance(res.estimator, FEGLM)
    assert res.model.model_info["family"] == "Poisson(log)"
    assert res.provenance.family == "poisson"
    assert len(res.treatment_effects()) == 2 * len(NOTYET_CELLS)


def test_poisson_modes_agree(panel_counts) -> None:
    kw = {"family": "poisson", "glm_tol": 1e-10, "fixef_tol": 1e-11, "vcov": "iid"}
    feo = etwfe("y ~ 0", "first_treat", "year", panel_counts, fe="feo", **kw)
    none = etwfe("y ~ 0", "first_treat", "year", panel_counts, fe="none", **kw)
    cells = feo.treatment_effects()["term"].tolist()
    np.testing.assert_allclose(feo.params[cells], none.params[cells], atol=1e-6)


# ---------------------------------------------------------------------
# Fit options
# ---------------------------------------------------------------------


def test_options_are_forwarded(panel_late) -> None:
    res = etwfe("y ~ x", "first_treat", "year", panel_late, vcov="hetero")
    assert res.model.model_info["vcov"] == "hetero"
    res = etwfe("y ~ x", "first_treat", "year", panel_late, options={"vcov": "iid"})
    assert res.model.model_info["vcov"] == "iid"
    res = etwfe(
        "y ~ x", "first_treat", "year", panel_late,
        options=FitOptions({"vcov": {"CRV1": "id"}}), fixef_tol=1e-10,
    )
    assert res.model.model_info["vcov"] == "CRV1 (id)"


def test_option_given_twice_is_rejected(panel_late) -> None:
    with pytest.raises(TypeError, match="vcov"):
        etwfe("y ~ x", "first_treat", "year", panel_late, options={"vcov": "iid"}, vcov="hetero")


def test_unknown_engine_option_propagates(panel_late) -> None:
    with pytest.raises(TypeError):
        etwfe("y ~ x", "first_treat", "year", panel_late, not_an_option=1)


# ---------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------


def test_scenario_never_treated_coded_zero(panel) -> None:
    with pytest.raises(ReferenceNotFoundError):
        etwfe("y ~ 0", "first_treat", "year", panel)
    res = etwfe("y ~ 0", "first_treat", "year", panel, gref=0)
    d = res.data[".Dtreat"]
    g, t = res.data["first_treat"], res.data["year"]
    assert not d[(g == 2004) & (t < 2004)].any()
    assert d[(g == 2004) & (t >= 2004)].all()
    assert not d[g == 0].any()
    assert res.provenance.gref == 0
    cells = res.formula.treatment_term.cells(res.data)
    assert cells == NOTYET_CELLS


def test_scenario_cell_demeaning() -> None:
    df = pd.DataFrame(
        {
            "y": [1.0, 2.0, 3.0, 4.0, 5.0, 6.0],
            "x": [10.0, 20.0, 3.0, 7.0, 1.0, 5.0],
            "g": [2004, 2004, 2004, 2004, 2100, 2100],
            "t": [2005, 2005, 2004, 2004, 2005, 2005],
        },
    )
    spec = build_spec("y ~ x", "g", "t", df)
    cell = (spec.data["g"] == 2004) & (spec.data["t"] == 2005)
    assert spec.data.loc[cell, "x_dm"].tolist() == [-5.0, 5.0]
    assert spec.data.loc[spec.data["t"] == 2004, "x_dm"].tolist() == [-2.0, 2.0]


def test_scenario_no_controls(panel_late) -> None:
    res = etwfe("y ~ 0", "first_treat", "year", panel_late)
    assert "/" not in str(res.formula)
    assert isinstance(res.formula.treatment_term, CellInteraction)
    assert res.provenance.gvar == "first_treat"
    assert res.provenance.tvar == "year"
    assert res.provenance.controls == ()
    assert list(res.params.index) == [f".Dtreat:first_treat::{g}:year::{t}" for g, t in NOTYET_CELLS]


def test_scenario_dummies_without_fixed_effects(panel) -> None:
    res = etwfe("y ~ 0", "first_treat", "year", panel, gref=0, fe=None)
    assert res.provenance.fe is FixedEffectsMode.NONE
    assert not res.formula.fixed_effects
    text = str(res.formula)
    assert "|" not in text
    assert "i(first_treat, ref = 0)" in text
    assert "i(year, ref = 2003)" in text
    idx = set(res.params.index)
    assert {f"first_treat::{g}" for g in COHORTS} <= idx
    assert {f"year::{t}" for t in YEARS[1:]} <= idx
    assert "(Intercept)" in idx
    assert "first_treat::0" not in idx
    assert "year::2003" not in idx
