import numpy as np
import pandas as pd
import arviz as az
import pytest

from mousestress.data import filter_recordings, standardize_features
from mousestress.diagnostics import (
    PARETO_K_PROBLEMATIC,
    check_convergence,
    compare_models,
    pairwise_loo_differences,
    parameter_table,
    pareto_k_flags,
    psis_loo,
    robustness_table,
    sensitivity_table,
)
from mousestress.model import SamplerConfig, fit_model, get_spec

from conftest import fake_fit, make_recordings, normal_model_idata

SMALL_SAMPLER = SamplerConfig(draws=300, tune=300, chains=2, cores=1,
                              target_accept=0.9, random_seed=1234, progressbar=False)


@pytest.fixture(scope="module")
def mouse_fit():
    data = standardize_features(filter_recordings(make_recordings(), 10))
    return fit_model(data, get_spec("mouse"), sampler=SMALL_SAMPLER, display=False)


@pytest.fixture
def observations():
    return np.random.default_rng(1).normal(0, 1, 30)


def test_pareto_k_flags_thresholds():
    flags = pareto_k_flags([0.1, 0.5, 0.6, 0.7, 0.8, 1.0, 1.5])
    assert flags.tolist() == [
        "good", "good", "questionable", "questionable",
        "problematic", "problematic", "unreliable",
    ]


def test_extreme_point_gets_flagged(observations):
    y = observations.copy()
    y[-1] = 40.0
    loo = psis_loo(normal_model_idata(y, mu_center=y.mean()))
    assert np.all(loo.pareto_k > -np.inf)
    assert int(np.argmax(loo.pareto_k)) == len(y) - 1
    assert loo.pareto_k[-1] > PARETO_K_PROBLEMATIC
    assert pareto_k_flags(loo.pareto_k).iloc[-1] != "good"
    assert loo.n_flagged >= 1


def test_looic_is_minus_twice_elpd(observations):
    loo = psis_loo(normal_model_idata(observations, mu_center=observations.mean()))
    assert loo.looic == pytest.approx(-2 * loo.elpd)
    assert loo.looic_se == pytest.approx(2 * loo.se)
    assert loo.pointwise_elpd.sum() == pytest.approx(loo.elpd)


def test_compare_prefers_smallest_looic(observations):
    good = fake_fit(normal_model_idata(observations, observations.mean()), name="good")
    bad = fake_fit(normal_model_idata(observations, observations.mean() + 2.0), name="bad")
    table = compare_models({"bad": bad, "good": good})
    assert table.index.tolist() == ["good", "bad"]
    assert table["rank"].tolist() == [1, 2]
    assert table.loc["good", "preferred"]
    assert not table.loc["bad", "preferred"]
    assert table.loc["good", "looic_diff"] == 0.0
    assert table.loc["bad", "looic_diff"] > 0
    assert not table.loc["bad", "within_1se"]


def test_compare_marks_close_models(observations):
    first = fake_fit(normal_model_idata(observations, observations.mean(), seed=1))
    second = fake_fit(normal_model_idata(observations, observations.mean(), seed=2))
    table = compare_models({"first": first, "second": second})
    assert table["within_1se"].all()
    assert table["preferred"].sum() == 1


def test_compare_rejects_different_datasets(observations):
    idata = normal_model_idata(observations, observations.mean())
    fits = {
        "all_users": fake_fit(idata, dataset_id="abc"),
        "outliers_removed": fake_fit(idata, dataset_id="def"),
    }
    with pytest.raises(ValueError, match="identical filtered dataset"):
        compare_models(fits)
    with pytest.raises(ValueError):
        pairwise_loo_differences(fits)


def test_compare_needs_two_models(observations):
    fit = fake_fit(normal_model_idata(observations, observations.mean()))
    with pytest.raises(ValueError):
        compare_models({"only": fit})


def test_pairwise_differences(observations):
    fits = {
        name: fake_fit(normal_model_idata(observations, observations.mean() + shift))
        for name, shift in [("a", 0.0), ("b", 1.0), ("c", 2.0)]
    }
    table = pairwise_loo_differences(fits)
    assert list(zip(table["model_a"], table["model_b"])) == [("a", "b"), ("a", "c"), ("b", "c")]
    assert (table["looic_diff"] > 0).all()


def unconverged_idata(users=("u0", "u1")):
    rng = np.random.default_rng(0)
    chains, draws = 4, 200
    # Each chain stuck around a different value
    mu_alpha = rng.normal(0, 0.1, (chains, draws)) + np.arange(chains)[:, None] * 5
    tau = np.abs(rng.normal(1, 0.1, (chains, draws)))
    offsets = rng.normal(0, 1, (chains, draws, len(users)))
    return az.from_dict(
        posterior={"mu_alpha": mu_alpha, "tau": tau, "user_offset": offsets},
        coords={"user": list(users)},
        dims={"user_offset": ["user"]},
    )


def test_non_convergence_is_flagged_not_raised():
    fit = fake_fit(unconverged_idata(), users=("u0", "u1"))
    assert fit.converged is False
    assert check_convergence(fit, display=True) is False
    assert fit.rhat()["mu_alpha"] > 1.01


def test_parameter_table(mouse_fit):
    table = parameter_table(mouse_fit)
    assert list(table.columns) == [
        "mean", "sd", "hdi_lower", "hdi_upper", "r_hat", "ess_ratio", "prob_positive",
    ]
    expected = {"mu_alpha", "tau", "beta[speed]", "beta[accuracy]", "beta[tradeoff]"}
    expected |= {f"user_offset[{u}]" for u in mouse_fit.users}
    assert set(table.index) == expected
    assert (table["hdi_lower"] <= table["mean"]).all()
    assert (table["mean"] <= table["hdi_upper"]).all()
    assert table["prob_positive"].between(0, 1).all()
    assert table.loc["tau", "hdi_lower"] >= 0


def test_narrower_hdi_for_lower_mass(mouse_fit):
    wide = parameter_table(mouse_fit, hdi_prob=0.95)
    narrow = parameter_table(mouse_fit, hdi_prob=0.5)
    width = lambda t: t["hdi_upper"] - t["hdi_lower"]
    assert (width(narrow) <= width(wide)).all()


def test_check_convergence_matches_fit_flag(mouse_fit):
    assert check_convergence(mouse_fit, display=False) == mouse_fit.converged


def test_psis_loo_on_real_fit(mouse_fit):
    loo = psis_loo(mouse_fit)
    assert loo.pareto_k.shape == (mouse_fit.n_obs,)
    assert np.isfinite(loo.elpd)


def test_sensitivity_table(mouse_fit):
    table = sensitivity_table([(10, mouse_fit), (20, mouse_fit)])
    assert table["min_traj"].unique().tolist() == [10, 20]
    assert not table["parameter"].str.startswith("user_offset").any()
    assert {"n_obs", "n_users", "converged"} <= set(table.columns)
    assert isinstance(table, pd.DataFrame)


def test_robustness_table(mouse_fit):
    table = robustness_table({"all_users": mouse_fit, "again": mouse_fit})
    assert table["fit"].unique().tolist() == ["all_users", "again"]
    assert not table["parameter"].str.startswith("user_offset").any()
    assert (table["n_users"] == len(mouse_fit.users)).all()
