"""
Convergence checks, posterior summaries and PSIS-LOO model comparison.
"""

from dataclasses import dataclass
from itertools import combinations

import numpy as np
import pandas as pd
import arviz as az

from mousestress.model import ESS_RATIO_MIN, RHAT_MAX

HDI_PROB = 0.95

# Pareto k limits for PSIS-LOO
PARETO_K_QUESTIONABLE = 0.5
PARETO_K_PROBLEMATIC = 0.7
PARETO_K_UNRELIABLE = 1.0


@dataclass(frozen=True)
class LooResult:
    elpd: float
    se: float
    p_loo: float
    pointwise_elpd: np.ndarray
    pareto_k: np.ndarray

    @property
    def looic(self):
        return -2.0 * self.elpd

    @property
    def looic_se(self):
        return 2.0 * self.se

    @property
    def n_flagged(self):
        return int(np.sum(self.pareto_k > PARETO_K_QUESTIONABLE))


def check_convergence(fit, display=True):
    """Check MCMC convergence of a fit.

    Non-convergence is reported, never raised; callers should treat a False
    result as an untrustworthy fit.

    Returns:
        True when every parameter passes the R-hat and ESS-ratio limits
    """
    rhat = fit.rhat()
    ess_ratio = fit.ess_ratio()
    divergent = fit.divergences
    converged = fit.converged

    if display:
        print("\n" + "=" * 50)
        print(f"CONVERGENCE DIAGNOSTICS: {fit.spec.name}")
        print("=" * 50)

        print(f"R-hat (should be <= {RHAT_MAX}): max={rhat.max():.3f}", end="")
        print(" ✅" if (rhat <= RHAT_MAX).all() else " ⚠️  WARNING: Poor convergence!")
        for name in rhat.index[rhat > RHAT_MAX]:
            print(f"  {name}: {rhat[name]:.3f}")

        print(f"ESS ratio (should be >= {ESS_RATIO_MIN}): min={ess_ratio.min():.3f}", end="")
        print(" ✅" if (ess_ratio >= ESS_RATIO_MIN).all() else " ⚠️  WARNING: Low ESS!")

        print(f"Divergent transitions: {divergent}", end="")
        print(" ⚠️  WARNING: Divergent transitions detected!" if divergent else " ✅")

    return converged


def parameter_table(fit, hdi_prob=HDI_PROB):
    """Posterior summary for every coefficient and per-user intercept.

    Columns: mean, sd, hdi_lower, hdi_upper, r_hat, ess_ratio, prob_positive
    """
    posterior = fit.idata.posterior[fit.var_names]
    draws = posterior.stack(sample=('chain', 'draw'))

    table = pd.DataFrame({
        'mean': fit.posterior_mean(),
        'sd': _flatten_draws(draws, fit.var_names, lambda x: np.std(x, ddof=1)),
    })
    table = table.join(fit.hpdi(hdi_prob))
    table['r_hat'] = fit.rhat()
    table['ess_ratio'] = fit.ess_ratio()
    table['prob_positive'] = _flatten_draws(draws, fit.var_names, lambda x: np.mean(x > 0))
    table.index.name = 'parameter'
    return table


def _flatten_draws(draws, var_names, func):
    values = {}
    for var in var_names:
        array = draws[var]
        if array.ndim == 1:
            values[var] = float(func(array.values))
            continue
        dim = [d for d in array.dims if d != 'sample'][0]
        for label in array[dim].values:
            values[f'{var}[{label}]'] = float(func(array.sel({dim: label}).values))
    return pd.Series(values, dtype=float)


def psis_loo(fit):
    """Pareto-smoothed importance-sampling LOO for a fit (or InferenceData)."""
    idata = getattr(fit, 'idata', fit)
    loo = az.loo(idata, pointwise=True)
    return LooResult(
        elpd=float(loo.elpd_loo),
        se=float(loo.se),
        p_loo=float(loo.p_loo),
        pointwise_elpd=np.asarray(loo.loo_i),
        pareto_k=np.asarray(loo.pareto_k),
    )


def pareto_k_flags(pareto_k):
    """Label each observation by its Pareto k estimate."""
    k = np.asarray(pareto_k, dtype=float)
    labels = np.select(
        [k > PARETO_K_UNRELIABLE, k > PARETO_K_PROBLEMATIC, k > PARETO_K_QUESTIONABLE],
        ['unreliable', 'problematic', 'questionable'],
        default='good',
    )
    return pd.Series(labels, name='pareto_k_flag')


def _check_same_dataset(fits):
    dataset_ids = {fit.dataset_id for fit in fits.values()}
    if len(dataset_ids) != 1:
        raise ValueError(
            "LOO comparison needs every model fit on the identical filtered dataset; "
            f"got {len(dataset_ids)} different datasets for models {list(fits)}."
        )


def compare_models(fits):
    """Compare fits by LOO information criterion (LOOIC = -2 * elpd_loo).

    The model with the smallest LOOIC is preferred. `within_1se` marks models
    whose LOOIC difference to the preferred model is no larger than the
    standard error of that difference.

    Args:
        fits: dict of model name -> ModelFit, all fit on the same dataset

    Returns:
        DataFrame sorted by LOOIC
    """
    if len(fits) < 2:
        raise ValueError("Model comparison needs at least two fits.")
    _check_same_dataset(fits)

    loos = {name: psis_loo(fit) for name, fit in fits.items()}
    looic = pd.Series({name: loo.looic for name, loo in loos.items()})
    best = looic.idxmin()
    best_pointwise = loos[best].pointwise_elpd

    rows = []
    for name, loo in loos.items():
        diff = loo.looic - loos[best].looic
        se_diff = _looic_diff_se(loo.pointwise_elpd, best_pointwise)
        rows.append({
            'model': name,
            'looic': loo.looic,
            'looic_se': loo.looic_se,
            'elpd_loo': loo.elpd,
            'p_loo': loo.p_loo,
            'looic_diff': diff,
            'diff_se': se_diff,
            'n_pareto_k_flagged': loo.n_flagged,
            'preferred': name == best,
            'within_1se': diff <= se_diff,
        })

    table = pd.DataFrame(rows).sort_values('looic', kind='stable').set_index('model')
    table.insert(0, 'rank', np.arange(1, len(table) + 1))
    return table


def pairwise_loo_differences(fits):
    """LOOIC difference (second minus first) for every pair of fits."""
    _check_same_dataset(fits)
    loos = {name: psis_loo(fit) for name, fit in fits.items()}
    rows = []
    for first, second in combinations(loos, 2):
        rows.append({
            'model_a': first,
            'model_b': second,
            'looic_diff': loos[second].looic - loos[first].looic,
            'diff_se': _looic_diff_se(loos[second].pointwise_elpd,
                                      loos[first].pointwise_elpd),
        })
    return pd.DataFrame(rows)


def _looic_diff_se(pointwise_a, pointwise_b):
    diffs = -2.0 * (np.asarray(pointwise_a) - np.asarray(pointwise_b))
    if diffs.size < 2:
        return 0.0
    return float(np.sqrt(diffs.size * np.var(diffs, ddof=1)))


def sensitivity_table(sweep, hdi_prob=HDI_PROB):
    """Population-level estimates for each threshold of a sensitivity sweep.

    Args:
        sweep: Sequence of (threshold, ModelFit) pairs

    Returns:
        Long DataFrame with one row per threshold and parameter
    """
    frames = [_population_rows(fit, hdi_prob, 'min_traj', threshold)
              for threshold, fit in sweep]
    return pd.concat(frames, ignore_index=True)


def robustness_table(fits, hdi_prob=HDI_PROB):
    """Population-level estimates of fits on different datasets, side by side.

    Args:
        fits: dict of label -> ModelFit (e.g. all users vs outlier users removed)

    Returns:
        Long DataFrame with one row per fit and parameter
    """
    frames = [_population_rows(fit, hdi_prob, 'fit', label) for label, fit in fits.items()]
    return pd.concat(frames, ignore_index=True)


def _population_rows(fit, hdi_prob, key, value):
    table = parameter_table(fit, hdi_prob)
    table = table[~table.index.str.startswith('user_offset')].reset_index()
    table.insert(0, key, value)
    table.insert(1, 'n_obs', fit.n_obs)
    table.insert(2, 'n_users', len(fit.users))
    table['converged'] = fit.converged
    return table
