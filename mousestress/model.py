"""
Bayesian hierarchical logistic regression of stress on mouse behaviour.

For recording i of user u,

    stress_i ~ Bernoulli(p_i)
    logit(p_i) = mu_alpha + user_offset[u] + X_i @ beta

    user_offset[u] = tau * z_user[u],   z_user[u] ~ Normal(0, 1)
    beta           ~ StudentT(nu=7, mu=0, sigma=2.5)
    mu_alpha       ~ StudentT(nu=7, mu=0, sigma=10)
    tau            ~ HalfNormal(1)

The offsets are sampled in non-centered form; `user_offset` is stored as a
deterministic so the per-user deviations are available in the trace.
"""

import hashlib
from dataclasses import dataclass

import numpy as np
import pandas as pd
import pymc as pm
import arviz as az

from mousestress.data import (
    SENSITIVITY_THRESHOLDS,
    encode_covariate,
    filter_recordings,
    standardize_features,
)

DEFAULT_SEED = 1234

# Convergence limits
RHAT_MAX = 1.01
ESS_RATIO_MIN = 0.1

# Predictors with a precomputed standardized column
STANDARDIZED_COLUMNS = {
    'speed': 'speed_z',
    'accuracy': 'accuracy_z',
    'tradeoff': 'tradeoff_z',
    'clicks': 'clicks_z',
    'wheels': 'wheels_z',
}


@dataclass(frozen=True)
class PriorSpec:
    """Prior hyperparameters, fixed before fitting."""
    coef_nu: float = 7.0
    coef_mu: float = 0.0
    coef_sigma: float = 2.5
    intercept_nu: float = 7.0
    intercept_mu: float = 0.0
    intercept_sigma: float = 10.0
    tau_sigma: float = 1.0


@dataclass(frozen=True)
class SamplerConfig:
    draws: int = 2000
    tune: int = 1000
    chains: int = 4
    cores: int = 4
    target_accept: float = 0.95
    random_seed: int = DEFAULT_SEED
    progressbar: bool = True


@dataclass(frozen=True)
class ModelSpec:
    name: str
    predictors: tuple = ()


# Nested model sequence used for LOO comparison
MODEL_SPECS = (
    ModelSpec('null'),
    ModelSpec('mouse', ('speed', 'accuracy', 'tradeoff')),
    ModelSpec('usage', ('speed', 'accuracy', 'tradeoff', 'clicks', 'wheels')),
    ModelSpec('temporal', ('speed', 'accuracy', 'tradeoff', 'clicks', 'wheels',
                           'daytime', 'weekday')),
)


@dataclass(frozen=True)
class ModelFit:
    """Posterior of one model on one dataset.

    R-hat, ESS ratio, HPDI and means are computed from `idata` on demand;
    LOO and the summary tables live in `mousestress.diagnostics`.
    """
    spec: ModelSpec
    idata: az.InferenceData
    priors: PriorSpec
    sampler: SamplerConfig
    users: tuple
    coef_names: tuple
    dataset_id: str
    n_obs: int

    @property
    def n_draws(self):
        posterior = self.idata.posterior
        return posterior.sizes['chain'] * posterior.sizes['draw']

    @property
    def var_names(self):
        names = ['mu_alpha', 'tau']
        if self.coef_names:
            names.append('beta')
        names.append('user_offset')
        return names

    @property
    def divergences(self):
        stats = getattr(self.idata, 'sample_stats', None)
        if stats is None or 'diverging' not in stats:
            return 0
        return int(stats['diverging'].sum())

    def posterior_mean(self):
        means = self.idata.posterior[self.var_names].mean(dim=('chain', 'draw'))
        return flatten_parameters(means, self.var_names)

    def rhat(self):
        return flatten_parameters(az.rhat(self.idata, var_names=self.var_names),
                                  self.var_names)

    def ess_ratio(self):
        """Bulk effective sample size as a fraction of the pooled draws."""
        ess = az.ess(self.idata, var_names=self.var_names, method='bulk')
        return flatten_parameters(ess, self.var_names) / self.n_draws

    def hpdi(self, hdi_prob=0.95):
        """Highest posterior density interval per parameter, chains pooled."""
        hdi = az.hdi(self.idata, var_names=self.var_names, hdi_prob=hdi_prob)
        return pd.DataFrame({
            'hdi_lower': flatten_parameters(hdi.sel(hdi='lower'), self.var_names),
            'hdi_upper': flatten_parameters(hdi.sel(hdi='higher'), self.var_names),
        })

    @property
    def converged(self):
        """False when any parameter breaks the R-hat or ESS-ratio limit."""
        rhat = self.rhat()
        ess_ratio = self.ess_ratio()
        return bool((rhat <= RHAT_MAX).all() and (ess_ratio >= ESS_RATIO_MIN).all())


def flatten_parameters(dataset, var_names):
    """One value per scalar parameter, labelled like 'beta[speed]'."""
    values = {}
    for var in var_names:
        if var not in dataset:
            continue
        array = dataset[var]
        if array.ndim == 0:
            values[var] = float(array.values)
            continue
        dim = array.dims[0]
        for label in array[dim].values:
            values[f'{var}[{label}]'] = float(array.sel({dim: label}).values)
    return pd.Series(values, dtype=float)


def get_spec(name):
    """Look up one of the nested model specifications by name."""
    for spec in MODEL_SPECS:
        if spec.name == name:
            return spec
    raise ValueError(f"Unknown model '{name}'. Choose from: "
                     f"{', '.join(s.name for s in MODEL_SPECS)}")


def dataset_fingerprint(data):
    """Hash identifying the exact set of rows a model was fit on."""
    hashed = pd.util.hash_pandas_object(data, index=True).values
    return hashlib.sha1(hashed.tobytes()).hexdigest()


def build_design_matrix(data, predictors):
    """Collect the model columns for `predictors` and check they are usable.

    Args:
        data: Standardized DataFrame (see standardize_features)
        predictors: Sequence of predictor names

    Returns:
        DataFrame with one column per coefficient
    """
    if len(data) == 0:
        raise ValueError("Cannot fit a model to an empty dataset.")

    blocks = []
    for predictor in predictors:
        if predictor in STANDARDIZED_COLUMNS:
            column = STANDARDIZED_COLUMNS[predictor]
            if column not in data.columns:
                raise ValueError(
                    f"Column '{column}' not found; run standardize_features() first."
                )
            blocks.append(data[[column]].rename(columns={column: predictor}))
        elif predictor in data.columns:
            blocks.append(encode_covariate(data, predictor))
        else:
            raise ValueError(f"Predictor '{predictor}' is not a column of the data.")

    if not blocks:
        return pd.DataFrame(index=data.index)

    X = pd.concat(blocks, axis=1).astype(float)
    if X.isna().any().any():
        bad = X.columns[X.isna().any()].tolist()
        raise ValueError(f"Missing values in predictor(s): {', '.join(bad)}")

    # Intercept plus predictors must have full column rank
    full = np.column_stack([np.ones(len(X)), X.to_numpy()])
    rank = np.linalg.matrix_rank(full)
    if rank < full.shape[1]:
        raise ValueError(
            f"Design matrix is rank deficient (rank {rank} < {full.shape[1]} columns); "
            "check for constant or collinear predictors."
        )
    return X


def apply_hierarchical_logistic_model(data, spec, priors=PriorSpec()):
    """Build the PyMC model for one specification.

    Returns:
        (model, X, users) where users are the user labels in index order
    """
    X = build_design_matrix(data, spec.predictors)
    user_idx, users = pd.factorize(data['user'].astype(str), sort=True)
    y = data['stress'].to_numpy().astype('int64')

    coords = {'user': list(users), 'obs': np.arange(len(data))}
    if X.shape[1]:
        coords['coef'] = list(X.columns)

    with pm.Model(coords=coords) as model:
        user_id = pm.Data('user_id', user_idx.astype('int64'), dims='obs')

        # Population-level intercept and spread of user intercepts
        mu_alpha = pm.StudentT('mu_alpha', nu=priors.intercept_nu,
                               mu=priors.intercept_mu, sigma=priors.intercept_sigma)
        tau = pm.HalfNormal('tau', sigma=priors.tau_sigma)

        # Per-user deviations, non-centered
        z_user = pm.Normal('z_user', mu=0.0, sigma=1.0, dims='user')
        user_offset = pm.Deterministic('user_offset', tau * z_user, dims='user')

        eta = mu_alpha + user_offset[user_id]
        if X.shape[1]:
            x_data = pm.Data('X', X.to_numpy(), dims=('obs', 'coef'))
            beta = pm.StudentT('beta', nu=priors.coef_nu, mu=priors.coef_mu,
                               sigma=priors.coef_sigma, dims='coef')
            eta = eta + pm.math.dot(x_data, beta)

        pm.Bernoulli('stress', logit_p=eta, observed=y, dims='obs')

    return model, X, tuple(users)


def fit_model(data, spec, priors=PriorSpec(), sampler=SamplerConfig(), display=True):
    """Sample the posterior of `spec` on a standardized dataset.

    Args:
        data: Filtered and standardized DataFrame
        spec: ModelSpec naming the predictors
        priors: PriorSpec
        sampler: SamplerConfig (draws, warmup, chains, seed)
        display: Whether to print progress

    Returns:
        ModelFit
    """
    model, X, users = apply_hierarchical_logistic_model(data, spec, priors)

    if display:
        print(f"Model '{spec.name}': {len(data)} recordings, {len(users)} users, "
              f"coefficients: {list(X.columns) or 'none'}")

    with model:
        if display:
            print("Running MCMC sampling...")
        idata = pm.sample(
            draws=sampler.draws,
            tune=sampler.tune,
            chains=sampler.chains,
            cores=sampler.cores,
            target_accept=sampler.target_accept,
            random_seed=sampler.random_seed,
            progressbar=sampler.progressbar,
            idata_kwargs={'log_likelihood': True},
        )

    return ModelFit(
        spec=spec,
        idata=idata,
        priors=priors,
        sampler=sampler,
        users=users,
        coef_names=tuple(X.columns),
        dataset_id=dataset_fingerprint(data),
        n_obs=len(data),
    )


def sensitivity_sweep(data, spec, thresholds=SENSITIVITY_THRESHOLDS,
                      priors=PriorSpec(), sampler=SamplerConfig(), display=True):
    """Refit `spec` for each minimum-trajectory threshold.

    Each threshold gets its own filtered and re-standardized dataset and an
    independent fit with the same priors and seed.

    Args:
        data: Raw (unfiltered) DataFrame
        spec: ModelSpec to refit

    Returns:
        Tuple of (threshold, ModelFit) pairs in threshold order
    """
    results = []
    for threshold in sorted(thresholds):
        if display:
            print(f"\nMinimum trajectories = {threshold}")
        prepared = standardize_features(filter_recordings(data, threshold))
        results.append((threshold, fit_model(prepared, spec, priors, sampler, display)))
    return tuple(results)
