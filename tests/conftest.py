import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import arviz as az
import pytest
from scipy import stats

from mousestress.model import ModelFit, ModelSpec, PriorSpec, SamplerConfig

WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri"]


def make_recordings(n_users=6, per_user=25, seed=0):
    rng = np.random.default_rng(seed)
    n = n_users * per_user
    users = np.repeat([f"u{i}" for i in range(n_users)], per_user)
    user_effect = np.repeat(rng.normal(0, 0.5, n_users), per_user)
    speed = rng.normal(1.0, 0.3, n)
    accuracy = rng.normal(0.8, 0.1, n)
    logit = -0.5 + 1.5 * (speed - 1.0) / 0.3 + user_effect
    stress = rng.binomial(1, 1 / (1 + np.exp(-logit)))
    return pd.DataFrame({
        "user": users,
        "n_traj": rng.integers(0, 120, n),
        "speed": speed,
        "accuracy": accuracy,
        "wheels": rng.poisson(20, n),
        "clicks": rng.poisson(40, n),
        "daytime": rng.uniform(8, 20, n),
        "weekday": rng.choice(WEEKDAYS, n),
        "valence": rng.integers(1, 8, n),
        "arousal": rng.integers(1, 8, n),
        "stress": stress,
    })


@pytest.fixture
def recordings():
    return make_recordings()


@pytest.fixture
def recordings_csv(tmp_path, recordings):
    path = tmp_path / "recordings.csv"
    recordings.to_csv(path, index=False)
    return path


def normal_model_idata(y, mu_center, chains=4, draws=500, seed=0):
    """InferenceData of a unit-variance normal model with posterior draws of mu."""
    rng = np.random.default_rng(seed)
    y = np.asarray(y, dtype=float)
    mu = rng.normal(mu_center, 1 / np.sqrt(len(y)), size=(chains, draws))
    log_lik = stats.norm.logpdf(y[None, None, :], loc=mu[:, :, None], scale=1.0)
    return az.from_dict(posterior={"mu": mu}, log_likelihood={"y": log_lik})


def fake_fit(idata, dataset_id="same", name="m", users=("u0",), coef_names=()):
    return ModelFit(
        spec=ModelSpec(name),
        idata=idata,
        priors=PriorSpec(),
        sampler=SamplerConfig(),
        users=tuple(users),
        coef_names=tuple(coef_names),
        dataset_id=dataset_id,
        n_obs=0,
    )
