"""
Charts for the mouse/stress analysis. All functions only read the data and
fits they are given and write PNG files into `outdir`.
"""

import os
from pathlib import Path

import numpy as np
import pandas as pd
import arviz as az
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats

from mousestress.diagnostics import (
    PARETO_K_PROBLEMATIC,
    PARETO_K_QUESTIONABLE,
    PARETO_K_UNRELIABLE,
)

# Readable names for the model coefficients
COEF_LABELS = {
    'speed': 'Mouse speed',
    'accuracy': 'Mouse accuracy',
    'tradeoff': 'Speed-accuracy tradeoff',
    'clicks': 'Clicks',
    'wheels': 'Wheel scrolls (sqrt)',
}


def _save(fig, outdir, filename):
    outdir = Path(outdir)
    os.makedirs(outdir, exist_ok=True)
    path = outdir / filename
    fig.savefig(path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    return path


def descriptive_table(data, columns=('speed', 'accuracy', 'clicks', 'wheels')):
    """Feature means by stress label and point-biserial correlation with stress."""
    rows = []
    for column in columns:
        pairs = data[[column, 'stress']].dropna()
        if pairs[column].nunique() > 1 and pairs['stress'].nunique() > 1:
            r, p = stats.pointbiserialr(pairs['stress'], pairs[column])
        else:
            r, p = np.nan, np.nan
        rows.append({
            'feature': column,
            'mean_not_stressed': pairs.loc[pairs['stress'] == 0, column].mean(),
            'mean_stressed': pairs.loc[pairs['stress'] == 1, column].mean(),
            'r_pointbiserial': r,
            'p_value': p,
        })
    return pd.DataFrame(rows).set_index('feature')


def plot_descriptives(data, outdir):
    """Stress rate per user, speed vs accuracy, trajectory counts."""
    fig, axes = plt.subplots(1, 3, figsize=(18, 5))

    # Stress rate per user, ordered by rate
    rates = data.groupby('user')['stress'].mean().sort_values()
    sns.barplot(x=rates.index.astype(str), y=rates.values, color='steelblue', ax=axes[0])
    axes[0].set_title('Proportion of stressed recordings per user')
    axes[0].set_xlabel('User')
    axes[0].set_ylabel('P(stress)')
    axes[0].tick_params(axis='x', rotation=90)

    sns.scatterplot(data=data, x='speed', y='accuracy', hue='stress',
                    palette={0: 'tab:blue', 1: 'tab:red'}, alpha=0.6, ax=axes[1])
    axes[1].set_title('Mouse speed vs accuracy')

    sns.histplot(data=data, x='n_traj', bins=30, ax=axes[2])
    axes[2].set_title('Trajectories per recording')

    plt.tight_layout()
    return _save(fig, outdir, 'descriptives.png')


def plot_posterior_distributions(fit, outdir):
    """Posterior of every coefficient with a reference line at zero."""
    names = list(fit.coef_names)
    panels = len(names) + 2
    ncols = min(3, panels)
    nrows = int(np.ceil(panels / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(5 * ncols, 4 * nrows), squeeze=False)
    axes = axes.ravel()

    for ax, name in zip(axes, names):
        az.plot_posterior(fit.idata, var_names=['beta'], coords={'coef': [name]}, ax=ax)
        ax.set_title(f'{COEF_LABELS.get(name, name)} effect on stress (log-odds)')
        ax.axvline(0, color='red', linestyle='--', alpha=0.7)

    az.plot_posterior(fit.idata, var_names=['mu_alpha'], ax=axes[len(names)])
    axes[len(names)].set_title('Population intercept')
    az.plot_posterior(fit.idata, var_names=['tau'], ax=axes[len(names) + 1])
    axes[len(names) + 1].set_title('SD of user intercepts')

    for ax in axes[panels:]:
        ax.axis('off')

    plt.tight_layout()
    return _save(fig, outdir, f'posterior_{fit.spec.name}.png')


def plot_trace(fit, outdir):
    var_names = [v for v in fit.var_names if v != 'user_offset']
    axes = az.plot_trace(fit.idata, var_names=var_names)
    fig = np.asarray(axes).ravel()[0].figure
    plt.tight_layout()
    return _save(fig, outdir, f'trace_{fit.spec.name}.png')


def plot_pareto_k(loo, outdir, name):
    """Pareto k per observation with the 0.5 / 0.7 / 1.0 limits marked."""
    k = loo.pareto_k
    fig, ax = plt.subplots(figsize=(10, 4))
    colors = np.where(k > PARETO_K_PROBLEMATIC, 'tab:red',
                      np.where(k > PARETO_K_QUESTIONABLE, 'tab:orange', 'tab:blue'))
    ax.scatter(np.arange(len(k)), k, c=colors, s=12)
    for limit in (PARETO_K_QUESTIONABLE, PARETO_K_PROBLEMATIC, PARETO_K_UNRELIABLE):
        ax.axhline(limit, color='gray', linestyle='--', alpha=0.7)
    ax.set_xlabel('Observation')
    ax.set_ylabel('Pareto k')
    ax.set_title(f'PSIS-LOO diagnostics: {name}')
    return _save(fig, outdir, f'pareto_k_{name}.png')


def plot_sensitivity(sensitivity, outdir):
    """Coefficient mean and HPDI against the minimum-trajectory threshold."""
    coefs = sensitivity[sensitivity['parameter'].str.startswith('beta[')]
    parameters = list(dict.fromkeys(coefs['parameter']))
    if not parameters:
        return None

    fig, axes = plt.subplots(1, len(parameters), figsize=(5 * len(parameters), 4),
                             squeeze=False)
    for ax, parameter in zip(axes.ravel(), parameters):
        rows = coefs[coefs['parameter'] == parameter]
        x = np.arange(len(rows))
        ax.errorbar(x, rows['mean'],
                    yerr=[rows['mean'] - rows['hdi_lower'], rows['hdi_upper'] - rows['mean']],
                    fmt='o', color='black', capsize=4)
        ax.axhline(0, color='red', linestyle='--', alpha=0.7)
        ax.set_xticks(x)
        ax.set_xticklabels(rows['min_traj'].astype(str))
        ax.set_xlabel('Minimum trajectories')
        name = parameter[len('beta['):-1]
        ax.set_title(COEF_LABELS.get(name, name))
    axes[0, 0].set_ylabel('Coefficient (log-odds)')

    plt.tight_layout()
    return _save(fig, outdir, 'sensitivity.png')
