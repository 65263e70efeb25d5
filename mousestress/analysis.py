"""
Mouse movement and stress: complete analysis.

Run with something like:
    python -m mousestress --csv data/mouse_stress.csv --outdir results

This script:
1. Reads the recordings and drops rows without speed or with too few trajectories
2. Standardizes the mouse features and builds the speed/accuracy tradeoff
3. Fits the hierarchical logistic model (random intercept per user)
4. Checks convergence and writes the parameter table
5. Compares nested models with PSIS-LOO
6. Refits across minimum-trajectory thresholds (sensitivity check)
7. Refits without the users given by --drop-users (robustness check)
8. Saves charts and tables to the output folder
"""

import argparse
from pathlib import Path
import os

import arviz as az

from mousestress.data import (
    DEFAULT_MIN_TRAJ,
    SENSITIVITY_THRESHOLDS,
    drop_users,
    filter_recordings,
    read_data,
    retained_counts,
    standardize_features,
)
from mousestress.diagnostics import (
    HDI_PROB,
    check_convergence,
    compare_models,
    pairwise_loo_differences,
    parameter_table,
    pareto_k_flags,
    psis_loo,
    robustness_table,
    sensitivity_table,
)
from mousestress.model import (
    DEFAULT_SEED,
    MODEL_SPECS,
    PriorSpec,
    SamplerConfig,
    fit_model,
    get_spec,
    sensitivity_sweep,
)
from mousestress import report


def run_complete_analysis(csv_path, outdir, min_traj=DEFAULT_MIN_TRAJ, model_name='usage',
                          priors=PriorSpec(), sampler=SamplerConfig(), hdi_prob=HDI_PROB,
                          compare=True, sweep=True, thresholds=SENSITIVITY_THRESHOLDS,
                          outlier_users=()):
    """Run every analysis step and save the results to `outdir`.

    Returns:
        dict with the main fit, its parameter table, the comparison, sensitivity
        and outlier-user robustness tables (None for skipped steps)
    """
    outdir = Path(outdir)
    os.makedirs(outdir, exist_ok=True)
    spec = get_spec(model_name)

    print("=" * 60)
    print("MOUSE MOVEMENT AND STRESS - HIERARCHICAL BAYESIAN ANALYSIS")
    print("=" * 60)

    # Step 1: Load and filter
    print("\n1. LOADING AND FILTERING DATA")
    print("-" * 40)
    raw = read_data(csv_path, display=True)
    filtered = filter_recordings(raw, min_traj)
    print(f"Kept {len(filtered)} of {len(raw)} recordings "
          f"({filtered['user'].nunique()} users) with speed and n_traj >= {min_traj}")
    descriptives = report.descriptive_table(filtered)
    descriptives.to_csv(outdir / 'descriptives.csv')
    print("\nFeatures by stress label:")
    print(descriptives.round(3))
    report.plot_descriptives(filtered, outdir)

    # Step 2: Standardize
    print("\n2. STANDARDIZING FEATURES")
    print("-" * 40)
    data = standardize_features(filtered)
    print(data[['speed_z', 'accuracy_z', 'clicks_z', 'wheels_z', 'tradeoff_z']]
          .describe().loc[['mean', 'std']].round(3))

    # Step 3: Fit main model
    print(f"\n3. FITTING HIERARCHICAL LOGISTIC MODEL '{spec.name}'")
    print("-" * 40)
    fit = fit_model(data, spec, priors, sampler)
    az.to_netcdf(fit.idata, outdir / f'trace_{spec.name}.nc')

    # Step 4: Convergence and parameter table
    print("\n4. CHECKING MODEL CONVERGENCE")
    print("-" * 40)
    converged = check_convergence(fit)
    if not converged:
        print("⚠️  Results below come from a fit that did not converge; treat them with caution.")

    params = parameter_table(fit, hdi_prob)
    params.to_csv(outdir / 'parameter_table.csv')
    print("\nPopulation-level estimates:")
    print(params[~params.index.str.startswith('user_offset')].round(3))
    report.plot_posterior_distributions(fit, outdir)
    report.plot_trace(fit, outdir)

    loo = psis_loo(fit)
    flags = pareto_k_flags(loo.pareto_k)
    print(f"\nPSIS-LOO: elpd={loo.elpd:.2f} (se {loo.se:.2f}), LOOIC={loo.looic:.2f}")
    print(f"Pareto k flags: {flags.value_counts().to_dict()}")
    report.plot_pareto_k(loo, outdir, spec.name)

    # Step 5: Compare nested models on the same data
    comparison = None
    if compare:
        print("\n5. COMPARING NESTED MODELS (PSIS-LOO)")
        print("-" * 40)
        fits = {s.name: (fit if s.name == spec.name else fit_model(data, s, priors, sampler))
                for s in MODEL_SPECS}
        for name, other in fits.items():
            if name != spec.name:
                check_convergence(other)
        comparison = compare_models(fits)
        comparison.to_csv(outdir / 'model_comparison.csv')
        pairwise_loo_differences(fits).to_csv(outdir / 'model_pairwise_loo.csv', index=False)
        print(comparison.round(2))
        print(f"Preferred model (smallest LOOIC): {comparison.index[0]}")
        close = comparison.index[comparison['within_1se'] & ~comparison['preferred']]
        if len(close):
            print(f"  Within one SE of the preferred model: {', '.join(close)}")

    # Step 6: Sensitivity to the trajectory threshold
    sensitivity = None
    if sweep:
        print("\n6. MINIMUM-TRAJECTORY SENSITIVITY CHECK")
        print("-" * 40)
        counts = retained_counts(raw, thresholds)
        print(counts.to_string(index=False))
        results = sensitivity_sweep(raw, spec, thresholds, priors, sampler)
        sensitivity = sensitivity_table(results, hdi_prob)
        sensitivity.to_csv(outdir / 'sensitivity.csv', index=False)
        report.plot_sensitivity(sensitivity, outdir)
        unconverged = sorted(set(sensitivity.loc[~sensitivity['converged'], 'min_traj']))
        if unconverged:
            print(f"⚠️  Fits that did not converge at thresholds: {unconverged}")

    # Step 7: Robustness to outlier users
    robustness = None
    if outlier_users:
        print("\n7. OUTLIER-USER ROBUSTNESS CHECK")
        print("-" * 40)
        reduced = standardize_features(drop_users(filtered, outlier_users))
        print(f"Dropping users {list(outlier_users)}: {len(reduced)} of {len(data)} recordings left")
        reduced_fit = fit_model(reduced, spec, priors, sampler)
        check_convergence(reduced_fit)
        fits = {'all_users': fit, 'outliers_removed': reduced_fit}
        robustness = robustness_table(fits, hdi_prob)
        robustness.to_csv(outdir / 'robustness_drop_users.csv', index=False)
        print(robustness.round(3).to_string(index=False))
        try:
            compare_models(fits)
        except ValueError as err:
            print(f"LOO comparison not possible: {err}")

    print("\n" + "=" * 60)
    print("ANALYSIS COMPLETE!")
    print("=" * 60)
    print(f"Results saved to: {outdir}")

    return {
        'fit': fit,
        'parameters': params,
        'comparison': comparison,
        'sensitivity': sensitivity,
        'robustness': robustness,
    }


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Hierarchical Bayesian analysis of mouse movement and stress."
    )
    parser.add_argument('--csv', type=Path, required=True,
                        help="Path to the recordings CSV.")
    parser.add_argument('--outdir', type=Path, default=Path('output'),
                        help="Directory for tables, traces and figures.")
    parser.add_argument('--min-traj', type=int, default=DEFAULT_MIN_TRAJ,
                        help="Minimum number of mouse trajectories per recording.")
    parser.add_argument('--model', default='usage',
                        choices=[spec.name for spec in MODEL_SPECS],
                        help="Model specification for the main fit and the sweep.")
    parser.add_argument('--seed', type=int, default=DEFAULT_SEED)
    parser.add_argument('--hdi-prob', type=float, default=HDI_PROB)
    parser.add_argument('--draws', type=int, default=2000)
    parser.add_argument('--tune', type=int, default=1000)
    parser.add_argument('--chains', type=int, default=4)
    parser.add_argument('--cores', type=int, default=4)
    parser.add_argument('--target-accept', type=float, default=0.95)
    parser.add_argument('--no-compare', action='store_true',
                        help="Skip the nested model comparison.")
    parser.add_argument('--no-sweep', action='store_true',
                        help="Skip the minimum-trajectory sensitivity check.")
    parser.add_argument('--drop-users', nargs='+', default=[],
                        help="Users to leave out in the outlier-user robustness refit.")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    sampler = SamplerConfig(
        draws=args.draws,
        tune=args.tune,
        chains=args.chains,
        cores=args.cores,
        target_accept=args.target_accept,
        random_seed=args.seed,
    )
    return run_complete_analysis(
        args.csv,
        args.outdir,
        min_traj=args.min_traj,
        model_name=args.model,
        sampler=sampler,
        hdi_prob=args.hdi_prob,
        compare=not args.no_compare,
        sweep=not args.no_sweep,
        outlier_users=tuple(args.drop_users),
    )


if __name__ == "__main__":
    main()
