"""
Loading, filtering and standardizing mouse-movement recordings.

One row of the input CSV is one recording session of one user:

    user, n_traj, speed, accuracy, wheels, clicks,
    daytime, weekday, valence, arousal, stress

Rows without a speed value or with too few mouse trajectories are dropped
before modelling, and the continuous features are rescaled to zero mean and
unit (sample) standard deviation over the rows that survive the filter.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd

# Columns every input file must provide
REQUIRED_COLUMNS = [
    'user', 'n_traj', 'speed', 'accuracy', 'wheels', 'clicks',
    'daytime', 'weekday', 'valence', 'arousal', 'stress'
]

# Minimum number of mouse trajectories per recording
DEFAULT_MIN_TRAJ = 10

# Thresholds used for the minimum-trajectory robustness check
SENSITIVITY_THRESHOLDS = (2, 5, 10, 15, 20, 30, 50, 100)

# Feature -> (source column, transform applied before standardizing)
FEATURE_TRANSFORMS = {
    'speed': ('speed', None),
    'accuracy': ('accuracy', None),
    'clicks': ('clicks', None),
    'wheels': ('wheels', np.sqrt),
}

# Covariates dummy coded even when stored as numbers
CATEGORICAL_COVARIATES = {'weekday'}


@dataclass(frozen=True)
class StandardizedFeature:
    """A column rescaled to (x - mean) / sd over the current dataset."""
    name: str
    values: pd.Series
    mean: float
    sd: float


def read_data(file_path, display=False):
    """Read the recordings CSV and validate its columns.

    Args:
        file_path: Path to the CSV file (header row, empty fields for missing values)
        display: Whether to print summary statistics

    Returns:
        DataFrame with one row per recording
    """
    data = pd.read_csv(file_path, dtype={'user': str})

    missing = [col for col in REQUIRED_COLUMNS if col not in data.columns]
    if missing:
        raise ValueError(f"CSV is missing required column(s): {', '.join(missing)}")

    # Stress is the outcome and must be a complete 0/1 label
    stress = pd.to_numeric(data['stress'], errors='coerce')
    if stress.isna().any() or not stress.isin([0, 1]).all():
        raise ValueError("Column 'stress' must contain only 0/1 values.")
    data['stress'] = stress.astype(int)

    if display:
        print("\nRaw data sample:")
        print(data.head())
        print(f"\nRecordings: {len(data)}, users: {data['user'].nunique()}")
        print(f"Missing speed values: {data['speed'].isna().sum()}")
        print(f"Stress rate: {data['stress'].mean():.3f}")

    return data


def filter_recordings(data, min_traj=DEFAULT_MIN_TRAJ):
    """Keep recordings with a speed value and at least `min_traj` trajectories."""
    if min_traj < 0:
        raise ValueError(f"min_traj must be >= 0, got {min_traj}")
    mask = data['speed'].notna() & (data['n_traj'] >= min_traj)
    return data.loc[mask].copy()


def drop_users(data, users):
    """Remove every recording of the given users."""
    users = {str(u) for u in users}
    return data.loc[~data['user'].astype(str).isin(users)].copy()


def standardize(values, name=None):
    """Rescale a column to zero mean and unit sample standard deviation.

    Null entries are ignored when computing the moments and stay null in the
    output.

    Args:
        values: Series (or array-like) of numeric values
        name: Feature name used in error messages and on the result

    Returns:
        StandardizedFeature
    """
    values = pd.to_numeric(pd.Series(values), errors='coerce').astype(float)
    name = name if name is not None else values.name

    observed = values.dropna()
    mean = observed.mean()
    sd = observed.std(ddof=1)
    if observed.size < 2 or not np.isfinite(sd) or sd == 0:
        raise ValueError(
            f"Cannot standardize '{name}': standard deviation is {sd} "
            f"over {observed.size} non-null value(s)."
        )

    return StandardizedFeature(name=name, values=(values - mean) / sd,
                               mean=float(mean), sd=float(sd))


def interaction(first, second, name='tradeoff'):
    """Standardized product of two already standardized features."""
    for feature in (first, second):
        if not isinstance(feature, StandardizedFeature):
            raise TypeError(
                "interaction() needs StandardizedFeature inputs; "
                f"got {type(feature).__name__}"
            )
    return standardize(first.values * second.values, name=name)


def encode_covariate(data, column):
    """Numeric covariates are standardized, categorical ones dummy coded.

    Columns in CATEGORICAL_COVARIATES are always dummy coded. Missing values
    stay NaN in every output column.

    Returns:
        DataFrame of model-ready columns named after `column`
    """
    raw = data[column]
    numeric = pd.to_numeric(raw, errors='coerce')
    if column not in CATEGORICAL_COVARIATES and numeric.notna().sum() == raw.notna().sum():
        feature = standardize(numeric, name=column)
        return pd.DataFrame({f'{column}_z': feature.values}, index=data.index)

    missing = raw.isna()
    labels = raw.astype(str).where(~missing)
    levels = sorted(labels.dropna().unique())
    if len(levels) < 2:
        raise ValueError(f"Covariate '{column}' has fewer than two levels.")
    # Treatment coding against the first level
    categories = pd.Categorical(labels, categories=levels)
    dummies = pd.get_dummies(categories, prefix=column, drop_first=True, dtype=float)
    dummies.index = data.index
    # Missing labels stay missing instead of looking like the reference level
    dummies.loc[missing.to_numpy()] = np.nan
    return dummies


def standardize_features(data):
    """Add standardized mouse features and the speed/accuracy tradeoff.

    Moments are taken over `data` as given, so filter first.

    Returns:
        Copy of `data` with speed_z, accuracy_z, clicks_z, wheels_z, tradeoff_z
    """
    result = data.copy()
    features = {}
    for feature_name, (column, transform) in FEATURE_TRANSFORMS.items():
        values = pd.to_numeric(result[column], errors='coerce').astype(float)
        if transform is not None:
            values = transform(values)
        features[feature_name] = standardize(values, name=feature_name)
        result[f'{feature_name}_z'] = features[feature_name].values

    result['tradeoff_z'] = interaction(features['speed'], features['accuracy']).values
    return result


def retained_counts(data, thresholds=SENSITIVITY_THRESHOLDS):
    """Number of recordings and users left for each trajectory threshold."""
    rows = []
    for threshold in thresholds:
        filtered = filter_recordings(data, threshold)
        rows.append({
            'min_traj': threshold,
            'recordings': len(filtered),
            'users': filtered['user'].nunique(),
        })
    return pd.DataFrame(rows)
