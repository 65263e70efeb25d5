import numpy as np
import pandas as pd

from mousestress import report
from mousestress.diagnostics import LooResult

from conftest import make_recordings


def test_descriptive_table():
    data = make_recordings()
    table = report.descriptive_table(data)
    assert table.index.tolist() == ["speed", "accuracy", "clicks", "wheels"]
    # Stress was simulated from speed
    assert table.loc["speed", "r_pointbiserial"] > 0
    assert table.loc["speed", "mean_stressed"] > table.loc["speed", "mean_not_stressed"]


def test_plot_descriptives_writes_file(tmp_path):
    path = report.plot_descriptives(make_recordings(), tmp_path)
    assert path.exists()


def test_plot_pareto_k_writes_file(tmp_path):
    loo = LooResult(elpd=-10.0, se=1.0, p_loo=2.0,
                    pointwise_elpd=np.full(5, -2.0),
                    pareto_k=np.array([0.1, 0.4, 0.6, 0.8, 1.2]))
    path = report.plot_pareto_k(loo, tmp_path, "mouse")
    assert path.name == "pareto_k_mouse.png"
    assert path.exists()


def test_plot_sensitivity_writes_file(tmp_path):
    rows = []
    for threshold in (2, 10, 50):
        for parameter in ("mu_alpha", "beta[speed]", "beta[accuracy]"):
            rows.append({"min_traj": threshold, "parameter": parameter,
                         "mean": 0.5, "hdi_lower": 0.1, "hdi_upper": 0.9})
    path = report.plot_sensitivity(pd.DataFrame(rows), tmp_path / "figures")
    assert path.exists()


def test_plot_sensitivity_without_coefficients(tmp_path):
    table = pd.DataFrame([{"min_traj": 10, "parameter": "mu_alpha",
                           "mean": 0.0, "hdi_lower": -1.0, "hdi_upper": 1.0}])
    assert report.plot_sensitivity(table, tmp_path) is None
