# tests/conftest.py
import os
import sys

import numpy as np
import pandas as pd
import pytest

# Ensure the project root (one level up from tests/) is on sys.path
ROOT = os.path.dirname(os.path.dirname(__file__))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from incremental.config import IncrementalWorkflowConfig  # noqa: E402


@pytest.fixture
def churn_df():
    """1,000 customers; Age is 15% missing, Churn is 200 Yes / 800 No."""
    rng = np.random.default_rng(7)
    n = 1000
    age = rng.integers(18, 80, size=n).astype(float)
    age[rng.choice(n, size=150, replace=False)] = np.nan
    churn = np.array(["Yes"] * 200 + ["No"] * 800)
    rng.shuffle(churn)
    return pd.DataFrame({
        "CustomerID": np.arange(1, n + 1),
        "Age": age,
        "Churn": churn,
    })


@pytest.fixture
def churn_csv(tmp_path, churn_df):
    path = tmp_path / "customers.csv"
    churn_df.to_csv(path, index=False)
    return str(path)


@pytest.fixture
def clean_csv(tmp_path):
    rng = np.random.default_rng(11)
    n = 200
    df = pd.DataFrame({
        "OrderID": np.arange(1, n + 1),
        "Quantity": rng.integers(1, 50, size=n),
        "Colour": rng.choice(["red", "green", "blue"], size=n),
    })
    path = tmp_path / "orders.csv"
    df.to_csv(path, index=False)
    return str(path)


@pytest.fixture
def messy_df():
    return pd.DataFrame({
        "Name": ["  Alice", "Bob  ", "Carol", "Dave", "Eve", "Frank"],
        "City": ["Paris", "paris", "PARIS", "London", "london", "Berlin"],
        "Joined": ["2023-01-05", "2023-02-10", "03/15/2023", "2023-04-01", "04.05.2023", "2023-06-30"],
        "Score": ["1,200", "3,400", "560", "7,800", "900", "1,000"],
        "Active": ["yes", "no", "Y", "N", "true", "false"],
    })


@pytest.fixture
def workflow_config(tmp_path):
    def make(**overrides):
        settings = {
            "output_directory": str(tmp_path / "cleaned"),
            "checkpoint_directory": str(tmp_path / "checkpoints"),
        }
        settings.update(overrides)
        return IncrementalWorkflowConfig(**settings)
    return make
