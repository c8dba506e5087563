import numpy as np
import pytest

from glmfamily import GlmModelConfig, HypergPrior


@pytest.fixture
def logistic_data():
    rng = np.random.default_rng(1)
    N = 150
    x = rng.standard_normal((N, 2))
    design = np.column_stack([np.ones(N), x - x.mean(axis=0)])
    eta = -0.3 + design[:, 1:] @ np.array([1.0, -0.7])
    y = rng.binomial(1, 1.0 / (1.0 + np.exp(-eta))).astype(float)
    config = GlmModelConfig.from_family("binomial", y, HypergPrior(4.0))
    return design, config


@pytest.fixture
def gaussian_data():
    rng = np.random.default_rng(2)
    N = 60
    x = rng.standard_normal((N, 3))
    design = np.column_stack([np.ones(N), x - x.mean(axis=0)])
    y = design @ np.array([0.5, 1.0, 0.0, -2.0]) + rng.standard_normal(N)
    config = GlmModelConfig.from_family("gaussian", y, HypergPrior(3.0))
    return design, config
