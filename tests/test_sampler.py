import math

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from glmbfp import (GlmSamples, Iwls, McmcState, Sample, SamplerOptions,
                    Samples, accept_proposal, approximate_z_marginal,
                    draw_normal_vector, find_z_mode, laplace_log_marginal_z,
                    log_marginal_likelihood, plot_trace, run_analysis,
                    sample_glm, sample_glm_chains, summary_report)
from glmfamily import (FixedZMarginal, GlmModelConfig, HypergPrior,
                       NormalZMarginal)

EPSILON = 1e-8


def _options(**kwargs):
    settings = dict(iterations=60, burnin=10, step=1,
                    convergence_tolerance=EPSILON)
    settings.update(kwargs)
    return SamplerOptions(**settings)


def test_log_proposal_density_matches_scipy(logistic_data):
    design, config = logistic_data
    iwls = Iwls(design, config, EPSILON)
    iwls.run_from_lin_pred(30, 4.0)
    info = iwls.results
    z_marginal = NormalZMarginal(1.0, 0.5)
    coefs = info.coefs_mean + np.array([0.05, -0.1, 0.2])
    state = McmcState(Sample(coefs, 1.4), 0.0, info, z_marginal)

    cov = np.linalg.inv(info.q_factor @ info.q_factor.T)
    expected = (stats.multivariate_normal(info.coefs_mean, cov).logpdf(coefs)
                + stats.norm(1.0, 0.5).logpdf(1.4))
    assert state.log_proposal_density() == pytest.approx(expected)


def test_state_copy_is_independent(logistic_data):
    design, config = logistic_data
    iwls = Iwls(design, config, EPSILON)
    iwls.run_from_lin_pred(30, 4.0)
    state = McmcState(Sample(np.zeros(3), 0.0), -1.0, iwls.results,
                      FixedZMarginal(0.0))
    other = state.copy()
    other.sample.coefs[0] = 5.0
    other.sample.z = 2.0
    other.proposal_info.coefs_mean[:] = 1.0
    assert state.sample.coefs[0] == 0.0
    assert state.sample.z == 0.0
    assert not np.any(state.proposal_info.coefs_mean == 1.0)
    assert other.z_marginal is state.z_marginal


def test_draw_normal_vector_covariance():
    rng = np.random.default_rng(11)
    precision = np.array([[4.0, 1.0], [1.0, 2.0]])
    q_factor = np.linalg.cholesky(precision)
    mean = np.array([1.0, -2.0])
    draws = np.array([draw_normal_vector(mean, q_factor, rng)
                      for _ in range(20000)])
    np.testing.assert_allclose(draws.mean(axis=0), mean, atol=0.03)
    np.testing.assert_allclose(np.cov(draws.T), np.linalg.inv(precision),
                               atol=0.02)


def test_accept_proposal():
    assert accept_proposal(-50.0, 0.0)
    assert accept_proposal(1e6, 0.999)
    assert accept_proposal(math.log(0.5), 0.49)
    assert not accept_proposal(math.log(0.5), 0.51)
    assert not accept_proposal(float("nan"), 0.3)


def test_sample_store_capacity():
    samples = Samples(2, 2)
    samples.store_parameters(Sample(np.array([1.0, 2.0]), 0.5))
    samples.store_parameters(Sample(np.array([3.0, 4.0]), 0.6))
    with pytest.raises(RuntimeError, match="full"):
        samples.store_parameters(Sample(np.array([5.0, 6.0]), 0.7))
    samples.store_marg_lik_terms(0.2, 0.9)
    result = samples.to_result(1, -10.0, 5)
    np.testing.assert_array_equal(result.coefficients, [[1.0, 3.0], [2.0, 4.0]])
    np.testing.assert_array_equal(result.z, [0.5, 0.6])
    assert result.acceptance_rate == pytest.approx(0.2)


@pytest.mark.parametrize("iterations, burnin, step, expected", [
    (25, 0, 1, 25), (20, 3, 4, 5), (20, 4, 4, 4), (10, 10, 1, 0), (5, 8, 2, 0),
])
def test_options_n_samples(iterations, burnin, step, expected):
    options = _options(iterations=iterations, burnin=burnin, step=step)
    assert options.n_samples == expected


def test_options_validation():
    with pytest.raises(ValueError, match="step"):
        _options(step=0)
    with pytest.raises(ValueError, match="convergence_tolerance"):
        _options(convergence_tolerance=0.0)
    with pytest.raises(ValueError, match="fixed_z"):
        _options(use_fixed_z=True)
    with pytest.raises(ValueError, match="non-negative"):
        _options(iterations=-1)


@pytest.mark.parametrize("iterations, burnin, step", [(30, 0, 1), (31, 5, 3)])
def test_stored_sample_count(logistic_data, iterations, burnin, step):
    design, config = logistic_data
    options = _options(iterations=iterations, burnin=burnin, step=step)
    result = sample_glm(design, config, options, rng_seed=3)
    expected = math.ceil((iterations - burnin) / step)
    assert result.n_samples == expected
    assert result.coefficients.shape == (3, expected)
    assert result.z.shape == (expected,)
    assert result.marg_lik_numerator.shape == (expected,)
    assert result.marg_lik_denominator.shape == (expected,)


def test_sampler_is_reproducible(logistic_data):
    design, config = logistic_data
    options = _options()
    first = sample_glm(design, config, options, rng_seed=42)
    second = sample_glm(design, config, options, rng_seed=42)
    np.testing.assert_array_equal(first.coefficients, second.coefficients)
    np.testing.assert_array_equal(first.z, second.z)
    np.testing.assert_array_equal(first.marg_lik_numerator,
                                  second.marg_lik_numerator)
    assert first.n_accepted == second.n_accepted

    other = sample_glm(design, config, options, rng_seed=43)
    assert not np.array_equal(first.coefficients, other.coefficients)


def test_explicit_generator_matches_seed(logistic_data):
    design, config = logistic_data
    options = _options(iterations=20, burnin=0)
    a = sample_glm(design, config, options, rng=np.random.default_rng(8))
    b = sample_glm(design, config, options, rng_seed=8)
    np.testing.assert_array_equal(a.coefficients, b.coefficients)


def test_sampler_explores_posterior(logistic_data):
    design, config = logistic_data
    options = _options(iterations=600, burnin=100)
    result = sample_glm(design, config, options, rng_seed=1)
    assert 0.3 < result.acceptance_rate <= 1.0

    iwls = Iwls(design, config, EPSILON)
    iwls.run_from_lin_pred(30, math.exp(np.median(result.z)))
    mode = iwls.results.coefs_mean
    post_mean = result.coefficients.mean(axis=1)
    post_sd = result.coefficients.std(axis=1)
    assert np.all(np.abs(post_mean - mode) < 3.0 * post_sd)


def test_bridge_terms_are_bounded(logistic_data):
    design, config = logistic_data
    result = sample_glm(design, config, _options(iterations=80), rng_seed=5)
    denom = result.marg_lik_denominator
    num = result.marg_lik_numerator
    assert np.all((denom > 0.0) & (denom <= 1.0))
    assert np.all(num > 0.0) and np.all(np.isfinite(num))
    assert np.isfinite(log_marginal_likelihood(result))


def test_no_bridge_terms_without_estimation(logistic_data):
    design, config = logistic_data
    result = sample_glm(design, config,
                        _options(estimate_marg_lik=False), rng_seed=5)
    assert result.marg_lik_numerator.size == 0
    with pytest.raises(ValueError, match="estimate_marg_lik"):
        log_marginal_likelihood(result)


def test_running_marginal_likelihood(logistic_data):
    design, config = logistic_data
    result = sample_glm(design, config, _options(iterations=40), rng_seed=6)
    running = log_marginal_likelihood(result, running=True)
    assert running.shape == (result.n_samples,)
    assert running[-1] == pytest.approx(log_marginal_likelihood(result))


def test_marginal_likelihood_exact_for_gaussian_fixed_z(gaussian_data):
    design, config = gaussian_data
    z = math.log(10.0)
    options = _options(iterations=100, burnin=0, use_fixed_z=True, fixed_z=z)
    result = sample_glm(design, config, options, rng_seed=2)
    np.testing.assert_array_equal(result.z, np.full(100, z))
    # proposals are the exact conditional posterior, so nearly all accepted
    assert result.n_accepted >= 95

    iwls = Iwls(design, config, EPSILON, use_fixed_z=True)
    exact = laplace_log_marginal_z(iwls, z)
    assert log_marginal_likelihood(result) == pytest.approx(exact, abs=1e-6)


def test_null_model_sampling():
    rng = np.random.default_rng(12)
    y = rng.binomial(1, 0.3, size=80).astype(float)
    config = GlmModelConfig.from_family("binomial", y, HypergPrior())
    design = np.ones((80, 1))
    options = _options(iterations=400, burnin=50, is_null_model=True)
    result = sample_glm(design, config, options, rng_seed=4)
    np.testing.assert_array_equal(result.z, np.zeros(result.n_samples))
    p_hat = y.mean()
    se = 1.0 / math.sqrt(80 * p_hat * (1 - p_hat))
    assert abs(result.coefficients[0].mean() - math.log(p_hat / (1 - p_hat))) < se
    assert np.isfinite(log_marginal_likelihood(result))


def test_null_model_flag_mismatch(logistic_data):
    design, config = logistic_data
    with pytest.raises(ValueError, match="is_null_model"):
        sample_glm(design, config, _options(is_null_model=True))


def test_user_supplied_z_marginal(logistic_data):
    design, config = logistic_data
    z_marginal = NormalZMarginal(2.0, 0.3)
    result = sample_glm(design, config, _options(iterations=40, burnin=0),
                        z_marginal=z_marginal, start_z=2.0, rng_seed=0)
    assert result.n_samples == 40
    assert np.all(np.abs(result.z - 2.0) < 2.0)


def test_z_mode_and_marginal(logistic_data):
    design, config = logistic_data
    iwls = Iwls(design, config, EPSILON)
    z_mode, z_sd = find_z_mode(iwls)
    assert -10.0 < z_mode < 25.0
    assert z_sd > 0.0
    at_mode = laplace_log_marginal_z(iwls, z_mode)
    assert at_mode >= laplace_log_marginal_z(iwls, z_mode + 1.0)
    assert at_mode >= laplace_log_marginal_z(iwls, z_mode - 1.0)

    z_marginal = approximate_z_marginal(iwls)
    assert z_marginal.mean == pytest.approx(z_mode)

    with pytest.raises(ValueError):
        find_z_mode(Iwls(design, config, EPSILON, use_fixed_z=True))


def test_chains_match_single_runs(logistic_data):
    design, config = logistic_data
    options = _options(iterations=30, burnin=0)
    chains = sample_glm_chains(design, config, options, num_chains=2,
                               rng_seed=10, max_workers=1)
    assert len(chains) == 2
    for k, chain in enumerate(chains):
        single = sample_glm(design, config, options, rng_seed=10 + k)
        np.testing.assert_array_equal(chain.coefficients, single.coefficients)


def test_summary_report(logistic_data, tmp_path):
    design, config = logistic_data
    options = _options(iterations=60, burnin=10)
    chains = [sample_glm(design, config, options, rng_seed=s) for s in (1, 2)]
    filepath = tmp_path / "summary.csv"
    df = summary_report(chains, str(filepath),
                        coef_names=["(Intercept)", "x1", "x2"])
    assert list(df["parameter"]) == ["(Intercept)", "x1", "x2", "z"]
    assert {"mean", "q0.03", "q0.97", "n_eff", "r_hat"} <= set(df.columns)
    assert filepath.exists()
    assert len(pd.read_csv(filepath)) == 4

    with pytest.raises(ValueError, match="names"):
        summary_report(chains, coef_names=["a"])


def test_plot_trace(logistic_data, tmp_path):
    design, config = logistic_data
    options = _options(iterations=30, burnin=0)
    chains = [sample_glm(design, config, options, rng_seed=s) for s in (1, 2)]
    outpath = plot_trace(chains, str(tmp_path / "model"))
    assert outpath.endswith("_trace.pdf")
    assert (tmp_path / "model_trace.pdf").exists()


def test_run_analysis_from_dataframe():
    rng = np.random.default_rng(21)
    N = 120
    df = pd.DataFrame({"x1": rng.standard_normal(N),
                       "x2": rng.standard_normal(N)})
    eta = 0.2 + 0.8 * df["x1"]
    df["y"] = rng.poisson(np.exp(eta)).astype(float)
    df.loc[3, "x2"] = np.nan

    out = run_analysis(df, "y", ["x1", "x2"], convergence_tolerance=EPSILON,
                       family="poisson", iterations=60, burnin=10,
                       num_chains=2, max_workers=1)
    assert out["design"].shape == (N - 1, 3)
    np.testing.assert_allclose(out["design"][:, 1:].mean(axis=0), 0.0, atol=1e-12)
    assert out["coef_names"] == ["(Intercept)", "x1", "x2"]
    assert len(out["chains"]) == 2
    assert all(isinstance(c, GlmSamples) for c in out["chains"])
    assert len(out["log_marg_lik"]) == 2
    assert len(out["summary"]) == 4


def test_nearly_separated_logistic_data():
    rng = np.random.default_rng(9)
    N = 40
    x = 4.0 * rng.standard_normal(N)
    y = (x > 0).astype(float)
    y[np.argmin(np.abs(x))] = 1.0 - y[np.argmin(np.abs(x))]
    design = np.column_stack([np.ones(N), x - x.mean()])
    config = GlmModelConfig.from_family("binomial", y, HypergPrior())
    result = sample_glm(design, config, _options(iterations=300, burnin=0),
                        z_marginal=NormalZMarginal(5.0, 2.0), start_z=5.0,
                        rng_seed=0)
    assert result.n_samples == 300
    assert np.all(np.isfinite(result.coefficients))
    assert np.all(np.isfinite(result.z))
    assert np.all(np.isfinite(result.marg_lik_numerator))


def test_thinning_grid_ends_at_last_iteration(logistic_data, capsys):
    design, config = logistic_data
    options = _options(iterations=31, burnin=5, step=3,
                       estimate_marg_lik=False, debug=True)
    sample_glm(design, config, options, rng_seed=0)
    stored = [int(line.rsplit(" ", 1)[1])
              for line in capsys.readouterr().out.splitlines()
              if line.startswith("sample_glm: storing sample of iteration")]
    assert stored == list(range(7, 32, 3))
