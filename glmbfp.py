import os
import math
import warnings
import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import arviz as az
from scipy.linalg import LinAlgError, cho_solve, cholesky, solve_triangular
from scipy.optimize import minimize_scalar
from numpyro.diagnostics import effective_sample_size, split_gelman_rubin

from glmfamily import (FixedZMarginal, GlmModelConfig, HypergPrior,
                       NormalZMarginal, get_family)

# Ensure tqdm can detect a terminal width in non-TTY environments
# (cloud notebooks, piped output) so progress bars update in-place.
os.environ.setdefault("COLUMNS", "120")

__all__ = [
    "criterion", "IwlsError", "ProposalInfo", "Iwls",
    "Sample", "McmcState", "draw_normal_vector", "accept_proposal",
    "Samples", "GlmSamples", "SamplerOptions", "sample_glm",
    "laplace_log_marginal_z", "find_z_mode", "approximate_z_marginal",
    "log_marginal_likelihood", "sample_glm_chains",
    "summary_report", "plot_trace", "run_analysis",
]

LN_SQRT_2PI = 0.5 * math.log(2.0 * math.pi)
DEFAULT_MAX_IWLS_ITERATIONS = 30


# ---------------------------------------------------------------------------
# IWLS engine
# ---------------------------------------------------------------------------

def criterion(a, b):
    """Relative change ``max_j |a_j - b_j| / (|b_j| + 0.01)``.

    Asymmetric: the denominator uses ``b`` only. The elementwise terms are
    reduced with an exact maximum, so the result does not depend on
    evaluation order.
    """
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        raise ValueError(f"criterion needs vectors of equal length, "
                         f"got {a.shape} and {b.shape}")
    if a.size == 0:
        return 0.0
    return float(np.max(np.abs(a - b) / (np.abs(b) + 0.01)))


class IwlsError(RuntimeError):
    """A precision matrix could not be Cholesky factorized.

    Attributes
    ----------
    operation : str
        What was being factorized.
    iteration : int or None
        1-based IWLS iteration, None outside the iteration loop.
    g : float or None
        Covariance factor in effect, None outside the iteration loop.
    """

    def __init__(self, operation, iteration=None, g=None):
        self.operation = operation
        self.iteration = iteration
        self.g = g
        if g is None:
            self.z = None
        else:
            self.z = math.log(g) if g > 0.0 else float("nan")
        msg = f"{operation} failed"
        if iteration is not None:
            msg += f" in IWLS iteration {iteration}"
        if g is not None:
            msg += f" for z={self.z:.6g} (g={g:.6g})"
        super().__init__(msg)

    def __reduce__(self):
        return (self.__class__, (self.operation, self.iteration, self.g))


@dataclass(eq=False)
class ProposalInfo:
    """Gaussian approximation of the coefficients posterior at fixed g.

    ``q_factor`` is the lower-triangular Cholesky factor L of the
    precision matrix Q = LL'.
    """
    coefs_mean: np.ndarray
    q_factor: np.ndarray
    log_precision_determinant: float
    lin_pred: np.ndarray

    def copy(self):
        return ProposalInfo(self.coefs_mean.copy(), self.q_factor.copy(),
                            self.log_precision_determinant,
                            self.lin_pred.copy())


class Iwls:
    """Iteratively weighted least squares under the g-prior.

    One instance is built per model fit and reused for every IWLS call of
    the sampler.

    Parameters
    ----------
    design : ndarray (N, p)
        Design matrix, column 0 is the intercept.
    config : GlmModelConfig
        Family, response, dispersions and g-prior.
    epsilon : float
        Convergence tolerance for :func:`criterion`.
    lin_pred_start : ndarray (N,) or None
        Starting linear predictor, defaults to ``config.lin_pred_start``.
    use_fixed_z : bool
        If True the prior on z is left out of the posterior density, which
        is then the conditional density of the coefficients.
    verbose : bool
        Print the iteration count of every IWLS call.
    """

    def __init__(self, design, config, epsilon, lin_pred_start=None,
                 use_fixed_z=False, verbose=False):
        design = np.asarray(design, dtype=float)
        if design.ndim != 2:
            raise ValueError(f"design must be a matrix, got shape {design.shape}")
        self.n_obs, self.n_coefs = design.shape
        if config.y.shape != (self.n_obs,):
            raise ValueError(f"design has {self.n_obs} rows but the response "
                             f"has shape {config.y.shape}")
        if not epsilon > 0.0:
            raise ValueError(f"epsilon must be positive, got {epsilon}")

        self.design = design
        self.config = config
        self.epsilon = float(epsilon)
        self.use_fixed_z = use_fixed_z
        self.verbose = verbose
        self.is_null_model = self.n_coefs == 1
        self.inv_sqrt_dispersions = 1.0 / np.sqrt(config.dispersions)

        # prior precision up to the factor 1/g; zero in the intercept row/column
        self.unscaled_prior_prec = np.zeros((self.n_coefs, self.n_coefs))
        self.log_scaled_crossprod_determinant = 0.0
        if not self.is_null_model:
            scaled = self.inv_sqrt_dispersions[:, None] * design[:, 1:]
            crossprod = scaled.T @ scaled
            self.unscaled_prior_prec[1:, 1:] = crossprod / config.cfactor
            try:
                factor = cholesky(crossprod, lower=True)
            except (LinAlgError, ValueError) as err:
                raise IwlsError("Cholesky factorization of the scaled "
                                "design cross-product") from err
            self.log_scaled_crossprod_determinant = (
                2.0 * float(np.sum(np.log(np.diag(factor)))))

        lin_pred = (config.lin_pred_start if lin_pred_start is None
                    else lin_pred_start)
        self._results = ProposalInfo(
            coefs_mean=np.zeros(self.n_coefs),
            q_factor=np.zeros((self.n_coefs, self.n_coefs)),
            log_precision_determinant=0.0,
            lin_pred=self._check_lin_pred(lin_pred),
        )

    def _check_lin_pred(self, lin_pred):
        lin_pred = np.array(lin_pred, dtype=float)
        if lin_pred.shape != (self.n_obs,):
            raise ValueError(f"linear predictor must have shape ({self.n_obs},), "
                             f"got {lin_pred.shape}")
        return lin_pred

    def _check_coefs(self, coefs):
        coefs = np.asarray(coefs, dtype=float)
        if coefs.shape != (self.n_coefs,):
            raise ValueError(f"coefficients must have shape ({self.n_coefs},), "
                             f"got {coefs.shape}")
        return coefs

    @property
    def results(self):
        """Copy of the Gaussian approximation from the last IWLS call."""
        return self._results.copy()

    def run_from_lin_pred(self, max_iter, g, lin_pred=None):
        """Run IWLS at covariance factor ``g``.

        Starts from ``lin_pred`` if given, otherwise from the linear
        predictor left by the previous call. Stops after ``max_iter``
        rounds or on convergence, which is never declared after the first
        round. Not converging is not an error.

        Returns
        -------
        int
            Number of rounds executed.
        """
        if max_iter < 1:
            raise ValueError(f"max_iter must be at least 1, got {max_iter}")
        if lin_pred is not None:
            self._results.lin_pred = self._check_lin_pred(lin_pred)

        y = self.config.y
        lin_pred = self._results.lin_pred
        coefs = self._results.coefs_mean
        q_factor = self._results.q_factor
        iteration = 0
        converged = False
        while iteration < max_iter and not converged:
            iteration += 1

            # pseudo observations and sqrt(weights), vectorised over observations
            mu = self.config.linkinv(lin_pred)
            dmu_deta = self.config.mu_eta(lin_pred)
            pseudo_obs = lin_pred + (y - mu) / dmu_deta
            sqrt_weights = (self.inv_sqrt_dispersions * dmu_deta
                            / np.sqrt(self.config.variance(mu)))

            # Q = X'WX + unscaled_prior_prec / g
            xt_sqrt_w = self.design.T * sqrt_weights
            precision = xt_sqrt_w @ xt_sqrt_w.T + self.unscaled_prior_prec / g
            try:
                q_factor = cholesky(precision, lower=True)
            except (LinAlgError, ValueError) as err:
                raise IwlsError("Cholesky factorization Q = LL'",
                                iteration, g) from err

            coefs_old = coefs
            coefs = cho_solve((q_factor, True),
                              xt_sqrt_w @ (sqrt_weights * pseudo_obs))
            lin_pred = self.design @ coefs

            # the start coefficients are arbitrary, so never stop after round 1
            converged = (iteration > 1
                         and criterion(coefs_old, coefs) < self.epsilon)

        self._results = ProposalInfo(
            coefs_mean=coefs,
            q_factor=q_factor,
            log_precision_determinant=2.0 * float(np.sum(np.log(np.diag(q_factor)))),
            lin_pred=lin_pred,
        )
        if self.verbose:
            print(f"IWLS: {iteration} iterations at z={math.log(g):.4f} "
                  f"(converged={converged})", flush=True)
        return iteration

    def run_from_coefs(self, max_iter, g, coefs):
        """Run IWLS starting from the linear predictor ``design @ coefs``."""
        coefs = self._check_coefs(coefs)
        return self.run_from_lin_pred(max_iter, g, self.design @ coefs)

    def log_unnormalized_posterior(self, sample):
        """Log of the unnormalized joint posterior of (coefs, z).

        All model dependent constants are included, since values are
        compared between the chain states and the high density point of
        the marginal likelihood estimate. With ``use_fixed_z`` the prior
        of z is left out. The null model has no g-prior terms at all.
        """
        coefs = self._check_coefs(sample.coefs)
        lin_pred = self.design @ coefs
        ret = self.config.loglik(self.config.linkinv(lin_pred))

        if not self.is_null_model:
            g = math.exp(sample.z)
            # ||D^(-1/2) B beta||^2 without forming B
            scaled = self.inv_sqrt_dispersions * (lin_pred - coefs[0])
            cfactor = self.config.cfactor
            ret += 0.5 * (self.log_scaled_crossprod_determinant
                          - float(scaled @ scaled) / (g * cfactor)
                          - (self.n_coefs - 1.0) * (2.0 * LN_SQRT_2PI + sample.z
                                                    + math.log(cfactor)))
            if not self.use_fixed_z:
                # g-prior plus the Jacobian of g = exp(z)
                ret += self.config.g_prior.log_density(g) + sample.z
        return float(ret)


# ---------------------------------------------------------------------------
# chain states
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class Sample:
    coefs: np.ndarray
    z: float

    def copy(self):
        return Sample(np.array(self.coefs, dtype=float), float(self.z))


@dataclass(eq=False)
class McmcState:
    """A sample together with the Gaussian proposal that generated it."""
    sample: Sample
    log_un_posterior: float
    proposal_info: ProposalInfo
    z_marginal: object

    def log_proposal_density(self):
        """Normalized log proposal density of the sample.

        Multivariate normal with precision LL' at the coefficients plus
        the z-marginal log density at z.
        """
        info = self.proposal_info
        # L is lower triangular, so L' diff is a triangular product
        tmp = info.q_factor.T @ (self.sample.coefs - info.coefs_mean)
        return (0.5 * (info.log_precision_determinant - float(tmp @ tmp))
                - LN_SQRT_2PI * info.q_factor.shape[0]
                + self.z_marginal.log_density(self.sample.z))

    def copy(self):
        # the z-marginal is shared, everything else is copied
        return McmcState(self.sample.copy(), self.log_un_posterior,
                         self.proposal_info.copy(), self.z_marginal)


def draw_normal_vector(mean, q_factor, rng):
    """Draw from N(mean, (LL')^-1) by solving L'x = w for w ~ N(0, I)."""
    w = rng.standard_normal(mean.shape[0])
    return solve_triangular(q_factor, w, lower=True, trans="T") + mean


def accept_proposal(log_acceptance_ratio, u):
    """Metropolis-Hastings decision ``u < exp(log_acceptance_ratio)``.

    Compared on the log scale so that large ratios do not overflow; a draw
    of exactly 0 always accepts.
    """
    if u <= 0.0:
        return True
    return math.log(u) < log_acceptance_ratio


# ---------------------------------------------------------------------------
# sample storage
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class GlmSamples:
    """Output of :func:`sample_glm`.

    ``coefficients`` has shape ``(n_coefs, n_samples)``.
    """
    coefficients: np.ndarray
    z: np.ndarray
    marg_lik_numerator: np.ndarray
    marg_lik_denominator: np.ndarray
    n_accepted: int
    high_density_point_log_un_posterior: float
    iterations: int

    @property
    def n_samples(self):
        return self.coefficients.shape[1]

    @property
    def acceptance_rate(self):
        return self.n_accepted / self.iterations if self.iterations else float("nan")


class Samples:
    """Append-only store for coefficient and z samples and bridge terms."""

    def __init__(self, n_coefs, n_samples):
        self.coefs_samples = np.zeros((n_coefs, n_samples))
        self.n_saved = 0
        self.z_samples = []
        self.numerator = []
        self.denominator = []

    @property
    def capacity(self):
        return self.coefs_samples.shape[1]

    def store_parameters(self, sample):
        if self.n_saved >= self.capacity:
            raise RuntimeError(f"sample store is full ({self.capacity} samples)")
        self.coefs_samples[:, self.n_saved] = sample.coefs
        self.n_saved += 1
        self.z_samples.append(float(sample.z))

    def store_marg_lik_terms(self, num, denom):
        self.numerator.append(float(num))
        self.denominator.append(float(denom))

    def to_result(self, n_accepted, high_density_point_log_un_posterior,
                  iterations):
        return GlmSamples(
            coefficients=self.coefs_samples[:, :self.n_saved].copy(),
            z=np.array(self.z_samples),
            marg_lik_numerator=np.array(self.numerator),
            marg_lik_denominator=np.array(self.denominator),
            n_accepted=int(n_accepted),
            high_density_point_log_un_posterior=float(
                high_density_point_log_un_posterior),
            iterations=int(iterations),
        )


# ---------------------------------------------------------------------------
# z marginal via Laplace approximation
# ---------------------------------------------------------------------------

def laplace_log_marginal_z(iwls, z, lin_pred_start=None,
                           max_iter=DEFAULT_MAX_IWLS_ITERATIONS):
    """Laplace approximation of the unnormalized log marginal posterior of z."""
    if lin_pred_start is None:
        lin_pred_start = iwls.config.lin_pred_start
    iwls.run_from_lin_pred(max_iter, math.exp(z), lin_pred_start)
    info = iwls.results
    mode = Sample(info.coefs_mean, float(z))
    return (iwls.log_unnormalized_posterior(mode)
            + iwls.n_coefs * LN_SQRT_2PI
            - 0.5 * info.log_precision_determinant)


def find_z_mode(iwls, lin_pred_start=None, max_iter=DEFAULT_MAX_IWLS_ITERATIONS,
                bounds=(-10.0, 25.0), h=0.01):
    """Mode and curvature-based sd of the Laplace approximated z marginal.

    Parameters
    ----------
    iwls : Iwls
        Engine of a non-null model with ``use_fixed_z=False``.
    lin_pred_start : ndarray (N,) or None
        Start of every IWLS run, defaults to ``config.lin_pred_start``.
    max_iter : int
        IWLS iteration cap per evaluation.
    bounds : tuple of float
        Search interval for z.
    h : float
        Step of the central second difference.

    Returns
    -------
    z_mode : float
    z_sd : float
        ``1 / sqrt(-d2)`` of the log marginal at the mode; 1.0 with a
        warning if the curvature there is not negative.
    """
    if iwls.is_null_model or iwls.use_fixed_z:
        raise ValueError("z mode search needs a non-null model with free z")

    def f(z):
        return laplace_log_marginal_z(iwls, z, lin_pred_start, max_iter)

    res = minimize_scalar(lambda z: -f(z), bounds=bounds, method="bounded")
    z_mode = float(res.x)
    d2 = (f(z_mode + h) - 2.0 * f(z_mode) + f(z_mode - h)) / h ** 2
    if np.isfinite(d2) and d2 < 0.0:
        z_sd = 1.0 / math.sqrt(-d2)
    else:
        warnings.warn(f"log marginal of z is not concave at z={z_mode:.4f}; "
                      f"using sd=1")
        z_sd = 1.0
    return z_mode, z_sd


def approximate_z_marginal(iwls, lin_pred_start=None,
                           max_iter=DEFAULT_MAX_IWLS_ITERATIONS):
    """Normal z-marginal centred at the Laplace z mode."""
    z_mode, z_sd = find_z_mode(iwls, lin_pred_start, max_iter)
    return NormalZMarginal(z_mode, z_sd)


# ---------------------------------------------------------------------------
# sampler
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SamplerOptions:
    """Settings of :func:`sample_glm`.

    ``convergence_tolerance`` has no default: it is the IWLS ``epsilon``
    and must be chosen by the caller.
    """
    iterations: int
    burnin: int
    step: int
    convergence_tolerance: float
    estimate_marg_lik: bool = True
    is_null_model: Optional[bool] = None
    use_fixed_z: bool = False
    fixed_z: Optional[float] = None
    max_iwls_iterations: int = DEFAULT_MAX_IWLS_ITERATIONS
    verbose: bool = False
    debug: bool = False

    def __post_init__(self):
        if self.iterations < 0 or self.burnin < 0:
            raise ValueError(f"iterations and burnin must be non-negative, "
                             f"got {self.iterations} and {self.burnin}")
        if self.step < 1:
            raise ValueError(f"step must be at least 1, got {self.step}")
        if not self.convergence_tolerance > 0.0:
            raise ValueError(f"convergence_tolerance must be positive, "
                             f"got {self.convergence_tolerance}")
        if self.max_iwls_iterations < 1:
            raise ValueError(f"max_iwls_iterations must be at least 1, "
                             f"got {self.max_iwls_iterations}")
        if self.use_fixed_z and self.fixed_z is None:
            raise ValueError("use_fixed_z requires fixed_z")

    @property
    def n_samples(self):
        """``ceil((iterations - burnin) / step)``, or 0 within the burn-in."""
        if self.iterations <= self.burnin:
            return 0
        return -(-(self.iterations - self.burnin) // self.step)


def _resolve_z_marginal(iwls, options, z_marginal, start_z):
    """Fill in the z-marginal and start z that were not supplied."""
    if options.use_fixed_z:
        if z_marginal is None:
            z_marginal = FixedZMarginal(options.fixed_z)
        return z_marginal, float(options.fixed_z)
    if iwls.is_null_model:
        # the null model posterior does not depend on z
        if z_marginal is None:
            z_marginal = FixedZMarginal(0.0 if start_z is None else start_z)
        return z_marginal, 0.0 if start_z is None else float(start_z)
    if z_marginal is None or start_z is None:
        z_mode, z_sd = find_z_mode(iwls, max_iter=options.max_iwls_iterations)
        if options.verbose:
            print(f"Laplace z marginal: mode={z_mode:.4f}, sd={z_sd:.4f}",
                  flush=True)
        if z_marginal is None:
            z_marginal = NormalZMarginal(z_mode, z_sd)
        if start_z is None:
            start_z = z_mode
    return z_marginal, float(start_z)


def _marg_lik_terms(iwls, current, high_density_point, z_marginal, rng):
    """One (numerator, denominator) pair of the Chib-Jeliazkov estimate."""
    hdp = high_density_point

    # denominator: acceptance probability of a move away from the high
    # density point, with the move drawn from its proposal
    denominator = hdp.copy()
    denominator.sample.z = float(z_marginal.generate(rng, 1)[0])
    iwls.run_from_lin_pred(1, math.exp(denominator.sample.z),
                           hdp.proposal_info.lin_pred)
    denominator.proposal_info = iwls.results
    denominator.sample.coefs = draw_normal_vector(
        denominator.proposal_info.coefs_mean,
        denominator.proposal_info.q_factor, rng)
    denominator.log_un_posterior = iwls.log_unnormalized_posterior(
        denominator.sample)
    denominator_log_proposal = denominator.log_proposal_density()

    rev_denom = hdp.copy()
    iwls.run_from_coefs(1, math.exp(rev_denom.sample.z),
                        denominator.sample.coefs)
    rev_denom.proposal_info = iwls.results
    rev_denom_log_proposal = rev_denom.log_proposal_density()

    denominator_term = float(np.exp(min(
        0.0,
        denominator.log_un_posterior - hdp.log_un_posterior
        + rev_denom_log_proposal - denominator_log_proposal)))

    # numerator: acceptance probability of a move from the current sample to
    # the high density point, times the proposal density of that move
    numerator = current.copy()
    iwls.run_from_lin_pred(1, math.exp(numerator.sample.z),
                           hdp.proposal_info.lin_pred)
    numerator.proposal_info = iwls.results
    numerator_log_proposal = numerator.log_proposal_density()

    rev_num = hdp.copy()
    iwls.run_from_coefs(1, math.exp(rev_num.sample.z), current.sample.coefs)
    rev_num.proposal_info = iwls.results
    rev_num_log_proposal = rev_num.log_proposal_density()

    numerator_term = float(np.exp(min(
        rev_num_log_proposal,
        hdp.log_un_posterior - current.log_un_posterior
        + numerator_log_proposal)))

    return numerator_term, denominator_term


def sample_glm(design, config, options, z_marginal=None, start_z=None,
               rng=None, rng_seed=0):
    """Metropolis-Hastings sampling of (coefficients, z = log g).

    Each proposal draws z from ``z_marginal`` and the coefficients from the
    Gaussian of one IWLS step at that z, started from the current
    coefficients. The chain starts at the high density point: the IWLS
    mode at ``start_z``.

    Parameters
    ----------
    design : array (N, p)
        Design matrix with the intercept in column 0.
    config : GlmModelConfig
        Family, response and g-prior.
    options : SamplerOptions
        Iteration counts, tolerances and flags.
    z_marginal : object or None
        Has ``log_density(z)`` and ``generate(rng, n)``. If None, a
        Laplace-based normal approximation is used (a point mass for the
        null model or when z is fixed).
    start_z : float or None
        z of the high density point. Defaults to the Laplace mode, to
        ``options.fixed_z`` when z is fixed, and to 0 for the null model.
    rng : numpy.random.Generator or None
        Source of all random numbers. Created from ``rng_seed`` if None.
    rng_seed : int
        Seed used when ``rng`` is None.

    Returns
    -------
    GlmSamples
    """
    if rng is None:
        rng = np.random.default_rng(rng_seed)
    iwls = Iwls(design, config, options.convergence_tolerance,
                use_fixed_z=options.use_fixed_z, verbose=options.debug)
    if (options.is_null_model is not None
            and options.is_null_model != iwls.is_null_model):
        raise ValueError(f"is_null_model={options.is_null_model} but the "
                         f"design has {iwls.n_coefs} columns")
    z_marginal, start_z = _resolve_z_marginal(iwls, options, z_marginal,
                                              start_z)

    # high density point: IWLS mode at start_z
    n_iwls = iwls.run_from_lin_pred(options.max_iwls_iterations,
                                    math.exp(start_z), config.lin_pred_start)
    if options.debug:
        print(f"sample_glm: initial IWLS for high density point finished "
              f"after {n_iwls} iterations", flush=True)

    info = iwls.results
    now = McmcState(Sample(info.coefs_mean.copy(), start_z), 0.0, info,
                    z_marginal)
    now.log_un_posterior = iwls.log_unnormalized_posterior(now.sample)
    high_density_point = now.copy()
    old = now.copy()

    samples = Samples(iwls.n_coefs, options.n_samples)
    n_accepted = 0

    from tqdm.auto import tqdm
    progress = tqdm(range(1, options.iterations + 1), desc="glmbfp",
                    ncols=100, disable=not options.verbose)
    for i_iter in progress:
        if options.debug:
            print(f"sample_glm: starting iteration {i_iter}", flush=True)

        # proposal
        now.sample.z = float(z_marginal.generate(rng, 1)[0])
        iwls.run_from_coefs(1, math.exp(now.sample.z), now.sample.coefs)
        now.proposal_info = iwls.results
        now.sample.coefs = draw_normal_vector(now.proposal_info.coefs_mean,
                                              now.proposal_info.q_factor, rng)
        now.log_un_posterior = iwls.log_unnormalized_posterior(now.sample)

        # reverse jump: the Gaussian that would have proposed old from now
        reverse = old.copy()
        iwls.run_from_coefs(1, math.exp(reverse.sample.z), now.sample.coefs)
        reverse.proposal_info = iwls.results

        log_proposal_ratio = (reverse.log_proposal_density()
                              - now.log_proposal_density())
        log_posterior_ratio = now.log_un_posterior - old.log_un_posterior

        if accept_proposal(log_posterior_ratio + log_proposal_ratio,
                           rng.random()):
            old = now.copy()
            n_accepted += 1
        else:
            now = old.copy()

        # thinning counted back from the last iteration, so that exactly
        # n_samples are stored; equals (i - burnin) % step == 0 whenever
        # step divides iterations - burnin
        if (i_iter > options.burnin
                and (options.iterations - i_iter) % options.step == 0):
            if options.debug:
                print(f"sample_glm: storing sample of iteration {i_iter}",
                      flush=True)
            samples.store_parameters(now.sample)
            if options.estimate_marg_lik:
                num, denom = _marg_lik_terms(iwls, now, high_density_point,
                                             z_marginal, rng)
                samples.store_marg_lik_terms(num, denom)

        if options.verbose:
            progress.set_postfix(accepted=n_accepted, refresh=False)

    if options.iterations > 0 and n_accepted == 0:
        warnings.warn(f"no proposal accepted in {options.iterations} "
                      f"iterations; check the z-marginal")
    if options.verbose:
        print(f"sample_glm: {n_accepted}/{options.iterations} proposals "
              f"accepted", flush=True)

    return samples.to_result(n_accepted, high_density_point.log_un_posterior,
                             options.iterations)


# ---------------------------------------------------------------------------
# postprocessing
# ---------------------------------------------------------------------------

def log_marginal_likelihood(result, running=False):
    """Chib-Jeliazkov estimate of the log marginal likelihood.

    The posterior ordinate at the high density point is estimated by the
    ratio of the mean numerator and denominator terms.

    Parameters
    ----------
    result : GlmSamples
        Output of :func:`sample_glm` with ``estimate_marg_lik=True``.
    running : bool
        If True, return the estimate after each stored iteration.

    Returns
    -------
    float or ndarray
    """
    num = np.asarray(result.marg_lik_numerator, dtype=float)
    denom = np.asarray(result.marg_lik_denominator, dtype=float)
    if num.size == 0:
        raise ValueError("no marginal likelihood terms stored; "
                         "sample with estimate_marg_lik=True")
    hdp = result.high_density_point_log_un_posterior
    if running:
        k = np.arange(1, num.size + 1)
        return hdp - np.log(np.cumsum(num) / k) + np.log(np.cumsum(denom) / k)
    return float(hdp - np.log(num.mean()) + np.log(denom.mean()))


def _chain_worker(chain_args):
    """Run one chain (module-level for pickling)."""
    (k, num_chains, design, config, options, z_marginal, start_z,
     rng_seed) = chain_args
    if options.verbose:
        print(f"\n--- Chain {k+1}/{num_chains} ---", flush=True)
    result = sample_glm(design, config, options, z_marginal=z_marginal,
                        start_z=start_z, rng_seed=rng_seed + k)
    return k, result


def sample_glm_chains(design, config, options, z_marginal=None, start_z=None,
                      num_chains=4, rng_seed=0, max_workers=None):
    """Independent chains of :func:`sample_glm`, in parallel where possible.

    Chain ``k`` is seeded with ``rng_seed + k``. The z-marginal and start
    z are resolved once and shared by all chains. Parallel runs pickle
    their arguments, so user functions in ``CustomGPrior`` or
    ``CustomZMarginal`` must be module-level; otherwise set
    ``max_workers=1``.

    Returns
    -------
    list of GlmSamples
        Ordered by chain index.
    """
    design = np.asarray(design, dtype=float)
    iwls = Iwls(design, config, options.convergence_tolerance,
                use_fixed_z=options.use_fixed_z)
    z_marginal, start_z = _resolve_z_marginal(iwls, options, z_marginal,
                                              start_z)

    n_cpus = os.cpu_count() or 1
    n_workers = min(num_chains, n_cpus)
    if max_workers is not None:
        n_workers = min(n_workers, max_workers)
    n_workers = max(1, n_workers)

    chain_args = [(k, num_chains, design, config, options, z_marginal,
                   start_z, rng_seed) for k in range(num_chains)]

    if n_workers > 1:
        print(f"Running {num_chains} chains with {n_workers} parallel workers")
        ctx = mp.get_context("spawn")
        with ProcessPoolExecutor(max_workers=n_workers, mp_context=ctx) as pool:
            results = list(pool.map(_chain_worker, chain_args))
    else:
        print(f"Running {num_chains} chains sequentially")
        results = [_chain_worker(a) for a in chain_args]

    results.sort(key=lambda x: x[0])
    return [r[1] for r in results]


def _chain_arrays(chains, coef_names=None):
    """Per-parameter arrays of shape (num_chains, num_samples)."""
    if isinstance(chains, GlmSamples):
        chains = [chains]
    n_coefs = chains[0].coefficients.shape[0]
    if coef_names is None:
        coef_names = [f"beta[{j}]" for j in range(n_coefs)]
    if len(coef_names) != n_coefs:
        raise ValueError(f"got {len(coef_names)} names for {n_coefs} coefficients")
    n_samples = {c.n_samples for c in chains}
    if len(n_samples) != 1:
        raise ValueError(f"chains differ in length: {sorted(n_samples)}")

    coefs = np.stack([c.coefficients for c in chains])   # (chains, p, S)
    data = {name: coefs[:, j, :] for j, name in enumerate(coef_names)}
    data["z"] = np.stack([c.z for c in chains])
    return chains, data


def summary_report(chains, filepath=None, coef_names=None):
    """Posterior summary table, optionally saved to CSV.

    Parameters
    ----------
    chains : GlmSamples or list of GlmSamples
        Chains of equal length.
    filepath : str or None
        Path for the output CSV; nothing is written if None.
    coef_names : list of str, optional
        Display names for the coefficients. Default ``beta[j]``.

    Returns
    -------
    DataFrame
        One row per coefficient and for z, with mean, 3% and 97%
        quantiles, n_eff and r_hat.
    """
    chains, data = _chain_arrays(chains, coef_names)
    rows = []
    for name, x_chain in data.items():
        x_flat = x_chain.reshape(-1)
        rows.append({
            "parameter": name,
            "mean": float(np.mean(x_flat)),
            "q0.03": float(np.percentile(x_flat, 3)),
            "q0.97": float(np.percentile(x_flat, 97)),
            "n_eff": float(effective_sample_size(x_chain)),
            "r_hat": float(split_gelman_rubin(x_chain)),
        })
    df = pd.DataFrame(rows)

    rates = ", ".join(f"{c.acceptance_rate:.3f}" for c in chains)
    print(f"Acceptance rate per chain: {rates}")
    if all(c.marg_lik_numerator.size > 0 for c in chains):
        log_ml = ", ".join(f"{log_marginal_likelihood(c):.3f}" for c in chains)
        print(f"Log marginal likelihood per chain: {log_ml}")
    print(df.to_string(index=False))
    if filepath is not None:
        df.to_csv(filepath, index=False, float_format="%.4f")
        print(f"Summary saved to {filepath}")
    return df


def plot_trace(chains, filestem, coef_names=None):
    """Trace plot of all coefficients and z, one colour per chain.

    Saves the figure to ``{filestem}_trace.pdf`` and returns the path.
    """
    _, data = _chain_arrays(chains, coef_names)
    idata = az.from_dict(posterior=data)
    n_vars = len(data)
    axes = az.plot_trace(idata, figsize=(10, 1.5 * n_vars))
    fig = axes.ravel()[0].get_figure()
    fig.tight_layout()
    outpath = filestem + "_trace.pdf"
    fig.savefig(outpath)
    plt.close(fig)
    print(f"Plot saved to {outpath}")
    return outpath


def run_analysis(df, y_col, covariate_cols, convergence_tolerance,
                 filestem=None, family="binomial", link=None, g_prior=None,
                 weights_col=None, phi=1.0, iterations=10000, burnin=1000,
                 step=1, estimate_marg_lik=True, num_chains=4, rng_seed=0,
                 max_workers=None, verbose=False):
    """High-level entry point: sample a g-prior GLM from a DataFrame.

    Drops incomplete rows, centres the covariates, prepends an intercept
    column and runs :func:`sample_glm_chains`.

    Parameters
    ----------
    df : DataFrame
        Data containing the response and covariates.
    y_col : str
        Response column (proportions for the binomial family).
    covariate_cols : list of str
        Covariate columns; an empty list gives the null model.
    convergence_tolerance : float
        IWLS convergence tolerance.
    filestem : str or None
        If given, prefix for the summary CSV and trace plot.
    family, link : str
        GLM family and link (default canonical).
    g_prior : object or None
        Prior on g, default hyper-g with a = 4.
    weights_col : str or None
        Column of prior weights (binomial trial counts).
    phi : float
        Fixed dispersion.
    iterations, burnin, step : int
        MCMC settings per chain.
    estimate_marg_lik : bool
        Compute Chib-Jeliazkov terms.
    num_chains, rng_seed, max_workers
        See :func:`sample_glm_chains`.
    verbose : bool
        Progress bars and messages.

    Returns
    -------
    dict
        Keys: ``chains``, ``summary``, ``log_marg_lik`` (per chain or
        None), ``design``, ``config``, ``coef_names``.
    """
    used_cols = [y_col] + list(covariate_cols)
    if weights_col is not None:
        used_cols.append(weights_col)
    N_before = len(df)
    df = df[used_cols].dropna()
    N_after = len(df)
    if N_after < N_before:
        print(f"Dropped {N_before - N_after} rows with missing values "
              f"({N_before} -> {N_after})")

    y = df[y_col].to_numpy(dtype=float)
    weights = None if weights_col is None else df[weights_col].to_numpy(dtype=float)
    X = df[list(covariate_cols)].to_numpy(dtype=float).reshape(len(df), -1)
    X = X - X.mean(axis=0)
    design = np.column_stack([np.ones(len(y)), X])
    coef_names = ["(Intercept)"] + list(covariate_cols)

    if g_prior is None:
        g_prior = HypergPrior(a=4.0)
    config = GlmModelConfig.from_family(get_family(family, link), y, g_prior,
                                        weights=weights, phi=phi)
    options = SamplerOptions(iterations=iterations, burnin=burnin, step=step,
                             convergence_tolerance=convergence_tolerance,
                             estimate_marg_lik=estimate_marg_lik,
                             verbose=verbose)
    print(f"N={len(y)}, {len(covariate_cols)} covariates, family={family}")

    chains = sample_glm_chains(design, config, options, num_chains=num_chains,
                               rng_seed=rng_seed, max_workers=max_workers)
    summary = summary_report(
        chains,
        None if filestem is None else filestem + "_summary.csv",
        coef_names=coef_names)
    if filestem is not None:
        plot_trace(chains, filestem, coef_names=coef_names)

    log_marg_lik = ([log_marginal_likelihood(c) for c in chains]
                    if estimate_marg_lik and options.n_samples > 0 else None)
    return {"chains": chains, "summary": summary, "log_marg_lik": log_marg_lik,
            "design": design, "config": config, "coef_names": coef_names}
