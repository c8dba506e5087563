"""GLM families, g-priors and z-marginals for :mod:`glmbfp`.

Everything here is read-only input to the IWLS engine and the sampler:
link and distribution functions, the prior on the covariance factor ``g``,
the generator/density pair used to propose ``z = log(g)``, and the
:class:`GlmModelConfig` bundling them with the response.
"""

from dataclasses import dataclass

import numpy as np
from scipy import stats
from scipy.special import expit, logit

__all__ = [
    "EPS",
    "LogitLink", "ProbitLink", "CloglogLink", "LogLink", "IdentityLink",
    "InverseLink",
    "Binomial", "Poisson", "Gaussian",
    "Family", "get_family",
    "HypergPrior", "InvGammaPrior", "ZellnerSiowPrior", "CustomGPrior",
    "FrozenZMarginal", "NormalZMarginal", "FixedZMarginal", "CustomZMarginal",
    "GlmModelConfig",
]

# machine epsilon, used as a floor for mu_eta like R's make.link()
EPS = np.finfo(float).eps


# ---------------------------------------------------------------------------
# links
# ---------------------------------------------------------------------------

class LogitLink:
    name = "logit"

    def linkfun(self, mu):
        return logit(mu)

    def linkinv(self, eta):
        return np.clip(expit(eta), EPS, 1.0 - EPS)

    def mu_eta(self, eta):
        p = expit(eta)
        return np.maximum(p * (1.0 - p), EPS)


class ProbitLink:
    name = "probit"

    def linkfun(self, mu):
        return stats.norm.ppf(mu)

    def linkinv(self, eta):
        return np.clip(stats.norm.cdf(eta), EPS, 1.0 - EPS)

    def mu_eta(self, eta):
        return np.maximum(stats.norm.pdf(eta), EPS)


class CloglogLink:
    name = "cloglog"

    def linkfun(self, mu):
        return np.log(-np.log1p(-mu))

    def linkinv(self, eta):
        return np.clip(-np.expm1(-np.exp(eta)), EPS, 1.0 - EPS)

    def mu_eta(self, eta):
        eta = np.minimum(eta, 700.0)
        return np.maximum(np.exp(eta) * np.exp(-np.exp(eta)), EPS)


class LogLink:
    name = "log"

    def linkfun(self, mu):
        return np.log(mu)

    def linkinv(self, eta):
        return np.maximum(np.exp(eta), EPS)

    def mu_eta(self, eta):
        return np.maximum(np.exp(eta), EPS)


class IdentityLink:
    name = "identity"

    def linkfun(self, mu):
        return np.asarray(mu, dtype=float)

    def linkinv(self, eta):
        return np.asarray(eta, dtype=float)

    def mu_eta(self, eta):
        return np.ones_like(np.asarray(eta, dtype=float))


class InverseLink:
    name = "inverse"

    def linkfun(self, mu):
        return 1.0 / np.asarray(mu, dtype=float)

    def linkinv(self, eta):
        return 1.0 / np.asarray(eta, dtype=float)

    def mu_eta(self, eta):
        return -1.0 / np.square(eta)


_LINKS = {
    "logit": LogitLink, "probit": ProbitLink, "cloglog": CloglogLink,
    "log": LogLink, "identity": IdentityLink, "inverse": InverseLink,
}


# ---------------------------------------------------------------------------
# distributions
# ---------------------------------------------------------------------------

class Binomial:
    """Binomial response given as proportions ``y`` out of ``weights`` trials."""
    name = "binomial"
    canonical_link = "logit"

    def variance(self, mu):
        return mu * (1.0 - mu)

    def loglik(self, y, mu, weights, phi=1.0):
        successes = np.round(weights * y)
        return float(np.sum(stats.binom.logpmf(successes, weights, mu)))

    def check_response(self, y, weights):
        if np.any((y < 0) | (y > 1)):
            raise ValueError("binomial response must be proportions in [0, 1]")
        if np.any(np.abs(weights - np.round(weights)) > 1e-8):
            raise ValueError("binomial weights must be integer trial counts")


class Poisson:
    name = "poisson"
    canonical_link = "log"

    def variance(self, mu):
        return np.asarray(mu, dtype=float)

    def loglik(self, y, mu, weights, phi=1.0):
        return float(np.sum(weights * stats.poisson.logpmf(y, mu)))

    def check_response(self, y, weights):
        if np.any(y < 0) or np.any(np.abs(y - np.round(y)) > 1e-8):
            raise ValueError("poisson response must be non-negative counts")


class Gaussian:
    """Normal response with known residual variance ``phi``."""
    name = "gaussian"
    canonical_link = "identity"

    def variance(self, mu):
        return np.ones_like(np.asarray(mu, dtype=float))

    def loglik(self, y, mu, weights, phi=1.0):
        return float(np.sum(stats.norm.logpdf(y, loc=mu,
                                              scale=np.sqrt(phi / weights))))

    def check_response(self, y, weights):
        pass


_DISTRIBUTIONS = {"binomial": Binomial, "poisson": Poisson,
                  "gaussian": Gaussian}


class Family:
    """A distribution paired with a link function."""

    def __init__(self, distribution, link):
        self.distribution = distribution
        self.link = link

    def __repr__(self):
        return f"Family({self.distribution.name!r}, link={self.link.name!r})"


def get_family(name, link=None):
    """Look up a family by name, using its canonical link unless ``link`` is given."""
    if name not in _DISTRIBUTIONS:
        raise ValueError(f"Unknown family: {name!r}. "
                         f"Use one of {sorted(_DISTRIBUTIONS)}.")
    distribution = _DISTRIBUTIONS[name]()
    link = distribution.canonical_link if link is None else link
    if link not in _LINKS:
        raise ValueError(f"Unknown link: {link!r}. Use one of {sorted(_LINKS)}.")
    return Family(distribution, _LINKS[link]())


# ---------------------------------------------------------------------------
# priors on g
# ---------------------------------------------------------------------------

class HypergPrior:
    """Hyper-g prior, density ``(a - 2) / 2 * (1 + g)^(-a / 2)``."""

    def __init__(self, a=4.0):
        if a <= 2.0:
            raise ValueError(f"hyper-g parameter a must exceed 2, got {a}")
        self.a = float(a)

    def log_density(self, g):
        return float(np.log((self.a - 2.0) / 2.0) - 0.5 * self.a * np.log1p(g))


class InvGammaPrior:
    """Inverse gamma prior on g with shape ``a`` and scale ``b``."""

    def __init__(self, a=0.001, b=0.001):
        if a <= 0.0 or b <= 0.0:
            raise ValueError(f"inverse gamma parameters must be positive, got a={a}, b={b}")
        self.a = float(a)
        self.b = float(b)
        self._dist = stats.invgamma(self.a, scale=self.b)

    def log_density(self, g):
        return float(self._dist.logpdf(g))


class ZellnerSiowPrior(InvGammaPrior):
    """Zellner-Siow prior, g ~ IG(1/2, n/2)."""

    def __init__(self, n_obs):
        super().__init__(a=0.5, b=0.5 * n_obs)


class CustomGPrior:
    """Wraps a user function ``log_density_fn(g) -> float``."""

    def __init__(self, log_density_fn):
        self.log_density_fn = log_density_fn

    def log_density(self, g):
        return float(self.log_density_fn(g))


# ---------------------------------------------------------------------------
# z = log(g) marginals used to generate proposals
# ---------------------------------------------------------------------------

class FrozenZMarginal:
    """z-marginal given by a frozen ``scipy.stats`` distribution."""

    def __init__(self, rv):
        self.rv = rv

    def log_density(self, z):
        return float(self.rv.logpdf(z))

    def generate(self, rng, n=1):
        return np.atleast_1d(self.rv.rvs(size=n, random_state=rng)).astype(float)


class NormalZMarginal(FrozenZMarginal):

    def __init__(self, mean, sd):
        if sd <= 0.0:
            raise ValueError(f"sd must be positive, got {sd}")
        self.mean = float(mean)
        self.sd = float(sd)
        super().__init__(stats.norm(loc=self.mean, scale=self.sd))

    def __repr__(self):
        return f"NormalZMarginal(mean={self.mean:.4f}, sd={self.sd:.4f})"


class FixedZMarginal:
    """Point mass at ``z``; draws consume no random numbers."""

    def __init__(self, z):
        self.z = float(z)

    def log_density(self, z):
        return 0.0

    def generate(self, rng, n=1):
        return np.full(n, self.z)


class CustomZMarginal:
    """User supplied ``log_density_fn(z)`` and ``generate_fn(rng, n)``.

    ``generate_fn`` must draw from ``rng`` only, otherwise seeded runs are
    not reproducible.
    """

    def __init__(self, log_density_fn, generate_fn):
        self.log_density_fn = log_density_fn
        self.generate_fn = generate_fn

    def log_density(self, z):
        return float(self.log_density_fn(z))

    def generate(self, rng, n=1):
        return np.atleast_1d(np.asarray(self.generate_fn(rng, n), dtype=float))


# ---------------------------------------------------------------------------
# model configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class GlmModelConfig:
    """Response, family and prior information for one GLM fit.

    Attributes
    ----------
    family : Family
    y : ndarray (N,)
        Response (proportions for the binomial family).
    weights : ndarray (N,)
        Prior weights (number of trials for the binomial family).
    phi : float
        Dispersion parameter, fixed.
    g_prior : object
        Has ``log_density(g)``.
    cfactor : float
        Scale factor of the g-prior covariance.
    lin_pred_start : ndarray (N,)
        Starting linear predictor for the IWLS engine.
    """
    family: Family
    y: np.ndarray
    weights: np.ndarray
    phi: float
    g_prior: object
    cfactor: float
    lin_pred_start: np.ndarray

    def __post_init__(self):
        if self.y.shape != self.weights.shape:
            raise ValueError(f"y has shape {self.y.shape} but weights "
                             f"has shape {self.weights.shape}")
        if self.y.shape != self.lin_pred_start.shape:
            raise ValueError(f"y has shape {self.y.shape} but lin_pred_start "
                             f"has shape {self.lin_pred_start.shape}")
        if self.cfactor <= 0.0:
            raise ValueError(f"cfactor must be positive, got {self.cfactor}")

    @classmethod
    def from_family(cls, family, y, g_prior, weights=None, phi=1.0,
                    cfactor=None):
        """Build the config, deriving start values from the null model.

        The intercept-only maximum likelihood fit has mean equal to the
        weighted average of ``y``; its linear predictor is the starting
        point for IWLS, and ``cfactor`` defaults to the inverse unit
        Fisher weight ``variance(mu0) / mu_eta(eta0)^2`` at that fit.
        """
        if isinstance(family, str):
            family = get_family(family)
        y = np.asarray(y, dtype=float)
        weights = (np.ones_like(y) if weights is None
                   else np.asarray(weights, dtype=float))
        if not np.all(np.isfinite(y)):
            n_bad = int((~np.isfinite(y)).sum())
            raise ValueError(f"y contains {n_bad} non-finite values (NaN/Inf).")
        family.distribution.check_response(y, weights)

        mu0 = np.sum(weights * y) / np.sum(weights)
        eta0 = float(family.link.linkfun(mu0))
        if not np.isfinite(eta0):
            raise ValueError(f"null model linear predictor is not finite "
                             f"(mean response {mu0:.4g})")
        if cfactor is None:
            cfactor = float(family.distribution.variance(mu0)
                            / family.link.mu_eta(eta0) ** 2)
        return cls(family=family, y=y, weights=weights, phi=float(phi),
                   g_prior=g_prior, cfactor=float(cfactor),
                   lin_pred_start=np.full(y.shape, eta0))

    @property
    def dispersions(self):
        return self.phi / self.weights

    def linkinv(self, eta):
        return self.family.link.linkinv(eta)

    def mu_eta(self, eta):
        return self.family.link.mu_eta(eta)

    def variance(self, mu):
        return self.family.distribution.variance(mu)

    def loglik(self, means):
        return self.family.distribution.loglik(self.y, means, self.weights,
                                               self.phi)
