"""
Single-season occupancy model for one species (imperfect detection), PyMC.

Detection p: logit(p_ij) = a0 + a1*date + a2*date^2
             (+ a3*elev + a4*elev*date + a5*elev*date^2 with the interaction)
Occupancy ψ: logit(ψ_i)  = b0 + b1*elev + b2*elev^2

The likelihood is marginalised over the latent occupancy state:
  at least one detection:  log ψ + Σ_j log Bernoulli(y_ij | p_ij)
  no detection:            log( ψ Π_j (1-p_ij) + (1-ψ) )

Two stages:
  1. fit the coefficients (posterior mode with ``find_MAP``; or NUTS draws)
  2. per plot, P(z=1 | y) from the fitted ψ and p; z is its mode.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
import pymc as pm
import pytensor.tensor as pt
import arviz as az
from scipy.special import expit

from .config import PipelineConfig
from .errors import ConvergenceFailure
from .survey import SpeciesUnit

logger = logging.getLogger(__name__)

GRAD_TOL = 1e-3
MAX_RHAT = 1.1


@dataclass(frozen=True)
class OccupancyResult:
    """Outcome of fitting one species: ``status`` is "ok" or "failed"."""
    index: int
    name: str
    status: str
    pi: float = math.nan
    z: Optional[np.ndarray] = None
    posterior: Optional[np.ndarray] = None
    psi: Optional[np.ndarray] = None
    coef: dict = field(default_factory=dict)
    pi_hdi: Tuple[float, float] = (math.nan, math.nan)
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @classmethod
    def failed(cls, index, name, n_plots, error):
        nan = np.full(n_plots, np.nan)
        return cls(index=index, name=name, status="failed", z=nan, posterior=nan.copy(),
                   psi=nan.copy(), error=str(error))


# ---------------------------
# Pure helpers
# ---------------------------
def detection_probability_any(p):
    """Probability of at least one detection: 1 - Π(1 - p) over the last (visit) axis."""
    p = np.asarray(p, dtype=float)
    return 1.0 - np.prod(1.0 - p, axis=-1)


def detection_design(dates, elevation, interaction=False):
    """(n_plots, n_visits, k) design for the detection submodel, on rescaled covariates."""
    d = np.nan_to_num(np.asarray(dates, dtype=float), nan=0.0)
    cols = [np.ones_like(d), d, d ** 2]
    if interaction:
        e = np.broadcast_to(np.asarray(elevation, dtype=float)[:, None], d.shape)
        cols += [e, e * d, e * d ** 2]
    return np.stack(cols, axis=-1)


def occupancy_design(elevation):
    e = np.asarray(elevation, dtype=float)
    return np.column_stack([np.ones_like(e), e, e ** 2])


def occupancy_posterior(y, psi, p):
    """
    P(z_i = 1 | y_i) for each plot.

    1 wherever the species was detected; otherwise Bayes' rule with the
    visits that took place (NaN in ``y``) dropped from the product.
    """
    y = np.asarray(y, dtype=float)
    visited = ~np.isnan(y)
    q = np.where(visited, 1.0 - p, 1.0)
    present_missed = psi * np.prod(q, axis=-1)
    denom = present_missed + (1.0 - psi)
    post = np.divide(present_missed, denom, out=np.zeros_like(present_missed), where=denom > 0)
    detected = np.nansum(y, axis=-1) > 0
    return np.where(detected, 1.0, post)


def posterior_mode(posterior):
    """0/1 mode of a two-point posterior; an exact tie goes to absence."""
    return (np.asarray(posterior) > 0.5).astype(float)


def build_model(y, X_det, X_occ, prior_sd=None):
    """PyMC model with the marginal occupancy likelihood as a Potential."""
    visited = (~np.isnan(y)).astype(float)
    y0 = np.nan_to_num(y, nan=0.0)
    detected = (y0 * visited).sum(axis=1) > 0

    with pm.Model() as model:
        if prior_sd is None:
            alpha = pm.Flat("alpha", shape=X_det.shape[-1])
            beta = pm.Flat("beta", shape=X_occ.shape[-1])
        else:
            alpha = pm.Normal("alpha", 0, prior_sd, shape=X_det.shape[-1])
            beta = pm.Normal("beta", 0, prior_sd, shape=X_occ.shape[-1])

        eta_p = (X_det * alpha).sum(axis=-1)     # (n_plots, n_visits)
        eta_psi = (X_occ * beta).sum(axis=-1)    # (n_plots,)

        # log sigmoid(x) = -log1pexp(-x), log(1 - sigmoid(x)) = -log1pexp(x)
        log_p = -pm.math.log1pexp(-eta_p)
        log_q = -pm.math.log1pexp(eta_p)
        log_hist = (visited * (y0 * log_p + (1 - y0) * log_q)).sum(axis=1)

        log_psi = -pm.math.log1pexp(-eta_psi)
        log_not_psi = -pm.math.log1pexp(eta_psi)

        occupied = log_psi + log_hist
        top = pt.maximum(occupied, log_not_psi)
        either = top + pt.log(pt.exp(occupied - top) + pt.exp(log_not_psi - top))
        loglik = pt.switch(detected, occupied, either)
        pm.Potential("loglik", loglik.sum())

    return model


class OccupancyEstimator:
    """
    Fits the occupancy model to one ``SpeciesUnit`` and derives ``Pi`` and ``z``.

    ``fit`` never raises for a numerical problem: it returns a failed
    ``OccupancyResult`` instead, so one species cannot stop a batch.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()

    def fit(self, unit: SpeciesUnit, seed: Optional[int] = None) -> OccupancyResult:
        n_plots = unit.y.shape[0]
        try:
            return self._fit(unit, seed)
        except Exception as e:
            logger.warning("%s (%d): FAILED (%s)", unit.name, unit.index, e)
            return OccupancyResult.failed(unit.index, unit.name, n_plots, e)

    # ---------------------------
    # Stage 1: coefficients
    # ---------------------------
    def _designs(self, unit):
        elev = unit.rescaling.apply_elevation(unit.elevation)
        dates = unit.rescaling.apply_date(unit.dates)
        X_det = detection_design(dates, elev, self.config.detection_elevation_interaction)
        X_occ = occupancy_design(elev)
        return X_det, X_occ

    def _fit(self, unit, seed):
        cfg = self.config
        X_det, X_occ = self._designs(unit)
        model = build_model(unit.y, X_det, X_occ, prior_sd=cfg.coef_prior_sd)

        if cfg.method == "nuts":
            return self._fit_nuts(unit, model, X_det, X_occ, seed)

        with model:
            point, opt = pm.find_MAP(method="L-BFGS-B", maxeval=cfg.maxeval,
                                     return_raw=True, progressbar=False)
        alpha = np.asarray(point["alpha"], dtype=float)
        beta = np.asarray(point["beta"], dtype=float)
        if not (np.isfinite(alpha).all() and np.isfinite(beta).all()):
            raise ConvergenceFailure("non-finite coefficients")
        if not getattr(opt, "success", True):
            # a line-search stop at a flat point still counts as converged
            grad = model.compile_dlogp()({"alpha": alpha, "beta": beta})
            if not np.all(np.abs(grad) < GRAD_TOL * max(1, unit.y.shape[0])):
                raise ConvergenceFailure(f"optimiser did not converge: {getattr(opt, 'message', '')}")
        logp = float(model.compile_logp()({"alpha": alpha, "beta": beta}))
        if not np.isfinite(logp):
            raise ConvergenceFailure("non-finite log likelihood at the optimum")

        p = self._detection(unit, X_det, alpha)
        psi = expit(X_occ @ beta)
        posterior = occupancy_posterior(unit.y, psi, p)
        z = posterior_mode(posterior)
        pi = self._pi(p, z)

        return OccupancyResult(index=unit.index, name=unit.name, status="ok", pi=pi, z=z,
                               posterior=posterior, psi=psi,
                               coef={"alpha": alpha, "beta": beta, "logp": logp})

    def _fit_nuts(self, unit, model, X_det, X_occ, seed):
        cfg = self.config
        with model:
            idata = pm.sample(
                draws=cfg.draws,
                tune=cfg.tune,
                chains=cfg.chains,
                cores=1,
                target_accept=cfg.target_accept,
                random_seed=seed,
                progressbar=False,
                compute_convergence_checks=False,
            )

        if cfg.chains > 1:
            rhat = az.rhat(idata, var_names=["alpha", "beta"])
            worst = float(np.nanmax(rhat.to_array().values))
            if worst > MAX_RHAT:
                raise ConvergenceFailure(f"r-hat {worst:.3f} > {MAX_RHAT}")

        alpha_post = idata.posterior["alpha"].values.reshape(-1, X_det.shape[-1])
        beta_post = idata.posterior["beta"].values.reshape(-1, X_occ.shape[-1])

        visited = ~np.isnan(unit.dates)
        p_post = expit(np.einsum("ijk,sk->sij", X_det, alpha_post))
        p_post = np.where(visited[None], p_post, 0.0)
        psi_post = expit(beta_post @ X_occ.T)

        posterior = occupancy_posterior(unit.y[None], psi_post, p_post).mean(axis=0)
        z = posterior_mode(posterior)
        pi_draws = np.array([self._pi(p_s, z) for p_s in p_post])
        pi_draws = pi_draws[np.isfinite(pi_draws)]
        if pi_draws.size == 0:
            raise ConvergenceFailure("no finite Pi draws")
        hdi = az.hdi(pi_draws, hdi_prob=cfg.hdi_prob)

        return OccupancyResult(index=unit.index, name=unit.name, status="ok",
                               pi=float(pi_draws.mean()), z=z, posterior=posterior,
                               psi=psi_post.mean(axis=0),
                               coef={"alpha": alpha_post.mean(axis=0), "beta": beta_post.mean(axis=0)},
                               pi_hdi=(float(hdi[0]), float(hdi[1])))

    # ---------------------------
    # Stage 2: derived quantities
    # ---------------------------
    @staticmethod
    def _detection(unit, X_det, alpha):
        """Per-visit detection probability; 0 for a visit that never happened."""
        p = expit(X_det @ alpha)
        return np.where(np.isnan(unit.dates), 0.0, p)

    def _pi(self, p, z):
        """Mean probability of at least one detection over plots (all, or occupied only)."""
        p_any = detection_probability_any(p)
        if self.config.pi_conditional_on_occupancy:
            occupied = np.asarray(z) == 1
            return float(p_any[occupied].mean()) if occupied.any() else math.nan
        return float(p_any.mean())
