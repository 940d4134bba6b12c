"""Simulating and estimating site-occupancy models.

Each class holds two independent descriptions of the same generative process.
The first is the imperative simulator, ``simulate``. The second is the
declarative model handed to the sampler: ``bugs_model`` gives the BUGS text
and ``compile_pymc_model`` the equivalent PyMC model. The two are kept apart
on purpose, so the likelihood can be checked against the process that made
the data.

The simulation code follows Kery (2010) Introduction to WinBUGS for
Ecologists, Chapter 20, and Kery and Schaub (2011) BPA, Chapter 13.

Typical usage example:

  occ = MeanOccupancy(seed=2)
  sim = occ.simulate(R=100, T=3, psi=0.7, p=0.4)

  model = occ.compile_pymc_model(sim['y'])
  with model:
      idata = pm.sample()
"""

import logging

import numpy as np
import pandas as pd
import pymc as pm
import arviz as az
from scipy.optimize import minimize

from occupancy.bugs import ModelSpec, Comment, Stochastic, Deterministic, Loop
from occupancy.utils import expit, freeman_tukey, check_probability
from occupancy.utils import check_count, check_detections, InvalidParameter
from occupancy.utils import DimensionMismatch

# vague normal prior on the logit scale, given as a BUGS precision
PRIOR_PRECISION = 0.1
PRIOR_SIGMA = 1 / np.sqrt(PRIOR_PRECISION)

COEFFICIENTS = ('alpha_occ', 'beta_occ', 'alpha_p', 'beta1_p', 'beta2_p')

class Occupancy:
    '''Pieces shared by the occupancy models.'''

    parameters = []

    def __init__(self, seed: int = None) -> None:
        self.rng = np.random.default_rng(seed)

    def simulate_z(self, psi: np.ndarray) -> np.ndarray:
        """One Bernoulli trial per site for the latent occupancy state."""
        return self.rng.binomial(n=1, p=psi)

    def simulate_detection(self, z: np.ndarray, P: np.ndarray) -> np.ndarray:
        """Generate the site by survey detection matrix.

        Args:
            z: latent occupancy, shape (R,)
            P: detection probability given occupancy, shape (R, T)
        Returns:
            Binary matrix of shape (R, T). Rows for unoccupied sites are zero.
        """
        # coin flips with probability p for every survey
        detection = self.rng.binomial(n=1, p=P)

        # detected AND present, i.e., the site is occupied
        return detection * z[:, None]

    def initial_values(self, y: np.ndarray) -> dict:
        '''Starting values for one chain.

        z starts at the observed maximum per site, so no detected site starts
        unoccupied.
        '''
        inits = {'z': y.max(axis=1).astype(int)}
        inits.update(self.initial_parameters())
        return inits

    def initial_parameters(self) -> dict:
        raise NotImplementedError

    def site_probabilities(self, stacked, data: dict):
        raise NotImplementedError

    def check(self, idata: az.InferenceData, data: dict, seed=None) -> dict:
        '''Conduct a posterior predictive check.

        The test statistic is the Freeman-Tukey statistic, measuring the
        discrepancy between the observed (or replicated) and expected number
        of detections at each site.

        Args:
            idata: inference data object from sampling
            data: mapping with the detection matrix y, plus veg for the
              covariate model
        Returns:
            dict with the statistic for the observed and replicated data, one
            value per posterior draw.
        '''
        y = np.asarray(data['y'])
        survey_count = y.shape[1]
        observed = y.sum(axis=1)

        # site level probabilities for each draw, shape (R, draws)
        stacked = az.extract(idata, keep_dataset=True)
        psi, p = self.site_probabilities(stacked, data)

        # expected detections at each site, integrating over z
        expected = psi * p * survey_count

        # rng for drawing from the posterior predictive distribution
        rng = np.random.default_rng(seed=seed)
        z_new = rng.binomial(1, psi)
        detections_new = rng.binomial(survey_count, z_new * p)

        freeman_tukey_observed = []
        freeman_tukey_new = []
        for i in range(expected.shape[1]):
            D_obs = freeman_tukey(observed, expected[:, i])
            freeman_tukey_observed.append(D_obs)

            D_new = freeman_tukey(detections_new[:, i], expected[:, i])
            freeman_tukey_new.append(D_new)

        return {'freeman_tukey_observed': np.array(freeman_tukey_observed),
                'freeman_tukey_new': np.array(freeman_tukey_new)}

class MeanOccupancy(Occupancy):
    """Occupancy model of the mean: one psi and one p shared by all sites.

    The data are the results of T surveys at R sites. Each site is occupied
    with probability psi, and an occupied site is detected on a survey with
    probability p. An unoccupied site is never detected, so all-zero rows
    mix true absences with missed presences.
    """

    parameters = ['psi', 'p']

    def simulate(self, R: int, T: int, psi: float, p: float) -> dict:
        '''Simulate detection/non-detection data with constant psi and p.'''
        R = check_count(R, 'R')
        T = check_count(T, 'T')
        psi = check_probability(psi, 'psi')
        p = check_probability(p, 'p')

        z = self.simulate_z(np.full(R, psi))
        y = self.simulate_detection(z, np.full((R, T), p))

        logging.debug(f'Simulated {z.sum()} occupied sites of {R}, '
                      f'{y.max(axis=1).sum()} detected')

        return {'z': z, 'y': y}

    def bugs_model(self) -> ModelSpec:
        '''BUGS text for the model of the mean.'''
        likelihood = Loop('i', '1', 'R', (
            Stochastic('z[i]', 'dbern', ('psi',)),
            Deterministic('p.eff[i]', 'z[i] * p'),
            Loop('j', '1', 'T', (
                Stochastic('y[i,j]', 'dbern', ('p.eff[i]',)),
            )),
        ))
        return ModelSpec((
            Comment('Priors'),
            Stochastic('psi', 'dunif', ('0', '1')),
            Stochastic('p', 'dunif', ('0', '1')),
            Comment('Likelihood'),
            likelihood,
        ))

    def compile_pymc_model(self, y: np.ndarray) -> pm.Model:
        '''Generate the model of the mean in PyMC.'''
        y = check_detections(y)
        site_count, _ = y.shape

        with pm.Model() as occupancy:
            # priors for occupancy and detection
            psi = pm.Uniform('psi', 0., 1.)
            p = pm.Uniform('p', 0., 1.)

            # latent occupancy state
            z = pm.Bernoulli('z', psi, shape=site_count)

            # detection is only possible at occupied sites
            p_eff = z * p
            pm.Bernoulli('y', p_eff[:, None], observed=y)

        return occupancy

    def initial_parameters(self) -> dict:
        return {'psi': self.rng.uniform(), 'p': self.rng.uniform()}

    def site_probabilities(self, stacked, data: dict):
        site_count = np.asarray(data['y']).shape[0]
        shape = (site_count, stacked.psi.values.shape[0])
        psi = np.broadcast_to(stacked.psi.values, shape)
        p = np.broadcast_to(stacked.p.values, shape)
        return psi, p

    def estimate_mle(self, y: np.ndarray) -> pd.DataFrame:
        """Estimate the MLE for the model of the mean.

        Args:
            y: detection matrix of shape (R, T)
        Returns:
            pd.DataFrame containing the logit estimates and standard errors
              for psi and p
        """
        y = check_detections(y)
        theta_start = np.zeros(2)

        res = minimize(self.loglik, theta_start, method='BFGS', args=(y,))
        se = np.sqrt(np.diag(res.hess_inv))

        # put results in a dataframe
        results = pd.DataFrame({'est_logit': res['x'], 'se': se},
                               index=self.parameters)

        return results

    def loglik(self, theta: np.ndarray, y: np.ndarray) -> float:
        """Negative log likelihood with z summed out.

        A site with d detections in T surveys contributes
        psi * p^d * (1 - p)^(T - d), plus (1 - psi) when d is zero.

        Args:
            theta: logit scale psi and p
            y: detection matrix of shape (R, T)
        """
        psi, p = expit(theta)
        survey_count = y.shape[1]
        detections = y.sum(axis=1)

        occupied = psi * p ** detections * (1 - p) ** (survey_count - detections)
        never_detected = (detections == 0) * (1 - psi)

        return -np.log(occupied + never_detected).sum()

class CovariateOccupancy(Occupancy):
    """Occupancy and detection as logistic regressions on a site covariate.

    Occupancy is linear in the covariate (vegetation density, veg) on the
    logit scale, and detection is quadratic:

        logit(psi_i) = alpha_occ + beta_occ * veg_i
        logit(p_i) = alpha_p + beta1_p * veg_i + beta2_p * veg_i^2

    The derived quantity occ_fs counts the occupied sites in the sample.
    """

    parameters = list(COEFFICIENTS) + ['occ_fs']

    def simulate(self, R: int, T: int, coefficients: dict, veg=None,
                 veg_range=(-1, 1)) -> dict:
        '''Simulate detection/non-detection data along a covariate gradient.

        Args:
            R: number of sites
            T: number of surveys per site
            coefficients: mapping with alpha_occ, beta_occ, alpha_p, beta1_p
              and beta2_p
            veg: covariate values, drawn uniformly on veg_range and sorted
              when not given
        '''
        R = check_count(R, 'R')
        T = check_count(T, 'T')
        coefficients = self.check_coefficients(coefficients)

        if veg is None:
            low, high = veg_range
            veg = np.sort(self.rng.uniform(low, high, size=R))
        veg = np.asarray(veg, dtype=float)
        if veg.shape != (R,):
            raise DimensionMismatch(f'veg has shape {veg.shape}, expected ({R},)')

        psi = self.occupancy_probability(veg, coefficients)
        p = self.detection_probability(veg, coefficients)
        check_probability(psi, 'psi')
        check_probability(p, 'p')

        z = self.simulate_z(psi)
        y = self.simulate_detection(z, np.repeat(p[:, None], T, axis=1))

        logging.debug(f'Simulated {z.sum()} occupied sites of {R}, '
                      f'{y.max(axis=1).sum()} detected')

        return {'z': z, 'y': y, 'veg': veg, 'psi': psi, 'p': p}

    def check_coefficients(self, coefficients: dict) -> dict:
        missing = [c for c in COEFFICIENTS if c not in coefficients]
        if missing:
            raise InvalidParameter(f'missing coefficients: {missing}')
        checked = {c: float(coefficients[c]) for c in COEFFICIENTS}
        if not np.isfinite(list(checked.values())).all():
            raise InvalidParameter(f'coefficients must be finite: {checked}')
        return checked

    @staticmethod
    def occupancy_probability(veg, coefficients: dict) -> np.ndarray:
        logit_psi = coefficients['alpha_occ'] + coefficients['beta_occ'] * veg
        return expit(logit_psi)

    @staticmethod
    def detection_probability(veg, coefficients: dict) -> np.ndarray:
        logit_p = (coefficients['alpha_p'] + coefficients['beta1_p'] * veg
                   + coefficients['beta2_p'] * veg ** 2)
        return expit(logit_p)

    def bugs_model(self) -> ModelSpec:
        '''BUGS text for the covariate model.'''
        precision = f'{PRIOR_PRECISION}'
        priors = tuple(
            Stochastic(name.replace('_', '.'), 'dnorm', ('0', precision))
            for name in COEFFICIENTS
        )
        likelihood = Loop('i', '1', 'R', (
            Stochastic('z[i]', 'dbern', ('psi[i]',)),
            Deterministic('psi[i]', 'alpha.occ + beta.occ * veg[i]', 'logit'),
            Deterministic('p.eff[i]', 'z[i] * p[i]'),
            Deterministic(
                'p[i]',
                'alpha.p + beta1.p * veg[i] + beta2.p * pow(veg[i], 2)',
                'logit'
            ),
            Loop('j', '1', 'T', (
                Stochastic('y[i,j]', 'dbern', ('p.eff[i]',)),
            )),
        ))
        return ModelSpec(
            (Comment('Priors'),) + priors + (
                Comment('Likelihood'),
                likelihood,
                Comment('Derived quantities'),
                Deterministic('occ.fs', 'sum(z[])'),
            )
        )

    def compile_pymc_model(self, y: np.ndarray, veg: np.ndarray) -> pm.Model:
        '''Generate the covariate model in PyMC.'''
        y = check_detections(y)
        site_count, _ = y.shape
        veg = np.asarray(veg, dtype=float)
        if veg.shape != (site_count,):
            raise DimensionMismatch(
                f'veg has shape {veg.shape}, expected ({site_count},)'
            )

        with pm.Model() as occupancy:
            # vague priors on the logit scale
            alpha_occ = pm.Normal('alpha_occ', 0., sigma=PRIOR_SIGMA)
            beta_occ = pm.Normal('beta_occ', 0., sigma=PRIOR_SIGMA)
            alpha_p = pm.Normal('alpha_p', 0., sigma=PRIOR_SIGMA)
            beta1_p = pm.Normal('beta1_p', 0., sigma=PRIOR_SIGMA)
            beta2_p = pm.Normal('beta2_p', 0., sigma=PRIOR_SIGMA)

            # latent occupancy state
            psi = pm.math.invlogit(alpha_occ + beta_occ * veg)
            z = pm.Bernoulli('z', psi, shape=site_count)

            # detection is only possible at occupied sites
            p = pm.math.invlogit(alpha_p + beta1_p * veg + beta2_p * veg ** 2)
            p_eff = z * p
            pm.Bernoulli('y', p_eff[:, None], observed=y)

            # number of occupied sites in the sample
            pm.Deterministic('occ_fs', z.sum())

        return occupancy

    def initial_parameters(self) -> dict:
        return {c: self.rng.uniform(-3, 3) for c in COEFFICIENTS}

    def site_probabilities(self, stacked, data: dict):
        veg = np.asarray(data['veg'], dtype=float)[:, None]
        draws = {c: stacked[c].values[None, :] for c in COEFFICIENTS}
        psi = self.occupancy_probability(veg, draws)
        p = self.detection_probability(veg, draws)
        return psi, p
