from functools import partial

import numpy as np
import arviz as az
import pytest
from pymc.exceptions import SamplingError

from config.config import load_scenario
from occupancy.bugs import write_model, ModelMismatch
from occupancy.estimate import sample_model, summarize, check_convergence
from occupancy.estimate import check_data, check_model_file, SUMMARY_COLUMNS
from occupancy.model import MeanOccupancy, CovariateOccupancy
from occupancy.utils import bayesian_p_value, expit, InvalidParameter
from occupancy.utils import DimensionMismatch

debug_kwargs = {
    'R': 100,
    'T': 3,
    'psi': 0.7,
    'p': 0.4
}

sample_kwargs = {
    'n_chains': 3,
    'n_iter': 1000,
    'n_burnin': 100,
    'n_thin': 5
}

def fake_posterior(shift=0.0, seed=0):
    '''Three chains of 200 draws for psi and p, chain 0 shifted by shift.'''
    rng = np.random.default_rng(seed)
    psi = rng.normal(0.7, 0.05, size=(3, 200))
    psi[0] += shift
    p = rng.normal(0.4, 0.05, size=(3, 200))
    return az.from_dict(posterior={'psi': psi, 'p': p})

def test_check_data():

    y = np.zeros((10, 3), dtype=int)

    data = check_data({'R': 10, 'T': 3, 'y': y, 'veg': np.zeros(10)})
    assert data['y'].shape == (10, 3)

    with pytest.raises(DimensionMismatch):
        check_data({'R': 11, 'T': 3, 'y': y})
    with pytest.raises(DimensionMismatch):
        check_data({'R': 10, 'T': 2, 'y': y})
    with pytest.raises(DimensionMismatch):
        check_data({'R': 10, 'T': 3, 'y': y, 'veg': np.zeros(9)})

def test_check_model_file(tmp_path):

    occ = MeanOccupancy(seed=2)
    sim = occ.simulate(**debug_kwargs)
    model = occ.compile_pymc_model(sim['y'])
    data = {'R': 100, 'T': 3, 'y': sim['y']}

    path = write_model(occ.bugs_model(), str(tmp_path / 'mean.txt'))
    check_model_file(path, model, data)

    # the covariate text asks for veg and has different nodes
    path = write_model(CovariateOccupancy().bugs_model(),
                       str(tmp_path / 'covariate.txt'))
    with pytest.raises(ModelMismatch, match='veg'):
        check_model_file(path, model, data)

    with pytest.raises(ModelMismatch, match='alpha_occ'):
        check_model_file(path, model, {**data, 'veg': np.zeros(100)})

def test_burnin_longer_than_run():

    occ = MeanOccupancy(seed=2)
    sim = occ.simulate(**debug_kwargs)
    model = occ.compile_pymc_model(sim['y'])
    data = {'R': 100, 'T': 3, 'y': sim['y']}

    with pytest.raises(InvalidParameter):
        sample_model(model, data, occ.parameters,
                     partial(occ.initial_values, sim['y']),
                     n_iter=100, n_burnin=100)

def test_model_must_be_pymc(tmp_path):

    occ = MeanOccupancy(seed=2)
    sim = occ.simulate(**debug_kwargs)
    data = {'R': 100, 'T': 3, 'y': sim['y']}
    path = write_model(occ.bugs_model(), str(tmp_path / 'mean.txt'))

    # the model text goes in model_file, not in place of the model
    with pytest.raises(TypeError, match='model_file'):
        sample_model(path, data, occ.parameters,
                     partial(occ.initial_values, sim['y']))

def test_model_file_mismatch_stops_sampling(tmp_path):

    occ = MeanOccupancy(seed=2)
    sim = occ.simulate(**debug_kwargs)
    model = occ.compile_pymc_model(sim['y'])
    data = {'R': 100, 'T': 3, 'y': sim['y'], 'veg': np.zeros(100)}

    path = write_model(CovariateOccupancy().bugs_model(),
                       str(tmp_path / 'covariate.txt'))

    def never_called():
        raise AssertionError('sampling started before the model check')

    with pytest.raises(ModelMismatch):
        sample_model(model, data, occ.parameters, never_called,
                     model_file=path)

def test_inconsistent_initial_values():

    occ = MeanOccupancy(seed=2)
    sim = occ.simulate(**debug_kwargs)
    model = occ.compile_pymc_model(sim['y'])
    data = {'R': 100, 'T': 3, 'y': sim['y']}

    def all_unoccupied():
        return {'psi': 0.5, 'p': 0.5, 'z': np.zeros(100, dtype=int)}

    # detected sites cannot be unoccupied
    with pytest.raises(SamplingError):
        sample_model(model, data, occ.parameters, all_unoccupied,
                     n_chains=1, n_iter=20, n_burnin=10, n_thin=1, cores=1)

def test_summarize():

    summary = summarize(fake_posterior())

    assert list(summary.columns) == SUMMARY_COLUMNS
    assert set(summary.index) == {'psi', 'p'}
    assert np.isclose(summary.loc['psi', 'mean'], 0.7, atol=0.01)
    assert (summary['2.5%'] < summary['50%']).all()
    assert (summary['50%'] < summary['97.5%']).all()

def test_check_convergence():

    assert check_convergence(summarize(fake_posterior()))
    assert not check_convergence(summarize(fake_posterior(shift=0.5)))

def test_covariate_check():

    occ = CovariateOccupancy(seed=5)
    coefficients = {'alpha_occ': 0., 'beta_occ': 2., 'alpha_p': 0.,
                    'beta1_p': -1., 'beta2_p': 0.}
    sim = occ.simulate(R=50, T=3, coefficients=coefficients)

    # posterior concentrated at the truth
    posterior = {c: np.full((2, 100), v) for c, v in coefficients.items()}
    idata = az.from_dict(posterior=posterior)

    ppc = occ.check(idata, {'y': sim['y'], 'veg': sim['veg']}, seed=5)

    assert ppc['freeman_tukey_observed'].shape == (200,)
    assert ppc['freeman_tukey_new'].shape == (200,)
    assert np.all(ppc['freeman_tukey_observed'] >= 0)

class TestMeanScenario:

    occ = MeanOccupancy(seed=2)
    sim = occ.simulate(**debug_kwargs)
    data = {'R': 100, 'T': 3, 'y': sim['y']}

    model = occ.compile_pymc_model(sim['y'])
    idata = sample_model(model, data, occ.parameters,
                         partial(occ.initial_values, sim['y']),
                         seed=2, **sample_kwargs)
    summary = summarize(idata, occ.parameters)

    def test_draws(self):

        # (1000 - 100) / 5 draws kept per chain
        assert self.idata.posterior.sizes['chain'] == 3
        assert self.idata.posterior.sizes['draw'] == 180
        assert set(self.idata.posterior.data_vars) == {'psi', 'p'}

    def test_estimate_bayes(self):

        psi_mean = self.summary.loc['psi', 'mean']
        p_mean = self.summary.loc['p', 'mean']

        assert 0.6 <= psi_mean <= 0.9
        assert 0.25 <= p_mean <= 0.55

        # the posterior sits above the naive estimate
        assert psi_mean > self.sim['y'].max(axis=1).mean()

    def test_convergence(self):

        assert (self.summary['r_hat'] < 1.1).all()
        assert check_convergence(self.summary)

    def test_agrees_with_mle(self):

        mle = self.occ.estimate_mle(self.sim['y'])
        reals = expit(mle.est_logit.values)
        posterior_mean = self.summary.loc[['psi', 'p'], 'mean'].values

        assert np.allclose(reals, posterior_mean, atol=0.1)

    def test_check(self):

        ppc = self.occ.check(self.idata, self.data, seed=2)

        d_new = ppc['freeman_tukey_new']
        d_obs = ppc['freeman_tukey_observed']

        assert d_new.shape == d_obs.shape == (540,)

        p_val = bayesian_p_value(d_new, d_obs)
        assert 0 <= p_val <= 1

class TestCovariateScenario:

    cfg = load_scenario('covariate')

    occ = CovariateOccupancy(seed=cfg.seed)
    sim = occ.simulate(R=cfg.R, T=cfg.T, coefficients=cfg.coefficients,
                       veg_range=cfg.veg_range)
    data = {'R': cfg.R, 'T': cfg.T, 'y': sim['y'], 'veg': sim['veg']}

    model = occ.compile_pymc_model(sim['y'], sim['veg'])
    idata = sample_model(model, data, cfg.parameters,
                         partial(occ.initial_values, sim['y']),
                         n_chains=cfg.n_chains, n_iter=cfg.n_iter,
                         n_burnin=cfg.n_burnin, n_thin=cfg.n_thin,
                         seed=cfg.seed)
    summary = summarize(idata, cfg.parameters)

    def test_draws(self):

        assert self.idata.posterior.sizes['chain'] == 3
        assert self.idata.posterior.sizes['draw'] == 180
        assert set(self.idata.posterior.data_vars) == set(self.cfg.parameters)

    def test_convergence(self):

        assert set(self.summary.index) == set(self.cfg.parameters)
        assert (self.summary['r_hat'] < 1.1).all()
        assert check_convergence(self.summary)

    def test_finite_sample_occupancy(self):

        occ_fs = self.summary.loc['occ_fs', 'mean']
        detected = self.sim['y'].max(axis=1).sum()

        # every detected site is occupied in every draw
        assert detected <= self.summary.loc['occ_fs', '2.5%']
        assert occ_fs <= self.cfg.R
        assert abs(occ_fs - self.sim['z'].sum()) <= 10

    def test_occupancy_slope(self):

        # occupancy rises with vegetation
        assert self.summary.loc['beta_occ', '2.5%'] > 0
        assert self.summary.loc['beta_occ', 'mean'] > 1

    def test_check(self):

        ppc = self.occ.check(self.idata, self.data, seed=self.cfg.seed)

        d_new = ppc['freeman_tukey_new']
        d_obs = ppc['freeman_tukey_observed']

        assert d_new.shape == d_obs.shape == (540,)
        assert 0 <= bayesian_p_value(d_new, d_obs) <= 1
