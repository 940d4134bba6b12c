"""Simulates and fits the occupancy scenarios.

Each scenario runs once, top to bottom: set the parameters, simulate the
detection data, write the model text and read it back, then sample and
summarize the posterior. Output goes to results/<scenario>/.
"""
from functools import partial

import argparse
import os
import logging

import numpy as np

from config.config import load_scenario, SCENARIOS
from occupancy.bugs import write_model
from occupancy.estimate import sample_model, summarize, check_convergence
from occupancy.model import MeanOccupancy, CovariateOccupancy
from occupancy.plot import plot_trace, plot_covariate_fit
from occupancy.utils import expit, naive_occupancy, bayesian_p_value

def parse():
    '''Parses arguments from the command line'''
    parser = argparse.ArgumentParser(description="Occupancy scenarios")
    parser.add_argument('-s', "--scenario", default="all",
                        choices=SCENARIOS + ('all',))
    return parser.parse_args()

def main():

    args = parse()

    if not os.path.isdir('results'):
        os.mkdir('results')

    logging.basicConfig(filename=f'results/{args.scenario}.log',
                        level=logging.INFO)

    scenarios = SCENARIOS if args.scenario == 'all' else (args.scenario,)
    for scenario in scenarios:
        run_scenario(scenario)

    return None

def simulate_scenario(cfg):
    '''Simulate the data and build the matching model for a scenario.'''
    if cfg.model == 'mean':
        occ = MeanOccupancy(seed=cfg.seed)
        sim = occ.simulate(R=cfg.R, T=cfg.T, psi=cfg.psi, p=cfg.p)
        data = {'R': cfg.R, 'T': cfg.T, 'y': sim['y']}
        model = occ.compile_pymc_model(sim['y'])
    else:
        occ = CovariateOccupancy(seed=cfg.seed)
        sim = occ.simulate(R=cfg.R, T=cfg.T, coefficients=cfg.coefficients,
                           veg_range=cfg.veg_range)
        data = {'R': cfg.R, 'T': cfg.T, 'y': sim['y'], 'veg': sim['veg']}
        model = occ.compile_pymc_model(sim['y'], sim['veg'])

    return occ, sim, data, model

def run_scenario(scenario, results_root='results', cfg=None):
    '''Simulate, fit and summarize one scenario.

    cfg overrides the scenario's config file when given.
    '''
    logging.info(f'Running {scenario}...')
    print(f'Running {scenario}...')

    if cfg is None:
        cfg = load_scenario(scenario)

    results_dir = f'{results_root}/{scenario}'
    os.makedirs(results_dir, exist_ok=True)

    occ, sim, data, model = simulate_scenario(cfg)

    true_occupancy = sim['z'].mean()
    naive = naive_occupancy(sim['y'])
    logging.info(f'True occupancy {true_occupancy}, naive {naive}')
    print(f'True occupancy: {true_occupancy:.2f}, observed: {naive:.2f}')

    if cfg.model == 'mean':
        mle = occ.estimate_mle(sim['y'])
        reals = expit(mle.est_logit)
        print(f'MLE:\n{reals.round(3)}')

    # the model text goes through a file, as it would for a BUGS engine
    model_file = write_model(occ.bugs_model(), f'{results_dir}/model.txt')

    idata = sample_model(
        model,
        data,
        parameters=cfg.parameters,
        initial_values=partial(occ.initial_values, sim['y']),
        n_chains=cfg.n_chains,
        n_iter=cfg.n_iter,
        n_burnin=cfg.n_burnin,
        n_thin=cfg.n_thin,
        model_file=model_file,
        seed=cfg.seed
    )

    summary = summarize(idata, cfg.parameters)
    converged = check_convergence(summary)
    logging.info(f'Summary:\n{summary}')
    print(summary.round(3))
    if not converged:
        print('Warning: r_hat >= 1.1, the chains have not converged.')

    ppc = occ.check(idata, data, seed=cfg.seed)
    p_val = bayesian_p_value(ppc['freeman_tukey_new'],
                             ppc['freeman_tukey_observed'])
    logging.info(f'Bayesian p-value: {p_val}')
    print(f'Bayesian p-value: {p_val:.2f}')

    summary.to_csv(f'{results_dir}/summary.csv')
    idata.to_json(f'{results_dir}/posterior.json')
    np.save(f'{results_dir}/y.npy', sim['y'])

    plot_trace(idata, f'{results_dir}/trace.png', cfg.parameters)
    if cfg.model == 'covariate':
        plot_covariate_fit(sim, summary, f'{results_dir}/covariate_fit.png')

    logging.info(f'{scenario} complete.')

    return summary

if __name__ == '__main__':
    main()
