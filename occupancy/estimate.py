"""Driving the sampler and summarizing its output.

The sampler is PyMC. The latent occupancy states are updated with a binary
Gibbs step and the continuous parameters with NUTS. Chain control follows
the BUGS convention: n_iter counts the burn-in, which PyMC runs as tuning,
and only every n_thin-th draw is kept afterwards.
"""

import logging

import numpy as np
import pandas as pd
import pymc as pm
import arviz as az

from occupancy.bugs import read_model, check_families, ModelMismatch
from occupancy.utils import check_count, check_detections, DimensionMismatch
from occupancy.utils import InvalidParameter

QUANTILES = (0.025, 0.25, 0.5, 0.75, 0.975)

RHAT_THRESHOLD = 1.1

SUMMARY_COLUMNS = ['mean', 'sd', '2.5%', '25%', '50%', '75%', '97.5%',
                   'ess_bulk', 'r_hat']

def check_data(data: dict) -> dict:
    '''Check that R, T, y and the optional veg agree with each other.'''
    site_count = check_count(data['R'], 'R')
    survey_count = check_count(data['T'], 'T')
    checked = dict(data)
    checked['y'] = check_detections(data['y'], site_count, survey_count)
    if data.get('veg') is not None:
        veg = np.asarray(data['veg'], dtype=float)
        if veg.shape != (site_count,):
            raise DimensionMismatch(
                f'veg has shape {veg.shape}, expected ({site_count},)'
            )
        checked['veg'] = veg
    return checked

def check_model_file(model_file: str, model: pm.Model, data: dict) -> None:
    """Read the model text back and compare it with the data and PyMC model.

    Raises:
        ModelMismatch: the text needs data that was not supplied, or its
          stochastic nodes differ from those of the PyMC model.
    """
    spec = read_model(model_file)

    missing = spec.free_names() - set(data)
    if missing:
        raise ModelMismatch(f'{model_file} needs data for {sorted(missing)}')

    problems = check_families(spec, model)
    if problems:
        raise ModelMismatch(f'{model_file}: ' + '; '.join(problems))

    logging.debug(f'{model_file} matches the PyMC model')

def sample_model(model: pm.Model, data: dict, parameters: list,
                 initial_values, n_chains: int = 3, n_iter: int = 1000,
                 n_burnin: int = 100, n_thin: int = 5, model_file: str = None,
                 seed=None, cores: int = None) -> az.InferenceData:
    """Sample the posterior of an occupancy model.

    Args:
        model: the PyMC model to sample
        data: mapping with R, T, y and, for the covariate model, veg
        parameters: names of the variables to keep in the output
        initial_values: callable returning starting values for one chain
        n_chains: number of independent chains
        n_iter: iterations per chain, burn-in included
        n_burnin: iterations discarded at the start of each chain
        n_thin: keep every n_thin-th draw after the burn-in
        model_file: path to the BUGS text of the model; checked against the
          data and the PyMC model before sampling when given
        seed: seed for the sampler
    Returns:
        az.InferenceData with (n_iter - n_burnin) / n_thin draws per chain
    """
    if not isinstance(model, pm.Model):
        raise TypeError(
            f'model must be a pm.Model, got {type(model).__name__}; '
            'pass the path to the model text as model_file'
        )

    data = check_data(data)
    n_chains = check_count(n_chains, 'n_chains')
    n_iter = check_count(n_iter, 'n_iter')
    n_burnin = check_count(n_burnin, 'n_burnin')
    n_thin = check_count(n_thin, 'n_thin')
    if n_burnin >= n_iter:
        raise InvalidParameter(
            f'n_burnin ({n_burnin}) must be less than n_iter ({n_iter})'
        )

    if model_file is not None:
        check_model_file(model_file, model, data)

    initvals = [initial_values() for _ in range(n_chains)]

    sample_kwargs = {
        'draws': n_iter - n_burnin,
        'tune': n_burnin,
        'chains': n_chains,
        'random_seed': seed,
        'progressbar': False,
        'compute_convergence_checks': False
    }
    if cores is not None:
        sample_kwargs['cores'] = cores

    logging.info(f'Sample kwargs:\n{sample_kwargs}')

    with model:
        # gibbs updates for the latent occupancy, NUTS for the rest
        step = [pm.BinaryGibbsMetropolis([model['z']])]
        idata = pm.sample(step=step, initvals=initvals, **sample_kwargs)

    thinned = idata.sel(draw=slice(None, None, n_thin))

    groups = {'posterior': thinned.posterior[parameters]}
    for group in ('sample_stats', 'observed_data'):
        if group in thinned.groups():
            groups[group] = getattr(thinned, group)

    return az.InferenceData(**groups)

def summarize(idata: az.InferenceData, parameters: list = None) -> pd.DataFrame:
    """Posterior summary for each monitored parameter.

    Returns:
        pd.DataFrame indexed by parameter with the mean, sd, the 2.5, 25, 50,
          75 and 97.5 percent quantiles, the bulk effective sample size and
          the potential scale reduction factor (r_hat).
    """
    if parameters is None:
        parameters = list(idata.posterior.data_vars)

    summary = az.summary(idata, var_names=parameters)

    # quantiles over the pooled chains
    stacked = az.extract(idata, var_names=parameters, keep_dataset=True)
    rows = {}
    for name in parameters:
        values = np.asarray(stacked[name].values)
        if values.ndim == 1:
            rows[name] = np.quantile(values, QUANTILES)
        else:
            flat = values.reshape(-1, values.shape[-1])
            for i, row in enumerate(flat):
                rows[f'{name}[{i}]'] = np.quantile(row, QUANTILES)

    quantile_columns = [f'{q * 100:g}%' for q in QUANTILES]
    quantiles = pd.DataFrame.from_dict(rows, orient='index',
                                       columns=quantile_columns)

    summary = summary.join(quantiles)

    return summary[SUMMARY_COLUMNS]

def check_convergence(summary: pd.DataFrame,
                      threshold: float = RHAT_THRESHOLD) -> bool:
    """True if r_hat is below the threshold for every parameter.

    Parameters with no posterior variance have an undefined r_hat and are
    not counted against convergence.
    """
    constant = summary['sd'] == 0
    failed = summary.loc[~constant & ~(summary['r_hat'] < threshold)]

    if not failed.empty:
        logging.warning(
            f'r_hat >= {threshold} for {list(failed.index)}: '
            f'{failed.r_hat.to_dict()}'
        )
        return False

    return True
