"""Figures for the occupancy walkthrough."""

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

import numpy as np
import arviz as az

from occupancy.model import CovariateOccupancy, COEFFICIENTS

def plot_trace(idata: az.InferenceData, path: str, parameters: list = None):
    '''Trace and density plots for the monitored parameters.'''
    axes = az.plot_trace(idata, var_names=parameters)
    fig = np.asarray(axes).ravel()[0].figure
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)
    return path

def plot_covariate_fit(sim: dict, summary, path: str):
    """True and estimated occupancy and detection curves along veg.

    Args:
        sim: output of CovariateOccupancy.simulate
        summary: posterior summary from summarize, indexed by parameter
        path: where to save the figure
    """
    veg = sim['veg']
    estimates = {c: summary.loc[c, 'mean'] for c in COEFFICIENTS}

    psi_hat = CovariateOccupancy.occupancy_probability(veg, estimates)
    p_hat = CovariateOccupancy.detection_probability(veg, estimates)

    fig, (ax0, ax1) = plt.subplots(1, 2, figsize=(10, 4), sharey=True)

    # sites with at least one detection sit at one, the rest at zero
    ax0.plot(veg, sim['psi'], label='Truth')
    ax0.plot(veg, psi_hat, '--', label='Posterior mean')
    ax0.scatter(veg, sim['y'].max(axis=1), s=8, color='grey',
                label='Detected')
    ax0.set_xlabel('Vegetation')
    ax0.set_ylabel('Occupancy probability')
    ax0.legend()

    ax1.plot(veg, sim['p'], label='Truth')
    ax1.plot(veg, p_hat, '--', label='Posterior mean')
    occupied = sim['z'] == 1
    ax1.scatter(veg[occupied], sim['y'][occupied].mean(axis=1), s=8,
                color='grey', label='Detection frequency')
    ax1.set_xlabel('Vegetation')
    ax1.set_ylabel('Detection probability')
    ax1.legend()

    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)
    return path
