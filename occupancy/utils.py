import numpy as np

class InvalidParameter(ValueError):
    '''A probability outside [0, 1], or a non-positive site/survey count.'''

class DimensionMismatch(ValueError):
    '''Arrays whose shapes do not line up with the sites and surveys.'''

def expit(x):
    '''Inverse logit of an array like.'''
    return 1 / (1 + np.exp(-x))

def logit(x):
    return np.log(x / (1 - x))

def check_probability(value, name: str = 'probability') -> np.ndarray:
    """Raise InvalidParameter unless every value lies in [0, 1]."""
    value = np.asarray(value, dtype=float)
    if np.isnan(value).any() or (value < 0).any() or (value > 1).any():
        raise InvalidParameter(f'{name} must lie in [0, 1], got {value}')
    return value

def check_count(value, name: str) -> int:
    try:
        finite = np.isfinite(value)
    except TypeError:
        finite = False
    if not finite or int(value) != value or value < 1:
        raise InvalidParameter(f'{name} must be a positive integer, got {value}')
    return int(value)

def check_detections(y, R: int = None, T: int = None) -> np.ndarray:
    """Validate a site by survey detection matrix."""
    y = np.asarray(y)
    if y.ndim != 2:
        raise DimensionMismatch(f'y must be 2D (sites, surveys), got {y.shape}')
    if R is not None and y.shape[0] != R:
        raise DimensionMismatch(f'y has {y.shape[0]} sites, expected {R}')
    if T is not None and y.shape[1] != T:
        raise DimensionMismatch(f'y has {y.shape[1]} surveys, expected {T}')
    if not np.isin(y, (0, 1)).all():
        raise InvalidParameter('y must contain only zeros and ones')
    return y.astype(int)

def naive_occupancy(y: np.ndarray) -> float:
    '''Fraction of sites with at least one detection.'''
    return float(y.max(axis=1).mean())

def freeman_tukey(observed, expected) -> float:
    '''Freeman-Tukey discrepancy between observed and expected counts.'''
    D = np.power(np.sqrt(observed) - np.sqrt(expected), 2).sum()
    return D

def bayesian_p_value(replicate, observed) -> float:
    return (replicate >= observed).mean()
