"""Constrained weighted linear least squares diffusion kurtosis imaging.

Estimates diffusion and kurtosis tensors from preprocessed diffusion-weighted
data and flags voxels whose tensors violate physical constraints.
"""

__version__ = "0.1.0"

from .dkifit import *
from .dkifit import (
    _adc,
    _akc,
    _check_grad,
    _constrained_fit,
    _count_violations,
    _d_monomials,
    _fibonacci_hemisphere,
    _normalize,
    _ols_weights,
    _unconstrained_fit,
    _w_monomials,
)
