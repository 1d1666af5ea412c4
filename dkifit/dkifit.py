#!/usr/bin/env python

"""Diffusion kurtosis tensor estimation with constrained weighted linear least
squares."""

import argparse
import itertools
import math
import warnings

import cvxpy as cp
import jax
from joblib import Parallel, delayed
import nibabel as nib
import numba
import numpy as np
from tqdm import tqdm


jax.config.update("jax_enable_x64", True)
jax.config.update("jax_platforms", "cpu")

# Smallest acceptable apparent diffusion and kurtosis coefficient
MIN_PARAM = 1e-8

# Weighted fits of design matrices with a larger condition number are undefined
MAX_COND = 1e15

# Upper bound on the b-values used in the fit (ms/um^2)
DEFAULT_MAX_BVAL = 2.5

# Enforced constraints: D_app > 0, K_app > 0, K_app < 3 / (b * D_app)
DEFAULT_CONSTRAINTS = (False, True, False)

QP_SOLVER = cp.CLARABEL
QP_OPTIONS = {"max_iter": 1000}

# Status codes stored in FitResult.status
STATUS_OUTSIDE_MASK = -1
STATUS_SOLVED = 0
STATUS_UNDEFINED = 1
STATUS_QP_FAILED = 2


def tensor_order(order):
    """Return the unique index tuples of a fully symmetric tensor.

    Parameters
    ----------
    order : int
        Tensor order, 2 or 4.

    Returns
    -------
    ind : numpy.ndarray
        Integer array with shape (number of unique elements, `order`) in
        lexicographic order.
    cnt : numpy.ndarray
        Integer array with shape (number of unique elements,) containing the
        number of index permutations mapping to each unique element.
    """
    if order not in (2, 4):
        raise ValueError(f"Tensor order must be 2 or 4, not {order}")
    combinations = list(itertools.combinations_with_replacement(range(3), order))
    cnt = [
        math.factorial(order) // math.prod(math.factorial(c.count(s)) for s in range(3))
        for c in combinations
    ]
    return np.array(combinations), np.array(cnt)


def _read_only(*arrays):
    for a in arrays:
        a.flags.writeable = False
    return arrays


_D_IND, _D_CNT = _read_only(*tensor_order(2))
_W_IND, _W_CNT = _read_only(*tensor_order(4))


def _d_monomials(vs):
    """Evaluate the diffusion tensor basis along unit vectors `vs`.

    Works with both numpy and jax arrays with shape (number of directions, 3).
    """
    return vs[:, _D_IND[:, 0]] * vs[:, _D_IND[:, 1]] * _D_CNT


def _w_monomials(vs):
    """Evaluate the kurtosis tensor basis along unit vectors `vs`.

    Works with both numpy and jax arrays with shape (number of directions, 3).
    """
    return (
        vs[:, _W_IND[:, 0]]
        * vs[:, _W_IND[:, 1]]
        * vs[:, _W_IND[:, 2]]
        * vs[:, _W_IND[:, 3]]
        * _W_CNT
    )


def _fibonacci_hemisphere(n):
    """Return `n` quasi-uniformly distributed unit vectors with z > 0."""
    i = np.arange(n)
    z = 1 - (i + 0.5) / n
    r = np.sqrt(1 - z ** 2)
    phi = i * np.pi * (3 - np.sqrt(5))
    return np.column_stack((r * np.cos(phi), r * np.sin(phi), z))


# Directions along which the constraints are enforced. Apparent diffusion and
# kurtosis coefficients are antipodally symmetric so a hemisphere is enough.
(CONSTRAINT_DIRS,) = _read_only(_fibonacci_hemisphere(64))


def rescale_bvals(bvals):
    """Convert b-values from s/mm^2 to ms/um^2 if needed.

    b-values whose maximum is at least two orders of magnitude above one are
    assumed to be in s/mm^2 and divided by 1000.

    Parameters
    ----------
    bvals : numpy.ndarray
        Floating-point array with shape (number of acquisitions,).

    Returns
    -------
    numpy.ndarray
    """
    bvals = np.asarray(bvals, dtype=float)
    order = np.floor(np.log10(np.abs(np.max(bvals) + 1)))
    if order >= 2:
        return bvals / 1000
    return bvals


def _normalize_bvecs(bvecs):
    bvecs = np.asarray(bvecs, dtype=float)
    norms = np.linalg.norm(bvecs, axis=1)[:, np.newaxis]
    return np.divide(bvecs, norms, out=np.zeros_like(bvecs), where=norms > 0)


def _check_grad(grad, n):
    """Raise a ValueError if `grad` is not a valid (n, 4) gradient table."""
    grad = np.asarray(grad)
    if grad.ndim != 2 or grad.shape[1] != 4:
        raise ValueError(
            f"Gradient table must have shape (number of acquisitions, 4), "
            f"not {grad.shape}"
        )
    if grad.shape[0] != n:
        raise ValueError(
            f"Gradient table has {grad.shape[0]} rows but data has {n} acquisitions"
        )


def design_matrix(bvals, bvecs):
    """Return the diffusion kurtosis imaging design matrix.

    Parameters
    ----------
    bvals : numpy.ndarray
        Floating-point array with shape (number of acquisitions,).
    bvecs : numpy.ndarray
        Floating-point array with shape (number of acquisitions, 3) containing
        unit vectors.

    Returns
    -------
    numpy.ndarray
        Floating-point array with shape (number of acquisitions, 22).
    """
    bvals = np.asarray(bvals, dtype=float)[:, np.newaxis]
    bvecs = np.asarray(bvecs, dtype=float)
    return np.hstack(
        (
            np.ones_like(bvals),
            -bvals * _d_monomials(bvecs),
            bvals ** 2 / 6 * _w_monomials(bvecs),
        )
    )


def vectorize(S, mask=None):
    """Convert between volumetric and compact voxel layouts.

    A 3D or 4D volume is flattened into an array with shape (number of
    features, number of voxels in mask). A 1D or 2D compact array is expanded
    into a 3D or 4D volume with NaN outside the mask.

    Parameters
    ----------
    S : numpy.ndarray
        Volume with shape (X, Y, Z[, number of features]) or compact array with
        shape ([number of features,] number of voxels in mask).
    mask : numpy.ndarray, optional
        Boolean array with shape (X, Y, Z). Required when expanding. When
        flattening, defaults to the voxels where the first feature is not NaN.

    Returns
    -------
    numpy.ndarray
    """
    S = np.asarray(S)
    if S.ndim in (1, 2):
        if mask is None:
            raise ValueError("A mask is required to convert to a volume")
        mask = np.asarray(mask, dtype=bool)
        if S.shape[-1] != np.count_nonzero(mask):
            raise ValueError(
                f"Array has {S.shape[-1]} voxels but mask has "
                f"{np.count_nonzero(mask)}"
            )
        if S.ndim == 1:
            s = np.full(mask.shape, np.nan)
            s[mask] = S
        else:
            s = np.full(mask.shape + (S.shape[0],), np.nan)
            s[mask] = S.T
        return s
    if S.ndim == 3:
        S = S[..., np.newaxis]
    if S.ndim != 4:
        raise ValueError(f"Cannot vectorize an array with {S.ndim} dimensions")
    if mask is None:
        mask = ~np.isnan(S[..., 0])
    return S[np.asarray(mask, dtype=bool)].T


def signal(theta, design_matrix):
    """Predict signal from raw model coefficients.

    Parameters
    ----------
    theta : numpy.ndarray
        Floating-point array with shape (22[, number of voxels]).
    design_matrix : numpy.ndarray
        Floating-point array with shape (number of acquisitions, 22).

    Returns
    -------
    numpy.ndarray
    """
    return np.exp(design_matrix @ theta)


def _ols_weights(dwi, B):
    """Estimate signal magnitudes with an ordinary least squares fit.

    Parameters
    ----------
    dwi : numpy.ndarray
        Floating-point array with shape (number of acquisitions, number of
        voxels).
    B : numpy.ndarray
        Floating-point array with shape (number of acquisitions, 22).

    Returns
    -------
    numpy.ndarray
        Weights with the same shape as `dwi`.
    """
    theta = np.linalg.pinv(B) @ np.log(dwi)
    return np.exp(B @ theta)


def wlls(B, y, w):
    """Solve a weighted linear least squares problem.

    Parameters
    ----------
    B : numpy.ndarray
        Floating-point array with shape (number of acquisitions, 22).
    y : numpy.ndarray
        Logarithm of the signal with shape (number of acquisitions,).
    w : numpy.ndarray
        Weights with shape (number of acquisitions,).

    Returns
    -------
    numpy.ndarray
        Raw coefficients with shape (22,), all NaN if `B` is empty or its
        condition number exceeds `MAX_COND`.
    """
    if B.shape[0] == 0 or np.linalg.cond(B) > MAX_COND:
        return np.full(B.shape[1], np.nan)
    theta, _, _, _ = np.linalg.lstsq(w[:, np.newaxis] * B, w * y, rcond=None)
    return theta


def constraint_matrix(constraints, max_bval, dirs=None):
    """Return the linear inequality constraints `C @ theta <= 0`.

    Parameters
    ----------
    constraints : array_like
        Three booleans enabling D_app >= 0, K_app >= 0, and
        K_app <= 3 / (b * D_app).
    max_bval : float
        Largest b-value in the data.
    dirs : numpy.ndarray, optional
        Unit vectors along which the constraints are enforced. Defaults to
        `CONSTRAINT_DIRS`.

    Returns
    -------
    numpy.ndarray
        Floating-point array with shape (number of rows, 22).
    """
    if dirs is None:
        dirs = CONSTRAINT_DIRS
    n = len(dirs)
    D = _d_monomials(np.asarray(dirs))
    W = _w_monomials(np.asarray(dirs))
    blocks = []
    if constraints[0]:
        blocks.append(np.hstack((np.zeros((n, 1)), -D, np.zeros((n, 15)))))
    if constraints[1]:
        blocks.append(np.hstack((np.zeros((n, 7)), -W)))
    if constraints[2]:
        blocks.append(np.hstack((np.zeros((n, 1)), -3 / max_bval * D, W)))
    if not blocks:
        return np.zeros((0, 22))
    return np.vstack(blocks)


def solve_constrained_wls(B, y, w, C):
    """Solve a weighted linear least squares problem with `C @ theta <= 0`.

    Any function with this signature that returns the minimizer or raises an
    exception on failure can be passed to `fit` as the solver.

    Parameters
    ----------
    B : numpy.ndarray
        Floating-point array with shape (number of acquisitions, 22).
    y : numpy.ndarray
        Logarithm of the signal with shape (number of acquisitions,).
    w : numpy.ndarray
        Weights with shape (number of acquisitions,).
    C : numpy.ndarray
        Floating-point array with shape (number of constraints, 22).

    Returns
    -------
    numpy.ndarray
    """
    x = cp.Variable(B.shape[1])
    objective = cp.Minimize(cp.sum_squares((w[:, np.newaxis] * B) @ x - w * y))
    problem = cp.Problem(objective, [C @ x <= 0] if len(C) else [])
    problem.solve(solver=QP_SOLVER, **QP_OPTIONS)
    if problem.status != cp.OPTIMAL:
        raise RuntimeError(f"Quadratic program not solved (status = {problem.status})")
    return x.value


def _unconstrained_fit(dwi, B, w, outliers, n_jobs=-1, quiet=False):
    """Estimate raw coefficients with weighted linear least squares.

    Parameters
    ----------
    dwi : numpy.ndarray
        Floating-point array with shape (number of acquisitions, number of
        voxels).
    B : numpy.ndarray
        Floating-point array with shape (number of acquisitions, 22).
    w : numpy.ndarray
        Weights with the same shape as `dwi`.
    outliers : numpy.ndarray
        Boolean array with the same shape as `dwi`.
    n_jobs : int, optional
        Number of threads.
    quiet : bool, optional
        Whether not to show a progress bar.

    Returns
    -------
    theta : numpy.ndarray
    status : numpy.ndarray
    """
    size = dwi.shape[1]
    theta = np.zeros((B.shape[1], size))
    status = np.full(size, STATUS_SOLVED)

    def voxel(i):
        keep = ~outliers[:, i]
        try:
            theta[:, i] = wlls(B[keep], np.log(dwi[keep, i]), w[keep, i])
        except np.linalg.LinAlgError:
            theta[:, i] = np.nan
        if not np.all(np.isfinite(theta[:, i])):
            status[i] = STATUS_UNDEFINED

    Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(voxel)(i)
        for i in tqdm(range(size), desc="Unconstrained fit", unit="vox", disable=quiet)
    )
    return theta, status


def _constrained_fit(dwi, B, w, outliers, C, solver=None, n_jobs=-1, quiet=False):
    """Estimate raw coefficients with constrained weighted linear least squares.

    Voxels where `solver` raises an exception get zero coefficients.

    Parameters
    ----------
    dwi : numpy.ndarray
        Floating-point array with shape (number of acquisitions, number of
        voxels).
    B : numpy.ndarray
        Floating-point array with shape (number of acquisitions, 22).
    w : numpy.ndarray
        Weights with the same shape as `dwi`.
    outliers : numpy.ndarray
        Boolean array with the same shape as `dwi`.
    C : numpy.ndarray
        Floating-point array with shape (number of constraints, 22).
    solver : callable, optional
        Function with the signature of `solve_constrained_wls`.
    n_jobs : int, optional
        Number of threads.
    quiet : bool, optional
        Whether not to show a progress bar.

    Returns
    -------
    theta : numpy.ndarray
    status : numpy.ndarray
    """
    if solver is None:
        solver = solve_constrained_wls
    size = dwi.shape[1]
    theta = np.zeros((B.shape[1], size))
    status = np.full(size, STATUS_SOLVED)

    def voxel(i):
        keep = ~outliers[:, i]
        if not np.any(keep):
            status[i] = STATUS_QP_FAILED
            return
        try:
            theta[:, i] = solver(B[keep], np.log(dwi[keep, i]), w[keep, i], C)
        except Exception:
            theta[:, i] = 0
            status[i] = STATUS_QP_FAILED

    Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(voxel)(i)
        for i in tqdm(range(size), desc="Constrained fit", unit="vox", disable=quiet)
    )
    return theta, status


def _normalize(theta):
    """Split raw coefficients into b0 and the 21 tensor elements.

    Kurtosis tensor elements are divided by the squared mean diffusivity.

    Parameters
    ----------
    theta : numpy.ndarray
        Floating-point array with shape (22[, number of voxels]).

    Returns
    -------
    b0 : numpy.ndarray
    dt : numpy.ndarray
    """
    b0 = np.exp(theta[0])
    dt = np.array(theta[1:], dtype=float)
    md = np.mean(dt[[0, 3, 5]], axis=0)
    md = np.where(md == 0, np.nan, md)  # To avoid warnings due to division by zero
    dt[6:] /= md ** 2
    return b0, dt


def dt_to_theta(b0, dt):
    """Return the raw model coefficients corresponding to b0 and tensors.

    Parameters
    ----------
    b0 : numpy.ndarray
        Floating-point array.
    dt : numpy.ndarray
        Floating-point array with shape (21[, number of voxels]).

    Returns
    -------
    numpy.ndarray
    """
    dt = np.asarray(dt, dtype=float)
    md = np.mean(dt[[0, 3, 5]], axis=0)
    theta = np.concatenate((np.log(np.asarray(b0, dtype=float))[np.newaxis], dt))
    theta[7:] *= md ** 2
    return theta


@jax.jit
def _adc(dt, vs):
    """Compute apparent diffusion coefficients along unit vectors `vs`.

    Parameters
    ----------
    dt : numpy.ndarray or jax.Array
        Floating-point array with shape (21[, number of voxels]).
    vs : numpy.ndarray or jax.Array
        Floating-point array with shape (number of directions, 3).

    Returns
    -------
    jax.Array
    """
    return _d_monomials(vs) @ dt[0:6]


@jax.jit
def _akc(dt, vs):
    """Compute apparent kurtosis coefficients along unit vectors `vs`.

    Parameters
    ----------
    dt : numpy.ndarray or jax.Array
        Floating-point array with shape (21[, number of voxels]).
    vs : numpy.ndarray or jax.Array
        Floating-point array with shape (number of directions, 3).

    Returns
    -------
    jax.Array
    """
    md = (dt[0] + dt[3] + dt[5]) / 3
    return _w_monomials(vs) @ dt[6:21] * md ** 2 / _adc(dt, vs) ** 2


@numba.njit
def _count_violations(adc, akc, max_bval, constraints):
    """Count directions violating the enabled constraints in each voxel.

    Parameters
    ----------
    adc : numpy.ndarray
        Floating-point array with shape (number of directions, number of
        voxels).
    akc : numpy.ndarray
        Floating-point array with shape (number of directions, number of
        voxels).
    max_bval : float
        Largest b-value in the data.
    constraints : numpy.ndarray
        Boolean array with shape (3,).

    Returns
    -------
    numpy.ndarray
    """
    n_dirs, size = adc.shape
    counts = np.zeros(size, dtype=np.int64)
    for i in range(size):
        for j in range(n_dirs):
            violated = False
            if constraints[0] and adc[j, i] <= MIN_PARAM:
                violated = True
            if constraints[1] and akc[j, i] <= MIN_PARAM:
                violated = True
            if constraints[2] and akc[j, i] >= 3 / max_bval * adc[j, i]:
                violated = True
            if violated:
                counts[i] += 1
    return counts


def find_violations(dt, vs, max_bval, constraints):
    """Find the directions along which tensors violate physical constraints.

    Parameters
    ----------
    dt : numpy.ndarray
        Floating-point array with shape (21, number of voxels).
    vs : numpy.ndarray
        Unit vectors with shape (number of directions, 3).
    max_bval : float
        Largest b-value in the data.
    constraints : array_like
        Three booleans selecting which violations are counted.

    Returns
    -------
    proportional : numpy.ndarray
        Fraction of directions with a violation in each voxel.
    directional : numpy.ndarray
        Number of directions without a violation in each voxel.
    """
    adc = np.ascontiguousarray(_adc(dt, vs), dtype=float)
    akc = np.ascontiguousarray(_akc(dt, vs), dtype=float)
    counts = _count_violations(
        adc, akc, float(max_bval), np.asarray(constraints, dtype=np.bool_)
    )
    n_dirs = len(vs)
    return counts / n_dirs, n_dirs - counts


_D_LOOKUP = np.zeros((3, 3), dtype=int)
for _k, (_i, _j) in enumerate(_D_IND):
    _D_LOOKUP[_i, _j] = _D_LOOKUP[_j, _i] = _k

_W_LOOKUP = np.zeros((3, 3, 3, 3), dtype=int)
for _idx in itertools.product(range(3), repeat=4):
    _W_LOOKUP[_idx] = np.flatnonzero((_W_IND == sorted(_idx)).all(axis=1))[0]


def dt_to_D(dt):
    """Return diffusion tensors corresponding to a tensor element array.

    Parameters
    ----------
    dt : numpy.ndarray
        Floating-point array with shape (..., 21).

    Returns
    -------
    numpy.ndarray
        Floating-point array with shape (..., 3, 3).
    """
    return np.asarray(dt)[..., _D_LOOKUP]


def dt_to_W(dt):
    """Return kurtosis tensors corresponding to a tensor element array.

    Parameters
    ----------
    dt : numpy.ndarray
        Floating-point array with shape (..., 21).

    Returns
    -------
    numpy.ndarray
        Floating-point array with shape (..., 3, 3, 3, 3).
    """
    return np.asarray(dt)[..., 6 + _W_LOOKUP]


def _eigh(dt, mask):
    return np.linalg.eigh(np.nan_to_num(dt_to_D(dt[mask])))


def _default_mask(dt):
    return np.ones(dt.shape[0:-1]).astype(bool)


def dt_to_md(dt, mask=None):
    """Compute mean diffusivity.

    Parameters
    ----------
    dt : numpy.ndarray
        Floating-point array with shape (..., 21).
    mask : numpy.ndarray, optional
        Boolean array.

    Returns
    -------
    numpy.ndarray
    """
    if mask is None:
        mask = _default_mask(dt)
    evals, _ = _eigh(dt, mask)
    md = np.zeros(mask.shape)
    md[mask] = np.mean(evals, axis=-1)
    return md


def dt_to_ad(dt, mask=None):
    """Compute axial diffusivity.

    Parameters
    ----------
    dt : numpy.ndarray
        Floating-point array with shape (..., 21).
    mask : numpy.ndarray, optional
        Boolean array.

    Returns
    -------
    numpy.ndarray
    """
    if mask is None:
        mask = _default_mask(dt)
    evals, _ = _eigh(dt, mask)
    ad = np.zeros(mask.shape)
    ad[mask] = evals[:, 2]
    return ad


def dt_to_rd(dt, mask=None):
    """Compute radial diffusivity.

    Parameters
    ----------
    dt : numpy.ndarray
        Floating-point array with shape (..., 21).
    mask : numpy.ndarray, optional
        Boolean array.

    Returns
    -------
    numpy.ndarray
    """
    if mask is None:
        mask = _default_mask(dt)
    evals, _ = _eigh(dt, mask)
    rd = np.zeros(mask.shape)
    rd[mask] = np.mean(evals[:, 0:2], axis=1)
    return rd


def dt_to_fa(dt, mask=None):
    """Compute fractional anisotropy.

    Parameters
    ----------
    dt : numpy.ndarray
        Floating-point array with shape (..., 21).
    mask : numpy.ndarray, optional
        Boolean array.

    Returns
    -------
    numpy.ndarray
    """
    if mask is None:
        mask = _default_mask(dt)
    evals, _ = _eigh(dt, mask)
    avg_evals = np.mean(evals, axis=-1)[..., np.newaxis]
    sum_sq_evals = np.sum(evals ** 2, axis=-1)
    sum_sq_evals[sum_sq_evals == 0] = np.nan  # To avoid warnings for dividing by zero
    fa = np.zeros(mask.shape)
    fa[mask] = np.sqrt(1.5 * np.sum((evals - avg_evals) ** 2, axis=-1) / sum_sq_evals)
    return fa


def dt_to_mk(dt, mask=None):
    """Compute mean kurtosis as the average AKC over `CONSTRAINT_DIRS`.

    Parameters
    ----------
    dt : numpy.ndarray
        Floating-point array with shape (..., 21).
    mask : numpy.ndarray, optional
        Boolean array.

    Returns
    -------
    numpy.ndarray
    """
    if mask is None:
        mask = _default_mask(dt)
    mk = np.zeros(mask.shape)
    mk[mask] = np.mean(np.asarray(_akc(dt[mask].T, CONSTRAINT_DIRS)), axis=0)
    return mk


def dt_to_ak(dt, mask=None):
    """Compute axial kurtosis.

    Parameters
    ----------
    dt : numpy.ndarray
        Floating-point array with shape (..., 21).
    mask : numpy.ndarray, optional
        Boolean array.

    Returns
    -------
    numpy.ndarray
    """
    if mask is None:
        mask = _default_mask(dt)
    dt_flat = dt[mask]
    _, evecs = _eigh(dt, mask)
    ak = np.zeros(mask.shape)
    ak_flat = ak[mask]
    for i in range(len(dt_flat)):
        ak_flat[i] = _akc(dt_flat[i], evecs[np.newaxis, i, :, 2])[0]
    ak[mask] = ak_flat
    return ak


_RADIAL_ANGLES = np.linspace(0, np.pi, 10, endpoint=False)


def dt_to_rk(dt, mask=None):
    """Compute radial kurtosis.

    AKC is averaged over 10 directions in the plane orthogonal to the
    principal eigenvector of the diffusion tensor.

    Parameters
    ----------
    dt : numpy.ndarray
        Floating-point array with shape (..., 21).
    mask : numpy.ndarray, optional
        Boolean array.

    Returns
    -------
    numpy.ndarray
    """
    if mask is None:
        mask = _default_mask(dt)
    dt_flat = dt[mask]
    _, evecs = _eigh(dt, mask)
    rk = np.zeros(mask.shape)
    rk_flat = rk[mask]
    for i in range(len(dt_flat)):
        vs = (
            np.cos(_RADIAL_ANGLES)[:, np.newaxis] * evecs[i, :, 0]
            + np.sin(_RADIAL_ANGLES)[:, np.newaxis] * evecs[i, :, 1]
        )
        rk_flat[i] = np.mean(_akc(dt_flat[i], vs))
    rk[mask] = rk_flat
    return rk


class FitResult:
    """Class for storing the tensor fit results.

    Attributes
    ----------
    b0 : numpy.ndarray
        Estimated signal at b = 0.
    dt : numpy.ndarray
        Estimated tensor elements with shape (X, Y, Z, 21).
    proportional : numpy.ndarray
        Fraction of outer shell directions along which the unconstrained fit
        violates the enabled constraints.
    directional : numpy.ndarray
        Number of outer shell directions without a violation.
    status : numpy.ndarray
        0 means solved, 1 means undefined due to an empty or ill-conditioned
        design matrix, 2 means the constrained fit failed and the tensor
        elements were set to zero, and -1 means outside the mask.
    mask : numpy.ndarray
        Mask defining voxels in which the fit was run.
    constraints : numpy.ndarray
        Enabled constraints.
    max_bval : float
        Largest b-value used in the fit.
    n_outer : int
        Number of outer shell directions.

    Notes
    -----
    The tensor elements are the following:

            dt[..., 0] = D_xx
            dt[..., 1] = D_xy
            dt[..., 2] = D_xz
            dt[..., 3] = D_yy
            dt[..., 4] = D_yz
            dt[..., 5] = D_zz
            dt[..., 6] = W_xxxx
            dt[..., 7] = W_xxxy
            dt[..., 8] = W_xxxz
            dt[..., 9] = W_xxyy
            dt[..., 10] = W_xxyz
            dt[..., 11] = W_xxzz
            dt[..., 12] = W_xyyy
            dt[..., 13] = W_xyyz
            dt[..., 14] = W_xyzz
            dt[..., 15] = W_xzzz
            dt[..., 16] = W_yyyy
            dt[..., 17] = W_yyyz
            dt[..., 18] = W_yyzz
            dt[..., 19] = W_yzzz
            dt[..., 20] = W_zzzz
    """

    def __init__(
        self,
        b0,
        dt,
        proportional,
        directional,
        status,
        mask,
        constraints,
        max_bval,
        n_outer,
    ):
        self.b0 = b0
        self.dt = dt
        self.proportional = proportional
        self.directional = directional
        self.status = status
        self.mask = mask
        self.constraints = constraints
        self.max_bval = max_bval
        self.n_outer = n_outer
        return


def fit(
    data,
    grad,
    mask=None,
    constraints=None,
    outliers=None,
    max_bval=DEFAULT_MAX_BVAL,
    solver=None,
    n_jobs=-1,
    quiet=False,
):
    """Estimate diffusion and kurtosis tensor elements from data.

    This function does the following:

        1. Rescale b-values to ms/um^2 if needed, discard acquisitions with
           b-values above `max_bval`, normalize gradient directions, and clamp
           non-positive signal values to machine epsilon.
        2. Estimate signal weights with an ordinary least squares fit.
        3. Estimate model parameters with weighted linear least squares, or
           with constrained weighted linear least squares if any constraint is
           enabled, excluding each voxel's outliers.
        4. Divide the kurtosis tensor elements by the squared mean diffusivity.
        5. Count the outer shell directions along which the unconstrained fit
           violates the enabled constraints.

    Parameters
    ----------
    data : numpy.ndarray
        Floating-point array with shape (X, Y, Z, number of acquisitions).
        Data should be denoised and corrected for Gibbs ringing, subject
        motion, and eddy currents.
    grad : numpy.ndarray
        Floating-point array with shape (number of acquisitions, 4) where each
        row is [gx, gy, gz, b].
    mask : numpy.ndarray, optional
        Boolean array with shape (X, Y, Z). Defaults to the voxels where the
        first acquisition is not NaN.
    constraints : array_like, optional
        Three booleans enabling D_app > 0, K_app > 0, and
        K_app < 3 / (b * D_app). Defaults to `DEFAULT_CONSTRAINTS`.
    outliers : numpy.ndarray, optional
        Boolean array with the same shape as `data` marking measurements to
        exclude in individual voxels.
    max_bval : float, optional
        Upper bound on the b-values in ms/um^2.
    solver : callable, optional
        Quadratic program solver with the signature of
        `solve_constrained_wls`.
    n_jobs : int, optional
        Number of threads used for fitting voxels.
    quiet : bool, optional
        Whether not to print messages about computation progress.

    Returns
    -------
    dkifit.FitResult
    """
    data = np.asarray(data, dtype=float)
    if data.ndim != 4:
        raise ValueError(f"Data must be a 4D array, not {data.ndim}D")
    _check_grad(grad, data.shape[-1])
    grad = np.asarray(grad, dtype=float)
    if outliers is None:
        outliers = np.zeros(data.shape, dtype=bool)
    outliers = np.asarray(outliers, dtype=bool)
    if outliers.shape != data.shape:
        raise ValueError(
            f"Outliers must have the same shape as data {data.shape}, "
            f"not {outliers.shape}"
        )
    if constraints is None:
        constraints = DEFAULT_CONSTRAINTS
    constraints = np.asarray(constraints).astype(bool).ravel()
    if constraints.size != 3:
        raise ValueError(f"Expected 3 constraint flags, got {constraints.size}")
    if mask is None:
        mask = ~np.isnan(data[..., 0])
    mask = np.asarray(mask, dtype=bool)
    if mask.shape != data.shape[0:-1]:
        raise ValueError(
            f"Mask must have shape {data.shape[0:-1]}, not {mask.shape}"
        )

    bvals = rescale_bvals(grad[:, 3])
    keep = bvals <= max_bval
    if not np.any(bvals[keep] > 0):
        raise ValueError(
            f"No diffusion-weighted acquisitions with b-values up to {max_bval}"
        )
    bvals = bvals[keep]
    bvecs = _normalize_bvecs(grad[keep, 0:3])
    data = data[..., keep]
    data[data <= 0] = np.finfo(float).eps
    outliers = outliers[..., keep]
    largest_bval = np.max(bvals)
    outer = bvals == largest_bval

    dwi = vectorize(data, mask)
    outliers = vectorize(outliers, mask)
    B = design_matrix(bvals, bvecs)
    w = _ols_weights(dwi, B)

    if np.any(constraints):
        if not quiet:
            print("Fitting DKI to data with constrained WLLS")
        C = constraint_matrix(constraints, largest_bval)
        theta, status = _constrained_fit(dwi, B, w, outliers, C, solver, n_jobs, quiet)
        if not quiet:
            print("Fitting DKI to data with unconstrained WLLS")
        theta_ref, _ = _unconstrained_fit(dwi, B, w, outliers, n_jobs, quiet)
    else:
        if not quiet:
            print("Fitting DKI to data with unconstrained WLLS")
        theta, status = _unconstrained_fit(dwi, B, w, outliers, n_jobs, quiet)
        theta_ref = theta

    for i in np.flatnonzero(status == STATUS_UNDEFINED):
        warnings.warn(f"Fit is undefined in voxel {i} (empty or ill-conditioned)")
    for i in np.flatnonzero(status == STATUS_QP_FAILED):
        warnings.warn(f"Constrained fit was not successful in voxel {i}")

    b0, dt = _normalize(theta)
    _, dt_ref = _normalize(theta_ref)

    if not quiet:
        print("Counting constraint violations")
    proportional, directional = find_violations(
        dt_ref, bvecs[outer], largest_bval, constraints
    )

    n_outer = int(np.sum(outer))
    proportional = vectorize(proportional, mask)
    proportional[~mask] = 0
    directional = vectorize(directional, mask)
    directional[~mask] = n_outer
    status = vectorize(status, mask)
    status[~mask] = STATUS_OUTSIDE_MASK

    return FitResult(
        vectorize(b0, mask),
        vectorize(dt, mask),
        proportional,
        directional,
        status.astype(int),
        mask,
        constraints,
        largest_bval,
        n_outer,
    )


if __name__ == "__main__":

    parser = argparse.ArgumentParser(
        description=(
            """Estimate diffusion and kurtosis tensors with constrained weighted
            linear least squares and compute parameter maps. The command for using
            dkifit.py is "dkifit.py data bvals bvecs optional-arguments", where
            data, bvals, and bvecs are the paths of the files containing the
            preprocessed diffusion-weighted data, b-values, and b-vectors, and
            optional-arguments is where to define things such as the constraints
            and which maps to save."""
        )
    )
    parser.add_argument(
        "data", help="path of a NIfTI file with diffusion-weighted data",
    )
    parser.add_argument(
        "bvals", help="path of a text file with b-values",
    )
    parser.add_argument(
        "bvecs", help="path of a text file with b-vectors",
    )
    parser.add_argument(
        "-mask",
        help="path of a NIfTI file with a mask defining where to estimate parameters",
    )
    parser.add_argument(
        "-outliers",
        help="path of a NIfTI file with a 4D mask of measurements to exclude",
    )
    parser.add_argument(
        "-constraints",
        nargs=3,
        type=int,
        default=[int(c) for c in DEFAULT_CONSTRAINTS],
        metavar=("C1", "C2", "C3"),
        help="enable D_app > 0, K_app > 0, and K_app < 3/(b*D_app) (default: 0 1 0)",
    )
    parser.add_argument(
        "-max_bval",
        type=float,
        default=DEFAULT_MAX_BVAL,
        help="upper bound on the b-values used in the fit in ms/um^2 (default: 2.5)",
    )
    parser.add_argument(
        "-n_jobs", type=int, default=-1, help="number of threads (default: all)",
    )
    parser.add_argument(
        "-b0", help="path of a NIfTI file in which to save the estimated signal at b=0",
    )
    parser.add_argument(
        "-dt", help="path of a NIfTI file in which to save the 21 tensor elements",
    )
    parser.add_argument(
        "-proportional",
        help="path of a NIfTI file in which to save the proportion of violations",
    )
    parser.add_argument(
        "-directional",
        help="path of a NIfTI file in which to save the number of good directions",
    )
    parser.add_argument(
        "-status", help="path of a NIfTI file in which to save the fit status codes",
    )
    parser.add_argument(
        "-md", help="path of a NIfTI file in which to save the mean diffusivity map"
    )
    parser.add_argument(
        "-ad", help="path of a NIfTI file in which to save the axial diffusivity map",
    )
    parser.add_argument(
        "-rd", help="path of a NIfTI file in which to save the radial diffusivity map",
    )
    parser.add_argument(
        "-fa",
        help="path of a NIfTI file in which to save the fractional anisotropy map",
    )
    parser.add_argument(
        "-mk", help="path of a NIfTI file in which to save the mean kurtosis map"
    )
    parser.add_argument(
        "-ak", help="path of a NIfTI file in which to save the axial kurtosis map",
    )
    parser.add_argument(
        "-rk", help="path of a NIfTI file in which to save the radial kurtosis map",
    )
    args = parser.parse_args()

    data_img = nib.load(args.data)
    data = data_img.get_fdata()
    affine = data_img.affine
    bvals = np.loadtxt(args.bvals)
    bvecs = np.loadtxt(args.bvecs)
    if bvecs.ndim == 2 and bvecs.shape[0] == 3:
        bvecs = bvecs.T
    grad = np.column_stack((bvecs, bvals))
    mask = None
    if args.mask:
        mask = nib.load(args.mask).get_fdata().astype(bool)
    outliers = None
    if args.outliers:
        outliers = nib.load(args.outliers).get_fdata().astype(bool)

    fit_result = fit(
        data,
        grad,
        mask=mask,
        constraints=args.constraints,
        outliers=outliers,
        max_bval=args.max_bval,
        n_jobs=args.n_jobs,
    )
    mask = fit_result.mask

    if args.b0:
        nib.save(nib.Nifti1Image(fit_result.b0, affine), args.b0)
    if args.dt:
        nib.save(nib.Nifti1Image(fit_result.dt, affine), args.dt)
    if args.proportional:
        nib.save(nib.Nifti1Image(fit_result.proportional, affine), args.proportional)
    if args.directional:
        nib.save(
            nib.Nifti1Image(fit_result.directional.astype(np.int16), affine),
            args.directional,
        )
    if args.status:
        nib.save(
            nib.Nifti1Image(fit_result.status.astype(np.int16), affine), args.status
        )
    if args.md:
        nib.save(nib.Nifti1Image(dt_to_md(fit_result.dt, mask), affine), args.md)
    if args.ad:
        nib.save(nib.Nifti1Image(dt_to_ad(fit_result.dt, mask), affine), args.ad)
    if args.rd:
        nib.save(nib.Nifti1Image(dt_to_rd(fit_result.dt, mask), affine), args.rd)
    if args.fa:
        nib.save(nib.Nifti1Image(dt_to_fa(fit_result.dt, mask), affine), args.fa)
    if args.mk:
        nib.save(nib.Nifti1Image(dt_to_mk(fit_result.dt, mask), affine), args.mk)
    if args.ak:
        nib.save(nib.Nifti1Image(dt_to_ak(fit_result.dt, mask), affine), args.ak)
    if args.rk:
        nib.save(nib.Nifti1Image(dt_to_rk(fit_result.dt, mask), affine), args.rk)
