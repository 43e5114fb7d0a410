# potential_utils.py
"""Grid geometry and the locational potential field.

Cells are addressed by a flat index ``i = x * height + y`` so that every
per-cell quantity is a 1-D numpy array and every pairwise quantity is a dense
``(cells, cells)`` matrix.

Locational potential
--------------------
The agglomeration score of a cell is a distance-decayed count of the
businesses on all *other* cells plus a baseline of one:

    f_i = 1 + Σ_{j ≠ i} b_j × exp(−alpha × d_ij)

Mean commuting distance
-----------------------
The expected commute used when anticipating wages weights every other cell
by the households it holds plus the households that still fit on it:

    n_j = h_j + ceil(o_j / sh)
    l_i = Σ_{j ≠ i} d_ij × n_j / Σ_{j ≠ i} n_j

Both fields depend on the whole grid and are recomputed from scratch.

Usage example
-------------
>>> coords = cell_coordinates(3, 3)
>>> dist = distance_matrix(coords)
>>> decay = decay_matrix(dist, alpha=0.0)
>>> b = np.zeros(9); b[4] = 1.0
>>> locational_potential(b, decay)[[0, 4]]
array([2., 1.])
"""
from __future__ import annotations

import numpy as np

# Monetary quantities are rounded to this many decimal digits so that values
# recomputed along different arithmetic paths compare equal.
MONEY_DIGITS: int = 10

# Land shares are sums of 1/lb terms; comparisons on them allow this slack.
SPACE_TOLERANCE: float = 1e-9


def money(value):
    """Round a scalar or array to ``MONEY_DIGITS`` decimals."""
    if isinstance(value, np.ndarray):
        return np.round(value, MONEY_DIGITS)
    return float(np.round(value, MONEY_DIGITS))


def cell_coordinates(width: int, height: int) -> np.ndarray:
    """Return an ``(width*height, 2)`` integer array of ``(x, y)`` per flat index."""
    xx, yy = np.meshgrid(np.arange(width), np.arange(height), indexing="ij")
    return np.column_stack([xx.ravel(), yy.ravel()])


def distance_matrix(coords: np.ndarray) -> np.ndarray:
    """Euclidean distance between every pair of cells."""
    diff = coords[:, None, :].astype(float) - coords[None, :, :].astype(float)
    return np.sqrt((diff ** 2).sum(axis=-1))


def decay_matrix(dist: np.ndarray, alpha: float) -> np.ndarray:
    """``exp(−alpha·d)`` with a zero diagonal, so a cell never counts itself."""
    decay = np.exp(-alpha * dist)
    np.fill_diagonal(decay, 0.0)
    return decay


def locational_potential(b: np.ndarray, decay: np.ndarray) -> np.ndarray:
    """Return ``f`` for every cell given business counts *b*."""
    return 1.0 + decay @ b


def household_slots(h: np.ndarray, o: np.ndarray, sh: float) -> np.ndarray:
    """Actual households plus the households the remaining space could still hold."""
    free = np.ceil(o / sh - SPACE_TOLERANCE)
    return h + np.maximum(free, 0.0)


def mean_commuting_distance(h: np.ndarray, o: np.ndarray, sh: float, dist: np.ndarray) -> np.ndarray:
    """Return ``l`` for every cell (0 where no other cell holds a slot)."""
    slots = household_slots(h, o, sh)
    # d_ii = 0, so the numerator already skips the cell itself
    numer = dist @ slots
    denom = slots.sum() - slots
    out = np.zeros_like(numer)
    np.divide(numer, denom, out=out, where=denom > 0)
    return out


def ranking_by_distance(dist: np.ndarray, index: int) -> np.ndarray:
    """Flat cell indices ordered by increasing distance from *index* (ties by index)."""
    return np.argsort(dist[index], kind="stable")
