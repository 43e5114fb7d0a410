"""Anticipated wages, incomes and bid rents per cell.

Before any agent commits to a location, every cell is priced as if a business
or a household settled there. The entry decisions in :mod:`model` rank cells
by these anticipated values.
"""
from __future__ import annotations

from typing import NamedTuple

import numpy as np

from potential_utils import money


class Anticipation(NamedTuple):
    w_A: np.ndarray
    phi_A: np.ndarray
    i_A: np.ndarray
    psi_A: np.ndarray


def bargained_wage(wmin, wmax, share: float):
    """Interpolate between the reservation wage and the firm's maximum wage.

    ``share`` is the workers' bargaining power in [0, 1]; the endpoints return
    ``wmin`` and ``wmax`` exactly.
    """
    return wmin * (1.0 - share) + wmax * share


def reservation_wage(ra: float, sh: float, t: float, distance):
    """Wage that just covers a worker's land cost and commute."""
    return ra * sh + t * distance


def maximum_wage(k: float, f, ra: float, sb: float, lb: int):
    """Highest wage a firm at potential *f* can pay while covering agricultural rent."""
    return (k * f - ra * sb) / lb


def anticipate(
    f: np.ndarray,
    l: np.ndarray,
    b: np.ndarray,
    business_dist: np.ndarray,
    business_wages: np.ndarray,
    *,
    ra: float,
    k: float,
    t: float,
    sb: float,
    sh: float,
    lb: int,
    share: float,
) -> Anticipation:
    """Return the four anticipated fields for every cell.

    Parameters
    ----------
    f, l, b : ndarray
        Locational potential, mean commuting distance and business count per cell.
    business_dist : ndarray
        ``(cells, businesses)`` distance from each cell to each business.
    business_wages : ndarray
        Current wage of each business, aligned with the columns of *business_dist*.
    """
    wmin = reservation_wage(ra, sh, t, l)
    wmax = maximum_wage(k, f, ra, sb, lb)
    w_A = money(bargained_wage(wmin, wmax, share))
    phi_A = money(np.maximum(0.0, (k * f - lb * w_A) / sb))

    if business_wages.size == 0:
        i_A = np.zeros_like(f)
    else:
        net = business_wages[None, :] - t * business_dist
        i_A = money(net.mean(axis=1))
        i_A[b > 0] = 0.0
    psi_A = money(np.maximum(0.0, i_A / sh))

    return Anticipation(w_A=w_A, phi_A=phi_A, i_A=i_A, psi_A=psi_A)
