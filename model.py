from __future__ import annotations

import warnings
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from mesa import Model
from mesa.datacollection import DataCollector
from mesa.space import MultiGrid

from agents import BusinessAgent, HouseholdAgent
from bid_rent import anticipate
from parameters import CityParameters
from potential_utils import (
    cell_coordinates,
    decay_matrix,
    distance_matrix,
    locational_potential,
    mean_commuting_distance,
    money,
    ranking_by_distance,
    SPACE_TOLERANCE,
)

Coords = Tuple[int, int]

CELL_FIELDS: Tuple[str, ...] = ("b", "h", "o", "f", "l", "r", "w_A", "phi_A", "i_A", "psi_A")

# Driver phases
SETUP = "SETUP"
ENTRY = "ENTRY"
SETTLING = "SETTLING"
CLEARING = "CLEARING"
ADJUSTING = "ADJUSTING"
EQUILIBRIUM = "EQUILIBRIUM"
TERMINATED = "TERMINATED"


class InvariantViolation(RuntimeError):
    """A state the economic rules guarantee cannot occur was reached."""


def _coerce_parameters(
    params: CityParameters | Mapping[str, Any] | None, overrides: Mapping[str, Any]
) -> CityParameters:
    if isinstance(params, CityParameters):
        return params.copy_with_overrides(overrides) if overrides else params
    return CityParameters.from_mapping({**dict(params or {}), **dict(overrides)})


class CityModel(Model):
    """Dynamic two-sector Fujita–Ogawa city on a finite square lattice.

    Businesses and households enter one at a time. Each call to
    :meth:`advance_one_equilibrium` settles one business, staffs it with new
    households, clears the labour and land markets and relocates households
    until nobody has negative utility.
    """

    def __init__(
        self,
        params: CityParameters | Mapping[str, Any] | None = None,
        *,
        verbose: bool = False,
        seed: int | None = None,
        **overrides: Any,
    ) -> None:  # noqa: D401
        # Mesa's dashboards pass ``seed``; it maps onto ``random_seed``
        if seed is not None:
            overrides["random_seed"] = seed
        # Validate before touching any state
        params = _coerce_parameters(params, overrides)
        super().__init__(seed=params.random_seed)

        self.verbose: bool = verbose
        self._init_city(params)

    def setup(self, params: CityParameters | Mapping[str, Any] | None = None, **overrides: Any) -> None:
        """Rebuild the city from scratch with new parameters.

        A full *params* mapping starts from the defaults; keyword overrides on
        their own are applied on top of the current parameters. Raises
        :class:`parameters.ParameterError` without modifying the current city
        when the parameters are invalid.
        """
        params = _coerce_parameters(params if params is not None else self.params, overrides)

        for ag in list(self.agents):
            ag.remove()
        self.reset_randomizer(params.random_seed)
        self._init_city(params)

    # --------------------------------------------------------------------- #
    #                             INITIALISERS                              #
    # --------------------------------------------------------------------- #
    def _init_city(self, params: CityParameters) -> None:
        self.params: CityParameters = params
        width, height = params.width, params.height

        self.grid = MultiGrid(width, height, torus=False)
        # Alias required by Mesa visualisation helpers (they expect .space)
        self.space = self.grid  # type: ignore[assignment]
        self.center: Coords = (params.radius, params.radius)

        # Static geometry, computed once
        self._coords = cell_coordinates(width, height)
        self._dist = distance_matrix(self._coords)
        self._decay = decay_matrix(self._dist, params.alpha)
        n_cells = width * height

        self._cells: Dict[str, np.ndarray] = {name: np.zeros(n_cells) for name in CELL_FIELDS}
        self._cells["o"][:] = 1.0
        self._cells["r"][:] = params.ra

        # Cached agent lists in settlement order, plus id lookups
        self._businesses: List[BusinessAgent] = []
        self._households: List[HouseholdAgent] = []
        self._business_index: Dict[int, BusinessAgent] = {}
        self._household_index: Dict[int, HouseholdAgent] = {}

        self.equilibrium: int = 0
        self.relocation_moves: int = 0
        self.phase: str = SETUP
        self.running = True

        self.datacollector = DataCollector(
            model_reporters={
                "Equilibrium": lambda m: m.equilibrium,
                "Businesses": lambda m: len(m._businesses),
                "Households": lambda m: len(m._households),
                "Mean_Wage": lambda m: float(np.mean([b.wage for b in m._businesses])) if m._businesses else 0.0,
                "Mean_Income": lambda m: float(np.mean([h.income for h in m._households])) if m._households else 0.0,
                "Mean_Rent": lambda m: float(np.mean(m._cells["r"])),
                "Max_Rent": lambda m: float(np.max(m._cells["r"])),
                "Total_Profit": lambda m: sum(b.profit for b in m._businesses),
                "Min_Utility": lambda m: min((h.utility for h in m._households), default=0.0),
                "Relocation_Moves": lambda m: m.relocation_moves,
                "Occupied_Cells": lambda m: int(np.count_nonzero((m._cells["b"] > 0) | (m._cells["h"] > 0))),
            },
            agent_reporters={
                "type": lambda a: type(a).__name__,
                "x": lambda a: a.pos[0] if a.pos is not None else np.nan,
                "y": lambda a: a.pos[1] if a.pos is not None else np.nan,
                "wage": lambda a: getattr(a, "wage", np.nan),
                "profit": lambda a: getattr(a, "profit", np.nan),
                "income": lambda a: getattr(a, "income", np.nan),
                "utility": lambda a: getattr(a, "utility", np.nan),
                "employer": lambda a: getattr(a, "employer_id", None),
            },
        )

        self.update_fields()

    # --------------------------------------------------------------------- #
    #                        CACHE MANAGEMENT                               #
    # --------------------------------------------------------------------- #
    def _register_agent(self, agent) -> None:
        if isinstance(agent, HouseholdAgent):
            self._households.append(agent)
            self._household_index[agent.unique_id] = agent
        elif isinstance(agent, BusinessAgent):
            self._businesses.append(agent)
            self._business_index[agent.unique_id] = agent

    def _unregister_agent(self, agent) -> None:
        if isinstance(agent, HouseholdAgent):
            self._households.remove(agent)
            del self._household_index[agent.unique_id]
        elif isinstance(agent, BusinessAgent):
            self._businesses.remove(agent)
            del self._business_index[agent.unique_id]

    # --------------------------------------------------------------------- #
    #                              QUERIES                                  #
    # --------------------------------------------------------------------- #
    @property
    def businesses(self) -> Tuple[BusinessAgent, ...]:
        return tuple(self._businesses)

    @property
    def households(self) -> Tuple[HouseholdAgent, ...]:
        return tuple(self._households)

    def business_by_id(self, unique_id: int) -> BusinessAgent:
        return self._business_index[unique_id]

    def household_by_id(self, unique_id: int) -> HouseholdAgent:
        return self._household_index[unique_id]

    def _index(self, pos: Coords) -> int:
        x, y = pos
        return x * self.params.height + y

    def _position(self, index: int) -> Coords:
        x, y = self._coords[index]
        return int(x), int(y)

    def distance(self, a: Coords, b: Coords) -> float:
        """Euclidean lattice distance between two cells."""
        return float(self._dist[self._index(a), self._index(b)])

    def potential_at(self, pos: Coords) -> float:
        return float(self._cells["f"][self._index(pos)])

    def set_rent(self, pos: Coords, rent: float) -> None:
        self._cells["r"][self._index(pos)] = rent

    def residents(self, pos: Coords) -> List[HouseholdAgent]:
        """Households living on *pos*, in settlement order."""
        contents = self.grid.get_cell_list_contents([pos])
        return sorted((a for a in contents if isinstance(a, HouseholdAgent)), key=lambda a: a.unique_id)

    def firms_at(self, pos: Coords) -> List[BusinessAgent]:
        contents = self.grid.get_cell_list_contents([pos])
        return [a for a in contents if isinstance(a, BusinessAgent)]

    def field(self, name: str) -> np.ndarray:
        """Read-only ``(width, height)`` view of a cell attribute, indexed ``[x, y]``."""
        if name not in CELL_FIELDS:
            raise KeyError(f"Unknown cell attribute {name!r}; expected one of {CELL_FIELDS}")
        view = self._cells[name].reshape(self.params.width, self.params.height).view()
        view.flags.writeable = False
        return view

    def cell_state(self, pos: Coords) -> Dict[str, float]:
        """All attributes of one cell."""
        if self.grid.out_of_bounds(pos):
            raise IndexError(f"Cell {pos} lies outside the grid")
        idx = self._index(pos)
        return {name: float(self._cells[name][idx]) for name in CELL_FIELDS}

    # --------------------------------------------------------------------- #
    #                         FIELD RECOMPUTATION                           #
    # --------------------------------------------------------------------- #
    def update_fields(self) -> None:
        """Recompute ``f``, ``l`` and the anticipated fields for every cell.

        Every field is computed from the current snapshot into fresh arrays
        and only then committed, so no cell sees a half-updated pass.
        """
        p = self.params
        cells = self._cells

        f = locational_potential(cells["b"], self._decay)
        l = mean_commuting_distance(cells["h"], cells["o"], p.sh, self._dist)

        columns = np.array([self._index(b.pos) for b in self._businesses], dtype=int)
        wages = np.array([b.wage for b in self._businesses], dtype=float)
        expected = anticipate(
            f,
            l,
            cells["b"],
            self._dist[:, columns],
            wages,
            ra=p.ra,
            k=p.k,
            t=p.t,
            sb=p.sb,
            sh=p.sh,
            lb=p.lb,
            share=p.bargaining_share,
        )

        cells["f"] = f
        cells["l"] = l
        cells["w_A"] = expected.w_A
        cells["phi_A"] = expected.phi_A
        cells["i_A"] = expected.i_A
        cells["psi_A"] = expected.psi_A

    def _update_space(self, index: int) -> None:
        p = self.params
        cells = self._cells
        cells["o"][index] = money(1.0 - cells["b"][index] * p.sb - cells["h"][index] * p.sh)

    def _has_room(self, index: int) -> bool:
        return self._cells["o"][index] - self.params.sh >= -SPACE_TOLERANCE

    def _pick_best(self, scores: np.ndarray, candidates: np.ndarray) -> int:
        """Index of the best-scoring candidate; ties drawn with the seeded RNG.

        *candidates* are flat indices in ascending order, i.e. ``(x, y)`` order,
        so the draw among tied cells is reproducible for a given seed.
        """
        values = scores[candidates]
        tied = candidates[values == values.max()]
        if tied.size == 1:
            return int(tied[0])
        return int(self.random.choice(tied.tolist()))

    # --------------------------------------------------------------------- #
    #                           ENTRY CONTROLLER                            #
    # --------------------------------------------------------------------- #
    def settle_business(self) -> bool:
        """Let one business enter on the most profitable vacant cell.

        Returns False, leaving the city untouched, when the population cap
        leaves no labour for another firm or no cell bids at least ``ra``.
        """
        p = self.params
        cells = self._cells
        self.phase = ENTRY

        if p.n - len(self._households) < p.lb:
            return False
        vacant = np.flatnonzero(cells["b"] == 0)
        if vacant.size == 0:
            return False
        idx = self._pick_best(cells["phi_A"], vacant)
        if cells["phi_A"][idx] < p.ra:
            return False

        # A firm takes the whole cell; anyone living there is displaced
        for household in self.residents(self._position(idx)):
            self._remove_household(household)

        self._place_business(self._position(idx), wage=float(cells["w_A"][idx]))
        return True

    def settle_household(self) -> bool:
        """Let one household enter on the cell with the highest anticipated bid rent."""
        p = self.params
        cells = self._cells
        self.phase = SETTLING

        room = np.flatnonzero(cells["o"] - p.sh >= -SPACE_TOLERANCE)
        if room.size == 0:
            return False
        idx = self._pick_best(cells["psi_A"], room)
        if cells["psi_A"][idx] < p.ra:
            return False

        self._place_household(self._position(idx))
        return True

    def _place_business(self, pos: Coords, wage: float = 0.0) -> BusinessAgent:
        business = BusinessAgent(self, wage=wage)
        self.grid.place_agent(business, pos)
        self._register_agent(business)
        idx = self._index(pos)
        self._cells["b"][idx] += 1
        self._update_space(idx)
        return business

    def _place_household(self, pos: Coords) -> HouseholdAgent:
        household = HouseholdAgent(self)
        self.grid.place_agent(household, pos)
        self._register_agent(household)
        idx = self._index(pos)
        self._cells["h"][idx] += 1
        self._update_space(idx)
        return household

    def _remove_household(self, household: HouseholdAgent) -> None:
        employer = household.employer
        if employer is not None:
            employer.release(household)
        idx = self._index(household.pos)
        self.grid.remove_agent(household)
        self._unregister_agent(household)
        household.remove()
        self._cells["h"][idx] -= 1
        self._update_space(idx)

    # --------------------------------------------------------------------- #
    #                         LABOUR MARKET CLEARING                        #
    # --------------------------------------------------------------------- #
    def clear_labor_market(self) -> None:
        """Match every business with its nearest workers and price all land.

        Higher-paying businesses pick first; each takes the ``lb`` closest
        households still unmatched.
        """
        p = self.params
        self.phase = CLEARING

        for household in self._households:
            household.employer_id = None
        for business in self._businesses:
            business.employee_ids = []

        unmatched = sorted(self._households, key=lambda h: h.unique_id)
        for business in sorted(self._businesses, key=lambda b: (-b.wage, b.unique_id)):
            unmatched.sort(key=lambda h: (self.distance(h.pos, business.pos), h.unique_id))
            for household in unmatched[: p.lb]:
                business.hire(household)
            unmatched = unmatched[p.lb:]

        for business in self._businesses:
            business.set_wage()
        for household in unmatched:
            household.income = 0.0

        self._price_cells(range(len(self._coords)))
        self._check_matching(unmatched)

    def _price_cells(self, indices: Iterable[int]) -> None:
        """Set land rent and resident utilities on the given cells.

        The highest income among a cell's residents sets its rent. Cells with
        neither residents nor a business fall back to agricultural rent; a
        business cell keeps the rent its firm bid unless households live on
        it, in which case the firm's profit follows the residents' rent.
        """
        p = self.params
        cells = self._cells
        for idx in sorted(set(indices)):
            if cells["h"][idx] > 0:
                pos = self._position(idx)
                residents = self.residents(pos)
                rent = money(max(h.income for h in residents) / p.sh)
                cells["r"][idx] = rent
                for household in residents:
                    household.utility = money(household.income - p.sh * rent)
                if cells["b"][idx] > 0:
                    for business in self.firms_at(pos):
                        business.update_profit()
            elif cells["b"][idx] == 0:
                cells["r"][idx] = p.ra

    def _check_matching(self, unmatched: List[HouseholdAgent]) -> None:
        if unmatched:
            raise InvariantViolation(
                f"{len(unmatched)} household(s) left without an employer after clearing"
            )
        if len(self._households) >= len(self._businesses) * self.params.lb:
            short = [b.unique_id for b in self._businesses if len(b.employee_ids) != self.params.lb]
            if short:
                raise InvariantViolation(f"Businesses {short} are not fully staffed after clearing")

    # --------------------------------------------------------------------- #
    #                              RELOCATION                               #
    # --------------------------------------------------------------------- #
    def relocate_households(self) -> int:
        """Move households with negative utility until every utility is >= 0.

        Returns the number of single-cell moves performed.
        """
        p = self.params
        self.phase = ADJUSTING
        moves = 0
        while True:
            movers = [h for h in self._households if h.utility < 0]
            if not movers:
                return moves
            for household in movers:
                # An earlier move may already have fixed this one
                if household.utility >= 0:
                    continue
                moves += self._relocate(household)
                if moves > p.max_relocation_moves:
                    raise InvariantViolation(
                        f"Relocation did not settle within {p.max_relocation_moves} moves"
                    )

    def _relocate(self, household: HouseholdAgent) -> int:
        """Walk *household* outward from its employer until its utility is >= 0."""
        p = self.params
        employer = household.employer
        if employer is None:
            raise InvariantViolation(f"Household {household.unique_id} has no employer to relocate towards")

        moves = 0
        for idx in ranking_by_distance(self._dist, self._index(employer.pos)):
            target = self._position(int(idx))
            if target == household.pos:
                continue
            if p.relocation_capacity_check and not self._has_room(int(idx)):
                continue

            old_idx = self._move_household(household, target)
            moves += 1

            employer.set_wage()
            touched = {self._index(e.pos) for e in employer.employees}
            touched.update((old_idx, int(idx)))
            self._price_cells(touched)

            if household.utility >= 0:
                return moves

        raise InvariantViolation(
            f"Household {household.unique_id} found no cell with non-negative utility"
        )

    def _move_household(self, household: HouseholdAgent, target: Coords) -> int:
        cells = self._cells
        old_idx = self._index(household.pos)
        new_idx = self._index(target)
        cells["h"][old_idx] -= 1
        self._update_space(old_idx)
        self.grid.move_agent(household, target)
        cells["h"][new_idx] += 1
        self._update_space(new_idx)
        return old_idx

    # --------------------------------------------------------------------- #
    #                              INVARIANTS                               #
    # --------------------------------------------------------------------- #
    def check_invariants(self) -> None:
        """Raise :class:`InvariantViolation` if the cell bookkeeping is inconsistent."""
        p = self.params
        cells = self._cells
        n_cells = len(self._coords)

        b_pos = np.array([self._index(a.pos) for a in self._businesses], dtype=int)
        h_pos = np.array([self._index(a.pos) for a in self._households], dtype=int)
        b_count = np.bincount(b_pos, minlength=n_cells)
        h_count = np.bincount(h_pos, minlength=n_cells)
        if not (np.array_equal(b_count, cells["b"]) and np.array_equal(h_count, cells["h"])):
            raise InvariantViolation("Cell occupancy counts disagree with agent positions")

        expected = money(1.0 - cells["b"] * p.sb - cells["h"] * p.sh)
        if not np.allclose(cells["o"], expected, rtol=0.0, atol=1e-9):
            raise InvariantViolation("Available space no longer equals 1 - b*sb - h*sh")
        if p.relocation_capacity_check and (cells["o"] < -SPACE_TOLERANCE).any():
            bad = [self._position(int(i)) for i in np.flatnonzero(cells["o"] < -SPACE_TOLERANCE)]
            raise InvariantViolation(f"Negative available space on cells {bad}")
        if (cells["f"] < 1.0).any():
            raise InvariantViolation("Locational potential fell below its baseline of 1")

    # --------------------------------------------------------------------- #
    #                          EQUILIBRIUM DRIVER                           #
    # --------------------------------------------------------------------- #
    def advance_one_equilibrium(self) -> bool:
        """Run one entry / settling / clearing / relocation cycle.

        Returns False once no business can profitably enter; the model is
        then terminated and further calls do nothing.
        """
        p = self.params
        if not self.running:
            return False

        if not self.settle_business():
            self.running = False
            self.phase = TERMINATED
            if self.verbose:
                print(f"[TERMINATED] No business can enter after equilibrium {self.equilibrium}")
            return False
        self.update_fields()

        target = len(self._businesses) * p.lb
        while len(self._households) < target:
            if not self.settle_household():
                warnings.warn(
                    f"Household entry stalled at {len(self._households)}/{target} households "
                    f"in equilibrium {self.equilibrium + 1}",
                    RuntimeWarning,
                )
                break
            self.update_fields()

        self.clear_labor_market()
        self.relocation_moves = self.relocate_households()
        self.update_fields()
        self.check_invariants()

        self.equilibrium += 1
        self.phase = EQUILIBRIUM
        self.datacollector.collect(self)

        if self.verbose:
            print(
                f"[EQUILIBRIUM] {self.equilibrium}: businesses={len(self._businesses)} "
                f"households={len(self._households)} moves={self.relocation_moves}"
            )
        return True

    def step(self) -> None:  # noqa: D401, N802
        """Advance the model by one equilibrium."""
        self.advance_one_equilibrium()

    def run(self, n_equilibria: Optional[int] = None) -> int:
        """Advance up to *n_equilibria* equilibria (all of them if None).

        Returns how many equilibria were completed by this call.
        """
        done = 0
        while self.running and (n_equilibria is None or done < n_equilibria):
            before = self.equilibrium
            self.step()
            if self.equilibrium == before:
                break
            done += 1
        return done

    # --------------------------------------------------------------------- #
    #                            EXPORT HELPERS                             #
    # --------------------------------------------------------------------- #
    def results_to_dataframe(self) -> pd.DataFrame:
        """Model-level series, one row per equilibrium."""
        return self.datacollector.get_model_vars_dataframe().copy()

    def agents_to_dataframe(self) -> pd.DataFrame:
        """Current attributes of every settled agent."""
        rows = []
        for business in self._businesses:
            rows.append({
                "AgentID": business.unique_id,
                "type": "BusinessAgent",
                "x": business.pos[0],
                "y": business.pos[1],
                "wage": business.wage,
                "profit": business.profit,
                "income": np.nan,
                "utility": np.nan,
                "employer": None,
            })
        for household in self._households:
            rows.append({
                "AgentID": household.unique_id,
                "type": "HouseholdAgent",
                "x": household.pos[0],
                "y": household.pos[1],
                "wage": np.nan,
                "profit": np.nan,
                "income": household.income,
                "utility": household.utility,
                "employer": household.employer_id,
            })
        return pd.DataFrame(rows, columns=["AgentID", "type", "x", "y", "wage", "profit", "income", "utility", "employer"])

    def cells_to_dataframe(self) -> pd.DataFrame:
        """Snapshot of every cell attribute, one row per cell."""
        df = pd.DataFrame({"x": self._coords[:, 0], "y": self._coords[:, 1]})
        for name in CELL_FIELDS:
            df[name] = self._cells[name].copy()
        df.insert(0, "Equilibrium", self.equilibrium)
        return df

    def save_results(self, out_path: str | Path = "city_results.csv") -> None:
        """Save collected series and the current grid to CSV."""
        out_path_obj = Path(out_path).with_suffix("")
        self.results_to_dataframe().to_csv(out_path_obj.with_suffix(".csv"), index=False)

        agents_df = self.datacollector.get_agent_vars_dataframe().reset_index()
        agents_df.rename(columns={"level_0": "Step", "level_1": "AgentID"}, inplace=True, errors="ignore")
        agents_df.to_csv(out_path_obj.with_name(f"{out_path_obj.stem}_agents.csv"), index=False)

        self.cells_to_dataframe().to_csv(out_path_obj.with_name(f"{out_path_obj.stem}_cells.csv"), index=False)
