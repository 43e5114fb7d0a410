from __future__ import annotations

from typing import List, Optional, TYPE_CHECKING

from mesa import Agent

from bid_rent import bargained_wage, maximum_wage, reservation_wage
from potential_utils import money


# ------------------------------------------------------------------------- #
# Optional forward references to avoid circular imports during type checking
# ------------------------------------------------------------------------- #
if TYPE_CHECKING:  # pragma: no cover
    from model import CityModel  # noqa: F401 – only for typing


class HouseholdAgent(Agent):
    """A household supplies labour to one business and rents land near it.

    Income is the employer's wage net of commuting cost; utility is what is
    left after paying the land rent of the household's cell.
    """

    def __init__(self, model: "CityModel") -> None:
        super().__init__(model)

        # Note: pos is handled by Mesa's grid.place_agent(), not set here
        self.income: float = 0.0
        self.utility: float = 0.0
        # Employer is referenced by id; the business keeps the reverse list
        self.employer_id: Optional[int] = None

    @property
    def employer(self) -> Optional["BusinessAgent"]:
        if self.employer_id is None:
            return None
        return self.model.business_by_id(self.employer_id)

    def commute_distance(self) -> float:
        """Distance to the employer (0 when unemployed)."""
        employer = self.employer
        if employer is None:
            return 0.0
        return self.model.distance(self.pos, employer.pos)

    def update_income(self, wage: float) -> None:
        self.income = money(wage - self.model.params.t * self.commute_distance())


class BusinessAgent(Agent):
    """A firm employing ``lb`` workers on a single cell."""

    def __init__(self, model: "CityModel", wage: float = 0.0) -> None:
        super().__init__(model)

        self.wage: float = wage
        self.profit: float = 0.0
        # Commuting assignment, rebuilt on every market clearing
        self.employee_ids: List[int] = []

    @property
    def employees(self) -> List[HouseholdAgent]:
        return [self.model.household_by_id(uid) for uid in self.employee_ids]

    def hire(self, household: HouseholdAgent) -> None:
        household.employer_id = self.unique_id
        self.employee_ids.append(household.unique_id)

    def release(self, household: HouseholdAgent) -> None:
        if household.unique_id in self.employee_ids:
            self.employee_ids.remove(household.unique_id)
        household.employer_id = None

    def farthest_commute(self) -> float:
        return max((self.model.distance(self.pos, e.pos) for e in self.employees), default=0.0)

    def set_wage(self) -> None:
        """Bargain the wage, then derive the cell rent, profit and worker incomes.

        The reservation wage must cover the commute of the farthest worker;
        the firm's ceiling is set by the potential of its own cell.
        """
        params = self.model.params
        f = self.model.potential_at(self.pos)
        output = params.k * f

        wmin = reservation_wage(params.ra, params.sh, params.t, self.farthest_commute())
        wmax = maximum_wage(params.k, f, params.ra, params.sb, params.lb)
        self.wage = money(bargained_wage(wmin, wmax, params.bargaining_share))

        rent = money((output - params.lb * self.wage) / params.sb)
        self.model.set_rent(self.pos, rent)
        self.update_profit()

        for household in self.employees:
            household.update_income(self.wage)

    def update_profit(self) -> None:
        """Profit at the current wage and the rent currently charged on the cell."""
        params = self.model.params
        rent = self.model.cell_state(self.pos)["r"]
        output = params.k * self.model.potential_at(self.pos)
        self.profit = money(output - params.lb * self.wage - params.sb * rent)
