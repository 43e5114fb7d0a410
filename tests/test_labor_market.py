import pytest

from model import CityModel, InvariantViolation
from potential_utils import money


def _city(**overrides):
    return CityModel({"radius": 10, "random_seed": 1, **overrides})


def _contention(wage_a, wage_b):
    model = _city()
    a = model._place_business((5, 5), wage=wage_a)
    b = model._place_business((6, 5), wage=wage_b)
    homes = [model._place_household(pos) for pos in [(5, 6), (6, 6), (10, 5), (10, 6)]]
    model.update_fields()
    model.clear_labor_market()
    return model, a, b, homes


def test_higher_wage_business_hires_first():
    _, a, b, (h1, h2, h3, h4) = _contention(30.0, 40.0)
    assert b.employee_ids == [h2.unique_id, h1.unique_id]
    assert sorted(a.employee_ids) == sorted([h3.unique_id, h4.unique_id])
    assert h1.employer is b and h3.employer is a


def test_equal_wages_fall_back_to_settlement_order():
    _, a, b, (h1, h2, h3, h4) = _contention(30.0, 30.0)
    assert a.unique_id < b.unique_id
    assert sorted(a.employee_ids) == sorted([h1.unique_id, h2.unique_id])
    assert sorted(b.employee_ids) == sorted([h3.unique_id, h4.unique_id])


def test_clearing_prices_wages_incomes_and_land():
    model, a, b, homes = _contention(30.0, 40.0)
    p = model.params
    for business in (a, b):
        rent = model.cell_state(business.pos)["r"]
        f = model.potential_at(business.pos)
        assert rent == money((p.k * f - p.lb * business.wage) / p.sb)
        for household in business.employees:
            dist = model.distance(household.pos, business.pos)
            assert household.income == money(business.wage - p.t * dist)

    for household in homes:
        state = model.cell_state(household.pos)
        assert state["r"] == money(household.income / p.sh)
        assert household.utility == 0.0

    # untouched farmland
    assert model.cell_state((0, 0))["r"] == p.ra


def test_unmatched_household_is_unemployed():
    model = _city()
    business = model._place_business((10, 10), wage=20.0)
    near = model._place_household((10, 11))
    mid = model._place_household((10, 12))
    far = model._place_household((10, 15))
    model.update_fields()

    with pytest.raises(InvariantViolation):
        model.clear_labor_market()

    assert business.employee_ids == [near.unique_id, mid.unique_id]
    assert far.employer_id is None
    assert far.income == 0.0
    assert far.commute_distance() == 0.0


def test_reclearing_rebuilds_assignments():
    model, a, b, homes = _contention(30.0, 40.0)
    # A now pays more (its farthest worker commutes further) and picks first
    assert a.wage > b.wage
    model.clear_labor_market()
    assert sorted(a.employee_ids) == sorted([homes[0].unique_id, homes[1].unique_id])
    assert len(b.employee_ids) == model.params.lb
    assert all(h.employer_id is not None for h in homes)
