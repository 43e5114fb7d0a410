import numpy as np
import pandas as pd
import pytest

from bid_rent import maximum_wage
from model import CELL_FIELDS, TERMINATED, CityModel
from potential_utils import money


def _assert_space_invariants(model):
    p = model.params
    o = model.field("o")
    expected = 1.0 - model.field("b") * p.sb - model.field("h") * p.sh
    assert np.all(o >= -1e-9)
    assert np.allclose(o, expected, atol=1e-9)


def test_initial_city_is_agricultural(small_model):
    p = small_model.params
    assert small_model.phase == "SETUP"
    assert len(small_model.agents) == 0
    assert np.all(small_model.field("o") == 1.0)
    assert np.all(small_model.field("r") == p.ra)
    assert np.all(small_model.field("f") == 1.0)
    assert small_model.field("r").shape == (p.width, p.height)


def test_first_business_settles_at_center(small_model):
    assert small_model.settle_business()
    (business,) = small_model.businesses
    assert business.pos == small_model.center
    state = small_model.cell_state(small_model.center)
    assert state["b"] == 1 and state["o"] == 0.0
    assert business.wage == state["w_A"]


def test_bid_rent_is_higher_next_to_the_sole_business():
    model = CityModel(radius=10, lb=2, ra=1.0, k=100.0, t=0.1, alpha=0.01, balance=50.0)
    assert model.settle_business()
    model.update_fields()
    cx, cy = model.center
    phi = model.field("phi_A")
    assert phi[cx + 1, cy] > phi[0, 0]
    assert phi[cx, cy + 1] > phi[2 * cx, 2 * cy]


def test_equilibrium_staffs_every_business(small_model):
    for _ in range(3):
        assert small_model.advance_one_equilibrium()
        p = small_model.params
        assert len(small_model.households) == len(small_model.businesses) * p.lb
        for business in small_model.businesses:
            assert len(business.employee_ids) == p.lb
        for household in small_model.households:
            assert household.employer_id is not None
            assert household.utility >= 0
        _assert_space_invariants(small_model)
        assert np.all(small_model.field("f") >= 1.0)
    assert small_model.equilibrium == 3


@pytest.mark.parametrize("balance", [0.0, 100.0])
def test_bargaining_extremes(make_model, balance):
    model = make_model(balance=balance)
    assert model.advance_one_equilibrium()
    p = model.params
    for business in model.businesses:
        if balance == 0.0:
            expected = money(p.ra * p.sh + p.t * business.farthest_commute())
        else:
            expected = money(maximum_wage(p.k, model.potential_at(business.pos), p.ra, p.sb, p.lb))
        assert business.wage == expected


def test_profit_is_exhausted_by_rent(small_model):
    small_model.run(2)
    p = small_model.params
    for business in small_model.businesses:
        f = small_model.potential_at(business.pos)
        rent = small_model.cell_state(business.pos)["r"]
        assert rent == money((p.k * f - p.lb * business.wage) / p.sb)
        assert abs(business.profit) < 1e-8


def test_run_terminates_at_population_cap(make_model):
    model = make_model(n=4)
    assert model.run() == 2
    assert not model.running
    assert model.phase == TERMINATED
    assert len(model.businesses) == 2
    assert len(model.households) == 4

    cells_before = model.cells_to_dataframe()
    assert model.advance_one_equilibrium() is False
    pd.testing.assert_frame_equal(cells_before, model.cells_to_dataframe())


def test_unprofitable_entry_fails_without_mutation(make_model):
    model = make_model(ra=1000.0)
    assert model.field("phi_A").max() < model.params.ra
    cells_before = model.cells_to_dataframe()

    assert model.settle_business() is False
    assert len(model.agents) == 0
    pd.testing.assert_frame_equal(cells_before, model.cells_to_dataframe())

    assert model.advance_one_equilibrium() is False
    assert model.phase == TERMINATED


def test_business_entry_displaces_residents(small_model):
    small_model.settle_business()
    small_model.update_fields()
    small_model.settle_household()
    small_model.update_fields()
    (household,) = small_model.households
    home = household.pos

    # make the household's cell the only attractive site
    idx = small_model._index(home)
    small_model._cells["phi_A"][:] = 0.0
    small_model._cells["phi_A"][idx] = 50.0
    assert small_model.settle_business()

    assert len(small_model.households) == 0
    assert household.pos is None
    state = small_model.cell_state(home)
    assert state["b"] == 1 and state["h"] == 0 and state["o"] == 0.0


def test_household_entry_respects_space(small_model):
    small_model.settle_business()
    small_model.update_fields()
    for _ in range(6):
        assert small_model.settle_household()
        small_model.update_fields()
        _assert_space_invariants(small_model)
    assert small_model.field("h").max() <= 1 / small_model.params.sh


def test_field_recomputation_is_idempotent(small_model):
    small_model.run(2)
    before = {name: small_model.field(name).copy() for name in CELL_FIELDS}
    small_model.update_fields()
    small_model.update_fields()
    for name in CELL_FIELDS:
        assert np.array_equal(before[name], small_model.field(name))


def _agent_rows(model):
    df = model.agents_to_dataframe().drop(columns=["AgentID", "employer"])
    return df.sort_values(["type", "x", "y", "income"]).reset_index(drop=True)


def test_same_seed_reproduces_the_city(make_model):
    first = make_model(random_seed=11)
    second = make_model(random_seed=11)
    for _ in range(4):
        first.advance_one_equilibrium()
        second.advance_one_equilibrium()
        pd.testing.assert_frame_equal(first.cells_to_dataframe(), second.cells_to_dataframe())
        pd.testing.assert_frame_equal(_agent_rows(first), _agent_rows(second))
    pd.testing.assert_frame_equal(first.results_to_dataframe(), second.results_to_dataframe())


def test_setup_resets_the_city(small_model):
    small_model.run(2)
    small_model.setup({"radius": 3, "n": 4, "random_seed": 3})
    assert small_model.equilibrium == 0
    assert small_model.running
    assert len(small_model.agents) == 0
    assert small_model.field("b").shape == (7, 7)
    assert small_model.run() == 2


def test_query_surface(small_model):
    small_model.run(1)
    state = small_model.cell_state((0, 0))
    assert set(state) == set(CELL_FIELDS)

    view = small_model.field("r")
    with pytest.raises(ValueError):
        view[0, 0] = 123.0
    with pytest.raises(KeyError):
        small_model.field("rent")
    with pytest.raises(IndexError):
        small_model.cell_state((99, 99))


def test_results_and_export(small_model, tmp_path):
    assert small_model.run(2) == 2
    df = small_model.results_to_dataframe()
    assert len(df) == 2
    assert df["Equilibrium"].tolist() == [1, 2]
    assert (df["Min_Utility"] >= 0).all()
    assert df["Businesses"].tolist() == [1, 2]

    cells = small_model.cells_to_dataframe()
    assert len(cells) == small_model.params.width * small_model.params.height
    assert set(CELL_FIELDS) <= set(cells.columns)

    agents = small_model.agents_to_dataframe()
    assert (agents["type"] == "BusinessAgent").sum() == 2

    out = tmp_path / "city.csv"
    small_model.save_results(out)
    assert out.exists()
    assert (tmp_path / "city_agents.csv").exists()
    assert (tmp_path / "city_cells.csv").exists()


def test_setup_overrides_apply_to_current_parameters(small_model):
    small_model.run(1)
    small_model.setup(balance=0)
    assert small_model.params.balance == 0.0
    assert small_model.params.radius == 4
    assert small_model.params.n == 8
    assert small_model.params.random_seed == 7
    assert small_model.equilibrium == 0
    assert small_model.field("b").shape == (9, 9)
