import pytest

from model import CityModel

SMALL_CITY = dict(
    radius=4,
    n=8,
    lb=2,
    ra=1.0,
    k=100.0,
    t=0.1,
    alpha=0.01,
    balance=50.0,
    random_seed=7,
)


@pytest.fixture
def make_model():
    """Factory for small cities; keyword arguments override ``SMALL_CITY``."""

    def _make(**overrides):
        return CityModel({**SMALL_CITY, **overrides})

    return _make


@pytest.fixture
def small_model(make_model):
    return make_model()
