"""Model parameters for the dynamic Fujita–Ogawa city.

All parameters are gathered in :class:`CityParameters`. Values coming from the
command line, a JSON parameter file or the dashboard sliders are validated in a
single pass by :func:`validate_parameters` so that every offending entry is
reported at once and nothing is mutated when validation fails.

Symbols
-------
n        population cap (maximum number of settled households)
lb       jobs per firm; a household consumes ``sh = 1/lb`` units of land
ra       agricultural (reservation) land rent
k        monetary value of one unit of locational potential
t        commuting cost per unit distance
alpha    distance decay of the locational potential
balance  workers' share of bargaining power, in percent
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping

# Land consumed by one business.
SB: float = 1.0

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1


class ParameterError(ValueError):
    """Raised when one or more parameters are invalid.

    ``errors`` maps every failing parameter name to a human readable reason.
    """

    def __init__(self, errors: Mapping[str, str]) -> None:
        self.errors: Dict[str, str] = dict(errors)
        listing = "; ".join(f"{name}: {reason}" for name, reason in self.errors.items())
        super().__init__(f"Invalid parameters – {listing}")


@dataclass(frozen=True)
class CityParameters:
    radius: int = 10
    n: int = 40
    lb: int = 2
    ra: float = 1.0
    k: float = 100.0
    t: float = 0.1
    alpha: float = 0.01
    balance: float = 50.0
    random_seed: int = 42
    repetitions: int = 1
    relocation_capacity_check: bool = True
    max_relocation_moves: int = 100_000

    # ---------------- Derived quantities ---------------- #
    @property
    def sb(self) -> float:
        return SB

    @property
    def sh(self) -> float:
        return 1.0 / self.lb

    @property
    def width(self) -> int:
        return 2 * self.radius + 1

    @property
    def height(self) -> int:
        return 2 * self.radius + 1

    @property
    def bargaining_share(self) -> float:
        """Workers' bargaining power as a fraction in [0, 1]."""
        return self.balance / 100.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def copy_with_overrides(self, overrides: Mapping[str, Any]) -> "CityParameters":
        merged = {**self.to_dict(), **dict(overrides)}
        return CityParameters.from_mapping(merged)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any] | None = None) -> "CityParameters":
        """Validate *mapping* and build parameters; missing keys take defaults."""
        mapping = dict(mapping or {})
        errors = validate_parameters(mapping)
        if errors:
            raise ParameterError(errors)
        values = {**asdict(cls()), **mapping}
        for name in _COUNT_PARAMS:
            values[name] = int(values[name])
        for name in _REAL_PARAMS:
            values[name] = float(values[name])
        return cls(**values)


# --------------------------------------------------------------------- #
#                             VALIDATION                                #
# --------------------------------------------------------------------- #
_COUNT_PARAMS = ("radius", "n", "lb", "random_seed", "repetitions", "max_relocation_moves")
_REAL_PARAMS = ("ra", "k", "t", "alpha", "balance")
_FLAG_PARAMS = ("relocation_capacity_check",)


def _is_integral(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and value.is_integer()


def _is_real(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


def validate_parameters(mapping: Mapping[str, Any]) -> Dict[str, str]:
    """Return ``{name: reason}`` for every invalid entry of *mapping*.

    Missing entries are checked with their default value. An empty result
    means the mapping is valid.
    """
    known = {f.name for f in fields(CityParameters)}
    errors: Dict[str, str] = {}
    for name in mapping:
        if name not in known:
            errors[name] = "unknown parameter"

    values = {**asdict(CityParameters()), **{k: v for k, v in mapping.items() if k in known}}

    for name in _COUNT_PARAMS:
        if not _is_integral(values[name]):
            errors[name] = f"must be an integer, got {values[name]!r}"
    for name in _REAL_PARAMS:
        if not _is_real(values[name]):
            errors[name] = f"must be a number, got {values[name]!r}"
    for name in _FLAG_PARAMS:
        if not isinstance(values[name], bool):
            errors[name] = f"must be true or false, got {values[name]!r}"

    # Range checks only run on values whose type is already known to be good.
    ranges = [
        ("radius", lambda v: v > 0, "must be > 0"),
        ("n", lambda v: v > 0, "must be > 0"),
        ("lb", lambda v: v > 0, "must be > 0"),
        ("repetitions", lambda v: v > 0, "must be > 0"),
        ("max_relocation_moves", lambda v: v > 0, "must be > 0"),
        ("random_seed", lambda v: INT32_MIN <= v <= INT32_MAX, f"must lie in [{INT32_MIN}, {INT32_MAX}]"),
        ("ra", lambda v: v >= 0, "must be >= 0"),
        ("k", lambda v: v > 0, "must be > 0"),
        ("t", lambda v: v >= 0, "must be >= 0"),
        ("alpha", lambda v: v >= 0, "must be >= 0"),
        ("balance", lambda v: 0 <= v <= 100, "must lie in [0, 100]"),
    ]
    for name, ok, reason in ranges:
        if name not in errors and not ok(values[name]):
            errors[name] = reason

    # The population cap has to fit on the grid once every cell is built out.
    if not {"n", "radius", "lb"} & errors.keys():
        cells = (2 * int(values["radius"]) + 1) ** 2
        if int(values["n"]) > cells * int(values["lb"]):
            errors["n"] = f"exceeds grid capacity of {cells * int(values['lb'])} households"

    return errors


def load_parameter_file(path: str | Path) -> Dict[str, Any]:
    """Read a JSON parameter file and return its top-level object.

    Model parameters may sit at the top level or under a ``"parameters"`` key
    next to run-control entries such as ``"equilibria"``; splitting the two is
    left to the caller.
    """
    param_path = Path(path)
    if not param_path.exists():
        raise FileNotFoundError(f"Parameter file not found: {param_path}")
    with param_path.open() as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Parameter file {param_path} must contain a JSON object.")
    return data
