"""Interactive Mesa visualization for the dynamic Fujita–Ogawa city (Mesa ≥3.1).

Run the dashboard with:

    solara run visualization.py

or through ``python run_simulation.py --viz``. Each model step is one
equilibrium; the map shows the selected cell attribute with businesses and
households overlaid, and the charts follow wages, rents and population.
The dashboard only reads model state.
"""
from __future__ import annotations

from typing import Any, Dict
import json
import os

import numpy as np
import solara
from matplotlib.figure import Figure
from mesa.visualization import SolaraViz, make_plot_component
from mesa.visualization.utils import update_counter

from agents import BusinessAgent, HouseholdAgent
from model import CityModel
from parameters import CityParameters

# Parameters handed over by run_simulation.py --viz
_ENV_PARAMS: Dict[str, Any] = json.loads(os.getenv("CITY_PARAMS", "{}"))

PLOT_WAGE = make_plot_component("Mean_Wage")
PLOT_INCOME = make_plot_component("Mean_Income")
PLOT_RENT = make_plot_component("Mean_Rent")
PLOT_HOUSEHOLDS = make_plot_component("Households")
PLOT_MOVES = make_plot_component("Relocation_Moves")

_MAP_FIELD = solara.reactive("r")
_FIELD_LABELS = {
    "r": "Land rent",
    "f": "Locational potential",
    "phi_A": "Anticipated business bid rent",
    "psi_A": "Anticipated household bid rent",
    "w_A": "Anticipated wage",
    "o": "Available space",
}


# ----------------------------- Parameters ------------------------------- #

_BASE_PARAMS: Dict[str, Any] = {
    "n": {
        "type": "SliderInt",
        "label": "Population cap",
        "value": 40,
        "min": 2,
        "max": 200,
        "step": 2,
    },
    "t": {
        "type": "SliderFloat",
        "label": "Commuting cost per distance",
        "value": 0.1,
        "min": 0.0,
        "max": 5.0,
        "step": 0.05,
    },
    "alpha": {
        "type": "SliderFloat",
        "label": "Potential decay (alpha)",
        "value": 0.01,
        "min": 0.0,
        "max": 1.0,
        "step": 0.01,
    },
    "balance": {
        "type": "SliderInt",
        "label": "Workers' bargaining power (%)",
        "value": 50,
        "min": 0,
        "max": 100,
        "step": 5,
    },
}


# ----------------- Cell field + agents map component -------------------- #


@solara.component
def MapView(model):  # noqa: ANN001
    """Selected cell attribute (background) with agents (foreground)."""

    # Trigger re-render on each model step
    update_counter.get()

    name = _MAP_FIELD.value
    values = np.asarray(model.field(name)).T  # rows = y

    fig = Figure(figsize=(6, 5.5))
    ax = fig.subplots()
    im = ax.imshow(values, origin="lower", cmap="viridis", interpolation="nearest")
    fig.colorbar(im, ax=ax, label=_FIELD_LABELS.get(name, name), shrink=0.7, pad=0.01)

    hh_x, hh_y, firm_x, firm_y = [], [], [], []
    for ag in model.agents:
        if ag.pos is None:
            continue
        if isinstance(ag, HouseholdAgent):
            hh_x.append(ag.pos[0])
            hh_y.append(ag.pos[1])
        elif isinstance(ag, BusinessAgent):
            firm_x.append(ag.pos[0])
            firm_y.append(ag.pos[1])

    if hh_x:
        ax.scatter(hh_x, hh_y, s=12, c="tab:green", label="Households", alpha=0.7, zorder=3)
    if firm_x:
        ax.scatter(firm_x, firm_y, s=30, c="tab:red", marker="s", label="Businesses", zorder=4)

    ax.set_title(f"Equilibrium {model.equilibrium} ({model.phase.lower()})")
    ax.set_xticks([])
    ax.set_yticks([])
    ax.legend(loc="lower center", bbox_to_anchor=(0.5, -0.12), frameon=False, ncol=2)
    fig.subplots_adjust(left=0.02, right=0.98, top=0.94, bottom=0.08)

    solara.FigureMatplotlib(fig)


@solara.component
def FieldSelector(model):  # noqa: ANN001
    """Choose which cell attribute the map shows."""

    solara.Select(
        label="Map layer",
        value=_MAP_FIELD,
        values=list(_FIELD_LABELS.keys()),
    )


# -------------------------- Combined dashboard --------------------------- #


@solara.component
def DashboardRow(model):  # noqa: ANN001
    """Map view plus stacked price and population charts."""

    update_counter.get()

    with solara.Row():
        with solara.Column(style={"flex": "2", "minWidth": "600px"}):
            FieldSelector(model)
            MapView(model)
        with solara.Column(style={"flex": "1", "minWidth": "300px", "overflowY": "auto"}):
            solara.Markdown("## Prices")
            PLOT_WAGE(model)
            PLOT_INCOME(model)
            PLOT_RENT(model)
            solara.Markdown("## Population")
            PLOT_HOUSEHOLDS(model)
            PLOT_MOVES(model)


def make_page() -> Any:  # noqa: D401, ANN401
    base = CityParameters.from_mapping(_ENV_PARAMS)
    model_params = {**_BASE_PARAMS}
    # Non-slider parameters are passed through unchanged
    for key, value in base.to_dict().items():
        if key not in model_params and key != "random_seed":
            model_params[key] = value
        elif key in model_params:
            model_params[key] = {**model_params[key], "value": value}

    model = CityModel(base)
    return SolaraViz(model, components=[DashboardRow], model_params=model_params, name="Fujita–Ogawa city")  # type: ignore


# The Solara entry point. The variable name must be `page`.
page = make_page()
