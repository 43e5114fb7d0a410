"""Run the dynamic Fujita–Ogawa city model headless and persist results.

Each repetition builds a fresh city, advances it equilibrium by equilibrium
until no further business can enter (or ``--equilibria`` is reached) and writes
the model series, agent series and per-equilibrium cell snapshots as CSV.
"""

from pathlib import Path
import argparse
from datetime import datetime

import pandas as pd

from model import CityModel
from parameters import CityParameters, ParameterError, load_parameter_file


def _parse():
    p = argparse.ArgumentParser()
    p.add_argument("--equilibria", type=int, default=None, help="Maximum number of equilibria per repetition (default: until termination)")
    p.add_argument("--seed", type=int, default=None, help="Random seed for reproducibility (overrides the parameter file)")
    p.add_argument("--repetitions", type=int, default=None, help="Number of independent runs; run i uses seed + i")
    p.add_argument(
        "--param-file",
        type=str,
        help=(
            "Path to a JSON file with model parameters (radius, n, lb, ra, k, t, alpha, balance, "
            "random_seed, repetitions, ...). Run-control keys 'equilibria' and 'viz' are also read."
        ),
    )
    p.add_argument("--set", action="append", default=[], metavar="NAME=VALUE", help="Override a single model parameter, e.g. --set balance=80")
    p.add_argument("--out", type=str, default=None, help="Output file prefix (default: city_<timestamp>)")
    p.add_argument("--viz", action="store_true", help="Launch interactive Solara dashboard instead of headless run")
    p.add_argument("--plot", action="store_true", help="Save a summary figure of the final city and its time series")
    p.add_argument("--quiet", action="store_true", help="Suppress per-equilibrium progress lines")
    return p.parse_args()


def _parse_value(raw: str):
    """Interpret a ``--set`` value as bool, int or float where possible."""
    lowered = raw.strip().lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


def _collect_parameters(args) -> dict:
    params: dict = {}
    if args.param_file:
        param_data = load_parameter_file(args.param_file)
        file_params = param_data.get("parameters", {k: v for k, v in param_data.items() if k not in ("equilibria", "viz")})
        params.update(file_params)

        # Run-control entries – CLI flags take precedence over file settings
        if args.equilibria is None and "equilibria" in param_data:
            args.equilibria = int(param_data["equilibria"])
        if not args.viz and param_data.get("viz"):
            args.viz = bool(param_data["viz"])

    for item in args.set:
        name, sep, value = item.partition("=")
        if not sep:
            raise SystemExit(f"Invalid --set entry: {item}. Expected NAME=VALUE.")
        params[name.strip()] = _parse_value(value)

    if args.seed is not None:
        params["random_seed"] = args.seed
    if args.repetitions is not None:
        params["repetitions"] = args.repetitions
    return params


def run_repetitions(base: CityParameters, equilibria: int | None = None, verbose: bool = True):
    """Run ``base.repetitions`` independent cities.

    Returns three DataFrames (model series, agent series, cell snapshots), each
    tagged with a ``Repetition`` column.
    """
    series, agents, cells = [], [], []
    for rep in range(base.repetitions):
        params = base.copy_with_overrides({"random_seed": base.random_seed + rep})
        model = CityModel(params, verbose=verbose)

        snapshots = [model.cells_to_dataframe()]
        while model.running and (equilibria is None or model.equilibrium < equilibria):
            if not model.advance_one_equilibrium():
                break
            snapshots.append(model.cells_to_dataframe())

        df = model.results_to_dataframe()
        df["Repetition"] = rep
        df["Seed"] = params.random_seed
        series.append(df)

        agent_df = model.datacollector.get_agent_vars_dataframe().reset_index()
        agent_df.rename(columns={"level_0": "Step", "level_1": "AgentID"}, inplace=True, errors="ignore")
        agent_df["Repetition"] = rep
        agents.append(agent_df)

        cell_df = pd.concat(snapshots, ignore_index=True)
        cell_df["Repetition"] = rep
        cells.append(cell_df)

        if verbose:
            print(f"[INFO] Repetition {rep}: {model.equilibrium} equilibria, phase {model.phase}")

    return (
        pd.concat(series, ignore_index=True),
        pd.concat(agents, ignore_index=True),
        pd.concat(cells, ignore_index=True),
    )


def _plot_summary(series: pd.DataFrame, cells: pd.DataFrame, path: Path) -> None:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    first = series[series["Repetition"] == 0]
    grid = cells[cells["Repetition"] == 0]
    final = grid[grid["Equilibrium"] == grid["Equilibrium"].max()]

    fig, axes = plt.subplots(1, 3, figsize=(15, 4.5))

    width = int(final["x"].max()) + 1
    height = int(final["y"].max()) + 1
    rent = final["r"].to_numpy().reshape(width, height).T
    im = axes[0].imshow(rent, origin="lower", cmap="viridis", interpolation="nearest")
    firms = final[final["b"] > 0]
    homes = final[final["h"] > 0]
    axes[0].scatter(homes["x"], homes["y"], s=8, c="tab:green", label="Households")
    axes[0].scatter(firms["x"], firms["y"], s=14, c="tab:red", marker="s", label="Businesses")
    axes[0].set_title("Land rent – final equilibrium")
    axes[0].legend(fontsize=7, loc="lower center", bbox_to_anchor=(0.5, -0.2), ncol=2, frameon=False)
    fig.colorbar(im, ax=axes[0], shrink=0.7)

    axes[1].plot(first["Equilibrium"], first["Mean_Wage"], label="Mean wage")
    axes[1].plot(first["Equilibrium"], first["Mean_Income"], label="Mean income")
    axes[1].plot(first["Equilibrium"], first["Mean_Rent"], label="Mean rent")
    axes[1].set_xlabel("Equilibrium")
    axes[1].legend(fontsize=7)
    axes[1].set_title("Prices")

    axes[2].plot(first["Equilibrium"], first["Relocation_Moves"], color="black")
    axes[2].set_xlabel("Equilibrium")
    axes[2].set_title("Relocation moves per equilibrium")

    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)


def main() -> None:  # noqa: D401
    args = _parse()

    try:
        raw_params = _collect_parameters(args)
        params = CityParameters.from_mapping(raw_params)
    except (FileNotFoundError, ValueError) as exc:
        # ParameterError lists every offending parameter at once
        if isinstance(exc, ParameterError):
            lines = "\n".join(f"  {name}: {reason}" for name, reason in exc.errors.items())
            raise SystemExit(f"Invalid parameters:\n{lines}") from exc
        raise SystemExit(str(exc)) from exc

    # If visualization requested, delegate to Solara which hosts the dashboard
    if args.viz:
        import json
        import os
        import subprocess
        import sys

        env = os.environ.copy()
        env["CITY_PARAMS"] = json.dumps(params.to_dict())
        cmd = [sys.executable, "-m", "solara", "run", "visualization.py"]
        subprocess.run(cmd, env=env, check=False)
        return

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    prefix = Path(args.out or f"city_{timestamp}")

    series, agents, cells = run_repetitions(params, args.equilibria, verbose=not args.quiet)

    main_csv_path = prefix.with_name(f"{prefix.name}.csv")
    agent_csv_path = prefix.with_name(f"{prefix.name}_agents.csv")
    cell_csv_path = prefix.with_name(f"{prefix.name}_cells.csv")
    series.to_csv(main_csv_path, index=False)
    agents.to_csv(agent_csv_path, index=False)
    cells.to_csv(cell_csv_path, index=False)

    print(f"Results saved as {main_csv_path}, {agent_csv_path} and {cell_csv_path}")

    if args.plot:
        fig_path = prefix.with_name(f"{prefix.name}_summary.png")
        _plot_summary(series, cells, fig_path)
        print(f"Plot saved as {fig_path}")


if __name__ == "__main__":
    main()
