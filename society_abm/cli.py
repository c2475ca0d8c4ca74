"""Command-line entry points and run persistence for Society ABM."""

from __future__ import annotations

import argparse
import copy
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

# Force Matplotlib into a non-interactive backend for headless execution.
os.environ.setdefault("MPLBACKEND", "Agg")

try:  # pragma: no cover - optional graphical dependency
    import matplotlib.pyplot as plt
except ModuleNotFoundError:  # pragma: no cover - gracefully degrade when unavailable
    plt = None  # type: ignore[assignment]

import pandas as pd

from .config import (
    ConfigurationError,
    INTERACTION_TOPOLOGIES,
    ScenarioPreset,
    SocietyConfig,
    apply_preset,
    get_preset,
    list_presets,
    load_preset,
)
from .models import Action, DecisionContext, SocietyFrame, SocietyResult
from .simulation import SocietyEngine
from .utils import scrub_non_finite

HUMAN_POLICIES = ("cooperate", "defect", "reciprocate")
PLOTTED_METRICS = ("average_trust", "cooperation_rate", "network_density", "gini_coefficient")


def _print_preset_catalog() -> None:
    """Display the registered scenario presets."""
    catalog: List[ScenarioPreset] = sorted(list_presets(), key=lambda preset: preset.name.lower())
    if not catalog:
        print("No built-in scenario presets are registered.")
        return
    print("Available scenario presets:")
    for preset in catalog:
        print(f"  - {preset.name}: {preset.description}")


def _write_config_dump(config: SocietyConfig, destination: str) -> Path:
    """Persist the resolved configuration to ``destination``."""
    target = Path(destination).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        json.dump(config.snapshot(), handle, indent=2, sort_keys=True)
    print(f"[CLI] Wrote configuration snapshot to {target}")
    return target


def _persist_config_snapshot(
    run_directory: Path,
    config: SocietyConfig,
    seed: int,
    cli_args: Optional[Dict[str, Any]],
    preset_metadata: Optional[List[Dict[str, Any]]],
) -> Path:
    """Store configuration + preset metadata alongside simulation results."""
    payload = {
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "cli_args": cli_args or {},
        "presets": preset_metadata or [],
        "seed": seed,
        "config": config.snapshot(),
    }
    snapshot_path = run_directory / "config_snapshot.json"
    with snapshot_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, sort_keys=True, default=str)
    return snapshot_path


def _coerce_value(value: str) -> Any:
    for cast in (int, float):
        try:
            return cast(value)
        except (ValueError, TypeError):
            continue
    lowered = value.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered in {"none", "null"}:
        return None
    if value.startswith(("{", "[")):
        return json.loads(value)
    return value


def _parse_overrides(set_args: Optional[List[str]]) -> Dict[str, Any]:
    """Turn repeated ``KEY=VALUE`` arguments into an overrides dictionary."""
    overrides: Dict[str, Any] = {}
    if not set_args:
        return overrides
    for item in set_args:
        if "=" not in item:
            raise ValueError(f"Override must look like KEY=VALUE, got '{item}'")
        key, raw_value = item.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Override is missing a key: '{item}'")
        overrides[key] = _coerce_value(raw_value.strip())
    return overrides


def scripted_human_decider(policy: str) -> Callable[[DecisionContext], Action]:
    """Stand-in player for human seats when running from the command line."""
    if policy not in HUMAN_POLICIES:
        raise ValueError(f"Unknown human policy '{policy}'. Available: {', '.join(HUMAN_POLICIES)}")

    def decide(context: DecisionContext) -> Action:
        if policy == "cooperate":
            return Action.COOPERATE
        if policy == "defect":
            return Action.DEFECT
        return context.partner_last_action or Action.COOPERATE

    return decide


class RoundLogger:
    """Append one JSON line per logged round for quick diagnostics."""

    def __init__(self, path: Path, run_id: str, interval: int = 1):
        self.path = Path(path)
        self.run_id = run_id
        self.interval = max(1, int(interval))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("", encoding="utf-8")

    def log_frame(self, frame: SocietyFrame) -> bool:
        if not frame.epoch_complete and frame.round % self.interval != 0:
            return False
        metrics = frame.metrics.to_dict()
        distribution = metrics.pop("strategy_distribution", {})
        record: Dict[str, Any] = {
            "run_id": self.run_id,
            "epoch": frame.epoch,
            "round": frame.round,
            "interactions": len(frame.interactions),
            "events": [event.type.value for event in frame.events],
            "epoch_complete": frame.epoch_complete,
            "done": frame.done,
        }
        record.update(metrics)
        record.update({f"strategy_{tag}": count for tag, count in distribution.items()})
        record = scrub_non_finite(record)
        with self.path.open("a", encoding="utf-8") as log_file:
            log_file.write(json.dumps(record, default=float) + "\n")
        return True


def _print_frame(run_id: str, frame: SocietyFrame) -> None:
    metrics = frame.metrics
    print(
        f"[{run_id}] epoch {frame.epoch} round {frame.round}: "
        f"{len(frame.interactions)} interactions, alive={metrics.alive_count}, "
        f"trust={metrics.average_trust:.3f}, coop={metrics.cooperation_rate:.0%}, "
        f"coalitions={metrics.num_coalitions}"
    )
    for event in frame.events:
        print(f"[{run_id}]   ({event.significance.value}) {event.message}")


def _plot_metric_trajectories(metrics_df: pd.DataFrame, output_dir: Path) -> Optional[Path]:
    if plt is None:
        print("[CLI] Matplotlib is unavailable; skipping metric trajectory plot.")
        return None
    columns = [column for column in PLOTTED_METRICS if column in metrics_df.columns]
    if metrics_df.empty or not columns:
        return None
    fig, axes = plt.subplots(len(columns), 1, figsize=(8, 2.5 * len(columns)), sharex=True)
    if len(columns) == 1:
        axes = [axes]
    for ax, column in zip(axes, columns):
        ax.plot(metrics_df["epoch"], metrics_df[column], marker="o", color="#3498db")
        ax.set_ylabel(column.replace("_", " "))
        ax.set_ylim(0, 1)
    axes[-1].set_xlabel("Epoch")
    fig.tight_layout()
    output_dir.mkdir(parents=True, exist_ok=True)
    plot_path = output_dir / "metric_trajectories.png"
    fig.savefig(plot_path, dpi=200, bbox_inches="tight")
    plt.close(fig)
    return plot_path


def save_run_artifacts(result: SocietyResult, run_directory: Path, run_id: str) -> Dict[str, str]:
    """Write the tabular and JSON artefacts for one completed run."""
    run_directory.mkdir(parents=True, exist_ok=True)
    paths = {
        "metrics": run_directory / "metrics.csv",
        "events": run_directory / "events.csv",
        "agents": run_directory / "final_agents.pkl",
        "result": run_directory / "result.json",
    }
    result.metrics_frame().to_csv(paths["metrics"], index=False)
    result.events_frame().to_csv(paths["events"], index=False)
    agents_df = result.agents_frame()
    agents_df["run_id"] = run_id
    agents_df.to_pickle(paths["agents"])
    with paths["result"].open("w", encoding="utf-8") as handle:
        json.dump(result.to_dict(), handle, indent=2, default=float)
    return {name: str(path) for name, path in paths.items()}


def run_society_simulation(
    config: SocietyConfig,
    results_dir: str,
    run_id: str,
    *,
    animated: bool = False,
    round_log_interval: int = 1,
    plot: bool = False,
    human_policy: str = "reciprocate",
    cli_args: Optional[Dict[str, Any]] = None,
    preset_metadata: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """
    Execute one run, streaming frames into the round log, and persist its
    artefacts under ``results_dir/run_id``.
    """
    run_directory = Path(results_dir).expanduser() / run_id
    run_directory.mkdir(parents=True, exist_ok=True)
    engine = SocietyEngine(config, human_decider=scripted_human_decider(human_policy))
    logger = RoundLogger(run_directory / "run_log.jsonl", run_id, interval=round_log_interval)

    print(f"[{run_id}] Starting simulation (seed={engine.seed})...")
    for frame in engine.run_animated():
        logger.log_frame(frame)
        if animated:
            _print_frame(run_id, frame)
        elif frame.epoch_complete:
            metrics = frame.metrics
            print(
                f"[{run_id}] Epoch {frame.epoch}: alive={metrics.alive_count}, "
                f"trust={metrics.average_trust:.3f}, coop={metrics.cooperation_rate:.0%}, "
                f"events={len(frame.events)}"
            )
    result = engine.result()

    paths = save_run_artifacts(result, run_directory, run_id)
    paths["round_log"] = str(logger.path)
    paths["config_snapshot"] = str(
        _persist_config_snapshot(run_directory, engine.config, engine.seed, cli_args, preset_metadata)
    )
    if plot:
        plot_path = _plot_metric_trajectories(result.metrics_frame(), run_directory / "figures")
        if plot_path is not None:
            paths["plot"] = str(plot_path)
    print(f"[{run_id}] Simulation finished.")
    return {
        "run_id": run_id,
        "status": engine.status.value,
        "seed": engine.seed,
        "results_dir": str(run_directory),
        "paths": paths,
        "result": result,
    }


def run_replicates(
    base_config: SocietyConfig,
    runs: int,
    results_dir: str,
    run_id: str,
    **run_kwargs: Any,
) -> Dict[str, Any]:
    """Run ``runs`` replicates with consecutive seeds and summarise their final metrics."""
    summaries = []
    rows = []
    for index in range(runs):
        config = copy.deepcopy(base_config)
        if config.RANDOM_SEED is not None:
            config.RANDOM_SEED = int(config.RANDOM_SEED) + index
        replicate_id = f"{run_id}_{index}" if runs > 1 else run_id
        summary = run_society_simulation(config, results_dir, replicate_id, **run_kwargs)
        summaries.append(summary)
        final = summary["result"].final_metrics
        row = {"run_id": replicate_id, "seed": summary["seed"], "status": summary["status"]}
        if final is not None:
            metrics = final.to_dict()
            metrics.pop("strategy_distribution", None)
            row.update(metrics)
        rows.append(row)

    summary_path = Path(results_dir).expanduser() / "summary.csv"
    summary_path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows).to_csv(summary_path, index=False)
    return {"results_directory": str(Path(results_dir).expanduser()), "runs": summaries,
            "summary_csv": str(summary_path)}


def _parse_cli_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Society ABM trust-society simulation launcher")
    parser.add_argument(
        "--preset",
        help="Apply a built-in scenario preset (see --list-presets).",
    )
    parser.add_argument(
        "--preset-file",
        help="Load a scenario preset from a JSON file with an 'overrides' dictionary.",
    )
    parser.add_argument(
        "--list-presets",
        action="store_true",
        help="List the built-in scenario presets and exit.",
    )
    parser.add_argument("--epochs", type=int, help="Override N_EPOCHS.")
    parser.add_argument("--rounds", type=int, help="Override ROUNDS_PER_EPOCH.")
    parser.add_argument("--agents", type=int, help="Override N_AGENTS.")
    parser.add_argument("--seed", type=int, help="Override RANDOM_SEED.")
    parser.add_argument(
        "--topology",
        choices=list(INTERACTION_TOPOLOGIES),
        help="Override INTERACTION_TOPOLOGY.",
    )
    parser.add_argument(
        "--runs",
        type=int,
        default=1,
        help="Number of replicate runs with consecutive seeds (default: 1).",
    )
    parser.add_argument(
        "--human-policy",
        choices=list(HUMAN_POLICIES),
        default="reciprocate",
        help="Scripted policy used for human seats (default: reciprocate).",
    )
    parser.add_argument(
        "--animated",
        action="store_true",
        help="Print every round frame instead of one line per epoch.",
    )
    parser.add_argument(
        "--results-dir",
        default="society_results",
        help="Directory for generated artefacts (default: society_results).",
    )
    parser.add_argument(
        "--run-id",
        help="Run identifier used for the output sub-directory.",
    )
    parser.add_argument(
        "--round-log-interval",
        type=int,
        default=1,
        help="Write every Nth round to run_log.jsonl; epoch boundaries are always written.",
    )
    parser.add_argument(
        "--dump-config",
        help="Write the resolved configuration to this JSON path.",
    )
    parser.add_argument(
        "--plot",
        action="store_true",
        help="Save a matplotlib figure of the metric trajectories.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        metavar="KEY=VALUE",
        help="Override any config attribute (repeatable; dotted keys update dict entries).",
    )
    return parser.parse_args(args=list(argv) if argv is not None else None)


def run_cli(
    base_config: Optional[SocietyConfig] = None,
    argv: Optional[Iterable[str]] = None,
) -> Optional[Dict[str, Any]]:
    """
    Parse CLI arguments and run the requested simulation.
    Returns the run summary dictionary (if any), allowing programmatic reuse.
    """
    args = _parse_cli_args(argv)
    if args.list_presets:
        _print_preset_catalog()
        return None

    base_cfg = copy.deepcopy(base_config or SocietyConfig())
    preset_metadata: List[Dict[str, Any]] = []
    try:
        if args.preset:
            builtin_preset = get_preset(args.preset)
            base_cfg = apply_preset(base_cfg, builtin_preset)
            preset_metadata.append(builtin_preset.to_metadata())
        if args.preset_file:
            file_preset = load_preset(args.preset_file)
            base_cfg = apply_preset(base_cfg, file_preset)
            preset_metadata.append(file_preset.to_metadata())

        overrides = _parse_overrides(args.overrides)
        for flag, key in (("epochs", "N_EPOCHS"), ("rounds", "ROUNDS_PER_EPOCH"), ("agents", "N_AGENTS"),
                          ("seed", "RANDOM_SEED"), ("topology", "INTERACTION_TOPOLOGY")):
            value = getattr(args, flag)
            if value is not None:
                overrides[key] = value
        if overrides:
            base_cfg = base_cfg.copy_with_overrides(overrides)
        else:
            base_cfg.validate()
    except (FileNotFoundError, ValueError, KeyError) as exc:
        # ConfigurationError is a ValueError
        print(f"[CLI] Configuration error: {exc}")
        return None
    if args.runs < 1:
        print("[CLI] Configuration error: --runs must be at least 1")
        return None

    run_id = args.run_id or f"society_run_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
    print("[CLI] Society ABM launcher starting")
    if preset_metadata:
        applied = ", ".join(meta["name"] for meta in preset_metadata)
        print(f"[CLI] Scenario presets applied: {applied}")
    print(
        f"[CLI] Agents={base_cfg.N_AGENTS}, epochs={base_cfg.N_EPOCHS}, "
        f"rounds/epoch={base_cfg.ROUNDS_PER_EPOCH}, topology={base_cfg.INTERACTION_TOPOLOGY}"
    )
    if args.seed is not None:
        print(f"[CLI] Random seed override: {args.seed}")

    if args.dump_config:
        _write_config_dump(base_cfg, args.dump_config)

    try:
        result = run_replicates(
            base_cfg,
            args.runs,
            args.results_dir,
            run_id,
            animated=args.animated,
            round_log_interval=args.round_log_interval,
            plot=args.plot,
            human_policy=args.human_policy,
            cli_args=vars(args),
            preset_metadata=preset_metadata,
        )
    except ConfigurationError as exc:
        print(f"[CLI] Configuration error: {exc}")
        return None

    print(f"[CLI] Results directory: {result['results_directory']}")
    print(f"[CLI] Run summary: {result['summary_csv']}")
    print("[CLI] Task completed.")
    return result


def main(argv: Optional[Iterable[str]] = None) -> None:  # pragma: no cover - thin wrapper
    run_cli(argv=argv)


if __name__ == "__main__":  # pragma: no cover
    main()


__all__ = [
    "run_cli",
    "run_society_simulation",
    "run_replicates",
    "save_run_artifacts",
    "scripted_human_decider",
    "RoundLogger",
]
