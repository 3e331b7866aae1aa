from __future__ import annotations

import argparse
import csv
import json
import logging
import math
from pathlib import Path
from typing import Optional

from ..sim.core.config import SimulationConfig
from ..sim.core.world import Flock
from ..sim.types.metrics import TickMetrics

logger = logging.getLogger(__name__)

_BASIC_HEADER = [
    "tick",
    "population",
    "moves",
    "dirty_cells",
    "notifications",
    "tick_ms",
]

_DETAILED_HEADER = [
    "tick",
    "population",
    "moves",
    "out_of_range",
    "dirty_cells",
    "notifications",
    "occupied_cells",
    "avg_speed",
    "tick_ms",
    "moves_per_agent",
    "notifications_per_agent",
    "avg_agents_per_cell",
    "max_cell_occupancy",
    "tick_ms_per_agent",
]


def _format_basic_row(metrics: TickMetrics, tick_ms: float) -> list[object]:
    return [
        metrics.tick,
        metrics.population,
        metrics.moves,
        metrics.dirty_cells,
        metrics.notifications,
        f"{tick_ms:.3f}",
    ]


def _format_detailed_row(flock: Flock, metrics: TickMetrics, tick_ms: float) -> list[object]:
    population = metrics.population
    occupied = metrics.occupied_cells
    if population <= 0:
        moves_per_agent = 0.0
        notifications_per_agent = 0.0
        tick_ms_per_agent = 0.0
    else:
        moves_per_agent = metrics.moves / population
        notifications_per_agent = metrics.notifications / population
        tick_ms_per_agent = tick_ms / population
    max_cell_occupancy = max((cell.member_count for cell in flock.grid.cells()), default=0)
    avg_agents_per_cell = population / occupied if occupied > 0 else 0.0
    return [
        metrics.tick,
        population,
        metrics.moves,
        metrics.out_of_range,
        metrics.dirty_cells,
        metrics.notifications,
        occupied,
        f"{metrics.average_speed:.4f}",
        f"{tick_ms:.3f}",
        f"{moves_per_agent:.4f}",
        f"{notifications_per_agent:.4f}",
        f"{avg_agents_per_cell:.4f}",
        max_cell_occupancy,
        f"{tick_ms_per_agent:.4f}",
    ]


def _percentile(sorted_values: list[float], percentile: float) -> float:
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    pos = (len(sorted_values) - 1) * percentile
    low = int(math.floor(pos))
    high = int(math.ceil(pos))
    if low == high:
        return float(sorted_values[low])
    weight = pos - low
    return float(sorted_values[low] + (sorted_values[high] - sorted_values[low]) * weight)


def _summary_stats(values: list[float]) -> dict[str, float]:
    if not values:
        return {"min": 0.0, "max": 0.0, "avg": 0.0, "p50": 0.0, "p90": 0.0, "p99": 0.0}
    sorted_values = sorted(values)
    return {
        "min": float(sorted_values[0]),
        "max": float(sorted_values[-1]),
        "avg": float(sum(values) / len(values)),
        "p50": _percentile(sorted_values, 0.50),
        "p90": _percentile(sorted_values, 0.90),
        "p99": _percentile(sorted_values, 0.99),
    }


def run_headless(
    steps: int,
    seed: Optional[int],
    log_path: Optional[Path],
    deterministic_log: bool = False,
    log_format: str = "detailed",
    summary_path: Optional[Path] = None,
    summary_window: int = 5000,
    config: Optional[SimulationConfig] = None,
) -> None:
    config = config if config is not None else SimulationConfig(initial_population=200)
    if seed is not None:
        config.seed = seed

    log_mode = log_format.lower().strip()
    if log_mode not in {"basic", "detailed"}:
        raise ValueError(f"Unknown log format: {log_format}")

    writer = None
    csv_file = None
    if log_path:
        csv_file = Path(log_path).open("w", newline="")
        writer = csv.writer(csv_file)
        writer.writerow(_DETAILED_HEADER if log_mode == "detailed" else _BASIC_HEADER)

    tick_ms_series: list[float] = []
    moves_series: list[float] = []
    dirty_series: list[float] = []
    notification_series: list[float] = []

    with Flock(config) as flock:
        logger.info("running %d steps with %d agents (seed %d)", steps, flock.population, config.seed)
        for _ in range(steps):
            metrics = flock.tick()
            tick_ms = 0.0 if deterministic_log else metrics.tick_duration_ms
            if summary_path:
                tick_ms_series.append(tick_ms)
                moves_series.append(float(metrics.moves))
                dirty_series.append(float(metrics.dirty_cells))
                notification_series.append(float(metrics.notifications))
            if writer:
                if log_mode == "detailed":
                    writer.writerow(_format_detailed_row(flock, metrics, tick_ms))
                else:
                    writer.writerow(_format_basic_row(metrics, tick_ms))
        population = flock.population

    if csv_file:
        csv_file.close()

    if summary_path:
        window = max(1, int(summary_window))
        tail_slice = slice(max(0, len(tick_ms_series) - window), len(tick_ms_series))
        summary = {
            "steps": steps,
            "seed": config.seed,
            "log_format": log_mode,
            "deterministic_log": deterministic_log,
            "population": population,
            "tick_ms": _summary_stats(tick_ms_series),
            "moves": _summary_stats(moves_series),
            "dirty_cells": _summary_stats(dirty_series),
            "notifications": _summary_stats(notification_series),
            "tail_window": {
                "window": window,
                "tick_ms": _summary_stats(tick_ms_series[tail_slice]),
                "dirty_cells": _summary_stats(dirty_series[tail_slice]),
            },
        }
        Path(summary_path).write_text(json.dumps(summary, indent=2))


def main() -> None:
    parser = argparse.ArgumentParser(description="Headless flock simulation")
    parser.add_argument("--steps", type=int, default=3000)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--config", type=Path, default=None, help="YAML simulation config")
    parser.add_argument("--log", type=Path, default=None, help="CSV file to write metrics")
    parser.add_argument(
        "--log-format",
        choices=["basic", "detailed"],
        default="detailed",
        help="CSV format to write when --log is provided.",
    )
    parser.add_argument("--summary", type=Path, default=None, help="Optional JSON file to write summary stats for the run.")
    parser.add_argument("--summary-window", type=int, default=5000, help="Tail window size (ticks) for summary stats.")
    parser.add_argument(
        "--deterministic-log",
        action="store_true",
        help="Write deterministic CSV (tick_ms is forced to 0.000 so identical seeds match).",
    )
    parser.add_argument("--log-level", default="WARNING", help="Python logging level")
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = SimulationConfig.from_yaml(args.config) if args.config else None
    run_headless(
        args.steps,
        args.seed,
        args.log,
        deterministic_log=args.deterministic_log,
        log_format=args.log_format,
        summary_path=args.summary,
        summary_window=args.summary_window,
        config=config,
    )


if __name__ == "__main__":
    main()
