from __future__ import annotations

import argparse
import json
import re
from pathlib import Path
from typing import Any, Optional, Sequence


ENTRY_RE = re.compile(r"^\[(?P<ts>[^\]]+)\]\s+stage=(?P<stage>\S+)\s+meta=(?P<meta>\{.*\})$")


def _percentile(values: list[float], pct: float) -> float:
    """Linear-interpolated percentile; 0.0 for an empty series."""
    if not values:
        return 0.0
    ordered = sorted(values)
    position = (len(ordered) - 1) * pct / 100.0
    below = int(position)
    above = min(below + 1, len(ordered) - 1)
    fraction = position - below
    return ordered[below] + (ordered[above] - ordered[below]) * fraction


def _format_latency(values: list[float]) -> str:
    if not values:
        return "n/a"
    mean = sum(values) / len(values)
    return (
        f"avg={mean:.2f}ms p50={_percentile(values, 50):.2f}ms "
        f"p95={_percentile(values, 95):.2f}ms n={len(values)}"
    )


def _format_rate(count: int, total: int) -> str:
    if total <= 0:
        return "n/a"
    return f"{100.0 * count / total:.1f}% ({count}/{total})"


def parse_log(path: Path) -> dict[str, Any]:
    completed_latencies: list[float] = []
    cancelled_latencies: list[float] = []
    stop_reasons: dict[str, int] = {}
    started = 0
    failed = 0
    committed = 0

    for line in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        match = ENTRY_RE.match(line.strip())
        if not match:
            continue
        stage = match.group("stage")
        try:
            meta = json.loads(match.group("meta"))
        except json.JSONDecodeError:
            meta = {}

        if stage == "narrative_generation_start":
            started += 1
            continue
        if stage != "narrative_generation_end":
            continue

        status = str(meta.get("status", "")).strip().lower()
        elapsed = float(meta.get("elapsed_ms", 0.0) or 0.0)
        if status == "generation_error":
            failed += 1
            continue
        if bool(meta.get("committed", False)):
            committed += 1
        reason = str(meta.get("stop_reason", "") or "unknown")
        stop_reasons[reason] = stop_reasons.get(reason, 0) + 1
        if elapsed > 0:
            if status == "cancelled":
                cancelled_latencies.append(elapsed)
            else:
                completed_latencies.append(elapsed)

    finished = len(completed_latencies) + len(cancelled_latencies) + failed
    return {
        "started": started,
        "finished": finished,
        "failed": failed,
        "committed": committed,
        "completed_latencies": completed_latencies,
        "cancelled_latencies": cancelled_latencies,
        "stop_reasons": stop_reasons,
    }


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Summarize narrative generation timings from the narrative debug log"
    )
    parser.add_argument(
        "--log-path",
        default="/tmp/therapydocs_narrative_raw.log",
        help="Path to the narrative debug log (default: /tmp/therapydocs_narrative_raw.log)",
    )
    parser.add_argument(
        "--list-latencies",
        action="store_true",
        help="Print each completed-generation latency in addition to the summary.",
    )
    args = parser.parse_args(argv)

    path = Path(args.log_path).expanduser()
    if not path.exists():
        raise SystemExit(f"log file not found: {path}")

    stats = parse_log(path)

    print(f"log_path: {path}")
    print(f"generations_started: {stats['started']}")
    print(f"completed_latency: {_format_latency(stats['completed_latencies'])}")
    print(f"cancelled_latency: {_format_latency(stats['cancelled_latencies'])}")
    print("failure_rate: " + _format_rate(stats["failed"], stats["finished"]))
    print("commit_rate: " + _format_rate(stats["committed"], stats["finished"]))
    reasons = ", ".join(f"{key}={value}" for key, value in sorted(stats["stop_reasons"].items()))
    print(f"stop_reasons: {reasons or 'n/a'}")

    if args.list_latencies:
        print(
            "completed_latency_values_ms:",
            ", ".join(f"{v:.2f}" for v in stats["completed_latencies"]) or "n/a",
        )


if __name__ == "__main__":
    main()
