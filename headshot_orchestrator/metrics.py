"""
MetricsExporter — pluggable export of per-provider health and spend.
====================================================================
Built-in exporters:
  ConsoleExporter    — one row per provider on stdout
  JSONExporter       — provider stats written to a JSON file
  PrometheusExporter — gauges labelled by provider, textfile-collector format

Usage:
    exporter = PrometheusExporter(output_file="/var/lib/node_exporter/headshots.prom")
    exporter.export(orch.metrics())

The metrics dict shape (produced by Orchestrator.metrics()):
{
    "fal": {
        "status": "online",
        "status_weight": 0,
        "success_rate": 1.0,
        "p50_ms": 210.0,
        "p95_ms": 480.0,
        "consecutive_failures": 0,
        "calls": 12,
        "failures": 1,
        "spend_usd": 0.3,
        "disabled": False,
    },
    ...
}
"""
from __future__ import annotations

import json
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional


class MetricsExporter(ABC):
    """Receives a metrics dict keyed by provider id and delivers it somewhere."""

    @abstractmethod
    def export(self, metrics: dict) -> None:
        ...


# ─────────────────────────────────────────────────────────────────────────────
# ConsoleExporter
# ─────────────────────────────────────────────────────────────────────────────

_CONSOLE_COLS = [
    ("provider",   12),
    ("status",      9),
    ("success%",    9),
    ("p50_ms",      9),
    ("p95_ms",      9),
    ("calls",       6),
    ("failures",    9),
    ("spend_usd",  11),
]


def _ms(value) -> str:
    return "-" if value is None else f"{value:.1f}"


class ConsoleExporter(MetricsExporter):
    """
    Prints a fixed-width ASCII table to stdout.

    Example output:
        provider      status     success%   p50_ms     p95_ms     calls   failures   spend_usd
        ──────────────────────────────────────────────────────────────────────────────────────
        fal           online      100.00%     210.0      480.0      12          1      0.3000
    """

    def export(self, metrics: dict) -> None:
        header = "  ".join(name.ljust(width) for name, width in _CONSOLE_COLS)
        print(header)
        print("─" * len(header))
        for provider, stats in sorted(metrics.items()):
            status = stats.get("status", "?")
            if stats.get("disabled"):
                status += "*"
            print("  ".join([
                provider[:12].ljust(12),
                status.ljust(9),
                f"{stats.get('success_rate', 0) * 100:.2f}%".rjust(9),
                _ms(stats.get("p50_ms")).rjust(9),
                _ms(stats.get("p95_ms")).rjust(9),
                str(stats.get("calls", 0)).rjust(6),
                str(stats.get("failures", 0)).rjust(9),
                f"{stats.get('spend_usd', 0):.4f}".rjust(11),
            ]))


# ─────────────────────────────────────────────────────────────────────────────
# JSONExporter
# ─────────────────────────────────────────────────────────────────────────────

class JSONExporter(MetricsExporter):
    """Overwrites ``path`` with the metrics dict on each call."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def export(self, metrics: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as fh:
            json.dump(metrics, fh, indent=2, default=str)


# ─────────────────────────────────────────────────────────────────────────────
# PrometheusExporter
# ─────────────────────────────────────────────────────────────────────────────

_PROMETHEUS_METRICS: list[tuple[str, str, str]] = [
    # (key_in_stats,          prometheus_metric_name,                      help_text)
    ("status_weight",         "headshots_provider_status",                 "0 online, 1 degraded, 2 offline"),
    ("success_rate",          "headshots_provider_probe_success_rate",     "Probe success rate over the health window (0-1)"),
    ("p95_ms",                "headshots_provider_probe_latency_p95_ms",   "p95 probe latency in ms"),
    ("consecutive_failures",  "headshots_provider_consecutive_failures",   "Consecutive failed probes"),
    ("calls",                 "headshots_provider_calls_total",            "Provider calls made by the orchestrator"),
    ("failures",              "headshots_provider_call_failures_total",    "Provider calls that ended in a classified error"),
    ("spend_usd",             "headshots_provider_spend_usd",              "Settled spend in USD"),
]


def _sanitize_label(value: str) -> str:
    return value.replace("-", "_").replace(".", "_")


class PrometheusExporter(MetricsExporter):
    """
    Prometheus text exposition format, one gauge family per stat with a
    ``provider`` label. Writes to stdout or to a textfile-collector path.
    """

    def __init__(self, output_file: Optional[str | Path] = None) -> None:
        self._output_file: Optional[Path] = Path(output_file) if output_file else None

    def export(self, metrics: dict) -> None:
        lines: list[str] = []
        for stat_key, metric_name, help_text in _PROMETHEUS_METRICS:
            lines.append(f"# HELP {metric_name} {help_text}")
            lines.append(f"# TYPE {metric_name} gauge")
            for provider, stats in sorted(metrics.items()):
                value = stats.get(stat_key)
                if value is None:
                    continue
                lines.append(f'{metric_name}{{provider="{_sanitize_label(provider)}"}} {value}')
        content = "\n".join(lines) + "\n"

        if self._output_file is not None:
            self._output_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._output_file, "w", encoding="utf-8") as fh:
                fh.write(content)
        else:
            sys.stdout.write(content)
