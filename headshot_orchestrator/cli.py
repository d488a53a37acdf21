"""
CLI entry point for operators.

Usage:
    python -m headshot_orchestrator estimate --count 4 --model-class premium
    python -m headshot_orchestrator health --format prometheus
    python -m headshot_orchestrator generate --account acct_1 --key k1 \\
        --prompt "studio headshot, soft light" --count 4 --ledger ledger.db
    python -m headshot_orchestrator ledger --db ledger.db --account acct_1
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from decimal import Decimal
from typing import Optional

from .config import OrchestratorConfig, default_config, load_config
from .cost import CostModel
from .engine import Orchestrator
from .errors import OrchestratorError
from .health import HealthMonitor
from .ledger import SQLiteLedger
from .metrics import ConsoleExporter, JSONExporter, MetricsExporter, PrometheusExporter
from .models import GenerationRequest, ModelClass
from .providers import build_adapters
from .selector import ProviderSelector
from .tracing import TracingConfig, configure_tracing

logger = logging.getLogger("headshot_orchestrator.cli")


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,  # re-apply even if already configured
    )


def _config(args) -> OrchestratorConfig:
    return load_config(args.config) if args.config else default_config()


def _request_from_args(args) -> GenerationRequest:
    return GenerationRequest(
        account_id=getattr(args, "account", "cli"),
        idempotency_key=getattr(args, "key", "estimate"),
        prompt=getattr(args, "prompt", "estimate"),
        model_class=ModelClass(args.model_class),
        image_count=args.count,
        resolution=args.resolution,
        steps=args.steps,
        max_cost=Decimal(args.max_cost) if args.max_cost else None,
        allow_overage=getattr(args, "allow_overage", False),
        complete_or_fail=getattr(args, "complete_or_fail", False),
        allow_downgrade=getattr(args, "allow_downgrade", False),
    )


def _add_request_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--model-class", choices=[m.value for m in ModelClass], default="balanced")
    p.add_argument("--count", "-n", type=int, default=1, help="Images to generate (default: 1)")
    p.add_argument("--resolution", default="1024x1024", help="WxH (default: 1024x1024)")
    p.add_argument("--steps", type=int, default=28, help="Inference steps (default: 28)")
    p.add_argument("--max-cost", type=str, default=None, metavar="USD")


# ─────────────────────────────────────────────────────────────────────────────
# estimate
# ─────────────────────────────────────────────────────────────────────────────

def cmd_estimate(args) -> None:
    """Rank providers for a request without calling any of them."""
    config = _config(args)
    selector = ProviderSelector([p.profile() for p in config.providers],
                                config.priority, CostModel())
    request = _request_from_args(args)
    request.validate()
    candidates = selector.rank(request, {})
    if not candidates:
        print("No provider can serve this request.")
        raise SystemExit(1)
    print(f"{'provider':<12}  {'model':<30}  {'estimate_usd':>12}")
    print("─" * 58)
    for c in candidates:
        print(f"{c.provider:<12}  {c.model_id[:30]:<30}  {c.estimated_cost:>12}")


# ─────────────────────────────────────────────────────────────────────────────
# health
# ─────────────────────────────────────────────────────────────────────────────

def _exporter(fmt: str, output: Optional[str]) -> MetricsExporter:
    if fmt == "json":
        return JSONExporter(output or "headshot_metrics.json")
    if fmt == "prometheus":
        return PrometheusExporter(output_file=output)
    return ConsoleExporter()


async def _async_health(args) -> dict:
    config = _config(args)
    adapters = build_adapters(config)
    monitor = HealthMonitor(adapters, config.health)
    try:
        await monitor.probe_all()
        orch = Orchestrator(config, adapters, health=monitor)
        _exporter(args.format, args.output).export(orch.metrics())
        return monitor.system_health()
    finally:
        for adapter in adapters.values():
            await adapter.aclose()


def cmd_health(args) -> None:
    report = asyncio.run(_async_health(args))
    print(f"\nOverall: {report['overall']} "
          f"({report['online']}/{report['total']} online, {report['usable']} usable)")
    for line in report["recommendations"]:
        print(f"  - {line}")


# ─────────────────────────────────────────────────────────────────────────────
# generate
# ─────────────────────────────────────────────────────────────────────────────

async def _async_generate(args) -> dict:
    config = _config(args)
    ledger = SQLiteLedger(args.ledger) if args.ledger else None
    orch = Orchestrator.from_config(config, ledger=ledger)
    async with orch:
        handle = await orch.submit(_request_from_args(args))
        print(f"Submitted {handle.job_id}")
        result = await handle.result()
    return result.to_dict()


def cmd_generate(args) -> None:
    try:
        result = asyncio.run(_async_generate(args))
    except OrchestratorError as exc:
        print(f"Rejected: {exc}", file=sys.stderr)
        raise SystemExit(2)
    print(json.dumps(result, indent=2))
    if result["outcome"] not in ("succeeded", "partial_success"):
        raise SystemExit(1)


# ─────────────────────────────────────────────────────────────────────────────
# ledger
# ─────────────────────────────────────────────────────────────────────────────

async def _async_ledger(args) -> None:
    ledger = SQLiteLedger(args.db)
    try:
        if args.job:
            attempts = await ledger.attempts(args.job)
            if not attempts:
                print(f"No attempts recorded for {args.job}.")
            for a in attempts:
                print(f"{a.provider:<12} #{a.call_number}  {a.outcome:<20} "
                      f"{a.latency:8.2f}s  ${a.cost}  {a.detail}")
            return
        rows = await ledger.settlements(args.account)
        if not rows:
            print("No settlements recorded.")
            return
        total = sum((r.final_cost for r in rows), Decimal("0"))
        for r in rows:
            print(f"{r.job_id:<22} {r.account_id:<16} {r.outcome:<16} "
                  f"${r.final_cost}  {r.provider_used or '-'}")
        print(f"\n{len(rows)} job(s), total ${total}")
    finally:
        await ledger.close()


def cmd_ledger(args) -> None:
    asyncio.run(_async_ledger(args))


# ─────────────────────────────────────────────────────────────────────────────
# main
# ─────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Headshot Orchestrator — multi-provider image generation routing"
    )
    parser.add_argument("--config", "-c", type=str, default=None,
                        help="YAML config file (default: built-in fal/Leonardo/Replicate)")
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--tracing", action="store_true", default=False,
                        help="Print OpenTelemetry spans to the console")

    subparsers = parser.add_subparsers(dest="subcommand", metavar="SUBCOMMAND", required=True)

    ep = subparsers.add_parser("estimate", help="Rank providers and show cost estimates")
    _add_request_args(ep)
    ep.set_defaults(func=cmd_estimate)

    hp = subparsers.add_parser("health", help="Probe every provider once")
    hp.add_argument("--format", choices=["table", "json", "prometheus"], default="table")
    hp.add_argument("--output", "-o", type=str, default=None,
                    help="File for json/prometheus output (prometheus defaults to stdout)")
    hp.set_defaults(func=cmd_health)

    gp = subparsers.add_parser("generate", help="Run one generation job end to end")
    gp.add_argument("--account", required=True)
    gp.add_argument("--key", required=True, help="Idempotency key")
    gp.add_argument("--prompt", required=True)
    _add_request_args(gp)
    gp.add_argument("--allow-overage", action="store_true")
    gp.add_argument("--complete-or-fail", action="store_true")
    gp.add_argument("--allow-downgrade", action="store_true")
    gp.add_argument("--ledger", type=str, default=None, help="SQLite ledger path")
    gp.set_defaults(func=cmd_generate)

    lp = subparsers.add_parser("ledger", help="Inspect a SQLite ledger")
    lp.add_argument("--db", required=True)
    lp.add_argument("--account", default=None)
    lp.add_argument("--job", default=None, help="Show attempts for one job")
    lp.set_defaults(func=cmd_ledger)
    return parser


def main(argv: Optional[list[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    if args.tracing:
        configure_tracing(TracingConfig(enabled=True))
    args.func(args)


if __name__ == "__main__":
    main()
