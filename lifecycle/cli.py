"""
Ephemera — Operator CLI

Usage:
    # Submit intents (waits for reconciliation unless --no-wait)
    python -m lifecycle.cli deploy 1234
    python -m lifecycle.cli restart 1234 --generation 7
    python -m lifecycle.cli cleanup 1234

    # Inspect
    python -m lifecycle.cli status 1234
    python -m lifecycle.cli list [--state active]
    python -m lifecycle.cli history 1234
    python -m lifecycle.cli stats

    # Propose cleanup for closed/idle environments once
    python -m lifecycle.cli sweep

    # Run the HTTP surface and the periodic sweeper
    python -m lifecycle.cli serve --port 8080
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from infra.config import load_config
from infra.logging import configure_logging
from lifecycle.runtime import ControlPlane
from lifecycle.types import EnvironmentState, IntentAction


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _banner(title: str) -> None:
    print(f"\n{'═' * 60}", file=sys.stderr)
    print(f"  {title}", file=sys.stderr)
    print(f"{'═' * 60}", file=sys.stderr, flush=True)


def cmd_intent(args, plane: ControlPlane) -> int:
    action = IntentAction(args.command)
    _banner(f"{action.value.upper()}: {args.environment_id}")
    result = plane.submit(
        args.environment_id, action,
        source=args.source,
        submitted_generation=args.generation,
    )
    if not result.accepted:
        print(f"  ✗ rejected: {result.reason}", file=sys.stderr)
        return 1
    print(f"  {result.status.value}: {result.intent_id}", file=sys.stderr)
    if args.no_wait:
        _print_json(result.to_dict())
        return 0

    if not plane.wait_idle(args.timeout):
        print(f"  ✗ still reconciling after {args.timeout:.0f}s", file=sys.stderr)
        return 2

    outcomes = plane.dispatcher.recent_results(args.environment_id)
    last = outcomes[-1] if outcomes else None
    if last is not None:
        print(f"  outcome: {last.outcome.value}"
              + (f" ({last.reason})" if last.reason else ""), file=sys.stderr)
    env = plane.get(args.environment_id)
    _print_json(env.to_dict() if env else (last.to_dict() if last else {}))
    return 0 if last is None or last.ok else 1


def cmd_status(args, plane: ControlPlane) -> int:
    env = plane.get(args.environment_id)
    if env is None:
        print(f"Error: environment does not exist: {args.environment_id}", file=sys.stderr)
        return 1
    _print_json(env.to_dict())
    return 0


def cmd_list(args, plane: ControlPlane) -> int:
    envs = plane.list(state=args.state)
    if not envs:
        print("  No environments.", file=sys.stderr)
    for env in envs:
        print(f"  {env.id:<20s} {env.state.value:<13s} gen={env.generation:<4d} "
              f"{'closed' if env.closed else ''}", file=sys.stderr)
    _print_json([e.to_dict() for e in envs])
    return 0


def cmd_history(args, plane: ControlPlane) -> int:
    entries = plane.history(args.environment_id)
    if not entries:
        print(f"Error: no history for {args.environment_id}", file=sys.stderr)
        return 1
    _print_json(entries)
    return 0


def cmd_sweep(args, plane: ControlPlane) -> int:
    proposals = plane.sweep()
    print(f"  {len(proposals)} cleanup(s) proposed", file=sys.stderr)
    if proposals and not args.no_wait:
        plane.wait_idle(args.timeout)
    _print_json([p.to_dict() for p in proposals])
    return 0


def cmd_stats(args, plane: ControlPlane) -> int:
    _print_json(plane.stats())
    return 0


def cmd_serve(args, plane: ControlPlane) -> int:
    import uvicorn
    from api.server import create_app

    plane.start()
    try:
        uvicorn.run(create_app(plane=plane), host=args.host, port=args.port)
    finally:
        plane.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ephemera — preview environment control plane",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default=None,
                        help="Config YAML (default: EPHEMERA_CONFIG_PATH or ./ephemera.yaml)")
    parser.add_argument("--env", default="",
                        help="Config overlay profile (config/<env>.yaml)")

    subs = parser.add_subparsers(dest="command", help="Command")

    for action in IntentAction:
        p = subs.add_parser(action.value, help=f"Submit a {action.value} intent")
        p.add_argument("environment_id")
        p.add_argument("--generation", type=int, default=None,
                       help="Generation you last observed (conflict check)")
        p.add_argument("--source", default="manual",
                       choices=["manual", "automatic", "sweeper"])
        p.add_argument("--no-wait", action="store_true")
        p.add_argument("--timeout", type=float, default=600.0)

    p = subs.add_parser("status", help="Show one environment")
    p.add_argument("environment_id")

    p = subs.add_parser("list", help="List environments")
    p.add_argument("--state", choices=[s.value for s in EnvironmentState])

    p = subs.add_parser("history", help="Show an environment's audit trail")
    p.add_argument("environment_id")

    p = subs.add_parser("sweep", help="Propose cleanup for closed or idle environments")
    p.add_argument("--no-wait", action="store_true")
    p.add_argument("--timeout", type=float, default=600.0)

    subs.add_parser("stats", help="Show counts per state and dispatcher stats")

    p = subs.add_parser("serve", help="Run the HTTP API and periodic sweeper")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8080)

    return parser


_COMMANDS = {
    "deploy": cmd_intent,
    "restart": cmd_intent,
    "cleanup": cmd_intent,
    "status": cmd_status,
    "list": cmd_list,
    "history": cmd_history,
    "sweep": cmd_sweep,
    "stats": cmd_stats,
    "serve": cmd_serve,
}


def main(argv: list[str] | None = None, plane: ControlPlane | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help(sys.stderr)
        return 1

    owns_plane = plane is None
    if plane is None:
        config = load_config(base_path=args.config, env=args.env)
        configure_logging(level=str((config.get("logging") or {}).get("level", "INFO")))
        plane = ControlPlane.from_config(config)

    try:
        return _COMMANDS[args.command](args, plane)
    finally:
        if owns_plane and args.command != "serve":
            plane.stop()


if __name__ == "__main__":
    sys.exit(main())
