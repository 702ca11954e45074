"""
MeshCore CLI entry point.
Operator tooling for the rail node coordination core.

Usage:
    meshcore validate --config node.yaml               # Validate a node config
    meshcore status   --config node.yaml               # Show the assembled node
    meshcore simulate --agents 8 --ticks 300           # Run a local coherence simulation
    meshcore route    --agents 4 --messages 50         # Sample routing decisions
"""

import argparse
import logging
import math
import os
import random
import sys

import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from meshcore.config import MeshConfig, load_config, validate_mesh_config
from meshcore.node import MeshNode
from meshcore.observer import Observer
from meshcore.routing import Message, RoutingCandidate
from meshcore.vectors import deterministic_embedding

logger = logging.getLogger("MeshCore.CLI")

_SIM_DIM = 32


def _load(config_path) -> MeshConfig:
    if not config_path:
        return MeshConfig()
    return load_config(config_path)


def _make_observers(count: int, rng: random.Random):
    return [
        Observer(
            id=f"agent-{i}",
            name=f"Agent {i}",
            frequency=1.0,
            phase=rng.uniform(0.0, 2 * math.pi),
        )
        for i in range(count)
    ]


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def cmd_validate(args) -> None:
    """Validate a node config file and report every problem."""
    console = Console()
    if not os.path.exists(args.config):
        console.print(f"\n  [red]Config not found:[/] {escape(args.config)}\n")
        sys.exit(1)

    with open(args.config) as f:
        raw = yaml.safe_load(f) or {}
    ok, errors = validate_mesh_config(raw)

    console.print(f"\n[bold cyan]  MeshCore Validate[/] -- {escape(args.config)}\n")
    if ok:
        console.print("  [green]No issues found![/]\n")
        return
    for msg in errors:
        console.print(f"  [red]\\[E][/red]  {escape(msg)}")
    console.print(f"\n  [bold]{len(errors)} error(s)[/]\n")
    sys.exit(1)


def cmd_status(args) -> None:
    """Assemble a node from config and print its subsystem summary."""
    console = Console()
    node = MeshNode(_load(args.config))
    status = node.status()

    table = Table(title=f"Mesh node {node.node_id}", show_header=True, box=None, padding=(0, 1))
    table.add_column("Subsystem", style="bold")
    table.add_column("Setting")
    table.add_column("Value", style="cyan")
    table.add_row("coherence", "coupling", f"{node.coherence.get_coupling_strength():.2f}")
    table.add_row("", "threshold", f"{node.coherence.config.coherence_threshold:.2f}")
    table.add_row("router", "temperature", f"{status['temperature']:.3f}")
    table.add_row("", "schedule", node.router.config.annealing_schedule)
    table.add_row("gossip", "max basins", str(node.distributed.config.max_basins))
    table.add_row("", "basins", str(status["basins"]["basin_count"]))
    table.add_row("absorption", "alignment threshold", f"{node.absorption.config.alignment_threshold:.2f}")
    table.add_row("models", "registered", ", ".join(m.id for m in node.models.list_all()))
    console.print()
    console.print(table)
    console.print()


def cmd_simulate(args) -> None:
    """Tick a local swarm of oscillators and print the coherence trajectory."""
    console = Console()
    config = _load(args.config)
    rng = random.Random(args.seed)
    node = MeshNode(config, rng=rng)
    for observer in _make_observers(args.agents, rng):
        node.add_agent(observer)

    dt_s = config.coherence.dt_ms / 1000.0
    every = max(1, args.ticks // 10)

    console.print(
        f"\n[bold cyan]  MeshCore Simulate[/] -- {args.agents} agents, "
        f"K={node.coherence.get_coupling_strength():.2f}, dt={dt_s * 1000:.0f} ms\n"
    )
    table = Table(show_header=True, box=None, padding=(0, 1))
    table.add_column("Tick", justify="right")
    table.add_column("Coherence", justify="right")
    table.add_column("Intervention")

    table.add_row("0", f"{node.coherence.get_coherence():.3f}", "")
    interventions = 0
    for tick in range(1, args.ticks + 1):
        result = node.tick(dt_s=dt_s)
        flagged = node.coherence.intervention_count > interventions
        interventions = node.coherence.intervention_count
        if tick % every == 0 or flagged:
            table.add_row(str(tick), f"{result.coherence:.3f}", "[yellow]forced sync[/]" if flagged else "")
    console.print(table)

    stats = node.coherence.get_stats()
    console.print(
        f"\n  [bold]final {stats.current:.3f}[/]  mean {stats.mean:.3f}  "
        f"min {stats.min:.3f}  max {stats.max:.3f}\n"
    )


def cmd_route(args) -> None:
    """Route synthetic messages across synthetic agents and tally the choices."""
    console = Console()
    if args.agents < 1:
        console.print("\n  [red]--agents must be at least 1[/]\n")
        sys.exit(1)
    config = _load(args.config)
    if args.temperature is not None:
        config.router.temperature = args.temperature
    rng = random.Random(args.seed)
    node = MeshNode(config, rng=rng)

    candidates = [
        RoutingCandidate(
            observer=observer,
            load=rng.random(),
            coherence=rng.random(),
            attractor=deterministic_embedding(observer.id, _SIM_DIM),
        )
        for observer in _make_observers(args.agents, rng)
    ]
    tally = {c.agent_id: 0 for c in candidates}
    for i in range(args.messages):
        topic = candidates[i % len(candidates)].agent_id
        message = Message(id=f"msg-{i}", embedding=deterministic_embedding(topic, _SIM_DIM))
        tally[node.route(message, candidates).id] += 1

    table = Table(title="Routing decisions", show_header=True, box=None, padding=(0, 1))
    table.add_column("Agent", style="bold")
    table.add_column("Load", justify="right")
    table.add_column("Coherence", justify="right")
    table.add_column("Messages", justify="right", style="cyan")
    for cand in candidates:
        table.add_row(cand.agent_id, f"{cand.load:.2f}", f"{cand.coherence:.2f}", str(tally[cand.agent_id]))
    console.print()
    console.print(table)
    console.print(f"\n  [dim]final temperature {node.router.get_temperature():.4f}[/]\n")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meshcore",
        description="MeshCore - coordination core for rail nodes",
        epilog=(
            "Examples:\n"
            "  meshcore validate --config node.yaml\n"
            "  meshcore simulate --agents 12 --ticks 600\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    # meshcore validate
    p_validate = sub.add_parser("validate", help="Validate a node config file")
    p_validate.add_argument("--config", default="node.yaml", help="Node config file")

    # meshcore status
    p_status = sub.add_parser("status", help="Show the node assembled from a config")
    p_status.add_argument("--config", default=None, help="Node config file (defaults if omitted)")

    # meshcore simulate
    p_sim = sub.add_parser("simulate", help="Run a local Kuramoto coherence simulation")
    p_sim.add_argument("--config", default=None, help="Node config file (defaults if omitted)")
    p_sim.add_argument("--agents", type=int, default=8, help="Number of oscillators")
    p_sim.add_argument("--ticks", type=int, default=300, help="Number of ticks")
    p_sim.add_argument("--seed", type=int, default=None, help="Random seed")

    # meshcore route
    p_route = sub.add_parser("route", help="Sample thermodynamic routing decisions")
    p_route.add_argument("--config", default=None, help="Node config file (defaults if omitted)")
    p_route.add_argument("--agents", type=int, default=4, help="Number of candidate agents")
    p_route.add_argument("--messages", type=int, default=50, help="Number of messages")
    p_route.add_argument("--temperature", type=float, default=None, help="Override router temperature")
    p_route.add_argument("--seed", type=int, default=None, help="Random seed")

    return parser


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )
    logger.debug("meshcore %s", args.command or "(no command)")

    commands = {
        "validate": cmd_validate,
        "status": cmd_status,
        "simulate": cmd_simulate,
        "route": cmd_route,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
