"""
Agent Fabric CLI - Inspect and exercise the runtime layer.

Commands:
- agent-fabric check           - Probe every backend
- agent-fabric status          - Initialize and show system status
- agent-fabric run <command>   - Run one command in a throwaway agent
- agent-fabric sweep           - Remove leftovers from a previous process
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agent_fabric.config import FabricConfig, set_fabric_config
from agent_fabric.container import ContainerBackend
from agent_fabric.errors import FabricError
from agent_fabric.manager import RuntimeManager
from agent_fabric.models import AgentConfig, CommandOptions
from agent_fabric.tmux import TmuxBackend

app = typer.Typer(
    name="agent-fabric",
    help="Agent Fabric - Isolated runtimes for agent teams",
    add_completion=False,
)
console = Console()
logger = logging.getLogger("fabric.cli")

_state: dict[str, Any] = {"config": None}


@app.callback()
def setup(
    config_file: Path = typer.Option(None, "--config", "-c", help="YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Configure logging and load configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    config = FabricConfig.from_file(config_file) if config_file else FabricConfig()
    set_fabric_config(config)
    _state["config"] = config


def _config() -> FabricConfig:
    return _state["config"] or FabricConfig()


def _mark(value: bool) -> str:
    return "[green]✓[/green]" if value else "[red]✗[/red]"


@app.command()
def check() -> None:
    """Show availability and capabilities of each backend."""

    async def run_check() -> None:
        manager = RuntimeManager(_config())
        table = Table(title="Runtimes")
        table.add_column("Runtime", style="cyan")
        table.add_column("Available")
        table.add_column("Isolation")
        table.add_column("Hard limits")
        table.add_column("Network isolation")
        table.add_column("Max agents", justify="right")
        table.add_column("Requirements")

        for backend in manager.registry.all_backends():
            info = await manager.check_runtime_requirements(backend.name)
            caps = info["capabilities"]
            table.add_row(
                backend.name,
                _mark(info["available"]),
                caps["isolation_level"],
                _mark(caps["has_hard_resource_limits"]),
                _mark(caps["supports_network_isolation"]),
                str(caps["max_concurrent_agents"]),
                "\n".join(info["requirements"]),
            )
        console.print(table)

    asyncio.run(run_check())


@app.command()
def status(
    runtime: str = typer.Option(None, "--runtime", "-r", help="Runtime preference"),
) -> None:
    """Initialize the runtime layer and show system status."""

    async def run_status() -> None:
        manager = RuntimeManager(_config())
        try:
            await manager.initialize(runtime)
            info = await manager.get_system_status()
        finally:
            await manager.shutdown()

        host = info["host"]
        console.print(Panel(
            f"[bold]Active runtime:[/bold] {info['active_runtime']}\n"
            f"[bold]Preference:[/bold] {info['preference']}\n"
            f"[bold]Available:[/bold] {', '.join(info['available_runtimes'])}\n\n"
            f"[bold]Host:[/bold] {host['platform']} / Python {host['python_version']}\n"
            f"[bold]CPUs:[/bold] {host['cpu_count']}  "
            f"[bold]Memory used:[/bold] {host['memory_percent']}%",
            title="Agent Fabric Status",
        ))
        for name, stats in info["runtimes"].items():
            console.print(
                f"  {_mark(name == info['active_runtime'])} {name}: "
                f"{stats['total_agents']} agents, {stats['total_teams']} teams"
            )

    try:
        asyncio.run(run_status())
    except FabricError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


@app.command()
def run(
    command: str = typer.Argument(..., help="Shell command to run"),
    agent_file: Path = typer.Option(None, "--agent", "-a", help="YAML agent config"),
    agent_type: str = typer.Option("generic", "--type", "-t", help="Agent archetype"),
    runtime: str = typer.Option(None, "--runtime", "-r", help="Runtime preference"),
    timeout: float = typer.Option(None, "--timeout", help="Command timeout in seconds"),
    agent_id: str = typer.Option("cli-agent", "--id", help="Agent id"),
) -> None:
    """Create a throwaway agent, run one command in it, then destroy it."""

    async def run_once() -> int:
        config = AgentConfig.from_file(agent_file) if agent_file else AgentConfig(agent_type=agent_type)
        manager = RuntimeManager(_config())
        try:
            backend = await manager.initialize(runtime)
            console.print(f"[dim]Runtime: {backend.name}[/dim]")
            session = await manager.create_agent(config.agent_id or agent_id, config)
            for warning in session.warnings:
                console.print(f"[yellow]warning:[/yellow] {warning}")

            result = await manager.execute_command(
                session.agent_id, command, CommandOptions(timeout=timeout)
            )
            if result.stdout:
                console.print(result.stdout, end="", markup=False, highlight=False)
            if result.stderr:
                console.print(f"[red]{result.stderr}[/red]", end="")
            console.print(f"[dim]exit {result.exit_code} in {result.duration:.2f}s[/dim]")
            return result.exit_code
        finally:
            await manager.shutdown()

    try:
        code = asyncio.run(run_once())
    except FabricError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    raise typer.Exit(code)


@app.command()
def sweep() -> None:
    """Remove tmux sessions and labelled containers left by a previous process."""

    async def run_sweep() -> None:
        config = _config()
        for backend in (ContainerBackend(config), TmuxBackend(config)):
            if not await backend.check_availability():
                console.print(f"  {_mark(False)} {backend.name}: not available")
                continue
            removed = await backend.sweep_orphans()
            console.print(f"  {_mark(True)} {backend.name}: removed {len(removed)}")
            for name in removed:
                console.print(f"      {name}")

    asyncio.run(run_sweep())


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
