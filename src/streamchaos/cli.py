# src/streamchaos/cli.py
"""CLI for the streamchaos fault-injection harness.

Usage:
    # Spawn a local 3-node cluster and run 10000 steps
    streamchaos exercise --path=/usr/local/bin/nats-server

    # Replay a schedule, pause/resume only
    streamchaos exercise --seed=1234 --no-kill

    # Soak until a violation is found
    streamchaos exercise --preset=burn_in

    # Validate an externally managed cluster
    streamchaos validate --address=10.20.20.2:4222 --address=10.20.20.3:4222

    # Write per-node cluster configs for a local run
    streamchaos confgen --servers=3

Exit status: 0 when the requested steps completed without a violation,
1 on a durability violation, 2 on setup or configuration failure, 3 when a
consumed message is not a harness payload (foreign publisher on the subject).
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Annotated, Any

import typer
import yaml

from streamchaos.broker import NatsBroker
from streamchaos.clients import ClientPool
from streamchaos.config import list_presets, load_config, resolve_seed
from streamchaos.confgen import DEFAULT_ROUTE_BASE_PORT, write_cluster_configs
from streamchaos.controller import ClusterController, RunStats
from streamchaos.core.logging import bind_run_context, clear_run_context, configure_logging
from streamchaos.errors import ClusterSetupError, DurabilityViolation, MalformedPayload
from streamchaos.lifecycle import ServerLifecycleManager
from streamchaos.types import ExerciseConfig

EXIT_VIOLATION = 1
EXIT_SETUP_FAILURE = 2
EXIT_MALFORMED_PAYLOAD = 3

app = typer.Typer(
    name="streamchaos",
    help="streamchaos: fault injection and durability validation for JetStream clusters.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        from streamchaos import __version__

        typer.echo(f"streamchaos {__version__}")
        raise typer.Exit()


def _load(
    *,
    preset: str | None,
    config_file: Path | None,
    cli_overrides: dict[str, Any],
) -> ExerciseConfig:
    """Load configuration, turning any failure into exit status 2."""
    try:
        config = load_config(preset=preset, config_file=config_file, cli_overrides=cli_overrides)
    except FileNotFoundError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_SETUP_FAILURE) from e
    except Exception as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_SETUP_FAILURE) from e
    return resolve_seed(config)


def _schedule_overrides(
    *,
    seed: int | None,
    steps: int | None,
    burn_in: bool | None,
    clients: int | None,
    replicas: int | None,
) -> dict[str, Any]:
    run: dict[str, Any] = {}
    if seed is not None:
        run["seed"] = seed
    if steps is not None:
        run["steps"] = steps
    if burn_in is not None:
        run["burn_in"] = burn_in
    cluster: dict[str, Any] = {}
    if clients is not None:
        cluster["clients"] = clients
    if replicas is not None:
        cluster["replicas"] = replicas
    overrides: dict[str, Any] = {}
    if run:
        overrides["run"] = run
    if cluster:
        overrides["cluster"] = cluster
    return overrides


def _report_success(stats: RunStats) -> None:
    typer.secho(
        f"found no correctness violations after executing {stats.steps} operations. finished.",
        fg=typer.colors.GREEN,
    )
    typer.echo(
        f"  published={stats.published} publish_failures={stats.publish_failures} "
        f"consumed={stats.consumed} consume_misses={stats.consume_misses} "
        f"restarts={stats.restarts} pauses={stats.pauses} resumes={stats.resumes}"
    )


def _report_violation(violation: DurabilityViolation) -> None:
    typer.secho(violation.report.render(), fg=typer.colors.RED, err=True)


# Shared option types
PresetOption = Annotated[
    str | None,
    typer.Option("--preset", "-p", help="Preset configuration to use. Use 'streamchaos presets' to list them."),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Path to YAML configuration file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
]
SeedOption = Annotated[int | None, typer.Option("--seed", help="Seed for replaying faults.", min=0)]
ClientsOption = Annotated[int | None, typer.Option("--clients", help="Number of concurrent clients.", min=1)]
StepsOption = Annotated[int | None, typer.Option("--steps", help="Number of steps to take.", min=0)]
ReplicasOption = Annotated[int | None, typer.Option("--replicas", help="Number of replicas for the test stream.", min=1)]
BurnInOption = Annotated[
    bool | None,
    typer.Option("--burn-in/--no-burn-in", help="Ignore steps and run until a violation is found."),
]
LogLevelOption = Annotated[str, typer.Option("--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR.")]
JsonLogsOption = Annotated[bool, typer.Option("--json-logs", help="Emit JSON log lines instead of console output.")]


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-v",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """streamchaos: fault injection and durability validation for JetStream clusters."""


@app.command()
def exercise(
    preset: PresetOption = None,
    config_file: ConfigOption = None,
    path: Annotated[str | None, typer.Option("--path", help="Path to the nats-server binary.")] = None,
    seed: SeedOption = None,
    clients: ClientsOption = None,
    servers: Annotated[int | None, typer.Option("--servers", help="Number of cluster servers.", min=1)] = None,
    steps: StepsOption = None,
    replicas: ReplicasOption = None,
    no_kill: Annotated[
        bool | None,
        typer.Option("--no-kill/--kill", help="Do not restart servers, just pause/resume them."),
    ] = None,
    burn_in: BurnInOption = None,
    log_dir: Annotated[
        Path | None,
        typer.Option("--log-dir", help="Write each server's output to <dir>/server_<i>.log.", file_okay=False),
    ] = None,
    log_level: LogLevelOption = "INFO",
    json_logs: JsonLogsOption = False,
) -> None:
    """Spawn a local cluster and inject faults while validating durability.

    Configuration precedence (highest to lowest):
    1. Command-line flags
    2. Config file (--config)
    3. Preset (--preset)
    4. Built-in defaults
    """
    configure_logging(json_output=json_logs, level=log_level)

    cli_overrides = _schedule_overrides(seed=seed, steps=steps, burn_in=burn_in, clients=clients, replicas=replicas)
    if no_kill is not None:
        cli_overrides.setdefault("run", {})["no_kill"] = no_kill
    if servers is not None:
        cli_overrides.setdefault("cluster", {})["servers"] = servers
    if path is not None:
        cli_overrides["broker"] = {"path": path}

    config = _load(preset=preset, config_file=config_file, cli_overrides=cli_overrides)

    bind_run_context(seed=config.run.seed, mode="exercise")
    typer.secho(f"Starting cluster exerciser with seed {config.run.seed}", fg=typer.colors.GREEN)
    if config.preset_name:
        typer.echo(f"  Preset: {config.preset_name}")
    typer.echo(
        f"  Servers: {config.cluster.servers}  Clients: {config.cluster.clients}  Replicas: {config.cluster.replicas}"
    )
    steps_label = "burn-in" if config.run.burn_in else str(config.run.steps)
    typer.echo(f"  Steps: {steps_label}  Restarts: {'disabled' if config.run.no_kill else 'enabled'}")

    scheduled = None if config.run.burn_in else config.run.steps
    broker = NatsBroker()
    try:
        with ServerLifecycleManager(config.broker, config.cluster.servers, log_dir=log_dir) as cluster:
            cluster.start()
            cluster.wait_until_ready()
            with ClientPool.create(
                broker,
                cluster.addresses,
                stream=config.cluster.stream,
                clients=config.cluster.clients,
                replicas=config.cluster.replicas,
            ) as pool:
                controller = ClusterController(pool, run=config.run, weights=config.weights, servers=cluster)
                stats = controller.run(scheduled)
    except ClusterSetupError as e:
        typer.secho(f"Setup failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_SETUP_FAILURE) from e
    except DurabilityViolation as e:
        _report_violation(e)
        raise typer.Exit(EXIT_VIOLATION) from e
    except MalformedPayload as e:
        typer.secho(f"Malformed payload: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_MALFORMED_PAYLOAD) from e
    finally:
        broker.close()
        clear_run_context()

    _report_success(stats)


@app.command()
def validate(
    preset: PresetOption = None,
    config_file: ConfigOption = None,
    address: Annotated[
        list[str] | None,
        typer.Option("--address", "-a", help="host:port of a cluster server (repeatable)."),
    ] = None,
    seed: SeedOption = None,
    clients: ClientsOption = None,
    steps: StepsOption = None,
    replicas: ReplicasOption = None,
    burn_in: BurnInOption = None,
    warmup_sec: Annotated[
        float | None,
        typer.Option("--warmup-sec", help="Delay between cluster readiness and workload start.", min=0.0),
    ] = None,
    log_level: LogLevelOption = "INFO",
    json_logs: JsonLogsOption = False,
) -> None:
    """Run the publish/consume workload against an externally managed cluster.

    Faults are expected to come from outside (e.g. a container orchestrator
    pausing nodes); this command only generates traffic and validates.
    """
    configure_logging(json_output=json_logs, level=log_level)

    cli_overrides = _schedule_overrides(seed=seed, steps=steps, burn_in=burn_in, clients=clients, replicas=replicas)
    remote: dict[str, Any] = {}
    if address:
        remote["addresses"] = address
    if warmup_sec is not None:
        remote["warmup_sec"] = warmup_sec
    if remote:
        cli_overrides["remote"] = remote

    config = _load(preset=preset, config_file=config_file, cli_overrides=cli_overrides)
    if config.cluster.replicas > len(config.remote.addresses):
        typer.secho(
            f"Configuration error: replicas ({config.cluster.replicas}) exceeds the number of addresses "
            f"({len(config.remote.addresses)})",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(EXIT_SETUP_FAILURE)

    bind_run_context(seed=config.run.seed, mode="validate")
    typer.secho(f"Starting validator with seed {config.run.seed}", fg=typer.colors.GREEN)
    typer.echo(f"  Addresses: {', '.join(config.remote.addresses)}")

    scheduled = None if config.run.burn_in else config.run.steps
    broker = NatsBroker()
    try:
        with ClientPool.create(
            broker,
            config.remote.addresses,
            stream=config.cluster.stream,
            clients=config.cluster.clients,
            replicas=config.cluster.replicas,
            setup_retry_sec=config.broker.startup_timeout_sec,
        ) as pool:
            typer.echo("cluster ready for fault injection")
            if config.remote.warmup_sec > 0:
                typer.echo(f"workload and correctness assertions begin in {config.remote.warmup_sec:g} seconds")
                time.sleep(config.remote.warmup_sec)
            controller = ClusterController(pool, run=config.run, weights=config.remote.weights)
            stats = controller.run(scheduled)
    except ClusterSetupError as e:
        typer.secho(f"Setup failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_SETUP_FAILURE) from e
    except DurabilityViolation as e:
        _report_violation(e)
        raise typer.Exit(EXIT_VIOLATION) from e
    except MalformedPayload as e:
        typer.secho(f"Malformed payload: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_MALFORMED_PAYLOAD) from e
    finally:
        broker.close()
        clear_run_context()

    _report_success(stats)


@app.command()
def presets() -> None:
    """List available preset configurations."""
    available = list_presets()

    if not available:
        typer.echo("No presets found.")
        return

    typer.secho("Available presets:", fg=typer.colors.GREEN)
    for name in available:
        typer.echo(f"  - {name}")

    typer.echo()
    typer.echo("Use with: streamchaos exercise --preset=<name>")


@app.command()
def show_config(
    preset: PresetOption = None,
    config_file: ConfigOption = None,
    output_format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format: json or yaml."),
    ] = "yaml",
) -> None:
    """Show the effective configuration.

    Displays the merged configuration from preset and/or config file. The
    seed is shown unresolved, since a random one is only drawn at run time.
    """
    try:
        config = load_config(preset=preset, config_file=config_file)
    except FileNotFoundError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_SETUP_FAILURE) from e
    except Exception as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_SETUP_FAILURE) from e

    config_dict = config.model_dump(mode="json")

    if output_format == "json":
        typer.echo(json.dumps(config_dict, indent=2))
    else:
        typer.echo(yaml.safe_dump(config_dict, default_flow_style=False, sort_keys=False))


@app.command()
def confgen(
    servers: Annotated[int, typer.Option("--servers", help="Number of cluster servers.", min=1)] = 3,
    output_dir: Annotated[
        Path,
        typer.Option("--output-dir", "-o", help="Directory for supercluster_<i>.conf files.", file_okay=False),
    ] = Path("confs"),
    route_base_port: Annotated[
        int,
        typer.Option("--route-base-port", help="Route port of node 0; node i uses base + i.", min=1, max=65535),
    ] = DEFAULT_ROUTE_BASE_PORT,
    overwrite: Annotated[bool, typer.Option("--overwrite", help="Replace existing files.")] = False,
) -> None:
    """Write per-node cluster configuration files for a local run."""
    try:
        written = write_cluster_configs(output_dir, servers, route_base_port=route_base_port, overwrite=overwrite)
    except FileExistsError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_SETUP_FAILURE) from e

    for path in written:
        typer.echo(f"  wrote {path}")


def main() -> None:
    """Entry point for streamchaos CLI."""
    app()


if __name__ == "__main__":
    main()
