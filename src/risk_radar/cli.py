"""Command-line interface for the Production Risk Radar."""

import json
import logging
import sys
from contextlib import closing, contextmanager
from pathlib import Path

import click
from dotenv import load_dotenv

from .backends import BackendKind, create_cascade, get_features_for_backend
from .config import Config
from .errors import DependencyFailure, NotFound, ValidationError
from .models import build_relationships, build_twin_graph
from .validation import validate_limit, validate_machine_id, validate_overrides

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")


@contextmanager
def _handle_errors():
    """Map domain errors to exit codes: 2 for bad input, 1 for failures."""
    try:
        yield
    except ValidationError as e:
        raise click.UsageError(str(e))
    except DependencyFailure as e:
        click.echo(f"Error: {e}", err=True)
        if e.completed_steps:
            click.echo(f"  Already applied: {', '.join(e.completed_steps)}", err=True)
        sys.exit(1)
    except (NotFound, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _publish_state(config: Config, requested: bool, dry_run: bool, result) -> None:
    """Publish a finished cascade's state. A broker failure is only a warning."""
    if not (requested or dry_run or config.mqtt.enabled):
        return

    from .publisher import StatePublisher

    publisher = StatePublisher(config.mqtt, config.factory.factory_id, dry_run=dry_run)
    try:
        count = publisher.publish_result(result)
    except DependencyFailure as e:
        click.echo(f"Warning: state not published: {e}", err=True)
        return
    logger.info(f"Published {count} state messages")


def _echo_warnings(warnings) -> None:
    for warning in warnings:
        click.echo(f"Warning: {warning}", err=True)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    help="Configuration file (defaults apply when missing)",
)
@click.option(
    "--backend",
    type=click.Choice([kind.value for kind in BackendKind]),
    default=None,
    help="Storage backend (overrides config and RISK_RADAR_BACKEND)",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging")
@click.pass_context
def main(ctx, config_path, backend, verbose):
    """Production Risk Radar - machine to factory risk scoring.

    Sensor readings are scored per machine and aggregated up to lines and
    the factory, on one of two backends:

      sqlite: one transaction per cascade (strong consistency)
      azure:  Digital Twins + Data Explorer (eventual consistency)
    """
    load_dotenv()
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = Config.from_env(Config.from_yaml(config_path))
    if backend:
        config.backend = BackendKind(backend)
    ctx.obj = config


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
@click.pass_obj
def init(config, output):
    """Generate a sample configuration file."""
    config_path = output / "config.yaml"
    config.to_yaml(config_path)

    click.echo(f"Created: {config_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - Backend (sqlite or azure)")
    click.echo("  - Factory layout and line capacity")
    click.echo("  - MQTT state publishing")
    click.echo()
    click.echo("Azure credentials are read from the environment or a .env file.")


@main.command()
@click.pass_obj
def provision(config):
    """Create the factory, lines and machines if absent."""
    with _handle_errors():
        with closing(create_cascade(config)) as cascade:
            cascade.provision()
    click.echo(
        f"Provisioned {config.factory.factory_id}: {len(config.factory.line_ids)} lines, "
        f"{len(config.factory.machine_ids)} machines"
    )


@main.command()
@click.option(
    "--dataset",
    "-d",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Historical dataset CSV",
)
@click.option("--generate", is_flag=True, default=False, help="Seed from a generated dataset")
@click.option("--seed", "rng_seed", type=int, default=42, help="Random seed for --generate")
@click.pass_obj
def seed(config, dataset, generate, rng_seed):
    """Rebuild all state and telemetry from a dataset."""
    if bool(dataset) == generate:
        raise click.UsageError("Pass exactly one of --dataset or --generate")

    with _handle_errors():
        if dataset:
            from .dataset import load_dataset

            rows = load_dataset(dataset)
        else:
            from .generators import generate_dataset

            rows = generate_dataset(
                line_ids=config.factory.line_ids,
                machines_per_line=config.factory.machines_per_line,
                seed=rng_seed,
                line_capacity=config.factory.line_capacity,
            )
        with closing(create_cascade(config)) as cascade:
            result = cascade.seed_from_dataset(rows)

    click.echo(f"Entities created:      {result.entities_created}")
    click.echo(f"Relationships created: {result.relationships_created}")
    click.echo(f"Telemetry rows:        {result.telemetry_row_count}")


@main.command("generate-dataset")
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--hours", type=click.IntRange(1, 24 * 365), default=24, help="Hours of history")
@click.option("--seed", "rng_seed", type=int, default=42, help="Random seed")
@click.pass_obj
def generate_dataset_command(config, output, hours, rng_seed):
    """Write a synthetic historical dataset CSV."""
    from .dataset import write_dataset
    from .generators import generate_dataset

    rows = generate_dataset(
        line_ids=config.factory.line_ids,
        machines_per_line=config.factory.machines_per_line,
        hours=hours,
        seed=rng_seed,
        line_capacity=config.factory.line_capacity,
    )
    count = write_dataset(rows, output)
    click.echo(f"Wrote {count} rows to {output}")


@main.command()
@click.argument("machine_id")
@click.option("--temperature", type=float, default=None, help="Temperature (°C)")
@click.option("--vibration", type=float, default=None, help="Vibration (mm/s)")
@click.option("--power", type=float, default=None, help="Power draw (kW)")
@click.option("--cycle-time", type=float, default=None, help="Cycle time (s)")
@click.option("--publish", is_flag=True, default=False, help="Publish new state over MQTT")
@click.option("--dry-run", is_flag=True, default=False, help="Log state messages instead of publishing")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON")
@click.pass_obj
def inject(config, machine_id, temperature, vibration, power, cycle_time, publish, dry_run, as_json):
    """Apply a sensor reading to MACHINE_ID and cascade it up."""
    with _handle_errors():
        validate_machine_id(machine_id)
        overrides = validate_overrides(
            {
                "temperature_c": temperature,
                "vibration_mm_s": vibration,
                "power_kw": power,
                "cycle_time_s": cycle_time,
            }
        )

        with closing(create_cascade(config)) as cascade:
            result = cascade.apply_reading(machine_id, overrides)

    _echo_warnings(result.warnings)
    _publish_state(config, publish, dry_run, result)
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    machine, line, factory = result.machine, result.line, result.factory
    click.echo(f"{machine.machine_id}: risk {machine.risk_score:.3f} [{machine.status.value}]")
    click.echo(f"  Predicted failure: {machine.to_dict()['predicted_failure_date']}")
    click.echo(f"  Energy deviation:  {machine.energy_deviation_kw:+.1f} kW")
    click.echo(
        f"{line.line_id}: risk {line.risk_score:.3f}, "
        f"throughput {line.throughput_forecast:.0f}/{line.capacity:.0f} units/day"
    )
    click.echo(f"{factory.factory_id}: overall risk {factory.overall_risk_score:.3f}")


@main.command()
@click.argument("machine_id", required=False)
@click.option("--publish", is_flag=True, default=False, help="Publish new state over MQTT")
@click.option("--dry-run", is_flag=True, default=False, help="Log state messages instead of publishing")
@click.pass_obj
def reset(config, machine_id, publish, dry_run):
    """Restore MACHINE_ID (or every machine) to its baseline reading."""
    with _handle_errors():
        if machine_id:
            validate_machine_id(machine_id)

        with closing(create_cascade(config)) as cascade:
            result = cascade.reset_machine(machine_id)

    _echo_warnings(result.warnings)
    _publish_state(config, publish, dry_run, result)
    click.echo(f"Reset {machine_id or 'all machines'}: {len(result.machines)} restored")
    click.echo(f"{result.factory.factory_id}: overall risk {result.factory.overall_risk_score:.3f}")


@main.command()
@click.pass_obj
def status(config):
    """Show factory, line and machine risk."""
    features = get_features_for_backend(config.backend)
    threshold = config.factory.high_risk_threshold

    with _handle_errors():
        with closing(create_cascade(config)) as cascade:
            factory = cascade.get_factory()
            lines = cascade.list_lines()
            machines = cascade.list_machines()

    click.echo("Production Risk Radar")
    click.echo("=" * 40)
    click.echo(f"Backend: {config.backend.value}")
    click.echo(f"  Atomic cascade:  {'yes' if features.atomic_cascade else 'no'}")
    click.echo(f"  Read your writes: {'yes' if features.read_your_writes else 'no'}")
    click.echo()
    click.echo(f"{factory.name} ({factory.factory_id}): overall risk {factory.overall_risk_score:.3f}")
    click.echo()

    for line in lines:
        click.echo(
            f"{line.line_id}  risk {line.risk_score:.3f}  "
            f"throughput {line.throughput_forecast:.0f}/{line.capacity:.0f}"
        )
        for machine in machines:
            if machine.line_id != line.line_id:
                continue
            flag = " !" if machine.risk_score > threshold else ""
            click.echo(
                f"  {machine.machine_id:<6} {machine.status.value:<8} "
                f"risk {machine.risk_score:.3f}{flag}"
            )


@main.command()
@click.option("--machine", "machine_id", default=None, help="Only this machine")
@click.option("--limit", type=int, default=None, help="Maximum rows (1-1000, default 100)")
@click.pass_obj
def telemetry(config, machine_id, limit):
    """Show the most recent telemetry rows, newest first."""
    with _handle_errors():
        if machine_id:
            validate_machine_id(machine_id)
        limit = validate_limit(limit)
        with closing(create_cascade(config)) as cascade:
            rows = cascade.recent_telemetry(machine_id, limit)

    for row in rows:
        record = row.to_record()
        marker = " *" if row.is_injected else ""
        click.echo(
            f"{record['timestamp']}  {row.machine_id:<6} "
            f"T={row.reading.temperature_c:6.1f} V={row.reading.vibration_mm_s:5.2f} "
            f"P={row.reading.power_kw:5.1f} C={row.reading.cycle_time_s:5.1f} "
            f"risk={row.risk_score:.3f}{marker}"
        )
    click.echo(f"{len(rows)} rows")


@main.command()
@click.pass_obj
def twin(config):
    """Print the factory twin graph as JSON."""
    with _handle_errors():
        with closing(create_cascade(config)) as cascade:
            factory = cascade.get_factory()
            lines = cascade.list_lines()
            machines = cascade.list_machines()

    graph = build_twin_graph(factory, lines, machines)
    relationships = build_relationships(
        factory.factory_id,
        [line.line_id for line in lines],
        [machine.machine_id for machine in machines],
    )
    click.echo(json.dumps({"twin": graph, "relationships": relationships}, indent=2))


if __name__ == "__main__":
    main()
