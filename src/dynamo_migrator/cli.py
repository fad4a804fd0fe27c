"""Command-line interface for dynamo-migrator."""

import asyncio
import importlib
import importlib.util
import logging
import sys
from pathlib import Path
from types import ModuleType

import click

from .dead_letter import load_dead_letters, save_dead_letters
from .exceptions import DynamoMigratorError
from .migrator import Migrator
from .models import DeadLetterEntry, MigrationConfig, MigrationResult, Mode, select_all
from .preflight import capacity_mode
from .preflight import check as preflight_check
from .repository import Repository
from .writer import BatchWriter


def _configure_logging(quiet: bool, verbose: bool) -> None:
    level = logging.INFO
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
    )


def load_script(script: str) -> ModuleType:
    """
    Load a migration script from a file path or a dotted module name.

    The script provides the callbacks for the run:

    - ``transform(item, counters, log)`` for stream mode
    - ``handle_batch(items, counters, log, write)`` for batch mode
    - ``filter_item(item, counters, log)`` (optional)
    - ``COUNTERS``, a list of custom counter names (optional)
    """
    path = Path(script)
    if path.suffix == ".py" or path.is_file():
        if not path.is_file():
            raise click.BadParameter(f"Script not found: {script}", param_hint="SCRIPT")
        spec = importlib.util.spec_from_file_location(path.stem, path)
        if spec is None or spec.loader is None:
            raise click.BadParameter(f"Cannot load script: {script}", param_hint="SCRIPT")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module
    try:
        return importlib.import_module(script)
    except ImportError as e:
        raise click.BadParameter(f"Cannot import {script}: {e}", param_hint="SCRIPT") from e


def build_config(
    module: ModuleType,
    table_name: str,
    mode: str | None,
    scan_delay: int,
    write_delay: int,
    counters: tuple[str, ...],
    save_dlq: bool,
    dlq_dir: Path | None,
    quiet: bool,
    force: bool,
    start_delay: int,
) -> MigrationConfig:
    """Build a MigrationConfig from a loaded script and CLI options."""
    transform = getattr(module, "transform", None)
    batch_handler = getattr(module, "handle_batch", None)
    if mode is None:
        # infer from what the script defines
        mode = Mode.BATCH.value if batch_handler and not transform else Mode.STREAM.value

    custom_counters = list(getattr(module, "COUNTERS", []))
    custom_counters += [c for c in counters if c not in custom_counters]

    return MigrationConfig(
        table_name=table_name,
        filter_item=getattr(module, "filter_item", select_all),
        transform=transform,
        batch_handler=batch_handler,
        mode=Mode(mode),
        scan_delay_ms=scan_delay,
        write_delay_ms=write_delay,
        custom_counters=custom_counters,
        save_dead_letters=save_dlq,
        quiet=quiet,
        force=force,
        start_delay_ms=start_delay,
        dead_letter_dir=dlq_dir,
    )


@click.group()
@click.version_option(package_name="dynamo-migrator")
def cli() -> None:
    """dynamo-migrator: throttled in-place migrations of DynamoDB tables."""
    pass


@cli.command()
@click.argument("script")
@click.option(
    "--table-name",
    required=True,
    help="DynamoDB table to migrate",
)
@click.option(
    "--region",
    help="AWS region (default: use boto3 defaults)",
)
@click.option(
    "--endpoint-url",
    help="AWS endpoint URL (e.g., http://localhost:8000 for DynamoDB Local)",
)
@click.option(
    "--mode",
    type=click.Choice([m.value for m in Mode]),
    default=None,
    help="stream: transform each item; batch: hand each page to handle_batch "
    "(default: inferred from the script)",
)
@click.option(
    "--scan-delay",
    type=click.IntRange(min=0),
    default=0,
    help="Milliseconds to wait before each page scan",
)
@click.option(
    "--write-delay",
    type=click.IntRange(min=0),
    default=0,
    help="Milliseconds to wait before each batch write",
)
@click.option(
    "--counter",
    "counters",
    multiple=True,
    help="Custom counter to initialise and report (repeatable)",
)
@click.option(
    "--save-dlq/--no-save-dlq",
    default=True,
    help="Write failed batches to migration.dlq.<id>.json (default: enabled)",
)
@click.option(
    "--dlq-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for the dead-letter file (default: current directory)",
)
@click.option(
    "--start-delay",
    type=click.IntRange(min=0),
    default=5000,
    help="Milliseconds to wait after printing settings, before scanning",
)
@click.option(
    "--force",
    is_flag=True,
    help="Migrate even if the table is not in PAY_PER_REQUEST billing mode",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress progress output")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def run(
    script: str,
    table_name: str,
    region: str | None,
    endpoint_url: str | None,
    mode: str | None,
    scan_delay: int,
    write_delay: int,
    counters: tuple[str, ...],
    save_dlq: bool,
    dlq_dir: Path | None,
    start_delay: int,
    force: bool,
    quiet: bool,
    verbose: bool,
) -> None:
    """Migrate every item of a table using the callbacks in SCRIPT."""
    _configure_logging(quiet, verbose)

    try:
        config = build_config(
            load_script(script),
            table_name=table_name,
            mode=mode,
            scan_delay=scan_delay,
            write_delay=write_delay,
            counters=counters,
            save_dlq=save_dlq,
            dlq_dir=dlq_dir,
            quiet=quiet,
            force=force,
            start_delay=start_delay,
        )
    except DynamoMigratorError as e:
        click.echo(f"✗ Invalid migration: {e}", err=True)
        sys.exit(1)

    async def _run() -> MigrationResult:
        async with Migrator(region=region, endpoint_url=endpoint_url) as migrator:
            return await migrator.run(config)

    try:
        result = asyncio.run(_run())
    except Exception as e:
        click.echo(f"✗ Migration failed: {e}", err=True)
        sys.exit(1)

    if result.dead_letters and not quiet:
        click.echo(f"⚠️  {result.failed_batches} batches could not be written", err=True)


@cli.command()
@click.argument("table_name")
@click.option(
    "--region",
    help="AWS region (default: use boto3 defaults)",
)
@click.option(
    "--endpoint-url",
    help="AWS endpoint URL (e.g., http://localhost:8000 for DynamoDB Local)",
)
def check(table_name: str, region: str | None, endpoint_url: str | None) -> None:
    """Check whether a table's capacity mode allows a migration."""

    async def _describe() -> dict:
        async with Repository(region=region, endpoint_url=endpoint_url) as repository:
            return await repository.describe_table(table_name)

    try:
        description = asyncio.run(_describe())
    except DynamoMigratorError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    click.echo(f"Table: {table_name}")
    click.echo(f"  Billing mode: {capacity_mode(description)}")
    if "ItemCount" in description:
        click.echo(f"  Item count (approximate): {description['ItemCount']}")

    if preflight_check(description):
        click.echo("✓ Table can be migrated")
    else:
        click.echo("✗ Table uses fixed capacity; use 'run --force' to migrate anyway", err=True)
        sys.exit(1)


@cli.command()
@click.argument(
    "dlq_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--region",
    help="AWS region (default: use boto3 defaults)",
)
@click.option(
    "--endpoint-url",
    help="AWS endpoint URL (e.g., http://localhost:8000 for DynamoDB Local)",
)
@click.option(
    "--write-delay",
    type=click.IntRange(min=0),
    default=0,
    help="Milliseconds to wait before each batch write",
)
@click.option(
    "--dlq-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for batches that fail again (default: current directory)",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress progress output")
def replay(
    dlq_file: Path,
    region: str | None,
    endpoint_url: str | None,
    write_delay: int,
    dlq_dir: Path | None,
    quiet: bool,
) -> None:
    """Re-submit the failed batches recorded in DLQ_FILE."""
    _configure_logging(quiet, verbose=False)

    try:
        entries = load_dead_letters(dlq_file)
    except (ValueError, KeyError) as e:
        click.echo(f"✗ Invalid dead-letter file {dlq_file}: {e}", err=True)
        sys.exit(1)

    async def _replay() -> list[DeadLetterEntry]:
        async with Repository(region=region, endpoint_url=endpoint_url) as repository:
            writer = BatchWriter(repository)
            failed: list[DeadLetterEntry] = []
            for entry in entries:
                failed.extend(
                    await writer.submit(entry.table_name, entry.requests, write_delay, quiet)
                )
            return failed

    request_count = sum(len(entry.requests) for entry in entries)
    click.echo(f"Replaying {len(entries)} batches ({request_count} requests) from {dlq_file}")

    try:
        failed = asyncio.run(_replay())
    except Exception as e:
        click.echo(f"✗ Replay failed: {e}", err=True)
        sys.exit(1)

    if failed:
        path = save_dead_letters(failed, dlq_dir)
        click.echo(f"✗ {len(failed)} batches failed again, written to '{path}'", err=True)
        sys.exit(1)

    click.echo("✓ All batches written")


if __name__ == "__main__":
    cli()
