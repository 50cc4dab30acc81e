import asyncio
import logging
import sys
from contextlib import ExitStack
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from pathlib import Path
from typing import Annotated

import click
import httpx
import typer
from rich.console import Console
from rich.table import Table

from bulkpipe.cli.callbacks import (
    batch_size_callback,
    load_file_callback,
    load_operation_callback,
)
from bulkpipe.cli.runner import run_export, run_load
from bulkpipe.exceptions import BulkPipeError, ConfigError
from bulkpipe.logging import setup_logging
from bulkpipe.models import StatusSnapshot
from bulkpipe.query import extract_object_name
from bulkpipe.settings import BulkSettings, load_settings
from bulkpipe.sources import iter_csv_records, iter_sql_records
from bulkpipe.status import BATCH_ERROR_STATES, ConcurrencyMode, Operation

EXIT_USAGE = 6
EXIT_FAILURE = 9

app = typer.Typer(no_args_is_help=True)
console = Console(stderr=True)

# HTTP client factory handed to every BulkClient; None uses httpx defaults.
client_factory = None

ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="TOML file holding a [bulk_api] table with connection settings",
        callback=load_file_callback,
    ),
]
ShowProgressOption = Annotated[
    bool,
    typer.Option(help="Print job and batch status on every poll", rich_help_panel="Output"),
]
VerboseOption = Annotated[
    bool, typer.Option("--verbose", "-v", help="Enable debug logging", rich_help_panel="Output")
]


def render_snapshot(snapshot: StatusSnapshot) -> Table:
    job = snapshot.job
    title = "No job" if job is None else f"Job {job.id}: {job.state.value}"
    if snapshot.is_final:
        title += " (final)"
    table = Table(
        "Batch",
        "State",
        "Processed",
        "Failed",
        "Message",
        title=title,
    )
    for batch in snapshot.batches:
        state = batch.state.value
        if batch.state in BATCH_ERROR_STATES or batch.number_records_failed:
            state = f"[red]{state}[/red]"
        table.add_row(
            batch.id,
            state,
            str(batch.number_records_processed),
            str(batch.number_records_failed),
            batch.state_message or "",
        )
    return table


def print_snapshot(snapshot: StatusSnapshot) -> None:
    console.print(render_snapshot(snapshot))


def _load_settings(config: Path | None, verbose: bool) -> BulkSettings:
    setup_logging(level=logging.DEBUG if verbose else logging.WARNING)
    return load_settings(config_path=config)


def _fail(message: str, code: int) -> typer.Exit:
    console.print(f"[red]{message}[/red]")
    return typer.Exit(code=code)


def _run(coroutine):
    """Run ``coroutine``, mapping failures to the documented exit statuses."""
    try:
        return asyncio.run(coroutine)
    except ConfigError as e:
        raise _fail(message=str(e), code=EXIT_USAGE)
    except (BulkPipeError, httpx.HTTPError) as e:
        raise _fail(message=str(e) or type(e).__name__, code=EXIT_FAILURE)
    except KeyboardInterrupt:
        raise _fail(message="Interrupted, job abort requested", code=EXIT_FAILURE)


def _load(
    *,
    operation: Operation,
    object_name: str,
    external_id: str | None,
    input_file: Path | None,
    sql: str | None,
    db_url: str | None,
    batch_size: int | None,
    concurrency_mode: ConcurrencyMode | None,
    show_progress: bool,
    fail_on_error: bool,
    config: Path | None,
    verbose: bool,
) -> None:
    try:
        settings = _load_settings(config=config, verbose=verbose)
        options = settings.job_options(
            object=object_name,
            operation=operation,
            external_id_field_name=external_id,
            concurrency_mode=concurrency_mode,
        )
        if sql is not None and db_url is None:
            raise ConfigError("--sql requires --db-url")
        if sql is not None and input_file is not None:
            raise ConfigError("--sql and --input-file are mutually exclusive")
    except ConfigError as e:
        raise _fail(message=str(e), code=EXIT_USAGE)

    client = settings.client(options, client_factory=client_factory)
    with ExitStack() as stack:
        if sql is not None:
            records = iter_sql_records(url=db_url, sql=sql)
        elif input_file is not None:
            stream = stack.enter_context(input_file.open(newline="", encoding="utf-8"))
            records = iter_csv_records(stream)
        else:
            records = iter_csv_records(sys.stdin)

        snapshot = _run(
            run_load(
                client,
                records,
                batch_size=batch_size or settings.batch_size,
                fail_on_error=fail_on_error,
                on_snapshot=print_snapshot if show_progress else None,
                abort_grace_seconds=settings.abort_grace_seconds,
            )
        )
    summary = snapshot.summary()
    if snapshot.is_error:
        raise _fail(message=f"Job finished with errors: {summary}", code=EXIT_FAILURE)
    job_id = snapshot.job.id if snapshot.job else "-"
    console.print(f"Job [green]{job_id}[/green] finished: {summary}")


@app.command(name="load")
def load(
    operation: Annotated[
        Operation,
        typer.Argument(
            help="Operation applied to every record: insert, update, upsert, delete, hardDelete",
            callback=load_operation_callback,
        ),
    ],
    object_name: Annotated[str, typer.Option("--object", help="Remote object, e.g. Account")],
    external_id: Annotated[
        str | None, typer.Option(help="External id field, required for upsert")
    ] = None,
    input_file: Annotated[
        Path | None,
        typer.Option(
            "--input-file",
            "-i",
            help="CSV file with a header row; stdin is read when omitted",
            callback=load_file_callback,
        ),
    ] = None,
    sql: Annotated[
        str | None,
        typer.Option(
            help="SELECT statement, or path of a file holding one, whose rows are loaded"
        ),
    ] = None,
    db_url: Annotated[
        str | None, typer.Option(help="SQLAlchemy URL of the database queried by --sql")
    ] = None,
    batch_size: Annotated[
        int | None,
        typer.Option(
            "--batch-size",
            "-b",
            help="Records per batch",
            callback=batch_size_callback,
        ),
    ] = None,
    concurrency_mode: Annotated[
        ConcurrencyMode | None, typer.Option(help="Batch processing mode of the job")
    ] = None,
    show_progress: ShowProgressOption = False,
    fail_on_error: Annotated[
        bool, typer.Option(help="Abort the job as soon as an error is reported")
    ] = False,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
):
    """Load CSV or SQL rows into a remote object"""
    _load(
        operation=operation,
        object_name=object_name,
        external_id=external_id,
        input_file=input_file,
        sql=sql,
        db_url=db_url,
        batch_size=batch_size,
        concurrency_mode=concurrency_mode,
        show_progress=show_progress,
        fail_on_error=fail_on_error,
        config=config,
        verbose=verbose,
    )


@app.command(name="upsert")
def upsert(
    object_name: Annotated[str, typer.Argument(help="Remote object, e.g. Account")],
    external_id: Annotated[str, typer.Argument(help="External id field used to match records")],
    input_file: Annotated[
        Path | None,
        typer.Option(
            "--input-file",
            "-i",
            help="CSV file with a header row; stdin is read when omitted",
            callback=load_file_callback,
        ),
    ] = None,
    batch_size: Annotated[
        int | None,
        typer.Option(
            "--batch-size",
            "-b",
            help="Records per batch",
            callback=batch_size_callback,
        ),
    ] = None,
    show_progress: ShowProgressOption = False,
    fail_on_error: Annotated[
        bool, typer.Option(help="Abort the job as soon as an error is reported")
    ] = False,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
):
    """Upsert CSV rows into a remote object"""
    _load(
        operation=Operation.UPSERT,
        object_name=object_name,
        external_id=external_id,
        input_file=input_file,
        sql=None,
        db_url=None,
        batch_size=batch_size,
        concurrency_mode=None,
        show_progress=show_progress,
        fail_on_error=fail_on_error,
        config=config,
        verbose=verbose,
    )


@app.command(name="export")
def export(
    soql: Annotated[str, typer.Argument(help="SOQL query, e.g. 'SELECT Id FROM Account'")],
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="CSV file written instead of stdout")
    ] = None,
    show_progress: ShowProgressOption = False,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
):
    """Export the rows of a query as CSV"""
    try:
        settings = _load_settings(config=config, verbose=verbose)
        options = settings.job_options(object=extract_object_name(soql), operation=Operation.QUERY)
    except ConfigError as e:
        raise _fail(message=str(e), code=EXIT_USAGE)

    client = settings.client(options, client_factory=client_factory)
    on_snapshot = print_snapshot if show_progress else None
    if output is None:
        row_count = _run(
            run_export(
                client,
                soql,
                sys.stdout,
                on_snapshot=on_snapshot,
                abort_grace_seconds=settings.abort_grace_seconds,
            )
        )
    else:
        with output.open("w", newline="", encoding="utf-8") as f:
            row_count = _run(
                run_export(
                    client,
                    soql,
                    f,
                    on_snapshot=on_snapshot,
                    abort_grace_seconds=settings.abort_grace_seconds,
                )
            )
    console.print(f"Exported [green]{row_count}[/green] rows")


@app.command()
def version():
    """Get the version of the package"""
    try:
        typer.echo(package_version("bulkpipe"))
    except PackageNotFoundError:
        typer.echo("unknown")
    raise typer.Exit()


def main() -> None:
    """Console entry point; command-line usage errors exit with status 6."""
    command = typer.main.get_command(app)
    try:
        exit_code = command.main(standalone_mode=False)
    except click.UsageError as e:
        e.show()
        sys.exit(EXIT_USAGE)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        console.print("Aborted!")
        sys.exit(1)
    sys.exit(exit_code if isinstance(exit_code, int) else 0)
