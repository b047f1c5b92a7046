import logging
from datetime import datetime
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from pathlib import Path
from typing import Annotated

import typer
from pydantic import ValidationError
from rich import print
from rich.console import Console
from rich.table import Table

from bulkquery.api import Api
from bulkquery.cli.callbacks import directory_callback
from bulkquery.connection import Connection, HttpConnection
from bulkquery.exceptions import TransportError
from bulkquery.models import ConnectionSettings, QueryOptions, QueryResults
from bulkquery.utils.logging import setup_logging

app = typer.Typer(no_args_is_help=True)

CheckInterval = Annotated[
    float,
    typer.Option(help="Seconds to wait between two status checks", rich_help_panel="Polling"),
]
TimeLimit = Annotated[
    float,
    typer.Option(
        help="Seconds after which whatever is available is downloaded", rich_help_panel="Polling"
    ),
]
Directory = Annotated[
    Path | None,
    typer.Option(
        "--directory",
        "-d",
        help="Directory where result files are written",
        callback=directory_callback,
    ),
]
BatchCount = Annotated[
    int,
    typer.Option(
        min=1,
        help="Number of batches the time range is split into",
        rich_help_panel="Partitioning",
    ),
]
DateField = Annotated[
    str,
    typer.Option(help="Timestamp field used to split the query", rich_help_panel="Partitioning"),
]
DateFrom = Annotated[
    datetime | None,
    typer.Option(
        help="Inclusive range start, defaults to the earliest record",
        rich_help_panel="Partitioning",
    ),
]
DateTo = Annotated[
    datetime | None,
    typer.Option(help="Exclusive range end, defaults to now", rich_help_panel="Partitioning"),
]
SingleBatch = Annotated[
    bool, typer.Option(help="Submit the whole range as one batch", rich_help_panel="Partitioning")
]
Restart = Annotated[
    bool,
    typer.Option("--restart/--no-restart", help="Resubmit the unfinished part of stalled jobs"),
]
InstanceUrl = Annotated[
    str | None,
    typer.Option(
        help="Instance URL, defaults to BULKQUERY_INSTANCE_URL", rich_help_panel="Connection"
    ),
]
SessionId = Annotated[
    str | None,
    typer.Option(help="Session id, defaults to BULKQUERY_SESSION_ID", rich_help_panel="Connection"),
]
Verbose = Annotated[bool, typer.Option("--verbose", "-v", help="Log progress")]
LogJson = Annotated[bool, typer.Option("--log-json", help="Render logs as JSON lines")]


def build_connection(settings: ConnectionSettings) -> Connection:
    return HttpConnection(
        instance_url=settings.instance_url,
        session_id=settings.session_id,
        api_version=settings.api_version,
    )


def print_results(results: QueryResults) -> None:
    table = Table("Kind", "Value", title="Query results")
    for filename in results.filenames:
        table.add_row("file", filename)
    for batch in results.unfinished_batches:
        table.add_row(
            "[yellow]unfinished[/yellow]",
            f"{batch.batch_id} [{batch.start}, {batch.stop}) {batch.state.value}",
        )
    console = Console()
    console.print(table)
    status = "[red]timed out[/red]" if results.timed_out else "[green]finished[/green]"
    print(
        f"Query {status}: {len(results.filenames)} file(s), "
        f"{len(results.unfinished_batches)} unfinished batch(es)"
    )
    if results.some_failed:
        print("Some records failed, check the downloaded results")


def _run(
    *,
    target: str,
    query_text: str | None,
    options: dict,
    instance_url: str | None,
    session_id: str | None,
    verbose: bool,
    log_json: bool,
) -> None:
    if verbose or log_json:
        setup_logging(level=logging.INFO, json_logs=log_json)
    try:
        settings = ConnectionSettings.from_env(instance_url=instance_url, session_id=session_id)
        query_options = QueryOptions.model_validate(options)
    except ValidationError as error:
        typer.echo(f"Invalid configuration: {error}", err=True)
        raise typer.Exit(2)

    with build_connection(settings) as connection:
        api = Api(connection, filename_prefix=settings.filename_prefix)
        try:
            if query_text is None:
                results = api.query_fields(target, query_options)
            else:
                results = api.query(target, query_text, query_options)
        except TransportError as error:
            typer.echo(f"Query submission failed: {error}", err=True)
            raise typer.Exit(1)

    print_results(results)
    if results.timed_out and results.unfinished_batches:
        raise typer.Exit(1)


@app.command(name="query")
def run_query(
    target: Annotated[str, typer.Argument(help="The queried object, e.g. Opportunity")],
    query_text: Annotated[
        str, typer.Argument(help="The query, e.g. 'SELECT Id, Name FROM Opportunity'")
    ],
    check_interval: CheckInterval = 10.0,
    time_limit: TimeLimit = 7200.0,
    directory: Directory = None,
    batch_count: BatchCount = 15,
    date_field: DateField = "CreatedDate",
    date_from: DateFrom = None,
    date_to: DateTo = None,
    single_batch: SingleBatch = False,
    restart: Restart = True,
    instance_url: InstanceUrl = None,
    session_id: SessionId = None,
    verbose: Verbose = False,
    log_json: LogJson = False,
):
    """Run a bulk query and download its results"""
    _run(
        target=target,
        query_text=query_text,
        options={
            "check_interval": check_interval,
            "time_limit": time_limit,
            "directory_path": directory.as_posix() if directory else None,
            "batch_count": batch_count,
            "date_field": date_field,
            "date_from": date_from,
            "date_to": date_to,
            "single_batch": single_batch,
            "restart": restart,
        },
        instance_url=instance_url,
        session_id=session_id,
        verbose=verbose,
        log_json=log_json,
    )


@app.command(name="fields")
def run_query_fields(
    target: Annotated[str, typer.Argument(help="The queried object, e.g. Opportunity")],
    check_interval: CheckInterval = 10.0,
    time_limit: TimeLimit = 7200.0,
    directory: Directory = None,
    batch_count: BatchCount = 15,
    date_field: DateField = "CreatedDate",
    date_from: DateFrom = None,
    date_to: DateTo = None,
    single_batch: SingleBatch = False,
    restart: Restart = True,
    instance_url: InstanceUrl = None,
    session_id: SessionId = None,
    verbose: Verbose = False,
    log_json: LogJson = False,
):
    """Query every field of an object and download the results"""
    _run(
        target=target,
        query_text=None,
        options={
            "check_interval": check_interval,
            "time_limit": time_limit,
            "directory_path": directory.as_posix() if directory else None,
            "batch_count": batch_count,
            "date_field": date_field,
            "date_from": date_from,
            "date_to": date_to,
            "single_batch": single_batch,
            "restart": restart,
        },
        instance_url=instance_url,
        session_id=session_id,
        verbose=verbose,
        log_json=log_json,
    )


@app.command()
def version():
    """Get the version of the package"""
    try:
        typer.echo(package_version("bulkquery"))
    except PackageNotFoundError:
        typer.echo("unknown")
    raise typer.Exit()
