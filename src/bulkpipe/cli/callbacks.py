from pathlib import Path

import typer

from bulkpipe.status import Operation


def load_file_callback(ctx: typer.Context, value: Path | None):
    if ctx.resilient_parsing or value is None:
        return value
    if not value.exists():
        raise typer.BadParameter(
            message=f"file at path: '{value.as_posix()}' does not exist",
        )
    return value


def batch_size_callback(ctx: typer.Context, value: int | None):
    if ctx.resilient_parsing or value is None:
        return value
    if value < 1:
        raise typer.BadParameter(
            message=f"batch size must be at least 1, got {value}",
            param_hint="--batch-size, -b",
        )
    return value


def load_operation_callback(ctx: typer.Context, value: Operation):
    if ctx.resilient_parsing:
        return value
    if value == Operation.QUERY:
        raise typer.BadParameter(
            message="'query' does not load records, use the export command instead",
            param_hint="OPERATION",
        )
    return value
