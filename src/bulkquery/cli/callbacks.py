from pathlib import Path

import typer


def directory_callback(ctx: typer.Context, value: Path | None):
    if ctx.resilient_parsing or value is None:
        return value
    if value.exists() and not value.is_dir():
        raise typer.BadParameter(
            message=f"path: '{value.as_posix()}' exists and is not a directory",
        )
    return value
