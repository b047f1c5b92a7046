from collections.abc import Iterable
from pathlib import Path

from platformdirs import user_cache_dir

APP_NAME = "bulkquery"
APP_AUTHOR = "bulkquery"


def default_results_directory() -> Path:
    """Directory used for batch results when the caller does not pick one."""
    return Path(user_cache_dir(APP_NAME, APP_AUTHOR)) / "results"


def write_chunks(file_path: str | Path, chunks: Iterable[bytes]) -> Path:
    """Stream byte chunks into a file, replacing it only once fully written

    Args:
        file_path (str | Path): The path of the file to write
        chunks (Iterable[bytes]): The data to write

    Returns:
        Path: The written file path
    """
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    partial_path = path.with_name(path.name + ".part")
    try:
        with open(partial_path, "wb") as f:
            for chunk in chunks:
                f.write(chunk)
    except Exception:
        partial_path.unlink(missing_ok=True)
        raise
    partial_path.replace(path)
    return path
