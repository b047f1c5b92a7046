import logging
from collections.abc import Iterator
from contextlib import contextmanager

import structlog


def setup_logging(level: int = logging.INFO, json_logs: bool = False) -> None:
    """
    Route bulkquery logs through structlog over stdlib logging.

    The library never calls this itself; the CLI does on ``--verbose``.
    """
    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger("bulkquery").setLevel(level)
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**context) -> Iterator[None]:
    """Bind ``context`` to every log emitted inside the block, keeping outer values."""
    bound = structlog.contextvars.get_contextvars()
    missing = {key: value for key, value in context.items() if key not in bound}
    if not missing:
        yield
        return
    with structlog.contextvars.bound_contextvars(**missing):
        yield
