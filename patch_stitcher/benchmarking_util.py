import contextlib
import logging
import time
from typing import Generator, MutableMapping, Optional


@contextlib.contextmanager
def debug_timing(
    span_name: str,
    timings: Optional[MutableMapping[str, float]] = None,
    logger: Optional[logging.Logger] = None,
) -> Generator[None, None, None]:
    """Log the time spent in this context at debug level.

    If `timings` is given, the elapsed seconds are also stored under
    `span_name`, which is how the pipeline reports per-stage costs of a patch.
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        total_time = time.perf_counter() - start_time
        if timings is not None:
            timings[span_name] = total_time
        (logger or logging.getLogger(__name__)).debug(f"{span_name}: {total_time:0.3f}s")
