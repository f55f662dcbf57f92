"""Time budgets for external calls."""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import JobTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Timeouts:
    """Budgets in seconds."""

    embedding: float = 30
    document_processing: float = 600
    file_transfer: float = 60
    external_api: float = 30
    # Attachment job waiting on its embed-inbox job
    embedding_wait: float = 60


TIMEOUTS = Timeouts()


def with_timeout(func: Callable[..., T], timeout: float, message: str, *args, **kwargs) -> T:
    """Run ``func`` and give up after ``timeout`` seconds.

    The call runs on a helper thread. On expiry the caller gets a
    JobTimeoutError right away; the helper thread is abandoned and finishes
    in the background.

    Args:
        func: Callable to run
        timeout: Budget in seconds
        message: Description used in the timeout error
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Whatever func returns

    Raises:
        JobTimeoutError: If func does not finish in time
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="timeout")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        logger.warning(f"{message} timed out after {timeout}s")
        raise JobTimeoutError(f"{message} timed out after {timeout}s", timeout_seconds=timeout)
    finally:
        executor.shutdown(wait=False)
