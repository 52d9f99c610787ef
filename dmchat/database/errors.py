import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator

from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    DuplicateKeyError,
    NetworkTimeout,
    ServerSelectionTimeoutError,
)

from dmchat.core.errors import ConflictError, TransientError


logger = logging.getLogger(__name__)

_TRANSIENT = (AutoReconnect, ConnectionFailure, NetworkTimeout, ServerSelectionTimeoutError)


@contextmanager
def driver_errors(operation: str) -> Iterator[None]:
    """Re-raise pymongo failures as domain errors."""
    try:
        yield
    except DuplicateKeyError as exc:
        raise ConflictError(f"{operation}: unique constraint violated", details={"operation": operation}) from exc
    except _TRANSIENT as exc:
        raise TransientError(f"{operation}: database unavailable", details={"operation": operation}) from exc


async def upsert_with_retry(operation: str, call: Callable[[], Awaitable[Any]]) -> Any:
    """
    Run an upsert, retrying once if two writers raced to insert the same key.

    The losing insert hits the unique index; on retry the row exists and the
    upsert becomes a plain update (last write wins). A second failure is a
    real constraint problem and surfaces as ConflictError.
    """
    try:
        with driver_errors(operation):
            return await call()
    except ConflictError:
        logger.debug("%s: upsert race, retrying once", operation)
    with driver_errors(operation):
        return await call()
