"""Translation of storage driver failures into application exceptions."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

from cabinet_scheduler.core.exceptions import PersistenceUnavailableException

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def persistence_errors(operation: str) -> AsyncIterator[None]:
    """
    Map transient storage failures to `PersistenceUnavailableException`.

    Integrity violations are business signals (duplicate key, exclusion
    constraint) and propagate unchanged for the caller to interpret. The raw
    driver message only goes to the log.
    """
    try:
        yield
    except IntegrityError:
        raise
    except (OperationalError, InterfaceError, DBAPIError, OSError, TimeoutError) as e:
        logger.error("persistence_unavailable", operation=operation, error=str(e))
        raise PersistenceUnavailableException() from e


SLOT_OVERLAP_CONSTRAINT = "appointments_no_practitioner_overlap"


def is_slot_overlap(error: IntegrityError) -> bool:
    """Check whether an integrity violation comes from the practitioner overlap constraint."""
    return SLOT_OVERLAP_CONSTRAINT in str(error.orig)
