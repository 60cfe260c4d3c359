import logging
from functools import wraps

from fastapi import HTTPException, status

from messenger.services.exceptions import ServiceError

from .exceptions import handle_service_error

logger = logging.getLogger(__name__)


def _loggable(value) -> str:
    # Upload payloads are logged by name only
    filename = getattr(value, "filename", None)
    if filename is not None:
        return f"<upload {filename}>"
    return repr(value)


def log_route_call(func):
    """
    Logs entry into and exit from a route function, with its arguments and
    the exception type when it fails.
    """

    @wraps(func)
    async def wrapper(*args, **kwargs):
        route_logger = logging.getLogger(func.__module__)
        logged_kwargs = {k: _loggable(v) for k, v in kwargs.items()}

        route_logger.info(f"Entering route: {func.__name__} (kwargs: {logged_kwargs})")
        try:
            result = await func(*args, **kwargs)
            route_logger.info(f"Successfully exited route: {func.__name__}")
            return result
        except Exception as e:
            route_logger.error(
                f"Error during route: {func.__name__}. Exception: {type(e).__name__} - {e}",
                exc_info=False,
            )
            raise

    return wrapper


def handle_route_errors(func):
    """
    Standardizes error handling in API routes: service errors are mapped to
    HTTP errors by handle_service_error, HTTPExceptions pass through, and
    anything else becomes a 500.
    """

    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except ServiceError as e:
            logger.info(f"Service error in {func.__name__} route: {e}")
            handle_service_error(e)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(
                f"Unexpected error in {func.__name__} route: {e}", exc_info=True
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="An unexpected server error occurred.",
            )

    return wrapper
