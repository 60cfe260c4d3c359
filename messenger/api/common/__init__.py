from .base_router import BaseRouter
from .decorators import handle_route_errors, log_route_call
from .exceptions import (
    APIException,
    BadRequestError,
    ForbiddenError,
    InternalServerError,
    NotFoundError,
    handle_service_error,
)
from .responses import APIResponse

__all__ = [
    "APIResponse",
    "log_route_call",
    "handle_route_errors",
    "APIException",
    "NotFoundError",
    "BadRequestError",
    "ForbiddenError",
    "InternalServerError",
    "handle_service_error",
    "BaseRouter",
]
