from typing import Any, Callable, List, Optional

from fastapi import APIRouter, Depends

from .decorators import handle_route_errors, log_route_call


class BaseRouter:
    """Wraps an APIRouter so every endpoint gets error mapping and call logging."""

    def __init__(
        self,
        router: APIRouter,
        default_tags: Optional[List[str]] = None,
        default_dependencies: Optional[List[Depends]] = None,
    ):
        self.router = router
        self.default_tags = default_tags if default_tags is not None else []
        self.default_dependencies = (
            default_dependencies if default_dependencies is not None else []
        )

    def add_api_route(
        self,
        path: str,
        endpoint: Callable[..., Any],
        *,
        methods: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        dependencies: Optional[List[Depends]] = None,
        apply_common_decorators: bool = True,
        **kwargs: Any,
    ) -> None:
        route_tags = list(self.default_tags)
        if tags:
            route_tags.extend(tags)

        route_dependencies = list(self.default_dependencies)
        if dependencies:
            route_dependencies.extend(dependencies)

        decorated_endpoint = endpoint
        if apply_common_decorators:
            decorated_endpoint = handle_route_errors(decorated_endpoint)
            decorated_endpoint = log_route_call(decorated_endpoint)

        self.router.add_api_route(
            path,
            decorated_endpoint,
            methods=methods,
            tags=list(dict.fromkeys(route_tags)),
            dependencies=route_dependencies,
            **kwargs,
        )

    def get(self, path: str, **kwargs: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return self._create_route_decorator(path, methods=["GET"], **kwargs)

    def post(self, path: str, **kwargs: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return self._create_route_decorator(path, methods=["POST"], **kwargs)

    def delete(self, path: str, **kwargs: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return self._create_route_decorator(path, methods=["DELETE"], **kwargs)

    def patch(self, path: str, **kwargs: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return self._create_route_decorator(path, methods=["PATCH"], **kwargs)

    def _create_route_decorator(
        self,
        path: str,
        methods: List[str],
        apply_common_decorators: bool = True,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(endpoint: Callable[..., Any]) -> Callable[..., Any]:
            self.add_api_route(
                path,
                endpoint,
                methods=methods,
                apply_common_decorators=apply_common_decorators,
                **kwargs,
            )
            return endpoint

        return decorator
