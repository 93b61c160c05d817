"""Error handling decorators"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar, cast

from .base import ApplicationError, ErrorLevel
from .error_context import ErrorContext, ErrorContextManager
from .handlers import ErrorHandler
from .logging import get_logger

logger = get_logger(__name__)
P = ParamSpec("P")
T = TypeVar("T")


def _report(
    func_name: str,
    error: Exception,
    ctx: ErrorContext,
    error_level: ErrorLevel,
    error_handler: ErrorHandler | None,
) -> None:
    # Application errors carry their own severity; anything else uses the
    # level configured on the decorator.
    level = error.level if isinstance(error, ApplicationError) else error_level
    context: dict[str, Any] = {"function": func_name, "error_context": ctx.to_dict()}
    if error_handler:
        error_handler.handle_sync(error, level, context)
        return
    logger.log(
        level.to_logging_level(),
        f"Error in {func_name}: {error!s}",
        extra=context,
        exc_info=level.to_logging_level() >= ErrorLevel.ERROR.to_logging_level(),
    )


def with_error_handling(
    error_level: ErrorLevel = ErrorLevel.ERROR,
    reraise: bool = True,
    error_handler: ErrorHandler | None = None,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Decorator for handling errors in functions.

    Args:
        error_level: Severity level for non-application errors
        reraise: Whether to re-raise the error after handling
        error_handler: Optional custom error handler

    Returns:
        Decorated function with error handling
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        original_signature = inspect.signature(func)

        if asyncio.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
                try:
                    return await cast("Callable[P, Awaitable[T]]", func)(*args, **kwargs)
                except Exception as e:
                    async with ErrorContextManager(e) as ctx:
                        _report(func.__name__, e, ctx, error_level, error_handler)
                        if reraise:
                            raise
                        return cast("T", None)

            async_wrapper.__signature__ = original_signature  # type: ignore[attr-defined]
            return cast("Callable[P, T]", async_wrapper)

        @wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                with ErrorContextManager(e) as ctx:
                    _report(func.__name__, e, ctx, error_level, error_handler)
                    if reraise:
                        raise
                    return cast("T", None)

        sync_wrapper.__signature__ = original_signature  # type: ignore[attr-defined]
        return sync_wrapper

    return decorator


def error_context(
    error_level: ErrorLevel = ErrorLevel.ERROR,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Decorator that logs error context and always re-raises."""

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        original_signature = inspect.signature(func)

        if asyncio.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
                try:
                    return await cast("Callable[P, Awaitable[T]]", func)(*args, **kwargs)
                except Exception as e:
                    async with ErrorContextManager(e) as ctx:
                        logger.log(
                            error_level.to_logging_level(),
                            f"Error context for {func.__name__}: {e!s}",
                            extra={"error_context": ctx.to_dict()},
                        )
                        raise

            async_wrapper.__signature__ = original_signature  # type: ignore[attr-defined]
            return cast("Callable[P, T]", async_wrapper)

        @wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                with ErrorContextManager(e) as ctx:
                    logger.log(
                        error_level.to_logging_level(),
                        f"Error context for {func.__name__}: {e!s}",
                        extra={"error_context": ctx.to_dict()},
                    )
                    raise

        sync_wrapper.__signature__ = original_signature  # type: ignore[attr-defined]
        return sync_wrapper

    return decorator


def with_session(driver_attr: str = "driver") -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Open a Neo4j session around a method and inject it after ``self``.

    Usage:
        @with_session()
        async def get_cached(self, session, text):
            result = await session.run(query)
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            if not args:
                raise ValueError(f"{func.__name__} requires at least 'self' argument")

            self_obj = args[0]
            driver = getattr(self_obj, driver_attr, None)
            if driver is None:
                raise AttributeError(
                    f"Object {self_obj.__class__.__name__} has no attribute '{driver_attr}'. "
                    f"Either provide the correct driver_attr or ensure the object has a driver."
                )

            async with driver.session() as session:
                return await func(args[0], session, *args[1:], **kwargs)  # type: ignore[operator]

        return cast("Callable[P, T]", wrapper)

    return decorator
