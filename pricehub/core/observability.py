import functools
import inspect
import logging
import time
from typing import Callable

from .logging import _redact

logger = logging.getLogger("steps")


def _elapsed_ms(t0: float) -> int:
    return round((time.perf_counter() - t0) * 1000)


def log_step(step: str):
    """
    Log entry, exit, elapsed time and exceptions of a pipeline step.
    Example: @log_step("scheduler.check_due_rules")
    """
    def decorator(fn: Callable):
        def _enter(kwargs):
            logger.debug("ENTER %s", step, extra={"extra": {"step": step, "args": _redact(kwargs)}})

        def _exit(t0, result):
            logger.info("EXIT %s", step, extra={"extra": {"step": step, "elapsed_ms": _elapsed_ms(t0),
                                                          "result_preview": str(result)[:200]}})

        def _fail(t0, exc):
            logger.error("ERROR %s: %s", step, exc, extra={"extra": {"step": step, "elapsed_ms": _elapsed_ms(t0)}},
                         exc_info=True)

        @functools.wraps(fn)
        async def awrapped(*args, **kwargs):
            t0 = time.perf_counter()
            _enter(kwargs)
            try:
                result = await fn(*args, **kwargs)
            except Exception as e:
                _fail(t0, e)
                raise
            _exit(t0, result)
            return result

        @functools.wraps(fn)
        def wrapped(*args, **kwargs):
            t0 = time.perf_counter()
            _enter(kwargs)
            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                _fail(t0, e)
                raise
            _exit(t0, result)
            return result

        return awrapped if inspect.iscoroutinefunction(fn) else wrapped

    return decorator
