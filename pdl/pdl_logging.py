"""Logging and observability utilities for the PDL tracker.

This module provides structured logging, performance monitoring,
and observability hooks for roadmap operations, storage selection
and change broadcasting.
"""

from __future__ import annotations

import inspect
import json
import sys
import time
import logging as std_logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from functools import wraps


def setup_logging(log_level: Union[str, int] = std_logging.INFO, log_file: Optional[Path] = None) -> None:
    """Setup structured logging for the PDL tracker."""

    logger = std_logging.getLogger("pdl")
    logger.setLevel(log_level)

    # Clear existing handlers
    logger.handlers.clear()

    detailed_formatter = std_logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    json_formatter = JsonFormatter()

    # stdout carries the MCP stdio stream, console output goes to stderr
    console_handler = std_logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(detailed_formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = std_logging.FileHandler(log_file)
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(json_formatter)
        logger.addHandler(file_handler)

    logger.info("PDL logging initialized")


class JsonFormatter(std_logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: std_logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


class PerformanceMonitor:
    """Keep recent duration metrics for PDL operations."""

    def __init__(self, max_samples: int = 500):
        self.max_samples = max_samples
        self.metrics: Dict[str, List[Dict[str, Any]]] = {}

    def record_metric(self, name: str, value: Any, tags: Optional[Dict[str, str]] = None) -> None:
        """Record a performance metric."""
        metric = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "name": name,
            "value": value,
            "tags": tags or {}
        }

        samples = self.metrics.setdefault(name, [])
        samples.append(metric)
        if len(samples) > self.max_samples:
            del samples[: len(samples) - self.max_samples]

        logger = std_logging.getLogger("pdl.performance")
        logger.debug(f"Metric recorded: {name}={value}", extra={"extra_fields": metric})

    def get_metrics(self, name: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Get recorded metrics."""
        if name:
            return {name: self.metrics.get(name, [])}
        return self.metrics.copy()


# Global performance monitor instance
performance_monitor = PerformanceMonitor()


def _record_outcome(operation_name: str, start_time: float, error: Optional[Exception]) -> None:
    logger = std_logging.getLogger("pdl.performance")
    duration = time.time() - start_time

    if error is None:
        performance_monitor.record_metric(f"{operation_name}_duration", duration, {"status": "success"})
        logger.info(
            f"Completed operation: {operation_name} in {duration:.3f}s",
            extra={"extra_fields": {
                "operation": operation_name,
                "duration": duration,
                "status": "success"
            }}
        )
        return

    performance_monitor.record_metric(
        f"{operation_name}_duration",
        duration,
        {"status": "error", "error_type": type(error).__name__}
    )
    logger.warning(
        f"Failed operation: {operation_name} after {duration:.3f}s - {error}",
        extra={"extra_fields": {
            "operation": operation_name,
            "duration": duration,
            "status": "error",
            "error_type": type(error).__name__,
            "error_message": str(error)
        }}
    )


def log_performance(operation_name: str):
    """Decorator to log performance metrics for sync or async operations."""
    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                start_time = time.time()
                std_logging.getLogger("pdl.performance").debug(f"Starting operation: {operation_name}")
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _record_outcome(operation_name, start_time, e)
                    raise
                _record_outcome(operation_name, start_time, None)
                return result

            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            std_logging.getLogger("pdl.performance").debug(f"Starting operation: {operation_name}")
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _record_outcome(operation_name, start_time, e)
                raise
            _record_outcome(operation_name, start_time, None)
            return result

        return wrapper
    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields):
    """Context manager to log operations with custom fields."""
    logger = std_logging.getLogger("pdl.operations")
    start_time = time.time()

    logger.debug(f"Starting operation: {operation_name}", extra={"extra_fields": {
        "operation": operation_name,
        "status": "started",
        **extra_fields
    }})

    try:
        yield

        duration = time.time() - start_time
        logger.info(f"Completed operation: {operation_name} in {duration:.3f}s", extra={"extra_fields": {
            "operation": operation_name,
            "status": "completed",
            "duration": duration,
            **extra_fields
        }})

    except Exception as e:
        duration = time.time() - start_time
        logger.error(f"Failed operation: {operation_name} after {duration:.3f}s - {str(e)}", extra={"extra_fields": {
            "operation": operation_name,
            "status": "failed",
            "duration": duration,
            "error_type": type(e).__name__,
            "error_message": str(e),
            **extra_fields
        }}, exc_info=True)

        raise


class ObservabilityHooks:
    """Observability hooks for project events."""

    def __init__(self):
        self.hooks: Dict[str, List[Callable[..., Any]]] = {}
        self.logger = std_logging.getLogger("pdl.observability")

    def register_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        """Register a callback for a specific event type."""
        self.hooks.setdefault(event_type, []).append(callback)
        self.logger.debug(f"Registered hook for event: {event_type}")

    def unregister_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        callbacks = self.hooks.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def trigger_hooks(self, event_type: str, **data) -> None:
        """Trigger all callbacks for a specific event type."""
        if event_type in self.hooks:
            self.logger.debug(f"Triggering {len(self.hooks[event_type])} hooks for event: {event_type}")
            for hook in self.hooks[event_type]:
                try:
                    hook(**data)
                except Exception as e:
                    self.logger.error(f"Hook failed for event {event_type}: {e}")

    def log_project_event(self, event_type: str, project_name: Optional[str] = None, **data) -> None:
        """Log a project event and trigger hooks."""
        event_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "project_name": project_name,
            **data
        }

        self.logger.info(f"Project event: {event_type}", extra={"extra_fields": event_data})

        hook_data = {k: v for k, v in event_data.items() if k != "event_type"}
        self.trigger_hooks(event_type, **hook_data)


# Global observability hooks instance
observability_hooks = ObservabilityHooks()


def log_structural_change(action: str, project_name: str, **extra_fields):
    """Log an insert/delete/reorder applied to a project roadmap."""
    observability_hooks.log_project_event(
        f"structure_{action.lower()}",
        project_name=project_name,
        **extra_fields
    )


def log_backend_selected(kind: str, reason: str, location: str):
    observability_hooks.log_project_event(
        "backend_selected",
        backend=kind,
        reason=reason,
        location=location,
    )


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields):
    """Log an error with rich context information."""
    logger = std_logging.getLogger("pdl.errors")

    error_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields
    }

    logger.error(
        f"Error in {context.get('operation', 'unknown operation')}: {str(error)}",
        extra={"extra_fields": error_data},
        exc_info=True
    )
