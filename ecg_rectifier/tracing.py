"""
Tracing hooks for the digitization pipeline.

Components accept a `Tracer` and report structured events through it instead
of printing. The default `NullTracer` is disabled, and callers in hot loops
check `tracer.enabled` before building an event payload.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple


class Tracer:
    """Base tracer: receives named events with keyword fields.

    Subclasses override `emit`; the base implementation discards events.
    """

    enabled: bool = True

    def emit(self, event: str, **fields: Any) -> None:
        pass

    @contextmanager
    def span(self, name: str, **fields: Any):
        """Time a block and emit `<name>.done` with its duration in seconds."""
        if not self.enabled:
            yield
            return

        start = time.perf_counter()
        try:
            yield
        finally:
            self.emit(f"{name}.done", duration=time.perf_counter() - start, **fields)


class NullTracer(Tracer):
    """Tracer that drops every event."""

    enabled = False

    def emit(self, event: str, **fields: Any) -> None:
        pass


class LoggingTracer(Tracer):
    """Forward events to a logger as `event key=value ...` lines."""

    def __init__(self, logger: Optional[logging.Logger] = None, level: int = logging.DEBUG):
        self.logger = logger or logging.getLogger("ecg_rectifier.trace")
        self.level = level

    def emit(self, event: str, **fields: Any) -> None:
        if not self.logger.isEnabledFor(self.level):
            return
        payload = " ".join(f"{key}={value}" for key, value in fields.items())
        self.logger.log(self.level, "%s %s", event, payload)


class CollectingTracer(Tracer):
    """Keep events in memory, mostly for tests and diagnostics dumps."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def emit(self, event: str, **fields: Any) -> None:
        self.events.append((event, fields))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def find(self, event: str) -> List[Dict[str, Any]]:
        return [fields for name, fields in self.events if name == event]


NULL_TRACER = NullTracer()


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for scripts."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )
