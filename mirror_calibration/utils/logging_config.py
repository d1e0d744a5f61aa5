"""Logging setup for calibration runs.

Every log line carries the contextual fields of the task that emitted it
(``run_id`` for a calibration run, ``tile`` while a tile is measured).  The
fields live in a :mod:`contextvars` variable, so concurrent tile tasks each
see their own ``tile`` value.

Usage:
    cfg = load_config("calibration.yaml")
    setup_logging(cfg.logging, context={"app": "calibration"})
    with log_context(run_id=runner.run_id):
        ...

Output:
    Human: 2025-10-28T13:45:12.345Z | INFO     | run_id=a1b2 tile=0-1 | Homed tile
    JSON:  {"t": "2025-10-28T13:45:12.345+00:00", "lvl": "INFO", "tile": "0-1", "msg": "..."}

Calling :func:`setup_logging` again replaces the handlers it installed
earlier instead of adding more.
"""

import contextlib
import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Dict, Iterator, List, Optional

if TYPE_CHECKING:
    from mirror_calibration.configs.loader import LoggingConfig

_context_var: contextvars.ContextVar = contextvars.ContextVar("calibration_log_context", default={})

_installed: List[logging.Handler] = []


class ContextFormatter(logging.Formatter):
    """Render records with the active context fields, as text or JSON lines."""

    def __init__(self, fmt_mode: str = "human", use_color: bool = False):
        super().__init__()
        if fmt_mode not in ("human", "json"):
            raise ValueError(f"Unknown format mode: {fmt_mode}. Use 'human' or 'json'.")
        self.fmt_mode = fmt_mode
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        context = _context_var.get()
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        if self.fmt_mode == "json":
            payload = {"t": stamp.isoformat(), "lvl": record.levelname, "name": record.name}
            payload.update(context)
            payload["msg"] = record.getMessage()
            if record.exc_info:
                payload["exc"] = self.formatException(record.exc_info)
            return json.dumps(payload, default=str)

        level = f"{record.levelname:8s}"
        if self.use_color and record.levelno >= logging.WARNING:
            level = f"\033[33m{level}\033[0m"
        fields = " ".join(f"{key}={value}" for key, value in context.items())
        parts = [stamp.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z", level]
        if fields:
            parts.append(fields)
        parts.append(record.getMessage())
        line = " | ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    config: Optional["LoggingConfig"] = None,
    *,
    context: Optional[Dict[str, Any]] = None,
    stream: Optional[IO[str]] = None,
) -> List[logging.Handler]:
    """Install console (and optional file) handlers on the root logger.

    Parameters
    ----------
    config : LoggingConfig, optional
        The ``logging`` section of the calibration config; defaults apply
        when omitted.
    context : dict, optional
        Fields pushed onto the context before returning.
    stream : file-like, optional
        Console destination, ``sys.stderr`` by default.

    Returns
    -------
    list of logging.Handler
        The handlers now attached to the root logger.
    """
    level_name = config.log_level if config is not None else "INFO"
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {level_name}")

    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()

    stream = stream or sys.stderr
    console = logging.StreamHandler(stream)
    console.setFormatter(ContextFormatter("human", use_color=stream.isatty()))
    _installed.append(console)

    if config is not None and config.log_file:
        path = Path(config.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(ContextFormatter("json" if config.json else "human"))
        _installed.append(file_handler)

    root.setLevel(level)
    for handler in _installed:
        root.addHandler(handler)
    logging.captureWarnings(True)

    if context:
        push_context(**context)
    return list(_installed)


def push_context(**kwargs) -> None:
    """Add fields to every subsequent record of the current task."""
    _context_var.set({**_context_var.get(), **kwargs})


def pop_context(keys: Optional[List[str]] = None) -> None:
    """Remove *keys* from the context, or every field when *keys* is None."""
    if keys is None:
        _context_var.set({})
        return
    current = dict(_context_var.get())
    for key in keys:
        current.pop(key, None)
    _context_var.set(current)


def get_context() -> Dict[str, Any]:
    return dict(_context_var.get())


@contextlib.contextmanager
def log_context(**kwargs) -> Iterator[None]:
    """Push fields for the duration of a block, restoring the previous set."""
    token = _context_var.set({**_context_var.get(), **kwargs})
    try:
        yield
    finally:
        _context_var.reset(token)
