from __future__ import annotations

import dataclasses
import datetime
import os
import pathlib
import re
import warnings

import loguru

from .errors import NumericAnomaly

LEVELS = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
NUMBER = re.compile(r"[+-]?\d+(\.\d*)?([eE][+-]?\d+)?")

builtin_showwarning = None


def capture_builtin_warnings():
    """Route `warnings.warn` (numeric anomalies included) to loguru."""
    global builtin_showwarning
    if builtin_showwarning is None:
        builtin_showwarning = warnings.showwarning

    def showwarning(message, category, *_, **__):
        loguru.logger.warning(f"{category.__name__}: {message}")

    warnings.showwarning = showwarning


def release_builtin_warnings():
    global builtin_showwarning
    if builtin_showwarning is not None:
        warnings.showwarning = builtin_showwarning
        builtin_showwarning = None


class WarningBudget:
    """Emit at most `limit` warnings of one kind during a single call."""

    limit: int
    emitted: int
    category: type[Warning]

    def __init__(self, limit: int = 10, category: type[Warning] = NumericAnomaly):
        self.limit = limit
        self.emitted = 0
        self.category = category

    @property
    def exhausted(self) -> bool:
        return self.emitted >= self.limit

    def warn(self, message: str):
        if self.exhausted:
            return
        warnings.warn(message, self.category, stacklevel=3)
        self.emitted += 1
        if self.exhausted:
            warnings.warn(
                "No more warnings like this will be thrown.",
                self.category,
                stacklevel=3,
            )


@dataclasses.dataclass
class _MessageStats:
    emitted: int = 0
    silenced: int = 0
    last_emit: datetime.datetime | None = None


class LogLimiter:
    """Write every level to its own file, `{prefix}.{i}.{level}.log`.

    Messages that only differ by the numbers in them count as one message; at
    a level with a rate of r seconds such a message is written at most once
    every r seconds. Levels default to a rate of 0, which writes everything.
    """

    _rates: dict[str, float]
    _stats: dict[tuple[str, str], _MessageStats]
    _bypass: bool

    def __init__(
        self,
        prefix: str,
        logs_directory: pathlib.Path | str = pathlib.Path("."),
        **rate_setting: float,
    ):
        self._rates = dict.fromkeys(LEVELS, 0.0) | rate_setting
        self._stats = {}
        self._bypass = False

        logs_directory = pathlib.Path(logs_directory)
        os.makedirs(logs_directory, exist_ok=True)
        loguru.logger.remove()
        for i, level in enumerate(LEVELS):
            loguru.logger.add(
                logs_directory / f"{prefix}.{i}.{level.lower()}.log",
                level=0,
                filter=self._sink_filter(level),
                mode="w",
            )

    def _sink_filter(self, level: str):
        def sink_filter(record: loguru.Record) -> bool:
            return record["level"].name == level and self._admit(record)

        return sink_filter

    def _admit(self, record: loguru.Record) -> bool:
        if self._bypass:
            return True
        level = record["level"].name
        stats = self._stats.setdefault(
            (level, NUMBER.sub("<number>", record["message"])), _MessageStats()
        )
        time = record["time"]
        if (
            stats.last_emit is None
            or (time - stats.last_emit).total_seconds() >= self._rates.get(level, 0.0)
        ):
            stats.last_emit = time
            stats.emitted += 1
            return True
        stats.silenced += 1
        return False

    def silence_report(self) -> list[str]:
        return [
            f"Stats for ({level = }, {message = !r}).\n"
            f"Silenced {stats.silenced} times. Emitted {stats.emitted} times.\n"
            f"Total {stats.silenced + stats.emitted} times."
            for (level, message), stats in self._stats.items()
            if stats.silenced > 0
        ]

    def log_silence_report(self):
        self._bypass = True
        try:
            for report in self.silence_report():
                loguru.logger.info(report)
        finally:
            self._bypass = False
