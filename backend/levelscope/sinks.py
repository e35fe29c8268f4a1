"""
Levelscope: Result Sinks

A sink receives analysis output as plain dict records (see
``AnalysisResult.to_records``). Sinks must not assume any UI or storage.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import structlog

log = structlog.get_logger(__name__)


@runtime_checkable
class ResultSink(Protocol):
    def publish(self, records: list[dict[str, Any]]) -> None:
        ...


class ListSink:
    """Collects published records in memory."""

    def __init__(self, max_records: int = 10_000):
        self.max_records = max_records
        self.records: list[dict[str, Any]] = []

    def publish(self, records: list[dict[str, Any]]) -> None:
        self.records.extend(records)
        overflow = len(self.records) - self.max_records
        if overflow > 0:
            del self.records[:overflow]

    def of_type(self, record_type: str) -> list[dict[str, Any]]:
        return [r for r in self.records if r.get("record_type") == record_type]


class LogSink:
    """Emits one structured log event per record."""

    def publish(self, records: list[dict[str, Any]]) -> None:
        for record in records:
            log.info("analysis.record", **record)
