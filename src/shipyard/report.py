# report.py
from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional, Protocol

from .model import RunResult
from .ui.console import Console, get_console


class ReportSink(Protocol):
    """Receives the aggregated result once every job of a run is terminal."""

    def emit(self, result: RunResult) -> None:
        ...


class ConsoleReportSink:
    """Prints the results summary through the CLI console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console

    def emit(self, result: RunResult) -> None:
        (self.console or get_console()).print_results(result)


class JsonReportSink:
    """Writes the run report as JSON, one file per run or a fixed path."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def target(self, result: RunResult) -> Path:
        if self.path.suffix == ".json":
            return self.path
        return self.path / f"{result.run_id}.json"

    def emit(self, result: RunResult) -> None:
        out = self.target(result)
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(result.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(out)


class MultiReportSink:
    def __init__(self, *sinks: ReportSink):
        self.sinks: List[ReportSink] = list(sinks)

    def emit(self, result: RunResult) -> None:
        for sink in self.sinks:
            sink.emit(result)
