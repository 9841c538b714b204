"""
Result sinks: where the writer stage sends finished scan results.

Only the database sink is *persistent*.  The orchestrator checkpoints a
domain after a persistent sink has committed it; the stream sinks (JSON
lines, CSV, text) bypass checkpointing entirely.
"""

from __future__ import annotations

import asyncio
import csv
import json
import pathlib
import sys
from typing import IO, Literal

from resource_scanner.models import scan
from resource_scanner.storage import database
from resource_scanner.utils import logger, serialization

log = logger.create_logger("Sink")

OutputFormat = Literal["db", "json", "csv", "text"]

CSV_COLUMNS = (
    "domain",
    "success",
    "error",
    "finalUrl",
    "screenshotPath",
    "url",
    "resourceType",
    "isExternal",
    "hasSri",
)


class ResultSink:
    """Base sink.  Subclasses implement :meth:`write`."""

    persistent = False

    def open(self) -> None:
        """Acquire the underlying resource."""

    async def write(self, result: scan.ScanResult) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release the underlying resource.  Safe to call twice."""


class DatabaseSink(ResultSink):
    """Commits results to SQLite from a worker thread."""

    persistent = True

    def __init__(self, store: database.ScanStore) -> None:
        self.store = store

    def open(self) -> None:
        self.store.open()

    async def write(self, result: scan.ScanResult) -> None:
        await asyncio.to_thread(self.store.write_result, result)

    def close(self) -> None:
        self.store.close()


class _StreamSink(ResultSink):
    """Writes to a file, or to stdout when no path is given."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path
        self._stream: IO[str] | None = None
        self._owns_stream = False

    def open(self) -> None:
        if self._stream is not None:
            return
        if self.path:
            target = pathlib.Path(self.path)
            target.parent.mkdir(parents=True, exist_ok=True)
            self._stream = open(target, "w", encoding="utf-8", newline="")  # noqa: SIM115
            self._owns_stream = True
        else:
            self._stream = sys.stdout
        log.debug("Writing results", {"format": type(self).__name__, "target": self.path or "stdout"})
        self._start()

    def _start(self) -> None:
        """Hook for writing a header once the stream is open."""

    @property
    def stream(self) -> IO[str]:
        if self._stream is None:
            self.open()
        assert self._stream is not None
        return self._stream

    def close(self) -> None:
        if self._stream is None:
            return
        self._stream.flush()
        if self._owns_stream:
            self._stream.close()
        self._stream = None
        self._owns_stream = False


class JsonSink(_StreamSink):
    """One JSON object per line, camelCase keys."""

    async def write(self, result: scan.ScanResult) -> None:
        self.stream.write(json.dumps(serialization.to_output_dict(result)) + "\n")
        self.stream.flush()


class CsvSink(_StreamSink):
    """One row per resource; results without resources get one bare row."""

    def __init__(self, path: str | None = None) -> None:
        super().__init__(path)
        self._writer: csv.DictWriter[str] | None = None

    def _start(self) -> None:
        self._writer = csv.DictWriter(self.stream, fieldnames=CSV_COLUMNS)
        self._writer.writeheader()

    async def write(self, result: scan.ScanResult) -> None:
        stream = self.stream
        assert self._writer is not None
        base = {
            "domain": result.domain,
            "success": int(result.success),
            "error": result.error or "",
            "finalUrl": result.final_url or "",
            "screenshotPath": result.screenshot_path or "",
        }
        if not result.resources:
            self._writer.writerow({**base, "url": "", "resourceType": "", "isExternal": "", "hasSri": ""})
        for resource in result.resources:
            self._writer.writerow(
                {
                    **base,
                    "url": resource.url,
                    "resourceType": resource.resource_type,
                    "isExternal": int(resource.is_external),
                    "hasSri": "" if resource.has_sri is None else int(resource.has_sri),
                }
            )
        stream.flush()


class TextSink(_StreamSink):
    """Human-readable block per domain."""

    async def write(self, result: scan.ScanResult) -> None:
        lines = [f"=== {result.domain} ==="]
        if result.success:
            lines.append(f"Final URL: {result.final_url}")
            if result.screenshot_path:
                lines.append(f"Screenshot: {result.screenshot_path}")
            lines.append(f"Resources: {len(result.resources)}")
            for resource in result.resources:
                marker = "external" if resource.is_external else "internal"
                sri_note = ""
                if resource.has_sri is not None:
                    sri_note = ", sri" if resource.has_sri else ", no sri"
                lines.append(f"  [{resource.resource_type}] {resource.url} ({marker}{sri_note})")
            tree = result.dependencies
            if tree is not None:
                lines.append(
                    f"Dependencies: {len(tree.first_party)} first-party, "
                    f"{len(tree.third_party)} third-party hosts, "
                    f"{len(tree.fourth_party)} hosts loading fourth parties"
                )
                for parent_host, children in sorted(tree.fourth_party.items()):
                    for child_host, bucket in sorted(children.items()):
                        confidences = sorted({r.confidence for r in bucket})
                        lines.append(f"  {parent_host} -> {child_host} ({len(bucket)}, {'/'.join(confidences)})")
        else:
            lines.append(f"FAILED after {result.attempts} attempt(s): {result.error}")
        self.stream.write("\n".join(lines) + "\n\n")
        self.stream.flush()


def create_sink(output: OutputFormat, *, db_path: str, output_file: str | None = None) -> ResultSink:
    """Build the sink for an output format."""
    if output == "db":
        return DatabaseSink(database.ScanStore(db_path))
    if output == "json":
        return JsonSink(output_file)
    if output == "csv":
        return CsvSink(output_file)
    if output == "text":
        return TextSink(output_file)
    raise ValueError(f"Unknown output format: {output}")
