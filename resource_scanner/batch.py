"""
Chunked batch runner for very large domain lists.

Splits every ``*.txt`` file in the input directory into ``.chunk`` files
and runs the scanner on each chunk in a subprocess under a wall-clock
limit.  A chunk that hits the limit gets SIGTERM (the scanner then
flushes and exits 124), and SIGKILL after a grace period.

Every run passes ``--resume`` against the shared checkpoint, so a chunk
that timed out (exit 124) is rerun without rescanning what it already
finished.  A chunk still timing out after ``--max-reruns`` reruns is left
in place for the next batch and the runner moves on.  Any other non-zero
exit stops the batch with that code.  A chunk file is deleted once it
completes.
"""

from __future__ import annotations

import argparse
import pathlib
import string
import subprocess
import sys
from collections.abc import Sequence

from resource_scanner.pipeline import process
from resource_scanner.utils import logger

log = logger.create_logger("Batch")

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_TIMEOUT_S = 600.0
DEFAULT_KILL_AFTER_S = 5.0
DEFAULT_MAX_RERUNS = 2
CHUNK_SUFFIX = ".chunk"
_SUFFIX_WIDTH = 3


def _chunk_suffix(index: int, width: int = _SUFFIX_WIDTH) -> str:
    """``0 -> "aaa"``, ``1 -> "aab"``, ... like ``split -a 3``."""
    letters = string.ascii_lowercase
    if index >= len(letters) ** width:
        raise ValueError(f"Too many chunks for a {width}-letter suffix")
    chars = []
    for _ in range(width):
        index, rem = divmod(index, len(letters))
        chars.append(letters[rem])
    return "".join(reversed(chars))


def split_into_chunks(source: pathlib.Path, directory: pathlib.Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[pathlib.Path]:
    """Write *source* as ``<stem>_aaa.chunk``, ``<stem>_aab.chunk``, ... files."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    chunks: list[pathlib.Path] = []
    buffer: list[str] = []

    def flush() -> None:
        target = directory / f"{source.stem}_{_chunk_suffix(len(chunks))}{CHUNK_SUFFIX}"
        target.write_text("".join(buffer), encoding="utf-8")
        chunks.append(target)
        buffer.clear()

    with open(source, encoding="utf-8", errors="replace") as fh:
        for line in fh:
            buffer.append(line if line.endswith("\n") else line + "\n")
            if len(buffer) >= chunk_size:
                flush()
    if buffer:
        flush()
    return chunks


def run_with_timeout(command: Sequence[str], timeout_s: float, kill_after_s: float = DEFAULT_KILL_AFTER_S) -> int:
    """Run *command*; SIGTERM at *timeout_s*, SIGKILL *kill_after_s* later.

    Returns the child's exit code, or 124 when the time limit was hit.
    """
    proc = subprocess.Popen(command)
    try:
        return proc.wait(timeout=timeout_s)
    except subprocess.TimeoutExpired:
        log.warn("Chunk timed out, sending SIGTERM", {"pid": proc.pid, "timeoutSeconds": timeout_s})
        proc.terminate()
        try:
            proc.wait(timeout=kill_after_s)
        except subprocess.TimeoutExpired:
            log.warn("Scanner ignored SIGTERM, killing", {"pid": proc.pid})
            proc.kill()
            proc.wait()
        return process.EXIT_TERMINATED
    except BaseException:
        proc.kill()
        proc.wait()
        raise


def scanner_command(chunk: pathlib.Path, args: argparse.Namespace, extra: Sequence[str]) -> list[str]:
    return [
        sys.executable,
        "-m",
        "resource_scanner",
        "--input",
        str(chunk),
        "--db",
        str(args.db),
        "--checkpoint",
        str(args.checkpoint),
        "--resume",
        "--concurrency",
        str(args.concurrency),
        "--pool-size",
        str(args.pool_size),
        "--max-retries",
        str(args.max_retries),
        *extra,
    ]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resource-scanner-batch",
        description="Split domain lists into chunks and scan each under a time limit",
        epilog="Unrecognised arguments are passed through to resource-scanner.",
    )
    parser.add_argument("--input-dir", type=pathlib.Path, default=pathlib.Path("input"))
    parser.add_argument("--output-dir", type=pathlib.Path, default=pathlib.Path("results"))
    parser.add_argument("--db", type=pathlib.Path, help="SQLite DB (default: <output-dir>/results.db)")
    parser.add_argument("--checkpoint", type=pathlib.Path, help="Checkpoint (default: <output-dir>/checkpoint.json)")
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE)
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT_S, help="Seconds per chunk (default: 600)")
    parser.add_argument("--kill-after", type=float, default=DEFAULT_KILL_AFTER_S)
    parser.add_argument(
        "--max-reruns", type=int, default=DEFAULT_MAX_RERUNS, help="Reruns of a chunk that timed out (default: 2)"
    )
    parser.add_argument("--concurrency", type=int, default=40)
    parser.add_argument("--pool-size", type=int, default=40)
    parser.add_argument("--max-retries", type=int, default=1)
    return parser


def run_batch(args: argparse.Namespace, extra: Sequence[str] = ()) -> int:
    """Split pending lists, then scan chunk by chunk.  Returns the exit code."""
    args.output_dir.mkdir(parents=True, exist_ok=True)
    args.db = args.db or args.output_dir / "results.db"
    args.checkpoint = args.checkpoint or args.output_dir / "checkpoint.json"

    sources = sorted(args.input_dir.glob("*.txt"))
    if not sources:
        log.info("No .txt files found to split", {"inputDir": str(args.input_dir)})
    for source in sources:
        chunks = split_into_chunks(source, args.input_dir, args.chunk_size)
        log.info("Split input", {"file": source.name, "chunks": len(chunks), "chunkSize": args.chunk_size})

    chunks = sorted(args.input_dir.glob(f"*{CHUNK_SUFFIX}"))
    if not chunks:
        log.info("No chunk files to process", {"inputDir": str(args.input_dir)})
        return process.EXIT_OK

    left_over: list[str] = []
    for index, chunk in enumerate(chunks, start=1):
        log.section(f"Chunk {index}/{len(chunks)}: {chunk.name}")
        code = _run_chunk(chunk, args, extra)

        if code == process.EXIT_TERMINATED:
            log.warn("Chunk still timing out, leaving it for the next batch", {"chunk": chunk.name})
            left_over.append(chunk.name)
            continue
        if code != process.EXIT_OK:
            log.error("Scanner failed, stopping batch", {"chunk": chunk.name, "exitCode": code})
            return code
        chunk.unlink(missing_ok=True)

    if left_over:
        log.warn("Some chunks did not finish", {"chunks": left_over})
    else:
        log.success("All chunks processed", {"database": str(args.db)})
    return process.EXIT_OK


def _run_chunk(chunk: pathlib.Path, args: argparse.Namespace, extra: Sequence[str]) -> int:
    """Run *chunk*, resuming it after each timeout up to ``args.max_reruns`` times."""
    runs = max(0, args.max_reruns) + 1
    code = process.EXIT_OK
    for run in range(1, runs + 1):
        log.start_timer(chunk.name)
        code = run_with_timeout(scanner_command(chunk, args, extra), args.timeout, args.kill_after)
        log.end_timer(chunk.name, f"Chunk run {run} finished with exit code {code}")
        if code != process.EXIT_TERMINATED:
            return code
        if run < runs:
            log.warn("Chunk timed out, resuming it", {"chunk": chunk.name, "run": run, "runs": runs})
    return code


def main(argv: list[str] | None = None) -> int:
    args, extra = build_parser().parse_known_args(argv)
    return run_batch(args, extra)


if __name__ == "__main__":
    sys.exit(main())
