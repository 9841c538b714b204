"""Tests for resource_scanner.batch: chunk splitting and the chunk loop."""

from __future__ import annotations

import pathlib
import subprocess
import sys
from unittest import mock

import pytest

from resource_scanner import batch
from resource_scanner.pipeline import process


@pytest.fixture()
def dirs(tmp_path: pathlib.Path) -> tuple[pathlib.Path, pathlib.Path]:
    input_dir = tmp_path / "input"
    input_dir.mkdir()
    return input_dir, tmp_path / "results"


def _args(input_dir: pathlib.Path, output_dir: pathlib.Path, *extra: str):
    return batch.build_parser().parse_known_args(
        ["--input-dir", str(input_dir), "--output-dir", str(output_dir), *extra]
    )


class TestChunkSuffix:
    @pytest.mark.parametrize(("index", "suffix"), [(0, "aaa"), (1, "aab"), (25, "aaz"), (26, "aba"), (17575, "zzz")])
    def test_suffixes(self, index: int, suffix: str) -> None:
        assert batch._chunk_suffix(index) == suffix

    def test_overflow(self) -> None:
        with pytest.raises(ValueError):
            batch._chunk_suffix(26**3)


class TestSplit:
    def test_splits_by_line_count(self, tmp_path: pathlib.Path) -> None:
        source = tmp_path / "list.txt"
        source.write_text("".join(f"site{i}.com\n" for i in range(5)))
        chunks = batch.split_into_chunks(source, tmp_path, chunk_size=2)

        assert [c.name for c in chunks] == ["list_aaa.chunk", "list_aab.chunk", "list_aac.chunk"]
        assert chunks[0].read_text() == "site0.com\nsite1.com\n"
        assert chunks[2].read_text() == "site4.com\n"

    def test_missing_trailing_newline(self, tmp_path: pathlib.Path) -> None:
        source = tmp_path / "list.txt"
        source.write_text("a.com\nb.com")
        [chunk] = batch.split_into_chunks(source, tmp_path, chunk_size=10)
        assert chunk.read_text() == "a.com\nb.com\n"

    def test_empty_file(self, tmp_path: pathlib.Path) -> None:
        source = tmp_path / "empty.txt"
        source.write_text("")
        assert batch.split_into_chunks(source, tmp_path) == []


class TestRunWithTimeout:
    def test_exit_code_passed_through(self) -> None:
        proc = mock.MagicMock()
        proc.wait.return_value = 3
        with mock.patch.object(batch.subprocess, "Popen", return_value=proc):
            assert batch.run_with_timeout(["scanner"], 10) == 3

    def test_timeout_terminates(self) -> None:
        proc = mock.MagicMock()
        proc.wait.side_effect = [subprocess.TimeoutExpired("scanner", 10), 124]
        with mock.patch.object(batch.subprocess, "Popen", return_value=proc):
            assert batch.run_with_timeout(["scanner"], 10) == process.EXIT_TERMINATED
        proc.terminate.assert_called_once()
        proc.kill.assert_not_called()

    def test_kill_after_grace(self) -> None:
        proc = mock.MagicMock()
        proc.wait.side_effect = [
            subprocess.TimeoutExpired("scanner", 10),
            subprocess.TimeoutExpired("scanner", 5),
            -9,
        ]
        with mock.patch.object(batch.subprocess, "Popen", return_value=proc):
            assert batch.run_with_timeout(["scanner"], 10, kill_after_s=5) == process.EXIT_TERMINATED
        proc.kill.assert_called_once()

    def test_real_process(self) -> None:
        assert batch.run_with_timeout([sys.executable, "-c", "raise SystemExit(7)"], 30) == 7


class TestRunBatch:
    def test_command_line(self, dirs: tuple[pathlib.Path, pathlib.Path]) -> None:
        input_dir, output_dir = dirs
        args, extra = _args(input_dir, output_dir, "--sri")
        args.db = output_dir / "results.db"
        args.checkpoint = output_dir / "checkpoint.json"
        command = batch.scanner_command(input_dir / "x_aaa.chunk", args, extra)

        assert command[:3] == [sys.executable, "-m", "resource_scanner"]
        assert command[command.index("--concurrency") + 1] == "40"
        assert command[command.index("--max-retries") + 1] == "1"
        assert "--resume" in command
        assert command[-1] == "--sri"

    def test_timed_out_chunk_resumed_then_deleted(self, dirs: tuple[pathlib.Path, pathlib.Path]) -> None:
        input_dir, output_dir = dirs
        (input_dir / "list.txt").write_text("a.com\nb.com\nc.com\n")
        args, extra = _args(input_dir, output_dir, "--chunk-size", "2")

        with mock.patch.object(batch, "run_with_timeout", side_effect=[0, process.EXIT_TERMINATED, 0]) as runner:
            assert batch.run_batch(args, extra) == process.EXIT_OK

        inputs = [call.args[0][call.args[0].index("--input") + 1] for call in runner.call_args_list]
        assert [pathlib.Path(p).name for p in inputs] == ["list_aaa.chunk", "list_aab.chunk", "list_aab.chunk"]
        assert list(input_dir.glob("*.chunk")) == []
        assert output_dir.is_dir()

    def test_chunk_left_after_reruns(self, dirs: tuple[pathlib.Path, pathlib.Path]) -> None:
        input_dir, output_dir = dirs
        (input_dir / "list.txt").write_text("a.com\nb.com\n")
        args, extra = _args(input_dir, output_dir, "--chunk-size", "1", "--max-reruns", "1")
        codes = [process.EXIT_TERMINATED, process.EXIT_TERMINATED, process.EXIT_OK]

        with mock.patch.object(batch, "run_with_timeout", side_effect=codes) as runner:
            assert batch.run_batch(args, extra) == process.EXIT_OK

        assert runner.call_count == 3
        assert [p.name for p in input_dir.glob("*.chunk")] == ["list_aaa.chunk"]

    def test_failure_stops_batch(self, dirs: tuple[pathlib.Path, pathlib.Path]) -> None:
        input_dir, output_dir = dirs
        (input_dir / "list.txt").write_text("a.com\nb.com\n")
        args, extra = _args(input_dir, output_dir, "--chunk-size", "1")

        with mock.patch.object(batch, "run_with_timeout", return_value=process.EXIT_FATAL) as runner:
            assert batch.run_batch(args, extra) == process.EXIT_FATAL

        runner.assert_called_once()
        assert sorted(p.name for p in input_dir.glob("*.chunk")) == ["list_aaa.chunk", "list_aab.chunk"]

    def test_nothing_to_do(self, dirs: tuple[pathlib.Path, pathlib.Path]) -> None:
        input_dir, output_dir = dirs
        args, extra = _args(input_dir, output_dir)
        assert batch.run_batch(args, extra) == process.EXIT_OK
