#!/usr/bin/env python3
"""
Run Zircolite once per EVTX file.

Each EVTX file gets one result file in output/raw_matches/. A result file that
already exists means the EVTX file was handled by a previous run and is
skipped, so an interrupted run can simply be restarted. Zircolite writes no
output file when nothing matched; that case, and any failure of the tool, is
recorded as an empty result ('[]') so the file is not retried.
"""

import json
import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List

from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TimeRemainingColumn

from evtx_indexer import relative_to
from result_naming import encode_result_name, result_file_for

logger = logging.getLogger(__name__)

EMPTY_RESULT = "[]"


@dataclass
class ZircoliteConfig:
    """Paths handed to each Zircolite invocation."""
    zircolite_py: Path
    ruleset: Path
    field_mappings: Path
    evtx_dir: Path
    raw_dir: Path
    logs_dir: Path
    python: str = sys.executable
    cwd: Path = Path(".")

    @property
    def temp_result(self) -> Path:
        return self.logs_dir / "_zircolite_temp.json"


@dataclass
class RunnerStats:
    processed: int = 0
    skipped: int = 0
    with_hits: int = 0
    failures: int = 0


def count_detections(result_file: Path) -> int:
    """Number of detection entries in a result file, 0 when unreadable."""
    try:
        with open(result_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return 0
    return len(data) if isinstance(data, list) else 0


class ZircoliteRunner:
    """Sequential, resumable Zircolite driver."""

    def __init__(self, config: ZircoliteConfig):
        self.config = config
        self.stats = RunnerStats()

    def build_command(self, evtx_file: Path, outfile: Path) -> List[str]:
        return [
            self.config.python, str(self.config.zircolite_py),
            "--evtx", str(evtx_file),
            "--ruleset", str(self.config.ruleset),
            "--config", str(self.config.field_mappings),
            "--outfile", str(outfile),
            "--quiet",
        ]

    def _write_empty(self, result_file: Path):
        with open(result_file, 'w', encoding='utf-8') as f:
            f.write(EMPTY_RESULT + "\n")

    def run_one(self, evtx_file: Path, position: int = 0, total: int = 0) -> bool:
        """Process one EVTX file. Returns False when it was skipped."""
        relative_path = relative_to(evtx_file, self.config.evtx_dir)
        safe_name = encode_result_name(relative_path)
        result_file = result_file_for(self.config.raw_dir, relative_path)

        if result_file.exists():
            self.stats.skipped += 1
            return False

        logger.info(f"[{position}/{total}] {relative_path[:80]}")

        temp_result = self.config.temp_result
        temp_result.unlink(missing_ok=True)
        stderr_log = self.config.logs_dir / f"stderr_{safe_name}.log"

        try:
            with open(stderr_log, 'w', encoding='utf-8') as stderr:
                result = subprocess.run(
                    self.build_command(evtx_file, temp_result),
                    stdout=subprocess.PIPE,
                    stderr=stderr,
                    cwd=str(self.config.cwd),
                    encoding="utf-8",
                    errors="replace",
                )
        except OSError as e:
            logger.warning(f"  Failed on: {relative_path} ({e})")
            self._write_empty(result_file)
            self.stats.failures += 1
            return True

        if result.stdout:
            logger.debug(result.stdout.strip())

        if result.returncode != 0:
            logger.warning(f"  Failed on: {relative_path} (exit code {result.returncode})")
            self._write_empty(result_file)
            self.stats.failures += 1
            return True

        if temp_result.exists():
            try:
                shutil.move(str(temp_result), str(result_file))
            except OSError as e:
                logger.warning(f"  Failed on: {relative_path} (could not move result: {e})")
                self._write_empty(result_file)
                self.stats.failures += 1
                return True
            n_matches = count_detections(result_file)
            if n_matches > 0:
                self.stats.with_hits += 1
                logger.info(f"  -> {n_matches} detection(s)")
        else:
            # Zircolite ran OK but produced no output file = no detections
            self._write_empty(result_file)

        return True

    def run_all(self, evtx_files: List[Path]) -> RunnerStats:
        """Run every EVTX file in order and return the counters."""
        self.config.raw_dir.mkdir(parents=True, exist_ok=True)
        self.config.logs_dir.mkdir(parents=True, exist_ok=True)
        total = len(evtx_files)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeRemainingColumn(),
        ) as progress:
            task = progress.add_task("[cyan]Running Zircolite...", total=total)

            for position, evtx_file in enumerate(evtx_files, start=1):
                self.stats.processed += 1
                self.run_one(evtx_file, position, total)
                progress.update(task, advance=1)

        self.log_summary()
        return self.stats

    def log_summary(self):
        logger.info("=== Zircolite Summary ===")
        logger.info(f"  Processed:  {self.stats.processed}")
        logger.info(f"  Skipped:    {self.stats.skipped} (already done)")
        logger.info(f"  With hits:  {self.stats.with_hits}")
        logger.info(f"  Failures:   {self.stats.failures}")
