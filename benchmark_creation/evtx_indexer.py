#!/usr/bin/env python3
"""
Index the EVTX corpus.

Walks data/evtx_samples/ (any nesting, usually one folder per ATT&CK tactic),
keeps files with an .evtx extension in any letter case, sorts them and
optionally truncates the list to the first N entries.
"""

import logging
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 5


def find_evtx_files(evtx_dir: Path, limit: int = 0) -> List[Path]:
    """Return EVTX files under evtx_dir sorted by path, capped at limit when > 0."""
    files = [
        p for p in evtx_dir.rglob("*")
        if p.is_file() and p.suffix.lower() == ".evtx"
    ]
    files.sort(key=lambda p: str(p))

    if limit > 0 and len(files) > limit:
        files = files[:limit]
        logger.warning(f"Limiting processing to the first {limit} files.")

    return files


def write_index(files: List[Path], index_file: Path) -> Path:
    """Write one path per line, the format later steps and humans read."""
    index_file.parent.mkdir(parents=True, exist_ok=True)
    with open(index_file, 'w', encoding='utf-8') as f:
        for path in files:
            f.write(f"{path}\n")
    return index_file


def relative_to(path: Path, root: Path) -> str:
    """Relative POSIX-style path, or the path unchanged when outside root."""
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return path.as_posix()


def log_sample(files: List[Path], base_dir: Optional[Path] = None):
    """Log the first few indexed files so a bad corpus is easy to spot."""
    logger.info("Sample files:")
    for path in files[:SAMPLE_SIZE]:
        shown = relative_to(path, base_dir) if base_dir else str(path)
        logger.info(f"    {shown}")
