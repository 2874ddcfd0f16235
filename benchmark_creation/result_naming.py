#!/usr/bin/env python3
"""
Mapping between EVTX relative paths and per-file Zircolite result names.

Result files live flat in output/raw_matches/, so the relative path of each
EVTX file is folded into a single file name:

    encode: "Execution/host1/sysmon.evtx" -> "Execution__host1__sysmon"
    decode: "Execution__host1__sysmon"    -> "Execution/host1/sysmon.evtx"

Both '/' and '\\' become the separator token on encode. Decode always emits
'/' and a lower-case '.evtx' extension, so the round trip is exact for
'/'-separated paths whose components contain no '__' and whose extension is
'.evtx'. Callers holding the EVTX index should prefer an exact lookup (see
build_name_lookup).
"""

import re
from pathlib import Path
from typing import Dict, Iterable

SEPARATOR_TOKEN = "__"
EVTX_EXTENSION = ".evtx"
RESULT_EXTENSION = ".json"

_PATH_SEPARATORS = re.compile(r"[/\\]")
_EVTX_SUFFIX = re.compile(r"\.evtx$", re.IGNORECASE)


def encode_result_name(relative_path: str) -> str:
    """Turn an EVTX path (relative to the EVTX root) into a flat result name."""
    safe_name = _PATH_SEPARATORS.sub(SEPARATOR_TOKEN, relative_path)
    return _EVTX_SUFFIX.sub("", safe_name)


def decode_result_name(safe_name: str) -> str:
    """Inverse of encode_result_name for the documented path subset."""
    if safe_name.endswith(RESULT_EXTENSION):
        safe_name = safe_name[:-len(RESULT_EXTENSION)]
    return safe_name.replace(SEPARATOR_TOKEN, "/") + EVTX_EXTENSION


def result_file_for(raw_dir: Path, relative_path: str) -> Path:
    return raw_dir / f"{encode_result_name(relative_path)}{RESULT_EXTENSION}"


def build_name_lookup(relative_paths: Iterable[str]) -> Dict[str, str]:
    """Map encoded names back to the exact relative paths they came from."""
    return {
        encode_result_name(p): p.replace("\\", "/")
        for p in relative_paths
    }
