#!/usr/bin/env python3
"""
Index SigmaHQ YAML rules by rule id and by title.

Zircolite results carry the rule title and (depending on the ruleset build)
the Sigma id, but not the references. The index built here lets the triplet
builder recover references, author, status and logsource from the original
YAML. Rule files that fail to parse are skipped: the index only enriches the
join, so a broken rule must never stop a run. Skips are counted so they show
up in the final summary.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

RULE_GLOBS = ("*.yml", "*.yaml")


@dataclass(frozen=True)
class RuleMetadata:
    """Metadata of one Sigma rule, taken from its first YAML document."""
    id: str = ""
    title: str = ""
    references: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    description: str = ""
    level: str = ""
    status: str = ""
    logsource: Dict = field(default_factory=dict)
    author: str = ""
    path: str = ""

    @classmethod
    def from_document(cls, content: Dict, path: str) -> "RuleMetadata":
        return cls(
            id=str(content.get("id") or ""),
            title=str(content.get("title") or ""),
            references=list(content.get("references") or []),
            tags=list(content.get("tags") or []),
            description=content.get("description") or "",
            level=content.get("level") or "",
            status=content.get("status") or "",
            logsource=content.get("logsource") or {},
            author=content.get("author") or "",
            path=path,
        )


class SigmaRuleIndex:
    """Read-only lookup of RuleMetadata keyed by rule id and stripped title."""

    def __init__(self, entries: Mapping[str, RuleMetadata], files_scanned: int = 0, parse_errors: int = 0):
        self._entries = MappingProxyType(dict(entries))
        self.files_scanned = files_scanned
        self.parse_errors = parse_errors

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[RuleMetadata]:
        if not key:
            return None
        return self._entries.get(key)

    def resolve(self, sigma_id: str, title: str) -> Optional[RuleMetadata]:
        """Resolve a detection's metadata: id first, then stripped title, else None."""
        for key in (sigma_id, (title or "").strip()):
            meta = self.get(key)
            if meta is not None:
                return meta
        return None


def find_rule_files(rules_dir: Path) -> List[Path]:
    files = []
    for pattern in RULE_GLOBS:
        files.extend(rules_dir.rglob(pattern))
    return sorted(files, key=lambda p: str(p))


def _display_path(path: Path) -> str:
    try:
        return str(path.resolve().relative_to(Path.cwd().resolve()))
    except ValueError:
        return str(path)


def load_rule_file(path: Path) -> Optional[RuleMetadata]:
    """Parse one rule file. Returns None for files that are not Sigma rules."""
    with open(path, 'r', encoding='utf-8', errors='ignore') as f:
        docs = list(yaml.safe_load_all(f))

    if not docs:
        return None
    content = docs[0]
    if not isinstance(content, dict) or not ("id" in content or "title" in content):
        return None
    return RuleMetadata.from_document(content, _display_path(path))


def build_sigma_index(rules_dir: Path) -> SigmaRuleIndex:
    """Build the id/title index from every YAML rule under rules_dir."""
    entries: Dict[str, RuleMetadata] = {}
    parse_errors = 0
    rule_files = find_rule_files(rules_dir)

    for rule_file in rule_files:
        try:
            meta = load_rule_file(rule_file)
        except (yaml.YAMLError, OSError, TypeError, ValueError) as e:
            parse_errors += 1
            logger.debug(f"Skipping unparsable rule {rule_file}: {e}")
            continue

        if meta is None:
            continue
        if meta.id:
            entries[meta.id] = meta
        if meta.title.strip():
            entries[meta.title.strip()] = meta

    index = SigmaRuleIndex(entries, files_scanned=len(rule_files), parse_errors=parse_errors)
    logger.info(
        f"{len(index)} rule identifiers (IDs/titles) indexed from {index.files_scanned} files"
        f" ({parse_errors} unparsable)."
    )
    return index


def count_compiled_rules(ruleset_path: Path) -> Optional[int]:
    """Number of rules in a compiled Zircolite JSON ruleset, None if unreadable."""
    if not ruleset_path.is_file():
        return None
    try:
        with open(ruleset_path, 'r', encoding='utf-8') as f:
            rules = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not parse compiled ruleset {ruleset_path.name} as JSON: {e}")
        return None
    return len(rules) if isinstance(rules, list) else None
