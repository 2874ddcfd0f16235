#!/usr/bin/env python3
"""
Build (EVTX, Sigma rule, CTI reference) triplets from Zircolite results.

One triplet is emitted per detection entry of every non-empty result file in
output/raw_matches/. Each detection is joined with the SigmaHQ rule metadata
(id first, title second), its ATT&CK technique ids are pulled from the tags,
and the rule's references are classified to decide whether the match is
CTI-linked.
"""

import json
import logging
import re
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from reference_classifier import classify_reference
from result_naming import decode_result_name
from sigma_indexer import RuleMetadata, SigmaRuleIndex

logger = logging.getLogger(__name__)


TACTICS = [
    "Credential Access", "Defense Evasion", "Discovery", "Execution",
    "Exfiltration", "Impact", "Initial Access", "Lateral Movement",
    "Persistence", "Privilege Escalation", "Collection", "Command and Control",
]
TACTICS_BY_KEY = {t.lower(): t for t in TACTICS}

TECHNIQUE_TAG_PATTERN = re.compile(r"attack\.(t\d{4}(?:\.\d{3})?)")


@dataclass
class DetectionRecord:
    """One rule match as written by Zircolite."""
    title: str
    level: str
    tags: List[str]
    sigma_id: str
    count: int
    matches: List[Dict] = field(default_factory=list)

    @classmethod
    def from_zircolite(cls, detection: Dict) -> "DetectionRecord":
        matches = detection.get("matches", [])
        if not isinstance(matches, list):
            matches = []
        tags = detection.get("tags", [])
        count = detection.get("count")
        # null-valued keys fall through to the next candidate
        return cls(
            title=str(detection.get("title") or ""),
            level=detection.get("rule_level") or detection.get("level") or "",
            tags=tags if isinstance(tags, list) else [],
            sigma_id=str(detection.get("sigma_id") or detection.get("id") or ""),
            count=len(matches) if count is None else count,
            matches=matches,
        )


@dataclass(frozen=True)
class CTIReference:
    url: str
    classification: str


@dataclass(frozen=True)
class Triplet:
    """A detection joined with its rule metadata and classified references.

    has_cti_link is derived from cti_references and cannot be set directly.
    """
    evtx_file: str
    evtx_tactic_folder: str
    sigma_rule: Dict
    technique_ids: List[str]
    all_references: List[str]
    cti_references: List[CTIReference]
    matched_event_count: int
    has_cti_link: bool = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "has_cti_link", len(self.cti_references) > 0)

    def to_dict(self) -> Dict:
        return asdict(self)

    def to_flat_row(self) -> Dict:
        """Single-level row for CSV export."""
        rule = self.sigma_rule
        return {
            "evtx_file": self.evtx_file,
            "evtx_tactic_folder": self.evtx_tactic_folder,
            "rule_title": rule.get("title", ""),
            "rule_id": rule.get("id", ""),
            "rule_level": rule.get("level", ""),
            "rule_status": rule.get("status", ""),
            "yaml_path": rule.get("yaml_path", ""),
            "technique_ids": ";".join(self.technique_ids),
            "cti_urls": ";".join(r.url for r in self.cti_references),
            "reference_count": len(self.all_references),
            "matched_event_count": self.matched_event_count,
            "has_cti_link": self.has_cti_link,
        }


@dataclass
class BuildStats:
    result_files: int = 0
    parse_errors: int = 0
    empty_results: int = 0
    total_detections: int = 0
    triplets_with_cti: int = 0
    triplets_without_cti: int = 0
    unresolved_rules: int = 0
    invalid_detections: int = 0

    @property
    def files_with_detections(self) -> int:
        return self.result_files - self.empty_results - self.parse_errors


def infer_tactic_from_path(evtx_path: str) -> str:
    """Infer the ATT&CK tactic from the folder names of an EVTX path."""
    for part in evtx_path.replace("\\", "/").split("/"):
        key = part.strip().lower()
        if key in TACTICS_BY_KEY:
            return TACTICS_BY_KEY[key]
    return "unknown"


def extract_technique_ids(tags) -> List[str]:
    """Technique ids from 'attack.tNNNN[.NNN]' tags, uppercased, deduplicated, sorted."""
    if not tags:
        return []
    ids = set()
    for tag in tags:
        m = TECHNIQUE_TAG_PATTERN.search(str(tag).lower())
        if m:
            ids.add(m.group(1).upper())
    return sorted(ids)


def classify_references(references: List) -> List[CTIReference]:
    """Keep the references classified cti or likely_cti, in their original order."""
    cti_references = []
    for ref in references:
        cls = classify_reference(str(ref))
        if cls.is_cti_relevant:
            cti_references.append(CTIReference(url=str(ref), classification=cls.value))
    return cti_references


def _prefer(meta: Optional[RuleMetadata], attr: str, fallback):
    if meta is not None:
        value = getattr(meta, attr)
        if value:
            return value
    return fallback


def build_triplet(detection: DetectionRecord, evtx_file: str, tactic: str,
                  meta: Optional[RuleMetadata]) -> Triplet:
    """Join one detection with its resolved metadata (None when unresolved)."""
    references = list(meta.references) if meta else []
    return Triplet(
        evtx_file=evtx_file,
        evtx_tactic_folder=tactic,
        sigma_rule={
            "title": detection.title,
            "id": _prefer(meta, "id", detection.sigma_id),
            "level": _prefer(meta, "level", detection.level),
            "status": _prefer(meta, "status", ""),
            "description": _prefer(meta, "description", ""),
            "author": _prefer(meta, "author", ""),
            "tags": detection.tags,
            "logsource": _prefer(meta, "logsource", {}),
            "yaml_path": _prefer(meta, "path", ""),
        },
        technique_ids=extract_technique_ids(detection.tags),
        all_references=references,
        cti_references=classify_references(references),
        matched_event_count=detection.count,
    )


def load_result_file(result_file: Path):
    with open(result_file, 'r', encoding='utf-8') as f:
        return json.load(f)


class TripletBuilder:
    """Turns the raw_matches/ directory into a list of triplets."""

    def __init__(self, sigma_index: SigmaRuleIndex, evtx_names: Optional[Dict[str, str]] = None):
        self.sigma_index = sigma_index
        # encoded result name -> exact EVTX relative path, when the index is known
        self.evtx_names = evtx_names or {}
        self.stats = BuildStats()

    def evtx_path_for(self, result_file: Path) -> str:
        safe_name = result_file.stem
        if safe_name in self.evtx_names:
            return self.evtx_names[safe_name]
        return decode_result_name(safe_name)

    def process_result_file(self, result_file: Path) -> List[Triplet]:
        """Triplets for one result file; errors are counted, never raised."""
        self.stats.result_files += 1
        try:
            detections = load_result_file(result_file)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            self.stats.parse_errors += 1
            logger.warning(f"Could not parse {result_file.name}: {e}")
            return []

        if not detections or not isinstance(detections, list):
            self.stats.empty_results += 1
            return []

        evtx_file = self.evtx_path_for(result_file)
        tactic = infer_tactic_from_path(evtx_file)

        triplets = []
        for entry in detections:
            if not isinstance(entry, dict):
                self.stats.invalid_detections += 1
                logger.warning(f"Skipping non-object detection in {result_file.name}")
                continue

            self.stats.total_detections += 1
            detection = DetectionRecord.from_zircolite(entry)
            meta = self.sigma_index.resolve(detection.sigma_id, detection.title)
            if meta is None:
                self.stats.unresolved_rules += 1
                logger.debug(f"No Sigma metadata for rule '{detection.title}' ({detection.sigma_id})")

            triplet = build_triplet(detection, evtx_file, tactic, meta)
            triplets.append(triplet)

            if triplet.has_cti_link:
                self.stats.triplets_with_cti += 1
            else:
                self.stats.triplets_without_cti += 1

        return triplets

    def build(self, raw_dir: Path) -> Tuple[List[Triplet], BuildStats]:
        """Process every *.json under raw_dir in sorted order."""
        logger.info("Processing Zircolite results...")
        triplets = []
        for result_file in sorted(raw_dir.glob("*.json")):
            triplets.extend(self.process_result_file(result_file))
        logger.info(f"Built {len(triplets)} triplets from {self.stats.result_files} result files")
        return triplets, self.stats
