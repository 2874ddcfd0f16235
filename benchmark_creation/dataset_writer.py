#!/usr/bin/env python3
"""
Aggregate triplets and write the benchmark artifacts.

Outputs (in output/triplets/):
- full_dataset.json        every log <-> rule match
- full_dataset.csv         the same, flattened for spreadsheet review
- cti_linked_dataset.json  only matches whose rule cites CTI
- unique_cti_urls.txt      CTI URLs for manual review
- technique_summary.json   per-technique rollup
"""

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

import pandas as pd

from triplet_builder import BuildStats, Triplet

logger = logging.getLogger(__name__)

TOP_TECHNIQUES = 15

FLAT_COLUMNS = (
    "evtx_file", "evtx_tactic_folder", "rule_title", "rule_id", "rule_level",
    "rule_status", "yaml_path", "technique_ids", "cti_urls", "reference_count",
    "matched_event_count", "has_cti_link",
)


@dataclass
class TechniqueSummary:
    total_matches: int = 0
    matches_with_cti: int = 0
    unique_rules: Set[str] = field(default_factory=set)
    unique_evtx_files: Set[str] = field(default_factory=set)

    def add(self, triplet: Triplet):
        self.total_matches += 1
        self.unique_rules.add(triplet.sigma_rule.get("title", ""))
        self.unique_evtx_files.add(triplet.evtx_file)
        if triplet.has_cti_link:
            self.matches_with_cti += 1

    def to_dict(self) -> Dict:
        return {
            "total_matches": self.total_matches,
            "matches_with_cti": self.matches_with_cti,
            "unique_rules": sorted(self.unique_rules),
            "unique_evtx_files": sorted(self.unique_evtx_files),
        }


@dataclass
class DatasetArtifacts:
    """Everything derived from the triplet list, ready to be written."""
    triplets: List[Triplet]
    cti_triplets: List[Triplet]
    cti_urls: List[str]
    technique_summary: Dict[str, TechniqueSummary]


def filter_cti_linked(triplets: List[Triplet]) -> List[Triplet]:
    return [t for t in triplets if t.has_cti_link]


def collect_cti_urls(triplets: List[Triplet]) -> List[str]:
    """Sorted unique URLs of the CTI references across triplets."""
    urls = set()
    for t in triplets:
        for ref in t.cti_references:
            urls.add(ref.url)
    return sorted(urls)


def summarize_techniques(triplets: List[Triplet]) -> Dict[str, TechniqueSummary]:
    """Fold all triplets into a summary per technique id, keys in ascending order."""
    summary = defaultdict(TechniqueSummary)
    for t in triplets:
        for tid in t.technique_ids:
            summary[tid].add(t)
    return dict(sorted(summary.items()))


def top_techniques(summary: Dict[str, TechniqueSummary], n: int = TOP_TECHNIQUES):
    """The n techniques with the most matches; ties keep ascending id order."""
    return sorted(summary.items(), key=lambda x: x[1].total_matches, reverse=True)[:n]


def aggregate(triplets: List[Triplet]) -> DatasetArtifacts:
    cti_triplets = filter_cti_linked(triplets)
    return DatasetArtifacts(
        triplets=triplets,
        cti_triplets=cti_triplets,
        cti_urls=collect_cti_urls(cti_triplets),
        technique_summary=summarize_techniques(triplets),
    )


class DatasetWriter:
    """Writes DatasetArtifacts into the triplets output directory."""

    def __init__(self, triplet_dir: Path):
        self.triplet_dir = Path(triplet_dir)

    def _write_json(self, name: str, data) -> Path:
        path = self.triplet_dir / name
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=str)
        return path

    def write(self, artifacts: DatasetArtifacts) -> Dict[str, Path]:
        self.triplet_dir.mkdir(parents=True, exist_ok=True)
        paths = {}

        paths["full_dataset"] = self._write_json(
            "full_dataset.json", [t.to_dict() for t in artifacts.triplets]
        )
        paths["cti_linked_dataset"] = self._write_json(
            "cti_linked_dataset.json", [t.to_dict() for t in artifacts.cti_triplets]
        )

        csv_path = self.triplet_dir / "full_dataset.csv"
        pd.DataFrame(
            [t.to_flat_row() for t in artifacts.triplets],
            columns=list(FLAT_COLUMNS),
        ).to_csv(csv_path, index=False)
        paths["full_dataset_csv"] = csv_path

        urls_path = self.triplet_dir / "unique_cti_urls.txt"
        with open(urls_path, 'w', encoding='utf-8') as f:
            for url in artifacts.cti_urls:
                f.write(url + "\n")
        paths["unique_cti_urls"] = urls_path

        paths["technique_summary"] = self._write_json(
            "technique_summary.json",
            {tid: s.to_dict() for tid, s in artifacts.technique_summary.items()},
        )

        for name, path in paths.items():
            logger.info(f"Wrote {name} to {path}")
        return paths


def print_summary(artifacts: DatasetArtifacts, stats: BuildStats,
                  rule_parse_errors: Optional[int] = None):
    """Console report of the build, including the top techniques."""
    techniques = artifacts.technique_summary

    print("\n" + "=" * 60)
    print("  DATASET BUILD SUMMARY")
    print("=" * 60)
    print(f"  EVTX result files processed:   {stats.result_files}")
    print(f"  Files with detections:         {stats.files_with_detections}")
    print(f"  Total rule matches (raw):      {stats.total_detections}")
    print(f"  Triplets WITH CTI refs:        {stats.triplets_with_cti}")
    print(f"  Triplets WITHOUT CTI refs:     {stats.triplets_without_cti}")
    print(f"  Rules without Sigma metadata:  {stats.unresolved_rules}")
    print(f"  Parse errors:                  {stats.parse_errors}")
    print(f"  Invalid detection entries:     {stats.invalid_detections}")
    if rule_parse_errors is not None:
        print(f"  Unparsable Sigma rule files:   {rule_parse_errors}")
    print(f"  Unique techniques:             {len(techniques)}")
    print(f"  Unique CTI URLs:               {len(artifacts.cti_urls)}")
    print("=" * 60)

    print(f"\n[+] full_dataset.json          -> {len(artifacts.triplets)} triplets")
    print(f"[+] cti_linked_dataset.json    -> {len(artifacts.cti_triplets)} triplets")
    print(f"[+] unique_cti_urls.txt        -> {len(artifacts.cti_urls)} URLs")
    print(f"[+] technique_summary.json     -> {len(techniques)} techniques")

    if techniques:
        print(f"\n  TOP {TOP_TECHNIQUES} TECHNIQUES:")
        print("  " + "-" * 58)
        for tid, s in top_techniques(techniques):
            cti = "yes" if s.matches_with_cti > 0 else "no"
            print(f"  {tid:12s} | {s.total_matches:4d} matches | {s.matches_with_cti:3d} w/CTI | {cti}")
