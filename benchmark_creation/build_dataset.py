#!/usr/bin/env python3
"""
SigmaBench: benchmark dataset builder.

Builds triplets of (EVTX logs, Sigma rules, CTI references).

Usage:
    python build_dataset.py [--sigma | --zircolite] [--limit N] [--base-dir DIR]

    --sigma           Use original Sigma YAML rules from sigma/rules/ (slower)
    --zircolite       Use pre-compiled Zircolite JSON rulesets (default, faster)
    --limit N         Only process the first N EVTX files (useful for testing)
    --skip-detection  Rebuild triplets from cached raw_matches/ without running Zircolite

Expected directory structure (under --base-dir, default: current directory):
    data/evtx_samples/        EVTX files (by tactic folders)
    sigma/rules/              SigmaHQ YAML rules
    zircolite/zircolite.py
    zircolite/rules/          pre-compiled rulesets (.json)
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dataset_writer import DatasetWriter, aggregate, print_summary
from evtx_indexer import find_evtx_files, log_sample, relative_to, write_index
from result_naming import build_name_lookup
from sigma_indexer import build_sigma_index, count_compiled_rules
from triplet_builder import TripletBuilder
from zircolite_runner import ZircoliteConfig, ZircoliteRunner

logger = logging.getLogger(__name__)

RULE_SOURCE_SIGMA = "sigma"
RULE_SOURCE_ZIRCOLITE = "zircolite"

# Priority: sysmon > generic > any available
RULESET_CANDIDATES = [
    "rules_windows_sysmon_pysigma.json",
    "rules_windows_sysmon.json",
    "rules_windows_generic_pysigma.json",
    "rules_windows_generic.json",
]


class SetupError(RuntimeError):
    """A problem with the inputs that makes the whole run pointless."""


@dataclass
class BenchmarkPaths:
    """All input and output locations, derived from one base directory."""
    base_dir: Path = field(default_factory=Path.cwd)

    def __post_init__(self):
        self.base_dir = Path(self.base_dir).resolve()

    @property
    def evtx_dir(self) -> Path:
        return self.base_dir / "data" / "evtx_samples"

    @property
    def sigma_rules_dir(self) -> Path:
        return self.base_dir / "sigma" / "rules"

    @property
    def zircolite_dir(self) -> Path:
        return self.base_dir / "zircolite"

    @property
    def zircolite_py(self) -> Path:
        return self.zircolite_dir / "zircolite.py"

    @property
    def zircolite_rules_dir(self) -> Path:
        return self.zircolite_dir / "rules"

    @property
    def field_mappings(self) -> Path:
        return self.zircolite_dir / "config" / "fieldMappings.yaml"

    @property
    def output_dir(self) -> Path:
        return self.base_dir / "output"

    @property
    def raw_dir(self) -> Path:
        return self.output_dir / "raw_matches"

    @property
    def triplet_dir(self) -> Path:
        return self.output_dir / "triplets"

    @property
    def logs_dir(self) -> Path:
        return self.output_dir / "logs"

    @property
    def evtx_index(self) -> Path:
        return self.output_dir / "evtx_index.txt"


@dataclass
class PipelineConfig:
    paths: BenchmarkPaths
    rule_source: str = RULE_SOURCE_ZIRCOLITE
    limit: int = 0
    skip_detection: bool = False


def log_step(title: str):
    logger.info("=" * 60)
    logger.info(f"[STEP] {title}")
    logger.info("=" * 60)


def validate_structure(paths: BenchmarkPaths) -> List[str]:
    """Return a message per missing input; an empty list means the layout is OK."""
    errors = []
    if not paths.evtx_dir.is_dir():
        errors.append("Missing: data/evtx_samples/")
    if not paths.sigma_rules_dir.is_dir():
        errors.append("Missing: sigma/rules/")
    if not paths.zircolite_py.is_file():
        errors.append("Missing: zircolite/zircolite.py")
    return errors


def setup_output_dirs(paths: BenchmarkPaths):
    for directory in (paths.raw_dir, paths.triplet_dir, paths.logs_dir):
        directory.mkdir(parents=True, exist_ok=True)


def locate_ruleset(paths: BenchmarkPaths, rule_source: str) -> Path:
    """Pick the ruleset handed to Zircolite. Raises SetupError when none exists."""
    if rule_source == RULE_SOURCE_SIGMA:
        return paths.sigma_rules_dir

    for candidate in RULESET_CANDIDATES:
        ruleset = paths.zircolite_rules_dir / candidate
        if ruleset.is_file():
            return ruleset

    if paths.zircolite_rules_dir.is_dir():
        available = sorted(paths.zircolite_rules_dir.rglob("*.json"))
        if available:
            return available[0]

    raise SetupError("No compiled ruleset found in zircolite/rules/.")


def describe_ruleset(ruleset: Path, rule_source: str):
    if rule_source == RULE_SOURCE_SIGMA:
        logger.info(f"Using original Sigma YAML rules from: {ruleset}")
        rule_count = len(list(ruleset.rglob("*.yml")))
    else:
        logger.info(f"Using Zircolite ruleset: {ruleset.name}")
        rule_count = count_compiled_rules(ruleset)
    logger.info(f"Ruleset contains {rule_count if rule_count is not None else '?'} rules.")


def index_evtx(config: PipelineConfig) -> List[Path]:
    paths = config.paths
    evtx_files = find_evtx_files(paths.evtx_dir, config.limit)
    write_index(evtx_files, paths.evtx_index)

    logger.info(f"Found {len(evtx_files)} EVTX files in data/evtx_samples/")
    if not evtx_files:
        raise SetupError("No .evtx files found. Check data/evtx_samples/ contents.")
    log_sample(evtx_files, paths.base_dir)
    return evtx_files


def build_triplets(config: PipelineConfig, evtx_files: List[Path]):
    """Step 5: index Sigma YAML, join against raw matches, write artifacts."""
    paths = config.paths
    logger.info("Indexing SigmaHQ YAML rules...")
    sigma_index = build_sigma_index(paths.sigma_rules_dir)

    evtx_names = build_name_lookup(relative_to(p, paths.evtx_dir) for p in evtx_files)
    builder = TripletBuilder(sigma_index, evtx_names=evtx_names)
    triplets, stats = builder.build(paths.raw_dir)

    artifacts = aggregate(triplets)
    DatasetWriter(paths.triplet_dir).write(artifacts)
    print_summary(artifacts, stats, rule_parse_errors=sigma_index.parse_errors)
    return artifacts, stats


def print_output_tree():
    print("\nOutput tree:")
    print("  output/")
    print("    raw_matches/                per-EVTX Zircolite JSON results")
    print("    triplets/")
    print("      full_dataset.json         ALL log <-> rule matches")
    print("      full_dataset.csv          flattened copy for spreadsheets")
    print("      cti_linked_dataset.json   only matches with CTI refs")
    print("      unique_cti_urls.txt       CTI URLs for manual review")
    print("      technique_summary.json")
    print("    logs/                       Zircolite stderr logs")
    print("\nNext steps:")
    print("  1. Review unique_cti_urls.txt")
    print("  2. Manually verify 20-30 triplets for gold standard")
    print("  3. Fetch CTI content for the reviewed URLs")


def run_pipeline(config: PipelineConfig):
    """Run every step in order. Raises SetupError on fatal input problems."""
    paths = config.paths

    log_step("Step 0: Validating directory structure")
    errors = validate_structure(paths)
    if errors:
        for error in errors:
            logger.error(error)
        raise SetupError("Fix the above errors and re-run.")
    logger.info("Directory structure OK.")

    log_step("Step 1: Setup")
    setup_output_dirs(paths)

    log_step("Step 2: Indexing EVTX files")
    evtx_files = index_evtx(config)

    if config.skip_detection:
        logger.info("Skipping Zircolite (--skip-detection), using cached raw_matches/")
    else:
        log_step("Step 3: Locating ruleset")
        ruleset = locate_ruleset(paths, config.rule_source)
        describe_ruleset(ruleset, config.rule_source)

        log_step("Step 4: Running Zircolite (this may take a while)")
        runner = ZircoliteRunner(ZircoliteConfig(
            zircolite_py=paths.zircolite_py,
            ruleset=ruleset,
            field_mappings=paths.field_mappings,
            evtx_dir=paths.evtx_dir,
            raw_dir=paths.raw_dir,
            logs_dir=paths.logs_dir,
            cwd=paths.base_dir,
        ))
        runner.run_all(evtx_files)

    log_step("Step 5: Building triplet dataset")
    artifacts, stats = build_triplets(config, evtx_files)

    log_step("Pipeline Complete")
    print_output_tree()
    return artifacts, stats


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {value}")
    return number


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build (EVTX, Sigma rule, CTI reference) benchmark triplets"
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--sigma", dest="rule_source", action="store_const", const=RULE_SOURCE_SIGMA,
                        help="Use original Sigma YAML rules from sigma/rules/ (slower)")
    source.add_argument("--zircolite", dest="rule_source", action="store_const", const=RULE_SOURCE_ZIRCOLITE,
                        help="Use pre-compiled Zircolite JSON rulesets (default, faster)")
    parser.set_defaults(rule_source=RULE_SOURCE_ZIRCOLITE)
    parser.add_argument("--limit", type=non_negative_int, default=0,
                        help="Only process the first N EVTX files (default: all)")
    parser.add_argument("--base-dir", type=Path, default=Path.cwd(),
                        help="Directory holding data/, sigma/ and zircolite/")
    parser.add_argument("--skip-detection", action="store_true",
                        help="Rebuild triplets from cached raw_matches/ only")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    config = PipelineConfig(
        paths=BenchmarkPaths(args.base_dir),
        rule_source=args.rule_source,
        limit=args.limit,
        skip_detection=args.skip_detection,
    )

    try:
        run_pipeline(config)
    except SetupError as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
