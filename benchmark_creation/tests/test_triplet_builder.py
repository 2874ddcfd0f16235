#!/usr/bin/env python3
"""
Unit tests for triplet_builder.py

Tests cover:
- extract_technique_ids() normalization and deduplication
- infer_tactic_from_path()
- DetectionRecord field fallbacks
- Triplet has_cti_link invariant
- TripletBuilder end-to-end over result files, including error counters
"""

import json
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sigma_indexer import RuleMetadata, SigmaRuleIndex
from triplet_builder import (
    CTIReference,
    DetectionRecord,
    Triplet,
    TripletBuilder,
    build_triplet,
    classify_references,
    extract_technique_ids,
    infer_tactic_from_path,
)


def make_index(*metas: RuleMetadata) -> SigmaRuleIndex:
    entries = {}
    for meta in metas:
        if meta.id:
            entries[meta.id] = meta
        if meta.title:
            entries[meta.title.strip()] = meta
    return SigmaRuleIndex(entries)


def write_result(raw_dir: Path, name: str, content) -> Path:
    raw_dir.mkdir(parents=True, exist_ok=True)
    path = raw_dir / name
    if isinstance(content, str):
        path.write_text(content, encoding="utf-8")
    else:
        path.write_text(json.dumps(content), encoding="utf-8")
    return path


DETECTION = {
    "title": "Suspicious Encoded PowerShell",
    "sigma_id": "abc-123",
    "rule_level": "medium",
    "tags": ["attack.execution", "attack.t1059.001"],
    "count": 2,
    "matches": [{"EventID": 1}, {"EventID": 1}],
}

RULE = RuleMetadata(
    id="abc-123",
    title="Suspicious Encoded PowerShell",
    references=["https://thedfirreport.com/x", "https://attack.mitre.org/y"],
    tags=["attack.execution", "attack.t1059.001"],
    description="Detects encoded PowerShell",
    level="high",
    status="test",
    logsource={"category": "process_creation", "product": "windows"},
    author="Jane Doe",
    path="sigma/rules/windows/proc_creation_win_powershell.yml",
)


class TestExtractTechniqueIds:

    def test_dedup_and_case(self):
        """Repeated and mixed-case tags collapse to one uppercase id each"""
        ids = extract_technique_ids(["attack.t1059", "attack.T1059.001", "attack.t1059"])
        assert set(ids) == {"T1059", "T1059.001"}
        assert len(ids) == 2

    def test_order_independent(self):
        """Tag order does not change the result"""
        tags = ["attack.t1003.001", "attack.t1059", "attack.t1003.001"]
        assert extract_technique_ids(tags) == extract_technique_ids(list(reversed(tags)))

    def test_non_technique_tags_ignored(self):
        """Tactic names, groups and software tags carry no technique id"""
        assert extract_technique_ids(["attack.execution", "attack.g0016", "cve.2021-44228"]) == []

    def test_empty(self):
        """No tags means no technique ids"""
        assert extract_technique_ids([]) == []
        assert extract_technique_ids(None) == []


class TestInferTactic:

    @pytest.mark.parametrize("path,expected", [
        ("Execution/host/sysmon.evtx", "Execution"),
        ("lateral movement/psexec.evtx", "Lateral Movement"),
        ("root/Command and Control/beacon.evtx", "Command and Control"),
        ("Privilege Escalation\\uac.evtx", "Privilege Escalation"),
        ("misc/sample.evtx", "unknown"),
        ("ExecutionExtra/sample.evtx", "unknown"),
    ])
    def test_infer(self, path, expected):
        """The first folder naming a tactic decides, matched case-insensitively"""
        assert infer_tactic_from_path(path) == expected


class TestDetectionRecord:

    def test_zircolite_fields(self):
        """Fields are read from the Zircolite detection keys"""
        record = DetectionRecord.from_zircolite(DETECTION)
        assert record.title == "Suspicious Encoded PowerShell"
        assert record.level == "medium"
        assert record.sigma_id == "abc-123"
        assert record.count == 2

    def test_fallbacks(self):
        """level, id and count fall back to their alternate sources"""
        record = DetectionRecord.from_zircolite({
            "title": "T", "level": "low", "id": "xyz", "matches": [{}, {}, {}], "tags": "not-a-list",
        })
        assert record.level == "low"
        assert record.sigma_id == "xyz"
        assert record.count == 3
        assert record.tags == []

    def test_missing_everything(self):
        """An empty detection gives empty defaults"""
        record = DetectionRecord.from_zircolite({})
        assert record.title == ""
        assert record.count == 0
        assert record.matches == []

    def test_null_values_fall_back(self):
        """Keys present with a null value use the alternate source"""
        record = DetectionRecord.from_zircolite({
            "title": "T", "sigma_id": None, "id": "abc-123", "rule_level": None, "level": "high",
            "count": None, "matches": [{}, {}],
        })
        assert record.sigma_id == "abc-123"
        assert record.level == "high"
        assert record.count == 2

    def test_zero_count_is_kept(self):
        """An explicit count of 0 is not replaced by the match list length"""
        record = DetectionRecord.from_zircolite({"title": "T", "count": 0, "matches": [{}]})
        assert record.count == 0


class TestTripletInvariant:

    def _triplet(self, refs):
        return Triplet(
            evtx_file="a.evtx", evtx_tactic_folder="unknown", sigma_rule={},
            technique_ids=[], all_references=[], cti_references=refs, matched_event_count=0,
        )

    def test_has_cti_link_follows_references(self):
        """has_cti_link is true iff cti_references is non-empty"""
        assert self._triplet([]).has_cti_link is False
        assert self._triplet([CTIReference("https://thedfirreport.com/x", "cti")]).has_cti_link is True

    def test_flag_cannot_be_passed(self):
        """The flag is derived, never supplied"""
        with pytest.raises(TypeError):
            Triplet(
                evtx_file="a.evtx", evtx_tactic_folder="unknown", sigma_rule={},
                technique_ids=[], all_references=[], cti_references=[], matched_event_count=0,
                has_cti_link=True,
            )

    def test_classify_references_keeps_order(self):
        """cti and likely_cti entries are kept in reference order"""
        refs = classify_references([
            "https://example.org/threat-brief",
            "https://github.com/x",
            "https://thedfirreport.com/y",
        ])
        assert [(r.url, r.classification) for r in refs] == [
            ("https://example.org/threat-brief", "likely_cti"),
            ("https://thedfirreport.com/y", "cti"),
        ]


class TestBuildTriplet:

    def test_prefers_metadata(self):
        """Resolved metadata wins for id, level and rule details"""
        triplet = build_triplet(DetectionRecord.from_zircolite(DETECTION), "Execution/a.evtx", "Execution", RULE)
        rule = triplet.sigma_rule
        assert rule["level"] == "high"
        assert rule["status"] == "test"
        assert rule["author"] == "Jane Doe"
        assert rule["yaml_path"] == RULE.path
        assert rule["tags"] == DETECTION["tags"]
        assert triplet.all_references == RULE.references

    def test_without_metadata(self):
        """Unresolved detections keep their own fields and have no references"""
        triplet = build_triplet(DetectionRecord.from_zircolite(DETECTION), "a.evtx", "unknown", None)
        assert triplet.sigma_rule["id"] == "abc-123"
        assert triplet.sigma_rule["level"] == "medium"
        assert triplet.sigma_rule["yaml_path"] == ""
        assert triplet.all_references == []
        assert triplet.has_cti_link is False

    def test_empty_metadata_values_fall_back(self):
        """Empty metadata values do not hide the detection's own values"""
        meta = RuleMetadata(id="", title="Suspicious Encoded PowerShell", level="")
        triplet = build_triplet(DetectionRecord.from_zircolite(DETECTION), "a.evtx", "unknown", meta)
        assert triplet.sigma_rule["id"] == "abc-123"
        assert triplet.sigma_rule["level"] == "medium"


class TestTripletBuilder:

    def test_end_to_end_cti_link(self, tmp_path):
        """One detection joined with a rule citing one CTI and one non-CTI URL"""
        raw_dir = tmp_path / "raw_matches"
        write_result(raw_dir, "Execution__host1__sysmon.json", [DETECTION])

        builder = TripletBuilder(make_index(RULE))
        triplets, stats = builder.build(raw_dir)

        assert len(triplets) == 1
        data = triplets[0].to_dict()
        assert data["cti_references"] == [{"url": "https://thedfirreport.com/x", "classification": "cti"}]
        assert data["has_cti_link"] is True
        assert data["evtx_file"] == "Execution/host1/sysmon.evtx"
        assert data["evtx_tactic_folder"] == "Execution"
        assert data["technique_ids"] == ["T1059.001"]
        assert data["matched_event_count"] == 2
        assert stats.triplets_with_cti == 1
        assert stats.triplets_without_cti == 0
        assert stats.total_detections == 1

    def test_serialized_keys(self, tmp_path):
        """Serialized triplets carry every documented key"""
        raw_dir = tmp_path / "raw_matches"
        write_result(raw_dir, "a.json", [DETECTION])
        triplets, _ = TripletBuilder(make_index(RULE)).build(raw_dir)
        data = triplets[0].to_dict()
        assert set(data) == {
            "evtx_file", "evtx_tactic_folder", "sigma_rule", "technique_ids", "all_references",
            "cti_references", "matched_event_count", "has_cti_link",
        }
        assert set(data["sigma_rule"]) == {
            "title", "id", "level", "status", "description", "author", "tags", "logsource", "yaml_path",
        }

    def test_empty_result_counted_as_empty(self, tmp_path):
        """'[]' adds no triplets and counts as empty, not as a parse error"""
        raw_dir = tmp_path / "raw_matches"
        write_result(raw_dir, "Discovery__net.json", [])

        triplets, stats = TripletBuilder(make_index()).build(raw_dir)
        assert triplets == []
        assert stats.empty_results == 1
        assert stats.parse_errors == 0

    def test_malformed_result_counted_as_parse_error(self, tmp_path):
        """Non-JSON content adds no triplets and counts as a parse error"""
        raw_dir = tmp_path / "raw_matches"
        write_result(raw_dir, "Discovery__net.json", "this is not json {")

        triplets, stats = TripletBuilder(make_index()).build(raw_dir)
        assert triplets == []
        assert stats.parse_errors == 1
        assert stats.empty_results == 0

    def test_non_list_result_is_empty(self, tmp_path):
        """A JSON object or null is not a detection list"""
        raw_dir = tmp_path / "raw_matches"
        write_result(raw_dir, "a.json", {"title": "x"})
        write_result(raw_dir, "b.json", "null")

        triplets, stats = TripletBuilder(make_index()).build(raw_dir)
        assert triplets == []
        assert stats.empty_results == 2

    def test_title_fallback_and_unresolved(self, tmp_path):
        """Title resolves when the id is unknown; unknown rules still produce triplets"""
        raw_dir = tmp_path / "raw_matches"
        by_title = dict(DETECTION, sigma_id="other-id")
        unknown = {"title": "Never Indexed", "sigma_id": "zzz", "tags": ["attack.t1003"], "count": 1}
        write_result(raw_dir, "Persistence__run.json", [by_title, unknown])

        triplets, stats = TripletBuilder(make_index(RULE)).build(raw_dir)
        assert len(triplets) == 2
        assert triplets[0].sigma_rule["id"] == "abc-123"
        assert triplets[0].has_cti_link is True
        assert triplets[1].sigma_rule["yaml_path"] == ""
        assert triplets[1].has_cti_link is False
        assert stats.unresolved_rules == 1
        assert stats.triplets_without_cti == 1

    def test_invalid_entries_skipped(self, tmp_path):
        """Non-object entries are skipped and counted"""
        raw_dir = tmp_path / "raw_matches"
        write_result(raw_dir, "a.json", ["garbage", DETECTION])

        triplets, stats = TripletBuilder(make_index(RULE)).build(raw_dir)
        assert len(triplets) == 1
        assert stats.invalid_detections == 1
        assert stats.total_detections == 1

    def test_known_evtx_names(self, tmp_path):
        """The EVTX index restores names the plain decode would mangle"""
        raw_dir = tmp_path / "raw_matches"
        write_result(raw_dir, "Impact__wipe__v2.json", [DETECTION])

        builder = TripletBuilder(make_index(RULE), evtx_names={"Impact__wipe__v2": "Impact/wipe__v2.EVTX"})
        triplets, _ = builder.build(raw_dir)
        assert triplets[0].evtx_file == "Impact/wipe__v2.EVTX"
        assert triplets[0].evtx_tactic_folder == "Impact"

    def test_files_processed_in_sorted_order(self, tmp_path):
        """Result files are read in sorted name order"""
        raw_dir = tmp_path / "raw_matches"
        write_result(raw_dir, "b.json", [dict(DETECTION, title="B")])
        write_result(raw_dir, "a.json", [dict(DETECTION, title="A")])

        triplets, stats = TripletBuilder(make_index()).build(raw_dir)
        assert [t.sigma_rule["title"] for t in triplets] == ["A", "B"]
        assert stats.result_files == 2
        assert stats.files_with_detections == 2
