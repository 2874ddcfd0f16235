#!/usr/bin/env python3
"""
Classify Sigma rule reference URLs by provenance.

Precedence is strict: the NON-CTI list wins over the CTI publisher list, which
wins over the keyword heuristic. A threat-intel publisher URL hosted on, say,
github.com is therefore non_cti.
"""

import re
from enum import Enum

# Technique frameworks, vendor docs, code hosting, social media, wikis
NON_CTI_PATTERNS = [
    r"attack\.mitre\.org",
    r"docs\.microsoft\.com",
    r"learn\.microsoft\.com",
    r"msdn\.microsoft\.com",
    r"technet\.microsoft\.com",
    r"github\.com",
    r"wikipedia\.org",
    r"stackoverflow\.com",
    r"twitter\.com",
    r"x\.com",
    r"car\.mitre\.org",
    r"lolbas-project",
    r"atomicredteam",
    r"sigma\.wiki",
    r"youtube\.com",
]

# Named threat-intelligence publishers
CTI_PATTERNS = [
    r"thedfirreport\.com",
    r"trendmicro\.com.*security",
    r"securelist\.com",
    r"blog\.talosintelligence",
    r"unit42\.paloaltonetworks",
    r"mandiant\.com",
    r"crowdstrike\.com",
    r"microsoft\.com/.*security.*blog",
    r"welivesecurity\.com",
    r"symantec.*blogs",
    r"fireeye\.com",
    r"sentinelone\.com",
    r"elastic\.co/.*security",
    r"redcanary\.com",
    r"splunk\.com.*blog",
    r"threatpost\.com",
    r"bleepingcomputer\.com",
    r"darkreading\.com",
    r"thehackernews\.com",
    r"cybereason\.com",
    r"proofpoint\.com.*blog",
    r"volexity\.com",
    r"recordedfuture\.com",
    r"sekoia\.io",
    r"malwarebytes\.com.*blog",
    r"adsecurity\.org",
    r"medium\.com",
    r"stealthbits\.com",
    r"varonis\.com",
]

LIKELY_CTI_KEYWORDS = r"(blog|report|threat|advisory|intelligence|incident|analysis|research)"

_NON_CTI = [re.compile(p, re.IGNORECASE) for p in NON_CTI_PATTERNS]
_CTI = [re.compile(p, re.IGNORECASE) for p in CTI_PATTERNS]
_LIKELY_CTI = re.compile(LIKELY_CTI_KEYWORDS, re.IGNORECASE)


class ReferenceClass(Enum):
    """Provenance of a reference URL."""
    CTI = "cti"                 # curated publisher
    LIKELY_CTI = "likely_cti"   # keyword heuristic, lower confidence
    NON_CTI = "non_cti"
    UNKNOWN = "unknown"

    @property
    def is_cti_relevant(self) -> bool:
        return self in (ReferenceClass.CTI, ReferenceClass.LIKELY_CTI)


def classify_reference(url: str) -> ReferenceClass:
    """Classify a URL as cti, likely_cti, non_cti or unknown."""
    url_lower = str(url).lower()
    if any(p.search(url_lower) for p in _NON_CTI):
        return ReferenceClass.NON_CTI
    if any(p.search(url_lower) for p in _CTI):
        return ReferenceClass.CTI
    if _LIKELY_CTI.search(url_lower):
        return ReferenceClass.LIKELY_CTI
    return ReferenceClass.UNKNOWN
