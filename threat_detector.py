"""
Threat detector

Classifies the textual fields of a request (body, query string, path
parameters) into attack categories and derives an overall severity.

The detector is pure: ``classify`` has no side effects and returns the same
analysis for the same input, so a blocking instance and a logging-only
instance can inspect the same request independently.
"""

import html
import json
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import unquote

from threat_patterns import (
    DEFAULT_PATTERNS,
    INPUT_LIMIT_EXEMPTIONS,
    INPUT_LIMITS,
    PATTERN_TABLE_VERSION,
    RICH_TEXT_FIELDS,
)

SAMPLE_LENGTH = 200
OVERFLOW_SAMPLE_LENGTH = 100


# ============================================================
# Enums and records
# ============================================================

class Severity(str, Enum):
    """Threat severity, lowest to highest"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __str__(self):
        return self.value


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ThreatCategory(str, Enum):
    """Threat category"""
    SQL_INJECTION = "sql_injection"
    XSS = "xss"
    PATH_TRAVERSAL = "path_traversal"
    COMMAND_INJECTION = "command_injection"
    LDAP_INJECTION = "ldap_injection"
    NOSQL_INJECTION = "nosql_injection"
    OVERFLOW = "overflow"

    def __str__(self):
        return self.value


# Category tiers, in the order they decide the overall severity
SEVERITY_TIERS = (
    (Severity.CRITICAL, (ThreatCategory.SQL_INJECTION, ThreatCategory.COMMAND_INJECTION)),
    (Severity.HIGH, (ThreatCategory.XSS, ThreatCategory.PATH_TRAVERSAL)),
    (Severity.MEDIUM, (ThreatCategory.LDAP_INJECTION, ThreatCategory.NOSQL_INJECTION)),
)

CATEGORY_SEVERITY = {category: tier for tier, categories in SEVERITY_TIERS for category in categories}
CATEGORY_SEVERITY[ThreatCategory.OVERFLOW] = Severity.LOW

SCANNED_CATEGORIES = [c for c in ThreatCategory if c is not ThreatCategory.OVERFLOW]


class DetectorMode(str, Enum):
    """BLOCK keeps reports lean; LOG_ONLY also records which signatures fired"""
    BLOCK = "block"
    LOG_ONLY = "log_only"


@dataclass
class PatternMatch:
    index: int
    pattern: str
    match: str


@dataclass
class ThreatReport:
    """One finding for one field"""
    category: ThreatCategory
    field: str
    sample: str
    severity: Severity
    length: Optional[int] = None
    max_allowed: Optional[int] = None
    matched_patterns: List[PatternMatch] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["severity"] = self.severity.value
        if self.length is None:
            data.pop("length")
            data.pop("max_allowed")
        if not self.matched_patterns:
            data.pop("matched_patterns")
        return data


@dataclass
class ThreatAnalysis:
    """Result of classifying one request"""
    threats: Dict[ThreatCategory, List[ThreatReport]]
    severity: Severity

    @property
    def has_threats(self) -> bool:
        return any(self.threats.values())

    @property
    def threat_types(self) -> List[str]:
        return [category.value for category, reports in self.threats.items() if reports]

    @property
    def threat_count(self) -> int:
        return sum(len(reports) for reports in self.threats.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threats": {
                category.value: [r.to_dict() for r in reports]
                for category, reports in self.threats.items()
            },
            "severity": self.severity.value,
            "has_threats": self.has_threats,
            "threat_types": self.threat_types,
            "threat_count": self.threat_count,
        }


# ============================================================
# Input normalisation
# ============================================================

def flatten_fields(data: Any, prefix: str = "") -> Dict[str, str]:
    """
    Flatten request data into ``{field_name: string_value}``.

    A bare string becomes ``input``; dict keys are joined with ``.``; list
    items get a positional suffix (``item_0`` at top level, ``tags_0``
    below it). Non-string leaves are dropped.
    """
    if isinstance(data, str):
        return {prefix or "input": data}

    flat: Dict[str, str] = {}
    if isinstance(data, Mapping):
        for key, value in data.items():
            name = f"{prefix}.{key}" if prefix else str(key)
            flat.update(flatten_fields(value, name))
    elif isinstance(data, (list, tuple)):
        for index, item in enumerate(data):
            name = f"{prefix}_{index}" if prefix else f"item_{index}"
            flat.update(flatten_fields(item, name))
    return flat


def collect_request_fields(body: Any = None, query: Any = None, params: Any = None) -> Dict[str, str]:
    """Merge body, query and path params; later sources win on collisions."""
    fields: Dict[str, str] = {}
    for source in (body, query, params):
        if source:
            fields.update(flatten_fields(source))
    return fields


def decode_value(value: str) -> str:
    """Percent-decode then HTML-entity-decode once; malformed escapes are kept as-is."""
    try:
        decoded = unquote(value, errors="strict")
    except UnicodeDecodeError:
        decoded = value
    return html.unescape(decoded)


def leaf_name(field_name: str) -> str:
    return field_name.rsplit(".", 1)[-1]


def get_input_limit(field_name: str) -> int:
    name = leaf_name(field_name).lower()
    if name in INPUT_LIMITS:
        return INPUT_LIMITS[name]
    if name.startswith("search"):
        return INPUT_LIMITS["search"]
    return INPUT_LIMITS["default"]


def is_limit_exempt(field_name: str) -> bool:
    lowered = field_name.lower()
    return any(token in lowered for token in INPUT_LIMIT_EXEMPTIONS)


def is_rich_text(field_name: str) -> bool:
    return leaf_name(field_name).lower() in RICH_TEXT_FIELDS


def calculate_severity(threats: Mapping[ThreatCategory, List[ThreatReport]]) -> Severity:
    for tier, categories in SEVERITY_TIERS:
        if any(threats.get(category) for category in categories):
            return tier
    return Severity.LOW


# ============================================================
# Detector
# ============================================================

class ThreatDetector:
    """
    Signature-based threat detector

    Usage:
        detector = ThreatDetector()
        analysis = detector.inspect(body=payload, query=dict(request.query_params))
        if analysis.has_threats:
            ...
    """

    def __init__(self, mode: DetectorMode = DetectorMode.BLOCK,
                 patterns: Optional[Mapping[str, List[str]]] = None):
        self.mode = mode
        self.version = PATTERN_TABLE_VERSION
        source = patterns if patterns is not None else DEFAULT_PATTERNS
        self._sources: Dict[ThreatCategory, List[str]] = {c: [] for c in SCANNED_CATEGORIES}
        self._compiled: Dict[ThreatCategory, List[re.Pattern]] = {c: [] for c in SCANNED_CATEGORIES}
        for category, sources in source.items():
            for pattern in sources:
                self.add_pattern(category, pattern)

    def add_pattern(self, category, pattern: str):
        """Append a signature to a category; raises ``re.error`` on a bad pattern."""
        category = ThreatCategory(category)
        if category is ThreatCategory.OVERFLOW:
            raise ValueError("overflow is decided by length ceilings, not signatures")
        compiled = re.compile(pattern)
        self._sources[category].append(pattern)
        self._compiled[category].append(compiled)

    def load_patterns(self, path: str):
        """Extend the table from a JSON file shaped like ``DEFAULT_PATTERNS``."""
        with open(path, "r", encoding="utf-8") as f:
            extra = json.load(f)
        for category, sources in extra.get("patterns", extra).items():
            for pattern in sources:
                self.add_pattern(category, pattern)
        if "version" in extra:
            self.version = f"{PATTERN_TABLE_VERSION}+{extra['version']}"

    def pattern_count(self, category) -> int:
        return len(self._compiled[ThreatCategory(category)])

    def _match(self, category: ThreatCategory, value: str) -> List[PatternMatch]:
        matches = []
        for index, compiled in enumerate(self._compiled[category]):
            found = compiled.search(value)
            if found is None:
                continue
            if self.mode is DetectorMode.BLOCK:
                # one hit is enough to report the category
                return [PatternMatch(index, compiled.pattern, found.group(0))]
            matches.append(PatternMatch(index, compiled.pattern, found.group(0)))
        return matches

    def classify(self, fields: Mapping[str, Any]) -> ThreatAnalysis:
        threats: Dict[ThreatCategory, List[ThreatReport]] = {c: [] for c in ThreatCategory}

        for name, value in fields.items():
            if not isinstance(value, str) or not value:
                continue

            if not is_limit_exempt(name):
                max_length = get_input_limit(name)
                if len(value) > max_length:
                    sample = value[:OVERFLOW_SAMPLE_LENGTH]
                    if len(value) > OVERFLOW_SAMPLE_LENGTH:
                        sample += "..."
                    threats[ThreatCategory.OVERFLOW].append(ThreatReport(
                        category=ThreatCategory.OVERFLOW,
                        field=name,
                        sample=sample,
                        severity=Severity.LOW,
                        length=len(value),
                        max_allowed=max_length,
                    ))
                    continue

            if is_rich_text(name):
                continue

            decoded = decode_value(value)
            for category in SCANNED_CATEGORIES:
                matches = self._match(category, decoded)
                if not matches:
                    continue
                threats[category].append(ThreatReport(
                    category=category,
                    field=name,
                    sample=value[:SAMPLE_LENGTH],
                    severity=CATEGORY_SEVERITY[category],
                    matched_patterns=matches if self.mode is DetectorMode.LOG_ONLY else [],
                ))

        return ThreatAnalysis(threats=threats, severity=calculate_severity(threats))

    def inspect(self, body: Any = None, query: Any = None, params: Any = None) -> ThreatAnalysis:
        return self.classify(collect_request_fields(body, query, params))
