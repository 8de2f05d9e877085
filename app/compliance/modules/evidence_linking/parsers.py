from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from app.compliance.constants import DOCUMENT_TYPE_ELEMENTS

# Control numbers look like NCCI-POL-001: org prefix, type code, sequence.
# Matching is case-sensitive on purpose: lower-case prose like "see-pol-001" is not an identifier.
CONTROL_NUMBER_RX = re.compile(r"\b[A-Z]{2,6}-[A-Z]{2,4}-\d{3,4}\b")

# Callers resolve at most this many distinct matches per text.
MAX_RESOLVED_REFERENCES = 10

# Per-element keyword lists (title and body text signals)
ELEMENT_KEYWORDS: dict[int, tuple[str, ...]] = {
    1: ("policy", "health", "safety", "management", "commitment", "objective"),
    2: ("hazard", "risk", "assessment", "identification", "jha", "job hazard"),
    3: ("safe work", "practice", "procedure", "swp", "standard"),
    4: ("job procedure", "sjp", "task", "step", "lockout", "tagout"),
    5: ("rule", "discipline", "violation", "enforcement", "conduct"),
    6: ("ppe", "protective", "equipment", "helmet", "gloves", "safety glasses"),
    7: ("maintenance", "equipment", "inspection", "preventive", "repair"),
    8: ("training", "orientation", "competency", "toolbox", "education"),
    9: ("inspection", "workplace", "audit", "walkthrough", "checklist"),
    10: ("incident", "accident", "investigation", "near miss", "injury"),
    11: ("emergency", "evacuation", "drill", "fire", "first aid", "response"),
    12: ("statistics", "record", "log", "data", "tracking", "metrics"),
    13: ("legislation", "regulation", "compliance", "legal", "osha", "wsib"),
    14: ("review", "management", "annual", "meeting", "continuous improvement"),
}

# Body text needs at least this many keyword hits for an element before it counts.
BODY_TEXT_MIN_KEYWORD_HITS = 2

CONFIDENCE_TYPE_CODE = 90
CONFIDENCE_TYPE_CODE_KEYWORD = 70
CONFIDENCE_TITLE_KEYWORD = 65
CONFIDENCE_BODY_TEXT = 60


def normalize_control_number(control_number: str) -> str:
    """Lookup key: stripped, upper-cased."""
    return (control_number or "").strip().upper()


def extract_control_numbers(text: str | None) -> list[str]:
    """
    Control numbers found in `text`, in order of first appearance.

    Duplicates (compared by normalized key) are dropped; the first-seen
    spelling is kept for display.
    """
    if not text:
        return []
    seen: set[str] = set()
    out: list[str] = []
    for m in CONTROL_NUMBER_RX.finditer(text):
        raw = m.group(0)
        key = normalize_control_number(raw)
        if key in seen:
            continue
        seen.add(key)
        out.append(raw)
    return out


@dataclass(frozen=True)
class ElementMatch:
    element_number: int
    confidence: int
    reason: str


@dataclass(frozen=True)
class ElementRule:
    """One row of the classification table: if `predicate(type_code, title)` holds, suggest `elements`."""

    name: str
    predicate: Callable[[str, str], bool]
    elements: frozenset[int]
    confidence: int


def _type_code_is(code: str) -> Callable[[str, str], bool]:
    return lambda type_code, _title: type_code == code


def _type_code_contains(*needles: str) -> Callable[[str, str], bool]:
    return lambda type_code, _title: any(n in type_code for n in needles)


def _title_contains(*needles: str) -> Callable[[str, str], bool]:
    return lambda _type_code, title: any(n in title for n in needles)


def _build_rules() -> list[ElementRule]:
    rules: list[ElementRule] = []
    # 1) Exact document type codes (POL, SWP, FRM, ...)
    for code, elements in DOCUMENT_TYPE_ELEMENTS.items():
        rules.append(
            ElementRule(
                name=f"type_code:{code}",
                predicate=_type_code_is(code.lower()),
                elements=frozenset(elements),
                confidence=CONFIDENCE_TYPE_CODE,
            )
        )
    # 2) Free-form type codes ("site_inspection", "incident_report", ...)
    substring_rules = [
        (("inspection", "checklist"), {9}),
        (("incident", "accident"), {10}),
        (("training",), {5, 8}),
        (("emergency", "drill"), {11}),
        (("meeting", "minutes", "review"), {14}),
        (("hazard",), {2}),
        (("maintenance",), {7}),
        (("ppe",), {6}),
    ]
    for needles, elements in substring_rules:
        rules.append(
            ElementRule(
                name="type_keyword:" + "|".join(needles),
                predicate=_type_code_contains(*needles),
                elements=frozenset(elements),
                confidence=CONFIDENCE_TYPE_CODE_KEYWORD,
            )
        )
    # 3) Title keywords
    for element, words in ELEMENT_KEYWORDS.items():
        rules.append(
            ElementRule(
                name=f"title_keyword:{element}",
                predicate=_title_contains(*words),
                elements=frozenset({element}),
                confidence=CONFIDENCE_TITLE_KEYWORD,
            )
        )
    return rules


# Ordered: earlier rules win ties on the same element.
ELEMENT_RULES: list[ElementRule] = _build_rules()


def _merge(matches: dict[int, ElementMatch], element: int, confidence: int, reason: str) -> None:
    cur = matches.get(element)
    if cur is None or confidence > cur.confidence:
        matches[element] = ElementMatch(element_number=element, confidence=confidence, reason=reason)


def match_element_rules(
    document_type_code: str | None,
    title: str | None = None,
    *,
    rules: list[ElementRule] | None = None,
) -> list[ElementMatch]:
    """Run the rule table; one match per element (highest confidence), sorted by element number."""
    type_code = (document_type_code or "").strip().lower()
    t = (title or "").strip().lower()
    matches: dict[int, ElementMatch] = {}
    for rule in ELEMENT_RULES if rules is None else rules:
        if not rule.predicate(type_code, t):
            continue
        for element in sorted(rule.elements):
            _merge(matches, element, rule.confidence, rule.name)
    return [matches[k] for k in sorted(matches)]


def match_body_text(text: str | None) -> list[ElementMatch]:
    """Elements whose keyword list hits the body text at least BODY_TEXT_MIN_KEYWORD_HITS times."""
    body = (text or "").lower()
    if not body:
        return []
    out: list[ElementMatch] = []
    for element, words in ELEMENT_KEYWORDS.items():
        hits = sum(1 for w in words if w in body)
        if hits >= BODY_TEXT_MIN_KEYWORD_HITS:
            out.append(
                ElementMatch(
                    element_number=element,
                    confidence=CONFIDENCE_BODY_TEXT,
                    reason=f"body_text:{hits}",
                )
            )
    return out


def classify_candidate_elements(document_type_code: str | None, title: str | None = None) -> set[int]:
    """Advisory candidate elements for a document; the linker decides what gets written."""
    return {m.element_number for m in match_element_rules(document_type_code, title)}


def combine_matches(*groups: list[ElementMatch]) -> list[ElementMatch]:
    merged: dict[int, ElementMatch] = {}
    for group in groups:
        for m in group:
            _merge(merged, m.element_number, m.confidence, m.reason)
    return [merged[k] for k in sorted(merged)]
