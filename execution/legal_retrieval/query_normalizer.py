"""
Query Normalization for Hybrid Legal Retrieval

Parses a free-text legal query into a structured facet set:
- Device identifiers (IMEI, IMSI, ICCID, MSISDN) via a priority-ordered pattern table
- Case id and related case ids (Pp-2343/2025)
- Keyword list (Croatian stop words removed) plus device/brand/legal-term hits
- Explicit statute citations (priority articles)
- Legal-issue categories, jurisdiction, date range and follow-up questions

Normalization never fails: an extraction miss degrades to an emptier query.
"""

import re
import hashlib
import logging
from datetime import date
from typing import Optional
from dataclasses import dataclass, field

from .citation import CitationDetector, StatuteCitation
from .config import DEFAULT_JURISDICTION
from .language_patterns import (
    BRANDS,
    CASE_ID_PATTERN,
    CATEGORY_TRIGGERS,
    CROATIAN_STOP_WORDS,
    DEFAULT_CATEGORY,
    DEVICE_TYPE_TRIGGERS,
    EVIDENCE_TRIGGERS,
    FOLLOW_UP_QUESTIONS,
    IDENTIFIER_PATTERNS,
    LEGAL_TERM_PATTERNS,
    MAX_FOLLOW_UP_QUESTIONS,
    MAX_PROBLEM_LENGTH,
    MIN_KEYWORD_LENGTH,
    MODEL_PATTERNS,
    SENTENCE_BOUNDARY,
    TOKEN_PATTERN,
)

logger = logging.getLogger(__name__)

DEFAULT_DATE_FROM = "2018-01-01"


@dataclass
class QueryOptions:
    """Caller hints that override what the normalizer would infer."""
    jurisdiction: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    problem: Optional[str] = None


@dataclass(frozen=True)
class DateRange:
    date_from: str
    date_to: str

    def to_dict(self) -> dict:
        return {"from": self.date_from, "to": self.date_to}


@dataclass(frozen=True)
class DeviceIdentifiers:
    """Heuristically extracted device facts. Every field may be empty."""
    device_type: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    imei: list[str] = field(default_factory=list)
    imsi: list[str] = field(default_factory=list)
    iccid: list[str] = field(default_factory=list)
    msisdn: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "device_type": self.device_type,
            "brand": self.brand,
            "model": self.model,
            "imei": list(self.imei),
            "imsi": list(self.imsi),
            "iccid": list(self.iccid),
            "msisdn": list(self.msisdn),
        }


@dataclass(frozen=True)
class NormalizedQuery:
    """Structured view of one query. Created once per retrieve() call."""
    raw_text: str
    cleaned_text: str
    keywords: list[str]
    case_id: Optional[str]
    related_case_ids: list[str]
    identifiers: DeviceIdentifiers
    priority_articles: list[StatuteCitation]
    categories: list[str]
    jurisdiction: str
    date_range: DateRange
    follow_up_questions: list[str]
    problem: str = ""

    @property
    def query_hash(self) -> str:
        """Short stable hash of the cleaned text for log correlation."""
        return hashlib.sha256(self.cleaned_text.encode("utf-8")).hexdigest()[:12]

    @property
    def is_empty(self) -> bool:
        return not self.cleaned_text

    def to_dict(self) -> dict:
        return {
            "raw_text": self.raw_text,
            "cleaned_text": self.cleaned_text,
            "keywords": list(self.keywords),
            "case_id": self.case_id,
            "related_case_ids": list(self.related_case_ids),
            "identifiers": self.identifiers.to_dict(),
            "priority_articles": [c.canonical for c in self.priority_articles],
            "categories": list(self.categories),
            "jurisdiction": self.jurisdiction,
            "date_range": self.date_range.to_dict(),
            "follow_up_questions": list(self.follow_up_questions),
            "problem": self.problem,
        }


class QueryNormalizer:
    """
    Turns raw query text into a NormalizedQuery.

    Usage:
        normalizer = QueryNormalizer()
        query = normalizer.normalize("Pp-2343/2025 mobitel IMEI 356789101234567")
        query.case_id          # "Pp-2343/2025"
        query.identifiers.imei # ["356789101234567"]
    """

    def __init__(
        self,
        detector: Optional[CitationDetector] = None,
        default_jurisdiction: str = DEFAULT_JURISDICTION,
    ):
        self.detector = detector or CitationDetector()
        self.default_jurisdiction = default_jurisdiction

    def normalize(self, text: Optional[str], opts: Optional[QueryOptions] = None) -> NormalizedQuery:
        """
        Normalize a query.

        Args:
            text: Free-text query (may be empty or None)
            opts: Optional caller hints (jurisdiction, date range, problem)

        Returns:
            NormalizedQuery; empty facets when nothing could be extracted
        """
        opts = opts or QueryOptions()
        raw = text or ""
        cleaned = re.sub(r"\s+", " ", raw).strip()
        lowered = cleaned.lower()

        case_ids = self._extract_case_ids(cleaned)
        case_id = case_ids[0] if case_ids else None
        identifiers = self._extract_identifiers(cleaned, lowered)
        keywords = self._extract_keywords(lowered, identifiers)

        priority_articles = self.detector.detect("statutes", cleaned)

        query = NormalizedQuery(
            raw_text=raw,
            cleaned_text=cleaned,
            keywords=keywords,
            case_id=case_id,
            related_case_ids=[c for c in case_ids[1:] if c != case_id],
            identifiers=identifiers,
            priority_articles=priority_articles,
            categories=self._detect_categories(lowered),
            jurisdiction=opts.jurisdiction or self.default_jurisdiction,
            date_range=DateRange(
                date_from=opts.date_from or DEFAULT_DATE_FROM,
                date_to=opts.date_to or date.today().isoformat(),
            ),
            follow_up_questions=self._follow_up_questions(case_id, identifiers, lowered),
            problem=opts.problem or self._summarize_problem(cleaned),
        )

        logger.debug(
            f"Normalized query {query.query_hash}: {len(keywords)} keywords, "
            f"case_id={case_id}, {len(priority_articles)} priority articles"
        )
        return query

    # ------------------------------------------------------------------
    # Extraction helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_case_ids(text: str) -> list[str]:
        ids = []
        for match in CASE_ID_PATTERN.finditer(text):
            if match.group(0) not in ids:
                ids.append(match.group(0))
        return ids

    @staticmethod
    def _extract_identifiers(text: str, lowered: str) -> DeviceIdentifiers:
        """Walk the identifier table in priority order; a claimed digit span is never re-matched."""
        found = {"imei": [], "imsi": [], "iccid": [], "msisdn": []}
        claimed = []

        for field_name, pattern in IDENTIFIER_PATTERNS:
            for match in pattern.finditer(text):
                start, end = match.span(1)
                if any(start < e and s < end for s, e in claimed):
                    continue
                claimed.append((start, end))
                value = match.group(1)
                if value not in found[field_name]:
                    found[field_name].append(value)

        device_type = None
        for candidate, triggers in DEVICE_TYPE_TRIGGERS.items():
            if any(t in lowered for t in triggers):
                device_type = candidate
                break

        brand = next((b for b in BRANDS if b.lower() in lowered), None)

        model = None
        for pattern in MODEL_PATTERNS:
            match = pattern.search(text)
            if match:
                model = match.group(0).strip()
                break

        return DeviceIdentifiers(device_type=device_type, brand=brand, model=model, **found)

    @staticmethod
    def _extract_keywords(lowered: str, identifiers: DeviceIdentifiers) -> list[str]:
        keywords = []

        def add(word: str):
            if word and word not in keywords:
                keywords.append(word)

        for token in TOKEN_PATTERN.findall(lowered):
            if len(token) < MIN_KEYWORD_LENGTH or token.isdigit() or token in CROATIAN_STOP_WORDS:
                continue
            add(token)

        # Curated term hits (multi-word legal terms survive as one keyword)
        if identifiers.device_type:
            add(identifiers.device_type)
        if identifiers.brand:
            add(identifiers.brand.lower())
        for term, pattern in LEGAL_TERM_PATTERNS.items():
            if pattern.search(lowered):
                add(term)

        return keywords

    @staticmethod
    def _detect_categories(lowered: str) -> list[str]:
        categories = []
        for trigger, category in CATEGORY_TRIGGERS:
            if trigger in lowered and category not in categories:
                categories.append(category)
        return categories or [DEFAULT_CATEGORY]

    @staticmethod
    def _follow_up_questions(case_id: Optional[str], identifiers: DeviceIdentifiers, lowered: str) -> list[str]:
        questions = []
        if not case_id:
            questions.append(FOLLOW_UP_QUESTIONS["case_id"])
        if not identifiers.imei:
            questions.append(FOLLOW_UP_QUESTIONS["imei"])
        if not identifiers.msisdn:
            questions.append(FOLLOW_UP_QUESTIONS["msisdn"])
        if not any(t in lowered for t in EVIDENCE_TRIGGERS):
            questions.append(FOLLOW_UP_QUESTIONS["evidence"])
        return questions[:MAX_FOLLOW_UP_QUESTIONS]

    @staticmethod
    def _summarize_problem(cleaned: str) -> str:
        if not cleaned:
            return ""
        first = SENTENCE_BOUNDARY.split(cleaned, maxsplit=1)[0]
        return first[:MAX_PROBLEM_LENGTH].strip()
