"""
Citation Detection for Croatian Legal Queries

Detects structured legal references in free text:
- Statute citations (ZKP čl. 5 st. 2, članak 12. Zakona o obveznim odnosima)
- Official gazette references (NN 123/20, Narodne novine br. 45/2021)
- Case numbers (Rev-123/2020, U-III-1234/2019, Pp-2343/2025)
- ECLI identifiers, dates, court types and legal terms

Every citation carries a canonical string used for deduplication, so
"čl. 5" and "članak 5." collapse to the same entry.
"""

import re
import logging
from datetime import date
from typing import ClassVar, Optional, Union
from dataclasses import dataclass, field

from .language_patterns import (
    CASE_LOOKUP_BOUNDARY,
    CASE_NUMBER_PATTERNS,
    CASE_PREFIX_BLOCKLIST,
    COURT_TYPES,
    DATE_PATTERN,
    ECLI_PATTERN,
    GAZETTE_ISSUE_PATTERN,
    GAZETTE_PATTERN,
    LAW_NAME_TO_ABBREV,
    LEGAL_TERM_PATTERNS,
    LEGAL_TERMS,
    MAX_ARTICLE_RANGE,
    STATUTE_PATTERNS,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Citation types
# ============================================================================

@dataclass(frozen=True)
class StatuteCitation:
    """A statute article reference, optionally narrowed to paragraph/item/alineja."""
    kind: ClassVar[str] = "statute"
    law: Optional[str]
    article: str
    paragraph: Optional[int] = None
    item: Optional[int] = None
    alineja: Optional[int] = None
    raw: str = field(default="", compare=False)

    @property
    def canonical(self) -> str:
        parts = [f"čl.{self.article}"]
        if self.paragraph is not None:
            parts.append(f"st.{self.paragraph}")
        if self.item is not None:
            parts.append(f"t.{self.item}")
        if self.alineja is not None:
            parts.append(f"al.{self.alineja}")
        body = " ".join(parts)
        return f"{self.law}:{body}" if self.law else body

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "law": self.law,
            "article": self.article,
            "paragraph": self.paragraph,
            "item": self.item,
            "alineja": self.alineja,
            "canonical": self.canonical,
        }


@dataclass(frozen=True)
class GazetteReference:
    """Narodne novine issue, e.g. NN 123/20."""
    kind: ClassVar[str] = "gazette"
    number: str
    year: str

    @property
    def issue(self) -> str:
        """The value stored in laws.law_number."""
        return f"{self.number}/{self.year}"

    @property
    def canonical(self) -> str:
        return f"NN {self.issue}"

    def to_dict(self) -> dict:
        return {"type": self.kind, "number": self.number, "year": self.year, "canonical": self.canonical}


@dataclass(frozen=True)
class CaseNumberCitation:
    """Court case number, e.g. Rev 123/2020."""
    kind: ClassVar[str] = "case_number"
    prefix: str
    number: str
    year: str

    @property
    def canonical(self) -> str:
        return f"{self.prefix} {int(self.number)}/{self.year}"

    @property
    def lookup_pattern(self) -> str:
        """
        Case-insensitive regular expression for doc_id lookup.

        Matches "Pp-2343/2025", "Pp 2343/2025", "Pp2343/2025" and zero-padded
        numbers, but not "Pp-12343/2025" or "Pp-5/2343/2025". Valid both for
        Python re and PostgreSQL ~*.
        """
        return (
            f"(^|{CASE_LOOKUP_BOUNDARY}){re.escape(self.prefix)}[- ]?0*{int(self.number)}"
            f"/{self.year}([^0-9]|$)"
        )

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "prefix": self.prefix,
            "number": str(int(self.number)),
            "year": self.year,
            "canonical": self.canonical,
        }


@dataclass(frozen=True)
class EcliCitation:
    kind: ClassVar[str] = "ecli"
    value: str

    @property
    def canonical(self) -> str:
        return self.value

    def to_dict(self) -> dict:
        return {"type": self.kind, "value": self.value, "canonical": self.canonical}


@dataclass(frozen=True)
class DateCitation:
    """A calendar date in ISO form (2024-03-12)."""
    kind: ClassVar[str] = "date"
    value: str

    @property
    def canonical(self) -> str:
        return self.value

    def to_dict(self) -> dict:
        return {"type": self.kind, "value": self.value, "canonical": self.canonical}


@dataclass(frozen=True)
class CourtTypeCitation:
    kind: ClassVar[str] = "court"
    name: str
    court_type: str
    abbreviation: Optional[str] = None

    @property
    def canonical(self) -> str:
        return f"court:{self.court_type}"

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "name": self.name,
            "court_type": self.court_type,
            "abbreviation": self.abbreviation,
            "canonical": self.canonical,
        }


@dataclass(frozen=True)
class LegalTerm:
    kind: ClassVar[str] = "legal_term"
    term: str
    category: str
    english: str

    @property
    def canonical(self) -> str:
        return f"{self.category}:{self.english}"

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "term": self.term,
            "category": self.category,
            "english": self.english,
            "canonical": self.canonical,
        }


Citation = Union[
    StatuteCitation, GazetteReference, CaseNumberCitation,
    EcliCitation, DateCitation, CourtTypeCitation,
]


@dataclass
class CitationSummary:
    """Flattened view of every citation found in a text."""
    laws: list[str] = field(default_factory=list)
    articles: list[StatuteCitation] = field(default_factory=list)
    case_numbers: list[CaseNumberCitation] = field(default_factory=list)
    court_types: list[CourtTypeCitation] = field(default_factory=list)
    legal_terms: list[LegalTerm] = field(default_factory=list)
    nn_references: list[GazetteReference] = field(default_factory=list)
    dates: list[DateCitation] = field(default_factory=list)
    ecli: list[EcliCitation] = field(default_factory=list)
    has_specific_refs: bool = False

    def to_dict(self) -> dict:
        return {
            "laws": list(self.laws),
            "articles": [c.to_dict() for c in self.articles],
            "case_numbers": [c.to_dict() for c in self.case_numbers],
            "court_types": [c.to_dict() for c in self.court_types],
            "legal_terms": [t.to_dict() for t in self.legal_terms],
            "nn_references": [g.to_dict() for g in self.nn_references],
            "dates": [d.to_dict() for d in self.dates],
            "ecli": [e.to_dict() for e in self.ecli],
            "has_specific_refs": self.has_specific_refs,
        }


# ============================================================================
# Detector
# ============================================================================

def _dedupe(citations) -> list:
    """Keep the first citation per canonical string, preserving order."""
    seen = {}
    for citation in citations:
        seen.setdefault(citation.canonical, citation)
    return list(seen.values())


def _overlaps(span: tuple[int, int], claimed: list[tuple[int, int]]) -> bool:
    return any(span[0] < end and start < span[1] for start, end in claimed)


def _numbers(value: Optional[str]) -> list[int]:
    if not value:
        return []
    return [int(n) for n in re.findall(r"\d+", value)]


class CitationDetector:
    """
    Detects and normalizes legal citations in Croatian text.

    Stateless and thread-safe; one instance can be shared across requests.
    """

    KINDS = ("statutes", "gazette", "case_numbers", "ecli", "dates", "courts", "legal_terms")

    def detect_all(self, text: str) -> dict[str, list]:
        """
        Run every detector over the text.

        Args:
            text: Free text (query or document chunk)

        Returns:
            Map of citation kind -> deduplicated citations in order of appearance
        """
        if not text or not text.strip():
            return {kind: [] for kind in self.KINDS}

        gazette, gazette_spans = self._detect_gazette(text)
        return {
            "statutes": self._detect_statutes(text),
            "gazette": gazette,
            "case_numbers": self._detect_case_numbers(text, gazette_spans),
            "ecli": self._detect_ecli(text),
            "dates": self._detect_dates(text),
            "courts": self._detect_courts(text),
            "legal_terms": self._detect_legal_terms(text),
        }

    def detect(self, kind: str, text: str) -> list:
        """Run a single detector by kind name. Raises ValueError for unknown kinds."""
        if kind not in self.KINDS:
            raise ValueError(f"Unknown citation kind: {kind!r} (expected one of {', '.join(self.KINDS)})")
        return self.detect_all(text)[kind]

    def extract(self, text: str) -> CitationSummary:
        """
        Flatten detect_all() into a summary.

        has_specific_refs is True iff at least one statute, gazette or
        case-number citation was found.
        """
        found = self.detect_all(text)
        statutes = found["statutes"]

        laws = []
        for citation in statutes:
            if citation.law and citation.law not in laws:
                laws.append(citation.law)

        return CitationSummary(
            laws=laws,
            articles=statutes,
            case_numbers=found["case_numbers"],
            court_types=found["courts"],
            legal_terms=found["legal_terms"],
            nn_references=found["gazette"],
            dates=found["dates"],
            ecli=found["ecli"],
            has_specific_refs=bool(statutes or found["gazette"] or found["case_numbers"]),
        )

    # ------------------------------------------------------------------
    # Convenience helpers
    # ------------------------------------------------------------------

    def extract_canonical_citations(self, text: str) -> list[str]:
        """Canonical strings for statute, gazette, case-number and ECLI citations."""
        found = self.detect_all(text)
        result = []
        for kind in ("statutes", "gazette", "case_numbers", "ecli"):
            result.extend(c.canonical for c in found[kind])
        return result

    def extract_law_numbers(self, text: str) -> list[str]:
        """Gazette issues as stored in laws.law_number (e.g. "123/20")."""
        return [g.issue for g in self.detect("gazette", text)]

    def extract_case_ids(self, text: str) -> list[str]:
        return [c.canonical for c in self.detect("case_numbers", text)]

    def has_citations(self, text: str) -> bool:
        found = self.detect_all(text)
        return any(found[kind] for kind in ("statutes", "gazette", "case_numbers", "ecli", "dates", "courts"))

    def statistics(self, text: str) -> dict[str, int]:
        found = self.detect_all(text)
        stats = {kind: len(items) for kind, items in found.items()}
        stats["total"] = sum(stats.values())
        return stats

    # ------------------------------------------------------------------
    # Statutes
    # ------------------------------------------------------------------

    def _detect_statutes(self, text: str) -> list[StatuteCitation]:
        citations = []
        law_spans = []
        bare_index = len(STATUTE_PATTERNS) - 1

        for index, pattern in enumerate(STATUTE_PATTERNS):
            for match in pattern.finditer(text):
                start, end = match.span()
                if index == bare_index:
                    # "čl. 5 ZKP" already produced ZKP:čl.5
                    if any(s <= start and end <= e for s, e in law_spans):
                        continue
                    law = None
                else:
                    law = self._normalize_law(match.group("law"))
                    law_spans.append((start, end))
                citations.extend(self._expand_statute(match, law))

        return _dedupe(citations)

    @staticmethod
    def _normalize_law(raw: str) -> str:
        collapsed = re.sub(r"\s+", " ", raw.strip()).lower()
        return LAW_NAME_TO_ABBREV.get(collapsed, raw.strip().upper())

    def _expand_statute(self, match: re.Match, law: Optional[str]) -> list[StatuteCitation]:
        groups = match.groupdict()
        articles = self._expand_articles(groups["article"], groups.get("article_end"))
        paragraphs = _numbers(groups.get("paragraphs")) or [None]
        items = _numbers(groups.get("items")) or [None]
        alineja = int(groups["alineja"]) if groups.get("alineja") else None
        raw = match.group(0).strip()

        return [
            StatuteCitation(
                law=law,
                article=article.lower(),
                paragraph=paragraph,
                item=item,
                alineja=alineja,
                raw=raw,
            )
            for article in articles
            for paragraph in paragraphs
            for item in items
        ]

    @staticmethod
    def _expand_articles(start: str, end: Optional[str]) -> list[str]:
        if not end or not (start.isdigit() and end.isdigit()):
            return [start]
        first, last = int(start), int(end)
        if first < last and last - first <= MAX_ARTICLE_RANGE:
            return [str(n) for n in range(first, last + 1)]
        return [start]

    # ------------------------------------------------------------------
    # Gazette, case numbers, ECLI, dates
    # ------------------------------------------------------------------

    def _detect_gazette(self, text: str) -> tuple[list[GazetteReference], list[tuple[int, int]]]:
        references = []
        spans = []
        for match in GAZETTE_PATTERN.finditer(text):
            spans.append(match.span())
            for issue in GAZETTE_ISSUE_PATTERN.finditer(match.group("issues")):
                references.append(GazetteReference(number=issue.group("number"), year=issue.group("year")))
        return _dedupe(references), spans

    def _detect_case_numbers(self, text: str, gazette_spans: list[tuple[int, int]]) -> list[CaseNumberCitation]:
        citations = []
        claimed = list(gazette_spans)

        for pattern in CASE_NUMBER_PATTERNS:
            for match in pattern.finditer(text):
                span = match.span()
                prefix = match.group("prefix")
                if prefix.upper() in CASE_PREFIX_BLOCKLIST or _overlaps(span, claimed):
                    continue
                claimed.append(span)
                citations.append(CaseNumberCitation(
                    prefix=prefix,
                    number=match.group("number"),
                    year=match.group("year"),
                ))

        return _dedupe(citations)

    def _detect_ecli(self, text: str) -> list[EcliCitation]:
        return _dedupe(EcliCitation(value=m.group(0).rstrip(".")) for m in ECLI_PATTERN.finditer(text))

    def _detect_dates(self, text: str) -> list[DateCitation]:
        dates = []
        for match in DATE_PATTERN.finditer(text):
            try:
                parsed = date(int(match.group("y")), int(match.group("m")), int(match.group("d")))
            except ValueError:
                continue
            dates.append(DateCitation(value=parsed.isoformat()))
        return _dedupe(dates)

    # ------------------------------------------------------------------
    # Courts and legal terms
    # ------------------------------------------------------------------

    def _detect_courts(self, text: str) -> list[CourtTypeCitation]:
        courts = []
        seen_types = set()
        claimed = []

        for name, court_type, abbreviation in COURT_TYPES:
            for match in re.finditer(rf"\b{re.escape(name)}\b", text, re.IGNORECASE):
                if _overlaps(match.span(), claimed):
                    continue
                claimed.append(match.span())
                if court_type in seen_types:
                    continue
                seen_types.add(court_type)
                courts.append(CourtTypeCitation(name=name, court_type=court_type, abbreviation=abbreviation))

        return courts

    def _detect_legal_terms(self, text: str) -> list[LegalTerm]:
        terms = []
        for term, pattern in LEGAL_TERM_PATTERNS.items():
            if pattern.search(text):
                category, english = LEGAL_TERMS[term]
                terms.append(LegalTerm(term=term, category=category, english=english))
        return _dedupe(terms)
