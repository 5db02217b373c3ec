"""
Croatian Pattern Definitions for Legal Retrieval

All regex patterns, term tables and registries used by the query normalizer
and citation detector. Modules import from here instead of defining
patterns inline.
"""

import re

# =============================================================================
# Identifier Patterns (for query normalizer)
# =============================================================================
#
# Ordered by priority. Labelled forms ("IMSI: ...") come first so a labelled
# IMSI is not swallowed by the bare IMEI pattern; bare forms follow longest
# first. A digit span claimed by an earlier entry is never re-matched.
# Each entry: (identifier field, compiled pattern). Group 1 is the value.

IDENTIFIER_PATTERNS = [
    ("imsi", re.compile(r"(?i)\bIMSI\s*(?:broj|br\.)?\s*[:#]?\s*(?<!\d)(\d{14,15})(?!\d)")),
    ("imei", re.compile(r"(?i)\bIMEI\s*(?:broj|br\.)?\s*[:#]?\s*(?<!\d)(\d{14,16})(?!\d)")),
    ("iccid", re.compile(r"(?i)\bICCID\s*(?:broj|br\.)?\s*[:#]?\s*(?<!\d)(\d{19,22})(?!\d)")),
    ("msisdn", re.compile(
        r"(?i)\b(?:MSISDN|tel\.|telefon|broj\s+telefona)\s*[:#]?\s*(?<![\d+])(\+?\d{8,15})(?!\d)"
    )),
    ("iccid", re.compile(r"(?<!\d)(\d{19,22})(?!\d)")),
    ("imei", re.compile(r"(?<!\d)(\d{14,16})(?!\d)")),
    ("msisdn", re.compile(r"(?<![\d+])(\+?\d{8,15})(?!\d)")),
]

# Case identifier in the query (e.g. "Pp-2343/2025", "Kž-12/2020")
CASE_ID_PATTERN = re.compile(r"\b[A-ZČĆĐŠŽ][a-zA-ZčćđšžČĆĐŠŽ]?-?\d{1,5}/\d{4}\b")

# Sentence boundary used for the problem summary ("čl. 5" is not a boundary)
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+(?=[A-ZČĆĐŠŽ])")
MAX_PROBLEM_LENGTH = 200

TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)
MIN_KEYWORD_LENGTH = 3

# =============================================================================
# Stop Words
# =============================================================================

CROATIAN_STOP_WORDS = frozenset({
    "ali", "ako", "bez", "bio", "bila", "bilo", "bili", "biti", "čak", "čega",
    "čemu", "dok", "gdje", "iako", "ima", "imati", "isto", "između", "jer",
    "još", "kad", "kada", "kako", "kao", "koga", "koja", "koje", "koji",
    "kojih", "kojim", "kojoj", "kojem", "koju", "koliko", "li", "mogu",
    "može", "molim", "moj", "naš", "nad", "nakon", "nije", "nisu", "njih",
    "njegov", "njezin", "ona", "onaj", "onda", "one", "oni", "ono", "ovaj",
    "ovdje", "ovim", "ovo", "ova", "pod", "pri", "prema", "preko", "prije",
    "samo", "sve", "svi", "svoj", "tamo", "tim", "toga", "tom", "tome",
    "treba", "tvoj", "vaš", "već", "vrlo", "što", "zašto", "zbog", "the",
    "and", "for", "with",
})

# =============================================================================
# Device / Brand Terms (for query normalizer)
# =============================================================================

DEVICE_TYPE_TRIGGERS = {
    "mobitel": ("mobitel", "telefon", "smartphone"),
}

BRANDS = ("Apple", "iPhone", "Samsung", "Xiaomi", "Huawei", "Google", "Pixel", "OnePlus")

MODEL_PATTERNS = (
    re.compile(r"\biPhone\s+(?:\d{1,2}(?:\s+(?:Pro|Max|Plus|Mini))*|SE|XR|XS|X)\b", re.IGNORECASE),
    re.compile(r"\bSamsung\s+Galaxy\s+(?:[A-Z]\d{1,3}\+?[a-z]?|Note\s*\d{1,2}|Z\s+(?:Flip|Fold)\s*\d?)", re.IGNORECASE),
)

EVIDENCE_TRIGGERS = ("potvrd", "zapisnik")

# =============================================================================
# Legal Issue Categories (keyword trigger -> category)
# =============================================================================

CATEGORY_TRIGGERS = (
    ("formal", "Formalni elementi"),
    ("posebn", "Posebnost"),
    ("osnov", "Osnovanost"),
    ("hitn", "Hitnost / vremenska opravdanost"),
    ("cilj", "Cilj pretresa"),
    ("zakon", "Zakonitost postupanja"),
    ("forenzi", "Zakonitost postupanja"),
    ("noćn", "Hitnost / vremenska opravdanost"),
    ("preširok", "Posebnost"),
)

DEFAULT_CATEGORY = "Zakonitost postupanja"

# =============================================================================
# Follow-up Questions (asked when identifying fields are missing)
# =============================================================================

FOLLOW_UP_QUESTIONS = {
    "case_id": "Molim točan broj predmeta (npr. Pp-2343/2025).",
    "imei": "Imate li IMEI brojeve uređaja?",
    "msisdn": "Koji je telefonski broj (MSISDN) uređaja?",
    "evidence": "Možete li priložiti potvrdu o oduzimanju ili zapisnik o pretrazi?",
}

MAX_FOLLOW_UP_QUESTIONS = 4

# =============================================================================
# Law Registry (for statute citation normalization)
# =============================================================================

LAW_ABBREVIATIONS = (
    "ZPP", "ZKP", "ZOO", "OZ", "ZTD", "ZUP", "ZUS",
    "KZ", "ZK", "ZJN", "ZZK", "ZSPC", "ZIS", "ZDO",
    "ZDR", "ZOR", "ZPD",
)

# Inflected long names map to the same abbreviation ("Zakona o kaznenom postupku")
LAW_NAME_TO_ABBREV = {
    "zakon o parničnom postupku": "ZPP",
    "zakona o parničnom postupku": "ZPP",
    "zakon o kaznenom postupku": "ZKP",
    "zakona o kaznenom postupku": "ZKP",
    "kazneni zakon": "KZ",
    "kaznenog zakona": "KZ",
    "zakon o obveznim odnosima": "ZOO",
    "zakona o obveznim odnosima": "ZOO",
    "ovršni zakon": "OZ",
    "ovršnog zakona": "OZ",
    "zakon o upravnom postupku": "ZUP",
    "zakona o upravnom postupku": "ZUP",
    "zakon o upravnim sporovima": "ZUS",
    "zakona o upravnim sporovima": "ZUS",
    "zakon o trgovačkim društvima": "ZTD",
    "zakona o trgovačkim društvima": "ZTD",
    "zakon o zemljišnim knjigama": "ZK",
    "zakona o zemljišnim knjigama": "ZK",
}


def _alternation(items) -> str:
    # Longest first so "ZZK" is tried before "ZK"
    return "|".join(re.escape(s) for s in sorted(items, key=len, reverse=True))


LAW_ABBREV_REGEX = f"(?:{_alternation(LAW_ABBREVIATIONS)})"
LAW_LONG_NAME_REGEX = f"(?:{_alternation(LAW_NAME_TO_ABBREV)})"

# Maximum span for "čl. 10-12" style ranges before we stop expanding
MAX_ARTICLE_RANGE = 50

_ARTICLE_WORD = r"(?:čl(?:anak|anka|\.)?|cl(?:anak|anka|\.)?)"
_SEP = r"(?:\s*,\s*|\s+i\s+)"
_PARAGRAPH_WORD = r"(?:st(?:avak|avka|av|\.)?)"
_ITEM_WORD = r"(?:toč(?:ka|ke|\.)?|t\.)"

SUBDIVISION_REGEX = (
    rf"(?:{_PARAGRAPH_WORD}\s*(?P<paragraphs>\d+\.?(?:{_SEP}(?:{_PARAGRAPH_WORD})?\s*\d+\.?)*)\s*)?"
    rf"(?:{_ITEM_WORD}\s*(?P<items>\d+\.?(?:{_SEP}(?:{_ITEM_WORD})?\s*\d+\.?)*)\s*)?"
    r"(?:al(?:ineja|\.)\s*(?P<alineja>\d+)\.?\s*)?"
)

_ARTICLE = rf"{_ARTICLE_WORD}\s*(?P<article>\d+[a-z]?)\s*(?:[-–]\s*(?P<article_end>\d+[a-z]?))?\s*\.?\s*"

# Order matters: law-bearing patterns first, bare article last
STATUTE_PATTERNS = (
    re.compile(rf"\b(?P<law>{LAW_ABBREV_REGEX})\s*,?\s*{_ARTICLE}{SUBDIVISION_REGEX}", re.IGNORECASE),
    re.compile(rf"\b{_ARTICLE}{SUBDIVISION_REGEX}\s*(?P<law>{LAW_ABBREV_REGEX})\b", re.IGNORECASE),
    re.compile(rf"\b(?P<law>{LAW_LONG_NAME_REGEX})\s*,?\s*{_ARTICLE}{SUBDIVISION_REGEX}", re.IGNORECASE),
    re.compile(rf"\b{_ARTICLE}{SUBDIVISION_REGEX}\s*(?P<law>{LAW_LONG_NAME_REGEX})\b", re.IGNORECASE),
    re.compile(rf"\b{_ARTICLE_WORD}\s*(?P<article>\d+[a-z]?)\s*\.?\s*{SUBDIVISION_REGEX}", re.IGNORECASE),
)

# =============================================================================
# Official Gazette (Narodne novine)
# =============================================================================

GAZETTE_PATTERN = re.compile(
    r"\b(?:Narodne\s+novine|NN)\s*(?:,?\s*(?:br\.?|broj))?\s*"
    r"(?P<issues>\d{1,3}/\d{2,4}(?:\s*[-–]\s*\d+)?(?:\s*,\s*\d{1,3}/\d{2,4}(?:\s*[-–]\s*\d+)?)*)",
    re.IGNORECASE,
)

GAZETTE_ISSUE_PATTERN = re.compile(r"(?P<number>\d{1,3})/(?P<year>\d{2,4})")

# =============================================================================
# Case Numbers
# =============================================================================

CASE_PREFIXES = (
    "Rev", "Revr", "Revt", "Revd", "Gž", "Gžp", "Gžn", "Gžr",
    "Pž", "Kž", "Kžm", "Kžg", "U-III", "U-II", "U-I",
    "Usž", "Us", "UP", "Pp", "Pn", "Pr", "Gpp", "Gzp",
    "Gžzp", "Psp",
)

# Prefixes the generic fallback must never report as a case (gazette references)
CASE_PREFIX_BLOCKLIST = frozenset({"NN"})

# A character that cannot be part of a case prefix. Spelled out instead of \w
# so the class reads the same in Python re and PostgreSQL regular expressions.
CASE_LOOKUP_BOUNDARY = "[^0-9A-Za-zČĆĐŠŽčćđšž]"

CASE_NUMBER_PATTERNS = (
    # Constitutional court formats (U-III-1234/2019)
    re.compile(r"\b(?P<prefix>U-[IVX]{1,3})-?\s*(?P<number>\d{1,6})/(?P<year>\d{2,4})\b"),
    re.compile(rf"\b(?P<prefix>{_alternation(CASE_PREFIXES)})\s*-?\s*(?P<number>\d{{1,6}})/(?P<year>\d{{2,4}})\b"),
    # Generic fallback, higher false-positive risk
    re.compile(r"\b(?P<prefix>[A-ZČĆĐŠŽ]{1,3})-?\s*(?P<number>\d{1,6})/(?P<year>\d{2,4})\b"),
)

# =============================================================================
# ECLI and Dates
# =============================================================================

ECLI_PATTERN = re.compile(r"\bECLI:HR:[A-ZČĆĐŠŽ]{2,12}:[0-9]{4}:[A-Z0-9.]{3,}")

DATE_PATTERN = re.compile(
    r"\b(?P<d>[0-3]?\d)\.\s*(?P<m>[01]?\d)\.\s*(?P<y>(?:19|20)\d{2})\.?"
)

# =============================================================================
# Court Types (longest names first so the specific court wins)
# =============================================================================

COURT_TYPES = (
    ("Ustavni sud Republike Hrvatske", "constitutional", "USRH"),
    ("Ustavni sud", "constitutional", "USRH"),
    ("Vrhovni sud Republike Hrvatske", "supreme", "VSRH"),
    ("Vrhovni sud", "supreme", "VSRH"),
    ("Visoki trgovački sud Republike Hrvatske", "high_commercial", "VTSRH"),
    ("Visoki trgovački sud", "high_commercial", "VTS"),
    ("Visoki upravni sud Republike Hrvatske", "high_administrative", "VUSRH"),
    ("Visoki upravni sud", "high_administrative", "VUS"),
    ("Visoki prekršajni sud Republike Hrvatske", "high_misdemeanor", "VPSRH"),
    ("Visoki prekršajni sud", "high_misdemeanor", "VPS"),
    ("Županijski sud", "county", None),
    ("Općinski sud", "municipal", None),
    ("Trgovački sud", "commercial", None),
    ("Upravni sud", "administrative", None),
    ("Prekršajni sud", "misdemeanor", None),
)

# =============================================================================
# Legal Terms (term -> (category, english))
# =============================================================================

LEGAL_TERMS = {
    # Contract law
    "ugovor": ("contract_law", "contract"),
    "obveza": ("contract_law", "obligation"),
    "naknada štete": ("contract_law", "damages"),
    "odšteta": ("contract_law", "compensation"),
    "raskid ugovora": ("contract_law", "contract_termination"),
    "ugovorna strana": ("contract_law", "contracting_party"),
    # Criminal law
    "kazna": ("criminal_law", "punishment"),
    "krivnja": ("criminal_law", "guilt"),
    "optužba": ("criminal_law", "indictment"),
    "kazneno djelo": ("criminal_law", "criminal_offense"),
    "okrivljenik": ("criminal_law", "defendant"),
    "pretraga": ("criminal_law", "search"),
    "privremeno oduzimanje": ("criminal_law", "temporary_seizure"),
    "nalog za pretragu": ("criminal_law", "search_warrant"),
    # Civil procedure
    "tužba": ("procedure", "lawsuit"),
    "tužitelj": ("procedure", "plaintiff"),
    "tuženik": ("procedure", "respondent"),
    "žalba": ("procedure", "appeal"),
    "presuda": ("procedure", "judgment"),
    "rješenje": ("procedure", "decision"),
    "pravna moć": ("procedure", "legal_force"),
    "izvršenje": ("procedure", "enforcement"),
    "ovršenik": ("procedure", "debtor"),
    "ovrhovoditelj": ("procedure", "creditor"),
    # Labor law
    "radni odnos": ("labor_law", "employment"),
    "otkaz": ("labor_law", "dismissal"),
    "otpremnina": ("labor_law", "severance_pay"),
    "plaća": ("labor_law", "salary"),
    "poslodavac": ("labor_law", "employer"),
    "zaposlenik": ("labor_law", "employee"),
    # Property law
    "vlasništvo": ("property_law", "ownership"),
    "posjed": ("property_law", "possession"),
    "uknjižba": ("property_law", "land_registration"),
    "nekretnina": ("property_law", "real_estate"),
    "stvarno pravo": ("property_law", "real_right"),
    # Family law
    "razvod braka": ("family_law", "divorce"),
    "uzdržavanje": ("family_law", "maintenance"),
    "roditeljska skrb": ("family_law", "parental_care"),
    # Commercial law
    "trgovačko društvo": ("commercial_law", "company"),
    "dioničar": ("commercial_law", "shareholder"),
    "stečaj": ("commercial_law", "bankruptcy"),
    "likvidacija": ("commercial_law", "liquidation"),
}

LEGAL_TERM_PATTERNS = {
    term: re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)
    for term in LEGAL_TERMS
}
