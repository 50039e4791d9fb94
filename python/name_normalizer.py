"""
Name and field normalization

Pure functions that turn raw watchlist or query values into the canonical
form used for comparison:
- diacritic stripping and case folding
- punctuation handling
- name-order correction for individuals ("Surname, Given" -> "Given Surname")
- legal-entity suffix removal for organizations
- document number, date of birth and nationality canonicalization

Every function is deterministic and idempotent.
"""

import re
import unicodedata
from datetime import date
from typing import Any, Optional, Tuple

from watchlist_models import EntityType

FIELD_NAME = 'name'
FIELD_ADDRESS = 'address'
FIELD_DOCUMENT = 'document'
FIELD_DOB = 'dob'
FIELD_NATIONALITY = 'nationality'
FIELD_REMARKS = 'remarks'

# Trailing "[,] given names" segment: ASCII letters, whitespace, '?' and periods
SURNAME_PRECEDES = re.compile(r'(,?[\s?a-zA-Z.]+)\Z')

_APOSTROPHES = re.compile(r"['‘’ʼ`]")
_NAME_PUNCT = re.compile(r'[^\w\s,.]|_')
_TEXT_PUNCT = re.compile(r'[^\w\s]|_')
_DOC_SEPARATORS = re.compile(r'[\s\-.,/]')
_WHITESPACE = re.compile(r'\s+')
_COMMA_RUN = re.compile(r'\s*,[\s,]*')

# Latin letters that have no canonical decomposition
_TRANSLITERATE = str.maketrans({
    'ø': 'o', 'Ø': 'O', 'ł': 'l', 'Ł': 'L', 'đ': 'd', 'Đ': 'D',
    'ð': 'd', 'Ð': 'D', 'þ': 'th', 'Þ': 'Th', 'æ': 'ae', 'Æ': 'AE',
    'œ': 'oe', 'Œ': 'OE', 'ı': 'i', 'ß': 'ss',
})

LEGAL_SUFFIXES = frozenset({
    'ab', 'ag', 'as', 'bv', 'ca', 'cjsc', 'co', 'company', 'corp',
    'corporation', 'fzc', 'fzco', 'fze', 'gmbh', 'inc', 'incorporated',
    'jsc', 'kg', 'limited', 'llc', 'llp', 'lp', 'ltd', 'nv', 'oao',
    'ojsc', 'ooo', 'oy', 'oyj', 'pao', 'pjsc', 'plc', 'pte', 'pty',
    'sa', 'sal', 'sarl', 'sas', 'sl', 'spa', 'srl', 'zao',
})

COUNTRY_ALIASES = {
    'usa': 'united states',
    'us': 'united states',
    'u s': 'united states',
    'u s a': 'united states',
    'united states of america': 'united states',
    'american': 'united states',
    'uk': 'united kingdom',
    'gb': 'united kingdom',
    'great britain': 'united kingdom',
    'british': 'united kingdom',
    'russian federation': 'russia',
    'russian': 'russia',
    'iran islamic republic of': 'iran',
    'islamic republic of iran': 'iran',
    'iranian': 'iran',
    'democratic people s republic of korea': 'north korea',
    'korea democratic people s republic of': 'north korea',
    'korea north': 'north korea',
    'dprk': 'north korea',
    'syrian arab republic': 'syria',
    'syrian': 'syria',
    'venezuela bolivarian republic of': 'venezuela',
    'venezuelan': 'venezuela',
    'cuban': 'cuba',
    'uae': 'united arab emirates',
}

_MONTHS = {
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'may': 5, 'jun': 6,
    'jul': 7, 'aug': 8, 'sep': 9, 'oct': 10, 'nov': 11, 'dec': 12,
}
_ISO_DATE = re.compile(r'^(\d{4})(?:-(\d{1,2})(?:-(\d{1,2}))?)?$')
_DAY_FIRST_DATE = re.compile(r'^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})$')
_TEXT_DATE = re.compile(r'^(?:(\d{1,2})\s+)?([a-z]{3,9})\.?,?\s+(\d{4})$')
_YEAR = re.compile(r'(?<!\d)(\d{4})(?!\d)')
MIN_YEAR = 1800
MAX_YEAR = 2100


def strip_diacritics(text: str) -> str:
    """Remove combining marks after compatibility decomposition"""
    decomposed = unicodedata.normalize('NFKD', text.translate(_TRANSLITERATE))
    return ''.join(c for c in decomposed if not unicodedata.combining(c))


def _fold(text: str) -> str:
    return strip_diacritics(strip_diacritics(text).casefold())


def _collapse(text: str) -> str:
    return _WHITESPACE.sub(' ', text).strip()


def _is_individual(entity_type: Any) -> bool:
    return isinstance(entity_type, str) and entity_type.lower() == EntityType.INDIVIDUAL.value


def reorder_individual_name(name: str, entity_type: Any) -> str:
    """Move a trailing given-name segment in front of the surname

    Some lists record individuals as "MADURO MOROS, Nicolas" while others use
    natural order. Only individuals are reordered; a name without a matching
    trailing segment is returned unchanged.

    Examples:
        >>> reorder_individual_name("MADURO MOROS, Nicolas", "individual")
        'Nicolas MADURO MOROS'
        >>> reorder_individual_name("FELIX B. MADURO S.A.", "organization")
        'FELIX B. MADURO S.A.'
    """
    if not name or not _is_individual(entity_type):
        return name
    match = SURNAME_PRECEDES.search(name)
    if match is None:
        return name
    suffix = match.group(1)
    if suffix.startswith(','):
        suffix = suffix[1:]
    return f"{suffix} {name[:match.start(1)]}".strip()


def strip_legal_suffixes(name: str) -> str:
    """Drop trailing legal-form tokens ("ltd", "sa", ...) keeping at least one token"""
    tokens = name.split()
    while len(tokens) > 1 and tokens[-1] in LEGAL_SUFFIXES:
        tokens.pop()
    return ' '.join(tokens)


def normalize_name(name: Optional[str], entity_type: Any = None) -> str:
    """Canonical comparison form of an entity or query name"""
    if not name:
        return ""
    text = _APOSTROPHES.sub('', _fold(str(name)))
    text = _collapse(_NAME_PUNCT.sub(' ', text)).strip(' ,')
    text = _COMMA_RUN.sub(', ', text)
    text = reorder_individual_name(text, entity_type)
    text = _collapse(text.replace('.', '').replace(',', ' '))
    # Dropping commas can expose a new trailing segment; a second pass over
    # the comma-free form leaves a fixed point
    text = reorder_individual_name(text, entity_type)
    if isinstance(entity_type, str) and entity_type.lower() == EntityType.ORGANIZATION.value:
        text = strip_legal_suffixes(text)
    return text


def normalize_text(value: Optional[str]) -> str:
    """Generic normalization for addresses, remarks and free text"""
    if not value:
        return ""
    return _collapse(_TEXT_PUNCT.sub(' ', _fold(str(value))))


def normalize_document(doc_number: Optional[str]) -> str:
    """Normalize document number for matching"""
    if not doc_number:
        return ""
    return _DOC_SEPARATORS.sub('', strip_diacritics(str(doc_number))).upper()


def normalize_country(value: Optional[str]) -> str:
    """Canonical country name for nationality comparison"""
    text = normalize_text(value)
    return COUNTRY_ALIASES.get(text, text)


def _format_date(year: int, month: Optional[int] = None, day: Optional[int] = None) -> str:
    if not MIN_YEAR <= year <= MAX_YEAR:
        return ""
    if month is None or not 1 <= month <= 12:
        return f"{year:04d}"
    if day is None:
        return f"{year:04d}-{month:02d}"
    try:
        date(year, month, day)
    except ValueError:
        return f"{year:04d}-{month:02d}"
    return f"{year:04d}-{month:02d}-{day:02d}"


def normalize_date(value: Optional[str]) -> str:
    """Canonical partial ISO date (YYYY, YYYY-MM or YYYY-MM-DD)

    Accepts ISO dates, day-first numeric dates, "12 Jan 1962", "Jan 1962"
    and, as a last resort, any standalone four-digit year. Returns an empty
    string when no date can be recovered.
    """
    if not value:
        return ""
    text = _collapse(_fold(str(value)))

    match = _ISO_DATE.match(text)
    if match:
        year, month, day = match.groups()
        return _format_date(int(year), int(month) if month else None, int(day) if day else None)

    match = _DAY_FIRST_DATE.match(text)
    if match:
        day, month, year = match.groups()
        return _format_date(int(year), int(month), int(day))

    match = _TEXT_DATE.match(text)
    if match and match.group(2)[:3] in _MONTHS:
        day, month_name, year = match.groups()
        return _format_date(int(year), _MONTHS[month_name[:3]], int(day) if day else None)

    match = _YEAR.search(text)
    if match:
        return _format_date(int(match.group(1)))
    return ""


def parse_partial_date(canonical: str) -> Optional[Tuple[int, Optional[int], Optional[int]]]:
    """Split a canonical partial date into (year, month, day)"""
    match = _ISO_DATE.match(canonical or "")
    if not match:
        return None
    year, month, day = match.groups()
    return int(year), int(month) if month else None, int(day) if day else None


def normalize(field: str, value: Optional[str], entity_type: Any = None) -> str:
    """Normalize a value according to the field it belongs to

    Args:
        field: Field key (name, address, document, dob, nationality, remarks)
        value: Raw value
        entity_type: Entity type, used for name-order and suffix handling

    Returns:
        Canonical value; empty string when nothing usable remains
    """
    if value is None:
        return ""
    if field == FIELD_NAME:
        return normalize_name(value, entity_type)
    if field == FIELD_DOCUMENT:
        return normalize_document(value)
    if field == FIELD_DOB:
        return normalize_date(value)
    if field == FIELD_NATIONALITY:
        return normalize_country(value)
    return normalize_text(value)
