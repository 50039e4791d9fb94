"""
Watchlist data model

Canonical, immutable records produced by the record builder and served by
index generations. Every textual value keeps its raw form (shown to analysts)
next to its canonical form (used for scoring).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class EntityType(str, Enum):
    """Kinds of listed entities."""

    INDIVIDUAL = "individual"
    ORGANIZATION = "organization"
    VESSEL = "vessel"
    AIRCRAFT = "aircraft"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> Optional['EntityType']:
        """Map a type indicator to an EntityType

        Returns None for absent or blank values; unrecognised values map to
        UNKNOWN.
        """
        if value is None:
            return None
        if isinstance(value, EntityType):
            return value
        text = str(value).strip().lower()
        if not text:
            return None
        return _TYPE_ALIASES.get(text, cls.UNKNOWN)


_TYPE_ALIASES = {
    'individual': EntityType.INDIVIDUAL,
    'person': EntityType.INDIVIDUAL,
    'natural person': EntityType.INDIVIDUAL,
    'organization': EntityType.ORGANIZATION,
    'organisation': EntityType.ORGANIZATION,
    'entity': EntityType.ORGANIZATION,
    'company': EntityType.ORGANIZATION,
    'legal entity': EntityType.ORGANIZATION,
    'vessel': EntityType.VESSEL,
    'ship': EntityType.VESSEL,
    'aircraft': EntityType.AIRCRAFT,
    'unknown': EntityType.UNKNOWN,
}


@dataclass(frozen=True)
class FieldValue:
    """A raw value and its canonical comparison form"""
    raw: str
    canonical: str


@dataclass(frozen=True)
class Identification:
    """Identity document (passport, national ID, IMO number, ...)"""
    doc_type: str
    number: str
    canonical_number: str
    country: Optional[str] = None


@dataclass(frozen=True)
class WatchlistEntity:
    """A canonical watchlist record, immutable once built"""
    entity_id: str
    source: str
    entity_type: EntityType
    names: Tuple[FieldValue, ...]
    addresses: Tuple[FieldValue, ...] = ()
    identifications: Tuple[Identification, ...] = ()
    dates_of_birth: Tuple[FieldValue, ...] = ()
    nationalities: Tuple[FieldValue, ...] = ()
    remarks: Optional[FieldValue] = None

    @property
    def primary_name(self) -> FieldValue:
        return self.names[0]

    @property
    def aliases(self) -> Tuple[FieldValue, ...]:
        return self.names[1:]

    @property
    def sort_key(self) -> Tuple[str, str]:
        return (self.source, self.entity_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert entity to a dictionary of raw (human-facing) values"""
        return {
            'id': self.entity_id,
            'source': self.source,
            'type': self.entity_type.value,
            'name': self.primary_name.raw,
            'aliases': [n.raw for n in self.aliases],
            'addresses': [a.raw for a in self.addresses],
            'identifications': [
                {
                    'type': doc.doc_type,
                    'number': doc.number,
                    'country': doc.country
                } for doc in self.identifications
            ],
            'datesOfBirth': [d.raw for d in self.dates_of_birth],
            'nationalities': [n.raw for n in self.nationalities],
            'remarks': self.remarks.raw if self.remarks else None
        }


class MalformedRecordError(ValueError):
    """Raised when a raw record cannot be canonicalized

    Attributes:
        source: Source list the record came from
        record_id: Record identifier when one was present
        reason: Why the record was rejected
    """

    def __init__(self, reason: str, source: str = "", record_id: Optional[str] = None):
        self.source = source
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"{source or 'unknown source'} record {record_id or '<no id>'}: {reason}")


@dataclass
class QueryProfile:
    """Caller-supplied screening input"""
    name: str
    entity_type: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None
    nationality: Optional[str] = None
    document_number: Optional[str] = None
    document_type: Optional[str] = None


@dataclass(frozen=True)
class NormalizedProfile:
    """A query profile in canonical form; empty strings mean unset"""
    name: str
    raw_name: str
    entity_type: Optional[EntityType] = None
    address: str = ""
    date_of_birth: str = ""
    nationality: str = ""
    document_number: str = ""
    document_type: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'entity_type': self.entity_type.value if self.entity_type else None,
            'address': self.address or None,
            'date_of_birth': self.date_of_birth or None,
            'nationality': self.nationality or None,
            'document_number': self.document_number or None,
            'document_type': self.document_type or None,
        }
