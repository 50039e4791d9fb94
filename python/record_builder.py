"""
Record Builder

Converts raw watchlist records, as produced by the list fetch/parse
collaborators, into canonical WatchlistEntity instances.

Raw record shape (a mapping; absent optional fields are simply missing):
    id               required, stable within the source
    type             required, e.g. "individual", "entity", "vessel"
    names | name     required, one or more name strings ("aliases" adds more)
    addresses        strings or mappings (address_line1, city, country, ...)
    identifications  mappings with type, number, country
    dates_of_birth | date_of_birth
    nationalities | nationality
    remarks
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from name_normalizer import (
    FIELD_ADDRESS,
    FIELD_DOB,
    FIELD_DOCUMENT,
    FIELD_NAME,
    FIELD_NATIONALITY,
    FIELD_REMARKS,
    normalize,
)
from watchlist_models import (
    EntityType,
    FieldValue,
    Identification,
    MalformedRecordError,
    WatchlistEntity,
)

logger = logging.getLogger(__name__)

ADDRESS_PARTS = ('address_line1', 'address_line2', 'city', 'state_province', 'postal_code', 'country')


def _text(value: Any) -> Optional[str]:
    """Stripped string or None for absent/blank values"""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _field_values(values: Iterable[Any], field: str, entity_type: EntityType) -> Tuple[FieldValue, ...]:
    """Normalize values, dropping blanks and canonical duplicates in order"""
    seen = set()
    result = []
    for value in values:
        raw = _text(value)
        if raw is None:
            continue
        canonical = normalize(field, raw, entity_type)
        if not canonical or canonical in seen:
            continue
        seen.add(canonical)
        result.append(FieldValue(raw=raw, canonical=canonical))
    return tuple(result)


def _address_text(address: Any) -> Optional[str]:
    if isinstance(address, Mapping):
        parts = [_text(address.get(part)) for part in ADDRESS_PARTS]
        return ', '.join(p for p in parts if p) or None
    return _text(address)


def _identifications(raw_docs: Iterable[Any]) -> Tuple[Identification, ...]:
    docs = []
    for doc in raw_docs:
        if not isinstance(doc, Mapping):
            continue
        number = _text(doc.get('number'))
        if number is None:
            continue
        canonical = normalize(FIELD_DOCUMENT, number)
        if not canonical:
            continue
        docs.append(Identification(
            doc_type=_text(doc.get('type')) or 'Unknown',
            number=number,
            canonical_number=canonical,
            country=_text(doc.get('country'))
        ))
    return tuple(docs)


def build_entity(raw: Mapping[str, Any], source: str) -> WatchlistEntity:
    """Build a canonical entity from a raw record

    Args:
        raw: Raw record mapping
        source: Name of the originating list

    Returns:
        Immutable WatchlistEntity

    Raises:
        MalformedRecordError: If id, type or a usable name is missing
    """
    if not isinstance(raw, Mapping):
        raise MalformedRecordError(f"record is not a mapping ({type(raw).__name__})", source=source)

    entity_id = _text(raw.get('id'))
    if entity_id is None:
        raise MalformedRecordError("missing id", source=source)

    entity_type = EntityType.parse(raw.get('type'))
    if entity_type is None:
        raise MalformedRecordError("missing type", source=source, record_id=entity_id)

    raw_names = _as_list(raw.get('names')) or _as_list(raw.get('name'))
    raw_names += _as_list(raw.get('aliases'))
    names = _field_values(raw_names, FIELD_NAME, entity_type)
    if not names:
        raise MalformedRecordError("no usable name", source=source, record_id=entity_id)

    addresses = _field_values(
        (_address_text(a) for a in _as_list(raw.get('addresses'))),
        FIELD_ADDRESS, entity_type
    )
    dates = _field_values(
        _as_list(raw.get('dates_of_birth')) or _as_list(raw.get('date_of_birth')),
        FIELD_DOB, entity_type
    )
    nationalities = _field_values(
        _as_list(raw.get('nationalities')) or _as_list(raw.get('nationality')),
        FIELD_NATIONALITY, entity_type
    )

    remarks = None
    raw_remarks = _text(raw.get('remarks'))
    if raw_remarks:
        remarks = FieldValue(raw=raw_remarks, canonical=normalize(FIELD_REMARKS, raw_remarks))

    return WatchlistEntity(
        entity_id=entity_id,
        source=source,
        entity_type=entity_type,
        names=names,
        addresses=addresses,
        identifications=_identifications(_as_list(raw.get('identifications'))),
        dates_of_birth=dates,
        nationalities=nationalities,
        remarks=remarks
    )


def build_entities(raws: Iterable[Mapping[str, Any]],
                   source: str) -> Tuple[List[WatchlistEntity], List[MalformedRecordError]]:
    """Build a batch of entities, skipping malformed records

    Returns:
        Tuple of (entities in input order, errors for skipped records)
    """
    entities: List[WatchlistEntity] = []
    errors: List[MalformedRecordError] = []
    for raw in raws:
        try:
            entities.append(build_entity(raw, source))
        except MalformedRecordError as e:
            logger.warning("Skipping malformed record: %s", e)
            errors.append(e)

    if errors:
        logger.info(f"{source}: built {len(entities)} entities, skipped {len(errors)} malformed records")
    return entities, errors


def summarize_errors(errors: Iterable[MalformedRecordError]) -> Dict[str, int]:
    """Count skipped records by reason"""
    summary: Dict[str, int] = {}
    for error in errors:
        summary[error.reason] = summary.get(error.reason, 0) + 1
    return summary
