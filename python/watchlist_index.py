"""
Watchlist Index

An IndexGeneration is an immutable snapshot of every canonical entity from
one refresh cycle, plus the cheap lookup structures used to bound the number
of entities the scorer has to look at:
- blocking keys per name token (Soundex or prefix)
- canonical document numbers
- entity type
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from config_manager import IndexConfig
from watchlist_models import EntityType, NormalizedProfile, WatchlistEntity

logger = logging.getLogger(__name__)

_SOUNDEX_CODES = {}
for _letters, _digit in (('bfpv', '1'), ('cgjkqsxz', '2'), ('dt', '3'),
                         ('l', '4'), ('mn', '5'), ('r', '6')):
    for _letter in _letters:
        _SOUNDEX_CODES[_letter] = _digit

_ASCII_LETTERS = re.compile(r'^[a-z]+$')


def soundex(token: str) -> Optional[str]:
    """American Soundex code of an ASCII token, None for non-Latin tokens"""
    if not token or not _ASCII_LETTERS.match(token):
        return None
    first = token[0]
    digits = []
    previous = _SOUNDEX_CODES.get(first, '')
    for letter in token[1:]:
        code = _SOUNDEX_CODES.get(letter, '')
        if code and code != previous:
            digits.append(code)
        # h and w do not separate letters with the same code
        if letter not in 'hw':
            previous = code
    return (first.upper() + ''.join(digits) + '000')[:4]


def blocking_keys(canonical_name: str, config: IndexConfig) -> FrozenSet[str]:
    """Blocking keys for every significant token of a canonical name

    Single-character tokens (initials) are ignored unless the name has
    nothing else.
    """
    tokens = canonical_name.split()
    significant = [t for t in tokens if len(t) >= config.min_token_length] or tokens
    keys = set()
    for token in significant:
        if config.blocking_key == 'soundex':
            code = soundex(token)
            keys.add(f"s:{code}" if code else f"p:{token[:config.prefix_length]}")
        else:
            keys.add(f"p:{token[:config.prefix_length]}")
    return frozenset(keys)


class Candidates:
    """Lazy, finite, restartable sequence of candidate entities

    Each iteration recomputes the candidate positions from the immutable
    generation, so iterating twice yields the same entities in index order.
    """

    def __init__(self, index: 'IndexGeneration', profile: NormalizedProfile,
                 source_filter: Optional[FrozenSet[str]] = None):
        self._index = index
        self._profile = profile
        self._source_filter = source_filter

    def _positions(self) -> Iterable[int]:
        index = self._index
        if index.config.blocking_key == 'none':
            return range(len(index.entities))

        positions = set()
        for key in blocking_keys(self._profile.name, index.config):
            positions.update(index._postings.get(key, ()))
        if self._profile.document_number:
            positions.update(index._documents.get(self._profile.document_number, ()))
        return sorted(positions)

    def __iter__(self) -> Iterator[WatchlistEntity]:
        index = self._index
        type_hint = self._profile.entity_type
        filter_type = (index.config.filter_by_type and type_hint is not None
                       and type_hint != EntityType.UNKNOWN)
        for position in self._positions():
            entity = index.entities[position]
            if filter_type and entity.entity_type not in (type_hint, EntityType.UNKNOWN):
                continue
            if self._source_filter is not None and entity.source not in self._source_filter:
                continue
            yield entity


@dataclass(frozen=True)
class IndexGeneration:
    """Immutable snapshot of the watchlist for one refresh generation"""
    generation: int
    entities: Tuple[WatchlistEntity, ...]
    built_at: datetime
    checksums: Mapping[str, str]
    config: IndexConfig = field(default_factory=IndexConfig, repr=False)
    _postings: Mapping[str, Tuple[int, ...]] = field(default_factory=dict, repr=False)
    _documents: Mapping[str, Tuple[int, ...]] = field(default_factory=dict, repr=False)
    _by_source: Mapping[str, Tuple[int, ...]] = field(default_factory=dict, repr=False)

    def __len__(self) -> int:
        return len(self.entities)

    @property
    def sources(self) -> Tuple[str, ...]:
        return tuple(sorted(self._by_source))

    def entities_for_source(self, source: str) -> Tuple[WatchlistEntity, ...]:
        """All entities listed by one source, in index order"""
        return tuple(self.entities[i] for i in self._by_source.get(source, ()))

    def query(self, profile: NormalizedProfile,
              source_filter: Optional[Iterable[str]] = None) -> Candidates:
        """Candidate entities worth scoring precisely for a normalized profile

        Args:
            profile: Normalized query profile
            source_filter: Optional sources to restrict candidates to
        """
        sources = frozenset(source_filter) if source_filter is not None else None
        return Candidates(self, profile, sources)

    def stats(self) -> Dict[str, object]:
        return {
            'generation': self.generation,
            'entity_count': len(self.entities),
            'built_at': self.built_at.isoformat(),
            'sources': {s: len(p) for s, p in self._by_source.items()},
            'blocking_keys': len(self._postings),
            'documents_indexed': len(self._documents),
        }


def _freeze(table: Dict[str, List[int]]) -> Mapping[str, Tuple[int, ...]]:
    return MappingProxyType({key: tuple(values) for key, values in table.items()})


def build_index(entities: Sequence[WatchlistEntity],
                checksums: Optional[Mapping[str, str]] = None,
                generation: int = 0,
                config: Optional[IndexConfig] = None) -> IndexGeneration:
    """Build an immutable index generation

    Entities are kept in the given order. Duplicate ids, within or across
    sources, are all retained.

    Args:
        entities: Canonical entities
        checksums: Checksum of the raw data per source
        generation: Monotonic generation number
        config: Index configuration

    Returns:
        IndexGeneration ready to publish
    """
    config = config or IndexConfig()
    entities = tuple(entities)
    postings: Dict[str, List[int]] = {}
    documents: Dict[str, List[int]] = {}
    by_source: Dict[str, List[int]] = {}

    for position, entity in enumerate(entities):
        by_source.setdefault(entity.source, []).append(position)

        if config.blocking_key != 'none':
            keys = set()
            for name in entity.names:
                keys.update(blocking_keys(name.canonical, config))
            for key in keys:
                postings.setdefault(key, []).append(position)

        for doc in entity.identifications:
            positions = documents.setdefault(doc.canonical_number, [])
            if not positions or positions[-1] != position:
                positions.append(position)

    index = IndexGeneration(
        generation=generation,
        entities=entities,
        built_at=datetime.now(timezone.utc),
        checksums=MappingProxyType(dict(checksums or {})),
        config=config,
        _postings=_freeze(postings),
        _documents=_freeze(documents),
        _by_source=_freeze(by_source),
    )
    logger.info(f"Built index generation {generation}: {len(entities)} entities, "
                f"{len(postings)} blocking keys, {len(documents)} documents")
    return index


def empty_index(config: Optional[IndexConfig] = None) -> IndexGeneration:
    """Generation 0: an empty watchlist served until the first refresh"""
    return build_index((), {}, generation=0, config=config)
