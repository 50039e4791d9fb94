"""
Watchlist Screener

Search engine over the currently published index generation:
normalize the query profile, retrieve candidates, score each candidate on
every field both sides carry, discard results under the threshold and rank.

Concurrency: the served generation lives in a GenerationHandle. A search
reads the handle exactly once and works on that immutable generation for
the whole call; a refresh publishes by replacing the reference, so readers
never lock and never see a half-built index. A replaced generation stays
alive for as long as an in-flight search still references it.

SECURITY: Input validation rejects control and blocked characters.
"""

import logging
import threading
import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from audit_logger import AuditLogger, get_audit_logger
from config_manager import ConfigManager, get_config
from log_utils import sanitize_for_logging
from monitoring import operation_timer, record_published_generation
from name_normalizer import normalize_country, normalize_date, normalize_document, normalize_name, normalize_text
from scoring import score_entity
from watchlist_index import IndexGeneration, empty_index
from watchlist_models import EntityType, NormalizedProfile, QueryProfile, WatchlistEntity

logger = logging.getLogger(__name__)

RECOMMENDATION_AUTO_ESCALATE = 'AUTO_ESCALATE'
RECOMMENDATION_MANUAL_REVIEW = 'MANUAL_REVIEW'
RECOMMENDATION_LOW_CONFIDENCE = 'LOW_CONFIDENCE_REVIEW'
RECOMMENDATION_AUTO_CLEAR = 'AUTO_CLEAR'


class InvalidQueryError(ValueError):
    """Raised when a query profile cannot be screened

    Attributes:
        field: The field that failed validation
        code: Error code for programmatic handling
        suggestion: Optional suggestion for fixing the error
    """

    def __init__(self, message: str, field: str = "name", code: str = "INVALID_QUERY", suggestion: str = ""):
        self.field = field
        self.code = code
        self.suggestion = suggestion
        super().__init__(message)


def validate_query_profile(profile: QueryProfile, config: Optional[ConfigManager] = None) -> None:
    """Validate a query profile for security and usability

    Raises:
        InvalidQueryError: If the profile has no usable name or a malformed field
    """
    config = config or get_config()
    iv_config = config.input_validation

    name = profile.name if isinstance(profile.name, str) else ""
    stripped = name.strip()

    if not stripped:
        raise InvalidQueryError(
            "Name is required",
            code="NAME_MISSING",
            suggestion="Provide the name of the person or entity to screen"
        )

    if len(stripped) < iv_config.name_min_length:
        raise InvalidQueryError(
            f"Name too short ({len(stripped)} chars, minimum {iv_config.name_min_length})",
            code="NAME_TOO_SHORT",
            suggestion=f"Provide a name with at least {iv_config.name_min_length} characters"
        )

    if len(name) > iv_config.name_max_length:
        raise InvalidQueryError(
            f"Name too long ({len(name)} chars, maximum {iv_config.name_max_length})",
            code="NAME_TOO_LONG",
            suggestion=f"Shorten the name to {iv_config.name_max_length} characters or less"
        )

    found_blocked = [c for c in name if c in iv_config.blocked_characters]
    if found_blocked:
        logger.warning("SECURITY: Blocked characters detected in name input: %s",
                       sanitize_for_logging(name))
        raise InvalidQueryError(
            f"Name contains blocked characters: {found_blocked}",
            code="BLOCKED_CHARACTERS",
            suggestion="Remove special characters like < > { } [ ] | \\ ; ` $"
        )

    for char in name:
        if unicodedata.category(char).startswith('C'):
            logger.warning("SECURITY: Control character detected in name: %s",
                           sanitize_for_logging(name))
            raise InvalidQueryError(
                f"Name contains invalid control character (code: {ord(char)})",
                code="CONTROL_CHARACTER",
                suggestion="Remove invisible or control characters from the name"
            )

    if profile.date_of_birth and not normalize_date(profile.date_of_birth):
        raise InvalidQueryError(
            f"Unrecognized date of birth: '{sanitize_for_logging(profile.date_of_birth)}'",
            field="date_of_birth",
            code="INVALID_DOB_FORMAT",
            suggestion="Use format YYYY, YYYY-MM or YYYY-MM-DD"
        )

    if profile.document_number and len(profile.document_number) > iv_config.document_max_length:
        raise InvalidQueryError(
            f"Document number too long ({len(profile.document_number)} chars, "
            f"maximum {iv_config.document_max_length})",
            field="document_number",
            code="DOCUMENT_TOO_LONG",
            suggestion=f"Shorten to {iv_config.document_max_length} characters or less"
        )


def normalize_profile(profile: QueryProfile, config: Optional[ConfigManager] = None) -> NormalizedProfile:
    """Validate a profile and normalize it exactly as index entries are

    Raises:
        InvalidQueryError: If the profile cannot be screened
    """
    validate_query_profile(profile, config)
    entity_type = EntityType.parse(profile.entity_type)
    name = normalize_name(profile.name, entity_type)
    if not name:
        raise InvalidQueryError(
            "Name has no letters or digits left after normalization",
            code="NAME_UNUSABLE",
            suggestion="Provide a name made of letters"
        )
    return NormalizedProfile(
        name=name,
        raw_name=profile.name.strip(),
        entity_type=entity_type,
        address=normalize_text(profile.address),
        date_of_birth=normalize_date(profile.date_of_birth),
        nationality=normalize_country(profile.nationality),
        document_number=normalize_document(profile.document_number),
        document_type=normalize_text(profile.document_type),
    )


class GenerationHandle:
    """Single-writer, multi-reader reference to the served index generation"""

    def __init__(self, initial: Optional[IndexGeneration] = None):
        self._current = initial if initial is not None else empty_index()
        self._write_lock = threading.Lock()

    def current(self) -> IndexGeneration:
        """The currently published generation; no lock, the read is atomic"""
        return self._current

    def publish(self, generation: IndexGeneration) -> IndexGeneration:
        """Make a fully built generation current

        Returns:
            The generation that was replaced

        Raises:
            ValueError: If the generation number does not increase
        """
        with self._write_lock:
            previous = self._current
            if generation.generation <= previous.generation:
                raise ValueError(
                    f"Generation {generation.generation} is not newer than {previous.generation}"
                )
            self._current = generation

        record_published_generation(generation.generation, len(generation))
        logger.info(f"Published generation {generation.generation} "
                    f"({len(generation)} entities, replaced {previous.generation})")
        return previous


@dataclass
class MatchResult:
    """A scored candidate"""
    entity: WatchlistEntity
    field_scores: Dict[str, float]
    composite_score: float
    matched_name: str = ''
    recommendation: str = RECOMMENDATION_MANUAL_REVIEW
    generation: int = 0

    @property
    def sort_key(self) -> Tuple[float, str, str]:
        return (-self.composite_score, self.entity.source, self.entity.entity_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity': self.entity.to_dict(),
            'field_scores': {k: round(v, 4) for k, v in self.field_scores.items()},
            'composite_score': round(self.composite_score, 4),
            'matched_name': self.matched_name,
            'recommendation': self.recommendation,
            'generation': self.generation
        }


class WatchlistScreener:
    """Ranks watchlist entities against query profiles"""

    def __init__(self, config: Optional[ConfigManager] = None,
                 handle: Optional[GenerationHandle] = None,
                 audit: Optional[AuditLogger] = None):
        """Initialize screener

        Args:
            config: Configuration manager instance
            handle: Handle to the served generation (an empty one by default)
            audit: Audit logger for rejected queries
        """
        self.config = config or get_config()
        self.handle = handle or GenerationHandle(empty_index(self.config.index))
        self._audit = audit or get_audit_logger()

    def recommendation_for(self, score: float) -> str:
        thresholds = self.config.reporting.recommendation_thresholds
        if score >= thresholds['auto_escalate']:
            return RECOMMENDATION_AUTO_ESCALATE
        if score >= thresholds['manual_review']:
            return RECOMMENDATION_MANUAL_REVIEW
        if score >= thresholds['auto_clear']:
            return RECOMMENDATION_LOW_CONFIDENCE
        return RECOMMENDATION_AUTO_CLEAR

    def search(self, profile: QueryProfile, threshold: Optional[float] = None,
               source_filter: Optional[Iterable[str]] = None,
               limit: Optional[int] = None) -> List[MatchResult]:
        """Score and rank candidates for a profile

        Args:
            profile: Query profile
            threshold: Minimum composite score (configured default when None)
            source_filter: Only return entities from these sources
            limit: Maximum results to return

        Returns:
            Results by descending composite score, then source, then id

        Raises:
            InvalidQueryError: If the profile or threshold is unusable
        """
        with operation_timer("search"):
            try:
                normalized = normalize_profile(profile, self.config)
            except InvalidQueryError as e:
                self._audit.log_query_rejected(e.field, e.code, profile.name if isinstance(profile.name, str) else "")
                raise

            if threshold is None:
                threshold = self.config.matching.default_threshold
            if not 0.0 <= threshold <= 1.0:
                raise InvalidQueryError(
                    f"Threshold must be within [0, 1], got {threshold}",
                    field="threshold",
                    code="INVALID_THRESHOLD"
                )

            generation = self.handle.current()
            weights = self.config.matching.weights
            logger.info("Searching for: %s (generation %d)",
                        sanitize_for_logging(normalized.raw_name), generation.generation)

            results = []
            for entity in generation.query(normalized, source_filter):
                scored = score_entity(normalized, entity, weights)
                if scored.composite_score < threshold:
                    continue
                results.append(MatchResult(
                    entity=entity,
                    field_scores=scored.field_scores,
                    composite_score=scored.composite_score,
                    matched_name=scored.matched_name.raw if scored.matched_name else '',
                    recommendation=self.recommendation_for(scored.composite_score),
                    generation=generation.generation
                ))

            results.sort(key=lambda r: r.sort_key)
            if limit is not None:
                results = results[:limit]
            return results
