"""
Screening Service for the Watchlist Screening System

Wires the configured sources, the refresher and the screener around one
shared GenerationHandle, and exposes the operations an HTTP layer would call.

Usage:
    with ScreeningService() as service:
        service.refresh_now()
        result = service.screen("Nicolas Maduro", entity_type="individual")

    # Embedded, with in-memory records
    service = ScreeningService(sources=[StaticSource("ofac", records)])
    service.refresh_now()
    matches = service.search(QueryProfile(name="John Doe"))
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from audit_logger import AuditLogger, get_audit_logger
from config_manager import ConfigManager, get_config
from list_sources import WatchlistSource, build_sources
from log_utils import configure_logging
from monitoring import configure_monitoring, get_metrics
from refresher import RefreshReport, WatchlistRefresher
from screener import GenerationHandle, MatchResult, WatchlistScreener
from watchlist_index import empty_index
from watchlist_models import QueryProfile

logger = logging.getLogger(__name__)


class ScreeningService:
    """
    In-memory screening service.

    Searches always run against the generation published last; refreshes run
    in a background thread once start() is called, or on demand through
    trigger_refresh() / refresh_now().
    """

    def __init__(self, config: Optional[ConfigManager] = None,
                 sources: Optional[Sequence[WatchlistSource]] = None,
                 audit: Optional[AuditLogger] = None,
                 setup_logging: bool = False):
        """
        Initialize the screening service.

        Args:
            config: Optional ConfigManager instance
            sources: Watchlist sources (built from the refresh config when None)
            audit: Optional audit logger
            setup_logging: Configure the root logger from the logging config
        """
        self.config = config or get_config()
        if setup_logging:
            configure_logging(self.config.logging)
        configure_monitoring(self.config.monitoring)

        self._audit = audit or get_audit_logger(self.config.logging.audit_file)
        self.handle = GenerationHandle(empty_index(self.config.index))
        if sources is None:
            sources = build_sources(self.config.refresh)
        self.sources = list(sources)

        self.screener = WatchlistScreener(self.config, self.handle, self._audit)
        self.refresher = WatchlistRefresher(self.sources, self.handle, self.config, self._audit)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start background refreshing"""
        self.refresher.start()

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Stop background refreshing"""
        self.refresher.stop(timeout)

    def __enter__(self) -> 'ScreeningService':
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Screening
    # ------------------------------------------------------------------

    def search(self, profile: QueryProfile, threshold: Optional[float] = None,
               source_filter: Optional[Iterable[str]] = None,
               limit: Optional[int] = None) -> List[MatchResult]:
        """Ranked matches for a query profile

        Raises:
            InvalidQueryError: If the profile or threshold is unusable
        """
        return self.screener.search(profile, threshold, source_filter, limit)

    def screen(
        self,
        name: str,
        entity_type: Optional[str] = None,
        document: Optional[str] = None,
        document_type: Optional[str] = None,
        date_of_birth: Optional[str] = None,
        nationality: Optional[str] = None,
        address: Optional[str] = None,
        threshold: Optional[float] = None,
        source_filter: Optional[Iterable[str]] = None,
        limit: int = 10,
        analyst: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Screen a name with a complete result dictionary.

        Args:
            name: Name to screen
            entity_type: Optional type hint (individual, organization, vessel, aircraft)
            document: Optional document number
            document_type: Optional document type
            date_of_birth: Optional DOB
            nationality: Optional nationality
            address: Optional address
            threshold: Minimum composite score (configured default when None)
            source_filter: Only match entities from these sources
            limit: Maximum matches to return
            analyst: Optional analyst name

        Returns:
            Complete screening result dictionary

        Raises:
            InvalidQueryError: If the input cannot be screened
        """
        screening_id = str(uuid.uuid4())
        screening_date = datetime.now(timezone.utc)

        profile = QueryProfile(
            name=name,
            entity_type=entity_type,
            address=address,
            date_of_birth=date_of_birth,
            nationality=nationality,
            document_number=document,
            document_type=document_type,
        )
        generation = self.handle.current().generation
        matches = self.search(profile, threshold=threshold, source_filter=source_filter, limit=limit)
        if matches:
            generation = matches[0].generation

        return {
            "screening_id": screening_id,
            "input": {
                "name": name,
                "entity_type": entity_type,
                "document": document,
                "document_type": document_type,
                "date_of_birth": date_of_birth,
                "nationality": nationality,
                "address": address,
            },
            "screening_date": screening_date.isoformat(),
            "is_hit": len(matches) > 0,
            "hit_count": len(matches),
            "matches": [m.to_dict() for m in matches],
            "analyst": analyst,
            "algorithm_version": self.config.algorithm.version,
            "threshold_used": self.config.matching.default_threshold if threshold is None else threshold,
            "generation": generation,
        }

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def trigger_refresh(self) -> str:
        """Request a refresh: 'accepted' or 'already_running'"""
        return self.refresher.trigger()

    def refresh_now(self) -> Optional[RefreshReport]:
        """Run one refresh cycle in the calling thread"""
        return self.refresher.run_cycle()

    def refresh_status(self) -> Dict[str, Any]:
        return self.refresher.status().to_dict()

    def get_entity_count_by_source(self) -> Dict[str, int]:
        return dict(self.handle.current().stats()['sources'])

    def health(self) -> Dict[str, Any]:
        """Status summary for health checks"""
        return {
            "refresh": self.refresh_status(),
            "index": self.handle.current().stats(),
            "operations": get_metrics()['operations'],
        }
