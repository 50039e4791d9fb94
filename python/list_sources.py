"""
Watchlist Sources

The boundary with the list fetch/parse collaborators. A source returns one
batch of raw records (see record_builder for the record shape) together with
a SHA-256 checksum of the data it read, so unchanged lists can be detected
between refresh cycles.

Built-in sources:
- StaticSource: records held in memory
- JsonFileSource: a local JSON file (list, or {"records": [...]})
- HttpJsonSource: the same JSON payload served over HTTP(S)
"""

import abc
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config_manager import RefreshConfig

logger = logging.getLogger(__name__)


class SourceFetchError(Exception):
    """Raised when a source cannot be fetched or its payload cannot be read

    Attributes:
        source: Name of the failing source
        reason: Human-readable failure description
    """

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source}: {reason}")


@dataclass(frozen=True)
class SourceBatch:
    """Raw records read from one source in one refresh cycle"""
    source: str
    records: Tuple[Any, ...]
    checksum: str
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def compute_checksum(data: bytes) -> str:
    """SHA256 of raw source data"""
    sha256 = hashlib.sha256()
    sha256.update(data)
    return sha256.hexdigest()


def records_from_payload(payload: Any, source: str) -> Tuple[Any, ...]:
    """Extract the record list from a decoded JSON payload

    Raises:
        SourceFetchError: If the payload has no record list
    """
    if isinstance(payload, Mapping):
        payload = payload.get('records')
    if not isinstance(payload, list):
        raise SourceFetchError(source, "payload is not a record list")
    return tuple(payload)


class WatchlistSource(abc.ABC):
    """A named provider of raw watchlist records"""

    def __init__(self, name: str):
        self.name = name

    @abc.abstractmethod
    def fetch(self) -> SourceBatch:
        """Read the current records

        Raises:
            SourceFetchError: If the source is unreachable or unparseable
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class StaticSource(WatchlistSource):
    """In-memory records, replaceable between cycles"""

    def __init__(self, name: str, records: Iterable[Mapping[str, Any]] = ()):
        super().__init__(name)
        self._records: Tuple[Any, ...] = tuple(records)

    def set_records(self, records: Iterable[Mapping[str, Any]]) -> None:
        self._records = tuple(records)

    def fetch(self) -> SourceBatch:
        try:
            encoded = json.dumps(self._records, sort_keys=True, default=str).encode('utf-8')
        except (TypeError, ValueError) as e:
            raise SourceFetchError(self.name, f"records are not serializable: {e}")
        return SourceBatch(self.name, self._records, compute_checksum(encoded))


class JsonFileSource(WatchlistSource):
    """Records from a local JSON file"""

    def __init__(self, name: str, path: str):
        super().__init__(name)
        self.path = Path(path)

    def fetch(self) -> SourceBatch:
        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise SourceFetchError(self.name, f"cannot read {self.path}: {e}")

        try:
            payload = json.loads(data.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise SourceFetchError(self.name, f"invalid JSON in {self.path}: {e}")

        records = records_from_payload(payload, self.name)
        logger.info(f"Read {len(records)} records from {self.path}")
        return SourceBatch(self.name, records, compute_checksum(data))


class HttpJsonSource(WatchlistSource):
    """Records from a JSON document served over HTTP(S)

    Connection errors and timeouts are retried with exponential backoff
    before the fetch is reported as failed. HTTP error statuses are not.
    """

    def __init__(self, name: str, url: str, timeout: float = 60.0,
                 headers: Optional[Dict[str, str]] = None,
                 session: Optional[requests.Session] = None,
                 retry_attempts: int = 3, retry_min_wait: float = 1.0,
                 retry_max_wait: float = 10.0):
        super().__init__(name)
        self.url = url
        self.timeout = timeout
        self.headers = dict(headers or {})
        self.retry_attempts = retry_attempts
        self._session = session or requests.Session()
        self._retrying = Retrying(
            stop=stop_after_attempt(retry_attempts),
            wait=wait_exponential(multiplier=1, min=retry_min_wait, max=retry_max_wait),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )

    def _download(self) -> bytes:
        response = self._session.get(self.url, headers=self.headers, timeout=self.timeout)
        response.raise_for_status()
        return response.content

    def fetch(self) -> SourceBatch:
        logger.info(f"Downloading {self.name} from {self.url}")
        try:
            data = self._retrying(self._download)
        except requests.RequestException as e:
            raise SourceFetchError(self.name, f"download failed: {e}")

        try:
            payload = json.loads(data.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise SourceFetchError(self.name, f"invalid JSON from {self.url}: {e}")

        records = records_from_payload(payload, self.name)
        size_mb = len(data) / 1024 / 1024
        logger.info(f"Downloaded {self.name}: {len(records)} records ({size_mb:.1f} MB)")
        return SourceBatch(self.name, records, compute_checksum(data))


def build_sources(config: RefreshConfig) -> List[WatchlistSource]:
    """Instantiate the sources listed in the refresh configuration"""
    sources: List[WatchlistSource] = []
    for entry in config.sources:
        if entry.kind == 'http':
            sources.append(HttpJsonSource(entry.name, entry.location, timeout=entry.timeout_seconds,
                                          retry_attempts=entry.retry_attempts))
        else:
            sources.append(JsonFileSource(entry.name, entry.location))
    return sources
