"""
Unit tests for watchlist sources
"""

import json
import pytest
from pathlib import Path
from unittest.mock import MagicMock

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

import requests

from config_manager import RefreshConfig, SourceConfig
from list_sources import (
    HttpJsonSource,
    JsonFileSource,
    SourceFetchError,
    StaticSource,
    build_sources,
    compute_checksum,
    records_from_payload,
)


class TestStaticSource:

    def test_fetch_returns_records_and_checksum(self, sample_records):
        batch = StaticSource('ofac', sample_records).fetch()
        assert batch.source == 'ofac'
        assert list(batch.records) == sample_records
        assert len(batch.checksum) == 64

    def test_checksum_tracks_content(self, sample_records):
        source = StaticSource('ofac', sample_records)
        first = source.fetch().checksum
        assert source.fetch().checksum == first

        source.set_records(sample_records[:1])
        assert source.fetch().checksum != first


class TestJsonFileSource:

    def test_reads_list(self, tmp_path, sample_records):
        path = tmp_path / "ofac.json"
        path.write_text(json.dumps(sample_records))

        batch = JsonFileSource('ofac', str(path)).fetch()

        assert len(batch.records) == len(sample_records)
        assert batch.checksum == compute_checksum(path.read_bytes())

    def test_reads_records_key(self, tmp_path, sample_records):
        path = tmp_path / "un.json"
        path.write_text(json.dumps({'generated': '2024-01-01', 'records': sample_records}))
        assert len(JsonFileSource('un', str(path)).fetch().records) == len(sample_records)

    def test_missing_file(self, tmp_path):
        with pytest.raises(SourceFetchError) as exc_info:
            JsonFileSource('ofac', str(tmp_path / "missing.json")).fetch()
        assert exc_info.value.source == 'ofac'

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(SourceFetchError, match="invalid JSON"):
            JsonFileSource('ofac', str(path)).fetch()

    def test_payload_without_records(self):
        with pytest.raises(SourceFetchError, match="not a record list"):
            records_from_payload({'entries': []}, 'ofac')


class TestHttpJsonSource:

    def make_session(self, content=b"", status_error=None, get_error=None):
        session = MagicMock()
        response = MagicMock()
        response.content = content
        if status_error:
            response.raise_for_status.side_effect = status_error
        session.get.return_value = response
        if get_error:
            session.get.side_effect = get_error
        return session

    def test_download(self, sample_records):
        content = json.dumps({'records': sample_records}).encode('utf-8')
        session = self.make_session(content)
        source = HttpJsonSource('ofac', 'https://example.org/ofac.json', timeout=5,
                                headers={'Accept': 'application/json'}, session=session)

        batch = source.fetch()

        session.get.assert_called_once_with('https://example.org/ofac.json',
                                            headers={'Accept': 'application/json'}, timeout=5)
        assert len(batch.records) == len(sample_records)
        assert batch.checksum == compute_checksum(content)

    def test_connection_error(self):
        session = self.make_session(get_error=requests.ConnectionError("connection refused"))
        source = HttpJsonSource('ofac', 'https://example.org/ofac.json', session=session,
                                retry_attempts=2, retry_min_wait=0, retry_max_wait=0)
        with pytest.raises(SourceFetchError, match="download failed"):
            source.fetch()
        assert session.get.call_count == 2

    def test_transient_error_retried(self, sample_records):
        content = json.dumps(sample_records).encode('utf-8')
        response = MagicMock()
        response.content = content
        session = MagicMock()
        session.get.side_effect = [requests.Timeout("read timed out"), response]
        source = HttpJsonSource('ofac', 'https://example.org/ofac.json', session=session,
                                retry_min_wait=0, retry_max_wait=0)

        batch = source.fetch()

        assert session.get.call_count == 2
        assert batch.checksum == compute_checksum(content)

    def test_http_error_status(self):
        session = self.make_session(status_error=requests.HTTPError("503 Server Error"))
        with pytest.raises(SourceFetchError, match="503"):
            HttpJsonSource('ofac', 'https://example.org/ofac.json', session=session).fetch()
        assert session.get.call_count == 1

    def test_invalid_body(self):
        session = self.make_session(b"<html>maintenance</html>")
        with pytest.raises(SourceFetchError, match="invalid JSON"):
            HttpJsonSource('ofac', 'https://example.org/ofac.json', session=session).fetch()


class TestBuildSources:

    def test_builds_configured_sources(self):
        config = RefreshConfig(sources=[
            SourceConfig(name='ofac', kind='http', location='https://example.org/ofac.json', timeout_seconds=10),
            SourceConfig(name='local', kind='file', location='/data/local.json'),
        ])

        sources = build_sources(config)

        assert [type(s) for s in sources] == [HttpJsonSource, JsonFileSource]
        assert sources[0].timeout == 10
        assert sources[0].retry_attempts == 3
        assert sources[1].path == Path('/data/local.json')

    def test_no_sources(self):
        assert build_sources(RefreshConfig()) == []
