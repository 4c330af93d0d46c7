"""Tests for GeoIP lookup and database refresh."""

import gzip
import io
import os
from datetime import datetime

import pytest
import requests
import urllib3.exceptions

from authwatch.errors import GeoIPError
from authwatch.geoip import GeoIPUpdater, GeoResolver, _candidate_months


class FakeResponse:
    def __init__(self, status_code=200, body=b""):
        self.status_code = status_code
        self.raw = io.BytesIO(body)
        self.closed = False

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class BrokenStream(io.RawIOBase):
    """Response body that fails on the first read."""

    def __init__(self, error):
        self.error = error

    def readable(self):
        return True

    def read(self, size=-1):
        raise self.error

    def readinto(self, buffer):
        raise self.error


class FakeSession:
    """Serves canned responses keyed by URL; anything else is a 404."""

    def __init__(self, responses=None, error=None):
        self.responses = responses or {}
        self.error = error
        self.requested: list[tuple[str, str]] = []

    def _respond(self, method, url):
        self.requested.append((method, url))
        if self.error:
            raise self.error
        return self.responses.get(url) or FakeResponse(404)

    def head(self, url, timeout=None, allow_redirects=False):
        return self._respond("HEAD", url)

    def get(self, url, stream=False, timeout=None):
        return self._respond("GET", url)


def _url(year, month):
    return f"https://download.db-ip.com/free/dbip-city-lite-{year}-{month:02d}.mmdb.gz"


class TestCandidateMonths:
    """Tests for release month selection."""

    def test_current_then_previous(self):
        assert _candidate_months(datetime(2025, 6, 3)) == [(2025, 6), (2025, 5)]

    def test_january_falls_back_to_december(self):
        assert _candidate_months(datetime(2025, 1, 1)) == [(2025, 1), (2024, 12)]


class TestGeoIPUpdater:
    """Tests for downloading the DB-IP database."""

    def test_update_downloads_current_month(self, tmp_path):
        db_path = tmp_path / "geo" / "city.mmdb"
        session = FakeSession({_url(2025, 6): FakeResponse(200, gzip.compress(b"mmdb-bytes"))})
        updater = GeoIPUpdater(str(db_path), session=session)

        updater.update(now=datetime(2025, 6, 15))

        assert db_path.read_bytes() == b"mmdb-bytes"
        assert session.requested == [("GET", _url(2025, 6))]
        assert os.listdir(db_path.parent) == ["city.mmdb"]

    def test_update_falls_back_to_previous_month(self, tmp_path):
        db_path = tmp_path / "city.mmdb"
        session = FakeSession({_url(2024, 12): FakeResponse(200, gzip.compress(b"december"))})
        updater = GeoIPUpdater(str(db_path), session=session)

        updater.update(now=datetime(2025, 1, 1))

        assert db_path.read_bytes() == b"december"
        assert [url for _, url in session.requested] == [_url(2025, 1), _url(2024, 12)]

    def test_update_fails_when_nothing_published(self, tmp_path):
        updater = GeoIPUpdater(str(tmp_path / "city.mmdb"), session=FakeSession())

        with pytest.raises(GeoIPError):
            updater.update(now=datetime(2025, 6, 15))

        assert not (tmp_path / "city.mmdb").exists()

    def test_corrupt_archive_keeps_old_database(self, tmp_path):
        db_path = tmp_path / "city.mmdb"
        db_path.write_bytes(b"old")
        session = FakeSession({_url(2025, 6): FakeResponse(200, b"not gzip at all")})
        updater = GeoIPUpdater(str(db_path), session=session)

        with pytest.raises(GeoIPError):
            updater.update(now=datetime(2025, 6, 15))

        assert db_path.read_bytes() == b"old"
        assert os.listdir(tmp_path) == ["city.mmdb"]

    def test_network_error(self, tmp_path):
        session = FakeSession(error=requests.ConnectionError("offline"))
        updater = GeoIPUpdater(str(tmp_path / "city.mmdb"), session=session)

        with pytest.raises(GeoIPError):
            updater.update(now=datetime(2025, 6, 15))

    @pytest.mark.parametrize("error", [
        urllib3.exceptions.ProtocolError("Connection broken: IncompleteRead"),
        requests.exceptions.ChunkedEncodingError("connection dropped"),
    ])
    def test_connection_drop_mid_download(self, tmp_path, error):
        """Test a transfer that dies while streaming raises GeoIPError."""
        response = FakeResponse(200)
        response.raw = BrokenStream(error)
        session = FakeSession({_url(2025, 6): response})
        updater = GeoIPUpdater(str(tmp_path / "city.mmdb"), session=session)

        with pytest.raises(GeoIPError):
            updater.update(now=datetime(2025, 6, 15))

        assert os.listdir(tmp_path) == []

    def test_needs_update_without_database(self, tmp_path):
        updater = GeoIPUpdater(str(tmp_path / "city.mmdb"), session=FakeSession())

        assert updater.needs_update() is True

    def test_needs_update_compares_months(self, tmp_path):
        db_path = tmp_path / "city.mmdb"
        db_path.write_bytes(b"db")
        may = datetime(2025, 5, 2).timestamp()
        os.utime(db_path, (may, may))
        session = FakeSession({_url(2025, 6): FakeResponse(200)})
        updater = GeoIPUpdater(str(db_path), session=session)

        assert updater.local_version() == (2025, 5)
        assert updater.latest_remote_version(datetime(2025, 6, 15)) == (2025, 6)
        assert updater.needs_update(datetime(2025, 6, 15)) is True

    def test_up_to_date(self, tmp_path):
        db_path = tmp_path / "city.mmdb"
        db_path.write_bytes(b"db")
        june = datetime(2025, 6, 2).timestamp()
        os.utime(db_path, (june, june))
        # June not published yet, May is the newest release
        session = FakeSession({_url(2025, 5): FakeResponse(200)})
        updater = GeoIPUpdater(str(db_path), session=session)

        assert updater.needs_update(datetime(2025, 6, 1)) is False


class TestGeoResolver:
    """Tests for the lookup side."""

    def test_missing_database_raises(self, tmp_path):
        with pytest.raises(GeoIPError):
            GeoResolver(str(tmp_path / "absent.mmdb"))

    def test_invalid_database_raises(self, tmp_path):
        path = tmp_path / "broken.mmdb"
        path.write_bytes(b"definitely not an mmdb file")

        with pytest.raises(GeoIPError):
            GeoResolver(str(path))
