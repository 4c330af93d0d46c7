"""GeoIP lookup and DB-IP database refresh.

Lookups use a local DB-IP City Lite mmdb file through geoip2. The database
is published monthly; the updater downloads the newest monthly release,
falling back to the previous month when the current one is not out yet.
"""

import gzip
import ipaddress
import logging
import os
import shutil
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

import geoip2.database
import geoip2.errors
import maxminddb
import requests
import urllib3.exceptions

from authwatch.errors import GeoIPError
from authwatch.schema import Location

logger = logging.getLogger(__name__)

DBIP_DOWNLOAD_URL = "https://download.db-ip.com/free/dbip-city-lite-{year}-{month:02d}.mmdb.gz"
DOWNLOAD_TIMEOUT_SECONDS = 120


class GeoResolver:
    """Resolves IP addresses to country/city from an mmdb file.

    Lookups, reloads and close are serialized by an internal lock, so the
    database can be swapped from the scheduler thread while the event loop
    is using it.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._reader = _open_reader(db_path)

    def lookup(self, ip: str) -> Optional[Location]:
        """Look up the location of an address.

        Returns:
            Location (empty when the address is not a valid IP), or None when
            the address is not in the database.

        Raises:
            GeoIPError: If the database read fails.
        """
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            return Location()

        with self._lock:
            if self._reader is None:
                raise GeoIPError("GeoIP resolver is closed")
            try:
                response = self._reader.city(ip)
            except geoip2.errors.AddressNotFoundError:
                return None
            except (maxminddb.InvalidDatabaseError, ValueError) as e:
                raise GeoIPError(f"GeoIP lookup failed for {ip}: {e}") from e

        return Location(
            country=response.country.name or "",
            city=response.city.name or "",
        )

    def reload(self) -> None:
        """Reopen the database file, e.g. after the updater replaced it."""
        reader = _open_reader(self.db_path)
        with self._lock:
            old, self._reader = self._reader, reader
        if old is not None:
            old.close()
        logger.info(f"GeoIP database reloaded: {self.db_path}")

    def close(self) -> None:
        with self._lock:
            if self._reader is not None:
                self._reader.close()
                self._reader = None


def _open_reader(db_path: str) -> geoip2.database.Reader:
    try:
        return geoip2.database.Reader(db_path)
    except (OSError, maxminddb.InvalidDatabaseError) as e:
        raise GeoIPError(f"Failed to open GeoIP database {db_path}: {e}") from e


class GeoIPUpdater:
    """Downloads and installs the monthly DB-IP City Lite database."""

    def __init__(self, db_path: str, session: Optional[requests.Session] = None):
        self.db_path = Path(db_path)
        self.session = session or requests.Session()

    def database_exists(self) -> bool:
        return self.db_path.is_file()

    def database_info(self) -> tuple[datetime, int]:
        """Return (modification time, size in bytes) of the local database."""
        stat = self.db_path.stat()
        return datetime.fromtimestamp(stat.st_mtime), stat.st_size

    def local_version(self) -> tuple[int, int]:
        """(year, month) of the local database, taken from its mtime."""
        modified, _ = self.database_info()
        return modified.year, modified.month

    def latest_remote_version(self, now: Optional[datetime] = None) -> tuple[int, int]:
        """(year, month) of the newest release available for download.

        Raises:
            GeoIPError: If neither this month's nor last month's file exists.
        """
        for year, month in _candidate_months(now or datetime.now()):
            url = DBIP_DOWNLOAD_URL.format(year=year, month=month)
            try:
                response = self.session.head(url, timeout=30, allow_redirects=True)
            except requests.RequestException as e:
                raise GeoIPError(f"Failed to check {url}: {e}") from e
            if response.status_code == 200:
                return year, month

        raise GeoIPError("No remote GeoIP database found")

    def needs_update(self, now: Optional[datetime] = None) -> bool:
        """True when there is no local database or a newer one is published."""
        if not self.database_exists():
            return True

        try:
            local = self.local_version()
        except OSError:
            return True

        return self.latest_remote_version(now) > local

    def update(self, now: Optional[datetime] = None) -> Path:
        """Download, decompress and install the newest database.

        The file is replaced atomically, so an open resolver keeps working
        on the old inode until it is reopened.

        Raises:
            GeoIPError: On download or extraction failure.
        """
        logger.info("Downloading GeoIP database from DB-IP")

        response = None
        for year, month in _candidate_months(now or datetime.now()):
            url = DBIP_DOWNLOAD_URL.format(year=year, month=month)
            try:
                response = self.session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT_SECONDS)
            except requests.RequestException as e:
                raise GeoIPError(f"Failed to download {url}: {e}") from e
            if response.status_code != 404:
                break
            response.close()

        if response is None or response.status_code != 200:
            status = response.status_code if response is not None else "no response"
            raise GeoIPError(f"GeoIP download failed with status: {status}")

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.db_path.parent, prefix="geoip-", suffix=".mmdb")
        try:
            with response, os.fdopen(fd, "wb") as out:
                with gzip.GzipFile(fileobj=response.raw) as gz:
                    shutil.copyfileobj(gz, out)
            os.replace(tmp_name, self.db_path)
        except (OSError, EOFError, requests.RequestException, urllib3.exceptions.HTTPError) as e:
            raise GeoIPError(f"Failed to download or extract GeoIP database: {e}") from e
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)

        logger.info(f"GeoIP database updated: {self.db_path}")
        return self.db_path


def _candidate_months(now: datetime) -> list[tuple[int, int]]:
    if now.month == 1:
        previous = (now.year - 1, 12)
    else:
        previous = (now.year, now.month - 1)
    return [(now.year, now.month), previous]
