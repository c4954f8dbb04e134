"""
Directory collaborator
Resolves dentist working hours and active status for the scheduling engine.

Two adapters:
- StaticDirectory: dict or JSON file, used in tests and small deployments
- HttpDirectory: remote staff service over httpx, cached in redis

Directory JSON shape (one entry per dentist code):
    {
        "DEN-001": {
            "active": true,
            "availability_schedule": {
                "Monday": "09:00-17:00",
                "Tuesday": {"startTime": "09:00", "endTime": "13:00", "isWorking": true},
                "Sunday": "Not Available"
            }
        }
    }
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx

from ..cache import Cache, cache, dentist_profile_key
from ..config import (
    DIRECTORY_CACHE_TTL,
    DIRECTORY_FILE,
    DIRECTORY_TIMEOUT_SECONDS,
    DIRECTORY_URL,
)

logger = logging.getLogger(__name__)


class Directory(Protocol):
    def get_working_hours(self, dentist_code: str, weekday: str) -> Any:
        """Raw working-hours value for a weekday name, or None"""
        ...

    def is_active(self, dentist_code: str) -> bool: ...


class DirectoryUnavailable(Exception):
    """Remote directory could not be reached"""


class StaticDirectory:
    """In-memory directory keyed by dentist code"""

    def __init__(self, dentists: Optional[dict] = None):
        self.dentists = dentists or {}

    @classmethod
    def from_file(cls, path: str) -> "StaticDirectory":
        with open(Path(path), encoding="utf-8") as fh:
            data = json.load(fh)
        logger.info(f"📒 Loaded directory with {len(data)} dentists from {path}")
        return cls(data)

    def _profile(self, dentist_code: str) -> Optional[dict]:
        return self.dentists.get(dentist_code)

    def get_working_hours(self, dentist_code: str, weekday: str) -> Any:
        profile = self._profile(dentist_code)
        if not profile:
            return None
        return (profile.get("availability_schedule") or {}).get(weekday)

    def is_active(self, dentist_code: str) -> bool:
        profile = self._profile(dentist_code)
        return bool(profile) and bool(profile.get("active", True))


class HttpDirectory:
    """
    Directory backed by the staff service.

    GET {base_url}/dentists/{code} must return the profile shape shown in the
    module docstring. Profiles are cached for DIRECTORY_CACHE_TTL seconds.
    A dentist the service reports as 404 is treated as unknown (inactive).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DIRECTORY_TIMEOUT_SECONDS,
        profile_cache: Cache = cache,
        cache_ttl: int = DIRECTORY_CACHE_TTL,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache = profile_cache
        self.cache_ttl = cache_ttl
        self.client = client or httpx.Client(timeout=timeout)

    def _fetch_profile(self, dentist_code: str) -> Optional[dict]:
        key = dentist_profile_key(dentist_code)
        cached = self.cache.get(key)
        if cached is not None:
            return cached or None

        try:
            response = self.client.get(f"{self.base_url}/dentists/{dentist_code}")
        except httpx.HTTPError as e:
            logger.error(f"❌ Directory request failed for {dentist_code}: {e}")
            raise DirectoryUnavailable(str(e)) from e

        if response.status_code == 404:
            logger.warning(f"⚠️ Dentist {dentist_code} not found in directory")
            self.cache.set(key, {}, ttl=self.cache_ttl)
            return None
        if response.status_code != 200:
            logger.error(
                f"❌ Directory returned {response.status_code} for {dentist_code}: {response.text[:200]}"
            )
            raise DirectoryUnavailable(f"Directory returned {response.status_code}")

        profile = response.json()
        self.cache.set(key, profile, ttl=self.cache_ttl)
        return profile

    def get_working_hours(self, dentist_code: str, weekday: str) -> Any:
        profile = self._fetch_profile(dentist_code)
        if not profile:
            return None
        return (profile.get("availability_schedule") or {}).get(weekday)

    def is_active(self, dentist_code: str) -> bool:
        profile = self._fetch_profile(dentist_code)
        return bool(profile) and bool(profile.get("active", True))

    def invalidate(self, dentist_code: str) -> None:
        self.cache.delete(dentist_profile_key(dentist_code))


_directory: Optional[Directory] = None


def build_directory() -> Directory:
    """Pick the adapter from configuration"""
    if DIRECTORY_URL:
        logger.info(f"📒 Using HTTP directory at {DIRECTORY_URL}")
        return HttpDirectory(DIRECTORY_URL)
    if DIRECTORY_FILE:
        return StaticDirectory.from_file(DIRECTORY_FILE)
    logger.warning("⚠️ No DIRECTORY_URL or DIRECTORY_FILE configured - no dentist is bookable")
    return StaticDirectory()


def get_directory() -> Directory:
    """FastAPI dependency"""
    global _directory
    if _directory is None:
        _directory = build_directory()
    return _directory
