"""Tests for the directory, notifier, cache and rate limiter adapters"""

import asyncio
import json

import httpx
import pytest
import redis
from fastapi import HTTPException
from starlette.requests import Request

from dental_scheduling import rate_limiter
from dental_scheduling.cache import Cache
from dental_scheduling.services.directory_service import (
    DirectoryUnavailable,
    HttpDirectory,
    StaticDirectory,
)
from dental_scheduling.services.notification_service import (
    NotificationError,
    WebhookNotifier,
)
from dental_scheduling.shared.validators import validate_code, validate_email, validate_phone

PROFILE = {
    "active": True,
    "availability_schedule": {"Monday": "09:00-17:00", "Sunday": "Not Available"},
}


class FakeRedis:
    """Dict-backed stand-in for the handful of redis calls the cache makes"""

    def __init__(self, fail=False):
        self.store = {}
        self.fail = fail

    def get(self, key):
        if self.fail:
            raise redis.ConnectionError("down")
        return self.store.get(key)

    def setex(self, key, ttl, value):
        if self.fail:
            raise redis.ConnectionError("down")
        self.store[key] = value

    def delete(self, key):
        self.store.pop(key, None)


def make_cache(fake):
    cache = Cache(enabled=True)
    cache.redis_client = fake
    return cache


def directory_with(handler, cache=None):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpDirectory("http://staff.local/api/", profile_cache=cache or Cache(enabled=False), client=client)


class TestStaticDirectory:
    def test_from_file(self, tmp_path):
        path = tmp_path / "directory.json"
        path.write_text(json.dumps({"DEN-1": PROFILE}))

        directory = StaticDirectory.from_file(str(path))

        assert directory.is_active("DEN-1")
        assert directory.get_working_hours("DEN-1", "Monday") == "09:00-17:00"
        assert directory.get_working_hours("DEN-1", "Tuesday") is None

    def test_unknown_dentist(self):
        directory = StaticDirectory({})
        assert not directory.is_active("DEN-9")
        assert directory.get_working_hours("DEN-9", "Monday") is None


class TestHttpDirectory:
    def test_fetches_profile(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json=PROFILE)

        directory = directory_with(handler)

        assert directory.is_active("DEN-1")
        assert directory.get_working_hours("DEN-1", "Monday") == "09:00-17:00"
        assert seen[0] == "/api/dentists/DEN-1"

    def test_profile_is_cached(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=PROFILE)

        directory = directory_with(handler, make_cache(FakeRedis()))
        directory.is_active("DEN-1")
        directory.get_working_hours("DEN-1", "Monday")

        assert len(calls) == 1

        directory.invalidate("DEN-1")
        directory.is_active("DEN-1")
        assert len(calls) == 2

    def test_cache_outage_falls_through_to_service(self):
        directory = directory_with(lambda request: httpx.Response(200, json=PROFILE), make_cache(FakeRedis(fail=True)))
        assert directory.is_active("DEN-1")

    def test_unknown_dentist_is_inactive(self):
        directory = directory_with(lambda request: httpx.Response(404, json={"detail": "not found"}))
        assert not directory.is_active("DEN-404")
        assert directory.get_working_hours("DEN-404", "Monday") is None

    def test_server_error_raises_unavailable(self):
        directory = directory_with(lambda request: httpx.Response(503, text="maintenance"))
        with pytest.raises(DirectoryUnavailable):
            directory.is_active("DEN-1")

    def test_network_error_raises_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DirectoryUnavailable):
            directory_with(handler).get_working_hours("DEN-1", "Monday")


class TestWebhookNotifier:
    def test_posts_announcement(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(202)

        notifier = WebhookNotifier("http://messaging.local/hooks", client=httpx.Client(transport=httpx.MockTransport(handler)))
        notifier.announce("confirmed", "PAT-1", {"appointmentCode": "AP-0001"})

        assert bodies == [
            {"kind": "confirmed", "recipientCode": "PAT-1", "payload": {"appointmentCode": "AP-0001"}}
        ]

    def test_rejection_raises(self):
        notifier = WebhookNotifier(
            "http://messaging.local/hooks",
            client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))),
        )
        with pytest.raises(NotificationError):
            notifier.announce("cancelled", "PAT-1", {})

    def test_unreachable_raises(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        notifier = WebhookNotifier("http://messaging.local/hooks", client=httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(NotificationError):
            notifier.announce("reminder", "PAT-1", {})


class TestCache:
    def test_round_trip_and_delete(self):
        cache = make_cache(FakeRedis())
        assert cache.set("k", {"a": 1})
        assert cache.get("k") == {"a": 1}
        assert cache.delete("k")
        assert cache.get("k") is None

    def test_disabled_cache_is_always_a_miss(self):
        cache = Cache(enabled=False)
        assert cache.set("k", 1) is False
        assert cache.get("k") is None


def make_request(ip="10.0.0.7", headers=None):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/scheduling/appointments",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (ip, 52000),
    }
    return Request(scope)


class TestRateLimiter:
    def test_disabled_limiter_allows(self, monkeypatch):
        monkeypatch.setattr(rate_limiter, "RATE_LIMIT_ENABLED", False)
        limiter = rate_limiter.create_rate_limiter(limit=1, window_seconds=60)
        assert asyncio.run(limiter(make_request())) is None

    def test_redis_outage_fails_open(self, monkeypatch):
        def unavailable():
            raise redis.ConnectionError("down")

        monkeypatch.setattr(rate_limiter, "RATE_LIMIT_ENABLED", True)
        monkeypatch.setattr(rate_limiter, "get_redis_client", unavailable)
        limiter = rate_limiter.create_rate_limiter(limit=1, window_seconds=60)

        assert asyncio.run(limiter(make_request())) is None

    def test_over_limit_rejected(self, monkeypatch):
        monkeypatch.setattr(rate_limiter, "RATE_LIMIT_ENABLED", True)
        monkeypatch.setattr(rate_limiter, "get_redis_client", lambda: object())
        monkeypatch.setattr(rate_limiter, "check_rate_limit", lambda client, key, limit, window: (False, 31, 12))
        limiter = rate_limiter.create_rate_limiter(limit=30, window_seconds=60, key_prefix="booking")

        with pytest.raises(HTTPException) as exc:
            asyncio.run(limiter(make_request()))

        assert exc.value.status_code == 429
        assert exc.value.headers["Retry-After"] == "12"

    def test_forwarded_ip_is_used(self):
        request = make_request(headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
        assert rate_limiter.client_ip(request) == "203.0.113.9"


class TestValidators:
    def test_phone(self):
        assert validate_phone("(077) 123-4567") == "0771234567"
        assert validate_phone("+94 77 123 4567") == "+94771234567"
        with pytest.raises(ValueError):
            validate_phone("12345")

    def test_email(self):
        assert validate_email(" Patient@Example.COM ") == "patient@example.com"
        with pytest.raises(ValueError):
            validate_email("not-an-email")

    def test_code(self):
        assert validate_code(" DEN-1 ") == "DEN-1"
        with pytest.raises(ValueError):
            validate_code("DEN 1")
