"""Shared-secret helpers, the fail-open cache and worker wiring."""

from conftest import FakeRedis

from app import worker
from app.cache import Cache
from app.webhook_security import (
    compute_payload_hash,
    constant_time_compare,
    extract_bearer_token,
)


class TestSecretHelpers:
    def test_constant_time_compare(self):
        assert constant_time_compare("s3cret", "s3cret")
        assert not constant_time_compare("s3cret", "s3cre")
        assert not constant_time_compare("", "")

    def test_extract_bearer_token(self):
        assert extract_bearer_token("Bearer abc") == "abc"
        assert extract_bearer_token("bearer  abc ") == "abc"
        assert extract_bearer_token("Token abc") is None
        assert extract_bearer_token("Bearer ") is None
        assert extract_bearer_token(None) is None

    def test_payload_hash_is_stable(self):
        body = b'{"event":"subscription_activated"}'
        assert compute_payload_hash(body) == compute_payload_hash(body)
        assert compute_payload_hash(body) != compute_payload_hash(body + b" ")


class TestCache:
    def test_unavailable_cache_fails_open(self, monkeypatch):
        monkeypatch.setattr("app.cache.REDIS_URL", None)
        cache = Cache()

        # Never blocks processing when Redis is down
        assert cache.add("k", True) is True
        assert cache.add("k", True) is True
        assert cache.delete("k") is False

    def test_add_is_set_if_absent(self):
        cache = Cache()
        fake = FakeRedis()
        cache.redis_client = fake

        assert cache.add("webhook:1", True, ttl=60) is True
        assert cache.add("webhook:1", True, ttl=60) is False
        assert fake.store["webhook:1"] == "true"
        cache.delete("webhook:1")
        assert cache.add("webhook:1", True, ttl=60) is True

    def test_redis_errors_fail_open(self):
        class BrokenRedis(FakeRedis):
            def set(self, *args, **kwargs):
                raise ConnectionError("redis gone")

        cache = Cache()
        cache.redis_client = BrokenRedis()

        assert cache.add("webhook:1", True) is True


class TestWorkerSettings:
    def test_cron_jobs_cover_every_batch(self):
        names = {job.name for job in worker.WorkerSettings.cron_jobs}
        assert names == {
            "cron:auto_update_appointments_task",
            "cron:trial_expiration_task",
            "cron:subscription_status_sync_task",
        }

    def test_redis_url_is_parsed(self, monkeypatch):
        monkeypatch.setattr(worker, "REDIS_URL", "rediss://default:pw@cache.example:6380")

        settings = worker.get_redis_settings()

        assert settings.host == "cache.example"
        assert settings.port == 6380
        assert settings.password == "pw"
        assert settings.ssl is True
