"""Tests for transition request idempotency keys."""
from gigguin.redis_client import check_idempotency, idempotency_key, release_idempotency


async def test_first_request_is_new_then_duplicate(fake_redis):
    key = idempotency_key("org-acme", "req-1")
    assert await check_idempotency(key) is False
    assert await check_idempotency(key) is True
    assert await fake_redis.ttl(key) > 0


async def test_release_allows_retry(fake_redis):
    key = idempotency_key("org-acme", "req-2")
    await check_idempotency(key)
    await release_idempotency(key)
    assert await check_idempotency(key) is False


def test_keys_are_scoped_per_org():
    assert idempotency_key("org-a", "req") != idempotency_key("org-b", "req")
