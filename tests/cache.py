import pytest

from memocare.helpers.config_models.cache import MemoryModel
from memocare.persistence.memory import MemoryCache


@pytest.mark.asyncio(loop_scope="session")
async def test_acid(random_text: str) -> None:
    """
    Test ACID properties of the cache backend.

    Steps:
    1. Create a mock data
    2. Test not exists
    3. Insert test data
    4. Check it exists
    5. Delete it
    """
    cache = MemoryCache(MemoryModel())

    # Init values
    test_key = random_text
    test_value = "lorem ipsum"

    # Check not exists
    assert not await cache.get(test_key)

    # Insert test value
    await cache.set(
        key=test_key,
        ttl_sec=60,
        value=test_value,
    )

    # Check point read
    assert await cache.get(test_key) == test_value.encode()

    # Delete
    await cache.delete(test_key)
    assert not await cache.get(test_key)


@pytest.mark.asyncio(loop_scope="session")
async def test_expired(random_text: str) -> None:
    cache = MemoryCache(MemoryModel())
    await cache.set(
        key=random_text,
        ttl_sec=-1,
        value="lorem ipsum",
    )
    assert not await cache.get(random_text)


@pytest.mark.asyncio(loop_scope="session")
async def test_lru_eviction() -> None:
    """
    Test the least recently used key is evicted when the cache is full.
    """
    cache = MemoryCache(MemoryModel(max_size=10))
    for i in range(10):
        await cache.set(key=f"key-{i}", ttl_sec=60, value=str(i))

    # Use the oldest key, it becomes the most recent
    assert await cache.get("key-0") == b"0"

    # Overflow
    await cache.set(key="key-10", ttl_sec=60, value="10")

    assert await cache.get("key-0") == b"0"
    assert not await cache.get("key-1")
    assert await cache.get("key-10") == b"10"
