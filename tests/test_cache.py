import logging
LOGGER = logging.getLogger(__name__)

from sellable.assist.cache import bond_cache_clear, bond_cache, ProductCache, PRODUCT_CACHE_KEY
from sellable.assist.store import InMemoryKeyValueStore
from tests.common import FakeClock
import pytest



count: int = 0

class TestCache:

  @pytest.fixture
  def setup(self):
    yield
    global count
    count = 0
    bond_cache_clear()

  def test_count_bond(self, setup):

    @bond_cache
    def increment():
        global count
        count += 1
        return count

    assert increment() == 1
    assert increment() == 1
    assert increment() == 1

  def test_count_bond_class(self, setup):

    class MyClass:

      @classmethod
      @bond_cache
      def increment(cls):
          global count
          count += 1
          return count

    assert MyClass.increment() == 1
    assert MyClass.increment() == 1
    assert MyClass.increment() == 1

  def test_arguments_are_part_of_key(self, setup):

    @bond_cache
    def increment(step, options=None):
        global count
        count += step
        return count

    assert increment(1) == 1
    assert increment(1) == 1
    assert increment(2) == 3
    assert increment(1, options={"a": [1, 2]}) == 4
    assert increment(1, options={"a": [1, 2]}) == 4

  def test_clear(self, setup):

    @bond_cache
    def increment():
        global count
        count += 1
        return count

    assert increment() == 1
    bond_cache_clear()
    assert increment() == 2


# ---- ProductCache ----

class TestProductCache:

  @pytest.fixture
  def clock(self):
    return FakeClock()

  @pytest.fixture
  def cache(self, clock):
    return ProductCache(InMemoryKeyValueStore(), ttl_seconds=60, clock=clock)

  def test_put_and_get(self, cache):
    cache.put("123", {"title": "Bike", "price": "$100"})
    assert cache.get("123") == {"title": "Bike", "price": "$100"}
    assert len(cache) == 1

  def test_entries_live_under_one_key(self, cache):
    cache.put("1", {"title": "a"})
    cache.put("2", {"title": "b"})
    assert cache.store.keys() == [PRODUCT_CACHE_KEY]
    assert set(cache.store.get(PRODUCT_CACHE_KEY)) == {"1", "2"}

  def test_expired_entry_is_not_returned(self, cache, clock):
    cache.put("123", {"title": "Bike"})
    clock.advance(61)
    assert cache.get("123") is None

  def test_purge_expired(self, cache, clock):
    cache.put("old", {"title": "old"})
    clock.advance(45)
    cache.put("new", {"title": "new"})
    clock.advance(30)
    assert cache.purge_expired() == 1
    assert cache.get("new") == {"title": "new"}
    assert len(cache) == 1
    assert cache.purge_expired() == 0

  def test_put_requires_id(self, cache):
    with pytest.raises(ValueError):
      cache.put("", {"title": "x"})

  def test_missing_and_clear(self, cache):
    assert cache.get("nope") is None
    assert cache.get(None) is None
    cache.put("1", {"title": "a"})
    cache.clear()
    assert len(cache) == 0
