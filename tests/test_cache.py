from config import settings
from utils import cache
from utils.cache import WalletCache, wallet_key


class FakeRedis:

    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value

    def delete(self, key):
        self.store.pop(key, None)

    def ping(self):
        return True


class TestWalletCache:

    def test_disabled_cache_is_always_a_miss(self):
        wallet_cache = WalletCache()
        assert wallet_cache.set_wallet("rider", 1, {"available_withdraw": "10.00"}) is False
        assert wallet_cache.get_wallet("rider", 1) is None
        assert wallet_cache.ping() is False
        wallet_cache.invalidate("rider", 1)

    def test_snapshot_round_trip_and_invalidate(self, monkeypatch):
        fake = FakeRedis()
        monkeypatch.setattr(settings, "REDIS_ENABLED", True)
        monkeypatch.setattr(cache, "_redis_client", fake)
        wallet_cache = WalletCache()

        assert wallet_cache.ping() is True
        assert wallet_cache.set_wallet("restaurant", 7, {"available_balance": "900.00"}) is True
        assert wallet_key("restaurant", 7) in fake.store
        assert wallet_cache.get_wallet("restaurant", 7) == {"available_balance": "900.00"}

        wallet_cache.invalidate("restaurant", 7)
        assert wallet_cache.get_wallet("restaurant", 7) is None

    def test_invalidate_without_id_is_ignored(self, monkeypatch):
        fake = FakeRedis()
        fake.store[wallet_key("rider", 3)] = "{}"
        monkeypatch.setattr(settings, "REDIS_ENABLED", True)
        monkeypatch.setattr(cache, "_redis_client", fake)

        WalletCache().invalidate("rider", None)
        assert wallet_key("rider", 3) in fake.store
