from datetime import datetime

from license_cache import LicenseStatusCache, DEFAULT_KEY


EXPIRY = datetime(2026, 6, 1)


def test_missing_entry_is_none(cache: LicenseStatusCache):
    assert cache.get("SRV-AB12-CD34-EF56") is None
    assert cache.get() is None


def test_entry_served_until_ttl_elapses(cache: LicenseStatusCache, ticker):
    cache.set(True, EXPIRY, "SRV-AB12-CD34-EF56")

    ticker.advance(299)
    entry = cache.get("SRV-AB12-CD34-EF56")
    assert entry is not None
    assert entry.valid is True
    assert entry.expire_time == EXPIRY

    ticker.advance(1)
    assert cache.get("SRV-AB12-CD34-EF56") is None
    assert len(cache) == 0


def test_without_device_code_uses_default_key(cache: LicenseStatusCache):
    cache.set(False, None)

    assert cache.get(None).valid is False
    assert cache.get(DEFAULT_KEY).valid is False


def test_invalidate_drops_device_and_default_only(cache: LicenseStatusCache):
    cache.set(True, EXPIRY, "SRV-AAAA-AAAA-AAAA")
    cache.set(True, EXPIRY, "SRV-BBBB-BBBB-BBBB")
    cache.set(True, EXPIRY)

    cache.invalidate("SRV-AAAA-AAAA-AAAA")

    assert cache.get("SRV-AAAA-AAAA-AAAA") is None
    assert cache.get() is None
    assert cache.get("SRV-BBBB-BBBB-BBBB") is not None


def test_invalidate_without_device_clears_everything(cache: LicenseStatusCache):
    cache.set(True, EXPIRY, "SRV-AAAA-AAAA-AAAA")
    cache.set(True, EXPIRY)

    cache.invalidate()

    assert len(cache) == 0


def test_set_replaces_previous_decision(cache: LicenseStatusCache, ticker):
    cache.set(True, EXPIRY, "SRV-AAAA-AAAA-AAAA")
    ticker.advance(200)
    cache.set(False, EXPIRY, "SRV-AAAA-AAAA-AAAA")
    ticker.advance(200)

    # The second decision restarted the clock
    entry = cache.get("SRV-AAAA-AAAA-AAAA")
    assert entry is not None
    assert entry.valid is False


def test_default_ttl_is_five_minutes():
    assert LicenseStatusCache().ttl == 300
