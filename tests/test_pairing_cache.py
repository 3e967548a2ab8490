import base64

import pytest

from sessionmux.errors import UnsupportedFormatError, ValidationError
from sessionmux.pairing.cache import DATA_URL_PREFIX, PairingCodeCache

PNG_B64 = base64.b64encode(b"\x89PNG fake image").decode()


class Clock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def cache(clock) -> PairingCodeCache:
    return PairingCodeCache(ttl_ms=1_000, clock=clock)


def test_every_format_derives_from_the_same_payload(cache):
    cache.store("s1", {"base64": PNG_B64, "ascii": "██ ██", "url": "2@abc"}, attempts=3)

    assert cache.get("s1", "base64")["data"] == PNG_B64
    assert cache.get("s1", "dataURL")["data"] == DATA_URL_PREFIX + PNG_B64
    assert cache.get("s1", "data-url")["data"] == DATA_URL_PREFIX + PNG_B64
    assert cache.get("s1", "buffer")["data"] == b"\x89PNG fake image"
    assert cache.get("s1", "ascii")["data"] == "██ ██"
    assert cache.get("s1", "original")["data"]["url"] == "2@abc"

    everything = cache.get("s1", "all")
    assert everything["attempts"] == 3
    assert everything["data"]["base64"] == PNG_B64
    assert everything["data"]["buffer"] == b"\x89PNG fake image"


def test_format_names_are_case_insensitive(cache):
    cache.store("s1", {"base64": PNG_B64})
    assert cache.get("s1", "DATAURL")["format"] == "dataURL"
    assert cache.get("s1", "Base64")["data"] == PNG_B64


def test_data_url_prefix_is_stripped(cache):
    cache.store("s1", {"base64": DATA_URL_PREFIX + PNG_B64})
    assert cache.get("s1", "base64")["data"] == PNG_B64
    assert cache.get("s1", "dataURL")["data"] == DATA_URL_PREFIX + PNG_B64


def test_unsupported_format_raises(cache):
    cache.store("s1", {"base64": PNG_B64})
    with pytest.raises(UnsupportedFormatError):
        cache.get("s1", "svg")


def test_payload_without_base64_or_url_is_rejected(cache):
    with pytest.raises(ValidationError):
        cache.store("s1", {"ascii": "##"})


def test_url_only_payload_has_no_image_encodings(cache):
    cache.store("s1", {"url": "2@abc"})
    assert cache.get("s1", "dataURL")["data"] is None
    assert cache.get("s1", "original")["data"]["url"] == "2@abc"


def test_expired_record_returns_none_and_is_deleted(cache, clock):
    cache.store("s1", {"base64": PNG_B64})
    clock.now += 999
    assert cache.get("s1") is not None
    assert cache.get("s1")["time_remaining_ms"] == 1

    clock.now += 1
    assert cache.get("s1") is None
    assert cache.clear("s1") is False


def test_new_record_replaces_previous_one(cache, clock):
    cache.store("s1", {"base64": PNG_B64}, attempts=1)
    clock.now += 900
    cache.store("s1", {"url": "2@new"}, attempts=2)

    clock.now += 500
    record = cache.get("s1", "original")
    assert record["attempts"] == 2
    assert record["data"]["url"] == "2@new"


def test_mark_scanned(cache, clock):
    assert cache.mark_scanned("missing") is False

    cache.store("s1", {"base64": PNG_B64})
    assert cache.mark_scanned("s1") is True
    assert cache.get("s1")["scanned"] is True

    clock.now += 5_000
    assert cache.mark_scanned("s1") is False


def test_sweep_removes_only_expired(cache, clock):
    cache.store("old", {"base64": PNG_B64})
    clock.now += 600
    cache.store("new", {"base64": PNG_B64})
    clock.now += 500

    assert cache.sweep() == 1
    assert not cache.has("old")
    assert cache.has("new")


def test_list_active_newest_first_and_stats(cache, clock):
    cache.store("a", {"base64": PNG_B64}, attempts=1)
    clock.now += 10
    cache.store("b", {"base64": PNG_B64}, attempts=3)
    cache.mark_scanned("a")

    active = cache.list_active()
    assert [r["session_id"] for r in active] == ["b", "a"]

    stats = cache.stats()
    assert stats["total_active"] == 2
    assert stats["scanned"] == 1
    assert stats["pending"] == 1
    assert stats["average_attempts"] == 2


def test_invalid_base64_keeps_text_encodings(cache):
    cache.store("s1", {"base64": "not*base64!"})
    assert cache.get("s1", "base64")["data"] == "not*base64!"
    assert cache.get("s1", "buffer")["data"] is None
