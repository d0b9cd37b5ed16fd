from __future__ import annotations

import asyncio

from tixr_etl.core.matching import (
    EXACT,
    FUZZY,
    ArtistCache,
    ArtistMatcher,
    ArtistSnapshot,
    best_match,
    normalize_artist,
    similarity,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_normalize_is_deterministic_across_spacing_and_case():
    assert normalize_artist("The Midnight") == normalize_artist("the   midnight") == "midnight"
    assert normalize_artist("Beyoncé & Jay") == "beyonce and jay"
    assert normalize_artist("") == ""
    assert normalize_artist(None) == ""


def test_similarity_is_one_minus_normalized_distance():
    assert similarity("kaytranada", "kaytranda") == 0.9
    assert similarity("", "") == 1.0


def test_best_match_exact_then_fuzzy():
    snap = ArtistSnapshot.build(["Kaytranada", "Bicep", "The Midnight"])

    exact = best_match("the kaytranada", snap)
    assert exact.name == "Kaytranada" and exact.kind == EXACT

    fuzzy = best_match("Kaytranda", snap)
    assert fuzzy.name == "Kaytranada" and fuzzy.kind == FUZZY
    assert fuzzy.similarity >= 0.85

    assert best_match("Bonobo", snap) is None


def test_length_gap_filter_skips_distant_candidates():
    snap = ArtistSnapshot.build(["Bicep and the Ensemble Orchestra"])
    assert best_match("Bicep", snap) is None


def test_cache_refreshes_only_after_ttl():
    clock = FakeClock()
    loads = []

    async def loader():
        loads.append(clock.now)
        return ["Bicep"]

    cache = ArtistCache(loader, ttl=600, clock=clock)

    async def scenario():
        await cache.snapshot()
        clock.now = 599
        await cache.snapshot()
        clock.now = 601
        await cache.snapshot()

    asyncio.run(scenario())
    assert loads == [0.0, 601]
    assert cache.refreshes == 2


def test_concurrent_readers_share_one_refresh():
    calls = 0

    async def loader():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return ["Bicep", "Kaytranada"]

    cache = ArtistCache(loader, ttl=600)

    async def scenario():
        return await asyncio.gather(*(cache.snapshot() for _ in range(5)))

    snaps = asyncio.run(scenario())
    assert calls == 1
    assert all(s.names == ("Bicep", "Kaytranada") for s in snaps)


def test_failed_load_is_not_cached():
    attempts = 0

    async def loader():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("store indisponible")
        return ["Bicep"]

    cache = ArtistCache(loader, ttl=600)

    async def scenario():
        first = await cache.snapshot()
        second = await cache.snapshot()
        return first, second

    first, second = asyncio.run(scenario())
    assert first.names == ()
    assert second.names == ("Bicep",)


def test_matcher_resolves_to_existing_canonical_name():
    async def loader():
        return ["Kaytranada"]

    matcher = ArtistMatcher(ArtistCache(loader))

    async def scenario():
        return await matcher.resolve("Kaytranda"), await matcher.resolve("New Artist"), await matcher.resolve(None)

    assert asyncio.run(scenario()) == ("Kaytranada", "New Artist", None)
