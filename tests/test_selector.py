import asyncio
import random

import pytest

from radio.config import PlaybackConfig
from radio.errors import EmptyPoolError, EmptyPoolReason, ResolutionError
from radio.models import OriginKind, SearchResult
from radio.selector import (
    RadioHistory,
    TrackSelector,
    candidate_weight,
    history_caps,
)
from tests.fakes import FakeResolver, FakeStore, candidate, scripted

LISTENERS = {"1", "2"}


def pool_of(n, artists=None):
    return [candidate(f"u{i}", artist=(artists[i] if artists else f"Artist {i}")) for i in range(n)]


class TestWeights:
    def test_weight_is_log_scaled_and_clamped(self):
        assert candidate_weight(candidate("a", users=1, total=1)) == 2
        assert candidate_weight(candidate("a", users=3, total=10)) == 5
        assert candidate_weight(candidate("a", users=0, total=0)) == 1

    def test_history_caps_scale_with_pool(self):
        assert history_caps(10) == (6, 1)
        assert history_caps(100) == (50, 10)
        assert history_caps(1) == (0, 0)


class TestRadioPolicy:
    def test_popular_track_wins_weighted_pick(self):
        store = FakeStore([candidate("a", users=3, total=10), candidate("b", users=1, total=1)])
        selector = TrackSelector(store, random=lambda: 0.0)

        selection = selector.pick_radio(LISTENERS, RadioHistory())

        assert selection.track.url == "a"
        assert selection.policy == "radio"
        assert selection.track.requested_by.kind is OriginKind.RADIO

    def test_weighted_pick_respects_cumulative_weights(self):
        # weights 5 and 2: anything past 5/7 of the range lands on "b"
        store = FakeStore([candidate("a", users=3, total=10), candidate("b", users=1, total=1)])
        selector = TrackSelector(store, random=lambda: 0.8)

        assert selector.pick_radio(LISTENERS, RadioHistory()).track.url == "b"

    def test_no_immediate_repeat(self):
        store = FakeStore(pool_of(20))
        selector = TrackSelector(store, random=random.Random(7).random)
        history = RadioHistory()

        for _ in range(60):
            before = list(history.songs)
            selection = selector.pick_radio(LISTENERS, history)
            if not selection.history_reset:
                assert selection.track.url not in before

    @pytest.mark.parametrize("pool_size", [2, 5, 17, 40, 120])
    def test_history_stays_within_cap(self, pool_size):
        store = FakeStore(pool_of(pool_size))
        selector = TrackSelector(store, random=random.Random(pool_size).random,
                                 config=PlaybackConfig(radio_pool_limit=200))
        history = RadioHistory()
        song_cap, artist_cap = history_caps(pool_size)

        for _ in range(pool_size * 3):
            selector.pick_radio(LISTENERS, history)
            assert len(history.songs) <= song_cap
            assert len(history.artists) <= artist_cap

    def test_recent_artists_filtered_when_pool_is_large(self):
        artists = ["Repeat"] * 5 + [f"Artist {i}" for i in range(15)]
        store = FakeStore(pool_of(20, artists))
        selector = TrackSelector(store, random=random.Random(3).random)

        for _ in range(10):
            history = RadioHistory(artists=["Repeat"])
            selection = selector.pick_radio(LISTENERS, history)
            assert selection.track.artist != "Repeat"

    def test_artist_filter_skipped_when_too_strict(self):
        # 16 of 20 by one artist: dropping them would leave < 30%
        artists = ["Repeat"] * 16 + [f"Artist {i}" for i in range(4)]
        store = FakeStore(pool_of(20, artists))
        selector = TrackSelector(store, random=lambda: 0.0)

        selection = selector.pick_radio(LISTENERS, RadioHistory(artists=["Repeat"]))

        assert selection.track.artist == "Repeat"

    def test_unknown_artist_is_not_tracked(self):
        store = FakeStore([candidate("a"), candidate("b"), candidate("c")])
        selector = TrackSelector(store, random=lambda: 0.0)
        history = RadioHistory()

        selector.pick_radio(LISTENERS, history)

        assert history.artists == []

    def test_exhausted_pool_trims_then_clears_history(self):
        store = FakeStore([candidate("a"), candidate("b"), candidate("c")])
        selector = TrackSelector(store, random=lambda: 0.0)
        history = RadioHistory(songs=["a", "b", "c"], artists=["X", "Y", "Z"])

        selection = selector.pick_radio(LISTENERS, history)

        assert selection.history_reset
        assert selection.track.url == "a"
        assert history.songs == ["a"]
        assert history.artists == []

    def test_trim_keeps_newest_fifth(self):
        history = RadioHistory(songs=[f"s{i}" for i in range(20)], artists=["a", "b", "c"])
        history.trim()
        assert history.songs == ["s16", "s17", "s18", "s19"]
        assert history.artists == ["b", "c"]

        history = RadioHistory(songs=["x", "y", "z", "w"])
        history.trim()
        assert history.songs == ["y", "z", "w"]

    def test_no_listeners(self):
        selector = TrackSelector(FakeStore(pool_of(3)))
        with pytest.raises(EmptyPoolError) as exc:
            selector.pick_radio(set(), RadioHistory())
        assert exc.value.reason is EmptyPoolReason.NO_LISTENERS

    def test_empty_library(self):
        selector = TrackSelector(FakeStore())
        with pytest.raises(EmptyPoolError) as exc:
            selector.pick_radio(LISTENERS, RadioHistory())
        assert exc.value.reason is EmptyPoolReason.EMPTY_LIBRARY

    def test_failed_urls_are_excluded(self):
        selector = TrackSelector(FakeStore(pool_of(2)), random=lambda: 0.0)

        selection = selector.pick_radio(LISTENERS, RadioHistory(), exclude={"u0"})
        assert selection.track.url == "u1"

        with pytest.raises(EmptyPoolError) as exc:
            selector.pick_radio(LISTENERS, RadioHistory(), exclude={"u0", "u1"})
        assert exc.value.reason is EmptyPoolReason.ALL_FAILED


class TestDiscoveryPolicy:
    def test_finds_track_outside_library(self):
        store = FakeStore([candidate("a", artist="Artist A"), candidate("b", artist="Artist B")])
        resolver = FakeResolver(search_results=[
            SearchResult("a", "A"),
            SearchResult("new", "New Song", "Someone"),
        ])
        selector = TrackSelector(store, resolver, random=lambda: 0.0)

        selection = asyncio.run(selector.pick_discovery(LISTENERS, RadioHistory()))

        assert selection.policy == "discovery"
        assert selection.track.url == "new"
        assert selection.track.requested_by.kind is OriginKind.DISCOVERY
        assert selection.seed.url == "a"
        assert resolver.search_calls == [("Artist A similar songs", 10)]
        assert store.query_calls[0][1] == 50

    def test_empty_library_falls_back_to_radio(self):
        store = FakeStore()
        selector = TrackSelector(store, FakeResolver(), random=lambda: 0.0)

        with pytest.raises(EmptyPoolError):
            asyncio.run(selector.pick_discovery(LISTENERS, RadioHistory()))

        # the discovery query and then the radio query
        assert [limit for _, limit in store.query_calls] == [50, 100]

    def test_no_new_results_falls_back_to_radio(self):
        store = FakeStore([candidate("a", artist="Artist A")])
        resolver = FakeResolver(search_results=[SearchResult("a", "A")])
        selector = TrackSelector(store, resolver, random=lambda: 0.0)

        selection = asyncio.run(selector.pick_discovery(LISTENERS, RadioHistory()))

        assert selection.fell_back
        assert selection.policy == "radio"
        assert selection.track.url == "a"

    def test_search_failure_falls_back_to_radio(self):
        store = FakeStore([candidate("a", artist="Artist A")])
        resolver = FakeResolver()
        resolver.search_error = ResolutionError("", "search exploded")
        selector = TrackSelector(store, resolver, random=lambda: 0.0)

        selection = asyncio.run(selector.pick_discovery(LISTENERS, RadioHistory()))

        assert selection.fell_back
        assert "search exploded" in selection.fallback_reason

    def test_slow_search_falls_back_to_radio(self):
        class SlowResolver(FakeResolver):
            async def search(self, query, limit=10):
                await asyncio.sleep(5)
                return []

        store = FakeStore([candidate("a", artist="Artist A")])
        selector = TrackSelector(store, SlowResolver(), random=lambda: 0.0,
                                 config=PlaybackConfig(resolve_timeout=0.01))

        selection = asyncio.run(selector.pick_discovery(LISTENERS, RadioHistory()))

        assert selection.fell_back

    def test_unknown_artist_seeds_use_title(self):
        selector = TrackSelector(FakeStore(), random=lambda: 0.0)
        assert selector.discovery_query(candidate("x")) == "songs like X"

    def test_query_templates_chosen_uniformly(self):
        selector = TrackSelector(FakeStore(), random=scripted(0.5, 0.9))
        seed = candidate("x", artist="Band")
        assert selector.discovery_query(seed) == "Band best songs"
        assert selector.discovery_query(seed) == "songs like X"

    def test_select_picks_discovery_below_threshold(self):
        store = FakeStore([candidate("a", artist="Artist A")])
        resolver = FakeResolver(search_results=[SearchResult("new", "New")])

        selector = TrackSelector(store, resolver, random=lambda: 0.29)
        selection = asyncio.run(selector.select(LISTENERS, RadioHistory(), discovery=True))
        assert selection.policy == "discovery"

        selector = TrackSelector(store, resolver, random=lambda: 0.3)
        selection = asyncio.run(selector.select(LISTENERS, RadioHistory(), discovery=True))
        assert selection.policy == "radio"

        selector = TrackSelector(store, resolver, random=lambda: 0.0)
        selection = asyncio.run(selector.select(LISTENERS, RadioHistory(), discovery=False))
        assert selection.policy == "radio"
