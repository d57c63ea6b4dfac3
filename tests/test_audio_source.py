import asyncio

import pytest

from radio.audio_source import YTDLResolver, _metadata
from radio.errors import ResolutionError


class StubSpotify:
    available = True

    def resolve_track(self, track_id):
        return ("Daft Punk", "One More Time")


def resolver_returning(data, spotify=None):
    resolver = YTDLResolver(spotify=spotify)
    calls = []

    async def extract(query, **overrides):
        calls.append((query, overrides))
        return data

    resolver._extract = extract
    return resolver, calls


def test_metadata_prefers_artist_then_uploader():
    meta = _metadata({"title": "T", "uploader": "Chan", "duration": 61.4,
                      "webpage_url": "https://youtu.be/x"})
    assert (meta.url, meta.title, meta.artist, meta.duration_seconds) == (
        "https://youtu.be/x", "T", "Chan", 61,
    )
    assert _metadata({}, "fallback").artist == "Unknown"
    assert _metadata({"duration": 0}).duration_seconds is None


def test_search_keeps_only_videos():
    resolver, calls = resolver_returning({"entries": [
        {"url": "https://www.youtube.com/watch?v=a", "title": "A", "channel": "Band"},
        {"url": "https://www.youtube.com/channel/xyz", "title": "Channel"},
        None,
        {"url": "https://www.youtube.com/watch?v=b", "title": "B"},
    ]})

    results = asyncio.run(resolver.search("band best songs", limit=5))

    assert [r.url for r in results] == [
        "https://www.youtube.com/watch?v=a", "https://www.youtube.com/watch?v=b",
    ]
    assert results[0].artist == "Band"
    assert results[1].artist == "Unknown"
    assert calls[0][0] == "ytsearch10:band best songs"


def test_spotify_links_are_searched_on_youtube():
    resolver, calls = resolver_returning(
        {"entries": [{"webpage_url": "https://www.youtube.com/watch?v=z", "title": "Video title"}]},
        spotify=StubSpotify(),
    )

    meta = asyncio.run(resolver.describe("https://open.spotify.com/track/abc123"))

    assert calls[0][0] == "ytsearch1:Daft Punk - One More Time"
    assert meta.url == "https://www.youtube.com/watch?v=z"
    assert (meta.artist, meta.title) == ("Daft Punk", "One More Time")


def test_spotify_without_credentials():
    resolver, _ = resolver_returning({})
    with pytest.raises(ResolutionError):
        asyncio.run(resolver.describe("https://open.spotify.com/track/abc123"))


def test_unsupported_url():
    resolver, calls = resolver_returning({})
    with pytest.raises(ResolutionError) as exc:
        asyncio.run(resolver.resolve("https://example.com/a.mp3"))
    assert "Unsupported URL" in exc.value.message
    assert calls == []


def test_resolve_without_stream_url_fails():
    resolver, _ = resolver_returning({"title": "No stream"})
    with pytest.raises(ResolutionError):
        asyncio.run(resolver.resolve("https://youtu.be/x"))


def test_expand_playlist_builds_watch_urls():
    resolver, calls = resolver_returning({"entries": [
        {"url": "abc", "title": "One", "duration": 100},
        {"url": "https://www.youtube.com/watch?v=def", "title": "Two", "uploader": "Up"},
        {"title": "no url"},
    ]})

    tracks = asyncio.run(resolver.expand_playlist("https://www.youtube.com/playlist?list=PL1"))

    assert [t.url for t in tracks] == [
        "https://www.youtube.com/watch?v=abc", "https://www.youtube.com/watch?v=def",
    ]
    assert tracks[1].artist == "Up"
    assert calls[0][1]["noplaylist"] is False


def test_expand_playlist_needs_list_param():
    resolver, _ = resolver_returning({})
    with pytest.raises(ResolutionError):
        asyncio.run(resolver.expand_playlist("https://www.youtube.com/watch?v=a"))
