from __future__ import annotations

import pytest

from engine.errors import CollaboratorDegraded
from engine.search_adapters import (
    YouTubeSearchAdapter,
    format_duration,
    split_artist_title,
    validate_and_extract_id,
)


class _FakeYDL:
    """Context-manager stand-in for ``yt_dlp.YoutubeDL``."""

    def __init__(self, responses, calls):
        self._responses = responses
        self._calls = calls

    def __call__(self, opts):
        self._opts = opts
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def extract_info(self, target, download=False):
        self._calls.append((target, dict(self._opts)))
        value = self._responses.get(target)
        if isinstance(value, Exception):
            raise value
        return value


def _adapter(responses, cache=None):
    calls = []
    return YouTubeSearchAdapter(cache=cache, ydl_factory=_FakeYDL(responses, calls)), calls


def _entry(video_id, title, duration=200, **extra):
    row = {"id": video_id, "title": title, "duration": duration, "channel": "Label"}
    row.update(extra)
    return row


@pytest.mark.parametrize(
    "value,expected",
    [
        ("https://www.youtube.com/watch?v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://youtu.be/dQw4w9WgXcQ?t=30", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/embed/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://example.com/watch?v=dQw4w9WgXcQ", None),
        ("not a url", None),
        ("", None),
    ],
)
def test_validate_and_extract_id(value, expected) -> None:
    assert validate_and_extract_id(value) == expected


def test_split_artist_title() -> None:
    assert split_artist_title("Daft Punk - One More Time") == ("Daft Punk", "One More Time")
    assert split_artist_title("Bicep | Glue") == ("Bicep", "Glue")
    assert split_artist_title("Just A Title", "Channel") == ("Channel", "Just A Title")


def test_format_duration() -> None:
    assert format_duration(65) == "1:05"
    assert format_duration(3725) == "1:02:05"
    assert format_duration(None) == ""


def test_search_maps_entries_and_caps_results() -> None:
    adapter, calls = _adapter(
        {
            "ytsearch2:deep house": {
                "entries": [
                    _entry("aaaaaaaaaaa", "One", view_count=10, upload_date="20240101"),
                    None,
                    {"id": "", "title": "no id"},
                    _entry("bbbbbbbbbbb", "Two"),
                    _entry("ccccccccccc", "Three"),
                ]
            }
        }
    )

    results = adapter.search_music("deep house", 2)

    assert [r["id"] for r in results] == ["aaaaaaaaaaa", "bbbbbbbbbbb"]
    first = results[0]
    assert first["channelTitle"] == "Label"
    assert first["durationSeconds"] == 200
    assert first["duration"] == "3:20"
    assert first["thumbnailUrl"] == "https://i.ytimg.com/vi/aaaaaaaaaaa/hqdefault.jpg"
    assert first["viewCount"] == 10
    assert calls[0][1]["extract_flat"] == "in_playlist"


def test_search_duration_filter_over_fetches() -> None:
    adapter, calls = _adapter(
        {
            "ytsearch6:ambient": {
                "entries": [
                    _entry("shortshort1", "Short", duration=120),
                    _entry("longlonglon", "Long", duration=3600),
                    _entry("nodurationx", "Unknown", duration=None),
                ]
            }
        }
    )

    results = adapter.search_music("ambient", 2, {"duration": "long"})

    assert [r["id"] for r in results] == ["longlonglon"]
    assert calls[0][0] == "ytsearch6:ambient"


def test_search_date_order_uses_date_feed() -> None:
    adapter, calls = _adapter({"ytsearchdate3:techno": {"entries": [_entry("ddddddddddd", "New")]}})

    adapter.search_music("techno", 3, {"order": "date"})

    assert calls[0][0] == "ytsearchdate3:techno"


def test_search_results_are_cached(cache) -> None:
    adapter, calls = _adapter({"ytsearch1:lofi": {"entries": [_entry("eeeeeeeeeee", "Lofi")]}}, cache=cache)

    adapter.search_music("lofi", 1)
    adapter.search_music("lofi", 1)

    assert len(calls) == 1


def test_search_failure_is_degraded() -> None:
    adapter, _calls = _adapter({"ytsearch1:boom": RuntimeError("HTTP Error 429")})
    with pytest.raises(CollaboratorDegraded) as exc:
        adapter.search_music("boom", 1)
    assert exc.value.collaborator == "search"


def test_blank_query_returns_empty_without_calling_provider() -> None:
    adapter, calls = _adapter({})
    assert adapter.search_music("  ", 5) == []
    assert calls == []


def test_video_metadata_prefers_music_fields() -> None:
    url = "https://www.youtube.com/watch?v=fffffffffff"
    adapter, _calls = _adapter(
        {url: {"title": "Official Video", "artist": "Bicep", "track": "Glue", "duration": 269.0, "channel": "Ninja"}}
    )

    meta = adapter.get_video_metadata("fffffffffff")

    assert meta["artist"] == "Bicep"
    assert meta["title"] == "Glue"
    assert meta["duration"] == 269


def test_video_metadata_splits_upload_title() -> None:
    url = "https://www.youtube.com/watch?v=ggggggggggg"
    adapter, _calls = _adapter({url: {"id": "ggggggggggg", "title": "Fred again.. - Delilah", "channel": "Fred again.."}})

    meta = adapter.get_video_metadata("ggggggggggg")

    assert meta == {
        "title": "Delilah",
        "artist": "Fred again..",
        "duration": None,
        "thumbnailUrl": "https://i.ytimg.com/vi/ggggggggggg/hqdefault.jpg",
        "description": "",
    }


_FORMATS = [
    {"url": "https://cdn.example/video.mp4", "acodec": "mp4a", "vcodec": "avc1", "abr": 256},
    {"url": "https://cdn.example/low.webm", "acodec": "opus", "vcodec": "none", "abr": 64, "ext": "webm"},
    {"url": "https://cdn.example/mid.m4a", "acodec": "mp4a", "vcodec": "none", "abr": 129.5, "ext": "m4a"},
    {"url": "https://cdn.example/high.webm", "acodec": "opus", "vcodec": "none", "abr": 160, "ext": "webm"},
]


def test_download_url_standard_picks_first_at_128kbps() -> None:
    url = "https://www.youtube.com/watch?v=hhhhhhhhhhh"
    adapter, _calls = _adapter({url: {"formats": _FORMATS}})

    assert adapter.get_download_url("hhhhhhhhhhh") == {
        "url": "https://cdn.example/mid.m4a",
        "format": "m4a",
        "quality": "129",
    }


def test_download_url_high_picks_best_bitrate() -> None:
    url = "https://www.youtube.com/watch?v=hhhhhhhhhhh"
    adapter, _calls = _adapter({url: {"formats": _FORMATS}})

    assert adapter.get_download_url("hhhhhhhhhhh", "high")["url"] == "https://cdn.example/high.webm"


def test_download_url_falls_back_to_first_audio_stream() -> None:
    url = "https://www.youtube.com/watch?v=iiiiiiiiiii"
    adapter, _calls = _adapter({url: {"formats": _FORMATS[:2]}})

    assert adapter.get_download_url("iiiiiiiiiii")["url"] == "https://cdn.example/low.webm"


def test_download_url_without_audio_is_degraded() -> None:
    url = "https://www.youtube.com/watch?v=jjjjjjjjjjj"
    adapter, _calls = _adapter({url: {"formats": _FORMATS[:1]}})

    with pytest.raises(CollaboratorDegraded):
        adapter.get_download_url("jjjjjjjjjjj")
