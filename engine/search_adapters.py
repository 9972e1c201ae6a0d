import json
import logging
import re
from urllib.parse import urlparse

from yt_dlp import YoutubeDL

from config.settings import DOWNLOAD_URL_CACHE_TTL_SECONDS, SEARCH_CACHE_TTL_SECONDS
from db.cache import cache_key, cached_call
from engine.errors import CollaboratorDegraded

COLLABORATOR = "search"

DURATION_BUCKETS = {
    # Matches the platform's own videoDuration buckets.
    "short": (0, 4 * 60),
    "medium": (4 * 60, 20 * 60),
    "long": (20 * 60, None),
}
_STANDARD_MIN_BITRATE = 128

_ID_PATTERNS = (
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([a-zA-Z0-9_-]{11})"),
    re.compile(r"^([a-zA-Z0-9_-]{11})$"),
)
_ARTIST_TITLE_PATTERNS = (
    re.compile(r"^([^-]+)\s*-\s*(.+)"),
    re.compile(r"^(.+?)\s*[|•]\s*(.+)"),
)


def _is_http_url(value):
    if not value or not isinstance(value, str):
        return False
    try:
        return urlparse(value).scheme in ("http", "https")
    except ValueError:
        return False


def validate_and_extract_id(value):
    """Return the 11-character video id from a watch/short/embed URL or bare id."""
    text = (value or "").strip()
    for pattern in _ID_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def split_artist_title(title, fallback_artist=""):
    """Split ``"Artist - Title"`` or ``"Artist | Title"``; otherwise keep the title."""
    text = (title or "").strip()
    for pattern in _ARTIST_TITLE_PATTERNS:
        match = pattern.match(text)
        if match:
            return match.group(1).strip(), match.group(2).strip()
    return (fallback_artist or "").strip(), text


def format_duration(seconds):
    if seconds is None:
        return ""
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _watch_url(video_id):
    return f"https://www.youtube.com/watch?v={video_id}"


def _thumbnail_url(entry):
    thumbnail = entry.get("thumbnail")
    if _is_http_url(thumbnail):
        return thumbnail
    thumbnails = entry.get("thumbnails")
    if isinstance(thumbnails, list):
        for item in reversed(thumbnails):
            url = item.get("url") if isinstance(item, dict) else None
            if _is_http_url(url):
                return url
    video_id = entry.get("id")
    if isinstance(video_id, str) and video_id.strip():
        return f"https://i.ytimg.com/vi/{video_id.strip()}/hqdefault.jpg"
    return None


def _within_duration(seconds, bucket):
    bounds = DURATION_BUCKETS.get(bucket)
    if bounds is None:
        return True
    if seconds is None:
        return False
    low, high = bounds
    if seconds < low:
        return False
    return high is None or seconds < high


class YouTubeSearchAdapter:
    """Video search, metadata and audio stream resolution through yt-dlp.

    Every method is blocking and raises ``CollaboratorDegraded`` on provider
    failure; callers run them in worker threads under a timeout.
    """

    source = "youtube"

    def __init__(self, *, cache=None, socket_timeout=10, ydl_factory=YoutubeDL):
        self._cache = cache
        self.socket_timeout = socket_timeout
        self._ydl_factory = ydl_factory

    def _opts(self, **extra):
        opts = {
            "skip_download": True,
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "cachedir": False,
            "socket_timeout": self.socket_timeout,
        }
        opts.update(extra)
        return opts

    def _extract(self, target, opts, operation):
        try:
            with self._ydl_factory(opts) as ydl:
                info = ydl.extract_info(target, download=False)
        except Exception as exc:
            logging.exception("yt-dlp %s failed target=%s", operation, target)
            raise CollaboratorDegraded(COLLABORATOR, f"{operation} failed: {exc}") from exc
        if not isinstance(info, dict):
            raise CollaboratorDegraded(COLLABORATOR, f"{operation} returned no data")
        return info

    def search_music(self, query, max_results=10, options=None):
        """Search for videos matching ``query``.

        ``options`` accepts ``duration`` (short|medium|long) and ``order``
        (relevance|date). ``date`` switches to the newest-first search feed.
        """
        query = (query or "").strip()
        if not query:
            return []
        limit = max(1, int(max_results))
        options = {k: v for k, v in (options or {}).items() if v}
        key = cache_key("youtube:search", query, limit, json.dumps(options, sort_keys=True))
        return cached_call(
            self._cache,
            key,
            SEARCH_CACHE_TTL_SECONDS,
            lambda: self._search(query, limit, options),
        )

    def _search(self, query, limit, options):
        prefix = "ytsearchdate" if options.get("order") == "date" else "ytsearch"
        duration = options.get("duration")
        # Over-fetch when filtering by duration so the filter can still fill the page.
        fetch = limit * 3 if duration in DURATION_BUCKETS else limit
        info = self._extract(
            f"{prefix}{fetch}:{query}",
            self._opts(extract_flat="in_playlist", ignoreerrors=True),
            "search",
        )
        entries = info.get("entries") or []

        results = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            video_id = (entry.get("id") or "").strip() if isinstance(entry.get("id"), str) else ""
            title = entry.get("title")
            if not video_id or not title:
                continue
            seconds = entry.get("duration")
            if duration and not _within_duration(seconds, duration):
                continue
            results.append(
                {
                    "id": video_id,
                    "title": title,
                    "description": entry.get("description") or "",
                    "thumbnailUrl": _thumbnail_url(entry) or "",
                    "channelTitle": entry.get("channel") or entry.get("uploader") or "",
                    "durationSeconds": int(seconds) if seconds is not None else None,
                    "duration": format_duration(seconds),
                    "publishedAt": entry.get("upload_date") or "",
                    "viewCount": entry.get("view_count"),
                }
            )
            if len(results) >= limit:
                break
        logging.info("YouTube search completed: %s results for %r", len(results), query)
        return results

    def get_video_metadata(self, video_id):
        """Return title/artist/duration/thumbnail/description for one video."""
        info = self._extract(_watch_url(video_id), self._opts(), "metadata")
        raw_title = info.get("title") or ""
        channel = info.get("channel") or info.get("uploader") or ""
        if info.get("artist") and info.get("track"):
            artist, title = info["artist"], info["track"]
        else:
            artist, title = split_artist_title(raw_title, channel)
        duration = info.get("duration")
        return {
            "title": title,
            "artist": artist,
            "duration": int(duration) if duration is not None else None,
            "thumbnailUrl": _thumbnail_url(info) or "",
            "description": info.get("description") or "",
        }

    def get_download_url(self, video_id, quality="standard"):
        """Resolve a direct audio stream URL.

        ``high`` picks the highest audio bitrate; ``standard`` the first
        stream at or above 128 kbps, else the first audio stream.
        """
        key = f"youtube:download:{video_id}:{quality}"
        return cached_call(
            self._cache,
            key,
            DOWNLOAD_URL_CACHE_TTL_SECONDS,
            lambda: self._resolve_download(video_id, quality),
        )

    def _resolve_download(self, video_id, quality):
        info = self._extract(_watch_url(video_id), self._opts(), "download_url")
        audio_formats = [
            fmt
            for fmt in info.get("formats") or []
            if isinstance(fmt, dict)
            and fmt.get("acodec") not in (None, "none")
            and fmt.get("vcodec") in (None, "none")
            and _is_http_url(fmt.get("url"))
        ]
        if not audio_formats:
            raise CollaboratorDegraded(COLLABORATOR, f"no audio format for {video_id}")

        if quality == "high":
            selected = max(audio_formats, key=lambda f: f.get("abr") or 0)
        else:
            selected = next(
                (f for f in audio_formats if (f.get("abr") or 0) >= _STANDARD_MIN_BITRATE),
                audio_formats[0],
            )
        abr = selected.get("abr")
        logging.info("Download URL generated for %s quality=%s", video_id, quality)
        return {
            "url": selected["url"],
            "format": selected.get("ext") or "webm",
            "quality": str(int(abr)) if abr else "unknown",
        }
