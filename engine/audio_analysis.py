"""Audio analysis: AudD recognition plus an ffmpeg waveform/energy pass.

Both providers run concurrently against the same stream URL. Either one may
fail on its own; only when neither yields anything is the call a failure.
"""

from __future__ import annotations

import logging
import math
import subprocess
from array import array
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config.settings import ANALYSIS_CACHE_TTL_SECONDS
from db.cache import cache_key, cached_call
from engine.errors import CollaboratorDegraded

logger = logging.getLogger(__name__)

COLLABORATOR = "analysis"

AUDD_URL = "https://api.audd.io/"
WAVEFORM_SAMPLE_RATE = 8000
WAVEFORM_PEAK_COUNT = 1000
WAVEFORM_MAX_SECONDS = 600

CAMELOT_WHEEL = {
    "C major": "8B", "A minor": "8A",
    "G major": "9B", "E minor": "9A",
    "D major": "10B", "B minor": "10A",
    "A major": "11B", "F# minor": "11A",
    "E major": "12B", "C# minor": "12A",
    "B major": "1B", "G# minor": "1A",
    "F# major": "2B", "D# minor": "2A",
    "C# major": "3B", "A# minor": "3A",
    "G# major": "4B", "F minor": "4A",
    "D# major": "5B", "C minor": "5A",
    "A# major": "6B", "G minor": "6A",
    "F major": "7B", "D minor": "7A",
}


def convert_to_camelot(key: str | None) -> str | None:
    if not key:
        return None
    return CAMELOT_WHEEL.get(key.strip())


def calculate_energy_level(bpm: float | None = None, loudness: float | None = None) -> float:
    """Heuristic 0..1 energy from tempo and integrated loudness (LUFS)."""
    energy = 0.5
    if bpm:
        if bpm > 140:
            energy += 0.3
        elif bpm > 120:
            energy += 0.2
        elif bpm > 100:
            energy += 0.1
        else:
            energy -= 0.1
    if loudness is not None:
        normalized = max(0.0, min(1.0, (loudness + 30) / 20))
        energy += (normalized - 0.5) * 0.4
    return max(0.0, min(1.0, energy))


def waveform_peaks(samples, peak_count: int = WAVEFORM_PEAK_COUNT) -> list[float]:
    """Bucket absolute sample values into ``peak_count`` maxima normalized to 0..1."""
    if not samples:
        return []
    bucket = max(1, math.ceil(len(samples) / peak_count))
    peaks = [
        max(abs(s) for s in samples[i : i + bucket])
        for i in range(0, len(samples), bucket)
    ]
    top = max(peaks)
    if top <= 0:
        return [0.0 for _ in peaks]
    return [round(p / top, 4) for p in peaks]


def rms_energy(samples) -> float:
    """Map RMS level (-30..-6 dBFS) onto 0..1."""
    if not samples:
        return 0.0
    rms = math.sqrt(sum(s * s for s in samples) / len(samples))
    if rms <= 0:
        return 0.0
    dbfs = 20 * math.log10(rms)
    return round(max(0.0, min(1.0, (dbfs + 30) / 24)), 4)


class AudioAnalyzer:
    def __init__(
        self,
        audd_api_key: str | None,
        *,
        timeout_seconds: float = 30.0,
        cache=None,
        session: requests.Session | None = None,
        ffmpeg_bin: str = "ffmpeg",
    ) -> None:
        self.audd_api_key = (audd_api_key or "").strip() or None
        self.timeout_seconds = timeout_seconds
        self.ffmpeg_bin = ffmpeg_bin
        self._cache = cache
        if session is None:
            session = requests.Session()
            retry = Retry(
                total=2,
                backoff_factor=0.4,
                status_forcelist=(429, 500, 502, 503, 504),
                allowed_methods=frozenset({"POST"}),
            )
            adapter = HTTPAdapter(max_retries=retry)
            session.mount("https://", adapter)
        self._session = session

    def analyze_from_url(self, audio_url: str) -> dict[str, Any]:
        """Return camelCase analysis fields for ``audio_url``.

        Raises:
            CollaboratorDegraded: If neither provider produced a result.
        """
        return cached_call(
            self._cache,
            cache_key("audio:analysis", audio_url),
            ANALYSIS_CACHE_TTL_SECONDS,
            lambda: self._analyze(audio_url),
        )

    def _analyze(self, audio_url: str) -> dict[str, Any]:
        logger.info("audio_analysis_start url=%s", audio_url[:80])
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="analysis") as pool:
            audd_future = pool.submit(self.analyze_with_audd, audio_url)
            waveform_future = pool.submit(self.analyze_waveform, audio_url)
            audd_result = self._settle(audd_future, "audd")
            waveform_result = self._settle(waveform_future, "waveform")

        if not audd_result and not waveform_result:
            raise CollaboratorDegraded(COLLABORATOR, "no analysis provider produced a result")

        result: dict[str, Any] = {}
        if audd_result:
            result.update(audd_result)
        if waveform_result:
            result["waveformPeaks"] = waveform_result["waveformPeaks"]
            result.setdefault("energyLevel", waveform_result["energyLevel"])
        if result.get("energyLevel") is None and (result.get("bpm") or result.get("loudness") is not None):
            result["energyLevel"] = calculate_energy_level(result.get("bpm"), result.get("loudness"))

        result["tempoConfidence"] = 0.8 if result.get("bpm") else 0.0
        result["keyConfidence"] = 0.7 if result.get("musicalKey") else 0.0
        logger.info(
            "audio_analysis_done bpm=%s key=%s energy=%s",
            result.get("bpm"),
            result.get("musicalKey"),
            result.get("energyLevel"),
        )
        return result

    @staticmethod
    def _settle(future, provider: str) -> dict[str, Any] | None:
        try:
            return future.result()
        except CollaboratorDegraded as exc:
            logger.warning("audio_provider_failed provider=%s error=%s", provider, exc)
            return None

    def analyze_with_audd(self, audio_url: str) -> dict[str, Any] | None:
        if not self.audd_api_key:
            logger.debug("audd_skipped reason=not_configured")
            return None
        try:
            resp = self._session.post(
                AUDD_URL,
                data={"url": audio_url, "api_token": self.audd_api_key, "return": "musicbrainz"},
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise CollaboratorDegraded(COLLABORATOR, f"audd request failed: {exc}") from exc

        if not isinstance(payload, dict) or payload.get("status") != "success":
            raise CollaboratorDegraded(COLLABORATOR, "audd returned no match")
        data = payload.get("result")
        if not isinstance(data, dict):
            return None
        key = data.get("key") or None
        tempo = data.get("tempo")
        try:
            bpm = round(float(tempo)) if tempo else None
        except (TypeError, ValueError, OverflowError) as exc:
            raise CollaboratorDegraded(COLLABORATOR, f"audd returned unusable tempo: {tempo!r}") from exc
        out = {
            "bpm": bpm,
            "musicalKey": key,
            "camelotKey": convert_to_camelot(key),
            "genre": data.get("genre") or None,
            "loudness": data.get("loudness"),
        }
        return {k: v for k, v in out.items() if v is not None} or None

    def analyze_waveform(self, audio_url: str) -> dict[str, Any]:
        command = [
            self.ffmpeg_bin,
            "-v",
            "error",
            "-t",
            str(WAVEFORM_MAX_SECONDS),
            "-i",
            audio_url,
            "-ac",
            "1",
            "-ar",
            str(WAVEFORM_SAMPLE_RATE),
            "-f",
            "f32le",
            "-",
        ]
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                check=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise CollaboratorDegraded(COLLABORATOR, "ffmpeg is not installed or not in PATH") from exc
        except subprocess.TimeoutExpired as exc:
            raise CollaboratorDegraded(COLLABORATOR, "ffmpeg timed out") from exc
        except subprocess.CalledProcessError as exc:
            stderr_text = (exc.stderr or b"").decode("utf-8", "replace").strip()
            raise CollaboratorDegraded(COLLABORATOR, f"ffmpeg failed: {stderr_text or exc}") from exc

        raw = completed.stdout or b""
        samples = array("f")
        samples.frombytes(raw[: len(raw) - (len(raw) % samples.itemsize)])
        if not samples:
            raise CollaboratorDegraded(COLLABORATOR, "ffmpeg produced no audio samples")
        return {
            "waveformPeaks": waveform_peaks(samples),
            "energyLevel": rms_energy(samples),
        }
