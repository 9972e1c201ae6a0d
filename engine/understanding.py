"""Natural-language understanding backed by OpenAI chat completions (JSON mode)."""

from __future__ import annotations

import json
import logging
from typing import Any

from openai import OpenAI, OpenAIError

from config.settings import TRACK_METADATA_CACHE_TTL_SECONDS, UNDERSTANDING_CACHE_TTL_SECONDS
from db.cache import cache_key, cached_call
from engine.errors import CollaboratorDegraded
from engine.models import ProcessedQuery

logger = logging.getLogger(__name__)

COLLABORATOR = "understanding"

QUERY_SYSTEM_PROMPT = """You are a music intelligence AI that converts natural language requests into structured search queries.

Your task is to analyze user requests and extract:
1. Search intent (search, analyze, discover)
2. Search terms for YouTube
3. Filters for BPM, key, genre, mood, energy
4. Sorting preferences

Examples:
User: "Find me chill lofi house tracks around 120 BPM"
Response: {
  "intent": "search",
  "searchTerms": ["chill lofi house", "lofi house music", "ambient house"],
  "filters": {
    "bpm": {"min": 115, "max": 125},
    "genre": ["house", "lofi", "ambient"],
    "mood": ["chill", "relaxed"]
  },
  "maxResults": 10,
  "sortBy": "relevance"
}

User: "I need energetic progressive trance for peak time, 128-132 BPM"
Response: {
  "intent": "search",
  "searchTerms": ["energetic progressive trance", "peak time trance", "uplifting trance"],
  "filters": {
    "bpm": {"min": 128, "max": 132},
    "genre": ["trance", "progressive trance"],
    "mood": ["energetic", "uplifting"],
    "energy": {"min": 0.7, "max": 1.0}
  },
  "maxResults": 10,
  "sortBy": "popularity"
}

User: "Deep house tracks in the key of C minor for sunset vibes"
Response: {
  "intent": "search",
  "searchTerms": ["deep house", "deep house sunset", "melodic deep house"],
  "filters": {
    "key": ["C minor", "Cm"],
    "genre": ["deep house", "house"],
    "mood": ["sunset", "melodic", "atmospheric"]
  },
  "maxResults": 10,
  "sortBy": "relevance"
}

Always respond with valid JSON. If the request is unclear, make reasonable assumptions."""

METADATA_PROMPT = """Extract music metadata from this track information:
Title: "{title}"
{description_line}
Extract and return as JSON:
- genre (electronic, house, techno, trance, etc.)
- mood (energetic, chill, dark, uplifting, etc.)
- bpm (estimated BPM if mentioned)
- key (musical key if mentioned, like "C minor", "F major")

Only include fields if you're confident. Return empty object if no metadata is clear."""

_METADATA_FIELDS = ("genre", "mood", "bpm", "key")


class UnderstandingClient:
    def __init__(
        self,
        api_key: str | None,
        *,
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 20.0,
        cache=None,
        client: Any = None,
    ) -> None:
        if client is None and api_key:
            client = OpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=1)
        self._client = client
        self.model = model
        self._cache = cache

    @property
    def configured(self) -> bool:
        return self._client is not None

    def _complete_json(self, messages: list[dict[str, str]], *, max_tokens: int) -> dict[str, Any]:
        if self._client is None:
            raise CollaboratorDegraded(COLLABORATOR, "OPENAI_API_KEY is not configured")
        try:
            completion = self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0.1,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except OpenAIError as exc:
            raise CollaboratorDegraded(COLLABORATOR, str(exc)) from exc
        choices = getattr(completion, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content:
            raise CollaboratorDegraded(COLLABORATOR, "empty completion")
        try:
            payload = json.loads(content)
        except ValueError as exc:
            raise CollaboratorDegraded(COLLABORATOR, "completion is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise CollaboratorDegraded(COLLABORATOR, "completion is not a JSON object")
        return payload

    def process_request(self, text: str) -> ProcessedQuery:
        """Turn free text into a ProcessedQuery.

        Raises:
            CollaboratorDegraded: On provider failure or an unusable response.
        """

        def _compute() -> dict[str, Any]:
            payload = self._complete_json(
                [
                    {"role": "system", "content": QUERY_SYSTEM_PROMPT},
                    {"role": "user", "content": text},
                ],
                max_tokens=1000,
            )
            try:
                return ProcessedQuery.from_payload(payload).to_dict()
            except ValueError as exc:
                raise CollaboratorDegraded(COLLABORATOR, f"invalid query: {exc}") from exc

        data = cached_call(
            self._cache,
            cache_key("llm:query", text),
            UNDERSTANDING_CACHE_TTL_SECONDS,
            _compute,
        )
        try:
            query = ProcessedQuery.from_payload(data)
        except ValueError as exc:
            raise CollaboratorDegraded(COLLABORATOR, f"invalid cached query: {exc}") from exc
        logger.info(
            "understanding_ok intent=%s terms=%s input=%r",
            query.intent,
            len(query.search_terms),
            text[:100],
        )
        return query

    def extract_metadata(self, title: str, description: str | None = None) -> dict[str, Any]:
        """Guess genre/mood/bpm/key for one track. Unknown fields are omitted."""
        description_line = f'Description: "{description[:500]}"\n' if description else ""
        prompt = METADATA_PROMPT.format(title=title, description_line=description_line)

        def _compute() -> dict[str, Any]:
            payload = self._complete_json([{"role": "user", "content": prompt}], max_tokens=200)
            return {k: payload[k] for k in _METADATA_FIELDS if payload.get(k) not in (None, "")}

        return cached_call(
            self._cache,
            cache_key("llm:metadata", title),
            TRACK_METADATA_CACHE_TTL_SECONDS,
            _compute,
        ) or {}
