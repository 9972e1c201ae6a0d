"""Request pipeline: understand, search, enrich/analyze, score.

Stages run once each, in order. Collaborator failures degrade the run (a
``failed`` processing step, fewer fields, lower confidence) and never abort it.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from functools import partial
from typing import Any, Callable

import anyio

from config.settings import MAX_SEARCH_TERMS
from engine.confidence import score_confidence
from engine.errors import CollaboratorDegraded, StorageTransient
from engine.models import (
    ANALYSIS_FAILED,
    STEP_COMPLETED,
    STEP_FAILED,
    PipelineRun,
    ProcessedQuery,
    ProcessingStep,
    TrackCandidate,
)

logger = logging.getLogger(__name__)

STEP_UNDERSTAND = "llm_processing"
STEP_SEARCH = "youtube_search"
STEP_ENRICH = "track_processing"
STEP_SCORE = "confidence_scoring"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class RequestPipeline:
    def __init__(
        self,
        understanding,
        search,
        analysis,
        track_store=None,
        *,
        collaborator_timeout: float = 20.0,
        analysis_timeout: float = 30.0,
    ) -> None:
        self.understanding = understanding
        self.search = search
        self.analysis = analysis
        self.track_store = track_store
        self.collaborator_timeout = collaborator_timeout
        self.analysis_timeout = analysis_timeout

    async def call(
        self,
        collaborator: str,
        fn: Callable[..., Any],
        *args: Any,
        timeout: float | None = None,
    ) -> Any:
        """Run a blocking collaborator call in a worker thread under a timeout.

        Raises:
            CollaboratorDegraded: On timeout, or when the collaborator raises it.
        """
        limit = timeout if timeout is not None else self.collaborator_timeout
        try:
            with anyio.fail_after(limit):
                return await anyio.to_thread.run_sync(partial(fn, *args), abandon_on_cancel=True)
        except TimeoutError as exc:
            raise CollaboratorDegraded(collaborator, f"timed out after {limit}s") from exc

    async def run(
        self,
        query: str,
        *,
        max_tracks: int = 10,
        analyze_audio: bool = True,
        download_quality: str = "standard",
    ) -> PipelineRun:
        run = PipelineRun(query=query)
        run.processed_query = await self._understand(run)
        run.candidates = await self._search(run, max_tracks)
        await self._enrich(run, analyze_audio=analyze_audio, download_quality=download_quality)
        self._score(run)
        logger.info(
            "pipeline_done tracks=%s confidence=%s failed_steps=%s",
            len(run.candidates),
            run.confidence,
            [s.step for s in run.steps if s.status == STEP_FAILED],
        )
        return run

    async def _understand(self, run: PipelineRun) -> ProcessedQuery:
        started = time.monotonic()
        try:
            processed = await self.call("understanding", self.understanding.process_request, run.query)
        except CollaboratorDegraded as exc:
            logger.warning("understanding_failed fallback=single_term error=%s", exc)
            run.steps.append(
                ProcessingStep(
                    STEP_UNDERSTAND,
                    STEP_FAILED,
                    _elapsed_ms(started),
                    {"error": str(exc), "fallback": True},
                )
            )
            return ProcessedQuery.fallback(run.query)
        run.steps.append(
            ProcessingStep(
                STEP_UNDERSTAND,
                STEP_COMPLETED,
                _elapsed_ms(started),
                {"intent": processed.intent, "searchTerms": len(processed.search_terms)},
            )
        )
        return processed

    async def _search(self, run: PipelineRun, max_tracks: int) -> list[TrackCandidate]:
        started = time.monotonic()
        terms = list(run.processed_query.search_terms[:MAX_SEARCH_TERMS]) or [run.query]
        per_term = max(1, math.ceil(max_tracks / len(terms)))

        # gather keeps results in term order regardless of completion order.
        outcomes = await asyncio.gather(
            *(self.call("search", self.search.search_music, term, per_term) for term in terms),
            return_exceptions=True,
        )

        candidates: list[TrackCandidate] = []
        seen: set[str] = set()
        failed_terms = 0
        for term, outcome in zip(terms, outcomes):
            if isinstance(outcome, CollaboratorDegraded):
                failed_terms += 1
                logger.warning("search_term_failed term=%r error=%s", term, outcome)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            for item in outcome or []:
                try:
                    candidate = TrackCandidate.from_search_result(item)
                except (ValueError, AttributeError):
                    continue
                if candidate.youtube_id in seen:
                    continue
                seen.add(candidate.youtube_id)
                candidates.append(candidate)

        candidates = candidates[:max_tracks]
        status = STEP_FAILED if failed_terms == len(terms) else STEP_COMPLETED
        run.steps.append(
            ProcessingStep(
                STEP_SEARCH,
                status,
                _elapsed_ms(started),
                {
                    "searchTerms": len(terms),
                    "failedTerms": failed_terms,
                    "resultsFound": len(candidates),
                },
            )
        )
        return candidates

    async def _enrich(self, run: PipelineRun, *, analyze_audio: bool, download_quality: str) -> None:
        started = time.monotonic()
        failed = 0
        for candidate in run.candidates:
            try:
                await self._enrich_candidate(candidate, analyze_audio, download_quality)
            except Exception:
                logger.exception("track_processing_failed youtube_id=%s", candidate.youtube_id)
                candidate.mark_analysis_failed()
            if candidate.analysis_status == ANALYSIS_FAILED:
                failed += 1
            await self._persist(candidate)

        analyzed = sum(1 for c in run.candidates if c.is_analyzed)
        status = STEP_FAILED if run.candidates and failed == len(run.candidates) else STEP_COMPLETED
        run.steps.append(
            ProcessingStep(
                STEP_ENRICH,
                status,
                _elapsed_ms(started),
                {
                    "tracksProcessed": len(run.candidates),
                    "analyzed": analyzed,
                    "failed": failed,
                    "analysisRequested": analyze_audio,
                },
            )
        )

    async def _enrich_candidate(
        self,
        candidate: TrackCandidate,
        analyze_audio: bool,
        download_quality: str,
    ) -> None:
        try:
            metadata = await self.call("search", self.search.get_video_metadata, candidate.youtube_id)
            candidate.apply_metadata(metadata)
        except CollaboratorDegraded as exc:
            logger.info("metadata_unavailable youtube_id=%s error=%s", candidate.youtube_id, exc)

        if getattr(self.understanding, "configured", True):
            try:
                guesses = await self.call(
                    "understanding",
                    self.understanding.extract_metadata,
                    candidate.title,
                    candidate.description,
                )
                candidate.apply_guesses(guesses)
            except CollaboratorDegraded as exc:
                logger.info("metadata_guess_unavailable youtube_id=%s error=%s", candidate.youtube_id, exc)

        if not analyze_audio:
            return
        try:
            download = await self.call(
                "search",
                self.search.get_download_url,
                candidate.youtube_id,
                download_quality,
            )
            candidate.audio_url = download["url"]
            analysis = await self.call(
                "analysis",
                self.analysis.analyze_from_url,
                candidate.audio_url,
                timeout=self.analysis_timeout,
            )
        except CollaboratorDegraded as exc:
            logger.warning("analysis_failed youtube_id=%s error=%s", candidate.youtube_id, exc)
            candidate.mark_analysis_failed()
            return
        candidate.apply_analysis(analysis)

    async def _persist(self, candidate: TrackCandidate) -> None:
        if self.track_store is None:
            return
        try:
            await anyio.to_thread.run_sync(self.track_store.upsert, candidate)
        except StorageTransient:
            logger.exception("track_persist_failed youtube_id=%s", candidate.youtube_id)

    def _score(self, run: PipelineRun) -> None:
        started = time.monotonic()
        run.confidence = score_confidence(run.processed_query, run.candidates)
        run.steps.append(
            ProcessingStep(
                STEP_SCORE,
                STEP_COMPLETED,
                _elapsed_ms(started),
                {"confidence": run.confidence},
            )
        )
