"""
Generation orchestrator: turns a video key into a persisted thumbnail set.

Each seek time becomes one candidate that moves through

    pending -> frame_extracted -> pixel_scored -> ai_score_pending
            -> {ai_scored | ai_absent} -> combined -> uploaded -> persisted

with skipped (offset beyond duration, or deadline hit before a pixel score)
and failed (extraction or pixel scoring error) as alternate terminals.

Candidates run concurrently under a per-run semaphore. Semaphores owned by the
generator bound the number of videos generating at once and the in-flight AI
calls and storage puts; the app keeps a single generator per process. When the run deadline elapses, unfinished candidates are
cancelled: those with a pixel score are kept with whatever scores they have
(upload pending, frame staged), the rest are skipped.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from api.candidate_store import CandidateStore, NewCandidate, ThumbnailSet, new_candidate_id
from api.common import validate_video_key
from api.enums import TERMINAL_CANDIDATE_STATES, CandidateState, UploadStatus
from api.metrics import (
    AI_SCORING_TOTAL,
    CANDIDATES_TOTAL,
    GENERATION_DEADLINE_EXCEEDED_TOTAL,
    GENERATION_RUN_DURATION_SECONDS,
    GENERATION_RUNS_ACTIVE,
    GENERATION_RUNS_TOTAL,
    UPLOADS_TOTAL,
)
from config import (
    AI_CONCURRENCY,
    CANDIDATE_CONCURRENCY,
    DEFAULT_SEEK_TIMES,
    MAX_CONCURRENT_VIDEOS,
    RUN_DEADLINE_SECONDS,
    STORAGE_CONCURRENCY,
)
from worker.ai_scorer import AIScore, VisionScorer
from worker.exceptions import (
    AIScoreUnavailable,
    FrameExtractionFailed,
    PixelScoringFailed,
    SourceUnavailable,
    UploadFailed,
    VideoNotFound,
)
from worker.frame_extractor import FrameExtractor, plan_offsets
from worker.pixel_scorer import PixelScore, score_frame_async
from worker.score_combiner import CombinedScore, combine_scores
from worker.uploader import ArtifactUploader, FrameStaging

logger = logging.getLogger(__name__)

DEADLINE_EXCEEDED = "deadline exceeded"
PINNED_BY_MANUAL_SELECTION = "Seek time is pinned by a manual selection; candidate stored as superseded"

@dataclass
class CandidateWork:
    """Mutable per-candidate state during a run."""

    seek_time: int
    candidate_id: str = field(default_factory=new_candidate_id)
    state: CandidateState = CandidateState.PENDING
    frame: Optional[bytes] = None
    pixel: Optional[PixelScore] = None
    ai: Optional[AIScore] = None
    ai_error: Optional[str] = None
    combined: Optional[CombinedScore] = None
    storage_key: Optional[str] = None
    storage_url: Optional[str] = None
    upload_status: UploadStatus = UploadStatus.PENDING
    upload_error: Optional[str] = None
    error: Optional[str] = None

    def fail(self, error: str) -> None:
        self.state = CandidateState.FAILED
        self.error = error

    def skip(self, reason: str) -> None:
        self.state = CandidateState.SKIPPED
        self.error = reason

    @property
    def ready_to_persist(self) -> bool:
        return self.state in (CandidateState.COMBINED, CandidateState.UPLOADED)

    def to_new_candidate(self) -> NewCandidate:
        return NewCandidate(
            id=self.candidate_id,
            seek_time=self.seek_time,
            pixel_score=self.pixel.score,
            pixel_metrics=dict(self.pixel.metrics),
            ai_score=self.ai.score if self.ai else None,
            ai_rationale=self.ai.rationale if self.ai else None,
            ai_improvements=self.ai.improvements if self.ai else None,
            storage_key=self.storage_key,
            storage_url=self.storage_url,
            file_size_bytes=len(self.frame) if self.frame else 0,
            upload_status=self.upload_status,
            upload_error=self.upload_error,
        )


@dataclass(frozen=True)
class CandidateOutcome:
    seek_time: int
    state: CandidateState
    candidate_id: Optional[str] = None
    error: Optional[str] = None
    ai_error: Optional[str] = None
    upload_status: Optional[UploadStatus] = None


@dataclass(frozen=True)
class GenerationResult:
    thumbnail_set: ThumbnailSet
    outcomes: List[CandidateOutcome]
    deadline_exceeded: bool = False


def _outcome(work: CandidateWork) -> CandidateOutcome:
    persisted = work.state == CandidateState.PERSISTED
    return CandidateOutcome(
        seek_time=work.seek_time,
        state=work.state,
        candidate_id=work.candidate_id if persisted else None,
        error=work.error,
        ai_error=work.ai_error if persisted else None,
        upload_status=work.upload_status if persisted else None,
    )


def normalize_seek_times(seek_times: Optional[Sequence[int]]) -> List[int]:
    """Deduplicate and sort requested seek times, falling back to the configured defaults."""
    if not seek_times:
        return sorted(set(DEFAULT_SEEK_TIMES))
    if any(t < 0 for t in seek_times):
        raise ValueError("Seek times must be non-negative")
    return sorted(set(int(t) for t in seek_times))


class ThumbnailGenerator:
    """Runs generation for a video key and the upload retry path."""

    def __init__(
        self,
        resolver,
        store: CandidateStore,
        uploader: ArtifactUploader,
        extractor: Optional[FrameExtractor] = None,
        ai_scorer: Optional[VisionScorer] = None,
        staging: Optional[FrameStaging] = None,
        pixel_scorer: Callable[[bytes], Awaitable[PixelScore]] = score_frame_async,
        candidate_concurrency: int = CANDIDATE_CONCURRENCY,
        run_deadline: float = RUN_DEADLINE_SECONDS,
        max_concurrent_videos: int = MAX_CONCURRENT_VIDEOS,
        ai_concurrency: int = AI_CONCURRENCY,
        storage_concurrency: int = STORAGE_CONCURRENCY,
    ):
        self.resolver = resolver
        self.store = store
        self.uploader = uploader
        self.extractor = extractor or FrameExtractor()
        self.ai_scorer = ai_scorer  # None disables AI scoring
        self.staging = staging or FrameStaging()
        self.pixel_scorer = pixel_scorer
        self.candidate_concurrency = candidate_concurrency
        self.run_deadline = run_deadline
        self.video_semaphore = asyncio.Semaphore(max_concurrent_videos)
        self.ai_semaphore = asyncio.Semaphore(ai_concurrency)
        self.storage_semaphore = asyncio.Semaphore(storage_concurrency)

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def generate(
        self,
        video_key: str,
        seek_times: Optional[Sequence[int]] = None,
        replace: bool = False,
        force: bool = False,
    ) -> GenerationResult:
        """Generate, score and persist candidates for a video.

        Per-candidate failures are recorded on the outcomes; the set is always
        persisted with whatever candidates succeeded.

        Raises:
            VideoNotFound: If the resolver does not know the key
            SourceUnavailable: If the source cannot be resolved or probed
        """
        validate_video_key(video_key)
        offsets = normalize_seek_times(seek_times)

        async with self.video_semaphore:
            started = time.monotonic()
            GENERATION_RUNS_ACTIVE.inc()
            try:
                result = await self._run(video_key, offsets, replace, force, started)
            except VideoNotFound:
                GENERATION_RUNS_TOTAL.labels(result="video_not_found").inc()
                raise
            except SourceUnavailable:
                GENERATION_RUNS_TOTAL.labels(result="source_unavailable").inc()
                raise
            except Exception:
                GENERATION_RUNS_TOTAL.labels(result="error").inc()
                raise
            finally:
                GENERATION_RUNS_ACTIVE.dec()
                GENERATION_RUN_DURATION_SECONDS.observe(time.monotonic() - started)

        GENERATION_RUNS_TOTAL.labels(result="completed").inc()
        return result

    async def _run(
        self,
        video_key: str,
        offsets: List[int],
        replace: bool,
        force: bool,
        started: float,
    ) -> GenerationResult:
        source = await self.resolver.resolve(video_key)
        if not source.probed:
            # A resolver-supplied duration is kept; the probe only proves the URL is readable
            await self.extractor.probe_source(source.url)
        logger.info(f"Generating {len(offsets)} candidate(s) for {video_key} (duration {source.duration:.1f}s)")

        works = {offset: CandidateWork(seek_time=offset) for offset in offsets}
        valid, beyond = plan_offsets(offsets, source.duration)
        for offset in beyond:
            works[offset].skip(f"seek time beyond video duration ({source.duration:.1f}s)")

        run_semaphore = asyncio.Semaphore(self.candidate_concurrency)
        tasks = {
            asyncio.create_task(self._process(video_key, source.url, works[offset], run_semaphore)): works[offset]
            for offset in valid
        }

        deadline_exceeded = False
        if tasks:
            remaining = max(0.0, self.run_deadline - (time.monotonic() - started))
            _, pending = await asyncio.wait(tasks.keys(), timeout=remaining)
            if pending:
                deadline_exceeded = True
                GENERATION_DEADLINE_EXCEEDED_TOTAL.inc()
                logger.warning(f"Run deadline hit for {video_key} with {len(pending)} candidate(s) in flight")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                for task in pending:
                    await self._finalize_after_deadline(video_key, tasks[task])

        ready = [work for work in works.values() if work.ready_to_persist]
        thumbnail_set = await self.store.upsert_candidates(
            video_key,
            [work.to_new_candidate() for work in ready],
            replace=replace,
            force=force,
        )
        active_ids = {c.id for c in thumbnail_set.candidates}
        for work in ready:
            work.state = CandidateState.PERSISTED
            if work.candidate_id not in active_ids:
                work.error = PINNED_BY_MANUAL_SELECTION

        for work in works.values():
            if work.state in TERMINAL_CANDIDATE_STATES:
                CANDIDATES_TOTAL.labels(state=work.state.value).inc()

        logger.info(
            f"Generation for {video_key} finished: {len(ready)} persisted, "
            f"selected {thumbnail_set.selected_candidate_id} ({thumbnail_set.selection_mode.value})"
        )
        return GenerationResult(
            thumbnail_set=thumbnail_set,
            outcomes=[_outcome(works[offset]) for offset in offsets],
            deadline_exceeded=deadline_exceeded,
        )

    async def _process(
        self,
        video_key: str,
        source_url: str,
        work: CandidateWork,
        run_semaphore: asyncio.Semaphore,
    ) -> None:
        async with run_semaphore:
            try:
                work.frame = await self.extractor.extract_frame(source_url, work.seek_time)
                work.state = CandidateState.FRAME_EXTRACTED

                work.pixel = await self.pixel_scorer(work.frame)
                work.state = CandidateState.PIXEL_SCORED

                await self._score_ai(work)

                work.combined = combine_scores(work.pixel.score, work.ai.score if work.ai else None)
                work.state = CandidateState.COMBINED

                await self._upload(video_key, work)
            except (FrameExtractionFailed, PixelScoringFailed) as e:
                logger.warning(f"Candidate {video_key}@{work.seek_time}s failed: {e}")
                work.fail(str(e))
            except Exception as e:
                logger.exception(f"Unexpected error processing candidate {video_key}@{work.seek_time}s")
                work.fail(f"Unexpected error: {type(e).__name__}: {e}")

    async def _score_ai(self, work: CandidateWork) -> None:
        if self.ai_scorer is None:
            work.ai_error = "AI scoring disabled"
            work.state = CandidateState.AI_ABSENT
            return

        work.state = CandidateState.AI_SCORE_PENDING
        try:
            async with self.ai_semaphore:
                work.ai = await self.ai_scorer.score(work.frame)
        except AIScoreUnavailable as e:
            # Pixel-only fallback; the candidate is not failed
            logger.warning(f"AI score unavailable at {work.seek_time}s: {e}")
            AI_SCORING_TOTAL.labels(result="unavailable").inc()
            work.ai_error = str(e)
            work.state = CandidateState.AI_ABSENT
            return

        AI_SCORING_TOTAL.labels(result="scored").inc()
        work.state = CandidateState.AI_SCORED

    async def _upload(self, video_key: str, work: CandidateWork) -> None:
        try:
            async with self.storage_semaphore:
                work.storage_url = await self.uploader.upload(video_key, work.candidate_id, work.frame)
        except UploadFailed as e:
            logger.warning(f"Upload failed for {video_key}@{work.seek_time}s, staging frame for retry: {e}")
            UPLOADS_TOTAL.labels(result="failed").inc()
            work.storage_key = e.key
            work.upload_status = UploadStatus.FAILED
            work.upload_error = str(e)
            await self._stage(video_key, work)
            return

        UPLOADS_TOTAL.labels(result="uploaded").inc()
        work.storage_key = self.uploader.key_for(video_key, work.candidate_id)
        work.upload_status = UploadStatus.UPLOADED
        work.state = CandidateState.UPLOADED

    async def _stage(self, video_key: str, work: CandidateWork) -> None:
        try:
            await self.staging.stage(video_key, work.candidate_id, work.frame)
        except OSError as e:
            # The candidate is still persisted; only the upload retry is lost
            logger.error(f"Could not stage frame for {video_key}/{work.candidate_id}: {e}")
            work.upload_error = f"{work.upload_error or 'upload not attempted'}; staging failed: {e}"

    async def _finalize_after_deadline(self, video_key: str, work: CandidateWork) -> None:
        """Keep a cancelled candidate with its partial score, or skip it."""
        if work.state in TERMINAL_CANDIDATE_STATES:
            return
        if work.pixel is None:
            work.skip(f"{DEADLINE_EXCEEDED} before pixel score")
            return
        if work.upload_status == UploadStatus.UPLOADED:
            work.state = CandidateState.UPLOADED
            return

        if work.ai is None and work.ai_error is None:
            work.ai_error = DEADLINE_EXCEEDED
        work.combined = combine_scores(work.pixel.score, work.ai.score if work.ai else None)
        work.upload_status = UploadStatus.PENDING
        work.upload_error = f"{DEADLINE_EXCEEDED} before upload"
        work.storage_key = self.uploader.key_for(video_key, work.candidate_id)
        UPLOADS_TOTAL.labels(result="deferred").inc()
        await self._stage(video_key, work)
        work.state = CandidateState.COMBINED

    # -------------------------------------------------------------------------
    # Upload retry
    # -------------------------------------------------------------------------

    async def retry_uploads(self, video_key: str) -> Optional[ThumbnailSet]:
        """Re-upload staged frames of candidates whose upload failed or never ran.

        Returns the updated set, or None if the key has no set.
        """
        validate_video_key(video_key)
        if await self.store.get_set(video_key) is None:
            return None

        pending = await self.store.pending_uploads(video_key)
        if pending:
            logger.info(f"Retrying {len(pending)} upload(s) for {video_key}")
            await asyncio.gather(*(self._retry_one(video_key, candidate.id) for candidate in pending))

        return await self.store.get_set(video_key)

    async def _retry_one(self, video_key: str, candidate_id: str) -> None:
        key = self.uploader.key_for(video_key, candidate_id)
        frame = await self.staging.load(video_key, candidate_id)
        if frame is None:
            await self.store.record_upload(
                video_key,
                candidate_id,
                UploadStatus.FAILED,
                storage_key=key,
                upload_error="staged frame missing; regenerate this seek time",
            )
            return

        try:
            async with self.storage_semaphore:
                url = await self.uploader.upload(video_key, candidate_id, frame)
        except UploadFailed as e:
            UPLOADS_TOTAL.labels(result="failed").inc()
            await self.store.record_upload(video_key, candidate_id, UploadStatus.FAILED, storage_key=key, upload_error=str(e))
            return

        UPLOADS_TOTAL.labels(result="uploaded").inc()
        await self.store.record_upload(video_key, candidate_id, UploadStatus.UPLOADED, storage_key=key, storage_url=url)
        await self.staging.discard(video_key, candidate_id)
