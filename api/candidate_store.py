"""
Persistence of thumbnail sets and their candidates.

A thumbnail set is one row per video key holding the current selection.
Candidates are immutable: a new candidate at an occupied seek time supersedes
the old row (superseded_at is set) instead of updating it, so every score ever
produced stays in the table. Only storage bookkeeping columns are written after
insert, by the upload retry path.

Selection rules:
- auto mode selects the highest combined score, ties broken by earliest seek time
- manual mode keeps the overridden candidate until a generation passes force=True,
  which resets the set to auto
- a manual selection stays active when its seek time is regenerated without
  force: the new candidate at that seek time is stored already superseded, so
  its scores are on record but the pinned frame keeps its place. A manual
  selection is never pruned by replace=True

Writes for one video key are serialized by a per-key asyncio.Lock inside the
process and a transaction (with SELECT ... FOR UPDATE on PostgreSQL) across
processes.
"""

import asyncio
import json
import logging
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from databases import Database
from sqlalchemy.dialects.postgresql import insert as pg_insert

from api.common import ensure_utc, validate_video_key
from api.database import is_postgresql, thumbnail_candidates, thumbnail_sets
from api.db_retry import execute_with_retry, fetch_all_with_retry, fetch_one_with_retry
from api.enums import ScoringMethod, SelectionMode, UploadStatus
from worker.exceptions import SelectionNotFound
from worker.score_combiner import CombinedScore, combine_scores

logger = logging.getLogger(__name__)


def new_candidate_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class NewCandidate:
    """A scored candidate ready to be persisted."""

    seek_time: int
    pixel_score: float
    pixel_metrics: Optional[Dict[str, float]] = None
    ai_score: Optional[float] = None
    ai_rationale: Optional[str] = None
    ai_improvements: Optional[str] = None
    storage_key: Optional[str] = None
    storage_url: Optional[str] = None
    file_size_bytes: int = 0
    upload_status: UploadStatus = UploadStatus.PENDING
    upload_error: Optional[str] = None
    id: str = field(default_factory=new_candidate_id)


@dataclass(frozen=True)
class ThumbnailCandidate:
    id: str
    video_key: str
    seek_time: int
    pixel_score: float
    pixel_metrics: Optional[Dict[str, float]]
    ai_score: Optional[float]
    ai_rationale: Optional[str]
    ai_improvements: Optional[str]
    storage_key: Optional[str]
    storage_url: Optional[str]
    file_size_bytes: int
    upload_status: UploadStatus
    upload_error: Optional[str]
    created_at: Optional[datetime]
    superseded_at: Optional[datetime] = None

    @property
    def combined(self) -> CombinedScore:
        # Derived on read so the weighting lives in one place
        return combine_scores(self.pixel_score, self.ai_score)

    @property
    def combined_score(self) -> float:
        return self.combined.score

    @property
    def confidence(self) -> float:
        return self.combined.confidence

    @property
    def scoring_method(self) -> ScoringMethod:
        return self.combined.method

    @classmethod
    def from_row(cls, row) -> "ThumbnailCandidate":
        raw_metrics = row["pixel_metrics"]
        return cls(
            id=row["id"],
            video_key=row["video_key"],
            seek_time=row["seek_time_seconds"],
            pixel_score=row["pixel_score"],
            pixel_metrics=json.loads(raw_metrics) if raw_metrics else None,
            ai_score=row["ai_score"],
            ai_rationale=row["ai_rationale"],
            ai_improvements=row["ai_improvements"],
            storage_key=row["storage_key"],
            storage_url=row["storage_url"],
            file_size_bytes=row["file_size_bytes"] or 0,
            upload_status=UploadStatus(row["upload_status"]),
            upload_error=row["upload_error"],
            created_at=ensure_utc(row["created_at"]),
            superseded_at=ensure_utc(row["superseded_at"]),
        )


@dataclass(frozen=True)
class ThumbnailSet:
    video_key: str
    candidates: List[ThumbnailCandidate]  # Active only, ordered by seek time
    selected_candidate_id: Optional[str]
    selection_mode: SelectionMode
    last_generated_at: Optional[datetime]
    last_updated_at: Optional[datetime]

    @property
    def selected(self) -> Optional[ThumbnailCandidate]:
        for candidate in self.candidates:
            if candidate.id == self.selected_candidate_id:
                return candidate
        return None

    def candidate_at(self, seek_time: int) -> Optional[ThumbnailCandidate]:
        for candidate in self.candidates:
            if candidate.seek_time == seek_time:
                return candidate
        return None


def rank_candidates(candidates: Iterable[ThumbnailCandidate]) -> List[ThumbnailCandidate]:
    """Order by combined score descending, then seek time ascending."""
    return sorted(candidates, key=lambda c: (-c.combined_score, c.seek_time))


def resolve_selection(
    candidates: Sequence[ThumbnailCandidate],
    mode: SelectionMode,
    selected_id: Optional[str],
) -> Tuple[SelectionMode, Optional[str]]:
    """Work out the (mode, selected id) a set should have over its active candidates."""
    if not candidates:
        return mode, None

    if mode == SelectionMode.MANUAL:
        if any(c.id == selected_id for c in candidates):
            return mode, selected_id
        # Every write path keeps the pinned candidate active; reaching here means
        # the row was changed outside the store
        logger.warning(f"Manual selection {selected_id} is no longer active, reverting to auto selection")
        mode = SelectionMode.AUTO

    return mode, rank_candidates(candidates)[0].id


class CandidateStore:
    """Reads and writes thumbnail sets."""

    def __init__(self, db: Database):
        self.db = db
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, video_key: str) -> asyncio.Lock:
        # Locks disappear once no writer holds a reference
        lock = self._locks.get(video_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[video_key] = lock
        return lock

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _active_query(self, video_key: str):
        return (
            thumbnail_candidates.select()
            .where(thumbnail_candidates.c.video_key == video_key)
            .where(thumbnail_candidates.c.superseded_at.is_(None))
            .order_by(thumbnail_candidates.c.seek_time_seconds)
        )

    async def _fetch_active(self, video_key: str) -> List[ThumbnailCandidate]:
        rows = await self.db.fetch_all(self._active_query(video_key))
        return [ThumbnailCandidate.from_row(row) for row in rows]

    async def get_set(self, video_key: str) -> Optional[ThumbnailSet]:
        """Return the set with its active candidates, or None if the key was never generated."""
        validate_video_key(video_key)
        set_row = await fetch_one_with_retry(
            self.db, thumbnail_sets.select().where(thumbnail_sets.c.video_key == video_key)
        )
        if set_row is None:
            return None
        rows = await fetch_all_with_retry(self.db, self._active_query(video_key))
        return self._build_set(set_row, [ThumbnailCandidate.from_row(row) for row in rows])

    async def pending_uploads(self, video_key: str) -> List[ThumbnailCandidate]:
        """Active candidates whose frame is not in object storage."""
        thumbnail_set = await self.get_set(video_key)
        if thumbnail_set is None:
            return []
        return [c for c in thumbnail_set.candidates if c.upload_status != UploadStatus.UPLOADED]

    def _build_set(self, set_row, candidates: List[ThumbnailCandidate]) -> ThumbnailSet:
        return ThumbnailSet(
            video_key=set_row["video_key"],
            candidates=candidates,
            selected_candidate_id=set_row["selected_candidate_id"],
            selection_mode=SelectionMode(set_row["selection_mode"]),
            last_generated_at=ensure_utc(set_row["last_generated_at"]),
            last_updated_at=ensure_utc(set_row["last_updated_at"]),
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def _lock_set_row(self, video_key: str):
        query = thumbnail_sets.select().where(thumbnail_sets.c.video_key == video_key)
        if is_postgresql(self.db):
            query = query.with_for_update()
        return await self.db.fetch_one(query)

    async def _ensure_set_row(self, video_key: str, now: datetime):
        set_row = await self._lock_set_row(video_key)
        if set_row is not None:
            return set_row

        values = {
            "video_key": video_key,
            "selection_mode": SelectionMode.AUTO.value,
            "created_at": now,
            "last_updated_at": now,
        }
        if is_postgresql(self.db):
            # Another process may create the row between our SELECT and INSERT
            await self.db.execute(
                pg_insert(thumbnail_sets).values(**values).on_conflict_do_nothing(index_elements=["video_key"])
            )
        else:
            await self.db.execute(thumbnail_sets.insert().values(**values))
        return await self._lock_set_row(video_key)

    async def upsert_candidates(
        self,
        video_key: str,
        candidates: Sequence[NewCandidate],
        replace: bool = False,
        force: bool = False,
    ) -> ThumbnailSet:
        """Persist a batch of candidates and recompute the selection.

        Args:
            video_key: Video the candidates belong to
            candidates: New candidates, at most one per seek time
            replace: Supersede active candidates whose seek time is not in the batch
                (ignored for an empty batch)
            force: Reset a manual selection to auto before recomputing

        Returns:
            The set as persisted after this write
        """
        validate_video_key(video_key)
        candidates = list(candidates)
        seek_times = [c.seek_time for c in candidates]
        if len(seek_times) != len(set(seek_times)):
            raise ValueError("Candidate batch contains duplicate seek times")

        async with self._lock_for(video_key):
            return await execute_with_retry(self._upsert, video_key, candidates, replace, force)

    async def _upsert(
        self,
        video_key: str,
        candidates: List[NewCandidate],
        replace: bool,
        force: bool,
    ) -> ThumbnailSet:
        now = datetime.now(timezone.utc)
        async with self.db.transaction():
            set_row = await self._ensure_set_row(video_key, now)
            active = await self._fetch_active(video_key)

            mode = SelectionMode(set_row["selection_mode"])
            selected_id = set_row["selected_candidate_id"]
            pinned = mode == SelectionMode.MANUAL and not force

            new_by_seek = {c.seek_time: c for c in candidates}
            superseded = []
            pinned_seek = None
            for existing in active:
                if existing.seek_time in new_by_seek:
                    if pinned and existing.id == selected_id:
                        pinned_seek = existing.seek_time
                    else:
                        superseded.append(existing.id)
                elif replace and candidates and not (pinned and existing.id == selected_id):
                    superseded.append(existing.id)

            if superseded:
                await self.db.execute(
                    thumbnail_candidates.update()
                    .where(thumbnail_candidates.c.id.in_(superseded))
                    .values(superseded_at=now)
                )

            for candidate in candidates:
                values = self._insert_values(video_key, candidate, now)
                if candidate.seek_time == pinned_seek:
                    # Only one active row per seek time; the pinned one wins
                    values["superseded_at"] = now
                await self.db.execute(thumbnail_candidates.insert().values(**values))

            remaining = await self._fetch_active(video_key)
            if force:
                mode = SelectionMode.AUTO
            mode, selected_id = resolve_selection(remaining, mode, selected_id)

            await self.db.execute(
                thumbnail_sets.update()
                .where(thumbnail_sets.c.video_key == video_key)
                .values(
                    selected_candidate_id=selected_id,
                    selection_mode=mode.value,
                    last_generated_at=now,
                    last_updated_at=now,
                )
            )
            set_row = await self.db.fetch_one(thumbnail_sets.select().where(thumbnail_sets.c.video_key == video_key))

        if pinned_seek is not None:
            logger.info(
                f"Kept manual selection {selected_id} for {video_key} at {pinned_seek}s; "
                f"new candidate stored as superseded"
            )
        logger.info(
            f"Stored {len(candidates)} candidate(s) for {video_key} "
            f"(superseded {len(superseded)}, selection {mode.value}:{selected_id})"
        )
        return self._build_set(set_row, remaining)

    def _insert_values(self, video_key: str, candidate: NewCandidate, now: datetime) -> dict:
        return {
            "id": candidate.id,
            "video_key": video_key,
            "seek_time_seconds": candidate.seek_time,
            "pixel_score": candidate.pixel_score,
            "pixel_metrics": json.dumps(candidate.pixel_metrics) if candidate.pixel_metrics else None,
            "ai_score": candidate.ai_score,
            "ai_rationale": candidate.ai_rationale,
            "ai_improvements": candidate.ai_improvements,
            "storage_key": candidate.storage_key,
            "storage_url": candidate.storage_url,
            "file_size_bytes": candidate.file_size_bytes,
            "upload_status": candidate.upload_status.value,
            "upload_error": candidate.upload_error,
            "created_at": now,
        }

    async def override(self, video_key: str, candidate_id: str) -> ThumbnailSet:
        """Pin candidate_id as the selection and switch the set to manual mode.

        Raises:
            SelectionNotFound: If the set does not exist or candidate_id is not an active candidate
        """
        validate_video_key(video_key)
        async with self._lock_for(video_key):
            return await execute_with_retry(self._override, video_key, candidate_id)

    async def _override(self, video_key: str, candidate_id: str) -> ThumbnailSet:
        now = datetime.now(timezone.utc)
        async with self.db.transaction():
            set_row = await self._lock_set_row(video_key)
            if set_row is None:
                raise SelectionNotFound(video_key)

            candidate_row = await self.db.fetch_one(
                thumbnail_candidates.select()
                .where(thumbnail_candidates.c.id == candidate_id)
                .where(thumbnail_candidates.c.video_key == video_key)
                .where(thumbnail_candidates.c.superseded_at.is_(None))
            )
            if candidate_row is None:
                raise SelectionNotFound(video_key, candidate_id)

            await self.db.execute(
                thumbnail_sets.update()
                .where(thumbnail_sets.c.video_key == video_key)
                .values(
                    selected_candidate_id=candidate_id,
                    selection_mode=SelectionMode.MANUAL.value,
                    last_updated_at=now,
                )
            )
            set_row = await self.db.fetch_one(thumbnail_sets.select().where(thumbnail_sets.c.video_key == video_key))
            active = await self._fetch_active(video_key)

        logger.info(f"Selection for {video_key} overridden to candidate {candidate_id}")
        return self._build_set(set_row, active)

    async def record_upload(
        self,
        video_key: str,
        candidate_id: str,
        upload_status: UploadStatus,
        storage_key: Optional[str] = None,
        storage_url: Optional[str] = None,
        upload_error: Optional[str] = None,
    ) -> None:
        """Update the storage bookkeeping of a candidate after an upload retry."""
        validate_video_key(video_key)

        async def _record():
            async with self.db.transaction():
                await self.db.execute(
                    thumbnail_candidates.update()
                    .where(thumbnail_candidates.c.id == candidate_id)
                    .where(thumbnail_candidates.c.video_key == video_key)
                    .values(
                        upload_status=upload_status.value,
                        storage_key=storage_key,
                        storage_url=storage_url,
                        upload_error=upload_error,
                    )
                )
                await self.db.execute(
                    thumbnail_sets.update()
                    .where(thumbnail_sets.c.video_key == video_key)
                    .values(last_updated_at=datetime.now(timezone.utc))
                )

        async with self._lock_for(video_key):
            await execute_with_retry(_record)
