"""
Video Status State Machine - the single decision point for lifecycle changes.

Every status change (origin webhook, owner edit, admin override) goes through
VideoTransitionGuard so the same rules apply to all of them.

State Transition Diagram:
    UPLOADING ──> PROCESSING ──> PUBLIC (is_ready=False) ──> PUBLIC (is_ready=True)
        │             │                 ^
        │             v                 │
        └────────> FAILED ──────────────┘

    Any state may be promoted to PUBLIC; the origin is authoritative about
    encoding completion. Nothing demotes a PUBLIC video: such requests are
    IGNORED, which is an outcome and not an error.

Decision table (requested target vs current record):

    PUBLIC requested:
        current PUBLIC, ready       -> UNCHANGED
        current PUBLIC, not ready   -> APPLIED  is_ready=True
        anything else               -> APPLIED  status=PUBLIC, is_ready=True
    other status requested:
        current PUBLIC              -> IGNORED
        current == requested        -> UNCHANGED
        anything else               -> APPLIED  status=requested, is_ready=False

Usage:
    from api.video_state import video_transition_guard

    result = await video_transition_guard.apply(
        external_id, VideoStatus.PUBLIC, TransitionSource.WEBHOOK
    )
    if result.outcome == TransitionOutcome.APPLIED:
        ...

Note: decide() is pure. The guard runs it inside VideoStore.conditional_update,
so the read, the decision and the write are atomic per external id.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from api.enums import TransitionOutcome, TransitionSource, VideoStatus
from api.metrics import VIDEO_TRANSITIONS_TOTAL
from api.pubsub import Publisher
from api.video_store import VideoRecord, VideoStore, video_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionDecision:
    """What the guard decided for one request, and the column changes it implies."""

    outcome: TransitionOutcome
    changes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransitionResult:
    """
    Result of VideoTransitionGuard.apply().

    outcome is None when only metadata was requested. written is True when any
    column (status, readiness or metadata) was changed.
    """

    outcome: Optional[TransitionOutcome]
    record: VideoRecord
    previous_status: VideoStatus
    previous_ready: bool
    written: bool

    @property
    def published(self) -> bool:
        """This request is the one that made the video servable."""
        return self.written and self.record.is_servable and not (
            self.previous_status == VideoStatus.PUBLIC and self.previous_ready
        )


def decide(current_status: VideoStatus, current_ready: bool, requested: VideoStatus) -> TransitionDecision:
    """
    Decide the outcome of requesting `requested` on a record currently at
    (current_status, current_ready). Pure function.
    """
    requested = VideoStatus(requested)
    current_status = VideoStatus(current_status)

    if requested == VideoStatus.PUBLIC:
        if current_status == VideoStatus.PUBLIC:
            if current_ready:
                return TransitionDecision(TransitionOutcome.UNCHANGED)
            return TransitionDecision(TransitionOutcome.APPLIED, {"is_ready": True})
        return TransitionDecision(
            TransitionOutcome.APPLIED,
            {"status": VideoStatus.PUBLIC, "is_ready": True},
        )

    if current_status == VideoStatus.PUBLIC:
        return TransitionDecision(TransitionOutcome.IGNORED)
    if current_status == requested and not current_ready:
        return TransitionDecision(TransitionOutcome.UNCHANGED)
    return TransitionDecision(
        TransitionOutcome.APPLIED,
        {"status": requested, "is_ready": False},
    )


class VideoTransitionGuard:
    """
    Applies status transition requests through the store's conditional update.

    Stateless apart from the store it writes to.
    """

    def __init__(self, store: VideoStore) -> None:
        self.store = store

    @staticmethod
    def decide(current: VideoRecord, requested: VideoStatus) -> TransitionDecision:
        return decide(current.status, current.is_ready, requested)

    async def apply(
        self,
        external_id: str,
        requested: Optional[VideoStatus],
        source: TransitionSource,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Request a status change (and optionally metadata edits) for one video.

        Metadata edits are written together with the status decision in the
        same conditional update; an IGNORED status request does not block them.

        Raises:
            VideoNotFoundError: unknown external_id
        """
        observed: Dict[str, Any] = {}

        def mutation(current: VideoRecord) -> Dict[str, Any]:
            observed["current"] = current
            changes: Dict[str, Any] = {}
            if metadata:
                changes.update(
                    {key: value for key, value in metadata.items() if getattr(current, key) != value}
                )
            if requested is not None:
                decision = self.decide(current, requested)
                observed["decision"] = decision
                changes.update(decision.changes)
            return changes

        update = await self.store.conditional_update(external_id, mutation)

        current: VideoRecord = observed["current"]
        decision: Optional[TransitionDecision] = observed.get("decision")
        outcome = decision.outcome if decision else None

        result = TransitionResult(
            outcome=outcome,
            record=update.record,
            previous_status=current.status,
            previous_ready=current.is_ready,
            written=update.written,
        )

        if outcome is not None:
            VIDEO_TRANSITIONS_TOTAL.labels(source=source.value, outcome=outcome.value).inc()
            self._log_outcome(external_id, requested, source, result)

        if result.published:
            await Publisher.publish_video_published(
                video_id=result.record.id,
                external_id=result.record.external_id,
                owner_id=result.record.owner_id,
                title=result.record.title,
                source=source.value,
            )

        return result

    @staticmethod
    def _log_outcome(
        external_id: str,
        requested: VideoStatus,
        source: TransitionSource,
        result: TransitionResult,
    ) -> None:
        if result.outcome == TransitionOutcome.IGNORED:
            logger.info(
                f"Ignored {source.value} request to move video {external_id} "
                f"from {result.previous_status.value} to {VideoStatus(requested).value}"
            )
        elif result.outcome == TransitionOutcome.APPLIED:
            logger.info(
                f"Video {external_id}: {result.previous_status.value}"
                f"{'/ready' if result.previous_ready else ''} -> {result.record.status.value}"
                f"{'/ready' if result.record.is_ready else ''} ({source.value})"
            )
        else:
            logger.debug(f"Video {external_id} already {result.record.status.value}, nothing to do ({source.value})")


# Module-level guard bound to the application store
video_transition_guard = VideoTransitionGuard(video_store)
