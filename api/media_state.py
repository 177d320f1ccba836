"""
Media / episode processing state machine.

Two statuses are tracked per movie or episode. ``source_status`` follows the
uploaded source through transcoding; ``public_status`` says whether the item
can be played.

Source Status Diagram:
    PENDING ──commit──> PROCESSING ──rendition──> READY ──job done──> DONE
       ^                    │                       │                  │
       └────────────── job failed / source deleted ─┴──────────────────┘

Public Status Diagram:
    PENDING ──commit──> PROCESSING ──first rendition──> DONE
       ^                                                 │
       └──────── job failed / source deleted ────────────┘
                 (stays DONE while an external stream is configured)

Invariants:
    - source_status is PENDING iff the item has no source file
    - public_status is DONE only if a stream exists or an external stream is set

Usage:
    from api.media_state import MediaStateMachine

    transition = MediaStateMachine.on_rendition_added(item)
    if transition.became_public:
        ...

The machine is stateless; callers hold the row lock (SELECT ... FOR UPDATE)
while they read the item and write the returned statuses.
"""

import logging
from dataclasses import dataclass
from typing import List

from api.enums import PublicStatus, SourceStatus
from api.models import MediaItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    source_status: SourceStatus
    public_status: PublicStatus
    # public_status flipped to DONE with this transition
    became_public: bool = False
    # public_status flipped away from DONE with this transition
    left_public: bool = False

    def changes(self, item: MediaItem) -> bool:
        return self.source_status != item.source_status or self.public_status != item.public_status


class MediaStateMachine:
    """Pure transition functions over MediaItem statuses."""

    @staticmethod
    def can_commit_source(item: MediaItem) -> bool:
        """A new source may only be committed while the item has none."""
        return item.source_file_id is None

    @staticmethod
    def on_source_committed(item: MediaItem) -> Transition:
        if item.public_status == PublicStatus.DONE and item.has_external_stream:
            public = PublicStatus.DONE
        else:
            public = PublicStatus.PROCESSING
        return Transition(
            source_status=SourceStatus.PROCESSING,
            public_status=public,
            left_public=item.public_status == PublicStatus.DONE and public != PublicStatus.DONE,
        )

    @staticmethod
    def on_rendition_added(item: MediaItem) -> Transition:
        source = item.source_status if item.source_status == SourceStatus.DONE else SourceStatus.READY
        became_public = item.public_status != PublicStatus.DONE
        return Transition(source_status=source, public_status=PublicStatus.DONE, became_public=became_public)

    @staticmethod
    def on_job_done(item: MediaItem, cancelled: bool = False) -> Transition:
        if cancelled:
            return Transition(source_status=item.source_status, public_status=item.public_status)
        return Transition(source_status=SourceStatus.DONE, public_status=item.public_status)

    @staticmethod
    def on_reencode(item: MediaItem, has_streams: bool) -> Transition:
        """Existing streams stay playable until the new jobs replace them."""
        if has_streams:
            return Transition(source_status=SourceStatus.READY, public_status=item.public_status)
        return MediaStateMachine.on_source_committed(item)

    @staticmethod
    def on_streams_dropped(item: MediaItem, remaining_streams: int) -> Transition:
        """A retrying job discarded its renditions."""
        if remaining_streams:
            return Transition(source_status=item.source_status, public_status=item.public_status)
        public = PublicStatus.DONE if item.has_external_stream else PublicStatus.PROCESSING
        return Transition(
            source_status=SourceStatus.PROCESSING,
            public_status=public,
            left_public=item.public_status == PublicStatus.DONE and public != PublicStatus.DONE,
        )

    @staticmethod
    def on_source_removed(item: MediaItem) -> Transition:
        """Job failure or source deletion: the item goes back to waiting for an upload."""
        public = PublicStatus.DONE if item.has_external_stream else PublicStatus.PENDING
        return Transition(
            source_status=SourceStatus.PENDING,
            public_status=public,
            left_public=item.public_status == PublicStatus.DONE and public != PublicStatus.DONE,
        )

    @staticmethod
    def violations(item: MediaItem, stream_count: int) -> List[str]:
        """
        Check the item against the status invariants.

        Args:
            item: The media item or episode
            stream_count: Number of stream files the item currently owns

        Returns:
            Human-readable descriptions of every violated invariant (empty if consistent)
        """
        problems = []
        if (item.source_status == SourceStatus.PENDING) != (item.source_file_id is None):
            problems.append(
                f"{item.label}: source_status={item.source_status.value} with source_file_id={item.source_file_id}"
            )
        if item.public_status == PublicStatus.DONE and stream_count == 0 and not item.has_external_stream:
            problems.append(f"{item.label}: public_status=done without streams or external stream")
        for problem in problems:
            logger.warning(f"State invariant violated: {problem}")
        return problems
