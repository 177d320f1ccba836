"""
Typed result records reported by transcode workers.

Every outcome carries the job id and the source id the job was issued for.
The orchestrator applies an outcome only while that source is still the
item's current source; anything else is a stale callback and is dropped.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from api.enums import JobOutcomeType, StreamType


@dataclass
class JobRef:
    job_id: int
    media_id: int
    episode_id: Optional[int]
    source_id: int


@dataclass
class SourceInfoUpdated(JobRef):
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class RenditionReady(JobRef):
    stream_type: StreamType = StreamType.VIDEO
    name: str = ""
    path: str = ""
    size: int = 0
    remote_id: Optional[str] = None
    mime_type: Optional[str] = None
    quality: Optional[int] = None
    codec: Optional[int] = None
    language: Optional[str] = None
    channels: Optional[int] = None


@dataclass
class JobFinished(JobRef):
    pass


@dataclass
class JobCancelled(JobRef):
    pass


@dataclass
class JobRetrying(JobRef):
    attempt: int = 0


@dataclass
class JobErrored(JobRef):
    error: Optional[str] = None
    error_code: Optional[str] = None
    # Set by a worker that already reported and cleaned up the failure itself
    handled: bool = False
    details: Dict[str, Any] = field(default_factory=dict)


JobOutcome = Union[SourceInfoUpdated, RenditionReady, JobFinished, JobCancelled, JobRetrying, JobErrored]

_STREAM_TYPES = {
    JobOutcomeType.ADD_STREAM_VIDEO: StreamType.VIDEO,
    JobOutcomeType.ADD_STREAM_AUDIO: StreamType.AUDIO,
    JobOutcomeType.ADD_STREAM_MANIFEST: StreamType.MANIFEST,
}


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def parse_outcome(data: Dict[str, Any]) -> JobOutcome:
    """
    Build a typed outcome from a result stream record.

    Stream values are strings; the record's ``payload`` field holds a JSON
    object with the type-specific fields.

    Args:
        data: Raw stream record with ``type``, ``job_id``, ``media_id``,
            ``episode_id``, ``source_id`` and optional ``payload``

    Returns:
        One of the outcome dataclasses

    Raises:
        ValueError: If the record type is unknown or a required field is missing
    """
    try:
        outcome_type = JobOutcomeType(data.get("type"))
    except ValueError:
        raise ValueError(f"Unknown job outcome type: {data.get('type')!r}")

    try:
        ref = {
            "job_id": int(data["job_id"]),
            "media_id": int(data["media_id"]),
            "episode_id": _opt_int(data.get("episode_id")),
            "source_id": int(data["source_id"]),
        }
    except KeyError as e:
        raise ValueError(f"Job outcome record is missing field {e}")
    except (TypeError, ValueError) as e:
        raise ValueError(f"Job outcome record has a bad id: {e}") from e

    raw_payload = data.get("payload") or "{}"
    payload = json.loads(raw_payload) if isinstance(raw_payload, str) else raw_payload
    if not isinstance(payload, dict):
        raise ValueError(f"Payload of job {ref['job_id']} is not an object")

    try:
        return _build_outcome(outcome_type, ref, payload)
    except (TypeError, ValueError, AttributeError) as e:
        raise ValueError(f"Malformed payload for job {ref['job_id']}: {e}") from e


def _build_outcome(outcome_type: JobOutcomeType, ref: Dict[str, Any], payload: Dict[str, Any]) -> JobOutcome:
    if outcome_type == JobOutcomeType.UPDATE_SOURCE:
        return SourceInfoUpdated(
            **ref,
            duration=_opt_float(payload.get("duration")),
            width=_opt_int(payload.get("width")),
            height=_opt_int(payload.get("height")),
        )

    if outcome_type in _STREAM_TYPES:
        if not payload.get("name"):
            raise ValueError(f"Rendition record for job {ref['job_id']} has no name")
        return RenditionReady(
            **ref,
            stream_type=_STREAM_TYPES[outcome_type],
            name=payload["name"],
            path=payload.get("path", ""),
            size=int(payload.get("size", 0)),
            remote_id=payload.get("remote_id"),
            mime_type=payload.get("mime_type"),
            quality=_opt_int(payload.get("quality")),
            codec=_opt_int(payload.get("codec")),
            language=payload.get("language"),
            channels=_opt_int(payload.get("channels")),
        )

    if outcome_type == JobOutcomeType.FINISHED:
        return JobFinished(**ref)
    if outcome_type == JobOutcomeType.CANCELLED:
        return JobCancelled(**ref)
    if outcome_type == JobOutcomeType.RETRY:
        return JobRetrying(**ref, attempt=int(payload.get("attempt", 0)))

    return JobErrored(
        **ref,
        error=payload.get("error"),
        error_code=payload.get("error_code"),
        handled=bool(payload.get("handled", False)),
        details=payload.get("details") or {},
    )
