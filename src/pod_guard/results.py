"""Typed views of classifier responses.

The classifier omits categories it was not asked about and occasionally
reports a probability either as a bare number or as ``{"prob": x}``. Every
score here is therefore optional; None means "not reported" and is never
coerced to zero.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

PERSONAL_INFO_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("phone_number", "phone numbers"),
    ("email", "emails"),
    ("ip_address", "IP addresses"),
    ("ssn", "SSN"),
    ("credit_card", "credit cards"),
)


def probability(value: Any) -> Optional[float]:
    """Reads a probability given either as a number or as ``{"prob": x}``."""
    if isinstance(value, dict):
        value = value.get("prob")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _matches(value: Any, key: str = "match") -> Tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(
        str(item.get(key, "")) if isinstance(item, dict) else str(item)
        for item in value
    )


def _request_id(payload: Dict[str, Any]) -> Optional[str]:
    request = payload.get("request")
    if isinstance(request, dict) and request.get("id") is not None:
        return str(request["id"])
    return None


@dataclass(frozen=True)
class NudityScores:
    """The four explicit-content sub-scores of the nudity model."""

    sexual_activity: Optional[float] = None
    sexual_display: Optional[float] = None
    erotica: Optional[float] = None
    very_suggestive: Optional[float] = None

    @classmethod
    def from_response(cls, payload: Any) -> Optional["NudityScores"]:
        if not isinstance(payload, dict):
            return None
        return cls(
            sexual_activity=probability(payload.get("sexual_activity")),
            sexual_display=probability(payload.get("sexual_display")),
            erotica=probability(payload.get("erotica")),
            very_suggestive=probability(payload.get("very_suggestive")),
        )

    def representative(self) -> float:
        """The maximum of the reported sub-scores, 0 when none are reported."""
        present = [
            s
            for s in (
                self.sexual_activity,
                self.sexual_display,
                self.erotica,
                self.very_suggestive,
            )
            if s is not None
        ]
        return max(present) if present else 0.0


@dataclass(frozen=True)
class VisualScores:
    """Per-category scores for an image, a video summary or a single frame."""

    nudity: Optional[NudityScores] = None
    gore: Optional[float] = None
    weapon: Optional[float] = None
    alcohol: Optional[float] = None
    drugs: Optional[float] = None
    offensive: Optional[float] = None
    selfharm: Optional[float] = None
    gambling: Optional[float] = None
    tobacco: Optional[float] = None

    @classmethod
    def from_response(cls, payload: Any) -> "VisualScores":
        if not isinstance(payload, dict):
            return cls()
        return cls(
            nudity=NudityScores.from_response(payload.get("nudity")),
            gore=probability(payload.get("gore")),
            weapon=probability(payload.get("weapon")),
            alcohol=probability(payload.get("alcohol")),
            drugs=probability(payload.get("drugs")),
            offensive=probability(payload.get("offensive")),
            selfharm=probability(payload.get("self-harm")),
            gambling=probability(payload.get("gambling")),
            tobacco=probability(payload.get("tobacco")),
        )


@dataclass(frozen=True)
class ImageResult:
    """Classification of a single image.

    Attributes:
        scores: Visual category scores.
        profanity: Profane words found in text overlaid on the image.
        personal: Kinds of personal information found in overlaid text.
        request_id: The classifier's request identifier.
    """

    scores: VisualScores = field(default_factory=VisualScores)
    profanity: Tuple[str, ...] = ()
    personal: Tuple[str, ...] = ()
    request_id: Optional[str] = None

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "ImageResult":
        overlay = payload.get("text")
        overlay = overlay if isinstance(overlay, dict) else {}
        return cls(
            scores=VisualScores.from_response(payload),
            profanity=_matches(overlay.get("profanity")),
            personal=_matches(overlay.get("personal"), key="type"),
            request_id=_request_id(payload),
        )


@dataclass(frozen=True)
class TextResult:
    """Classification of free text."""

    sexual: Optional[float] = None
    discriminatory: Optional[float] = None
    insulting: Optional[float] = None
    violent: Optional[float] = None
    toxic: Optional[float] = None
    selfharm: Optional[float] = None
    personal: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    request_id: Optional[str] = None

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "TextResult":
        personal_raw = payload.get("personal")
        personal: Dict[str, Tuple[str, ...]] = {}
        if isinstance(personal_raw, dict):
            for key, _label in PERSONAL_INFO_FIELDS:
                matches = _matches(personal_raw.get(key))
                if matches:
                    personal[key] = matches
        return cls(
            sexual=probability(payload.get("sexual")),
            discriminatory=probability(payload.get("discriminatory")),
            insulting=probability(payload.get("insulting")),
            violent=probability(payload.get("violent")),
            toxic=probability(payload.get("toxic")),
            selfharm=probability(payload.get("self-harm")),
            personal=MappingProxyType(personal),
            request_id=_request_id(payload),
        )


@dataclass(frozen=True)
class VideoFrame:
    scores: VisualScores
    position: Optional[float] = None

    @classmethod
    def from_response(cls, payload: Any) -> "VideoFrame":
        info = payload.get("info") if isinstance(payload, dict) else None
        position = info.get("position") if isinstance(info, dict) else None
        if isinstance(position, bool) or not isinstance(position, (int, float)):
            position = None
        return cls(scores=VisualScores.from_response(payload), position=position)


@dataclass(frozen=True)
class VideoResult:
    """Classification of a video.

    The classifier returns either a `summary` holding the maximum of every
    category over all sampled frames, or the per-frame records, or neither.
    """

    summary: Optional[VisualScores] = None
    frames: Optional[Tuple[VideoFrame, ...]] = None
    request_id: Optional[str] = None

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "VideoResult":
        summary = payload.get("summary")
        data = payload.get("data")
        raw_frames = data.get("frames") if isinstance(data, dict) else None
        frames = None
        if isinstance(raw_frames, list):
            frames = tuple(VideoFrame.from_response(f) for f in raw_frames)
        return cls(
            summary=VisualScores.from_response(summary)
            if isinstance(summary, dict)
            else None,
            frames=frames,
            request_id=_request_id(payload),
        )
