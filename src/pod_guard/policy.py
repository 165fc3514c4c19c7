"""Threshold policy evaluation.

Turns classifier scores into an ALLOW/REJECT `Verdict`. Thresholds are
exclusive lower bounds: a score strictly greater than the threshold is a
violation, a score equal to it is not. Violations are always reported in the
fixed category order of the tables below so that rejection messages are
reproducible for a given input.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .config import ContentKind, ThresholdPolicy
from .results import (
    PERSONAL_INFO_FIELDS,
    ImageResult,
    TextResult,
    VideoResult,
    VisualScores,
)


class Outcome(str, Enum):
    ALLOW = "ALLOW"
    REJECT = "REJECT"


@dataclass(frozen=True)
class Violation:
    """A single policy violation.

    Attributes:
        category: The violated category (e.g. "nudity", "personal").
        score: The representative score, or None for structural violations.
        reason: Human-readable description used in rejection messages.
    """

    category: str
    score: Optional[float]
    reason: str


@dataclass(frozen=True)
class Verdict:
    """The outcome of evaluating one upload.

    Attributes:
        outcome: ALLOW or REJECT.
        violations: Ordered violations; non-empty exactly when rejected.
        scores: Representative scores per category, for the audit trail.
        message: The rejection message, empty when allowed.
    """

    outcome: Outcome
    violations: Tuple[Violation, ...] = ()
    scores: Mapping[str, float] = field(default_factory=dict)
    message: str = ""

    def __post_init__(self):
        if self.outcome is Outcome.REJECT and not self.violations:
            raise ValueError("A REJECT verdict needs at least one violation")
        if self.outcome is Outcome.ALLOW and self.violations:
            raise ValueError("An ALLOW verdict cannot carry violations")

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.ALLOW

    @classmethod
    def allow(cls, scores: Optional[Mapping[str, float]] = None) -> "Verdict":
        return cls(Outcome.ALLOW, (), dict(scores or {}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "violations": [
                {"category": v.category, "score": v.score, "reason": v.reason}
                for v in self.violations
            ],
            "scores": dict(self.scores),
            "message": self.message,
        }

    def to_json(self) -> str:
        """Serializes the verdict to a JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))


# (category, classifier check, reason label), in evaluation order.
VISUAL_CATEGORIES: Tuple[Tuple[str, str, str], ...] = (
    ("nudity", "nudity", "nudity"),
    ("gore", "gore", "violence/gore"),
    ("weapon", "wad", "weapons"),
    ("alcohol", "wad", "alcohol"),
    ("drugs", "wad", "drugs"),
    ("offensive", "offensive", "offensive symbols"),
    ("selfharm", "self-harm", "self-harm"),
    ("gambling", "gambling", "gambling"),
    ("tobacco", "tobacco", "tobacco"),
)
TEXT_CATEGORIES: Tuple[Tuple[str, str, str], ...] = (
    ("sexual", "sexual", "sexual content"),
    ("discriminatory", "discriminatory", "discriminatory content"),
    ("insulting", "insulting", "insulting content"),
    ("violent", "violent", "violent content"),
    ("toxic", "toxic", "toxic content"),
    ("selfharm", "self-harm", "self-harm content"),
)
OVERLAY_CHECK = "text"
PERSONAL_CHECK = "personal"

SUBJECTS = {
    ContentKind.IMAGE: "Content",
    ContentKind.TEXT: "Text content",
    ContentKind.VIDEO: "Video content",
}


def _is_enabled(policy: ThresholdPolicy, kind: ContentKind, check: str) -> bool:
    return policy.is_enabled(kind, check)


def _format_position(position: Optional[float]) -> str:
    position = float(position or 0)
    return str(int(position)) if position.is_integer() else repr(position)


def visual_score(scores: VisualScores, category: str) -> Optional[float]:
    """Returns the representative score of a visual category, if reported."""
    if category == "nudity":
        return scores.nudity.representative() if scores.nudity is not None else None
    return getattr(scores, category)


def _visual_violations(
    scores: VisualScores,
    policy: ThresholdPolicy,
    kind: ContentKind,
    position: Optional[float] = None,
    in_frame: bool = False,
) -> List[Violation]:
    violations: List[Violation] = []
    for category, check, label in VISUAL_CATEGORIES:
        threshold = policy.threshold(kind, category)
        if threshold is None or not _is_enabled(policy, kind, check):
            continue
        score = visual_score(scores, category)
        if score is None or not score > threshold:
            continue
        where = f" at {_format_position(position)}s" if in_frame else ""
        violations.append(
            Violation(category, score, f"{label}{where} (score: {score:.2f})")
        )
    return violations


def _visual_scores(scores: VisualScores, policy: ThresholdPolicy, kind: ContentKind) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for category, _check, _label in VISUAL_CATEGORIES:
        score = visual_score(scores, category)
        if score is not None and policy.threshold(kind, category) is not None:
            out[category] = score
    return out


def _verdict(
    kind: ContentKind, violations: List[Violation], scores: Dict[str, float]
) -> Verdict:
    if not violations:
        return Verdict.allow(scores)
    message = (
        f"{SUBJECTS[kind]} rejected due to policy violations: "
        + ", ".join(v.reason for v in violations)
    )
    return Verdict(Outcome.REJECT, tuple(violations), scores, message)


def evaluate_image(result: ImageResult, policy: ThresholdPolicy) -> Verdict:
    """Evaluates an image classification against the policy.

    Args:
        result: The parsed image classification.
        policy: The threshold policy.

    Returns:
        The verdict, with overlay profanity and personal information reported
        after the visual categories.
    """
    kind = ContentKind.IMAGE
    violations = _visual_violations(result.scores, policy, kind)
    if _is_enabled(policy, kind, OVERLAY_CHECK):
        if result.profanity:
            violations.append(
                Violation(
                    "profanity",
                    None,
                    f"profanity detected: {', '.join(result.profanity)}",
                )
            )
        if result.personal:
            violations.append(
                Violation(
                    "personal",
                    None,
                    f"personal info detected: {', '.join(result.personal)}",
                )
            )
    return _verdict(kind, violations, scores_for_audit(result, policy))


def evaluate_text(result: TextResult, policy: ThresholdPolicy) -> Verdict:
    """Evaluates a text classification against the policy.

    Personal information is judged on presence, not probability: any
    non-empty match list is a violation.
    """
    kind = ContentKind.TEXT
    violations: List[Violation] = []
    for category, check, label in TEXT_CATEGORIES:
        score = getattr(result, category)
        if score is None:
            continue
        threshold = policy.threshold(kind, category)
        if threshold is None or not _is_enabled(policy, kind, check):
            continue
        if score > threshold:
            violations.append(Violation(category, score, f"{label} (score: {score:.2f})"))
    if _is_enabled(policy, kind, PERSONAL_CHECK):
        found = [label for key, label in PERSONAL_INFO_FIELDS if result.personal.get(key)]
        if found:
            violations.append(
                Violation(PERSONAL_CHECK, None, f"personal info detected: {', '.join(found)}")
            )
    return _verdict(kind, violations, scores_for_audit(result, policy))


def evaluate_video(result: VideoResult, policy: ThresholdPolicy) -> Verdict:
    """Evaluates a video classification against the policy.

    A summary, when present, is evaluated on its own and the frames are
    ignored. Otherwise every frame is evaluated and the violations of all
    frames are combined, each naming the frame position. With neither, the
    video is allowed.
    """
    kind = ContentKind.VIDEO
    scores = scores_for_audit(result, policy)
    if result.summary is not None:
        return _verdict(kind, _visual_violations(result.summary, policy, kind), scores)
    violations: List[Violation] = []
    for frame in result.frames or ():
        violations.extend(
            _visual_violations(frame.scores, policy, kind, frame.position, in_frame=True)
        )
    return _verdict(kind, violations, scores)


def scores_for_audit(
    result: Union[ImageResult, TextResult, VideoResult], policy: ThresholdPolicy
) -> Dict[str, float]:
    """Returns the representative score of every reported category.

    For frame-by-frame video results this is the highest score seen across
    all frames.
    """
    if isinstance(result, ImageResult):
        return _visual_scores(result.scores, policy, ContentKind.IMAGE)
    if isinstance(result, TextResult):
        return {
            category: getattr(result, category)
            for category, _check, _label in TEXT_CATEGORIES
            if getattr(result, category) is not None
        }
    if isinstance(result, VideoResult):
        if result.summary is not None:
            return _visual_scores(result.summary, policy, ContentKind.VIDEO)
        scores: Dict[str, float] = {}
        for frame in result.frames or ():
            for category, score in _visual_scores(frame.scores, policy, ContentKind.VIDEO).items():
                scores[category] = max(score, scores.get(category, score))
        return scores
    raise TypeError(f"Unsupported classification result: {type(result).__name__}")


def evaluate(
    result: Union[ImageResult, TextResult, VideoResult], policy: ThresholdPolicy
) -> Verdict:
    """Dispatches to the evaluator matching the result shape."""
    if isinstance(result, ImageResult):
        return evaluate_image(result, policy)
    if isinstance(result, TextResult):
        return evaluate_text(result, policy)
    if isinstance(result, VideoResult):
        return evaluate_video(result, policy)
    raise TypeError(f"Unsupported classification result: {type(result).__name__}")


def mismatch_verdict(reason: str, category: str = "content-type-mismatch") -> Verdict:
    """Builds the rejection for a declared/detected or extension mismatch."""
    return Verdict(
        Outcome.REJECT,
        (Violation(category, None, reason),),
        {},
        f"Content rejected: {reason}",
    )
