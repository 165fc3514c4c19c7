"""Configuration for the pod moderation engine.

Settings are resolved once per engine from three layers in descending
priority: explicit options passed at construction, the process environment,
and `DEFAULT_CONFIG`. The result is a frozen `ModerationConfig` that is never
re-read per request.
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


class ContentKind(str, Enum):
    """The classification domain a payload belongs to."""

    IMAGE = "image"
    TEXT = "text"
    VIDEO = "video"


# --- Default Configuration ---
DEFAULT_CONFIG: Dict[str, Any] = {
    "api_user": "",
    "api_secret": "",
    # Image/video thresholds
    "nudity_threshold": 0.5,
    "violence_threshold": 0.5,
    "weapon_threshold": 0.5,
    "alcohol_threshold": 0.8,
    "drugs_threshold": 0.5,
    "offensive_threshold": 0.5,
    "selfharm_threshold": 0.3,
    "gambling_threshold": 0.5,
    "tobacco_threshold": 0.5,
    # Text thresholds
    "text_sexual_threshold": 0.5,
    "text_discriminatory_threshold": 0.5,
    "text_insulting_threshold": 0.5,
    "text_violent_threshold": 0.5,
    "text_toxic_threshold": 0.5,
    "text_selfharm_threshold": 0.3,
    # Checks sent to the classifier, comma separated
    "enabled_checks": "nudity,gore,wad,offensive",
    "enabled_text_checks": "sexual,discriminatory,insulting,violent,toxic,self-harm,personal",
    "enabled_video_checks": "nudity,gore,wad,offensive,self-harm,gambling,tobacco",
    "audit_log_enabled": True,
    "audit_log_path": os.path.join(os.getcwd(), "moderation-audit.log"),
    "validate_mime": True,
    "validate_extension": True,
    "classifier_timeout": 30.0,
}

ENV_VARS: Dict[str, str] = {
    "api_user": "SIGHTENGINE_API_USER",
    "api_secret": "SIGHTENGINE_API_SECRET",
    "nudity_threshold": "MODERATION_THRESHOLD_NUDITY",
    "violence_threshold": "MODERATION_THRESHOLD_VIOLENCE",
    "weapon_threshold": "MODERATION_THRESHOLD_WEAPON",
    "alcohol_threshold": "MODERATION_THRESHOLD_ALCOHOL",
    "drugs_threshold": "MODERATION_THRESHOLD_DRUGS",
    "offensive_threshold": "MODERATION_THRESHOLD_OFFENSIVE",
    "selfharm_threshold": "MODERATION_THRESHOLD_SELFHARM",
    "gambling_threshold": "MODERATION_THRESHOLD_GAMBLING",
    "tobacco_threshold": "MODERATION_THRESHOLD_TOBACCO",
    "text_sexual_threshold": "MODERATION_THRESHOLD_TEXT_SEXUAL",
    "text_discriminatory_threshold": "MODERATION_THRESHOLD_TEXT_DISCRIMINATORY",
    "text_insulting_threshold": "MODERATION_THRESHOLD_TEXT_INSULTING",
    "text_violent_threshold": "MODERATION_THRESHOLD_TEXT_VIOLENT",
    "text_toxic_threshold": "MODERATION_THRESHOLD_TEXT_TOXIC",
    "text_selfharm_threshold": "MODERATION_THRESHOLD_TEXT_SELFHARM",
    "enabled_checks": "MODERATION_CHECKS",
    "enabled_text_checks": "MODERATION_TEXT_CHECKS",
    "enabled_video_checks": "MODERATION_VIDEO_CHECKS",
    "audit_log_enabled": "MODERATION_AUDIT_LOG",
    "audit_log_path": "MODERATION_AUDIT_LOG_PATH",
    "validate_mime": "MODERATION_VALIDATE_MIME",
    "validate_extension": "MODERATION_VALIDATE_EXTENSION",
    "classifier_timeout": "MODERATION_CLASSIFIER_TIMEOUT",
}

# Threshold keys per content kind, keyed by policy category name.
VISUAL_THRESHOLD_KEYS: Dict[str, str] = {
    "nudity": "nudity_threshold",
    "gore": "violence_threshold",
    "weapon": "weapon_threshold",
    "alcohol": "alcohol_threshold",
    "drugs": "drugs_threshold",
    "offensive": "offensive_threshold",
    "selfharm": "selfharm_threshold",
    "gambling": "gambling_threshold",
}
TEXT_THRESHOLD_KEYS: Dict[str, str] = {
    "sexual": "text_sexual_threshold",
    "discriminatory": "text_discriminatory_threshold",
    "insulting": "text_insulting_threshold",
    "violent": "text_violent_threshold",
    "toxic": "text_toxic_threshold",
    "selfharm": "text_selfharm_threshold",
}
VIDEO_THRESHOLD_KEYS: Dict[str, str] = {
    **VISUAL_THRESHOLD_KEYS,
    "tobacco": "tobacco_threshold",
}

# Classifier check identifiers accepted per content kind.
KNOWN_CHECKS: Dict[ContentKind, FrozenSet[str]] = {
    ContentKind.IMAGE: frozenset(
        {"nudity", "gore", "wad", "offensive", "self-harm", "gambling", "text"}
    ),
    ContentKind.TEXT: frozenset(
        {
            "sexual",
            "discriminatory",
            "insulting",
            "violent",
            "toxic",
            "self-harm",
            "link",
            "personal",
        }
    ),
    ContentKind.VIDEO: frozenset(
        {"nudity", "gore", "wad", "offensive", "self-harm", "gambling", "tobacco"}
    ),
}

_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in _FALSE_VALUES


def _parse_checks(key: str, value: Any, kind: ContentKind) -> FrozenSet[str]:
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    checks = frozenset(i.strip() for i in items if i and i.strip())
    unknown = sorted(checks - KNOWN_CHECKS[kind])
    if unknown:
        raise ValueError(
            f"Unknown {kind.value} checks in {key}: {unknown}; "
            f"expected some of {sorted(KNOWN_CHECKS[kind])}"
        )
    return checks


def _parse_threshold(key: str, value: Any) -> float:
    try:
        threshold = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Threshold {key} is not a number: {value!r}")
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"Threshold {key} must be within [0, 1], got {threshold}")
    return threshold


@dataclass(frozen=True)
class ThresholdPolicy:
    """Read-only thresholds and enabled checks, one set per content kind.

    Attributes:
        thresholds: Category name to exclusive threshold, per content kind.
        enabled: Classifier check identifiers enabled per content kind.
    """

    thresholds: Mapping[ContentKind, Mapping[str, float]]
    enabled: Mapping[ContentKind, FrozenSet[str]]

    def threshold(self, kind: ContentKind, category: str) -> Optional[float]:
        return self.thresholds[kind].get(category)

    def is_enabled(self, kind: ContentKind, check: str) -> bool:
        return check in self.enabled[kind]


@dataclass(frozen=True)
class ModerationConfig:
    """Fully resolved engine configuration."""

    api_user: str
    api_secret: str
    policy: ThresholdPolicy
    audit_log_enabled: bool
    audit_log_path: str
    validate_mime: bool
    validate_extension: bool
    classifier_timeout: float

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_user and self.api_secret)

    def describe(self) -> Tuple[str, ...]:
        """Returns human-readable startup summary lines."""
        image = self.policy.thresholds[ContentKind.IMAGE]
        return (
            f"Configured thresholds: nudity={image['nudity']}, "
            f"violence={image['gore']}, weapon={image['weapon']}",
            "Enabled image checks: "
            + ", ".join(sorted(self.policy.enabled[ContentKind.IMAGE])),
            "Enabled text checks: "
            + ", ".join(sorted(self.policy.enabled[ContentKind.TEXT])),
            "Enabled video checks: "
            + ", ".join(sorted(self.policy.enabled[ContentKind.VIDEO])),
        )


def _layered(
    options: Mapping[str, Any], environ: Mapping[str, str]
) -> Dict[str, Any]:
    """Merges the three configuration layers into one raw dictionary."""
    unknown = [k for k in options if k not in DEFAULT_CONFIG]
    if unknown:
        raise ValueError(f"Unknown config keys: {unknown}")
    merged: Dict[str, Any] = {}
    for key, default in DEFAULT_CONFIG.items():
        if options.get(key) is not None:
            merged[key] = options[key]
        elif ENV_VARS.get(key) and environ.get(ENV_VARS[key], "") != "":
            merged[key] = environ[ENV_VARS[key]]
        else:
            merged[key] = default
    return merged


def resolve_config(
    options: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ModerationConfig:
    """Resolves the engine configuration.

    Args:
        options: Explicit construction parameters; these take priority.
        environ: The environment mapping to read; defaults to `os.environ`.

    Returns:
        A frozen `ModerationConfig`.

    Raises:
        ValueError: If an option or check identifier is unknown, or a
            threshold is invalid.
    """
    raw = _layered(options or {}, os.environ if environ is None else environ)

    def thresholds(keys: Dict[str, str]) -> Mapping[str, float]:
        return MappingProxyType(
            {cat: _parse_threshold(key, raw[key]) for cat, key in keys.items()}
        )

    policy = ThresholdPolicy(
        thresholds=MappingProxyType(
            {
                ContentKind.IMAGE: thresholds(VISUAL_THRESHOLD_KEYS),
                ContentKind.TEXT: thresholds(TEXT_THRESHOLD_KEYS),
                ContentKind.VIDEO: thresholds(VIDEO_THRESHOLD_KEYS),
            }
        ),
        enabled=MappingProxyType(
            {
                ContentKind.IMAGE: _parse_checks(
                    "enabled_checks", raw["enabled_checks"], ContentKind.IMAGE
                ),
                ContentKind.TEXT: _parse_checks(
                    "enabled_text_checks", raw["enabled_text_checks"], ContentKind.TEXT
                ),
                ContentKind.VIDEO: _parse_checks(
                    "enabled_video_checks", raw["enabled_video_checks"], ContentKind.VIDEO
                ),
            }
        ),
    )
    try:
        timeout = float(raw["classifier_timeout"])
    except (TypeError, ValueError):
        raise ValueError(
            f"classifier_timeout is not a number: {raw['classifier_timeout']!r}"
        )
    return ModerationConfig(
        api_user=str(raw["api_user"] or ""),
        api_secret=str(raw["api_secret"] or ""),
        policy=policy,
        audit_log_enabled=_parse_bool(raw["audit_log_enabled"]),
        audit_log_path=str(raw["audit_log_path"]),
        validate_mime=_parse_bool(raw["validate_mime"]),
        validate_extension=_parse_bool(raw["validate_extension"]),
        classifier_timeout=timeout,
    )
