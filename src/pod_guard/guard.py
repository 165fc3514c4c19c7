"""This module provides the moderation pipeline for pod uploads.

It includes the `ModerationGuard` class, which takes one content-mutating
request through content-kind detection, text extraction, remote
classification, policy evaluation and auditing. The module also defines the
request type and an in-process metrics summary.
"""

from __future__ import annotations
import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Dict, Optional, Union

from prometheus_client import Counter as PromCounter

from .audit import AuditEntry, AuditLog, pod_from_path
from .classifier import ClassificationUnavailable, Classifier, SightEngineClient
from .config import ContentKind, ModerationConfig, resolve_config
from .extract import extract_text, serialization_for_mime
from .policy import Verdict, evaluate, mismatch_verdict
from .sniff import (
    detect,
    kind_for_mime,
    normalize_mime,
    validate_declared_kind,
    validate_extension,
)

# Prometheus metrics (opt-in via env)
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
if PROMETHEUS_ENABLED:
    moderation_requests_total = PromCounter(
        "moderation_requests_total", "Total moderation attempts", ["kind"]
    )
    moderation_decisions_total = PromCounter(
        "moderation_decisions_total", "Total decisions made", ["action", "kind"]
    )
    moderation_classifier_failures_total = PromCounter(
        "moderation_classifier_failures_total",
        "Classifier calls that failed open",
        ["kind"],
    )

MIN_TEXT_LENGTH = 3


class Method(str, Enum):
    """Content-mutating operations subject to moderation."""

    CREATE = "create"
    REPLACE = "replace"
    PARTIAL_UPDATE = "partial-update"

    @classmethod
    def from_http(cls, verb: str) -> Optional["Method"]:
        """Maps an HTTP verb to a method; None for verbs that bypass moderation."""
        return {
            "POST": cls.CREATE,
            "PUT": cls.REPLACE,
            "PATCH": cls.PARTIAL_UPDATE,
        }.get((verb or "").upper())


@dataclass(frozen=True)
class ModerationRequest:
    """One intercepted upload.

    Attributes:
        declared_kind: The caller-supplied content type.
        payload: The fully buffered body; it is never modified.
        resource_path: The full location of the target resource.
        method: The mutating operation.
        actor_id: The uploader's identity (e.g. a WebID), when known.
    """

    declared_kind: str
    payload: bytes
    resource_path: str
    method: Method
    actor_id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.method, Method):
            raise ValueError(f"Not a content-mutating method: {self.method!r}")
        if not isinstance(self.payload, (bytes, bytearray)):
            raise TypeError("payload must be bytes")
        if isinstance(self.payload, bytearray):
            object.__setattr__(self, "payload", bytes(self.payload))


@dataclass
class Metrics:
    """Tracks moderation outcomes in process."""

    total_requests: int = 0
    allows: int = 0
    rejects: int = 0
    errors: int = 0
    reject_reasons: Counter = field(default_factory=Counter)
    kinds: Counter = field(default_factory=Counter)
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record(self, action: str, kind: ContentKind, verdict: Verdict):
        """Records one audited moderation attempt."""
        with self.lock:
            self.total_requests += 1
            self.kinds[kind.value] += 1
            if action == "ERROR":
                self.errors += 1
            if verdict.allowed:
                self.allows += 1
            else:
                self.rejects += 1
                for violation in verdict.violations:
                    self.reject_reasons[violation.category] += 1
        if PROMETHEUS_ENABLED:
            moderation_decisions_total.labels(action=action, kind=kind.value).inc()

    def summary(self) -> Dict:
        """Returns a summary of the metrics as a dictionary."""
        with self.lock:
            return {
                "total": self.total_requests,
                "allows": self.allows,
                "rejects": self.rejects,
                "errors": self.errors,
                "reject_rate": self.rejects / max(1, self.total_requests),
                "top_reasons": dict(self.reject_reasons.most_common(5)),
                "kinds": dict(self.kinds),
            }


class ModerationGuard:
    """The moderation decision engine."""

    def __init__(
        self,
        config: Optional[ModerationConfig] = None,
        classifier: Optional[Classifier] = None,
        audit_log: Optional[AuditLog] = None,
    ):
        """Initializes the engine.

        Args:
            config: Resolved configuration; resolved from the environment and
                defaults when omitted.
            classifier: The classifier to use; a `SightEngineClient` built from
                the configured credentials when omitted.
            audit_log: The audit sink; built from the configuration when omitted.
        """
        self.config = config or resolve_config()
        self.logger = logging.getLogger(self.__class__.__name__)
        self.classifier_ready = classifier is not None or self.config.has_credentials
        self.classifier: Classifier = classifier or SightEngineClient(
            self.config.api_user,
            self.config.api_secret,
            timeout=self.config.classifier_timeout,
        )
        self.audit_log = audit_log or AuditLog(
            self.config.audit_log_path, self.config.audit_log_enabled
        )
        self.metrics = Metrics()
        if not self.classifier_ready:
            self.logger.warning(
                "SightEngine API credentials not configured. Moderation will be skipped."
            )
        for line in self.config.describe():
            self.logger.info(line)

    def _finish(
        self,
        request: ModerationRequest,
        kind: ContentKind,
        declared: str,
        verdict: Verdict,
        action: Optional[str] = None,
        reason: Optional[str] = None,
        classifier_request_id: Optional[str] = None,
    ) -> Verdict:
        """Audits a decided verdict and returns it unchanged."""
        action = action or verdict.outcome.value
        path = request.resource_path
        if verdict.allowed:
            self.logger.info(f"{kind.value.capitalize()} passed moderation: {path}")
        else:
            self.logger.warning(
                f"{kind.value.capitalize()} rejected: {path} - {verdict.message}"
            )
        self.metrics.record(action, kind, verdict)
        if self.audit_log.enabled:
            self.audit_log.record(
                AuditEntry(
                    action=action,
                    content_kind=kind.value,
                    resource_path=path,
                    declared_mime=declared,
                    pod=pod_from_path(path),
                    actor_id=request.actor_id,
                    reason=reason or verdict.message or None,
                    scores=verdict.scores or None,
                    classifier_request_id=classifier_request_id,
                )
            )
        return verdict

    def _text_for(self, declared: str, payload: bytes) -> str:
        """Decodes a text payload, extracting literals from linked data."""
        text = payload.decode("utf-8", errors="replace")
        serialization = serialization_for_mime(declared)
        if serialization is not None:
            return extract_text(text, serialization)
        return text

    def moderate(self, request: ModerationRequest) -> Verdict:
        """Moderates one content-mutating request.

        Classifier failures never propagate: the upload is allowed (fail-open)
        and the failure is recorded as an ERROR audit entry.

        Args:
            request: The intercepted upload.

        Returns:
            The verdict for the upload.
        """
        path = request.resource_path
        declared = normalize_mime(request.declared_kind)
        detected = detect(request.payload)
        kind = kind_for_mime(detected.mime_type) or kind_for_mime(declared)
        self.logger.debug(
            f"Intercepted: {request.method.value} {path} "
            f"(declared {declared or '(none)'}, detected {detected.mime_type})"
        )
        if kind is None:
            return Verdict.allow()
        self.logger.info(f"{kind.value.capitalize()} detected: {declared} at {path}")
        if PROMETHEUS_ENABLED:
            moderation_requests_total.labels(kind=kind.value).inc()

        if self.config.validate_extension:
            mismatch = validate_extension(path, declared)
            if mismatch:
                return self._finish(
                    request, kind, declared, mismatch_verdict(mismatch, "extension-mismatch")
                )
        if self.config.validate_mime:
            mismatch = validate_declared_kind(detected, declared)
            if mismatch:
                return self._finish(request, kind, declared, mismatch_verdict(mismatch))

        if kind is not ContentKind.TEXT and not detected.detected:
            return self._finish(
                request,
                kind,
                declared,
                Verdict.allow(),
                reason="Skipped: content type could not be detected",
            )
        if not self.classifier_ready:
            self.logger.debug("Skipping moderation - API credentials not configured")
            return self._finish(
                request,
                kind,
                declared,
                Verdict.allow(),
                reason="Skipped: classifier credentials not configured",
            )

        content: Union[bytes, str] = request.payload
        if kind is ContentKind.TEXT:
            content = self._text_for(declared, request.payload)
            if len(content.strip()) < MIN_TEXT_LENGTH:
                self.logger.debug("Skipping text moderation - text too short")
                return self._finish(
                    request,
                    kind,
                    declared,
                    Verdict.allow(),
                    reason="Skipped: no moderatable text",
                )

        try:
            result = self.classifier.classify(
                content,
                kind,
                self.config.policy.enabled[kind],
                detected.mime_type or declared,
            )
        except ClassificationUnavailable as e:
            return self._fail_open(request, kind, declared, str(e))
        except Exception as e:
            self.logger.exception("Unexpected classifier failure")
            return self._fail_open(request, kind, declared, f"Unexpected classifier failure: {e}")

        verdict = evaluate(result, self.config.policy)
        return self._finish(
            request, kind, declared, verdict, classifier_request_id=result.request_id
        )

    def _fail_open(
        self, request: ModerationRequest, kind: ContentKind, declared: str, error: str
    ) -> Verdict:
        self.logger.error(f"API error: {error}")
        self.logger.warning("Allowing upload due to API error (fail-open policy)")
        if PROMETHEUS_ENABLED:
            moderation_classifier_failures_total.labels(kind=kind.value).inc()
        return self._finish(
            request, kind, declared, Verdict.allow(), action="ERROR", reason=error
        )
