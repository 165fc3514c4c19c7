"""Append-only audit trail of moderation decisions.

Each moderation attempt is written as one JSON object per line. Downstream
tooling parses these files, so the field names and the ALLOW/REJECT/ERROR
actions are stable.
"""

from __future__ import annotations
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

AUDIT_ACTIONS = ("ALLOW", "REJECT", "ERROR")


def utc_timestamp() -> str:
    """Returns the current UTC time as an ISO-8601 string with milliseconds."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def pod_from_path(resource_path: str) -> Optional[str]:
    """Extracts the pod name, the first path segment, from a resource path.

    e.g. "http://localhost:3009/alice/photos/image.jpg" -> "alice"
    """
    try:
        path = urlsplit(resource_path).path
    except (ValueError, AttributeError):
        return None
    parts = [p for p in path.split("/") if p]
    return parts[0] if parts else None


@dataclass(frozen=True)
class AuditEntry:
    """One audit record.

    Attributes:
        action: "ALLOW", "REJECT" or "ERROR".
        content_kind: "image", "text" or "video".
        resource_path: The full resource location.
        declared_mime: The content type declared by the uploader.
        pod: First path segment of the resource.
        actor_id: The uploader's identity, when known.
        reason: Rejection message, failure description or skip reason.
        scores: Representative classifier scores.
        classifier_request_id: The classifier's request identifier.
        timestamp: ISO-8601 UTC time of the decision.
    """

    action: str
    content_kind: str
    resource_path: str
    declared_mime: str
    pod: Optional[str] = None
    actor_id: Optional[str] = None
    reason: Optional[str] = None
    scores: Optional[Mapping[str, float]] = None
    classifier_request_id: Optional[str] = None
    timestamp: str = field(default_factory=utc_timestamp)

    def __post_init__(self):
        if self.action not in AUDIT_ACTIONS:
            raise ValueError(f"Unknown audit action: {self.action}")

    def to_dict(self) -> Dict[str, Any]:
        record = {
            "timestamp": self.timestamp,
            "action": self.action,
            "contentKind": self.content_kind,
            "resourcePath": self.resource_path,
            "pod": self.pod,
            "actorId": self.actor_id,
            "declaredMime": self.declared_mime,
            "reason": self.reason,
            "scores": dict(self.scores) if self.scores is not None else None,
            "classifierRequestId": self.classifier_request_id,
        }
        return {k: v for k, v in record.items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class AuditLog:
    """A line-delimited JSON audit file safe for concurrent appends."""

    def __init__(self, path: str, enabled: bool = True):
        """Initializes the audit log.

        Args:
            path: The file to append to; its directory is created if missing.
            enabled: When False, `record` does nothing.
        """
        self.path = path
        self.enabled = enabled
        self.lock = Lock()
        self.logger = logging.getLogger(self.__class__.__name__)
        if enabled:
            log_dir = os.path.dirname(os.path.abspath(path))
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                self.logger.error(f"Cannot create audit log directory {log_dir}: {e}")
            self.logger.info(f"Audit logging enabled: {path}")

    def record(self, entry: AuditEntry) -> None:
        """Appends an entry. Never raises; failures are logged.

        Args:
            entry: The entry to persist.
        """
        if not self.enabled:
            return
        try:
            line = entry.to_json() + "\n"
            with self.lock:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
        except Exception as e:
            self.logger.error(f"Failed to write audit log: {e}")
