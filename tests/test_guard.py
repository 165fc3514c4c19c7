"""Tests for the ModerationGuard pipeline."""
import concurrent.futures
import json
from unittest import mock

import pytest
from pod_guard.classifier import ClassificationUnavailable
from pod_guard.config import ContentKind, resolve_config
from pod_guard.guard import Method, ModerationGuard, ModerationRequest
from pod_guard.results import (
    ImageResult,
    NudityScores,
    TextResult,
    VideoFrame,
    VideoResult,
    VisualScores,
)

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
JPEG = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01"
MP4 = b"\x00\x00\x00\x18ftypisom\x00\x00\x02\x00"
POD = "http://localhost:3009/alice"


class FakeClassifier:
    """Returns a canned result, or raises, and records every call."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def classify(self, payload, kind, enabled_categories, mime_type=None):
        self.calls.append((payload, kind, set(enabled_categories), mime_type))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def audit_path(tmp_path):
    return tmp_path / "audit.log"


def make_guard(audit_path, classifier, **options):
    options.setdefault("audit_log_path", str(audit_path))
    return ModerationGuard(resolve_config(options, environ={}), classifier=classifier)


def read_audit(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def upload(payload, declared, path, method=Method.CREATE, actor=None):
    return ModerationRequest(
        declared_kind=declared,
        payload=payload,
        resource_path=path,
        method=method,
        actor_id=actor,
    )


class TestImages:
    """Tests for image uploads."""

    def test_nudity_rejected_and_audited(self, audit_path):
        fake = FakeClassifier(
            ImageResult(
                scores=VisualScores(nudity=NudityScores(sexual_activity=0.85)),
                request_id="req_1",
            )
        )
        guard = make_guard(audit_path, fake)
        verdict = guard.moderate(
            upload(PNG, "image/png", f"{POD}/photos/pic.png", actor="https://alice.example/#me")
        )

        assert not verdict.allowed
        assert verdict.message == "Content rejected due to policy violations: nudity (score: 0.85)"
        payload, kind, categories, mime = fake.calls[0]
        assert payload == PNG
        assert kind is ContentKind.IMAGE
        assert categories == {"nudity", "gore", "wad", "offensive"}
        assert mime == "image/png"

        (record,) = read_audit(audit_path)
        assert record["action"] == "REJECT"
        assert record["contentKind"] == "image"
        assert record["pod"] == "alice"
        assert record["actorId"] == "https://alice.example/#me"
        assert record["declaredMime"] == "image/png"
        assert record["scores"] == {"nudity": 0.85}
        assert record["classifierRequestId"] == "req_1"

    def test_clean_image_allowed(self, audit_path):
        fake = FakeClassifier(ImageResult(scores=VisualScores(gore=0.01)))
        guard = make_guard(audit_path, fake)
        verdict = guard.moderate(upload(PNG, "image/png", f"{POD}/pic.png", Method.REPLACE))
        assert verdict.allowed
        assert read_audit(audit_path)[0]["action"] == "ALLOW"

    def test_bytearray_payload_is_classified(self, audit_path):
        fake = FakeClassifier(ImageResult())
        guard = make_guard(audit_path, fake)
        request = upload(bytearray(PNG), "image/png", f"{POD}/pic.png")
        assert isinstance(request.payload, bytes)
        assert guard.moderate(request).allowed
        assert fake.calls[0][0] == PNG
        assert fake.calls[0][3] == "image/png"

    def test_short_binary_skips_classifier(self, audit_path):
        """Too few bytes to identify: allowed without classification."""
        fake = FakeClassifier(ImageResult())
        guard = make_guard(audit_path, fake)
        verdict = guard.moderate(upload(b"\x89PNG", "image/png", f"{POD}/a.png"))
        assert verdict.allowed
        assert fake.calls == []
        assert "could not be detected" in read_audit(audit_path)[0]["reason"]


class TestMismatch:
    """Tests for declared type and extension validation."""

    def test_declared_type_mismatch_rejected(self, audit_path):
        fake = FakeClassifier(ImageResult())
        guard = make_guard(audit_path, fake)
        verdict = guard.moderate(upload(PNG, "image/jpeg", f"{POD}/pic.jpg"))
        assert not verdict.allowed
        assert verdict.violations[0].category == "content-type-mismatch"
        assert verdict.message == (
            "Content rejected: Declared content type image/jpeg does not match "
            "detected content type image/png"
        )
        assert fake.calls == []
        assert read_audit(audit_path)[0]["action"] == "REJECT"

    def test_mismatch_ignored_when_disabled(self, audit_path):
        fake = FakeClassifier(ImageResult())
        guard = make_guard(audit_path, fake, validate_mime=False)
        assert guard.moderate(upload(PNG, "image/jpeg", f"{POD}/pic")).allowed
        assert len(fake.calls) == 1

    def test_detected_kind_wins_over_declared(self, audit_path):
        """An image disguised as text is classified as an image."""
        fake = FakeClassifier(ImageResult())
        guard = make_guard(audit_path, fake, validate_mime=False)
        guard.moderate(upload(JPEG, "text/plain", f"{POD}/disguised"))
        _payload, kind, _categories, mime = fake.calls[0]
        assert kind is ContentKind.IMAGE
        assert mime == "image/jpeg"

    def test_extension_mismatch_rejected(self, audit_path):
        fake = FakeClassifier(ImageResult())
        guard = make_guard(audit_path, fake)
        verdict = guard.moderate(upload(PNG, "image/png", f"{POD}/notes.txt"))
        assert not verdict.allowed
        assert verdict.violations[0].category == "extension-mismatch"
        assert "File extension .txt" in verdict.message

    def test_extension_check_can_be_disabled(self, audit_path):
        fake = FakeClassifier(ImageResult())
        guard = make_guard(audit_path, fake, validate_extension=False)
        assert guard.moderate(upload(PNG, "image/png", f"{POD}/notes.txt")).allowed


class TestFailOpen:
    """Classifier failures allow the upload and are audited as errors."""

    def test_unavailable_classifier(self, audit_path):
        fake = FakeClassifier(error=ClassificationUnavailable("SightEngine request failed: timeout"))
        guard = make_guard(audit_path, fake)
        verdict = guard.moderate(upload(PNG, "image/png", f"{POD}/pic.png"))
        assert verdict.allowed
        assert verdict.violations == ()
        (record,) = read_audit(audit_path)
        assert record["action"] == "ERROR"
        assert record["reason"] == "SightEngine request failed: timeout"
        assert "scores" not in record
        assert guard.metrics.summary()["errors"] == 1

    def test_unavailable_classifier_for_text(self, audit_path):
        fake = FakeClassifier(error=ClassificationUnavailable("SightEngine request failed: refused"))
        guard = make_guard(audit_path, fake)
        verdict = guard.moderate(upload(b"some hateful words", "text/plain", f"{POD}/note.txt"))
        assert verdict.allowed
        assert verdict.violations == ()
        assert fake.calls[0][1] is ContentKind.TEXT
        (record,) = read_audit(audit_path)
        assert record["action"] == "ERROR"
        assert record["contentKind"] == "text"
        assert "scores" not in record

    def test_unexpected_classifier_error(self, audit_path):
        fake = FakeClassifier(error=RuntimeError("bug"))
        guard = make_guard(audit_path, fake)
        assert guard.moderate(upload(PNG, "image/png", f"{POD}/pic.png")).allowed
        assert read_audit(audit_path)[0]["action"] == "ERROR"

    def test_missing_credentials_skip_moderation(self, audit_path):
        guard = ModerationGuard(
            resolve_config({"audit_log_path": str(audit_path)}, environ={})
        )
        with mock.patch("pod_guard.classifier.requests.post") as post:
            verdict = guard.moderate(upload(PNG, "image/png", f"{POD}/pic.png"))
        assert verdict.allowed
        post.assert_not_called()
        assert "credentials" in read_audit(audit_path)[0]["reason"]


class TestText:
    """Tests for text uploads."""

    def test_insulting_text_rejected(self, audit_path):
        fake = FakeClassifier(TextResult(insulting=0.92))
        guard = make_guard(audit_path, fake)
        verdict = guard.moderate(upload(b"You are terrible", "text/plain", f"{POD}/note.txt"))
        assert verdict.message == (
            "Text content rejected due to policy violations: insulting content (score: 0.92)"
        )
        assert fake.calls[0][0] == "You are terrible"
        assert fake.calls[0][1] is ContentKind.TEXT

    def test_linked_data_literals_are_classified(self, audit_path):
        fake = FakeClassifier(TextResult(toxic=0.1))
        guard = make_guard(audit_path, fake)
        doc = (
            b'@prefix foaf: <http://xmlns.com/foaf/0.1/> .\n'
            b'<#me> foaf:name "Alice" ; foaf:status "Loves hiking" .\n'
        )
        verdict = guard.moderate(upload(doc, "text/turtle", f"{POD}/profile/card.ttl"))
        assert verdict.allowed
        assert fake.calls[0][0] == "Alice Loves hiking"

    def test_surrogate_escape_still_classified(self, audit_path):
        """An escaped lone surrogate is replaced and the rest is still checked."""
        fake = FakeClassifier(TextResult(insulting=0.95))
        guard = make_guard(audit_path, fake)
        doc = b'<#s> <#p> "you are a worthless idiot \\uD800" .'
        verdict = guard.moderate(upload(doc, "text/turtle", f"{POD}/note.ttl"))
        assert not verdict.allowed
        text = fake.calls[0][0]
        assert text == "you are a worthless idiot \ufffd"
        text.encode("utf-8")
        assert read_audit(audit_path)[0]["action"] == "REJECT"

    @pytest.mark.parametrize("body", [b"hi", b"   ", b""])
    def test_short_text_not_classified(self, audit_path, body):
        fake = FakeClassifier(TextResult())
        guard = make_guard(audit_path, fake)
        assert guard.moderate(upload(body, "text/plain", f"{POD}/t.txt")).allowed
        assert fake.calls == []

    def test_structured_document_without_literals(self, audit_path):
        fake = FakeClassifier(TextResult())
        guard = make_guard(audit_path, fake)
        doc = b"<http://a> <http://b> <http://c> ."
        assert guard.moderate(upload(doc, "application/n-triples", f"{POD}/d.nt")).allowed
        assert fake.calls == []


class TestVideo:
    """Tests for video uploads."""

    def test_frame_violation_rejected(self, audit_path):
        fake = FakeClassifier(VideoResult(frames=(VideoFrame(VisualScores(gore=0.7), 2),)))
        guard = make_guard(audit_path, fake)
        verdict = guard.moderate(upload(MP4, "video/mp4", f"{POD}/clip.mp4"))
        assert verdict.message == (
            "Video content rejected due to policy violations: violence/gore at 2s (score: 0.70)"
        )
        assert "tobacco" in fake.calls[0][2]
        assert read_audit(audit_path)[0]["contentKind"] == "video"


class TestUnsupported:
    def test_unsupported_kind_passes_through(self, audit_path):
        fake = FakeClassifier()
        guard = make_guard(audit_path, fake)
        verdict = guard.moderate(upload(b"%PDF-1.4 some pdf", "application/pdf", f"{POD}/d.pdf"))
        assert verdict.allowed
        assert fake.calls == []
        assert not audit_path.exists()


class TestRequest:
    """Tests for request types."""

    @pytest.mark.parametrize(
        "verb, method",
        [
            ("POST", Method.CREATE),
            ("put", Method.REPLACE),
            ("PATCH", Method.PARTIAL_UPDATE),
            ("GET", None),
            ("DELETE", None),
            ("HEAD", None),
        ],
    )
    def test_from_http(self, verb, method):
        assert Method.from_http(verb) is method

    def test_method_must_be_mutating(self):
        with pytest.raises(ValueError):
            upload(PNG, "image/png", "/a.png", method="GET")


def test_metrics_summary(audit_path):
    fake = FakeClassifier(ImageResult(scores=VisualScores(gore=0.9)))
    guard = make_guard(audit_path, fake)
    guard.moderate(upload(PNG, "image/png", f"{POD}/a.png"))
    fake.result = ImageResult()
    guard.moderate(upload(PNG, "image/png", f"{POD}/b.png"))
    summary = guard.metrics.summary()
    assert summary["total"] == 2
    assert summary["rejects"] == 1
    assert summary["allows"] == 1
    assert summary["top_reasons"] == {"gore": 1}
    assert summary["kinds"] == {"image": 2}


def test_concurrent_moderation(audit_path):
    """Independent requests share one engine without interference."""
    fake = FakeClassifier(ImageResult(scores=VisualScores(gore=0.9)))
    guard = make_guard(audit_path, fake)
    with concurrent.futures.ThreadPoolExecutor(max_workers=8) as executor:
        futures = [
            executor.submit(guard.moderate, upload(PNG, "image/png", f"{POD}/{i}.png"))
            for i in range(50)
        ]
        verdicts = [f.result() for f in futures]
    assert all(not v.allowed for v in verdicts)
    assert len(read_audit(audit_path)) == 50
    assert guard.metrics.summary()["rejects"] == 50
