"""Content-kind detection from raw bytes.

The declared content type of an upload is only a claim. This module inspects
the leading bytes of a payload against a table of known signatures so that
the engine can classify what is really being stored, and flags uploads whose
declared label or file extension disagree with it.
"""

from __future__ import annotations
import posixpath
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple, Union
from urllib.parse import urlsplit

from .config import ContentKind

MIN_SNIFF_LENGTH = 8

SUPPORTED_IMAGE_TYPES = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp", "image/bmp"}
)
SUPPORTED_TEXT_TYPES = frozenset(
    {
        "text/plain",
        "text/html",
        "text/markdown",
        "text/csv",
        "application/json",
        "application/xml",
        "text/xml",
        # Linked-data serializations, moderated through the text extractor
        "text/turtle",
        "application/n-triples",
        "application/n-quads",
        "application/trig",
        "text/n3",
        "application/ld+json",
        "application/rdf+xml",
        "application/sparql-query",
        "application/sparql-update",
        "application/sparql-results+json",
    }
)
SUPPORTED_VIDEO_TYPES = frozenset(
    {
        "video/mp4",
        "video/mpeg",
        "video/quicktime",
        "video/x-msvideo",
        "video/x-ms-wmv",
        "video/webm",
        "video/ogg",
        "video/3gpp",
        "video/3gpp2",
    }
)

# Labels that denote the same underlying format.
MIME_SYNONYMS: Dict[str, str] = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "video/avi": "video/x-msvideo",
    "video/msvideo": "video/x-msvideo",
}

EXTENSION_TYPES: Dict[str, FrozenSet[str]] = {
    ext: frozenset(types)
    for ext, types in {
        "jpg": {"image/jpeg", "image/jpg", "image/pjpeg"},
        "jpeg": {"image/jpeg", "image/jpg", "image/pjpeg"},
        "png": {"image/png"},
        "gif": {"image/gif"},
        "webp": {"image/webp"},
        "bmp": {"image/bmp"},
        "mp4": {"video/mp4"},
        "m4v": {"video/mp4"},
        "mov": {"video/quicktime"},
        "avi": {"video/x-msvideo", "video/avi", "video/msvideo"},
        "wmv": {"video/x-ms-wmv"},
        "webm": {"video/webm"},
        "ogv": {"video/ogg"},
        "mpeg": {"video/mpeg"},
        "mpg": {"video/mpeg"},
        "3gp": {"video/3gpp"},
        "3g2": {"video/3gpp2"},
        "txt": {"text/plain"},
        "html": {"text/html"},
        "htm": {"text/html"},
        "md": {"text/markdown", "text/plain"},
        "markdown": {"text/markdown", "text/plain"},
        "csv": {"text/csv", "text/plain"},
        "json": {"application/json", "application/ld+json"},
        "jsonld": {"application/ld+json", "application/json"},
        "xml": {"application/xml", "text/xml", "application/rdf+xml"},
        "ttl": {"text/turtle"},
        "nt": {"application/n-triples"},
        "nq": {"application/n-quads"},
        "trig": {"application/trig"},
        "n3": {"text/n3", "text/turtle"},
        "rdf": {"application/rdf+xml", "application/xml"},
        "owl": {"application/rdf+xml", "application/xml"},
        "rq": {"application/sparql-query"},
        "sparql": {"application/sparql-query", "application/sparql-update"},
        "ru": {"application/sparql-update"},
        "srj": {"application/sparql-results+json"},
    }.items()
}


@dataclass(frozen=True)
class DetectedKind:
    """The media type detected from a payload's bytes.

    Attributes:
        mime_type: The detected MIME type, or None when nothing matched.
        confidence_basis: "signature" when a byte signature matched, else "none".
    """

    mime_type: Optional[str] = None
    confidence_basis: str = "none"

    @property
    def detected(self) -> bool:
        return self.mime_type is not None


UNDETECTED = DetectedKind()

_RIFF_MARKERS = {b"WEBP": "image/webp", b"AVI ": "video/x-msvideo"}

# Brands found at offset 8 of an ISO base media `ftyp` box.
_FTYP_BRANDS: List[Tuple[bytes, str]] = [
    (b"qt  ", "video/quicktime"),
    (b"3g2", "video/3gpp2"),
    (b"3gp", "video/3gpp"),
]
_QUICKTIME_ATOMS = {b"moov", b"mdat", b"wide", b"free", b"skip"}
_TEXT_BYTES = frozenset(range(0x20, 0x7F)) | {0x09, 0x0A, 0x0D}


def _riff_subtype(payload: bytes) -> Optional[str]:
    return _RIFF_MARKERS.get(payload[8:12])


def _iso_subtype(payload: bytes) -> Optional[str]:
    marker = payload[4:8]
    if marker == b"ftyp":
        brand = payload[8:12]
        for prefix, mime in _FTYP_BRANDS:
            if brand.startswith(prefix):
                return mime
        return "video/mp4"
    if marker in _QUICKTIME_ATOMS:
        return "video/quicktime"
    return None


def _bmp_subtype(payload: bytes) -> Optional[str]:
    # The four reserved header bytes are always zero in a real bitmap.
    return "image/bmp" if payload[6:10] == b"\x00\x00\x00\x00" else None


def _gif_subtype(payload: bytes) -> Optional[str]:
    # Text that starts with "GIF8xa" has a printable logical screen descriptor.
    descriptor = payload[6:13]
    if descriptor and all(b in _TEXT_BYTES for b in descriptor):
        return None
    return "image/gif"


def _ogg_subtype(payload: bytes) -> Optional[str]:
    # Stream structure version is always 0; header type holds three flag bits.
    return "video/ogg" if payload[4] == 0 and payload[5] <= 7 else None


SubtypeResolver = Callable[[bytes], Optional[str]]

# (prefix, offset, mime type or secondary-marker resolver), most specific first.
SIGNATURES: List[Tuple[bytes, int, Union[str, SubtypeResolver]]] = [
    (b"\x89PNG\r\n\x1a\n", 0, "image/png"),
    (b"\x30\x26\xb2\x75\x8e\x66\xcf\x11", 0, "video/x-ms-wmv"),
    (b"GIF87a", 0, _gif_subtype),
    (b"GIF89a", 0, _gif_subtype),
    (b"\x1a\x45\xdf\xa3", 0, "video/webm"),
    (b"\x00\x00\x01\xba", 0, "video/mpeg"),
    (b"\x00\x00\x01\xb3", 0, "video/mpeg"),
    (b"OggS", 0, _ogg_subtype),
    (b"\xff\xd8\xff", 0, "image/jpeg"),
    (b"RIFF", 0, _riff_subtype),
    (b"\x00\x00\x00", 0, _iso_subtype),
    (b"BM", 0, _bmp_subtype),
]


def detect(payload: bytes) -> DetectedKind:
    """Detects the media type of a payload from its byte signature.

    Args:
        payload: The raw, fully buffered upload body (bytes or bytearray).

    Returns:
        The detected kind; unset when the payload is shorter than
        `MIN_SNIFF_LENGTH` or no signature matches.
    """
    if not payload or len(payload) < MIN_SNIFF_LENGTH:
        return UNDETECTED
    payload = bytes(payload)
    for prefix, offset, target in SIGNATURES:
        if payload[offset : offset + len(prefix)] != prefix:
            continue
        if isinstance(target, str):
            return DetectedKind(target, "signature")
        mime = target(payload)
        if mime is None:
            continue
        return DetectedKind(mime, "signature")
    return UNDETECTED


def normalize_mime(label: Optional[str]) -> str:
    """Lowercases a MIME label and strips parameters such as charset."""
    if not label:
        return ""
    return label.split(";", 1)[0].strip().lower()


def canonical_mime(label: Optional[str]) -> str:
    mime = normalize_mime(label)
    return MIME_SYNONYMS.get(mime, mime)


def kind_for_mime(label: Optional[str]) -> Optional[ContentKind]:
    """Maps a MIME label to the content kind that moderates it."""
    mime = normalize_mime(label)
    if mime in SUPPORTED_IMAGE_TYPES:
        return ContentKind.IMAGE
    if mime in SUPPORTED_VIDEO_TYPES:
        return ContentKind.VIDEO
    if mime in SUPPORTED_TEXT_TYPES:
        return ContentKind.TEXT
    return None


def validate_declared_kind(detected: DetectedKind, declared: Optional[str]) -> Optional[str]:
    """Compares a declared label with the detected signature.

    Args:
        detected: The result of `detect`.
        declared: The caller-supplied MIME label.

    Returns:
        A descriptive mismatch reason, or None when the labels agree or
        nothing was detected.
    """
    if not detected.detected:
        return None
    if canonical_mime(declared) == canonical_mime(detected.mime_type):
        return None
    shown = normalize_mime(declared) or "(none)"
    return (
        f"Declared content type {shown} does not match "
        f"detected content type {detected.mime_type}"
    )


def extension_of(path: str) -> str:
    """Returns the lowercase filename extension of a URL or path, without dot."""
    try:
        path = urlsplit(path).path
    except ValueError:
        pass
    if path.endswith("/"):
        return ""
    stem, dot, ext = posixpath.basename(path).rpartition(".")
    if not dot or not stem:
        return ""
    return ext.lower()


def validate_extension(path: str, declared: Optional[str]) -> Optional[str]:
    """Checks the declared label against the resource's filename extension.

    Unknown or absent extensions never produce a mismatch.

    Args:
        path: The resource path or URL.
        declared: The caller-supplied MIME label.

    Returns:
        A descriptive mismatch reason, or None.
    """
    ext = extension_of(path)
    allowed = EXTENSION_TYPES.get(ext)
    if not allowed:
        return None
    mime = normalize_mime(declared)
    if mime in allowed:
        return None
    shown = mime or "(none)"
    return f"File extension .{ext} does not allow declared content type {shown}"
