"""Extraction of human-authored text from linked-data documents.

Structured uploads such as Turtle or JSON-LD are mostly identifiers and
punctuation. Only the literals carry text a person wrote, so these are
collected in document order and handed to the text classifier as one string.
"""

from __future__ import annotations
import html
import json
import logging
import re
from enum import Enum
from typing import Any, List, Optional, Union

logger = logging.getLogger(__name__)


class Serialization(str, Enum):
    """Supported serializations, valued by their MIME type."""

    TURTLE = "text/turtle"
    N_TRIPLES = "application/n-triples"
    N_QUADS = "application/n-quads"
    TRIG = "application/trig"
    N3 = "text/n3"
    JSON_LD = "application/ld+json"
    RDF_XML = "application/rdf+xml"
    SPARQL_QUERY = "application/sparql-query"
    SPARQL_UPDATE = "application/sparql-update"
    SPARQL_RESULTS_JSON = "application/sparql-results+json"


TRIPLE_SERIALIZATIONS = frozenset(
    {
        Serialization.TURTLE,
        Serialization.N_TRIPLES,
        Serialization.N_QUADS,
        Serialization.TRIG,
        Serialization.N3,
    }
)
QUERY_SERIALIZATIONS = frozenset(
    {Serialization.SPARQL_QUERY, Serialization.SPARQL_UPDATE}
)

# Literals, IRIs and comments; IRIs and comments are matched so that quotes
# inside them are never mistaken for the start of a literal.
TOKEN_RE = re.compile(
    r'"""(?P<long_dq>.*?)"""'
    r"|'''(?P<long_sq>.*?)'''"
    r'|"(?P<dq>(?:[^"\\\n\r]|\\.)*)"'
    r"|'(?P<sq>(?:[^'\\\n\r]|\\.)*)'"
    r"|<[^<>\"{}|^`\\\s]*>"
    r"|#(?P<comment>[^\r\n]*)",
    re.DOTALL,
)
ESCAPE_RE = re.compile(r"\\u([0-9A-Fa-f]{4})|\\U([0-9A-Fa-f]{8})|\\(.)", re.DOTALL)
ESCAPES = {"n": "\n", "r": "\r", "t": "\t", '"': '"', "'": "'", "\\": "\\"}
ABSOLUTE_URI_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:[^\s]+$")
XML_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
XML_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
XML_TEXT_RE = re.compile(r">([^<]+)<")

# JSON-LD keywords whose values are identifiers or processing hints, not text.
JSONLD_SKIPPED_KEYS = frozenset(
    {"@context", "@id", "@type", "@language", "@direction", "@base", "@vocab", "@index"}
)
LITERAL_BINDING_TYPES = frozenset({"literal", "typed-literal"})


def _unescape(s: str) -> str:
    def replace(match: "re.Match[str]") -> str:
        code = match.group(1) or match.group(2)
        if code:
            codepoint = int(code, 16)
            if 0xD800 <= codepoint <= 0xDFFF or codepoint > 0x10FFFF:
                return "\ufffd"
            return chr(codepoint)
        return ESCAPES.get(match.group(3), match.group(0))

    return ESCAPE_RE.sub(replace, s)


def is_absolute_uri(value: str) -> bool:
    """Returns True when the whole value is a single absolute URI."""
    return bool(ABSOLUTE_URI_RE.match(value.strip()))


def _scan_literals(document: str, with_comments: bool = False) -> List[str]:
    pieces: List[str] = []
    for m in TOKEN_RE.finditer(document):
        if m.group("comment") is not None:
            if with_comments and m.group("comment").strip():
                pieces.append(m.group("comment").strip())
            continue
        for group in ("long_dq", "long_sq", "dq", "sq"):
            value = m.group(group)
            if value is not None:
                pieces.append(_unescape(value))
                break
    return pieces


def _walk_json(node: Any, out: List[str]) -> None:
    if isinstance(node, str):
        if node.strip() and not is_absolute_uri(node):
            out.append(node)
    elif isinstance(node, dict):
        for key, value in node.items():
            if key in JSONLD_SKIPPED_KEYS:
                continue
            _walk_json(value, out)
    elif isinstance(node, list):
        for item in node:
            _walk_json(item, out)


def _extract_json_ld(document: str) -> List[str]:
    try:
        data = json.loads(document)
    except ValueError as e:
        logger.warning(f"JSON-LD document is not valid JSON ({e}); scanning literals")
        return _scan_literals(document)
    out: List[str] = []
    _walk_json(data, out)
    return out


def _extract_rdf_xml(document: str) -> List[str]:
    out: List[str] = []
    document = XML_COMMENT_RE.sub("", document)
    # CDATA content is element text.
    document = XML_CDATA_RE.sub(lambda m: html.escape(m.group(1), quote=False), document)
    for m in XML_TEXT_RE.finditer(document):
        text = html.unescape(m.group(1)).strip()
        if text and not is_absolute_uri(text):
            out.append(text)
    return out


def _extract_sparql_results(document: str) -> List[str]:
    try:
        data = json.loads(document)
    except ValueError as e:
        logger.warning(f"SPARQL results are not valid JSON ({e}); scanning literals")
        return _scan_literals(document)
    results = data.get("results") if isinstance(data, dict) else None
    bindings = results.get("bindings") if isinstance(results, dict) else None
    out: List[str] = []
    for binding in bindings if isinstance(bindings, list) else []:
        if not isinstance(binding, dict):
            continue
        for term in binding.values():
            if (
                isinstance(term, dict)
                and term.get("type") in LITERAL_BINDING_TYPES
                and isinstance(term.get("value"), str)
            ):
                out.append(term["value"])
    return out


def serialization_for_mime(label: Optional[str]) -> Optional[Serialization]:
    """Returns the serialization for a MIME label, or None if unsupported."""
    if not label:
        return None
    mime = label.split(";", 1)[0].strip().lower()
    try:
        return Serialization(mime)
    except ValueError:
        return None


def extract_text(
    document: str, serialization: Union[Serialization, str, None]
) -> str:
    """Extracts moderatable text from a structured document.

    Args:
        document: The decoded document.
        serialization: A `Serialization` or its MIME type.

    Returns:
        The extracted pieces joined by single spaces in document order, or an
        empty string when the serialization is unsupported.
    """
    if not isinstance(serialization, Serialization):
        serialization = serialization_for_mime(serialization)
    if serialization is None or not document:
        return ""
    if serialization in TRIPLE_SERIALIZATIONS:
        pieces = _scan_literals(document)
    elif serialization in QUERY_SERIALIZATIONS:
        pieces = _scan_literals(document, with_comments=True)
    elif serialization is Serialization.JSON_LD:
        pieces = _extract_json_ld(document)
    elif serialization is Serialization.RDF_XML:
        pieces = _extract_rdf_xml(document)
    elif serialization is Serialization.SPARQL_RESULTS_JSON:
        pieces = _extract_sparql_results(document)
    else:
        return ""
    text = " ".join(p for p in pieces if p.strip())
    # Lone surrogates from JSON escapes cannot be sent as UTF-8.
    return text.encode("utf-8", "replace").decode("utf-8")
