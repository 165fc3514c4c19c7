"""Client for the remote SightEngine classifier.

The engine only relies on the `Classifier` protocol: submit content of one
kind and get a typed classification back, or `ClassificationUnavailable`.
Transport errors, non-2xx responses and success-shaped bodies whose status
is not "success" are all reported the same way.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, Optional, Protocol, Union

import requests

from .config import ContentKind
from .results import ImageResult, TextResult, VideoResult

ClassificationResult = Union[ImageResult, TextResult, VideoResult]

API_BASE = "https://api.sightengine.com/1.0"
IMAGE_ENDPOINT = f"{API_BASE}/check.json"
TEXT_ENDPOINT = f"{API_BASE}/text/check.json"
VIDEO_ENDPOINT = f"{API_BASE}/video/check-sync.json"
TEXT_MODE = "ml"
TEXT_LANG = "en"
USER_AGENT = "pod-guard/1.0"

FILE_EXTENSIONS: Dict[str, str] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "video/mp4": "mp4",
    "video/mpeg": "mpeg",
    "video/quicktime": "mov",
    "video/x-msvideo": "avi",
    "video/x-ms-wmv": "wmv",
    "video/webm": "webm",
    "video/ogg": "ogv",
    "video/3gpp": "3gp",
    "video/3gpp2": "3g2",
}


class ClassificationUnavailable(Exception):
    """The classifier could not produce a usable result."""


class Classifier(Protocol):
    """Classification interface consumed by the moderation engine."""

    def classify(
        self,
        payload: Union[bytes, str],
        kind: ContentKind,
        enabled_categories: Iterable[str],
        mime_type: Optional[str] = None,
    ) -> ClassificationResult:
        ...


class SightEngineClient:
    """Submits content to the SightEngine moderation API."""

    def __init__(self, api_user: str, api_secret: str, timeout: float = 30.0):
        """Initializes the client.

        Args:
            api_user: SightEngine API user.
            api_secret: SightEngine API secret.
            timeout: Read timeout in seconds; a timeout counts as unavailable.
        """
        self.api_user = api_user
        self.api_secret = api_secret
        self.timeout = timeout
        self.logger = logging.getLogger(self.__class__.__name__)

    def _credentials(self) -> Dict[str, str]:
        return {"api_user": self.api_user, "api_secret": self.api_secret}

    def _post(self, url: str, label: str, **kwargs: Any) -> Dict[str, Any]:
        """Posts a request and returns the decoded success body.

        Raises:
            ClassificationUnavailable: On any transport, HTTP or API failure.
        """
        try:
            response = requests.post(
                url,
                timeout=(5, self.timeout),
                headers={"User-Agent": USER_AGENT},
                **kwargs,
            )
        except requests.RequestException as e:
            raise ClassificationUnavailable(f"SightEngine {label}request failed: {e}") from e
        if not response.ok:
            raise ClassificationUnavailable(
                f"SightEngine {label}API error: {response.status_code} {response.text}"
            )
        try:
            result = response.json()
        except ValueError as e:
            raise ClassificationUnavailable(
                f"SightEngine {label}response is not JSON: {e}"
            ) from e
        if not isinstance(result, dict) or result.get("status") != "success":
            error = result.get("error") if isinstance(result, dict) else None
            message = error.get("message") if isinstance(error, dict) else None
            raise ClassificationUnavailable(
                f"SightEngine {label}error: {message or 'Unknown error'}"
            )
        return result

    def _check_media(
        self,
        url: str,
        label: str,
        payload: bytes,
        models: str,
        mime_type: str,
        basename: str,
    ) -> Dict[str, Any]:
        ext = FILE_EXTENSIONS.get(mime_type, "bin")
        self.logger.info(f"Calling SightEngine {label}API with models: {models}")
        return self._post(
            url,
            label,
            data={**self._credentials(), "models": models},
            files={"media": (f"{basename}.{ext}", payload, mime_type)},
        )

    def check_image(
        self, payload: bytes, enabled_categories: Iterable[str], mime_type: str = "image/jpeg"
    ) -> ImageResult:
        models = ",".join(sorted(enabled_categories))
        result = self._check_media(IMAGE_ENDPOINT, "", payload, models, mime_type, "image")
        return ImageResult.from_response(result)

    def check_video(
        self, payload: bytes, enabled_categories: Iterable[str], mime_type: str = "video/mp4"
    ) -> VideoResult:
        models = ",".join(sorted(enabled_categories))
        result = self._check_media(
            VIDEO_ENDPOINT, "Video ", payload, models, mime_type, "video"
        )
        self.logger.info("SightEngine Video response received")
        return VideoResult.from_response(result)

    def check_text(self, text: str) -> TextResult:
        """Classifies UTF-8 text.

        The text API selects its categories from the processing mode rather
        than from a list of models.
        """
        self.logger.info(f"Calling SightEngine Text API with mode: {TEXT_MODE}")
        result = self._post(
            TEXT_ENDPOINT,
            "Text ",
            data={
                **self._credentials(),
                "text": text,
                "mode": TEXT_MODE,
                "lang": TEXT_LANG,
            },
        )
        return TextResult.from_response(result)

    def classify(
        self,
        payload: Union[bytes, str],
        kind: ContentKind,
        enabled_categories: Iterable[str],
        mime_type: Optional[str] = None,
    ) -> ClassificationResult:
        """Classifies content of the given kind.

        Args:
            payload: Raw bytes for images and videos, text for text.
            kind: The content kind.
            enabled_categories: Checks to request for images and videos.
            mime_type: The media type sent with image and video uploads.

        Returns:
            The typed classification result.

        Raises:
            ClassificationUnavailable: If the classifier failed.
        """
        if kind is ContentKind.TEXT:
            text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
            return self.check_text(text)
        data = payload.encode("utf-8") if isinstance(payload, str) else payload
        if kind is ContentKind.IMAGE:
            return self.check_image(data, enabled_categories, mime_type or "image/jpeg")
        if kind is ContentKind.VIDEO:
            return self.check_video(data, enabled_categories, mime_type or "video/mp4")
        raise ValueError(f"Unsupported content kind: {kind}")
