"""Whitelisted language detection for chunk tagging.

Wraps ``langdetect`` and collapses its ~55 language codes into the closed
set the pipeline knows about: English, Dutch, or unknown.

Short samples are unreliable for n-gram classifiers, so anything shorter
than :data:`MIN_SAMPLE_LENGTH` characters is repeated until it reaches that
length before classification.  The detector never raises: inputs the
classifier cannot handle (digits only, punctuation, emoji) come back as
:attr:`Language.UNKNOWN`.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from langdetect import DetectorFactory, detect
from langdetect.lang_detect_exception import LangDetectException

from chunkflow.models.chunk import Language

logger = structlog.get_logger(logger_name=__name__)

# langdetect is randomised; a fixed seed makes results reproducible.
DetectorFactory.seed = 0

MIN_SAMPLE_LENGTH = 24

_WHITELIST: dict[str, Language] = {
    "en": Language.EN,
    "nl": Language.NL,
}


def _pad_sample(sample: str) -> str:
    if len(sample) >= MIN_SAMPLE_LENGTH:
        return sample
    repeats = MIN_SAMPLE_LENGTH // len(sample) + 1
    return (sample * repeats)[:MIN_SAMPLE_LENGTH]


class LanguageDetector:
    """Classifies text into :class:`Language`.

    Parameters
    ----------
    classifier:
        Callable returning an ISO 639-1 code for a sample.  Defaults to
        :func:`langdetect.detect`.
    """

    def __init__(self, classifier: Callable[[str], str] | None = None) -> None:
        self._classifier = classifier or detect

    def detect(self, text: str) -> Language:
        sample = text.strip() if text else ""
        if not sample:
            return Language.UNKNOWN

        try:
            code = self._classifier(_pad_sample(sample))
        except LangDetectException as exc:
            logger.debug("language_detection_failed", error=str(exc), length=len(sample))
            return Language.UNKNOWN

        return _WHITELIST.get((code or "").lower(), Language.UNKNOWN)
