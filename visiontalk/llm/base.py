import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from loguru import logger

# "ANSWER:" / "ANALYSIS:" at the start of a line, optionally in markdown bold
ANSWER_LABEL = re.compile(r"^\s*\**\s*ANSWER\s*\**\s*:\s*\**\s*", re.IGNORECASE | re.MULTILINE)
ANALYSIS_LABEL = re.compile(r"^\s*\**\s*ANALYSIS\s*\**\s*:\s*\**\s*", re.IGNORECASE | re.MULTILINE)


@dataclass(frozen=True)
class AnalysisResult:
    full_text: str
    short_answer: Optional[str] = None


def parse_labeled_response(text: str) -> AnalysisResult:
    """Split a model response into its ANSWER and ANALYSIS blocks.

    The vision prompt asks for a short "ANSWER:" block followed by an
    optional "ANALYSIS:" block. When the labels are missing the whole
    response is the full text and there is no short answer.
    """
    text = (text or "").strip()
    answer_match = ANSWER_LABEL.search(text)
    if answer_match is None:
        return AnalysisResult(full_text=text)

    rest = text[answer_match.end():]
    analysis_match = ANALYSIS_LABEL.search(rest)
    if analysis_match is None:
        answer = rest.strip()
        analysis = ""
    else:
        answer = rest[:analysis_match.start()].strip()
        analysis = rest[analysis_match.end():].strip()

    full_text = "\n\n".join(part for part in (answer, analysis) if part) or text
    return AnalysisResult(full_text=full_text, short_answer=answer or None)


class BaseVisionAnalyzer(ABC):
    """Abstract base class for vision analysis providers."""

    @abstractmethod
    async def analyze(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> AnalysisResult:
        """Explain what the image shows.

        Raises:
            AnalysisFailure: the provider failed or returned nothing.
        """
        ...

    async def close(self):
        pass


class StaticAnalyzer(BaseVisionAnalyzer):
    """Fallback used when no API key is configured: always says the same thing."""

    def __init__(self, text: str = "I took a picture, but I can't analyze it right now."):
        self.text = text

    async def analyze(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> AnalysisResult:
        logger.info("[VISION] No provider configured, using static response.")
        return AnalysisResult(full_text=self.text)
