import base64

from loguru import logger

from core.errors import AnalysisFailure
from core.events import EventRecorder
from llm.base import AnalysisResult, BaseVisionAnalyzer, parse_labeled_response
from llm.prompts import USER_PROMPT, build_system_prompt


class OpenAIVisionAnalyzer(BaseVisionAnalyzer):
    """OpenAI chat-completions vision provider (GPT-4o by default)."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        max_tokens: int = 600,
        temperature: float = 0.7,
        recorder: EventRecorder | None = None,
        client=None,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.recorder = recorder
        self._client = client

    def _ensure_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)

    def _record(self, stage: str, detail: dict | None = None, error: str | None = None):
        if self.recorder:
            self.recorder.record(stage, detail, error)

    def build_messages(self, image_bytes: bytes, mime_type: str) -> list[dict]:
        image_b64 = base64.b64encode(image_bytes).decode("ascii")
        return [
            {"role": "system", "content": build_system_prompt()},
            {"role": "user", "content": [
                {"type": "text", "text": USER_PROMPT},
                {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_b64}"}},
            ]},
        ]

    async def analyze(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> AnalysisResult:
        if not self.api_key and self._client is None:
            logger.error("OpenAI API key not configured.")
            raise AnalysisFailure("OpenAI API key not configured")

        self._ensure_client()
        messages = self.build_messages(image_bytes, mime_type)

        logger.debug("[VISION] Sending image analysis request ({} bytes)", len(image_bytes))
        self._record("openai_request_sent", {"model": self.model, "bytes": len(image_bytes)})
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as e:
            logger.warning("[VISION] OpenAI error: {}", e)
            self._record("openai_error", {"model": self.model}, error=str(e))
            raise AnalysisFailure(f"OpenAI API error: {e}") from e

        content = None
        if response.choices:
            content = response.choices[0].message.content
        content = (content or "").strip()
        if not content:
            self._record("openai_empty_response")
            raise AnalysisFailure("No analysis received from the vision model")

        logger.debug("[VISION] Analysis complete: {}...", content[:100])
        self._record("openai_response_ok", {"excerpt": content[:160], "length": len(content)})
        return parse_labeled_response(content)

    async def close(self):
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
