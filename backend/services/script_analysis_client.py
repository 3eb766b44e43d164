"""
Script analysis client (OpenAI-compatible chat completions endpoint).

Splits a script into numbered scenes with a shared character prompt.
"""

import json
from typing import List, Optional

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from config import settings
from pipeline.error_handler import ProviderError

logger = structlog.get_logger(__name__)

PROVIDER_NAME = "Script analysis"

SYSTEM_PROMPT = """You are a script analyst and film director. Split the script into video scenes.

Rules:
1. Detect the language and dialect of the text
2. Detect the content type (advertisement, story, educational, ...)
3. Split the text into scenes of at most 10 seconds each
4. Count words and estimate the duration of each scene (Arabic: 2 words/second, English: 2.5 words/second)
5. Never cut a sentence; move the whole sentence to the next scene if needed
6. Write one fixed character description (characterPrompt) reused by every scene
7. Number the scenes starting at 1
8. Do not translate or rephrase; keep the original text

Return JSON only, shaped like:
{"language": "...", "dialect": "...", "contentType": "...", "sceneCount": 5,
 "scenes": [{"sceneNumber": 1, "textContent": "...", "wordCount": 15,
             "estimatedDuration": 7.5, "characterPrompt": "...", "notes": "..."}]}"""

CHARACTER_IMAGE_NOTE = (
    "The user uploaded a character reference image. "
    'Use "the same character from the attached image" in characterPrompt.'
)


class AnalyzedScene(BaseModel):
    sceneNumber: int = Field(..., ge=1)
    textContent: str = Field(..., min_length=1)
    wordCount: Optional[int] = None
    estimatedDuration: Optional[float] = None
    characterPrompt: Optional[str] = None
    notes: Optional[str] = None


class AnalysisResult(BaseModel):
    language: Optional[str] = None
    dialect: Optional[str] = None
    contentType: Optional[str] = None
    sceneCount: Optional[int] = None
    scenes: List[AnalyzedScene] = Field(default_factory=list)


class ScriptAnalysisClient:
    """Async wrapper over the analysis LLM."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.SCRIPT_ANALYSIS_BASE_URL).rstrip("/")
        self.model = model or settings.SCRIPT_ANALYSIS_MODEL
        self.timeout = timeout or settings.PROVIDER_TIMEOUT
        self.transport = transport

    def build_request(self, script: str, has_character_image: bool = False) -> dict:
        system_prompt = SYSTEM_PROMPT
        if has_character_image:
            system_prompt = f"{system_prompt}\n\n{CHARACTER_IMAGE_NOTE}"
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": f"Script:\n\n{script}"},
            ],
            "temperature": 0.7,
            "response_format": {"type": "json_object"},
        }

    async def analyze(self, api_key: str, script: str, has_character_image: bool = False) -> AnalysisResult:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                "/chat/completions",
                json=self.build_request(script, has_character_image),
                headers={"Authorization": f"Bearer {api_key}"},
            )

        if response.status_code >= 400:
            raise ProviderError(PROVIDER_NAME, response.text or "Analysis request failed", response.status_code)

        try:
            content = response.json()["choices"][0]["message"]["content"]
            result = AnalysisResult.model_validate(json.loads(content))
        except (KeyError, IndexError, TypeError, json.JSONDecodeError, ValidationError) as e:
            raise ProviderError(PROVIDER_NAME, f"Unparseable analysis response: {e}")

        if not result.scenes:
            raise ProviderError(PROVIDER_NAME, "Analysis returned no scenes")

        logger.info("script_analyzed", scene_count=len(result.scenes), language=result.language)
        return result
