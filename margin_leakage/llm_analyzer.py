import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from google import genai
from google.genai import types
from openai import OpenAI, APIConnectionError, APIStatusError, APITimeoutError

from .core.config import Settings
from .core.exceptions import ConfigurationError, LLMServiceError, LLMTimeoutError
from .utils.helpers import mask_secret
from .utils.json_repair import extract_first_json_object

JSON_REMINDER = "\n\nREMINDER: Return ONLY a single-line JSON object and NOTHING ELSE."


@dataclass
class LLMResult:
    """Text reply from a hosted model plus token accounting."""
    text: str
    usage: Dict[str, Optional[int]] = field(default_factory=dict)
    finish_reason: Optional[str] = None
    model: Optional[str] = None
    duration_ms: int = 0


def _usage_from_metadata(meta: Any) -> Dict[str, Optional[int]]:
    if meta is None:
        return {"prompt_tokens": None, "candidates_tokens": None, "total_tokens": None}
    prompt_tokens = getattr(meta, "prompt_token_count", None)
    candidates_tokens = getattr(meta, "candidates_token_count", None)
    total_tokens = getattr(meta, "total_token_count", None)
    if total_tokens is None and prompt_tokens is not None and candidates_tokens is not None:
        total_tokens = prompt_tokens + candidates_tokens
    return {
        "prompt_tokens": prompt_tokens,
        "candidates_tokens": candidates_tokens,
        "total_tokens": total_tokens,
    }


class VertexGeminiClient:
    """Gemini models served through Vertex AI."""

    def __init__(self, project: Optional[str], location: str):
        self.project = project
        self.location = location
        self._client = None

    def _get_client(self):
        if self._client is None:
            if not self.project:
                raise ConfigurationError("Vertex AI project not configured", details="Set VERTEX_AI_PROJECT")
            print(f"🔧 Initializing Vertex AI client (project: {self.project}, location: {self.location})")
            self._client = genai.Client(vertexai=True, project=self.project, location=self.location)
        return self._client

    def generate(self, prompt: str, model: str, **kwargs) -> LLMResult:
        client = self._get_client()
        print(f"   🔄 Calling Vertex AI (generateContent)...")
        print(f"      • Model: {model}")
        print(f"      • Prompt length: {len(prompt):,} chars")

        start = time.time()
        try:
            response = client.models.generate_content(
                model=model,
                contents=[types.Content(role="user", parts=[types.Part.from_text(text=prompt)])],
            )
        except Exception as e:
            print(f"   ❌ Vertex AI generateContent failed: {e}")
            raise LLMServiceError("Vertex AI error", details=str(e))
        duration_ms = int((time.time() - start) * 1000)

        text = ""
        finish_reason = None
        candidates = getattr(response, "candidates", None) or []
        if candidates and candidates[0].content and candidates[0].content.parts:
            text = candidates[0].content.parts[0].text or ""
            finish_reason = str(candidates[0].finish_reason) if candidates[0].finish_reason else None

        usage = _usage_from_metadata(getattr(response, "usage_metadata", None))
        print(f"   ✅ Vertex AI call success ({duration_ms} ms)")
        print(f"      • Prompt tokens: {usage['prompt_tokens']}")
        print(f"      • Candidate tokens: {usage['candidates_tokens']}")
        print(f"      • Total tokens: {usage['total_tokens']}")
        return LLMResult(text=text, usage=usage, finish_reason=finish_reason, model=model, duration_ms=duration_ms)


class OpenRouterClient:
    """OpenAI-compatible chat completions through OpenRouter."""

    def __init__(self, api_key: Optional[str], base_url: str, referer: str, title: str = "DataCombiner"):
        self.api_key = api_key
        self.base_url = base_url
        self.referer = referer
        self.title = title
        self._clients: Dict[float, OpenAI] = {}

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self, timeout: float) -> OpenAI:
        if not self.api_key:
            raise ConfigurationError("OpenRouter API key not configured", details="Set OPENROUTER_API_KEY")
        if timeout not in self._clients:
            print(f"🔑 OpenRouter key configured: {mask_secret(self.api_key)}")
            self._clients[timeout] = OpenAI(
                base_url=self.base_url,
                api_key=self.api_key,
                timeout=timeout,
                max_retries=0,
                default_headers={"HTTP-Referer": self.referer, "X-Title": self.title},
            )
        return self._clients[timeout]

    def generate(self, prompt: str, model: str, temperature: float = 0.1,
                 max_tokens: int = 4000, timeout: float = 180, **kwargs) -> LLMResult:
        client = self._get_client(timeout)
        print(f"   🔄 Making OpenRouter API call...")
        print(f"      • Model: {model}")
        print(f"      • Prompt length: {len(prompt):,} chars")

        start = time.time()
        try:
            response = client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except APITimeoutError as e:
            print(f"   ⏱️ OpenRouter request timed out after {timeout}s")
            raise LLMTimeoutError(
                "Processing timeout. Try smaller datasets or simpler operations.", details=str(e)
            )
        except APIStatusError as e:
            print(f"   ❌ OpenRouter returned HTTP {e.status_code}")
            raise LLMServiceError("AI service error", details=str(e), status_code=e.status_code)
        except APIConnectionError as e:
            print(f"   ❌ OpenRouter connection failed: {e}")
            raise LLMServiceError("AI service unavailable", details=str(e))
        duration_ms = int((time.time() - start) * 1000)

        if not response.choices:
            raise LLMServiceError("AI service error", details="No choices returned")
        choice = response.choices[0]
        usage = {
            "prompt_tokens": response.usage.prompt_tokens if response.usage else None,
            "candidates_tokens": response.usage.completion_tokens if response.usage else None,
            "total_tokens": response.usage.total_tokens if response.usage else None,
        }
        print(f"   ✅ OpenRouter call completed ({duration_ms} ms, finish: {choice.finish_reason})")
        return LLMResult(
            text=(choice.message.content if choice.message else "") or "",
            usage=usage,
            finish_reason=choice.finish_reason,
            model=model,
            duration_ms=duration_ms,
        )


def generate_json_with_retry(client, prompt: str, model: str, attempts: int = 3,
                             reminder: str = JSON_REMINDER) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Call ``client`` until a JSON object can be extracted from its reply.

    Each round asks once and, when no object comes back, re-asks with a strict
    reminder appended. Returns the last raw text and the parsed object (or None).
    """
    raw = ""
    for attempt in range(1, attempts + 1):
        try:
            raw = client.generate(prompt, model=model).text
            parsed = extract_first_json_object(raw)
            if parsed is not None:
                return raw, parsed

            print(f"   ⚠️ Attempt {attempt}: no JSON object in reply, re-prompting with reminder")
            raw = client.generate(prompt + reminder, model=model).text
            parsed = extract_first_json_object(raw)
            if parsed is not None:
                return raw, parsed
        except LLMServiceError as e:
            print(f"   ⚠️ Attempt {attempt} failed: {e.message} ({e.details})")
    return raw, None


def build_vertex_client(settings: Settings) -> VertexGeminiClient:
    return VertexGeminiClient(project=settings.vertex_project, location=settings.vertex_location)


def build_openrouter_client(settings: Settings, title: str = "DataCombiner") -> OpenRouterClient:
    return OpenRouterClient(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
        referer=settings.app_domain,
        title=title,
    )
