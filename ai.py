import base64
import logging
from typing import Optional, Sequence

import httpx

log = logging.getLogger("growbuddy.ai")

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

DEFAULT_MODELS = {
    "gemini": "gemini-flash-latest",
    "ollama": "llama2",
    "openai": "gpt-3.5-turbo",
}
TIMEOUTS = {"ollama": 120.0, "gemini": 60.0, "openai": 60.0}

STRAIN_SYSTEM_PROMPT = (
    "You are a cannabis expert. Provide detailed information about cannabis strains including: "
    "type (Indica/Sativa/Hybrid), THC/CBD content, effects, flavors/terpenes, and growing info "
    "(flowering time, yield, difficulty). Be specific and accurate."
)
ASK_SYSTEM_PROMPT = (
    "You are a cannabis cultivation expert helping home growers. Answer clearly and practically. "
    "When photos are attached, look for signs of deficiencies, pests, disease or environmental "
    "stress and say what you see before recommending anything."
)


class AIError(Exception):
    """Failure talking to the AI provider. The message is safe to show to users."""


def detect_provider(provider: str, api_key: Optional[str], api_url: Optional[str]) -> str:
    provider = (provider or "auto").lower()
    if provider in ("openai", "gemini", "ollama"):
        return provider
    if api_key and api_key.startswith("AIza"):
        return "gemini"
    if api_url and ("ollama" in api_url or "11434" in api_url):
        return "ollama"
    return "openai"


def normalize_gemini_model(model: Optional[str]) -> str:
    model = (model or "").strip()
    if not model.startswith("gemini-"):
        return DEFAULT_MODELS["gemini"]
    aliases = {
        "gemini-1.5-flash": "gemini-2.5-flash",
        "gemini-1.5-flash-latest": "gemini-2.5-flash",
        "gemini-1.5-pro": "gemini-2.5-pro",
        "gemini-1.5-pro-latest": "gemini-2.5-pro",
        "gemini-pro": "gemini-pro-latest",
        "gemini-flash": "gemini-flash-latest",
    }
    return aliases.get(model, model)


def ollama_generate_url(url: str) -> str:
    if "/api/generate" in url:
        return url
    if "/v1/chat/completions" in url:
        return url.replace("/v1/chat/completions", "/api/generate")
    return url.rstrip("/") + "/api/generate"


class AIClient:
    """Question answering over an OpenAI-compatible, Gemini or Ollama endpoint."""

    def __init__(self, api_key: Optional[str] = None, api_url: Optional[str] = None,
                 model: Optional[str] = None, provider: str = "auto",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.provider = detect_provider(provider, api_key, api_url)
        self.model = (model or "").strip() or DEFAULT_MODELS[self.provider]
        if self.provider == "gemini":
            self.model = normalize_gemini_model(self.model)
        self.api_url = api_url or OPENAI_URL
        self._transport = transport

    @property
    def configured(self) -> bool:
        return self.provider == "ollama" or bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=TIMEOUTS[self.provider], transport=self._transport)

    async def strain_info(self, strain: str) -> str:
        return await self._complete(STRAIN_SYSTEM_PROMPT, f"Tell me about the cannabis strain: {strain}")

    async def ask(self, question: str, image_urls: Sequence[str] = ()) -> str:
        return await self._complete(ASK_SYSTEM_PROMPT, question, image_urls)

    async def _complete(self, system: str, user: str, image_urls: Sequence[str] = ()) -> str:
        if not self.configured:
            raise AIError(
                "AI is not configured. Set GEMINI_API_KEY or OPENAI_API_KEY, "
                "or point OPENAI_API_URL at an Ollama instance."
            )
        async with self._client() as client:
            images = [await self._fetch_image(client, url) for url in image_urls]
            url, headers, body = self.build_request(system, user, images)
            log.info("%s request, model=%s, images=%d", self.provider, self.model, len(images))
            try:
                response = await client.post(url, headers=headers, json=body)
            except httpx.TimeoutException as e:
                raise AIError("The AI provider took too long to answer. Please try again.") from e
            except httpx.HTTPError as e:
                raise AIError(f"Could not reach the AI provider: {type(e).__name__}") from e

        if response.status_code >= 400:
            log.error("%s error %s: %s", self.provider, response.status_code, response.text[:500])
            raise AIError(f"AI API error: {response.status_code} - {self._error_detail(response)}")
        answer = self.parse_response(response.json())
        if not answer.strip():
            raise AIError("The AI returned an empty response. Please try rephrasing your question.")
        return answer.strip()

    async def _fetch_image(self, client: httpx.AsyncClient, url: str) -> tuple:
        if not url.startswith(("http://", "https://")):
            raise AIError("Invalid image URL, must start with http:// or https://")
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise AIError(f"Could not download an attached image: {type(e).__name__}") from e
        mime = response.headers.get("content-type", "image/jpeg").split(";")[0]
        return mime, base64.b64encode(response.content).decode("ascii")

    def build_request(self, system: str, user: str, images: Sequence[tuple] = ()) -> tuple:
        """(url, headers, json body) for the configured provider. `images` are (mime, base64) pairs."""
        headers = {"Content-Type": "application/json"}

        if self.provider == "gemini":
            parts = [{"text": f"{system}\n\n{user}"}]
            parts += [{"inline_data": {"mime_type": mime, "data": data}} for mime, data in images]
            headers["x-goog-api-key"] = self.api_key
            return GEMINI_URL.format(model=self.model), headers, {"contents": [{"parts": parts}]}

        if self.provider == "ollama":
            body = {"model": self.model, "prompt": f"{system}\n\n{user}", "stream": False}
            if images:
                body["images"] = [data for _, data in images]
            return ollama_generate_url(self.api_url), headers, body

        content = user
        if images:
            content = [{"type": "text", "text": user}]
            content += [
                {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{data}"}}
                for mime, data in images
            ]
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": content},
            ],
            "max_tokens": 1000,
            "temperature": 0.7,
        }
        return self.api_url, headers, body

    def parse_response(self, payload: dict) -> str:
        try:
            if self.provider == "gemini":
                parts = payload["candidates"][0]["content"]["parts"]
                return "".join(p.get("text", "") for p in parts)
            if self.provider == "ollama":
                return payload["response"]
            return payload["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise AIError("Unexpected response format from the AI provider.") from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:200] or "Unknown error"
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            return error.get("message") or str(error)
        return str(error or payload)[:200]
