import base64
import json

import httpx
import pytest

from ai import (
    DEFAULT_MODELS,
    AIClient,
    AIError,
    detect_provider,
    normalize_gemini_model,
    ollama_generate_url,
)


@pytest.mark.parametrize(
    "provider, key, url, expected",
    [
        ("auto", "AIzaSyExample", None, "gemini"),
        ("auto", "sk-test", None, "openai"),
        ("auto", None, "http://localhost:11434", "ollama"),
        ("auto", None, "http://ollama.internal/v1/chat/completions", "ollama"),
        ("OpenAI", "AIzaSyExample", None, "openai"),
        ("", None, None, "openai"),
    ],
)
def test_detect_provider(provider, key, url, expected):
    assert detect_provider(provider, key, url) == expected


def test_gemini_model_normalized():
    assert normalize_gemini_model("gemini-1.5-flash") == "gemini-2.5-flash"
    assert normalize_gemini_model("gpt-4o") == DEFAULT_MODELS["gemini"]
    assert normalize_gemini_model("gemini-2.5-pro") == "gemini-2.5-pro"


def test_ollama_url():
    assert ollama_generate_url("http://localhost:11434") == "http://localhost:11434/api/generate"
    assert ollama_generate_url("http://h:11434/v1/chat/completions") == "http://h:11434/api/generate"


def test_openai_request_with_image():
    client = AIClient(api_key="sk-test")
    url, headers, body = client.build_request("sys", "what is this?", [("image/png", "AAAA")])
    assert url == "https://api.openai.com/v1/chat/completions"
    assert headers["Authorization"] == "Bearer sk-test"
    assert body["model"] == "gpt-3.5-turbo"
    user = body["messages"][1]["content"]
    assert user[0] == {"type": "text", "text": "what is this?"}
    assert user[1]["image_url"]["url"] == "data:image/png;base64,AAAA"


def test_gemini_request_keeps_key_out_of_url():
    client = AIClient(api_key="AIzaSyExample", model="gemini-1.5-pro")
    url, headers, body = client.build_request("sys", "hi", [("image/jpeg", "BBBB")])
    assert "AIzaSyExample" not in url
    assert url.endswith("/models/gemini-2.5-pro:generateContent")
    assert headers["x-goog-api-key"] == "AIzaSyExample"
    parts = body["contents"][0]["parts"]
    assert parts[0]["text"] == "sys\n\nhi"
    assert parts[1] == {"inline_data": {"mime_type": "image/jpeg", "data": "BBBB"}}


def test_ollama_request():
    client = AIClient(api_url="http://localhost:11434")
    assert client.configured
    url, headers, body = client.build_request("sys", "hi", [("image/jpeg", "CCCC")])
    assert url == "http://localhost:11434/api/generate"
    assert "Authorization" not in headers
    assert body == {"model": "llama2", "prompt": "sys\n\nhi", "stream": False, "images": ["CCCC"]}


def test_parse_responses():
    assert AIClient(api_key="sk").parse_response({"choices": [{"message": {"content": "ok"}}]}) == "ok"
    gemini = AIClient(api_key="AIza-key")
    assert gemini.parse_response({"candidates": [{"content": {"parts": [{"text": "a"}, {"text": "b"}]}}]}) == "ab"
    with pytest.raises(AIError):
        gemini.parse_response({"candidates": []})


async def test_not_configured():
    with pytest.raises(AIError, match="not configured"):
        await AIClient().strain_info("Blue Dream")


async def test_strain_info_round_trip():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "  Sativa leaning.  "}}]})

    client = AIClient(api_key="sk-test", transport=httpx.MockTransport(handler))
    assert await client.strain_info("Durban Poison") == "Sativa leaning."
    assert "Durban Poison" in seen["body"]["messages"][1]["content"]


async def test_ask_inlines_downloaded_images():
    photo = b"\xff\xd8jpeg-bytes"
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, content=photo, headers={"content-type": "image/jpeg"})
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "Nitrogen deficiency."}]}}]})

    client = AIClient(api_key="AIza-key", transport=httpx.MockTransport(handler))
    answer = await client.ask("yellow leaves?", ["https://api.telegram.org/file/botSECRET/photo.jpg"])

    assert answer == "Nitrogen deficiency."
    post = requests[-1]
    body = json.loads(post.content)
    inline = body["contents"][0]["parts"][1]["inline_data"]
    assert inline["data"] == base64.b64encode(photo).decode("ascii")
    assert b"botSECRET" not in post.content


async def test_http_error_becomes_ai_error():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "Incorrect API key"}})

    client = AIClient(api_key="sk-bad", transport=httpx.MockTransport(handler))
    with pytest.raises(AIError, match="401 - Incorrect API key"):
        await client.ask("hi")


async def test_empty_answer_is_error():
    def handler(request):
        return httpx.Response(200, json={"response": "   "})

    client = AIClient(api_url="http://localhost:11434", transport=httpx.MockTransport(handler))
    with pytest.raises(AIError, match="empty response"):
        await client.ask("hi")


async def test_non_http_image_url_refused():
    client = AIClient(api_key="sk-test", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    with pytest.raises(AIError, match="Invalid image URL"):
        await client.ask("hi", ["file-id-123"])
