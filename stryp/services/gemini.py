"""Async Gemini REST client: vision descriptions, images, submit-then-poll video, speech."""

import asyncio
import base64
import logging
import time

import httpx

from stryp.config import GEMINI_API_KEY
from stryp.errors import (
    GenerationError, GenerationTimeout, QuotaExceededError, EntitlementError,
)
from stryp.services.media import split_data_uri, to_data_uri, pcm_base64_to_wav_data_uri
from stryp.services.prompt_builder import (
    build_image_prompt, build_video_prompt,
    CHARACTER_DESCRIPTION_INSTRUCTION, LOCATION_DESCRIPTION_INSTRUCTION,
)

logger = logging.getLogger(__name__)

API_BASE = "https://generativelanguage.googleapis.com/v1beta"
VISION_MODEL = "gemini-2.0-flash"
IMAGE_MODEL = "gemini-2.5-flash-image"
VIDEO_MODEL = "veo-3.1-generate-preview"
SPEECH_MODEL = "gemini-2.5-flash-preview-tts"

IMAGE_TIMEOUT = 90  # seconds
SPEECH_TIMEOUT = 20
MEDIA_FETCH_TIMEOUT = 60
VISION_TIMEOUT = 60
REQUEST_TIMEOUT = 30
POLL_INTERVAL = 10
POLL_TIMEOUT = 420  # 7 minutes

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_NONE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]

IMAGE_QUOTA_MESSAGE = (
    "Quota exceeded: You have reached your API limit for image generation. "
    "Please try again later or check your billing details."
)
VIDEO_QUOTA_MESSAGE = (
    "VIDEO QUOTA EXCEEDED: video generation is highly limited. Please check your "
    "Google AI Studio quota or try a smaller project. You may need to enable billing "
    "if you are on a free tier."
)
SPEECH_ENTITLEMENT_MESSAGE = (
    "Audio generation is not enabled for this API key yet. Please ensure you are using "
    "a key from a region that supports Gemini audio."
)


class GeminiHTTPError(GenerationError):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"HTTP {status_code}: {body[:500]}")
        self.status_code = status_code
        self.body = body


class GeminiTransportError(GenerationError):
    """Network-level failure talking to the API (connection reset, DNS, ...)."""


def is_quota_signal(error: Exception) -> bool:
    if isinstance(error, GeminiHTTPError) and error.status_code == 429:
        return True
    text = str(error)
    return "429" in text or "RESOURCE_EXHAUSTED" in text or "quota" in text.lower()


def is_entitlement_signal(error: Exception) -> bool:
    if isinstance(error, GeminiHTTPError) and error.status_code == 403:
        return True
    text = str(error).lower()
    return "403" in text or "permission" in text or "api key" in text


def _api_key() -> str:
    if not GEMINI_API_KEY:
        raise GenerationError("GEMINI_API_KEY is not configured")
    return GEMINI_API_KEY


def _json(response: httpx.Response) -> dict:
    try:
        return response.json()
    except ValueError as e:
        raise GenerationError(f"Malformed response from the API: {response.text[:200]}") from e


async def _post(path: str, payload: dict, timeout: float = REQUEST_TIMEOUT) -> dict:
    key = _api_key()
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                f"{API_BASE}/{path}",
                params={"key": key},
                headers={"Content-Type": "application/json"},
                json=payload,
            )
    except httpx.TimeoutException:
        raise
    except httpx.HTTPError as e:
        raise GeminiTransportError(f"Request failed: {e}") from e
    if response.status_code >= 400:
        raise GeminiHTTPError(response.status_code, response.text)
    return _json(response)


async def _get(path: str, timeout: float = REQUEST_TIMEOUT) -> dict:
    key = _api_key()
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(f"{API_BASE}/{path}", params={"key": key})
    except httpx.TimeoutException:
        raise
    except httpx.HTTPError as e:
        raise GeminiTransportError(f"Request failed: {e}") from e
    if response.status_code >= 400:
        raise GeminiHTTPError(response.status_code, response.text)
    return _json(response)


async def _with_timeout(coro, seconds: float, message: str):
    try:
        return await asyncio.wait_for(coro, timeout=seconds)
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        raise GenerationTimeout(message) from e


def _inline(part: dict) -> dict | None:
    return part.get("inlineData") or part.get("inline_data")


def _mime(inline: dict, default: str = "") -> str:
    return inline.get("mimeType") or inline.get("mime_type") or default


def _parts(response: dict) -> list[dict]:
    candidates = response.get("candidates") or []
    if not candidates:
        return []
    return (candidates[0].get("content") or {}).get("parts") or []


def response_text(response: dict) -> str:
    return "".join(p.get("text", "") for p in _parts(response) if "text" in p)


# ===== Media fetching =====

async def fetch_media(url: str) -> tuple[str, str]:
    """Return (mime_type, base64_data) for a reference image/video URL or data URI."""
    if url.startswith("data:"):
        try:
            return split_data_uri(url)
        except ValueError as e:
            raise GenerationError(f"Invalid data URI: {e}") from e

    async def _download():
        async with httpx.AsyncClient(timeout=MEDIA_FETCH_TIMEOUT, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            mime = resp.headers.get("content-type", "image/png").split(";")[0]
            return mime, resp.content

    try:
        mime, data = await _with_timeout(
            _download(), MEDIA_FETCH_TIMEOUT,
            "Media fetch timed out (60s). File might be too large or connection too slow.",
        )
    except httpx.HTTPError as e:
        raise GenerationError(f"Media fetch failed: {e}") from e
    return mime, base64.b64encode(data).decode("ascii")


async def _describe(parts: list[dict]) -> str:
    response = await _with_timeout(
        _post(f"models/{VISION_MODEL}:generateContent", {"contents": [{"parts": parts}]}),
        VISION_TIMEOUT, "Visual description timed out",
    )
    return response_text(response)


# ===== Visual descriptions =====

async def describe_character(character: dict, fallback_to_bio: bool = True) -> str:
    """Describe a character's appearance from its reference image(s).

    With fallback_to_bio the bio is returned on any failure (pre-step for image
    generation); without it the failure propagates (explicit analyze action).
    """
    bio = character.get("bio") or ""
    if not character.get("image_url"):
        return bio

    try:
        parts = []
        mime, data = await fetch_media(character["image_url"])
        parts.append({"inlineData": {"mimeType": mime, "data": data}})

        if character.get("image_url2"):
            try:
                mime2, data2 = await fetch_media(character["image_url2"])
                parts.append({"inlineData": {"mimeType": mime2, "data": data2}})
            except GenerationError as e:
                logger.warning("[gemini] Failed to fetch second reference image: %s", e)

        parts.append({"text": CHARACTER_DESCRIPTION_INSTRUCTION})
        description = await _describe(parts)
    except GenerationError as e:
        if not fallback_to_bio:
            raise
        logger.warning("[gemini] Failed to get visual description: %s", e)
        return bio

    return description + (f" Context: {bio}" if bio else "")


async def describe_location(media_items: list[dict]) -> str:
    """One unified background description from every loadable media item."""
    if not media_items:
        return ""

    parts = []
    for item in media_items:
        try:
            mime, data = await fetch_media(item["url"])
            parts.append({"inlineData": {"mimeType": mime, "data": data}})
        except GenerationError as e:
            logger.warning("[gemini] Skipping failed media item %s: %s", item.get("url", "")[:80], e)

    if not parts:
        raise GenerationError("No media could be loaded")

    parts.append({"text": LOCATION_DESCRIPTION_INSTRUCTION.format(count=len(media_items))})
    return await _describe(parts)


# ===== Image =====

async def generate_image(description: str, character: dict | None = None,
                         location: dict | None = None) -> str:
    """Generate a panel image. Returns a data URI."""
    visual_description = ""
    if character:
        visual_description = await describe_character(character, fallback_to_bio=True)

    prompt = build_image_prompt(description, character, visual_description, location)
    logger.debug("[gemini] Image prompt: %s", prompt)

    payload = {
        "contents": [{
            "role": "user",
            "parts": [{"text": "Generate an image based on this description:\n\n" + prompt}],
        }],
        "safetySettings": SAFETY_SETTINGS,
        "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
    }

    try:
        response = await _with_timeout(
            _post(f"models/{IMAGE_MODEL}:generateContent", payload, timeout=IMAGE_TIMEOUT),
            IMAGE_TIMEOUT, "Image generation timed out",
        )
    except GenerationTimeout:
        raise
    except GenerationError as e:
        logger.error("[gemini] Image generation error: %s", e)
        if is_quota_signal(e):
            raise QuotaExceededError(IMAGE_QUOTA_MESSAGE) from e
        raise

    if not response.get("candidates"):
        raise GenerationError("No candidates returned")

    for part in _parts(response):
        inline = _inline(part)
        if inline and inline.get("data"):
            return to_data_uri(_mime(inline, "image/png"), inline["data"])

    raise GenerationError("No image generated in response. The model may have returned text instead.")


# ===== Video =====

def _operation_name(op: dict) -> str:
    name = op.get("name") or (op.get("operation") or {}).get("name") or (op.get("metadata") or {}).get("name")
    if not name:
        keys = ", ".join(op.keys()) or "empty"
        raise GenerationError(f"Video generation started but operation name is missing. Response keys: {keys}")
    if name.startswith("operations/"):
        name = f"models/{VIDEO_MODEL}/{name}"
    return name


def _video_from_inline(inline: dict | None) -> str | None:
    if inline and inline.get("data"):
        return to_data_uri(_mime(inline, "video/mp4"), inline["data"])
    return None


def _video_part(candidate: dict) -> str | None:
    for part in (candidate.get("content") or {}).get("parts") or []:
        inline = _inline(part)
        if inline and _mime(inline).startswith("video/"):
            return _video_from_inline(inline)
    return None


def extract_video_data(response: dict) -> str:
    """Normalize the finished video operation response into a data URI.

    The envelope is not uniform; candidate locations are tried in order and a
    typed error is raised only when all of them miss.
    """
    candidates = response.get("candidates") or response.get("videoCandidates") or []
    candidate = candidates[0] if candidates else response
    candidate_video = candidate.get("video") if isinstance(candidate.get("video"), dict) else {}
    response_video = response.get("video") if isinstance(response.get("video"), dict) else {}

    extractors = [
        lambda: _video_part(candidate),
        lambda: _video_from_inline(_inline(candidate)),
        lambda: _video_from_inline(_inline(candidate_video)),
        lambda: _video_from_inline(candidate) if _mime(candidate) else None,
        lambda: _video_from_inline(response_video) if _mime(response_video) else None,
        lambda: _generated_sample_video(response),
    ]
    for extract in extractors:
        found = extract()
        if found:
            return found

    if _video_uri(response):
        raise GenerationError(
            "Video generated but returned as URI which is not supported. "
            "Please ensure your API key supports inline data returns."
        )
    raise GenerationError("no video data")


def _generated_samples(response: dict) -> list[dict]:
    envelope = response.get("generateVideoResponse") or response.get("generate_video_response") or {}
    return envelope.get("generatedSamples") or envelope.get("generated_samples") or []


def _generated_sample_video(response: dict) -> str | None:
    samples = _generated_samples(response)
    if not samples:
        return None
    video = samples[0].get("video") or {}
    data = video.get("bytesBase64Encoded") or video.get("data")
    if data:
        return to_data_uri(_mime(video, "video/mp4"), data)
    return None


def _video_uri(response: dict) -> str | None:
    video = response.get("video")
    if isinstance(video, dict) and video.get("uri"):
        return video["uri"]
    if response.get("uri"):
        return response["uri"]
    samples = _generated_samples(response)
    if samples:
        return (samples[0].get("video") or {}).get("uri")
    return None


async def _poll_operation(name: str, poll_interval: float, poll_timeout: float) -> dict:
    """Poll until the operation reports done or the ceiling is reached."""
    started = time.monotonic()
    while True:
        if time.monotonic() - started > poll_timeout:
            raise GenerationTimeout("Video generation timed out (7 minute limit reached).")
        try:
            operation = await _get(name)
            logger.info("[gemini] Operation %s status: %s", name, "DONE" if operation.get("done") else "PENDING")
            if operation.get("done"):
                return operation
        except GeminiHTTPError as e:
            logger.warning("[gemini] Polling HTTP error: %s", e.status_code)
        except (GeminiTransportError, httpx.TimeoutException) as e:
            logger.warning("[gemini] Polling failed: %s", e)
        await asyncio.sleep(poll_interval)


async def generate_video(description: str, character: dict | None = None,
                         location: dict | None = None,
                         poll_interval: float = POLL_INTERVAL,
                         poll_timeout: float = POLL_TIMEOUT) -> str:
    """Generate a panel video via a long-running operation. Returns a data URI."""
    visual_description = ""
    if character:
        visual_description = await describe_character(character, fallback_to_bio=True)
    prompt = build_video_prompt(description, character, visual_description, location)
    logger.debug("[gemini] Video prompt: %s", prompt)

    try:
        op = await _with_timeout(
            _post(f"models/{VIDEO_MODEL}:predictLongRunning", {"instances": [{"prompt": prompt}]}),
            REQUEST_TIMEOUT, "Video generation request timed out",
        )
        name = _operation_name(op or {})
        logger.info("[gemini] Video generation started. Operation: %s", name)

        operation = await _poll_operation(name, poll_interval, poll_timeout)
    except GenerationTimeout:
        raise
    except GenerationError as e:
        logger.error("[gemini] Video generation failed: %s", e)
        if is_quota_signal(e):
            raise QuotaExceededError(VIDEO_QUOTA_MESSAGE) from e
        raise

    if operation.get("error"):
        err = operation["error"]
        raise GenerationError(f"Video generation failed: {err.get('message') or err}")

    response = operation.get("response")
    if not response:
        raise GenerationError("Video generation completed but returned an empty response.")
    return extract_video_data(response)


# ===== Speech =====

async def generate_speech(text: str, voice_id: str = "Puck") -> str:
    """Text to speech. Returns a WAV data URI (24 kHz mono 16-bit PCM)."""
    payload = {
        "contents": [{"role": "user", "parts": [{"text": text}]}],
        "generationConfig": {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice_id}},
            },
        },
    }
    try:
        response = await _with_timeout(
            _post(f"models/{SPEECH_MODEL}:generateContent", payload, timeout=SPEECH_TIMEOUT),
            SPEECH_TIMEOUT, "Audio generation timed out",
        )
    except GenerationTimeout:
        raise
    except GenerationError as e:
        logger.error("[gemini] Speech generation failed: %s", e)
        if is_entitlement_signal(e):
            raise EntitlementError(SPEECH_ENTITLEMENT_MESSAGE) from e
        if is_quota_signal(e):
            raise QuotaExceededError(f"Audio generation failed: {e}") from e
        raise GenerationError(f"Audio generation failed: {e}") from e

    parts = _parts(response)
    inline = _inline(parts[0]) if parts else None
    if not inline or not inline.get("data"):
        raise GenerationError("No audio generated. Check AI safety settings or dialogue content.")
    return pcm_base64_to_wav_data_uri(inline["data"])
