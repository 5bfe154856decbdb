"""Base64 / bytes / data URI helpers and the WAV wrapper for raw speech PCM."""

import base64
import binascii
import struct

from stryp.errors import GenerationError

PCM_SAMPLE_RATE = 24000
WAV_HEADER_SIZE = 44

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "audio/wav": "wav",
    "audio/mpeg": "mp3",
}


def to_data_uri(mime_type: str, data: bytes | str) -> str:
    """Build a data URI from raw bytes or an already base64-encoded string."""
    if isinstance(data, bytes):
        data = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{data}"


def split_data_uri(uri: str) -> tuple[str, str]:
    """Return (mime_type, base64_payload) for a data URI."""
    if not uri.startswith("data:") or "," not in uri:
        raise ValueError("not a data URI")
    header, payload = uri.split(",", 1)
    mime_type = header[5:].split(";", 1)[0] or "image/png"
    return mime_type, payload


def decode_data_uri(uri: str) -> tuple[str, bytes]:
    """Return (mime_type, raw bytes) for a base64 data URI."""
    mime_type, payload = split_data_uri(uri)
    try:
        return mime_type, base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64 payload: {e}") from e


def extension_for(mime_type: str, default: str = "bin") -> str:
    return _EXTENSIONS.get(mime_type.lower(), default)


def is_local_preview(url: str | None) -> bool:
    """True for transient previews (inline data or a client-side blob marker)."""
    if not url:
        return False
    return url.startswith("data:") or url.startswith("blob:")


def wav_header(data_len: int, sample_rate: int = PCM_SAMPLE_RATE) -> bytes:
    """44-byte RIFF/WAVE header for mono 16-bit PCM."""
    channels = 1
    bits = 16
    block_align = channels * bits // 8
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_len,
        b"WAVE",
        b"fmt ",
        16,
        1,  # PCM
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bits,
        b"data",
        data_len,
    )


def pcm_to_wav(pcm: bytes, sample_rate: int = PCM_SAMPLE_RATE) -> bytes:
    return wav_header(len(pcm), sample_rate) + pcm


def pcm_base64_to_wav_data_uri(pcm_b64: str, sample_rate: int = PCM_SAMPLE_RATE) -> str:
    """Wrap base64 raw PCM from the speech model into a playable WAV data URI."""
    try:
        pcm = base64.b64decode(pcm_b64)
    except (binascii.Error, ValueError) as e:
        raise GenerationError(f"Audio payload is not valid base64: {e}") from e
    return to_data_uri("audio/wav", pcm_to_wav(pcm, sample_rate))
