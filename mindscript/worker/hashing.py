import hashlib
import json


def calculate_voice_hash(
    text: str,
    voice: str,
    model: str | None,
    provider: str,
    speed: float = 1.0,
    pitch: float = 1.0,
    fmt: str = "mp3",
) -> str:
    """Content address for a synthesized speech chunk.

    Parameters are canonicalized (floats normalized, keys sorted) so `speed=1` and `speed=1.0`
    collide while any real change produces a new key.
    """
    canonical = {
        "text": text,
        "voice": voice,
        "model": model or "",
        "provider": provider,
        "speed": float(speed),
        "pitch": float(pitch),
        "format": fmt.lower(),
    }
    hasher = hashlib.sha256()
    hasher.update(json.dumps(canonical, sort_keys=True, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))
    return hasher.hexdigest()
