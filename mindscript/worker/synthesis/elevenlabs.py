"""ElevenLabs TTS via /text-to-speech/{voice_id}."""

import httpx
from loguru import logger

from mindscript.worker.exceptions import ProviderError, SynthesisValidationError
from mindscript.worker.synthesis.base import HttpSynthesizer, SynthesisOptions, VoiceInfo

OUTPUT_FORMATS = {"mp3": "mp3_44100_128", "pcm": "pcm_44100"}
VOICE_SETTINGS = {
    "stability": 0.5,
    "similarity_boost": 0.75,
    "style": 0.0,
    "use_speaker_boost": True,
}


class ElevenLabsSynthesizer(HttpSynthesizer):
    name = "elevenlabs"
    max_chars = 5000
    default_base_url = "https://api.elevenlabs.io/v1"
    default_model = "eleven_monolingual_v1"
    default_requests_per_minute = 30
    default_concurrent_requests = 3

    def validate(self, text: str, voice: str, options: SynthesisOptions) -> None:
        super().validate(text, voice, options)
        if options.format not in OUTPUT_FORMATS:
            raise SynthesisValidationError(
                f"ElevenLabs cannot produce {options.format!r} audio", details={"provider": self.name}
            )

    async def _request(self, text: str, voice: str, options: SynthesisOptions) -> httpx.Response:
        return await self.client.post(
            f"{self.base_url}/text-to-speech/{voice}",
            params={"output_format": OUTPUT_FORMATS[options.format]},
            json={
                "text": text,
                "model_id": options.model or self.model,
                "voice_settings": VOICE_SETTINGS,
            },
            headers={"xi-api-key": self.config.api_key or "", "Accept": "audio/mpeg"},
        )

    async def list_voices(self) -> list[VoiceInfo]:
        if not self.is_available():
            return []
        async with self.limiter.slot():
            response = await self.client.get(f"{self.base_url}/voices", headers={"xi-api-key": self.config.api_key})
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderError(self.name, f"Listing voices failed: HTTP {e.response.status_code}") from e

        voices = []
        for raw in response.json().get("voices", []):
            try:
                voices.append(
                    VoiceInfo(
                        id=raw["voice_id"],
                        name=raw.get("name") or raw["voice_id"],
                        provider=self.name,
                        labels={k: str(v) for k, v in (raw.get("labels") or {}).items()},
                        preview_url=raw.get("preview_url"),
                    )
                )
            except KeyError:
                logger.warning(f"Skipping ElevenLabs voice without id: {raw!r}")
        return voices
