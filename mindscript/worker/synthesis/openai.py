"""OpenAI TTS via the /audio/speech endpoint."""

import httpx

from mindscript.worker.exceptions import SynthesisValidationError
from mindscript.worker.synthesis.base import HttpSynthesizer, SynthesisOptions, VoiceInfo

OPENAI_VOICES = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")
OPENAI_MODELS = ("tts-1", "tts-1-hd")
OPENAI_FORMATS = ("mp3", "opus", "aac", "flac", "wav", "pcm")


class OpenAISynthesizer(HttpSynthesizer):
    name = "openai"
    max_chars = 4096
    default_base_url = "https://api.openai.com/v1"
    default_model = "tts-1"
    default_requests_per_minute = 50
    default_concurrent_requests = 5

    def validate(self, text: str, voice: str, options: SynthesisOptions) -> None:
        super().validate(text, voice, options)
        if voice not in OPENAI_VOICES:
            raise SynthesisValidationError(f"Unknown OpenAI voice {voice!r}", details={"provider": self.name})
        model = options.model or self.model
        if model not in OPENAI_MODELS:
            raise SynthesisValidationError(f"Unknown OpenAI model {model!r}", details={"provider": self.name})
        if options.format not in OPENAI_FORMATS:
            raise SynthesisValidationError(
                f"OpenAI cannot produce {options.format!r} audio", details={"provider": self.name}
            )

    async def _request(self, text: str, voice: str, options: SynthesisOptions) -> httpx.Response:
        return await self.client.post(
            f"{self.base_url}/audio/speech",
            json={
                "model": options.model or self.model,
                "voice": voice,
                "input": text,
                "response_format": options.format,
                "speed": options.speed,
            },
            headers={"Authorization": f"Bearer {self.config.api_key}"},
        )

    async def list_voices(self) -> list[VoiceInfo]:
        # OpenAI has no voice listing endpoint; the set is fixed
        return [VoiceInfo(id=v, name=v.capitalize(), provider=self.name) for v in OPENAI_VOICES]
