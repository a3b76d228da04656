from mindscript.worker.synthesis.base import (
    HttpSynthesizer,
    ProviderConfig,
    RateLimiter,
    SynthesisOptions,
    Synthesizer,
    VoiceInfo,
)
from mindscript.worker.synthesis.elevenlabs import ElevenLabsSynthesizer
from mindscript.worker.synthesis.manager import SynthesizerRegistry
from mindscript.worker.synthesis.openai import OpenAISynthesizer

__all__ = [
    "ElevenLabsSynthesizer",
    "HttpSynthesizer",
    "OpenAISynthesizer",
    "ProviderConfig",
    "RateLimiter",
    "SynthesisOptions",
    "Synthesizer",
    "SynthesizerRegistry",
    "VoiceInfo",
]
