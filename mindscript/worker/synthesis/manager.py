import logging

from mindscript.worker.exceptions import ProviderUnavailableError
from mindscript.worker.synthesis.base import Synthesizer

log = logging.getLogger("synthesizer_registry")


class SynthesizerRegistry:
    """Holds the TTS providers this worker was built with.

    A provider that is missing, or present without credentials, is reported as unavailable at
    lookup time instead of failing somewhere inside the pipeline.
    """

    def __init__(self, synthesizers: list[Synthesizer] | None = None) -> None:
        self._synthesizers: dict[str, Synthesizer] = {s.name: s for s in synthesizers or []}

    def get(self, name: str) -> Synthesizer:
        synthesizer = self._synthesizers.get(name)
        if synthesizer is None:
            raise ProviderUnavailableError(name, message=f"TTS provider {name!r} is not registered on this worker")
        if not synthesizer.is_available():
            raise ProviderUnavailableError(name)
        return synthesizer

    def available(self) -> list[str]:
        return [name for name, s in self._synthesizers.items() if s.is_available()]

    async def start(self) -> None:
        for synthesizer in self._synthesizers.values():
            await synthesizer.initialize()
        log.info(f"TTS providers available: {', '.join(self.available()) or 'none'}")

    async def stop(self) -> None:
        for synthesizer in self._synthesizers.values():
            await synthesizer.aclose()
        log.info("All TTS providers closed")
