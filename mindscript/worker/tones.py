"""Solfeggio and binaural layer parameters, validated before anything is rendered."""

from dataclasses import dataclass

from mindscript.contracts import BINAURAL_BANDS, SOLFEGGIO_FREQUENCIES, BinauralBand, BinauralLayer, SolfeggioLayer
from mindscript.worker.exceptions import ToneValidationError

MIN_CARRIER_HZ = 100.0
MAX_CARRIER_HZ = 1000.0


@dataclass(frozen=True)
class BinauralFrequencies:
    left_hz: float
    right_hz: float
    beat_hz: float
    carrier_hz: float
    band: BinauralBand


def default_beat(band: BinauralBand) -> float:
    low, high = BINAURAL_BANDS[band]
    return (low + high) / 2


def solfeggio_frequency(layer: SolfeggioLayer) -> float:
    if layer.hz not in SOLFEGGIO_FREQUENCIES:
        allowed = ", ".join(str(f) for f in SOLFEGGIO_FREQUENCIES)
        raise ToneValidationError(
            f"{layer.hz} Hz is not a solfeggio frequency (allowed: {allowed})", details={"layer": "solfeggio"}
        )
    return float(layer.hz)


def binaural_frequencies(layer: BinauralLayer) -> BinauralFrequencies:
    """Split the carrier around the beat: left = carrier - beat/2, right = carrier + beat/2."""
    low, high = BINAURAL_BANDS[layer.band]
    beat = layer.beat_hz if layer.beat_hz is not None else default_beat(layer.band)
    if not low <= beat <= high:
        raise ToneValidationError(
            f"Beat {beat} Hz outside {layer.band} band ({low}-{high} Hz)",
            details={"layer": "binaural", "band": str(layer.band), "beat_hz": beat},
        )
    carrier = layer.carrier_hz
    if not MIN_CARRIER_HZ <= carrier <= MAX_CARRIER_HZ:
        raise ToneValidationError(
            f"Carrier {carrier} Hz outside {MIN_CARRIER_HZ:g}-{MAX_CARRIER_HZ:g} Hz",
            details={"layer": "binaural", "carrier_hz": carrier},
        )
    return BinauralFrequencies(
        left_hz=carrier - beat / 2,
        right_hz=carrier + beat / 2,
        beat_hz=beat,
        carrier_hz=carrier,
        band=layer.band,
    )
