import math

MIN_GAIN_DB = -60.0
MAX_GAIN_DB = 24.0


def db_to_linear(db: float) -> float:
    return 10 ** (db / 20)


def mix_gain_reduction(layer_count: int) -> float:
    """Headroom in dB to subtract from each layer so `layer_count` summed layers don't clip."""
    if layer_count < 2:
        return 0.0
    return -10 * math.log10(layer_count)


def clamp_gain(db: float) -> float:
    return max(MIN_GAIN_DB, min(MAX_GAIN_DB, db))
