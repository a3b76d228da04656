"""Audio engine: tone synthesis, mixing, loudness and encoding through ffmpeg.

The pipeline only talks to `AudioEngine`; `FFmpegEngine` shells out to ffmpeg/ffprobe. Every
intermediate file is 16-bit PCM WAV so layers can be combined without re-decoding losses.
"""

import asyncio
import json
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from loguru import logger

from mindscript.worker.exceptions import AudioEngineError
from mindscript.worker.gain import clamp_gain, db_to_linear

Waveform = Literal["sine", "triangle", "square"]

_WAVE_EXPRESSIONS: dict[str, str] = {
    "sine": "sin(2*PI*{f}*t)",
    "triangle": "2/PI*asin(sin(2*PI*{f}*t))",
    "square": "sgn(sin(2*PI*{f}*t))",
}
_LOUDNORM_JSON = re.compile(r"\{[^{}]*\"input_i\"[^{}]*\}", re.S)
_VOLUMEDETECT = re.compile(r"(mean_volume|max_volume):\s*(-?[\d.]+|-inf) dB")


@dataclass(frozen=True)
class AudioInfo:
    duration_sec: float
    sample_rate: int
    channels: int
    bitrate: int | None
    codec: str
    size_bytes: int


@dataclass(frozen=True)
class LevelMeasurement:
    integrated_lufs: float
    true_peak_db: float
    loudness_range: float
    peak_db: float
    mean_db: float


@dataclass(frozen=True)
class MixInput:
    path: Path
    gain_db: float
    label: str


class AudioEngine(ABC):
    @abstractmethod
    async def generate_tone(
        self,
        frequency: float,
        duration_sec: float,
        output: Path,
        *,
        wave: Waveform = "sine",
        gain_db: float = 0.0,
        fade_in_ms: int = 0,
        fade_out_ms: int = 0,
    ) -> Path:
        """Render the same tone on both channels."""

    @abstractmethod
    async def generate_binaural(
        self,
        left_hz: float,
        right_hz: float,
        duration_sec: float,
        output: Path,
        *,
        gain_db: float = 0.0,
        fade_in_ms: int = 0,
        fade_out_ms: int = 0,
    ) -> Path:
        """Render a sine per channel; the listener perceives the difference as the beat."""

    @abstractmethod
    async def concatenate(self, inputs: Sequence[Path], output: Path) -> Path: ...

    @abstractmethod
    async def ensure_stereo(self, source: Path, output: Path) -> Path:
        """Decode any input to two-channel PCM at the engine's sample rate."""

    @abstractmethod
    async def loop_to_duration(self, source: Path, output: Path, *, cycle_sec: float, total_sec: float) -> Path:
        """Pad `source` with silence to `cycle_sec`, then repeat it until `total_sec`."""

    @abstractmethod
    async def mix(
        self,
        inputs: Sequence[MixInput],
        output: Path,
        *,
        duration_sec: float,
        fade_in_ms: int = 0,
        fade_out_ms: int = 0,
    ) -> Path: ...

    @abstractmethod
    async def limit(self, source: Path, output: Path, *, threshold_db: float) -> Path: ...

    @abstractmethod
    async def normalize(self, source: Path, output: Path, *, target_lufs: float, true_peak_db: float) -> Path: ...

    @abstractmethod
    async def convert(self, source: Path, output: Path, *, fmt: str, bitrate: str) -> Path:
        """Encode the final artifact; always two channels at the engine's sample rate."""

    @abstractmethod
    async def measure(self, source: Path) -> LevelMeasurement: ...

    @abstractmethod
    async def probe(self, source: Path) -> AudioInfo: ...


class FFmpegEngine(AudioEngine):
    def __init__(self, *, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe", sample_rate: int = 44100) -> None:
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.sample_rate = sample_rate

    async def generate_tone(
        self,
        frequency: float,
        duration_sec: float,
        output: Path,
        *,
        wave: Waveform = "sine",
        gain_db: float = 0.0,
        fade_in_ms: int = 0,
        fade_out_ms: int = 0,
    ) -> Path:
        expr = _WAVE_EXPRESSIONS[wave].format(f=frequency)
        source = f"aevalsrc='{expr}|{expr}':s={self.sample_rate}:d={duration_sec}"
        filters = [f"volume={clamp_gain(gain_db)}dB", *_fades(duration_sec, fade_in_ms, fade_out_ms)]
        await self._ffmpeg("tone", ["-f", "lavfi", "-i", source, "-af", ",".join(filters), *self._pcm(), str(output)])
        return output

    async def generate_binaural(
        self,
        left_hz: float,
        right_hz: float,
        duration_sec: float,
        output: Path,
        *,
        gain_db: float = 0.0,
        fade_in_ms: int = 0,
        fade_out_ms: int = 0,
    ) -> Path:
        source = f"aevalsrc='sin(2*PI*{left_hz}*t)|sin(2*PI*{right_hz}*t)':s={self.sample_rate}:d={duration_sec}"
        filters = [f"volume={clamp_gain(gain_db)}dB", *_fades(duration_sec, fade_in_ms, fade_out_ms)]
        await self._ffmpeg(
            "binaural", ["-f", "lavfi", "-i", source, "-af", ",".join(filters), *self._pcm(), str(output)]
        )
        return output

    async def concatenate(self, inputs: Sequence[Path], output: Path) -> Path:
        if not inputs:
            raise AudioEngineError("concat", "Nothing to concatenate")
        listing = output.with_suffix(".txt")
        listing.write_text("".join(f"file '{p.resolve().as_posix()}'\n" for p in inputs), encoding="utf-8")
        await self._ffmpeg("concat", ["-f", "concat", "-safe", "0", "-i", str(listing), *self._pcm(), str(output)])
        return output

    async def ensure_stereo(self, source: Path, output: Path) -> Path:
        await self._ffmpeg("ensure_stereo", ["-i", str(source), *self._pcm(), str(output)])
        return output

    async def loop_to_duration(self, source: Path, output: Path, *, cycle_sec: float, total_sec: float) -> Path:
        padded = output.with_name(f"{output.stem}.cycle.wav")
        await self._ffmpeg("loop", ["-i", str(source), "-af", f"apad=whole_dur={cycle_sec}", *self._pcm(), str(padded)])
        await self._ffmpeg(
            "loop", ["-stream_loop", "-1", "-i", str(padded), "-t", f"{total_sec}", *self._pcm(), str(output)]
        )
        return output

    async def mix(
        self,
        inputs: Sequence[MixInput],
        output: Path,
        *,
        duration_sec: float,
        fade_in_ms: int = 0,
        fade_out_ms: int = 0,
    ) -> Path:
        if not inputs:
            raise AudioEngineError("mix", "No layers to mix")
        args: list[str] = []
        chains: list[str] = []
        for idx, layer in enumerate(inputs):
            args += ["-i", str(layer.path)]
            chains.append(f"[{idx}:a]volume={db_to_linear(clamp_gain(layer.gain_db)):.6f}[l{idx}]")
        labels = "".join(f"[l{idx}]" for idx in range(len(inputs)))
        # normalize=0: levels are set explicitly by gain staging, amix must not rescale them
        amix = f"amix=inputs={len(inputs)}:duration=longest:normalize=0"
        tail = ",".join([amix, *_fades(duration_sec, fade_in_ms, fade_out_ms)])
        graph = ";".join([*chains, f"{labels}{tail}[out]"])
        await self._ffmpeg(
            "mix", [*args, "-filter_complex", graph, "-map", "[out]", "-t", f"{duration_sec}", *self._pcm(), str(output)]
        )
        return output

    async def limit(self, source: Path, output: Path, *, threshold_db: float) -> Path:
        ceiling = min(1.0, max(0.0625, db_to_linear(threshold_db)))
        limiter = f"alimiter=limit={ceiling:.4f}:attack=5:release=50:level=false"
        await self._ffmpeg("limit", ["-i", str(source), "-af", limiter, *self._pcm(), str(output)])
        return output

    async def normalize(self, source: Path, output: Path, *, target_lufs: float, true_peak_db: float) -> Path:
        await self._ffmpeg(
            "normalize",
            ["-i", str(source), "-af", f"loudnorm=I={target_lufs}:TP={true_peak_db}:LRA=11", *self._pcm(), str(output)],
        )
        return output

    async def convert(self, source: Path, output: Path, *, fmt: str, bitrate: str) -> Path:
        if fmt == "mp3":
            codec = ["-c:a", "libmp3lame", "-b:a", bitrate]
        elif fmt == "wav":
            codec = ["-c:a", "pcm_s16le"]
        else:
            raise AudioEngineError("convert", f"Unsupported output format {fmt!r}")
        await self._ffmpeg("convert", ["-i", str(source), *codec, "-ar", str(self.sample_rate), "-ac", "2", str(output)])
        return output

    async def measure(self, source: Path) -> LevelMeasurement:
        stderr = await self._ffmpeg(
            "measure", ["-i", str(source), "-af", "loudnorm=print_format=json,volumedetect", "-f", "null", "-"]
        )
        return parse_level_output(stderr)

    async def probe(self, source: Path) -> AudioInfo:
        stdout = await self._run(
            "probe",
            [
                self.ffprobe,
                "-v",
                "error",
                "-print_format",
                "json",
                "-show_format",
                "-show_streams",
                "-select_streams",
                "a:0",
                str(source),
            ],
            capture="stdout",
        )
        return parse_probe_output(stdout)

    def _pcm(self) -> list[str]:
        return ["-ac", "2", "-ar", str(self.sample_rate), "-c:a", "pcm_s16le"]

    async def _ffmpeg(self, operation: str, args: list[str]) -> str:
        return await self._run(operation, [self.ffmpeg, "-hide_banner", "-nostdin", "-y", *args], capture="stderr")

    async def _run(self, operation: str, cmd: list[str], *, capture: Literal["stdout", "stderr"]) -> str:
        logger.debug(f"{operation}: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError as e:
            raise AudioEngineError(operation, f"{cmd[0]} not found: {e}") from e
        stdout, stderr = await proc.communicate()
        err_text = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            raise AudioEngineError(
                operation, f"{Path(cmd[0]).name} {operation} exited with code {proc.returncode}", stderr=err_text
            )
        return stdout.decode("utf-8", errors="replace") if capture == "stdout" else err_text


def _fades(duration_sec: float, fade_in_ms: int, fade_out_ms: int) -> list[str]:
    filters = []
    if fade_in_ms > 0:
        filters.append(f"afade=t=in:st=0:d={fade_in_ms / 1000}")
    if fade_out_ms > 0 and duration_sec > fade_out_ms / 1000:
        filters.append(f"afade=t=out:st={duration_sec - fade_out_ms / 1000}:d={fade_out_ms / 1000}")
    return filters


def parse_level_output(stderr: str) -> LevelMeasurement:
    """Extract loudnorm's JSON analysis and volumedetect's peak/mean lines from ffmpeg stderr."""
    match = _LOUDNORM_JSON.search(stderr)
    if match is None:
        raise AudioEngineError("measure", "No loudness analysis in ffmpeg output", stderr=stderr)
    try:
        loudness = json.loads(match.group(0))
        integrated = _to_float(loudness["input_i"])
        true_peak = _to_float(loudness["input_tp"])
        lra = _to_float(loudness["input_lra"])
    except (ValueError, KeyError) as e:
        raise AudioEngineError("measure", f"Unreadable loudness analysis: {e}", stderr=stderr) from e

    volumes = {name: _to_float(value) for name, value in _VOLUMEDETECT.findall(stderr)}
    return LevelMeasurement(
        integrated_lufs=integrated,
        true_peak_db=true_peak,
        loudness_range=lra,
        peak_db=volumes.get("max_volume", true_peak),
        mean_db=volumes.get("mean_volume", integrated),
    )


def parse_probe_output(stdout: str) -> AudioInfo:
    try:
        data = json.loads(stdout)
        stream = data["streams"][0]
        fmt = data.get("format", {})
        bitrate = stream.get("bit_rate") or fmt.get("bit_rate")
        return AudioInfo(
            duration_sec=float(stream.get("duration") or fmt["duration"]),
            sample_rate=int(stream["sample_rate"]),
            channels=int(stream["channels"]),
            bitrate=int(bitrate) if bitrate else None,
            codec=stream.get("codec_name", "unknown"),
            size_bytes=int(fmt.get("size", 0)),
        )
    except (ValueError, KeyError, IndexError) as e:
        raise AudioEngineError("probe", f"Unreadable ffprobe output: {e}") from e


def _to_float(value: str) -> float:
    return float("-inf") if value.strip() in ("-inf", "-Infinity") else float(value)
