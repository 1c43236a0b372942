"""
Format Bridge: turn captured or uploaded audio into the 16 kHz mono float32
form the ASR engine consumes, and serialize it back to PCM16 WAV when it has
to cross a process boundary.
"""

from __future__ import annotations

import io
import struct
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import librosa
import numpy as np
import soundfile as sf
from pydub import AudioSegment

from voicescribe.models.audio_data import TARGET_SAMPLE_RATE, AudioChunk, NormalizedAudioBuffer
from voicescribe.utils.exceptions import FormatError
from voicescribe.utils.logger import get_logger

logger = get_logger("FormatBridge")

WAV_HEADER_SIZE = 44
PCM16_FORMAT_TAG = 1
PCM16_POSITIVE_SCALE = 32767.0
PCM16_NEGATIVE_SCALE = 32768.0


@dataclass(frozen=True)
class DecodedAudio:
    samples: np.ndarray   # mono float32
    sample_rate: int
    channels: int = 1


def resample(samples: Sequence[float], source_rate: int, target_rate: int = TARGET_SAMPLE_RATE) -> np.ndarray:
    """Linear-interpolation resampling.

    Output sample i sits at source position ``i * source_rate / target_rate``
    and is interpolated between the two bracketing input samples. Positions
    past the end of the input clamp to the last sample. Returns a copy when
    the rates already match.
    """
    if source_rate <= 0 or target_rate <= 0:
        raise ValueError(f"sample rates must be positive, got {source_rate} -> {target_rate}")

    source = np.asarray(samples, dtype=np.float32).reshape(-1)
    if source_rate == target_rate:
        return source.copy()
    if source.size == 0:
        return np.zeros(0, dtype=np.float32)

    ratio = source_rate / target_rate
    out_length = int(round(source.size * target_rate / source_rate))
    positions = np.arange(out_length, dtype=np.float64) * ratio

    last = source.size - 1
    left = np.minimum(np.floor(positions).astype(np.int64), last)
    right = np.minimum(left + 1, last)
    fraction = np.clip(positions - left, 0.0, 1.0)

    resampled = source[left] + (source[right] - source[left]) * fraction
    return resampled.astype(np.float32)


def float_to_pcm16(samples: Sequence[float]) -> np.ndarray:
    clipped = np.clip(np.asarray(samples, dtype=np.float64).reshape(-1), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * PCM16_NEGATIVE_SCALE, clipped * PCM16_POSITIVE_SCALE)
    return np.round(scaled).astype("<i2")


def pcm16_to_float(pcm: np.ndarray) -> np.ndarray:
    values = pcm.astype(np.float32)
    return np.where(values < 0, values / PCM16_NEGATIVE_SCALE, values / PCM16_POSITIVE_SCALE).astype(np.float32)


def encode_wav(samples: Sequence[float], sample_rate: int) -> bytes:
    """Serialize mono samples as a canonical 44-byte-header PCM16 WAV."""
    if sample_rate <= 0:
        raise ValueError(f"sample_rate must be positive, got {sample_rate}")

    pcm = float_to_pcm16(samples).tobytes()
    channels = 1
    bits_per_sample = 16
    block_align = channels * bits_per_sample // 8
    byte_rate = sample_rate * block_align

    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        PCM16_FORMAT_TAG,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        b"data",
        len(pcm),
    )
    return header + pcm


def is_riff_wave(data: bytes) -> bool:
    return len(data) >= 12 and data[0:4] == b"RIFF" and data[8:12] == b"WAVE"


def _iter_chunks(data: bytes) -> Iterable[Tuple[bytes, int, int]]:
    """Yield (chunk_id, body_start, declared_size) for each RIFF sub-chunk."""
    offset = 12
    while offset + 8 <= len(data):
        chunk_id, size = struct.unpack_from("<4sI", data, offset)
        body_start = offset + 8
        yield chunk_id, body_start, size
        # Chunks are word aligned
        offset = body_start + size + (size & 1)


def decode_wav(data: bytes) -> DecodedAudio:
    """Parse a PCM16 RIFF/WAVE buffer back into mono float samples.

    The declared ``data`` size is authoritative, but reading stops at the end
    of the buffer if the file was truncated.
    """
    if not is_riff_wave(data):
        raise FormatError("missing RIFF/WAVE header")

    sample_rate: Optional[int] = None
    channels = 1
    pcm_bytes: Optional[bytes] = None

    for chunk_id, body_start, size in _iter_chunks(data):
        if chunk_id == b"fmt ":
            if body_start + 16 > len(data):
                raise FormatError("truncated fmt chunk")
            format_tag, channels, sample_rate, _byte_rate, _align, bits = struct.unpack_from(
                "<HHIIHH", data, body_start
            )
            if format_tag != PCM16_FORMAT_TAG or bits != 16:
                raise FormatError(f"unsupported WAV encoding (format {format_tag}, {bits} bits)")
            if channels < 1:
                raise FormatError("WAV declares zero channels")
        elif chunk_id == b"data":
            end = min(body_start + size, len(data))
            if end < body_start + size:
                logger.warning(
                    f"WAV data chunk declares {size} bytes but only {end - body_start} are present"
                )
            pcm_bytes = data[body_start:end]
            break

    if sample_rate is None:
        raise FormatError("no fmt chunk found before data")
    if pcm_bytes is None:
        raise FormatError("no data chunk found")

    frame_bytes = 2 * channels
    usable = len(pcm_bytes) - (len(pcm_bytes) % frame_bytes)
    pcm = np.frombuffer(pcm_bytes[:usable], dtype="<i2")
    samples = pcm16_to_float(pcm)

    if channels > 1:
        samples = librosa.to_mono(samples.reshape(-1, channels).T)

    return DecodedAudio(samples=samples.astype(np.float32), sample_rate=int(sample_rate), channels=channels)


def _decode_with_soundfile(data: bytes) -> DecodedAudio:
    audio, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    channels = audio.shape[1]
    mono = librosa.to_mono(audio.T) if channels > 1 else audio[:, 0]
    return DecodedAudio(samples=mono.astype(np.float32), sample_rate=int(sample_rate), channels=channels)


def _decode_with_pydub(data: bytes) -> DecodedAudio:
    segment = AudioSegment.from_file(io.BytesIO(data))
    channels = segment.channels
    segment = segment.set_sample_width(2).set_channels(1)
    pcm = np.frombuffer(segment.raw_data, dtype="<i2")
    return DecodedAudio(samples=pcm16_to_float(pcm), sample_rate=int(segment.frame_rate), channels=channels)


def _decoders_for(data: bytes) -> List[Tuple[str, Callable[[bytes], DecodedAudio]]]:
    decoders: List[Tuple[str, Callable[[bytes], DecodedAudio]]] = []
    if is_riff_wave(data):
        decoders.append(("wav", decode_wav))
    decoders.append(("soundfile", _decode_with_soundfile))
    decoders.append(("ffmpeg", _decode_with_pydub))
    return decoders


def decode_audio(data: bytes) -> DecodedAudio:
    """Decode any supported container into mono float samples.

    PCM16 WAV is parsed directly; everything else goes to libsndfile and then
    ffmpeg. Raises FormatError if no decoder accepts the bytes.
    """
    if not data:
        raise FormatError("empty audio payload")

    failures = []
    for name, decoder in _decoders_for(data):
        try:
            decoded = decoder(data)
        except Exception as exc:
            logger.debug(f"{name} decoder rejected {len(data)} bytes: {exc}")
            failures.append(f"{name}: {exc}")
            continue
        logger.debug(f"Decoded {len(data)} bytes with {name} at {decoded.sample_rate}Hz")
        return decoded

    raise FormatError("unsupported audio encoding (" + "; ".join(failures) + ")")


def to_normalized_buffer(data: bytes) -> NormalizedAudioBuffer:
    decoded = decode_audio(data)
    return NormalizedAudioBuffer(samples=resample(decoded.samples, decoded.sample_rate))


def normalize_chunks(chunks: Sequence[AudioChunk]) -> NormalizedAudioBuffer:
    """Concatenate captured chunks and resample them to 16 kHz."""
    if not chunks:
        return NormalizedAudioBuffer(samples=np.zeros(0, dtype=np.float32))

    rates = {chunk.sample_rate for chunk in chunks}
    if len(rates) > 1:
        parts = [resample(chunk.samples, chunk.sample_rate) for chunk in chunks]
        return NormalizedAudioBuffer(samples=np.concatenate(parts))

    joined = np.concatenate([chunk.samples for chunk in chunks])
    return NormalizedAudioBuffer(samples=resample(joined, rates.pop()))
