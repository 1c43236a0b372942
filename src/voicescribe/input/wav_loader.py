from pathlib import Path
from typing import List, Union

from voicescribe.input.format_bridge import encode_wav, to_normalized_buffer
from voicescribe.models.audio_data import NormalizedAudioBuffer

AUDIO_SUFFIXES = (".wav", ".flac", ".ogg", ".mp3", ".webm", ".m4a")


def wav_to_audio_buffer(wav_path: Union[str, Path]) -> NormalizedAudioBuffer:
    """
    Load an audio file and convert it to a NormalizedAudioBuffer.

    Args:
        wav_path: Path to the audio file (WAV or any container the
            Format Bridge can decode).

    Returns:
        NormalizedAudioBuffer: mono float32 samples at 16 kHz.

    Raises:
        FormatError: The file could not be decoded.
    """
    return to_normalized_buffer(Path(wav_path).read_bytes())


def list_audio_files(folder_path: Union[str, Path]) -> List[Path]:
    """Audio files in a folder, ordered by filename."""
    folder = Path(folder_path)
    return sorted(
        p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in AUDIO_SUFFIXES
    )


def save_audio_buffer(buffer: NormalizedAudioBuffer, path: Union[str, Path]) -> Path:
    """Write a buffer to disk as PCM16 WAV."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(encode_wav(buffer.samples, buffer.sample_rate))
    return target
