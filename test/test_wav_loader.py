import numpy as np
import pytest

from voicescribe.input.format_bridge import encode_wav
from voicescribe.input.wav_loader import list_audio_files, save_audio_buffer, wav_to_audio_buffer
from voicescribe.models.audio_data import NormalizedAudioBuffer
from voicescribe.utils.exceptions import FormatError


def test_wav_to_audio_buffer_resamples(tmp_path):
    path = tmp_path / "clip.wav"
    path.write_bytes(encode_wav(np.zeros(8000), 8000))
    buffer = wav_to_audio_buffer(path)
    assert buffer.sample_rate == 16000
    assert len(buffer) == 16000


def test_wav_to_audio_buffer_rejects_garbage(tmp_path):
    path = tmp_path / "clip.wav"
    path.write_bytes(b"RIFF\x00\x00\x00\x00WAVEjunk")
    with pytest.raises(FormatError):
        wav_to_audio_buffer(path)


def test_list_audio_files_sorted_and_filtered(tmp_path):
    for name in ("b.wav", "a.flac", "notes.txt", "c.mp3"):
        (tmp_path / name).write_bytes(b"")
    (tmp_path / "sub.wav").mkdir()
    assert [p.name for p in list_audio_files(tmp_path)] == ["a.flac", "b.wav", "c.mp3"]


def test_save_audio_buffer_creates_folders(tmp_path):
    buffer = NormalizedAudioBuffer(samples=np.full(160, 0.25, dtype=np.float32))
    path = save_audio_buffer(buffer, tmp_path / "nested" / "out.wav")
    loaded = wav_to_audio_buffer(path)
    np.testing.assert_allclose(loaded.samples, buffer.samples, atol=1.0 / 32767)
