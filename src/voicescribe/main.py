"""Command line entry point: run the server, transcribe files, list devices."""

import argparse
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from voicescribe.app.inference_client import InferenceClient, WhisperEngineFactory
from voicescribe.config import settings
from voicescribe.data.vocabulary_profiles import ProfileNotFoundError, VocabularyProfileManager
from voicescribe.input.wav_loader import list_audio_files, wav_to_audio_buffer
from voicescribe.models.audio_data import TranscribeOptions
from voicescribe.utils.exceptions import FormatError, InferenceError
from voicescribe.utils.logger import get_logger

logger = get_logger("CLI")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voicescribe", description="Local voice dictation with Whisper")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP + WebSocket API")
    serve.add_argument("--host", default=settings.server.host)
    serve.add_argument("--port", type=int, default=settings.server.port)

    transcribe = sub.add_parser("transcribe", help="Transcribe an audio file or every audio file in a folder")
    transcribe.add_argument("path", type=Path)
    transcribe.add_argument("--model", default=settings.model.model_id, help="Hugging Face model id")
    transcribe.add_argument("--language", default=settings.transcription.language)
    transcribe.add_argument("--task", default=settings.transcription.task, choices=["transcribe", "translate"])
    transcribe.add_argument("--profile", default=settings.transcription.vocabulary_profile,
                            help="Vocabulary profile name")

    sub.add_parser("devices", help="List audio input devices")
    return parser


def _collect_files(path: Path) -> List[Path]:
    if path.is_dir():
        return list_audio_files(path)
    return [path]


def run_transcribe(args, engine_factory=None) -> int:
    if not args.path.exists():
        print(f"No such file or directory: {args.path}", file=sys.stderr)
        return 2
    files = _collect_files(args.path)
    if not files:
        print(f"No audio files found in {args.path}", file=sys.stderr)
        return 1

    vocabulary = VocabularyProfileManager()
    if settings.transcription.profiles_file:
        vocabulary.load_file(settings.transcription.profiles_file)
    try:
        hint = vocabulary.resolve_hint(args.profile)
    except ProfileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 2

    options = TranscribeOptions(
        language=args.language,
        task=args.task,
        chunk_length_s=settings.transcription.chunk_length_s,
        stride_length_s=settings.transcription.stride_length_s,
        vocabulary_hint=hint,
    )

    factory = engine_factory or WhisperEngineFactory.from_settings(settings.model)
    texts = []
    with InferenceClient(factory, default_model_id=args.model) as client:
        try:
            client.load(args.model).result()
            for audio_file in files:
                logger.info(f"Transcribing {audio_file}")
                buffer = wav_to_audio_buffer(audio_file)
                update = client.transcribe(buffer, options).result()
                texts.append(update.text)
        except FormatError as e:
            print(f"Cannot decode audio: {e}", file=sys.stderr)
            return 2
        except OSError as e:
            print(f"Cannot read audio: {e}", file=sys.stderr)
            return 2
        except InferenceError as e:
            print(str(e), file=sys.stderr)
            return 1

    print(" ".join(t for t in texts if t))
    return 0


def run_devices() -> int:
    # Lazy import: sounddevice needs the PortAudio runtime
    try:
        from voicescribe.input.audio_capture import MicrophoneCapture
    except (ImportError, OSError) as e:
        print(f"Audio capture unavailable: {e}", file=sys.stderr)
        return 1
    for device in MicrophoneCapture.list_audio_devices():
        print(f"{device['index']:>3}  {device['name']}  ({device['channels']} ch, {device['default_samplerate']} Hz)")
    return 0


def run_serve(args) -> int:
    import uvicorn

    uvicorn.run("voicescribe.server:app", host=args.host, port=args.port, log_level="info")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    if args.command == "serve":
        return run_serve(args)
    if args.command == "transcribe":
        return run_transcribe(args)
    return run_devices()


if __name__ == "__main__":
    raise SystemExit(main())
