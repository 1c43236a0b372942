import os
from typing import Callable, Optional

import numpy as np
import torch
from peft import LoraConfig, get_peft_model
from transformers import WhisperForConditionalGeneration, WhisperProcessor, pipeline

from voicescribe.models.audio_data import Segment, TranscribeOptions, TranscriptionResult
from voicescribe.utils.logger import get_logger

logger = get_logger("WhisperModel")

ProgressCallback = Callable[[float], None]


def resolve_device(device: str) -> str:
    if device != "auto":
        return device
    return "cuda" if torch.cuda.is_available() else "cpu"


class WhisperAsrModel:
    """
    Whisper checkpoint behind a transformers ASR pipeline, with optional LoRA
    adapters and a local cache so weights are not downloaded twice.
    """

    DEFAULT_CACHE_DIR = "./models/hf_cache"

    def __init__(
        self,
        model_id: str,
        device: str = "auto",
        adapter_path: Optional[str] = None,
        cache_dir: Optional[str] = None,
    ):
        self.model_id = model_id
        self.device = resolve_device(device)
        self.adapter_path = adapter_path
        self.cache_dir = os.path.join(cache_dir or self.DEFAULT_CACHE_DIR, model_id.replace("/", "--"))

        self.processor: Optional[WhisperProcessor] = None
        self.model = None
        self._pipe = None

    @property
    def english_only(self) -> bool:
        return self.model_id.endswith(".en")

    def load(self, on_progress: Optional[ProgressCallback] = None) -> None:
        report = on_progress or (lambda _pct: None)
        os.makedirs(self.cache_dir, exist_ok=True)

        report(5)
        self.processor = self._load_processor()
        report(25)
        base_model = self._load_base_model()
        report(70)

        if self.adapter_path:
            base_model = self._attach_adapters(base_model)
        report(85)

        self.model = base_model.to(self.device)
        self.model.eval()
        self._pipe = pipeline(
            "automatic-speech-recognition",
            model=self.model,
            tokenizer=self.processor.tokenizer,
            feature_extractor=self.processor.feature_extractor,
            device=self.device,
        )
        report(95)
        logger.info(f"Loaded {self.model_id} on {self.device}")

    def _load_processor(self) -> WhisperProcessor:
        """
        Load WhisperProcessor from local cache if available,
        otherwise download and cache it.
        """
        processor_cache_path = os.path.join(self.cache_dir, "processor")

        if os.path.exists(processor_cache_path) and os.listdir(processor_cache_path):
            try:
                return WhisperProcessor.from_pretrained(processor_cache_path)
            except Exception as e:
                logger.warning(f"Failed to load cached processor: {e}")

        processor = WhisperProcessor.from_pretrained(self.model_id)
        processor.save_pretrained(processor_cache_path)
        return processor

    def _load_base_model(self) -> WhisperForConditionalGeneration:
        """
        Load the Whisper model from local cache if available,
        otherwise download and cache it.
        """
        model_cache_path = os.path.join(self.cache_dir, "base_model")

        if os.path.exists(model_cache_path) and os.listdir(model_cache_path):
            try:
                return WhisperForConditionalGeneration.from_pretrained(model_cache_path)
            except Exception as e:
                logger.warning(f"Failed to load cached model: {e}")

        base_model = WhisperForConditionalGeneration.from_pretrained(self.model_id)
        base_model.save_pretrained(model_cache_path)
        return base_model

    def _attach_adapters(self, base_model: WhisperForConditionalGeneration):
        state_dict = torch.load(self.adapter_path, map_location="cpu")

        embed_key = "base_model.model.model.decoder.embed_tokens.weight"
        if embed_key in state_dict:
            vocab_ckpt = state_dict[embed_key].shape[0]
            if vocab_ckpt != base_model.config.vocab_size:
                base_model.model.decoder.embed_tokens = torch.nn.Embedding(vocab_ckpt, base_model.config.d_model)
                base_model.proj_out = torch.nn.Linear(base_model.config.d_model, vocab_ckpt, bias=False)
                base_model.config.vocab_size = vocab_ckpt

        peft_config = LoraConfig(
            r=16,
            lora_alpha=32,
            target_modules=["q_proj", "v_proj"],
            lora_dropout=0.1,
            bias="none",
        )
        model = get_peft_model(base_model, peft_config)
        model.load_state_dict(state_dict, strict=False)
        # The pipeline needs a plain WhisperForConditionalGeneration
        return model.merge_and_unload()

    def is_valid(self) -> bool:
        return self._pipe is not None

    def transcribe(self, samples: np.ndarray, sample_rate: int, options: TranscribeOptions) -> TranscriptionResult:
        if not self.is_valid():
            raise RuntimeError(f"model {self.model_id} is not loaded")
        if len(samples) == 0:
            return TranscriptionResult(text="")

        generate_kwargs = {}
        if not self.english_only:
            generate_kwargs["task"] = options.task
            if options.language:
                generate_kwargs["language"] = options.language
        if options.vocabulary_hint:
            prompt_ids = self.processor.get_prompt_ids(options.vocabulary_hint, return_tensors="pt")
            generate_kwargs["prompt_ids"] = prompt_ids.to(self.device)

        with torch.no_grad():
            output = self._pipe(
                {"raw": np.asarray(samples, dtype=np.float32), "sampling_rate": sample_rate},
                chunk_length_s=options.chunk_length_s,
                stride_length_s=options.stride_length_s,
                return_timestamps=True,
                generate_kwargs=generate_kwargs,
            )

        text = _strip_prompt(output.get("text", ""), options.vocabulary_hint)
        segments = tuple(
            Segment(
                text=(chunk.get("text") or "").strip(),
                start=(chunk.get("timestamp") or (None, None))[0],
                end=(chunk.get("timestamp") or (None, None))[1],
            )
            for chunk in output.get("chunks") or []
        )
        return TranscriptionResult(text=text, segments=segments)

    def close(self) -> None:
        self._pipe = None
        self.model = None
        self.processor = None
        if self.device.startswith("cuda"):
            torch.cuda.empty_cache()


def _strip_prompt(text: str, prompt: Optional[str]) -> str:
    # Some transformers versions echo the conditioning prompt in the decoded text
    text = (text or "").strip()
    if prompt and text.startswith(prompt.strip()):
        text = text[len(prompt.strip()):].strip()
    return text
