"""Local speech-to-text using Whisper, the last-resort analysis backend."""

import threading
from pathlib import Path

from scriptflow.config import get_settings

settings = get_settings()


class WhisperTranscriber:
    """OpenAI Whisper model wrapper.

    The model is loaded once per process on first use. ``whisper`` and
    ``torch`` are optional dependencies (the ``asr`` extra) and only imported
    here.
    """

    _instance = None
    _lock = threading.Lock()
    _model = None

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not hasattr(self, "_semaphore"):
            self._semaphore = threading.Semaphore(settings.whisper_concurrency)

    def _load_model(self):
        """Lazy load the Whisper model."""
        if self._model is None:
            with self._lock:
                if self._model is None:
                    import torch
                    import whisper

                    device = settings.whisper_device
                    if device == "cuda" and not torch.cuda.is_available():
                        device = "cpu"

                    WhisperTranscriber._model = whisper.load_model(
                        settings.whisper_model_size,
                        device=device,
                    )
        return self._model

    def transcribe(self, audio_path: Path) -> str:
        """
        Transcribe a local audio file with language auto-detection.
        Blocking; call from a worker thread.

        Args:
            audio_path: Path to a WAV file

        Returns:
            The transcript text, stripped
        """
        with self._semaphore:
            model = self._load_model()
            result = model.transcribe(str(audio_path), task="transcribe", verbose=False)

        return result["text"].strip()


# Singleton instance
whisper_transcriber = WhisperTranscriber()
