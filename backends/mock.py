"""Deterministic mock backend for end-to-end tests."""

import os
from typing import Dict, List, Optional, Sequence

import numpy as np

from speechmaker_backend.errors import VoiceNotFoundError
from speechmaker_backend.export import DEFAULT_SAMPLE_RATE, audio_to_segment
from speechmaker_backend.models import Voice
from speechmaker_backend.process import CancellationToken, Deadline

from .base import TTSBackend

DEFAULT_MOCK_VOICES = (
    Voice(id="en-US-MockNeural", display_name="Mock (US)", locale="en-US", gender="Female", is_default=True),
    Voice(id="en-GB-MockNeural", display_name="Mock (GB)", locale="en-GB", gender="Male"),
)


class MockTTSBackend(TTSBackend):
    """Fast, deterministic backend that writes synthetic WAV audio."""

    def __init__(self, voices: Optional[Sequence[Voice]] = None) -> None:
        self._voices = tuple(voices) if voices is not None else DEFAULT_MOCK_VOICES
        self.synthesized: List[Dict[str, object]] = []

    @property
    def name(self) -> str:
        return "mock"

    @property
    def native_format(self) -> str:
        return "wav"

    @property
    def sample_rate(self) -> int:
        return DEFAULT_SAMPLE_RATE

    def list_voices(self, deadline: Optional[Deadline] = None) -> List[Voice]:
        return list(self._voices)

    def synthesize(
        self,
        text: str,
        voice_id: str,
        speed: float,
        output_path: str,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if not any(voice.id == voice_id for voice in self._voices):
            raise VoiceNotFoundError(voice_id)

        output_dir = os.path.dirname(os.path.abspath(output_path))
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)

        pcm = self._text_to_audio(text, speed)
        audio_to_segment(pcm, self.sample_rate).export(output_path, format="wav")
        self.synthesized.append({"text": text, "voice_id": voice_id, "output_path": output_path})
        return output_path

    def cleanup(self) -> None:
        self.synthesized = []

    def _text_to_audio(self, text: str, speed: float) -> np.ndarray:
        """Generate deterministic int16 tone data from input text."""
        safe_speed = max(speed, 0.1)
        base_len = max(480, min(48000, int(len(text) * (160 / safe_speed))))
        seed = sum((idx + 1) * ord(ch) for idx, ch in enumerate(text)) % 9973
        freq_hz = 180 + (seed % 220)
        phase = (seed % 360) * np.pi / 180.0

        t = np.arange(base_len, dtype=np.float32)
        waveform = np.sin((2 * np.pi * freq_hz * t / self.sample_rate) + phase)
        envelope = np.linspace(0.9, 0.5, base_len, dtype=np.float32)
        pcm = np.clip(waveform * envelope * 12000.0, -32768, 32767)
        return pcm.astype(np.int16)
