"""Abstract interface for voice engines."""

from abc import ABC, abstractmethod
from typing import List, Optional

from speechmaker_backend.models import Voice
from speechmaker_backend.process import CancellationToken, Deadline


class TTSBackend(ABC):
    """A speech engine that can list voices and render text to an audio file."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short backend identifier."""

    @property
    @abstractmethod
    def native_format(self) -> str:
        """Audio container the engine writes ('wav' or 'mp3')."""

    @abstractmethod
    def list_voices(self, deadline: Optional[Deadline] = None) -> List[Voice]:
        """Return the engine's voice catalog.

        Raises:
            EngineUnresponsiveError: the engine could not be started or did
                not answer before the deadline.
            NoVoicesError: the engine answered with an empty catalog.
        """

    @abstractmethod
    def synthesize(
        self,
        text: str,
        voice_id: str,
        speed: float,
        output_path: str,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Render ``text`` into ``output_path`` and return the path."""

    def cleanup(self) -> None:
        """Release engine resources."""
