from .base import TTSBackend
from .factory import create_backend, get_available_backends

__all__ = ["TTSBackend", "create_backend", "get_available_backends"]
