"""Factory function for creating TTS backends."""

from typing import List

from .base import TTSBackend
from .edge_cli import is_edge_cli_available


def create_backend(backend_type: str) -> TTSBackend:
    """Create a TTS backend instance.

    Args:
        backend_type: The type of backend to create ('edge' or 'mock')

    Returns:
        An instance of TTSBackend

    Raises:
        ValueError: If the backend type is unknown
    """
    if backend_type == "edge":
        from .edge_cli import EdgeCLIBackend

        return EdgeCLIBackend()
    elif backend_type == "mock":
        from .mock import MockTTSBackend

        return MockTTSBackend()
    else:
        raise ValueError(
            f"Unknown backend type: {backend_type}. "
            f"Available backends: {get_available_backends()}"
        )


def get_available_backends() -> List[str]:
    """Get a list of available backend types.

    Returns:
        List of backend type strings that can be used with create_backend()
    """
    backends = ["mock"]  # mock backend is always available for tests

    if is_edge_cli_available():
        backends.insert(0, "edge")

    return backends
