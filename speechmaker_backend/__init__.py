"""Text-to-speech conversion core: chunking, retries, resources, readiness."""

__version__ = "0.1.0"
