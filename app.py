"""Script entry point: ``python app.py --input notes.txt --format mp3``."""

from speechmaker_backend.chunking import split_text_into_chunks
from speechmaker_backend.cli import main, parse_args, run
from speechmaker_backend.errors import ErrorClassifier, SessionError
from speechmaker_backend.pipeline import ConversionOrchestrator
from speechmaker_backend.readiness import ReadinessStateMachine
from speechmaker_backend.resources import ResourceResolver
from speechmaker_backend.retry import RetryPolicy

__all__ = [
    "ConversionOrchestrator",
    "ErrorClassifier",
    "ReadinessStateMachine",
    "ResourceResolver",
    "RetryPolicy",
    "SessionError",
    "main",
    "parse_args",
    "run",
    "split_text_into_chunks",
]


if __name__ == "__main__":
    run()
