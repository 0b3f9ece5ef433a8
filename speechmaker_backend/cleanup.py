import os
from typing import Iterable, List, Optional, Tuple

from backends import TTSBackend


def cleanup_backend(backend: Optional[TTSBackend]) -> Optional[BaseException]:
    if backend is None:
        return None

    try:
        backend.cleanup()
    except Exception as exc:
        return exc
    return None


def cleanup_chunk_files(paths: Iterable[Optional[str]]) -> List[Tuple[str, BaseException]]:
    """Remove chunk files, collecting failures instead of raising."""
    failures: List[Tuple[str, BaseException]] = []
    for path in paths:
        if not path:
            continue
        try:
            if os.path.exists(path):
                os.remove(path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            failures.append((path, exc))
    return failures


def cleanup_temp_dir(temp_dir: Optional[str]) -> Optional[BaseException]:
    if not temp_dir:
        return None

    try:
        if os.path.isdir(temp_dir):
            for name in os.listdir(temp_dir):
                os.remove(os.path.join(temp_dir, name))
            os.rmdir(temp_dir)
    except FileNotFoundError:
        return None
    except OSError as exc:
        return exc
    return None
