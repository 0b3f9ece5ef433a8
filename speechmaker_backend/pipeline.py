import os
import queue
import tempfile
import threading
import time
from typing import Any, List, Optional

from backends import TTSBackend

from .chunking import build_chunk_jobs
from .cleanup import cleanup_chunk_files, cleanup_temp_dir
from .errors import (
    ConversionCancelled,
    ConverterMissingError,
    EmptyInputError,
    ErrorClassifier,
    ErrorRecord,
    SessionError,
)
from .events import EventEmitter
from .export import (
    SUPPORTED_OUTPUT_FORMATS,
    AudioConverter,
    copy_audio_file,
    merge_mp3_files,
    merge_wav_files,
)
from .models import ChunkJob, ChunkStatus, ConversionSession, SessionStatus
from .process import CancellationToken, Deadline
from .retry import RetryPolicy

DEFAULT_MAX_WORKERS = 3
DEFAULT_SYNTH_TIMEOUT_MS = 120000
JOIN_POLL_SECONDS = 0.25


class _ChunkFailed(Exception):
    def __init__(self, job: ChunkJob, record: ErrorRecord) -> None:
        super().__init__(record.message)
        self.job = job
        self.record = record


class ConversionOrchestrator:
    """Drives chunk synthesis on a bounded worker pool and assembles the result.

    Each chunk owns a fixed result slot addressed by ``ChunkJob.index``; the
    merge always reads the slots in index order, whatever order the workers
    finished in.
    """

    def __init__(
        self,
        backend: TTSBackend,
        *,
        classifier: ErrorClassifier,
        converter: Optional[AudioConverter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        events: Optional[EventEmitter] = None,
        synth_timeout_ms: Optional[int] = DEFAULT_SYNTH_TIMEOUT_MS,
        temp_root: Optional[str] = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.backend = backend
        self.classifier = classifier
        self.converter = converter
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_workers = max_workers
        self.events = events or EventEmitter()
        self.synth_timeout_ms = synth_timeout_ms
        self.temp_root = temp_root

    @property
    def converter_available(self) -> bool:
        return self.converter is not None and self.converter.available

    def create_session(
        self,
        text: str,
        *,
        voice_id: str,
        speed: float,
        output_format: str,
        output_path: str,
        max_chunk_chars: int,
    ) -> ConversionSession:
        if not text or not text.strip():
            raise EmptyInputError("Text cannot be empty")

        self.events.emit("phase", phase="CHUNKING")
        jobs = build_chunk_jobs(text, max_chunk_chars)
        self.events.emit("metadata", key="total_chunks", value=len(jobs))
        return ConversionSession(
            jobs=jobs,
            voice_id=voice_id,
            speed=speed,
            output_format=output_format,
            output_path=output_path,
        )

    def convert(
        self,
        session: ConversionSession,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[Any] = None,
        task_id: Optional[Any] = None,
    ) -> str:
        """Run ``session`` to completion and return the merged output path.

        Raises:
            SessionError: the session failed or was cancelled. The session is
                already in its terminal status when this is raised.
        """
        token = cancel_token or CancellationToken()
        session.mark_running()

        try:
            self._check_output_capability(session)
        except Exception as exc:
            record = self.classifier.classify(exc, self._context(session, "convert"))
            self._finish(session, SessionStatus.FAILED, record)
            raise SessionError(record, session) from exc

        session.temp_dir = tempfile.mkdtemp(prefix="speechmaker_", dir=self.temp_root)
        self.events.emit("phase", phase="CONVERTING")

        slots: List[Optional[str]] = [None] * session.total_chunks
        failures = self._run_workers(session, slots, token, progress, task_id)

        if token.cancelled:
            return self._cancel(session)

        if failures:
            record = failures[0].record
            self._finish(session, SessionStatus.FAILED, record)
            raise SessionError(
                record,
                session,
                [path for path in slots if path is not None],
            ) from failures[0]

        return self._merge(session, slots, token)

    def cleanup(self, session: ConversionSession) -> List[ErrorRecord]:
        """Best-effort removal of chunk files and the session temp dir."""
        records: List[ErrorRecord] = []
        failed_paths = set()
        for path, exc in cleanup_chunk_files(job.output_path for job in session.jobs):
            failed_paths.add(path)
            records.append(self.classifier.record_cleanup_failure(exc, path))
        for job in session.jobs:
            if job.output_path not in failed_paths:
                job.output_path = None

        exc = cleanup_temp_dir(session.temp_dir)
        if exc is not None:
            records.append(self.classifier.record_cleanup_failure(exc, session.temp_dir))
        return records

    def _context(self, session: ConversionSession, operation: str, **extra: Any) -> dict:
        context = {
            "operation": operation,
            "session_id": session.id,
            "voice_id": session.voice_id,
            "output_format": session.output_format,
            "native_format": self.backend.native_format,
        }
        context.update(extra)
        return context

    def _check_output_capability(self, session: ConversionSession) -> None:
        if session.output_format not in SUPPORTED_OUTPUT_FORMATS:
            raise ValueError(f"Unsupported output format: {session.output_format}")
        native_format = self.backend.native_format
        if session.output_format != native_format and not self.converter_available:
            raise ConverterMissingError(
                f"FFmpeg is not installed or not available in PATH. "
                f"It is required to convert {native_format.upper()} audio "
                f"to {session.output_format.upper()}."
            )

    def _run_workers(
        self,
        session: ConversionSession,
        slots: List[Optional[str]],
        token: CancellationToken,
        progress: Optional[Any],
        task_id: Optional[Any],
    ) -> List[_ChunkFailed]:
        total_chunks = session.total_chunks
        job_queue: queue.Queue = queue.Queue()
        for job in session.jobs:
            job_queue.put(job)

        abort = threading.Event()
        failures: List[_ChunkFailed] = []
        state_lock = threading.Lock()
        completed = 0

        def worker(worker_id: int) -> None:
            nonlocal completed
            while not abort.is_set() and not token.cancelled:
                try:
                    job = job_queue.get_nowait()
                except queue.Empty:
                    return
                try:
                    slots[job.index] = self._run_job(session, job, token, abort, worker_id)
                except ConversionCancelled:
                    return
                except _ChunkFailed as failure:
                    with state_lock:
                        failures.append(failure)
                    abort.set()
                    return
                except Exception as exc:
                    record = self.classifier.classify(
                        exc,
                        self._context(session, "synthesize", chunk_index=job.index),
                    )
                    job.status = ChunkStatus.FAILED
                    job.error = record
                    with state_lock:
                        failures.append(_ChunkFailed(job, record))
                    abort.set()
                    return

                with state_lock:
                    completed += 1
                    current = completed
                if progress and task_id is not None:
                    progress.update(task_id, advance=1)
                self.events.emit(
                    "progress",
                    current_chunk=current,
                    total_chunks=total_chunks,
                )

        threads = [
            threading.Thread(target=worker, args=(worker_id,), name=f"tts-worker-{worker_id}", daemon=True)
            for worker_id in range(min(self.max_workers, total_chunks))
        ]
        for thread in threads:
            thread.start()

        try:
            for thread in threads:
                while thread.is_alive():
                    thread.join(timeout=JOIN_POLL_SECONDS)
        except KeyboardInterrupt:
            token.cancel()
            for thread in threads:
                thread.join(timeout=5)

        return failures

    def _run_job(
        self,
        session: ConversionSession,
        job: ChunkJob,
        token: CancellationToken,
        abort: threading.Event,
        worker_id: int,
    ) -> str:
        key = f"{session.id}:{job.index}"
        output_path = os.path.join(
            session.temp_dir,
            f"chunk_{job.index:05d}.{self.backend.native_format}",
        )

        while True:
            token.raise_if_cancelled()
            job.attempt_count = self.retry_policy.next_attempt(key)
            job.status = ChunkStatus.IN_PROGRESS
            self.events.emit(
                "worker",
                id=worker_id,
                status="SYNTH",
                details=f"Chunk {job.index + 1}/{session.total_chunks}",
            )

            start = time.perf_counter()
            try:
                self.backend.synthesize(
                    job.text,
                    session.voice_id,
                    session.speed,
                    output_path,
                    deadline=Deadline.after_ms(self.synth_timeout_ms),
                    cancel_token=token,
                )
            except ConversionCancelled:
                job.status = ChunkStatus.PENDING
                raise
            except Exception as exc:
                if token.cancelled:
                    job.status = ChunkStatus.PENDING
                    raise ConversionCancelled("Conversion was cancelled") from exc

                record = self.classifier.classify(
                    exc,
                    self._context(
                        session,
                        "synthesize",
                        chunk_index=job.index,
                        attempt=job.attempt_count,
                    ),
                )
                job.status = ChunkStatus.FAILED
                job.error = record

                if (
                    self.retry_policy.should_retry(record)
                    and self.retry_policy.has_attempts_left(key)
                    and not abort.is_set()
                ):
                    job.status = ChunkStatus.PENDING
                    self.events.emit(
                        "retry",
                        chunk_idx=job.index,
                        attempt=job.attempt_count + 1,
                        delay_ms=self.retry_policy.delay(job.attempt_count - 1),
                    )
                    self.retry_policy.backoff(key, token)
                    continue
                raise _ChunkFailed(job, record) from exc

            job.status = ChunkStatus.SUCCEEDED
            job.output_path = output_path
            job.error = None
            self.retry_policy.reset(key)
            self.events.emit(
                "timing",
                chunk_idx=job.index,
                chunk_timing_ms=int((time.perf_counter() - start) * 1000),
                stage="synthesize",
            )
            return output_path

    def _merge(
        self,
        session: ConversionSession,
        slots: List[Optional[str]],
        token: CancellationToken,
    ) -> str:
        ordered = [path for path in slots if path is not None]
        if len(ordered) != session.total_chunks:
            raise RuntimeError(
                f"Expected {session.total_chunks} chunk outputs, got {len(ordered)}."
            )

        self.events.emit("phase", phase="MERGING")
        operation = "merge" if len(ordered) > 1 else "transcode"
        error: Optional[BaseException] = None
        try:
            output_path = self._assemble(session, ordered, token)
        except ConversionCancelled:
            return self._cancel(session)
        except Exception as exc:
            error = exc
        finally:
            if session.status is SessionStatus.RUNNING:
                self.events.emit("phase", phase="CLEANUP")
                self.cleanup(session)

        if error is not None:
            record = self.classifier.classify(error, self._context(session, operation))
            self._finish(session, SessionStatus.FAILED, record)
            raise SessionError(record, session) from error

        self._finish(session, SessionStatus.SUCCEEDED)
        self.events.emit("done", output=output_path)
        return output_path

    def _assemble(
        self,
        session: ConversionSession,
        ordered: List[str],
        token: CancellationToken,
    ) -> str:
        output_path = session.output_path
        output_dir = os.path.dirname(os.path.abspath(output_path))
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)

        native_format = self.backend.native_format
        if len(ordered) == 1:
            if session.output_format == native_format:
                return copy_audio_file(ordered[0], output_path)
            return self.converter.transcode(ordered[0], output_path, session.output_format, token)

        if self.converter_available:
            return self.converter.merge(ordered, output_path, session.output_format, token)
        if session.output_format == native_format == "wav":
            return merge_wav_files(ordered, output_path)
        if session.output_format == native_format == "mp3":
            return merge_mp3_files(ordered, output_path)
        raise ConverterMissingError("FFmpeg is not installed or not available in PATH.")

    def _cancel(self, session: ConversionSession) -> str:
        cancelled = ConversionCancelled("Conversion was cancelled by user")
        record = self.classifier.classify(cancelled, self._context(session, "convert"))
        self.events.emit("phase", phase="CLEANUP")
        self.cleanup(session)
        self._finish(session, SessionStatus.CANCELLED, record)
        raise SessionError(record, session) from cancelled

    def _finish(
        self,
        session: ConversionSession,
        status: SessionStatus,
        record: Optional[ErrorRecord] = None,
    ) -> None:
        session.finish(status, record)
        self.retry_policy.reset_prefix(f"{session.id}:")
