import os
import shutil
import tempfile
from typing import List, Optional, Sequence, Tuple

import numpy as np
from pydub import AudioSegment

from .errors import ConversionFailedError, ConverterMissingError, MergeFailedError
from .process import CancellationToken, Deadline, run_command

DEFAULT_SAMPLE_RATE = 24000
MP3_SAMPLE_RATE = 44100
DEFAULT_BITRATE = "128k"
SUPPORTED_OUTPUT_FORMATS = ("wav", "mp3")


def audio_to_int16(audio) -> np.ndarray:
    """Convert float or int audio samples to an int16 numpy array."""
    if not isinstance(audio, np.ndarray):
        audio = np.asarray(audio)

    if audio.dtype != np.int16:
        audio = np.clip(audio, -1.0, 1.0)
        audio = (audio * 32767.0).astype(np.int16)
    return audio


def audio_to_segment(audio: np.ndarray, rate: int = DEFAULT_SAMPLE_RATE) -> AudioSegment:
    if audio.dtype != np.int16:
        audio = audio_to_int16(audio)
    return AudioSegment(
        audio.tobytes(),
        frame_rate=rate,
        sample_width=2,
        channels=1,
    )


def _codec_args(output_format: str, bitrate: str) -> List[str]:
    if output_format == "mp3":
        return [
            "-c:a", "libmp3lame",
            "-b:a", bitrate,
            "-ar", str(MP3_SAMPLE_RATE),
        ]
    if output_format == "wav":
        return ["-c:a", "pcm_s16le"]
    raise ValueError(
        f"Unsupported output format: {output_format}. "
        f"Expected one of {', '.join(SUPPORTED_OUTPUT_FORMATS)}."
    )


def _escape_concat_path(path: str) -> str:
    return os.path.abspath(path).replace("'", "'\\''")


def _write_concat_list(paths: Sequence[str]) -> str:
    list_file = tempfile.NamedTemporaryFile(
        mode="w",
        suffix=".txt",
        delete=False,
        encoding="utf-8",
    )
    for path in paths:
        list_file.write(f"file '{_escape_concat_path(path)}'\n")
    list_file.close()
    return list_file.name


class AudioConverter:
    """Thin wrapper around an ffmpeg executable."""

    def __init__(
        self,
        ffmpeg_path: Optional[str],
        *,
        bitrate: str = DEFAULT_BITRATE,
        timeout_ms: Optional[int] = None,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.bitrate = bitrate
        self.timeout_ms = timeout_ms

    @classmethod
    def from_status(cls, status, **kwargs) -> Optional["AudioConverter"]:
        if status is None or not status.available or not status.path:
            return None
        return cls(status.path, **kwargs)

    @property
    def available(self) -> bool:
        return bool(self.ffmpeg_path)

    def _require_ffmpeg(self) -> str:
        if not self.ffmpeg_path:
            raise ConverterMissingError(
                "FFmpeg is not installed or not available in PATH."
            )
        return self.ffmpeg_path

    def validate(self, path: str, cancel_token: Optional[CancellationToken] = None) -> bool:
        ffmpeg_path = self._require_ffmpeg()
        if not os.path.exists(path) or os.path.getsize(path) == 0:
            return False
        proc = run_command(
            [ffmpeg_path, "-v", "error", "-i", path, "-f", "null", "-"],
            deadline=Deadline.after_ms(self.timeout_ms),
            cancel_token=cancel_token,
            label="ffmpeg validate",
        )
        return proc.returncode == 0

    def transcode(
        self,
        input_path: str,
        output_path: str,
        output_format: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        ffmpeg_path = self._require_ffmpeg()
        if not os.path.exists(input_path):
            raise FileNotFoundError(f"Audio file not found: {input_path}")

        cmd = [
            ffmpeg_path,
            "-i", input_path,
            *_codec_args(output_format, self.bitrate),
            "-y", output_path,
        ]
        proc = run_command(
            cmd,
            deadline=Deadline.after_ms(self.timeout_ms),
            cancel_token=cancel_token,
            label="ffmpeg transcode",
        )
        if proc.returncode != 0:
            raise ConversionFailedError(f"{output_format.upper()} conversion failed: {proc.stderr}")
        return output_path

    def merge(
        self,
        ordered_inputs: Sequence[str],
        output_path: str,
        output_format: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        ffmpeg_path = self._require_ffmpeg()
        if not ordered_inputs:
            raise MergeFailedError("Audio merging failed: no audio chunks provided")

        for path in ordered_inputs:
            if not os.path.exists(path):
                raise FileNotFoundError(f"Audio chunk not found: {path}")

        list_file = _write_concat_list(ordered_inputs)
        try:
            cmd = [
                ffmpeg_path,
                "-f", "concat",
                "-safe", "0",
                "-i", list_file,
                *_codec_args(output_format, self.bitrate),
                "-y", output_path,
            ]
            proc = run_command(
                cmd,
                deadline=Deadline.after_ms(self.timeout_ms),
                cancel_token=cancel_token,
                label="ffmpeg merge",
            )
            if proc.returncode != 0:
                raise MergeFailedError(f"Audio merging failed: {proc.stderr}")
        finally:
            try:
                os.remove(list_file)
            except OSError:
                pass
        return output_path


def merge_wav_files(ordered_inputs: Sequence[str], output_path: str) -> str:
    """Concatenate WAV chunks in order without ffmpeg."""
    if not ordered_inputs:
        raise MergeFailedError("Audio merging failed: no audio chunks provided")

    try:
        combined = AudioSegment.empty()
        for path in ordered_inputs:
            combined += AudioSegment.from_wav(path)
        combined.export(output_path, format="wav")
    except FileNotFoundError:
        raise
    except Exception as exc:
        raise MergeFailedError(f"Audio merging failed: {exc}") from exc
    return output_path


def _mp3_frame_bounds(data: bytes) -> Tuple[int, int]:
    start = 0
    if data[:3] == b"ID3" and len(data) >= 10:
        # Tag size is a 28-bit synchsafe integer; bit 4 of the flags adds a footer.
        size = (data[6] << 21) | (data[7] << 14) | (data[8] << 7) | data[9]
        start = 10 + size + (10 if data[5] & 0x10 else 0)
    end = len(data)
    if end - start >= 128 and data[end - 128:end - 125] == b"TAG":
        end -= 128
    return start, end


def merge_mp3_files(ordered_inputs: Sequence[str], output_path: str) -> str:
    """Concatenate MP3 chunks in order without ffmpeg.

    MPEG frames are self-contained, so the frame data of each chunk is written
    back to back. ID3 tags are stripped from every chunk.
    """
    if not ordered_inputs:
        raise MergeFailedError("Audio merging failed: no audio chunks provided")

    frames: List[bytes] = []
    for path in ordered_inputs:
        with open(path, "rb") as fh:
            data = fh.read()
        start, end = _mp3_frame_bounds(data)
        if start >= end:
            raise MergeFailedError(f"Audio merging failed: no audio frames in {os.path.basename(path)}")
        frames.append(data[start:end])

    with open(output_path, "wb") as out:
        for chunk in frames:
            out.write(chunk)
    return output_path


def copy_audio_file(source_path: str, output_path: str) -> str:
    output_dir = os.path.dirname(os.path.abspath(output_path))
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    shutil.copyfile(source_path, output_path)
    return output_path
