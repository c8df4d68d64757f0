from __future__ import annotations

import re
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional
from uuid import uuid4

import httpx
from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage

from .config import Settings
from .errors import CleanupError, UpstreamError
from .jobs import STATE_TRANSCODING, STATE_UPLOADING, Job
from .logging_utils import get_logger

if TYPE_CHECKING:
    from .context import PipelineContext

# The speech API is called with LINEAR16 / 16 kHz / mono; these must not vary.
AUDIO_CODEC_ARGS = ("-vn", "-acodec", "pcm_s16le", "-ar", "16000", "-ac", "1")
AUDIO_PREFIX = "audio"
DEFAULT_VIDEO_EXTENSION = "mp4"
STAGE_UPLOAD = "upload"
_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]+")
logger = get_logger(__name__)


class AudioStorage:
    """Uploads normalized audio to the configured Cloud Storage bucket."""

    def __init__(self, settings: Settings, client=None) -> None:
        self.bucket_name = settings.gcs_bucket_name
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = storage.Client()
        return self._client

    def upload(self, local_path: Path, object_name: str) -> str:
        if not self.bucket_name:
            raise UpstreamError("upload", "GCS_BUCKET_NAME is not configured")
        try:
            blob = self.client.bucket(self.bucket_name).blob(object_name)
            blob.upload_from_filename(str(local_path), content_type="audio/wav")
        except (GoogleAPIError, GoogleAuthError, OSError) as exc:
            raise UpstreamError("upload", f"upload to gs://{self.bucket_name} failed: {exc}") from exc
        return f"gs://{self.bucket_name}/{object_name}"


def _safe_name(value: str) -> str:
    cleaned = _UNSAFE_NAME_RE.sub("-", value).strip("._-")
    return cleaned or "file"


def audio_object_name(job: Job) -> str:
    return f"{AUDIO_PREFIX}/{_safe_name(job.job_id)}_{_safe_name(job.source_file_id)}.wav"


def remove_scratch_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        raise CleanupError(f"could not delete {path}: {exc}") from exc


@contextmanager
def scratch_files(*paths: Path) -> Iterator[None]:
    """Guarantee deletion of job-private scratch files on every exit path."""
    try:
        yield
    finally:
        for path in paths:
            try:
                remove_scratch_file(path)
            except CleanupError as exc:
                logger.warning("media.cleanup_failed path=%s error=%s", path, exc)


def download_source(url: str, token: str, dest: Path, timeout_s: float) -> int:
    headers = {"Authorization": f"Bearer {token}"}
    written = 0
    try:
        with httpx.Client(timeout=httpx.Timeout(timeout_s), follow_redirects=True) as client:
            with client.stream("GET", url, headers=headers) as response:
                if response.status_code != 200:
                    raise UpstreamError(
                        "download", f"source download returned HTTP {response.status_code}"
                    )
                content_type = response.headers.get("content-type", "")
                if content_type.startswith("text/html"):
                    raise UpstreamError(
                        "download",
                        "source download returned an HTML page; check the bot token scopes",
                    )
                with dest.open("wb") as handle:
                    for chunk in response.iter_bytes():
                        handle.write(chunk)
                        written += len(chunk)
    except httpx.HTTPError as exc:
        raise UpstreamError("download", f"source download failed: {exc}") from exc
    except OSError as exc:
        raise UpstreamError("download", f"could not write {dest}: {exc}") from exc
    return written


def _output_tail(output: Optional[str], limit: int = 800) -> str:
    output = (output or "").strip()
    return output[-limit:]


def normalize_audio(src: Path, dest: Path, *, binary: str = "ffmpeg", timeout_s: int = 1800) -> None:
    command = [binary, "-y", "-i", str(src), *AUDIO_CODEC_ARGS, str(dest)]
    try:
        completed = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout_s,
        )
    except FileNotFoundError as exc:
        raise UpstreamError("transcode", f"{binary} executable not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise UpstreamError("transcode", f"{binary} timed out after {timeout_s}s") from exc

    output = _output_tail((completed.stdout or "") + (completed.stderr or ""))
    if completed.returncode != 0:
        raise UpstreamError(
            "transcode", f"{binary} exited with code {completed.returncode}: {output}"
        )
    # A zero exit code alone is not trusted.
    if not dest.exists():
        raise UpstreamError("transcode", f"ffmpeg output file not found: {output}")


def extract(ctx: "PipelineContext", job: Job) -> str:
    """Download the source media, normalize its audio track and upload it.

    Returns the ``gs://`` URI of the uploaded WAV. The job is expected to be in
    the downloading state; this advances it through transcoding and uploading.
    """
    uploaded = ctx.store.stage_result(job.job_id, STAGE_UPLOAD)
    if uploaded:
        logger.info("media.upload_reused job_id=%s uri=%s", job.job_id, uploaded)
        return uploaded
    if not job.download_token:
        raise UpstreamError("download", "no bearer credential for the source download")

    scratch_root = Path(ctx.settings.scratch_dir).expanduser().resolve()
    scratch_root.mkdir(parents=True, exist_ok=True)
    extension = _safe_name((job.original_file_extension or DEFAULT_VIDEO_EXTENSION).lstrip("."))
    stem = f"video_{_safe_name(job.source_file_id)}_{uuid4().hex}"
    video_path = scratch_root / f"{stem}.{extension}"
    audio_path = scratch_root / f"{stem}_16k.wav"

    with scratch_files(video_path, audio_path):
        size = download_source(
            job.download_url,
            job.download_token,
            video_path,
            ctx.settings.download_timeout_s,
        )
        logger.info("media.downloaded job_id=%s bytes=%s", job.job_id, size)

        ctx.store.advance(job.job_id, STATE_TRANSCODING)
        normalize_audio(
            video_path,
            audio_path,
            binary=ctx.settings.ffmpeg_binary,
            timeout_s=ctx.settings.ffmpeg_timeout_s,
        )
        logger.info("media.transcoded job_id=%s path=%s", job.job_id, audio_path.name)

        ctx.store.advance(job.job_id, STATE_UPLOADING)
        uri = ctx.storage.upload(audio_path, audio_object_name(job))
        ctx.store.record_stage_result(job.job_id, STAGE_UPLOAD, uri)
        logger.info("media.uploaded job_id=%s uri=%s", job.job_id, uri)
    return uri
