from __future__ import annotations

import concurrent.futures
from typing import Iterable, Optional

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import speech_v1 as speech

from .config import Settings
from .errors import UpstreamError
from .logging_utils import get_logger

SAMPLE_RATE_HZ = 16000
logger = get_logger(__name__)


def join_segments(results: Iterable) -> str:
    """Primary-alternative text of each segment, in order, one per line."""
    lines = []
    for result in results:
        alternatives = list(getattr(result, "alternatives", None) or [])
        if not alternatives:
            continue
        lines.append(alternatives[0].transcript)
    return "\n".join(lines)


class SpeechTranscriber:
    """Long-running Cloud Speech-to-Text recognition over uploaded LINEAR16 audio."""

    def __init__(self, settings: Settings, client=None) -> None:
        self.language_code = settings.speech_language_code
        self.timeout_s = settings.transcription_timeout_s
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = speech.SpeechClient()
        return self._client

    def build_config(self) -> speech.RecognitionConfig:
        return speech.RecognitionConfig(
            encoding=speech.RecognitionConfig.AudioEncoding.LINEAR16,
            sample_rate_hertz=SAMPLE_RATE_HZ,
            language_code=self.language_code,
            enable_automatic_punctuation=True,
        )

    def transcribe(self, audio_uri: str, timeout_s: Optional[float] = None) -> str:
        audio = speech.RecognitionAudio(uri=audio_uri)
        wait_s = self.timeout_s if timeout_s is None else timeout_s
        try:
            operation = self.client.long_running_recognize(
                config=self.build_config(), audio=audio
            )
            logger.info(
                "transcribe.submitted uri=%s operation=%s",
                audio_uri,
                getattr(getattr(operation, "operation", None), "name", "-"),
            )
            response = operation.result(timeout=wait_s)
        except (TimeoutError, concurrent.futures.TimeoutError) as exc:
            raise UpstreamError(
                "transcribe", f"recognition did not finish within {wait_s:.0f}s"
            ) from exc
        except (GoogleAPIError, GoogleAuthError) as exc:
            raise UpstreamError("transcribe", f"recognition failed: {exc}") from exc

        results = list(response.results or [])
        if not results:
            logger.info("transcribe.empty uri=%s", audio_uri)
            return ""
        transcript = join_segments(results)
        logger.info(
            "transcribe.complete uri=%s segments=%s chars=%s",
            audio_uri,
            len(results),
            len(transcript),
        )
        return transcript
