import requests

from ..core.errors import TranscriptionError, TranscriptionFailure

MAX_AUDIO_BYTES: int = 20 * 1024 * 1024


def classify_status(status_code: int) -> TranscriptionFailure:
    """Map an HTTP status from a transcription service onto a failure kind."""
    if status_code == 400:
        return TranscriptionFailure.FORMAT_UNSUPPORTED
    if status_code == 429:
        return TranscriptionFailure.RATE_LIMITED
    if status_code in (401, 403):
        return TranscriptionFailure.AUTH_INVALID
    if status_code in (408, 504):
        return TranscriptionFailure.TIMEOUT
    return TranscriptionFailure.UNKNOWN


def classify_request_error(error: requests.exceptions.RequestException) -> TranscriptionError:
    """Turn a `requests` exception into a classified `TranscriptionError`."""
    if isinstance(error, requests.exceptions.Timeout):
        kind = TranscriptionFailure.TIMEOUT
    elif isinstance(error, requests.exceptions.ConnectionError):
        kind = TranscriptionFailure.NETWORK
    elif isinstance(error, requests.exceptions.HTTPError) and error.response is not None:
        kind = classify_status(error.response.status_code)
    else:
        kind = TranscriptionFailure.UNKNOWN
    return TranscriptionError(kind, f"Transcription request failed ({kind}): {error}")


def check_audio_size(audio: bytes) -> None:
    """
    Raises:
        TranscriptionError: If the audio is larger than the services accept
    """
    if len(audio) > MAX_AUDIO_BYTES:
        raise TranscriptionError(TranscriptionFailure.TOO_LARGE, f"Audio too large: {len(audio)} bytes")
