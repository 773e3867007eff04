import os
import json
import time
import wave
import logging
from typing import List, Optional

from openai import OpenAI, OpenAIError, APIError, APITimeoutError, AuthenticationError

from ..cancellation import CancellationToken
from ..engine_pool import EnginePool
from ..errors import (
    ExternalEngineError,
    InputError,
    PipelineError,
    StageTimeoutError,
    StorageIOError,
)
from ..models import AudioRef, Transcript, TranscriptSegment
from .util import ensure_dir, format_timecode

logger = logging.getLogger("media_worker")


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise StageTimeoutError("Transcription deadline exceeded")
    return remaining


class WhisperEngine:
    """OpenAI Whisper API engine"""

    name = "whisper"

    def __init__(self, model: str = "whisper-1", client: Optional[OpenAI] = None):
        self.model = model
        try:
            self.client = client or OpenAI()
        except OpenAIError as e:
            raise ExternalEngineError(f"Whisper client initialization failed: {e}", fatal=True) from e

    def recognize(self, audio_path: str, sample_rate: int, token: Optional[CancellationToken] = None,
                  deadline: Optional[float] = None, language: Optional[str] = None) -> List[TranscriptSegment]:
        timeout = _remaining(deadline)
        extra = {'language': language} if language else {}

        try:
            client = self.client.with_options(timeout=timeout, max_retries=0) if timeout else self.client
            with open(audio_path, 'rb') as audio_file:
                transcript = client.audio.transcriptions.create(
                    model=self.model,
                    file=audio_file,
                    response_format="verbose_json",
                    timestamp_granularities=["segment"],
                    **extra
                )
        except APITimeoutError as e:
            raise StageTimeoutError(f"Whisper request timed out: {e}") from e
        except AuthenticationError as e:
            raise ExternalEngineError(f"Whisper authentication failed: {e}", fatal=True) from e
        except APIError as e:
            raise ExternalEngineError(f"Whisper recognition failed: {e}") from e
        except OSError as e:
            raise StorageIOError(f"Cannot read audio {audio_path}: {e}") from e

        segments = []
        if getattr(transcript, 'segments', None):
            for segment in transcript.segments:
                segments.append(TranscriptSegment(
                    start=float(segment.start),
                    end=float(segment.end),
                    text=segment.text.strip()
                ))
        elif getattr(transcript, 'text', None):
            # Fallback if no segments
            segments.append(TranscriptSegment(
                start=0.0,
                end=float(getattr(transcript, 'duration', 0.0) or 0.0),
                text=transcript.text.strip()
            ))
        return segments


class VoskEngine:
    """Offline Vosk engine; the model is loaded once per instance"""

    name = "vosk"

    def __init__(self, model_path: str, chunk_frames: int = 4000):
        try:
            import vosk
        except ImportError as e:
            raise ExternalEngineError("vosk is not installed (pip install media-worker[vosk])", fatal=True) from e

        if not model_path or not os.path.isdir(model_path):
            raise ExternalEngineError(f"Vosk model not found: {model_path}", fatal=True)

        vosk.SetLogLevel(-1)
        logger.info(f"Loading Vosk model: {model_path}")
        try:
            self.model = vosk.Model(model_path)
        except Exception as e:
            raise ExternalEngineError(f"Vosk model load failed: {e}", fatal=True) from e
        self._vosk = vosk
        self.chunk_frames = chunk_frames

    def recognize(self, audio_path: str, sample_rate: int, token: Optional[CancellationToken] = None,
                  deadline: Optional[float] = None, language: Optional[str] = None) -> List[TranscriptSegment]:
        segments: List[TranscriptSegment] = []
        try:
            with wave.open(audio_path, 'rb') as wav:
                if wav.getnchannels() != 1 or wav.getsampwidth() != 2:
                    raise InputError("Vosk requires mono 16-bit PCM audio")

                recognizer = self._vosk.KaldiRecognizer(self.model, wav.getframerate())
                recognizer.SetWords(True)

                while True:
                    if token is not None:
                        token.raise_if_cancelled()
                    _remaining(deadline)

                    data = wav.readframes(self.chunk_frames)
                    if not data:
                        break
                    if recognizer.AcceptWaveform(data):
                        segments.extend(self._parse_result(recognizer.Result()))

                segments.extend(self._parse_result(recognizer.FinalResult()))
        except PipelineError:
            raise
        except (wave.Error, EOFError) as e:
            raise ExternalEngineError(f"Cannot decode audio {audio_path}: {e}") from e
        except OSError as e:
            raise StorageIOError(f"Cannot read audio {audio_path}: {e}") from e
        except Exception as e:
            raise ExternalEngineError(f"Vosk recognition failed: {e}") from e

        return segments

    @staticmethod
    def _parse_result(raw: str) -> List[TranscriptSegment]:
        result = json.loads(raw)
        text = result.get('text', '').strip()
        words = result.get('result') or []
        if not text or not words:
            return []
        confidences = [w['conf'] for w in words if 'conf' in w]
        return [TranscriptSegment(
            start=float(words[0]['start']),
            end=float(words[-1]['end']),
            text=text,
            confidence=sum(confidences) / len(confidences) if confidences else None
        )]


class MockEngine:
    """Development engine returning a single segment spanning the audio"""

    name = "mock"

    def recognize(self, audio_path: str, sample_rate: int, token: Optional[CancellationToken] = None,
                  deadline: Optional[float] = None, language: Optional[str] = None) -> List[TranscriptSegment]:
        if not os.path.exists(audio_path):
            raise StorageIOError(f"Audio file not found: {audio_path}")
        with wave.open(audio_path, 'rb') as wav:
            duration = wav.getnframes() / float(wav.getframerate() or sample_rate)
        return [TranscriptSegment(
            start=0.0,
            end=duration,
            text=f"Mock transcript for {os.path.basename(audio_path)}",
            confidence=1.0
        )]


def normalize_segments(segments: List[TranscriptSegment]) -> List[TranscriptSegment]:
    """
    Order segments by start time and remove overlaps.

    Overlapping starts are clipped to the previous end; segments left empty
    (no text or no duration) are dropped.
    """
    ordered = sorted(segments, key=lambda s: (s.start, s.end))
    normalized: List[TranscriptSegment] = []
    previous_end = 0.0

    for segment in ordered:
        text = segment.text.strip()
        if not text:
            continue
        start = max(segment.start, previous_end, 0.0)
        if segment.end <= start:
            continue
        normalized.append(TranscriptSegment(start=start, end=segment.end, text=text,
                                            confidence=segment.confidence))
        previous_end = segment.end

    return normalized


def validate_transcription(transcript: Transcript) -> bool:
    """Validate ordering and non-overlap of transcript segments"""
    previous_end = 0.0
    for segment in transcript.segments:
        if not segment.text.strip():
            return False
        if segment.start < previous_end or segment.end <= segment.start:
            return False
        previous_end = segment.end
    return True


class Transcriber:
    """Runs recognition on canonical audio using engines leased from a pool"""

    def __init__(self, pool: EnginePool, acquire_timeout: Optional[float] = None):
        self.pool = pool
        self.acquire_timeout = acquire_timeout

    def transcribe(self, audio: AudioRef, token: Optional[CancellationToken] = None,
                   timeout: Optional[float] = None, language: Optional[str] = None) -> Transcript:
        """
        Transcribe canonical audio into time-ordered, non-overlapping segments.

        The engine is always returned to the pool; an engine that failed
        fatally is discarded instead of being reused.
        """
        if not os.path.isfile(audio.path):
            raise StorageIOError(f"Canonical audio missing: {audio.path}")

        deadline = time.monotonic() + timeout if timeout else None
        acquire_timeout = self.acquire_timeout
        if deadline is not None:
            acquire_timeout = min(acquire_timeout or timeout, timeout)

        engine = self.pool.acquire(timeout=acquire_timeout, token=token)
        broken = False
        try:
            logger.info(f"Transcribing {audio.path} with {engine.name}")
            raw_segments = engine.recognize(audio.path, audio.sample_rate, token, deadline, language)
        except ExternalEngineError as e:
            broken = e.fatal
            raise
        except PipelineError:
            raise
        except Exception as e:
            raise ExternalEngineError(f"Recognition failed: {e}") from e
        finally:
            if broken:
                self.pool.discard(engine)
            else:
                self.pool.release(engine)

        segments = normalize_segments(raw_segments)
        logger.info(f"Transcription completed for {audio.path}: {len(segments)} segments")
        return Transcript(segments=segments, engine=engine.name, language=language)


def save_srt_file(transcript: Transcript, subs_dir: str, job_id: str) -> str:
    """Save segments as SRT subtitle file"""
    ensure_dir(subs_dir)
    srt_path = os.path.join(subs_dir, f"{job_id}.srt")

    with open(srt_path, 'w', encoding='utf-8') as f:
        for i, segment in enumerate(transcript.segments, 1):
            start_time = format_timecode(segment.start, decimal_sep=',')
            end_time = format_timecode(segment.end, decimal_sep=',')

            f.write(f"{i}\n")
            f.write(f"{start_time} --> {end_time}\n")
            f.write(f"{segment.text}\n\n")

    return srt_path
