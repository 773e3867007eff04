"""
Audio and transcript feature extraction.

Computes a fixed-dimension vector of spectral/statistical features from the
canonical WAV plus transcript-derived features, and optionally classifies
the vector with a linear model loaded from a JSON file.
"""

import json
import wave
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from ..cancellation import CancellationToken
from ..errors import ExternalEngineError, InputError, NumericError, StorageIOError
from ..models import AudioRef, Classification, FeatureVector, Transcript

logger = logging.getLogger("media_worker")

AUDIO_FEATURES = [
    "duration_sec",
    "rms_mean",
    "rms_std",
    "peak_amplitude",
    "zcr_mean",
    "zcr_std",
    "spectral_centroid_mean",
    "spectral_bandwidth_mean",
    "spectral_rolloff_mean",
    "spectral_flatness_mean",
    "silence_ratio",
    "band_energy_low",
    "band_energy_mid",
    "band_energy_high",
]

TRANSCRIPT_FEATURES = [
    "transcript_present",
    "segment_count",
    "word_count",
    "words_per_second",
    "speech_ratio",
    "mean_segment_sec",
]

FEATURE_NAMES = AUDIO_FEATURES + TRANSCRIPT_FEATURES
FEATURE_DIM = len(FEATURE_NAMES)

LOW_BAND_HZ = 300.0
HIGH_BAND_HZ = 3000.0
ROLLOFF_FRACTION = 0.85


@dataclass(frozen=True)
class FrameParams:
    frame_ms: float
    hop_ms: float
    power_floor: float
    silence_db: float = -40.0


PRIMARY_PARAMS = FrameParams(frame_ms=25.0, hop_ms=10.0, power_floor=0.0)
# Wider frames and a power floor keep ratios finite on silent or sparse audio
FALLBACK_PARAMS = FrameParams(frame_ms=50.0, hop_ms=25.0, power_floor=1e-10)


def params_for_attempt(attempt: int) -> FrameParams:
    return PRIMARY_PARAMS if attempt == 0 else FALLBACK_PARAMS


# Frames per analysis block; bounds memory independently of file length
BLOCK_FRAMES = 512


def _open_wav(audio_path: str) -> wave.Wave_read:
    try:
        wav = wave.open(audio_path, 'rb')
    except FileNotFoundError as e:
        raise StorageIOError(f"Canonical audio missing: {audio_path}") from e
    except (wave.Error, EOFError) as e:
        raise InputError(f"Canonical audio is not a valid WAV file: {audio_path}: {e}") from e
    except OSError as e:
        raise StorageIOError(f"Cannot read canonical audio {audio_path}: {e}") from e

    if wav.getsampwidth() != 2:
        width = wav.getsampwidth()
        wav.close()
        raise InputError(f"Expected 16-bit PCM audio, got {width * 8}-bit")
    return wav


def _read_frames(wav: wave.Wave_read, count: int, audio_path: str) -> bytes:
    try:
        return wav.readframes(count)
    except (wave.Error, EOFError) as e:
        raise InputError(f"Canonical audio is truncated: {audio_path}: {e}") from e
    except OSError as e:
        raise StorageIOError(f"Cannot read canonical audio {audio_path}: {e}") from e


def _decode(raw: bytes, channels: int) -> np.ndarray:
    """16-bit PCM bytes as float samples in [-1, 1], downmixed to mono"""
    samples = np.frombuffer(raw, dtype='<i2').astype(np.float64) / 32768.0
    if channels > 1:
        samples = samples.reshape(-1, channels).mean(axis=1)
    return samples


def load_wav(audio_path: str) -> Tuple[np.ndarray, int]:
    """Read a whole 16-bit PCM WAV as mono float samples"""
    wav = _open_wav(audio_path)
    with wav:
        channels = wav.getnchannels()
        rate = wav.getframerate()
        raw = _read_frames(wav, wav.getnframes(), audio_path)
    return _decode(raw, channels), rate


def frame_signal(samples: np.ndarray, frame_len: int, hop: int) -> np.ndarray:
    """Split a signal into overlapping frames, zero-padding the tail"""
    if len(samples) < frame_len:
        samples = np.pad(samples, (0, frame_len - len(samples)))
    count = 1 + (len(samples) - frame_len) // hop
    idx = np.arange(frame_len)[None, :] + hop * np.arange(count)[:, None]
    return samples[idx]


class AudioFeatureAccumulator:
    """
    Running frame statistics for the AUDIO_FEATURES.

    Samples may arrive in blocks of any size; frames are cut on the same
    global hop grid as a single pass over the whole signal, so results do not
    depend on how the input was split.
    """

    # rms, rms^2, zcr, zcr^2, centroid, bandwidth, rolloff, flatness, silent frames
    _STAT_COUNT = 9

    def __init__(self, rate: int, params: FrameParams):
        self.rate = rate
        self.params = params
        self.frame_len = max(16, int(rate * params.frame_ms / 1000.0))
        self.hop = max(1, int(rate * params.hop_ms / 1000.0))
        self.window = np.hanning(self.frame_len)
        self.freqs = np.fft.rfftfreq(self.frame_len, d=1.0 / rate)
        self._low = self.freqs < LOW_BAND_HZ
        self._high = self.freqs >= HIGH_BAND_HZ
        self._mid = ~(self._low | self._high)

        self.sample_count = 0
        self.frame_count = 0
        self.peak = 0.0
        self._sums = np.zeros(self._STAT_COUNT)
        self._bands = np.zeros(3)
        self._pending = np.zeros(0)

    def add_samples(self, samples: np.ndarray) -> None:
        if len(samples) == 0:
            return
        self.sample_count += len(samples)
        self.peak = max(self.peak, float(np.max(np.abs(samples))))

        buffer = np.concatenate((self._pending, samples))
        if len(buffer) >= self.frame_len:
            count = 1 + (len(buffer) - self.frame_len) // self.hop
            self._add_frames(frame_signal(buffer, self.frame_len, self.hop))
            buffer = buffer[count * self.hop:]
        self._pending = buffer

    def _add_frames(self, frames: np.ndarray) -> None:
        params = self.params
        freqs = self.freqs
        with np.errstate(divide='ignore', invalid='ignore'):
            rms = np.sqrt(np.mean(frames ** 2, axis=1))
            zcr = np.mean(np.abs(np.diff(np.sign(frames), axis=1)) > 0, axis=1)

            spectrum = np.abs(np.fft.rfft(frames * self.window, axis=1)) ** 2 + params.power_floor
            total = spectrum.sum(axis=1)
            centroid = (spectrum * freqs).sum(axis=1) / total
            bandwidth = np.sqrt(((freqs[None, :] - centroid[:, None]) ** 2 * spectrum).sum(axis=1) / total)
            cumulative = np.cumsum(spectrum, axis=1)
            rolloff = freqs[np.argmax(cumulative >= ROLLOFF_FRACTION * total[:, None], axis=1)]
            flatness = np.exp(np.mean(np.log(spectrum), axis=1)) / np.mean(spectrum, axis=1)
            rms_db = 20.0 * np.log10(rms + params.power_floor)

        self.frame_count += len(frames)
        self._sums += np.array([
            rms.sum(), (rms ** 2).sum(),
            zcr.sum(), (zcr ** 2).sum(),
            centroid.sum(), bandwidth.sum(), rolloff.sum(), flatness.sum(),
            np.count_nonzero(rms_db < params.silence_db),
        ])
        self._bands += np.array([
            spectrum[:, self._low].sum(),
            spectrum[:, self._mid].sum(),
            spectrum[:, self._high].sum(),
        ])

    def finish(self) -> List[float]:
        """Feature values in AUDIO_FEATURES order"""
        if self.sample_count == 0:
            raise InputError("No audio samples to analyse")
        if self.frame_count == 0:
            # Shorter than one frame: analysed as a single zero-padded frame
            self._add_frames(frame_signal(self._pending, self.frame_len, self.hop))

        n = float(self.frame_count)
        with np.errstate(divide='ignore', invalid='ignore'):
            means = self._sums / n
            rms_std = np.sqrt(np.maximum(means[1] - means[0] ** 2, 0.0))
            zcr_std = np.sqrt(np.maximum(means[3] - means[2] ** 2, 0.0))
            bands = self._bands / self._bands.sum()

        return [
            self.sample_count / float(self.rate),
            float(means[0]),
            float(rms_std),
            self.peak,
            float(means[2]),
            float(zcr_std),
            float(means[4]),
            float(means[5]),
            float(means[6]),
            float(means[7]),
            float(means[8]),
            float(bands[0]),
            float(bands[1]),
            float(bands[2]),
        ]


def compute_audio_features(samples: np.ndarray, rate: int, params: FrameParams) -> List[float]:
    """Features of an in-memory signal in AUDIO_FEATURES order"""
    accumulator = AudioFeatureAccumulator(rate, params)
    accumulator.add_samples(samples)
    return accumulator.finish()


def compute_wav_features(audio_path: str, params: FrameParams, token: Optional[CancellationToken] = None,
                         block_frames: int = BLOCK_FRAMES) -> List[float]:
    """Features of a WAV file read block by block, in AUDIO_FEATURES order"""
    wav = _open_wav(audio_path)
    with wav:
        channels = wav.getnchannels()
        accumulator = AudioFeatureAccumulator(wav.getframerate(), params)
        block = block_frames * accumulator.hop
        while True:
            if token is not None:
                token.raise_if_cancelled()
            raw = _read_frames(wav, block, audio_path)
            if not raw:
                break
            accumulator.add_samples(_decode(raw, channels))

    if accumulator.sample_count == 0:
        raise InputError(f"Canonical audio is empty: {audio_path}")
    return accumulator.finish()


def compute_transcript_features(transcript: Optional[Transcript], duration: float) -> List[float]:
    """Transcript features in TRANSCRIPT_FEATURES order; zeros when absent"""
    if transcript is None:
        return [0.0] * len(TRANSCRIPT_FEATURES)

    segments = transcript.segments
    word_count = sum(len(s.text.split()) for s in segments)
    speech_sec = sum(s.end - s.start for s in segments)

    return [
        1.0,
        float(len(segments)),
        float(word_count),
        word_count / duration if duration > 0 else 0.0,
        min(1.0, speech_sec / duration) if duration > 0 else 0.0,
        speech_sec / len(segments) if segments else 0.0,
    ]


class LinearClassifier:
    """Softmax linear model over standardized feature vectors"""

    def __init__(self, labels: List[str], weights: np.ndarray, bias: np.ndarray,
                 mean: Optional[np.ndarray] = None, scale: Optional[np.ndarray] = None):
        self.labels = labels
        self.weights = weights
        self.bias = bias
        self.mean = mean if mean is not None else np.zeros(weights.shape[1])
        self.scale = scale if scale is not None else np.ones(weights.shape[1])

    @classmethod
    def load(cls, path: str) -> 'LinearClassifier':
        """
        Load a model file: {"labels": [...], "weights": [[...]], "bias": [...],
        "mean": [...], "scale": [...]} with weights shaped (labels, FEATURE_DIM).

        Raises:
            ExternalEngineError: fatal, when the file is missing or malformed
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            labels = [str(label) for label in data['labels']]
            weights = np.asarray(data['weights'], dtype=np.float64)
            bias = np.asarray(data['bias'], dtype=np.float64)
            mean = np.asarray(data['mean'], dtype=np.float64) if data.get('mean') is not None else None
            scale = np.asarray(data['scale'], dtype=np.float64) if data.get('scale') is not None else None
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise ExternalEngineError(f"Feature model load failed ({path}): {e}", fatal=True) from e

        expected = (len(labels), FEATURE_DIM)
        if weights.shape != expected or bias.shape != (len(labels),):
            raise ExternalEngineError(
                f"Feature model shape mismatch: weights {weights.shape}, expected {expected}", fatal=True)
        for name, vector in (('mean', mean), ('scale', scale)):
            if vector is not None and vector.shape != (FEATURE_DIM,):
                raise ExternalEngineError(f"Feature model {name} has shape {vector.shape}", fatal=True)

        logger.info(f"Loaded feature model {path}: {len(labels)} labels")
        return cls(labels, weights, bias, mean, scale)

    def classify(self, values: np.ndarray) -> Classification:
        if values.shape != (self.weights.shape[1],):
            raise InputError(f"Feature vector has shape {values.shape}, model expects {self.weights.shape[1]}")

        with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
            scale = np.where(self.scale == 0, 1.0, self.scale)
            logits = self.weights @ ((values - self.mean) / scale) + self.bias
            exp = np.exp(logits - np.max(logits))
            probs = exp / exp.sum()

        if not np.all(np.isfinite(probs)):
            raise NumericError("Classifier produced non-finite scores")

        best = int(np.argmax(probs))
        return Classification(
            label=self.labels[best],
            confidence=float(probs[best]),
            scores={label: float(p) for label, p in zip(self.labels, probs)},
        )


class FeatureExtractor:
    """Computes FEATURE_DIM features and optionally classifies them"""

    def __init__(self, model_path: Optional[str] = None):
        self.model_path = model_path
        self._classifier: Optional[LinearClassifier] = None
        self._lock = threading.Lock()

    @property
    def dimension(self) -> int:
        return FEATURE_DIM

    def _get_classifier(self) -> Optional[LinearClassifier]:
        if not self.model_path:
            return None
        with self._lock:
            if self._classifier is None:
                self._classifier = LinearClassifier.load(self.model_path)
            return self._classifier

    def extract(self, audio: AudioRef, transcript: Optional[Transcript] = None,
                token: Optional[CancellationToken] = None, attempt: int = 0) -> FeatureVector:
        """
        Extract the feature vector for canonical audio.

        Attempt 0 uses the primary frame parameters; later attempts use the
        fallback parameters after a NumericError.

        Raises:
            InputError: malformed audio or wrong vector dimensionality
            NumericError: NaN/Inf in the computed features
            ExternalEngineError: fatal, when the classifier model cannot load
        """
        if token is not None:
            token.raise_if_cancelled()

        params = params_for_attempt(attempt)
        audio_features = compute_wav_features(audio.path, params, token=token)
        if token is not None:
            token.raise_if_cancelled()

        duration = audio_features[0]
        values = np.asarray(audio_features + compute_transcript_features(transcript, duration), dtype=np.float64)

        if values.shape != (FEATURE_DIM,):
            raise InputError(f"Feature vector has {values.shape[0]} dimensions, expected {FEATURE_DIM}")

        bad = [name for name, value in zip(FEATURE_NAMES, values) if not np.isfinite(value)]
        if bad:
            raise NumericError(f"Non-finite features ({', '.join(bad)}) with {params.frame_ms:.0f}ms frames")

        classifier = self._get_classifier()
        classification = classifier.classify(values) if classifier else None

        logger.info(f"Extracted {FEATURE_DIM} features from {audio.path}"
                    + (f", class={classification.label}" if classification else ""))
        return FeatureVector(
            names=list(FEATURE_NAMES),
            values=[float(v) for v in values],
            classification=classification,
            fallback_used=attempt > 0,
        )
