import os
import stat
import subprocess
import sys
import textwrap
import threading
import time
import wave

import numpy as np

from media_worker.config import WorkerConfig
from media_worker.errors import InputError
from media_worker.models import AudioRef, TERMINAL_STATUSES
from media_worker.pipeline.probe import parse_probe_output
from media_worker.pipeline.process import run_managed
from media_worker.pipeline.transcode import canonical_paths
from media_worker.pipeline.util import ensure_dir


def write_wav(path, seconds=1.0, rate=16000, freq=440.0, amplitude=0.5, channels=1):
    """Write a 16-bit PCM sine (or silence when amplitude is 0)"""
    t = np.arange(int(seconds * rate)) / float(rate)
    signal = amplitude * np.sin(2 * np.pi * freq * t)
    pcm = (signal * 32767).astype('<i2')
    if channels > 1:
        pcm = np.repeat(pcm[:, None], channels, axis=1)
    with wave.open(path, 'wb') as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(2)
        wav.setframerate(rate)
        wav.writeframes(pcm.tobytes())
    return path


def fake_executable(directory, name, body):
    """Write a small Python script that stands in for an external binary"""
    path = os.path.join(directory, name)
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"#!{sys.executable}\n")
        f.write(textwrap.dedent(body))
    os.chmod(path, os.stat(path).st_mode | stat.S_IEXEC)
    return path


def make_config(data_dir, **overrides):
    config = WorkerConfig(
        DATA_DIR=data_dir,
        TRANSCRIBE_ENGINE="mock",
        WORKER_CONCURRENCY=2,
        ENGINE_POOL_SIZE=1,
        ENGINE_ACQUIRE_TIMEOUT_SEC=5.0,
        BACKOFF_BASE_MS=1,
        MAX_BACKOFF_MS=5,
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def wait_for_terminal(orchestrator, job_id, timeout=15.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = orchestrator.get_job(job_id)
        if job is not None and job.status in TERMINAL_STATUSES:
            return job
        time.sleep(0.02)
    raise AssertionError(f"Job {job_id} did not finish within {timeout}s")


PROBE_OUTPUT = {
    "format": {"filename": "clip.mp4", "format_name": "mov,mp4", "duration": "1.000", "size": "2048"},
    "streams": [
        {"index": 0, "codec_type": "video", "codec_name": "h264", "width": 640, "height": 360},
        {"index": 1, "codec_type": "audio", "codec_name": "aac", "sample_rate": "44100", "channels": "2"},
    ],
}


class FakeProbe:
    """Returns fixed metadata; inputs containing 'corrupt' are rejected"""

    def __init__(self):
        self.calls = 0

    def probe(self, input_path, token=None, timeout=None):
        self.calls += 1
        if "corrupt" in input_path:
            raise InputError(f"Unable to parse media container {input_path}")
        return parse_probe_output(PROBE_OUTPUT, input_path)


class FakeTranscoder:
    """Writes a generated WAV into the workspace instead of running ffmpeg.

    ``failures`` is a list of exceptions raised by successive calls before
    succeeding. With ``block`` set, each call runs a sleeping child process
    under run_managed until cancelled or timed out.
    """

    def __init__(self, amplitude=0.5, seconds=1.0, failures=None, block=False, tracker=None):
        self.amplitude = amplitude
        self.seconds = seconds
        self.failures = list(failures or [])
        self.block = block
        self.tracker = tracker
        self.calls = 0
        self.started = threading.Event()

    def transcode(self, input_path, metadata, options, workspace, token=None, timeout=None):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        if self.block:
            self.started.set()
            run_managed(
                lambda: subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"],
                                         stdout=subprocess.PIPE, stderr=subprocess.PIPE),
                name="sleeper", token=token, timeout=timeout, tracker=self.tracker)
        ensure_dir(workspace)
        audio_path, _ = canonical_paths(workspace)
        write_wav(audio_path, seconds=self.seconds, rate=options.sample_rate, amplitude=self.amplitude)
        return AudioRef(path=audio_path, sample_rate=options.sample_rate, channels=1, duration=self.seconds)


class FlakyTranscriber:
    """Raises queued exceptions before delegating to a real transcriber"""

    def __init__(self, inner, failures=None):
        self.inner = inner
        self.failures = list(failures or [])
        self.calls = 0

    def transcribe(self, audio, token=None, timeout=None, language=None):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.inner.transcribe(audio, token=token, timeout=timeout, language=language)


def input_file(data_dir, name="clip.mp4"):
    path = os.path.join(data_dir, name)
    with open(path, 'wb') as f:
        f.write(b"\x00" * 16)
    return name
