import os
import json
import logging
import subprocess
from typing import Any, Dict, Optional

from ..cancellation import CancellationToken
from ..errors import InputError
from ..models import MediaMetadata, StreamInfo
from .process import ProcessTracker, run_managed

logger = logging.getLogger("media_worker")


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_probe_output(data: Dict[str, Any], input_path: str) -> MediaMetadata:
    """Convert ffprobe JSON (-show_format -show_streams) into MediaMetadata"""
    fmt = data.get('format') or {}
    streams = []
    for stream in data.get('streams', []):
        streams.append(StreamInfo(
            index=_to_int(stream.get('index')) or 0,
            codec_type=stream.get('codec_type', 'unknown'),
            codec_name=stream.get('codec_name'),
            codec_long_name=stream.get('codec_long_name'),
            sample_rate=_to_int(stream.get('sample_rate')),
            channels=_to_int(stream.get('channels')),
            width=_to_int(stream.get('width')),
            height=_to_int(stream.get('height')),
            frame_rate=stream.get('avg_frame_rate'),
            duration=_to_float(stream.get('duration')),
        ))

    # Container duration first, then the longest stream duration
    duration = _to_float(fmt.get('duration'))
    if not duration:
        durations = [s.duration for s in streams if s.duration]
        duration = max(durations) if durations else 0.0

    return MediaMetadata(
        filename=fmt.get('filename', input_path),
        format_name=fmt.get('format_name', 'unknown'),
        format_long_name=fmt.get('format_long_name'),
        duration=duration,
        size_bytes=_to_int(fmt.get('size')),
        bit_rate=_to_int(fmt.get('bit_rate')),
        streams=streams,
    )


class FfprobeMediaProbe:
    """Extracts container/stream metadata with ffprobe"""

    def __init__(self, ffprobe_path: str = "ffprobe", tracker: Optional[ProcessTracker] = None):
        self.ffprobe_path = ffprobe_path
        self.tracker = tracker

    def probe(self, input_path: str, token: Optional[CancellationToken] = None,
              timeout: Optional[float] = None) -> MediaMetadata:
        """
        Probe a media file.

        Raises:
            InputError: unreadable file, unparseable container, zero duration,
                or no audio stream
        """
        if not os.path.isfile(input_path):
            raise InputError(f"Input file not found: {input_path}")
        if not os.access(input_path, os.R_OK):
            raise InputError(f"Input file is not readable: {input_path}")

        args = [self.ffprobe_path, '-v', 'error', '-show_format', '-show_streams', '-of', 'json', input_path]
        logger.debug(f"Probing {input_path}")

        output = run_managed(
            lambda: subprocess.Popen(args, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE),
            name="ffprobe",
            token=token,
            timeout=timeout,
            tracker=self.tracker,
        )

        if output.returncode != 0:
            raise InputError(f"Unable to parse media container {input_path}: {output.stderr_tail(3)}")

        try:
            data = json.loads(output.stdout.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InputError(f"Invalid ffprobe output for {input_path}: {e}") from e

        metadata = parse_probe_output(data, input_path)

        if metadata.duration <= 0:
            raise InputError(f"Media has zero duration: {input_path}")
        if not metadata.has_audio:
            raise InputError(f"Unsupported media, no audio stream: {input_path}")

        logger.info(f"Probed {input_path}: format={metadata.format_name}, "
                    f"duration={metadata.duration:.2f}s, streams={len(metadata.streams)}")
        return metadata
