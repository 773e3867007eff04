"""Media processing worker: probe, transcode, transcribe and feature extraction."""

__version__ = "0.1.0"
