"""
codec-fixtures - Source Modules

This package contains the core modules for deterministic codec fixtures:
- signals: Reference PCM synthesis (sine, silence, impulse)
- formats / fixture_spec: Container traits and fixture matrix expansion
- encoders / external: Encoder capabilities (libsndfile, ffmpeg)
- metadata: Tag application and read-back
- manifest: Checksummed fixture manifest and drift detection
- decoders / analysis / tolerance / verify: Decode verification
- pipeline: Generation state machine and atomic commit
"""

__version__ = "1.0.0"
