"""Sanctuary session lifecycle and real-time coordination engine.

Components: session lifecycle (``lifecycle``), membership (``membership``), breakout
rooms (``breakout``), the safety alert pipeline (``safety``), audio quality
classification (``quality``) and per-session fan-out (``realtime``), wired together by
``engine.SanctuaryEngine`` and exposed over HTTP by ``api.main``.
"""

__version__ = "0.1.0"

__all__ = ["config", "engine", "errors", "models", "tasks"]
