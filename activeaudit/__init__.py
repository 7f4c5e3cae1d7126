"""Webcam preview runtime: capture broker, per-tab relay and their signaling."""

__all__ = [
    'config',
    'messages',
    'messaging',
    'routing',
    'broker',
    'escalation',
    'relay',
    'runtime',
]
