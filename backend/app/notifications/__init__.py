"""
notifications — Multi-channel notification fan-out.

Sub-modules:
    channels/   — Per-channel delivery backends (push, SMS, email)
    fanout      — Parallel delivery with timeouts, retries, failure capture
    messages    — Message text for SOS / Guardian / Follow Me / safety alerts
    models      — Data structures shared across the system
"""
