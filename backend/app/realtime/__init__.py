"""
realtime — Publish/subscribe channel for live dashboard and viewer events.

Modules:
    publisher — Publisher interface, in-memory and Redis implementations,
                group names and event names
"""
