"""
channels — Per-channel delivery backends.

Each channel module exposes:
    async send(message, recipient, *, provider=..., ...) → DeliveryAttempt

Channels are stateless coroutines. Provider errors raise DeliveryFailure;
timeouts, retries and failure capture live in the fan-out.
"""
