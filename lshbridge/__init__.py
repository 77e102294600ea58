"""Serial framing, controller messages, actuator command batching, sync phases and MQTT publishing for a home-automation bridge."""

__version__ = "0.1.0"

__all__ = [
    "batch",
    "framing",
    "link",
    "messages",
    "publisher",
    "sync",
    "writers",
]