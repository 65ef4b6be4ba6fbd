"""
Real-time event fan-out and log stream multiplexing.
"""

from .connections import RESOURCES_TOPIC, SERVICES_TOPIC, Connection, ConnectionRegistry, logs_topic
from .log_streams import LogStream, LogStreamError, LogStreamPool, detect_level
from .manager import EventBroadcaster

__all__ = [
    "RESOURCES_TOPIC",
    "SERVICES_TOPIC",
    "Connection",
    "ConnectionRegistry",
    "logs_topic",
    "LogStream",
    "LogStreamError",
    "LogStreamPool",
    "detect_level",
    "EventBroadcaster",
]
