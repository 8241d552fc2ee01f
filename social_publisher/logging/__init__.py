"""Structured logging for the social publishing pipeline."""
from social_publisher.logging.models import LogLevel, LogComponent, LogEntry
from social_publisher.logging.agent_logger import AgentLogger
from social_publisher.logging.component_logger import ComponentLogger, TimedOperation

__all__ = [
    "LogLevel", "LogComponent", "LogEntry",
    "AgentLogger",
    "ComponentLogger", "TimedOperation",
]
