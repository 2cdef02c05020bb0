"""calstream — real-time calendar update distribution over a polled change log."""

from calstream._version import __version__
from calstream.api.service import StreamService
from calstream.client.calendar import CalendarState
from calstream.client.controller import ConnectionStatus, ReconnectController
from calstream.client.lifecycle import ClientEvent
from calstream.config import ClientConfig, StreamConfig
from calstream.core.memory import MemoryChangeLog
from calstream.core.pruner import Pruner
from calstream.core.sqlite import SQLiteChangeLog, SQLiteConfig
from calstream.core.types import ChangeRecord, EventType, RetentionPolicy
from calstream.core.writer import ChangeLogWriter
from calstream.net.frames import StreamFrame
from calstream.net.session import StreamSession

__all__ = [
    "__version__",
    "CalendarState",
    "ChangeLogWriter",
    "ChangeRecord",
    "ClientConfig",
    "ClientEvent",
    "ConnectionStatus",
    "EventType",
    "MemoryChangeLog",
    "Pruner",
    "ReconnectController",
    "RetentionPolicy",
    "SQLiteChangeLog",
    "SQLiteConfig",
    "StreamConfig",
    "StreamFrame",
    "StreamService",
    "StreamSession",
]
