"""Core module - session store, streaming policy, and memory management."""

from .backoff import BackoffController, api_backoff, stream_backoff
from .memory_manager import MemoryCleanupManager, MemoryStats, SessionStats
from .render_strategy import RenderMode, RenderStrategySelector, ScrollCommand, VisibleWindow
from .session_store import ChatSnapshot, SessionStore

__all__ = [
    'BackoffController', 'api_backoff', 'stream_backoff',
    'MemoryCleanupManager', 'MemoryStats', 'SessionStats',
    'RenderMode', 'RenderStrategySelector', 'ScrollCommand', 'VisibleWindow',
    'ChatSnapshot', 'SessionStore',
]
