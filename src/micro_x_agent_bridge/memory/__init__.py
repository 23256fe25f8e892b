from micro_x_agent_bridge.memory.events import EventEmitter
from micro_x_agent_bridge.memory.session_manager import SessionManager
from micro_x_agent_bridge.memory.store import MemoryStore

__all__ = [
    "EventEmitter",
    "MemoryStore",
    "SessionManager",
]
