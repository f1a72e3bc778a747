"""
AI Collaboration Hub

Shared memory, messaging, consensus and autonomous scheduling for
independent AI agents, served from one coordination process.
"""

__version__ = "0.1.0"
__author__ = "Kai-C-Clarke"

from .core.knowledge_graph import KnowledgeGraph
from .communication.message_hub import MessageHub
from .core.consensus import ConsensusCoordinator
from .core.autonomous import AutonomousScheduler
from .providers.router import AIRequestRouter
from .storage.adapter import StorageAdapter

__all__ = [
    "KnowledgeGraph",
    "MessageHub",
    "ConsensusCoordinator",
    "AutonomousScheduler",
    "AIRequestRouter",
    "StorageAdapter",
]
