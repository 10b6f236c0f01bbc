"""Business logic services.

Services are called by route handlers and orchestrate database and
provider operations. Route handlers stay transport-only.
"""

from scholar.services.chat import ChatTurn, ChatTurnService
from scholar.services.conversation_store import ConversationStore
from scholar.services.persistence import PersistenceFinalizer
from scholar.services.stream_coordinator import StreamCoordinator

__all__ = [
    "ChatTurn",
    "ChatTurnService",
    "ConversationStore",
    "PersistenceFinalizer",
    "StreamCoordinator",
]
