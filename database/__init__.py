"""
Persistence for conversations, their message logs, playbooks and agents.

    from database import create_store
    store = create_store(settings.database)     # "sql" or "memory"
    conv = await store.get_conversation("conv_1", "org_1")
"""
from database.session import close_db, get_session, init_db
from database.store import SqlContextStore
from database.store_base import AgentStore, BaseContextStore, ConversationStore, PlaybookStore
from database.store_factory import create_store, get_store, reset_store
from database.store_memory import InMemoryContextStore

__all__ = [
    "ConversationStore", "PlaybookStore", "AgentStore", "BaseContextStore",
    "SqlContextStore", "InMemoryContextStore",
    "create_store", "get_store", "reset_store",
    "init_db", "close_db", "get_session",
]
