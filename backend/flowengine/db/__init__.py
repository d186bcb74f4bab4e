"""Database module."""

from flowengine.db.database import close_database, get_db, init_database
from flowengine.db.execution_store import ExecutionStore, execution_store
from flowengine.db.log_store import LogStore, log_store
from flowengine.db.secrets import ContextCipher, FernetCipher, NullCipher
from flowengine.db.template_store import TemplateStore, template_store

__all__ = [
    "get_db",
    "init_database",
    "close_database",
    "template_store",
    "TemplateStore",
    "execution_store",
    "ExecutionStore",
    "log_store",
    "LogStore",
    "ContextCipher",
    "FernetCipher",
    "NullCipher",
]
