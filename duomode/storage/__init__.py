"""duomode storage backends.

A closed set of two engines behind one interface:

    EmbeddedBackend    - SQLite in-process (client mode)
    RelationalBackend  - PostgreSQL + pgvector over a pool (server mode)
"""

from .embedded import EmbeddedBackend, EmbeddedHandle
from .relational import RelationalBackend, RelationalHandle

__all__ = [
    "EmbeddedBackend",
    "EmbeddedHandle",
    "RelationalBackend",
    "RelationalHandle",
]
