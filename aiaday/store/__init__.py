"""Persistence layer.

`Store` is the protocol the rest of the package depends on.
`PostgresStore` is the production backend, `InMemoryStore` the in-process one.
"""

from .base import Store  # noqa: F401
from .memory import InMemoryStore, cosine_distance  # noqa: F401
from .postgres import PostgresStore  # noqa: F401
