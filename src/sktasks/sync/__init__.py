"""
Delegated Encrypted Records -- replication of sealed task records.

Records never travel naked. Every push seals to the owner and to each
delegate. Every pull opens with the first identity path that works.

Remote stores: an HTTP record service or a shared filesystem ledger.
The human picks the pipe. The engine secures the payload.
"""

from .engine import SyncEngine
from .vault import Vault

__all__ = ["SyncEngine", "Vault"]
