"""
Verrous asyncio par clé (un par livraison, un par wallet, un par livreur).
Sérialisent les lecture-modification-écriture d'une même entité dans ce
processus ; entre processus, ce sont les compare-and-set (version / seq) qui
protègent.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class KeyedLocks:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # Plus personne n'attend : on libère l'entrée
                del self._waiters[key]
                del self._locks[key]


delivery_locks = KeyedLocks()
wallet_locks   = KeyedLocks()
driver_locks   = KeyedLocks()
