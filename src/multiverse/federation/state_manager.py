"""
Convergence of the shared federation state.

Local edits (admin commands, newly discovered rooms) are queued as
:class:`StateChange` objects. Each convergence pulls the shared document,
applies the queue on top, hands the result to the registry, waits a random
jitter and then pushes: reload, re-apply the same queue, save, read back.
Changes are dropped from the queue only once the read-back shows them, so a
failed push, or one overwritten by another instance saving at the same
moment, is simply retried next cycle.
"""

from __future__ import annotations

import asyncio
import random
from typing import Iterable, List, Optional

from multiverse.datatypes.federation_datatypes import FederationState, StateChange
from multiverse.federation.endpoint_registry import EndpointRegistry
from multiverse.federation.state_store import FederationStateStore
from multiverse.util.logger import get_logger

logger = get_logger("state_manager")

DEFAULT_JITTER_SECONDS = 2.0


class FederationStateManager:
    def __init__(
        self,
        store: FederationStateStore,
        registry: EndpointRegistry,
        jitter: float = DEFAULT_JITTER_SECONDS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._pending: List[StateChange] = []
        self._state = FederationState()

    @property
    def state(self) -> FederationState:
        """The last converged state (or the in-memory fallback)."""
        return self._state

    @property
    def pending(self) -> List[StateChange]:
        return list(self._pending)

    def queue(self, change: StateChange) -> None:
        """Queue a local edit and apply it to the in-memory state right away."""
        self._pending.append(change)
        change.apply(self._state)

    def queue_many(self, changes: Iterable[StateChange]) -> None:
        for change in changes:
            self.queue(change)

    @staticmethod
    def _merge(base: FederationState, changes: Iterable[StateChange]) -> FederationState:
        merged = base.copy()
        for change in changes:
            change.apply(merged)
        return merged

    async def converge(self) -> FederationState:
        """Run one pull/apply/jitter/push round and return the applied state."""
        snapshot = list(self._pending)

        try:
            loaded = await self.store.load()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[STATE] Could not load federation state, keeping in-memory copy: %s", exc)
            await self.registry.apply_state(self._state)
            return self._state

        self._state = self._merge(loaded, snapshot)
        await self.registry.apply_state(self._state)

        if not snapshot:
            return self._state

        if self.jitter > 0:
            await asyncio.sleep(self._rng.uniform(0, self.jitter))

        try:
            latest = await self.store.load()
            pushed = self._merge(latest, snapshot)
            await self.store.save(pushed)
            confirmed = await self.store.load()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[STATE] Push of %d change(s) failed, will retry: %s", len(snapshot), exc)
            return self._state

        if self._merge(confirmed, snapshot) != confirmed:
            logger.warning("[STATE] Push of %d change(s) was overwritten by another instance, will retry", len(snapshot))
            self._state = self._merge(confirmed, self._pending)
            await self.registry.apply_state(self._state)
            return self._state

        # changes queued while pushing stay for the next round
        del self._pending[: len(snapshot)]
        self._state = self._merge(confirmed, self._pending)
        await self.registry.apply_state(self._state)
        logger.info("[STATE] Pushed %d federation change(s)", len(snapshot))
        return self._state
