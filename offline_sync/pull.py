"""
Pull path: overlay server-authoritative changes onto the local store.
"""

import logging
from typing import Optional

from .connectivity import ConnectivityMonitor
from .errors import OfflineError
from .models import PullResult
from .store import LocalStore
from .transport import Transport

logger = logging.getLogger(__name__)


class PullService:
    """
    Fetches changes since the stored checkpoint and applies them atomically.

    Changes skipped because of queued local operations keep the checkpoint
    behind them, so a later pull brings them again once the queue is clear
    (for example after the blocking operation is discarded).
    """

    def __init__(
        self,
        store: LocalStore,
        transport: Transport,
        connectivity: ConnectivityMonitor,
        default_owner_id: str = "",
    ):
        self.store = store
        self.transport = transport
        self.connectivity = connectivity
        self.default_owner_id = default_owner_id

    async def pull(self, owner_id: Optional[str] = None, since: Optional[int] = None) -> PullResult:
        """
        Pull records changed on the server since a checkpoint.

        Args:
            owner_id: Owner whose records to fetch (defaults to the context owner)
            since: Checkpoint override; defaults to the last stored checkpoint

        Returns:
            PullResult with counts and the new checkpoint
        """
        owner_id = owner_id or self.default_owner_id
        if not owner_id:
            raise ValueError("owner_id is required to pull")
        if not self.connectivity.is_online:
            raise OfflineError("Cannot pull from server while offline")

        if since is None:
            since = self.store.get_checkpoint(owner_id)

        changes = await self.transport.fetch_changes(owner_id, since)
        result = self.store.apply_pull(
            owner_id,
            changes.records,
            changes.deleted_ids,
            changes.checkpoint,
            since=since,
        )

        logger.info(
            f"Pulled changes since {since}: {result.applied} applied, "
            f"{result.deleted} deleted, {result.skipped} skipped (pending local changes)"
        )
        return result
