"""Position reconciliation for copied sells.

The CLOB balance endpoint can lag behind fills by a block or more. When the
target sells the same asset several times in one poll cycle, a fresh balance
query may still report shares we already sold. The reconciler keeps a
per-cycle cache of what we believe we hold and always trusts the lower of the
cached and remote values.
"""

from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional

import structlog

from copytrader.core.models import ZERO

logger = structlog.get_logger(__name__)

RemoteSharesFetcher = Callable[[str], Awaitable[Decimal]]


class PositionReconciler:
    """Merges remote share balances with a same-cycle local cache.

    The cache must be reset at the start of every poll cycle; it only guards
    against stale reads within a single cycle.
    """

    def __init__(self, fetch_remote_shares: RemoteSharesFetcher):
        self._fetch_remote_shares = fetch_remote_shares
        self._cache: Dict[str, Decimal] = {}

    def reset(self) -> None:
        """Discard all cached positions."""
        self._cache.clear()

    def cached(self, asset_id: str) -> Optional[Decimal]:
        """Cached share count for an asset, or None if not referenced this cycle."""
        return self._cache.get(asset_id)

    async def reconcile(self, asset_id: str) -> Decimal:
        """Return the share count we can safely sell for an asset.

        The first reference in a cycle uses the remote balance; later references
        use min(remote, cached). Exchange errors from the remote query propagate.
        """
        remote = await self._fetch_remote_shares(asset_id)
        cached = self._cache.get(asset_id)

        if cached is None:
            shares = remote
        else:
            shares = min(remote, cached)
            if remote > cached:
                logger.debug(
                    "reconciler.stale_remote_balance",
                    asset_id=asset_id,
                    remote=str(remote),
                    cached=str(cached)
                )

        self._cache[asset_id] = shares
        return shares

    def record_sell(self, asset_id: str, sold_shares: Decimal) -> None:
        """Deplete the cache after a successful sell."""
        cached = self._cache.get(asset_id)
        if cached is None:
            logger.debug("reconciler.sell_without_cache", asset_id=asset_id)
            return

        self._cache[asset_id] = max(ZERO, cached - sold_shares)
