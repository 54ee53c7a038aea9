"""
Reference URL refresh for long-running batches.

Reference images are passed to the generator as time-limited signed URLs.
Once a batch has been running longer than the staleness threshold, each URL
is re-derived from its canonical locator rather than reused.
"""

import logging
import time
from typing import Callable, List, Sequence

from ai_batch_guard.logging import log_debug, log_warning

from .items import ReferenceUrl

logger = logging.getLogger(__name__)


class ReferenceUrlRefresher:
    """Re-issues signed reference URLs from their stable locators."""

    def __init__(
        self,
        signer: Callable[[str], str],
        staleness_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the refresher.

        Args:
            signer: Issues a fresh signed URL for a canonical locator
            staleness_seconds: Batch age after which URLs are re-derived
            clock: Source of the current epoch time in seconds
        """
        self.signer = signer
        self.staleness_seconds = staleness_seconds
        self.clock = clock

    def is_stale(self, batch_started_at: float) -> bool:
        return self.clock() - batch_started_at > self.staleness_seconds

    def refresh(self, batch_started_at: float, references: Sequence[ReferenceUrl]) -> List[str]:
        """Return usable URLs for ``references``.

        Fresh batches get their original URLs back. Stale batches get
        re-signed URLs; a reference whose locator cannot be re-signed is
        dropped and the rest are still returned.
        """
        if not self.is_stale(batch_started_at):
            return [reference.url for reference in references]

        refreshed = []
        for reference in references:
            try:
                refreshed.append(self.signer(reference.locator))
            except Exception as e:
                log_warning(
                    logger=logger,
                    event="Reference dropped",
                    locator=reference.locator,
                    error=str(e),
                )
        log_debug(logger=logger, event="References refreshed", count=len(refreshed), requested=len(references))
        return refreshed
