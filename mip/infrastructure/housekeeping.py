import logging
import os
import time
from pathlib import Path

from mip.domain.models import ACTIVE_STATUSES, ProcessingStatus


class HousekeepingService:
    """Startup cleanup for leftovers of interrupted runs."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def cleanup_temp_files(self, directory: Path, min_age_s: float = 0.0) -> int:
        """Recursively removes .tmp files left by interrupted atomic writes.

        Files modified less than ``min_age_s`` seconds ago are kept: another
        instance sharing the directory may still be about to rename them.
        """
        removed = 0
        if not directory.exists():
            return removed
        cutoff = time.time() - min_age_s
        for root, dirs, files in os.walk(directory):
            for file in files:
                if file.endswith(".tmp"):
                    path = Path(root) / file
                    try:
                        if min_age_s > 0 and path.stat().st_mtime > cutoff:
                            continue
                        path.unlink()
                        removed += 1
                    except OSError as e:
                        self.logger.warning(f"Could not remove {file}: {e}")
        if removed:
            self.logger.info(f"HOUSEKEEPING: removed {removed} temp file(s) from {directory}")
        return removed

    def requeue_interrupted(self, store) -> int:
        """Puts items stuck in Processing (or a sub-phase) back to Queued.

        Only safe when a single instance owns the store: another live instance
        could be working on those items.
        """
        requeued = 0
        for status in sorted(ACTIVE_STATUSES, key=lambda s: s.value):
            for item in store.get_items_by_status(status):
                if store.try_claim(item.id, status, ProcessingStatus.QUEUED):
                    requeued += 1
                    self.logger.info(f"HOUSEKEEPING: requeued interrupted item {item.id} ({status.value})")
        return requeued
