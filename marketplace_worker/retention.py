"""
Retention sweep: deletes behavioral signals older than 60 days.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .db import Database, get_db
from .models import utcnow

logger = logging.getLogger(__name__)

SIGNAL_RETENTION = timedelta(days=60)


def purge_old_signals(db: Optional[Database] = None, now: Optional[datetime] = None) -> dict:
    """Delete signals created more than SIGNAL_RETENTION ago."""
    db = db or get_db()
    cutoff = (now or utcnow()) - SIGNAL_RETENTION
    purged = db.delete_signals_before(cutoff)
    logger.info(f"Purged {purged} signals older than {cutoff.date().isoformat()}")
    return {"purged": purged, "cutoff": cutoff.isoformat()}
