"""
Data-processing log hook.

Each processing of personal data is written as one structured
``data_processing`` log entry; nothing else about consent is managed here.
"""

from dataclasses import asdict
from typing import Optional

from shared.logging import get_logger
from .models import DataProcessingEntry


class DataProcessingLog:
    """Records personal-data processing activities."""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("identity.privacy")

    def record(self,
               user_id: str,
               activity: str,
               data_type: str,
               processing_type: str,
               legal_basis: str) -> Optional[DataProcessingEntry]:
        entry = DataProcessingEntry(
            user_id=user_id,
            activity=activity,
            data_type=data_type,
            processing_type=processing_type,
            legal_basis=legal_basis,
        )
        try:
            fields = asdict(entry)
            fields["recorded_at"] = entry.recorded_at.isoformat()
            self.logger.info("data_processing", **fields)
        except (TypeError, ValueError) as e:
            self.logger.error("Failed to record data processing", activity=activity, error=str(e))
            return None
        return entry
