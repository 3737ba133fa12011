from threadgenie.modules.session.models import (
    EditSession,
    ProcessingStatus,
    SessionOperation,
    READY_STATUSES,
)
from threadgenie.modules.session.registry import SessionRegistry

__all__ = [
    "EditSession",
    "ProcessingStatus",
    "SessionOperation",
    "READY_STATUSES",
    "SessionRegistry",
]
