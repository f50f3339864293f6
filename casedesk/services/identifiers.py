"""
Identifier generation for DTR and RMA records.

    DTR-<year>-<4-digit sequence>   e.g. DTR-2024-0042
    RMA-<year>-<3-digit sequence>   e.g. RMA-2024-007

The sequence is derived from the number of records already carrying the
current year's prefix. Two callers can compute the same candidate, so each
candidate is checked for existence and bumped on collision; after
MAX_ATTEMPTS collisions a millisecond timestamp id is used instead. The
unique index on the id column remains the final arbiter.
"""

import logging
import time

from casedesk.services.date_normalizer import utcnow

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


def _epoch_millis() -> int:
    return int(time.time() * 1000)


def _next_in_sequence(repo, entity_type: str, field: str, prefix: str, width: int) -> str | None:
    seq = repo.count(entity_type, {f"{field}__startswith": prefix}) + 1
    for _ in range(MAX_ATTEMPTS):
        candidate = f"{prefix}{seq:0{width}d}"
        if repo.find_one(entity_type, {field: candidate}) is None:
            return candidate
        seq += 1
    return None


def generate_case_id(repo, now=None) -> str:
    """Next free ``DTR-<year>-NNNN`` id, or ``DTR-<epoch millis>`` after repeated collisions."""
    year = (now or utcnow()).year
    case_id = _next_in_sequence(repo, "dtr", "case_id", f"DTR-{year}-", 4)
    if case_id is None:
        case_id = f"DTR-{_epoch_millis()}"
        logger.warning("Case id sequence for %s kept colliding; using %s", year, case_id)
    return case_id


def generate_rma_number(repo, now=None) -> str:
    """Next free ``RMA-<year>-NNN`` number, or a timestamp-suffixed one after repeated collisions."""
    year = (now or utcnow()).year
    rma_number = _next_in_sequence(repo, "rma", "rma_number", f"RMA-{year}-", 3)
    if rma_number is None:
        rma_number = f"RMA-{year}-{_epoch_millis()}"
        logger.warning("RMA number sequence for %s kept colliding; using %s", year, rma_number)
    return rma_number
