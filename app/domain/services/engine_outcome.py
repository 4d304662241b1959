"""
Result of running one engine family on one inbox event.
"""
import enum


class EngineOutcome(str, enum.Enum):
    PROCESSED = "processed"
    # Semantic duplicate of an event already handled
    DUPLICATE = "duplicate"
    # Not applicable or gone upstream; never retried
    SKIPPED = "skipped"
