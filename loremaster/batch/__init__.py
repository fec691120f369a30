"""
Batch Layer.

Multi-participant action batches with GM veto and regenerate.
"""

from loremaster.batch.coordinator import (
    BatchCoordinator,
    ProcessedBatch,
    ProcessedRegenerate,
    ProcessedVeto,
    format_batch,
)

__all__ = [
    "BatchCoordinator",
    "ProcessedBatch",
    "ProcessedRegenerate",
    "ProcessedVeto",
    "format_batch",
]
