import logging
from typing import Dict, List, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_BATCH_SIZE = 200


def batch_name(prefix: str, index: int) -> str:
    """Batch names are 1-based: processing_batch_1, processing_batch_2, ..."""
    return f"{prefix}_{index}"


def partition(items: Sequence[T], max_size: int = DEFAULT_BATCH_SIZE, prefix: str = "batch") -> Dict[str, List[T]]:
    """
    Split items into consecutive batches of at most max_size.

    Batch n holds items[(n-1)*max_size : n*max_size] of the input order, so the
    same input always yields the same mapping. Callers must not reorder items
    between discovery and partitioning.
    """
    if max_size < 1:
        raise ValueError(f"max_size must be positive, got {max_size}")

    batches: Dict[str, List[T]] = {}
    for start in range(0, len(items), max_size):
        batches[batch_name(prefix, start // max_size + 1)] = list(items[start:start + max_size])

    logger.debug(f"Partitioned {len(items)} items into {len(batches)} '{prefix}' batches")
    return batches
