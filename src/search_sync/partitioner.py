"""Partitioning of a collection's indexation into opaque keys.

A collection without a partitioner is indexed in a single run with the
``None`` partition.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Callable, Iterable, Iterator, List, Optional, Union

from .errors import HookTimeout, InvalidParams
from .sources import as_batch

logger = logging.getLogger(__name__)


class Partitioner:
    """
    Partition keys plus optional per-partition fetch and hooks.

    Args:
        partitions: iterable of keys, or a zero-arg callable returning one
        fetch: ``fetch(partition)`` -> iterable of record batches; when
            absent the collection's source is used
        max_parallel: worker pool ceiling for fan-out
        before_partition / after_partition: hooks called with the key
    """

    def __init__(
        self,
        partitions: Union[Iterable[Any], Callable[[], Iterable[Any]]],
        fetch: Optional[Callable[[Any], Iterable[Any]]] = None,
        max_parallel: int = 1,
        before_partition: Optional[Callable[[Any], None]] = None,
        after_partition: Optional[Callable[[Any], None]] = None,
    ):
        if max_parallel < 1:
            raise InvalidParams("max_parallel must be >= 1")
        self._partitions = partitions
        self.fetch = fetch
        self.max_parallel = max_parallel
        self.before_partition = before_partition
        self.after_partition = after_partition

    def keys(self) -> List[Any]:
        result = self._partitions() if callable(self._partitions) else self._partitions
        if result is None or isinstance(result, (str, bytes)) or not hasattr(result, "__iter__"):
            raise InvalidParams("partitions must be an iterable of partition keys")
        return list(result)

    def batches(self, partition: Any) -> Iterator[List[Any]]:
        if self.fetch is None:
            raise InvalidParams("partitioner has no fetch callable")
        result = self.fetch(partition)
        if result is None or not hasattr(result, "__iter__"):
            raise InvalidParams("partition fetch must return an iterable of record batches")
        for index, batch in enumerate(result):
            yield as_batch(batch, index)


def partition_keys(partitioner: Optional[Partitioner]) -> List[Any]:
    """Keys to index; a missing partitioner means one implicit ``None`` partition."""
    if partitioner is None:
        return [None]
    return partitioner.keys()


def run_hook(hook: Callable[[Any], None], partition: Any, timeout_s: Optional[float] = None, name: str = "hook") -> None:
    """
    Call ``hook(partition)``, bounded by ``timeout_s`` when it is positive.

    The hook runs on a single-use thread so a hung hook releases the
    calling worker. The thread itself cannot be killed and is left to
    finish in the background.

    Raises:
        HookTimeout: the hook did not return within ``timeout_s``
    """
    if not timeout_s or timeout_s <= 0:
        hook(partition)
        return

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"search-sync-{name}")
    try:
        future = executor.submit(hook, partition)
        try:
            future.result(timeout=timeout_s)
        except FuturesTimeout as e:
            logger.error("%s for partition %r exceeded %.2fs", name, partition, timeout_s)
            raise HookTimeout(f"{name} exceeded {timeout_s:.2f}s") from e
    finally:
        executor.shutdown(wait=False)
