"""Source Adapters

A source yields batches of raw records for a partition through
``each_batch(partition, cursor=None)``. Records are handed to the
collection's mapper; partition and cursor are opaque here.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generator, Iterable, Iterator, List, Optional

from .errors import InvalidParams

logger = logging.getLogger(__name__)


def as_batch(batch: Any, index: int) -> List[Any]:
    """Validate that a yielded batch is list-like and return it as a list."""
    if isinstance(batch, list):
        return batch
    if isinstance(batch, (str, bytes, dict)) or not hasattr(batch, "__iter__"):
        raise InvalidParams(f"sources must yield lists of records; got {type(batch).__name__} at batch {index}")
    return list(batch)


class LambdaSource:
    """Wraps a callable ``fn(partition, cursor)`` returning an iterable of record batches."""

    def __init__(self, fn: Callable[..., Iterable[Any]]):
        self.fn = fn

    def each_batch(self, partition: Any = None, cursor: Any = None) -> Iterator[List[Any]]:
        result = self.fn(partition, cursor)
        if result is None or not hasattr(result, "__iter__"):
            raise InvalidParams("LambdaSource callable must return an iterable of batches")
        for index, batch in enumerate(result):
            yield as_batch(batch, index)


class SqlSource:
    """
    Streams rows of a DB-API query in ``fetchmany`` batches.

    Rows are returned as dicts keyed by column name. ``params`` turns a
    partition key into query parameters; by default a non-None partition
    is bound as ``{"partition": key}``.

    Example:
        >>> source = SqlSource(lambda: sqlite3.connect("shop.db"),
        ...                    "SELECT * FROM products WHERE shop_id = :partition")
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        query: str,
        batch_size: int = 2000,
        params: Optional[Callable[[Any], Any]] = None,
    ):
        if batch_size < 1:
            raise InvalidParams("batch_size must be >= 1")
        self.connect = connect
        self.query = query
        self.batch_size = batch_size
        self.params = params or default_params

    @contextmanager
    def _connection(self) -> Generator[Any, None, None]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def each_batch(self, partition: Any = None, cursor: Any = None) -> Iterator[List[Dict[str, Any]]]:
        with self._connection() as conn:
            db_cursor = conn.cursor()
            try:
                db_cursor.execute(self.query, self.params(partition))
                columns = [col[0] for col in db_cursor.description or []]
                total = 0
                while True:
                    rows = db_cursor.fetchmany(self.batch_size)
                    if not rows:
                        break
                    total += len(rows)
                    logger.debug("SqlSource fetched %d rows (total=%d)", len(rows), total)
                    yield [dict(zip(columns, row)) for row in rows]
            finally:
                db_cursor.close()


def default_params(partition: Any) -> Dict[str, Any]:
    if partition is None:
        return {}
    return {"partition": partition}
