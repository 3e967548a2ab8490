"""内存记录存储 - 进程内字典实现，用于测试和临时运行。"""

import copy
from typing import Any

from sessionmux.store.base import Record, RecordStore


class MemoryRecordStore(RecordStore):
    """
    内存记录存储。

    键值集合与追加集合共用一个结构：{collection: {key: record}}，
    insert 生成的 id 同时作为 key 和记录中的 "id" 字段。
    读写都做深拷贝，调用方拿到的记录与存储内部互不影响。
    """

    name = "memory"

    def __init__(self):
        self._data: dict[str, dict[str, Record]] = {}

    async def get(self, collection: str, key: str) -> Record | None:
        record = self._data.get(collection, {}).get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, collection: str, key: str, record: Record) -> None:
        self._data.setdefault(collection, {})[key] = copy.deepcopy(record)

    async def delete(self, collection: str, key: str) -> bool:
        return self._data.get(collection, {}).pop(key, None) is not None

    async def insert(self, collection: str, record: Record) -> str:
        record_id = record.get("id") or self.new_id()
        stored = copy.deepcopy(record)
        stored["id"] = record_id
        self._data.setdefault(collection, {})[record_id] = stored
        return record_id

    async def query(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        records = [copy.deepcopy(r) for r in self._data.get(collection, {}).values()]
        return self.apply_query(records, where, order_by, descending, limit)

    def count(self, collection: str) -> int:
        return len(self._data.get(collection, {}))
