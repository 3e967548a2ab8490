"""
记录存储抽象 - 定义所有存储实现必须提供的接口。

两类集合：
- 键值集合（sessions、users）：get / put / delete，按 key 整条覆盖
- 追加集合（messages、conversations）：insert 追加一条记录，自动生成 id

query 对两类集合都适用：等值过滤 + 单字段排序 + 条数限制。

【Java 开发者类比】
- RecordStore 类似于 Spring Data 的 CrudRepository 接口
"""

import uuid
from abc import ABC, abstractmethod
from typing import Any

Record = dict[str, Any]


class RecordStore(ABC):
    """记录存储抽象基类。所有方法均为协程，以便实现方做 I/O。"""

    name: str = "base"

    @abstractmethod
    async def get(self, collection: str, key: str) -> Record | None:
        """按 key 读取一条记录，不存在返回 None。"""
        pass

    @abstractmethod
    async def put(self, collection: str, key: str, record: Record) -> None:
        """写入（覆盖）一条记录。"""
        pass

    @abstractmethod
    async def delete(self, collection: str, key: str) -> bool:
        """删除一条记录，返回是否存在过。"""
        pass

    @abstractmethod
    async def insert(self, collection: str, record: Record) -> str:
        """向追加集合写入一条记录，返回生成的 id。"""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        """
        查询集合中的记录。

        参数:
            collection: 集合名
            where: 等值过滤条件，所有字段都相等才命中
            order_by: 排序字段，缺失该字段的记录排在最前
            descending: 是否倒序
            limit: 最多返回条数

        返回:
            记录副本列表
        """
        pass

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex[:16]

    @staticmethod
    def apply_query(
        records: list[Record],
        where: dict[str, Any] | None,
        order_by: str | None,
        descending: bool,
        limit: int | None,
    ) -> list[Record]:
        """对一组记录执行过滤、排序与截断，供各实现复用。"""
        result = [
            r for r in records
            if not where or all(r.get(k) == v for k, v in where.items())
        ]
        if order_by:
            result.sort(key=lambda r: (r.get(order_by) is not None, r.get(order_by) or 0))
            # 倒序时相同取值按写入顺序的逆序排列（后写入的在前）
            if descending:
                result.reverse()
        if limit is not None:
            result = result[:limit]
        return result
