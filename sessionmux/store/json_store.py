"""
JSON 文件记录存储 - 每个键值记录一个 JSON 文件，追加集合写入 JSONL。

目录布局（root 默认为 ~/.sessionmux/data）：
    root/
    ├── sessions/<key>.json        键值集合：一条记录一个文件，整文件覆盖
    ├── users/<key>.json
    ├── messages.jsonl             追加集合：每行一条记录
    └── conversations.jsonl

读取失败的文件只记录警告并跳过，不影响其他记录。
"""

import json
from pathlib import Path
from typing import Any

from loguru import logger

from sessionmux.store.base import Record, RecordStore
from sessionmux.utils.helpers import ensure_dir, safe_filename


class JsonRecordStore(RecordStore):
    """
    JSON 文件记录存储。

    参数:
        root: 存储根目录
    """

    name = "json"

    def __init__(self, root: Path | str):
        self.root = ensure_dir(Path(root).expanduser())

    def _collection_dir(self, collection: str) -> Path:
        return ensure_dir(self.root / safe_filename(collection))

    def _record_path(self, collection: str, key: str) -> Path:
        return self._collection_dir(collection) / f"{safe_filename(key)}.json"

    def _log_path(self, collection: str) -> Path:
        return self.root / f"{safe_filename(collection)}.jsonl"

    async def get(self, collection: str, key: str) -> Record | None:
        path = self._record_path(collection, key)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read record {collection}/{key}: {e}")
            return None

    async def put(self, collection: str, key: str, record: Record) -> None:
        path = self._record_path(collection, key)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(record, f, ensure_ascii=False, indent=2, default=str)
        tmp.replace(path)

    async def delete(self, collection: str, key: str) -> bool:
        path = self._record_path(collection, key)
        if path.exists():
            path.unlink()
            return True
        return False

    async def insert(self, collection: str, record: Record) -> str:
        record_id = record.get("id") or self.new_id()
        line = dict(record)
        line["id"] = record_id
        with open(self._log_path(collection), "a") as f:
            f.write(json.dumps(line, ensure_ascii=False, default=str) + "\n")
        return record_id

    async def query(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        records: list[Record] = []

        directory = self.root / safe_filename(collection)
        if directory.is_dir():
            for path in sorted(directory.glob("*.json")):
                try:
                    with open(path) as f:
                        records.append(json.load(f))
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning(f"Skipping unreadable record {path}: {e}")

        log_path = self._log_path(collection)
        if log_path.exists():
            with open(log_path) as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(json.loads(line))
                    except json.JSONDecodeError as e:
                        logger.warning(f"Skipping corrupt line in {log_path}: {e}")

        return self.apply_query(records, where, order_by, descending, limit)
