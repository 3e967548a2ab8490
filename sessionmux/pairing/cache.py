"""
配对码缓存 - 保存每个会话当前可扫描的配对码，带过期时间。

传输层每次刷新配对码都会发出一个 pairing 事件（负载含 base64 PNG、ASCII 图、
链接等），连接监督器把它交给本缓存。每个会话最多一条记录，新记录直接替换旧记录。

过期处理：
- 读取时发现过期立即删除（惰性清理）
- 周期任务定时删除所有过期记录

支持的读取格式（大小写不敏感）：
    dataURL / data-url   data:image/png;base64,... 字符串
    base64               纯 base64 字符串
    buffer               PNG 原始字节
    ascii                终端可打印的 ASCII 图
    original             传输层给出的原始负载
    all                  以上全部
"""

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

from sessionmux.errors import UnsupportedFormatError, ValidationError
from sessionmux.utils.helpers import ms_to_iso, now_ms
from sessionmux.utils.periodic import PeriodicTask

DATA_URL_PREFIX = "data:image/png;base64,"

# 规范化后的格式名 → 记录中的取值方式
_FORMAT_ALIASES = {
    "dataurl": "dataURL",
    "data-url": "dataURL",
    "base64": "base64",
    "buffer": "buffer",
    "ascii": "ascii",
    "original": "original",
    "all": "all",
}

SUPPORTED_FORMATS = ("dataURL", "base64", "buffer", "ascii", "original", "all")


@dataclass
class PairingRecord:
    """
    配对码记录。

    属性:
        session_id: 所属会话
        attempts: 传输层给出的配对码生成次数（单调递增）
        issued_at_ms: 生成时间
        expires_at_ms: 过期时间（issued_at_ms + TTL）
        original: 原始负载（base64 / ascii / url）
        data_url: data:image/png;base64 编码，仅当负载含 base64 时存在
        base64: 纯 base64 编码
        buffer: PNG 原始字节
        ascii: ASCII 图
        scanned: 是否已被扫描
        scanned_at_ms: 扫描时间
    """

    session_id: str
    attempts: int
    issued_at_ms: int
    expires_at_ms: int
    original: dict[str, Any] = field(default_factory=dict)
    data_url: str | None = None
    base64: str | None = None
    buffer: bytes | None = None
    ascii: str | None = None
    scanned: bool = False
    scanned_at_ms: int | None = None

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at_ms

    def render(self, fmt: str) -> Any:
        """按规范化后的格式名取值。"""
        if fmt == "dataURL":
            return self.data_url
        if fmt == "base64":
            return self.base64
        if fmt == "buffer":
            return self.buffer
        if fmt == "ascii":
            return self.ascii
        if fmt == "original":
            return dict(self.original)
        return {
            "dataURL": self.data_url,
            "base64": self.base64,
            "buffer": self.buffer,
            "ascii": self.ascii,
            "original": dict(self.original),
        }


def normalize_format(fmt: str) -> str:
    """把格式名规范化，不支持的格式抛出 UnsupportedFormatError。"""
    key = (fmt or "").strip().lower()
    if key not in _FORMAT_ALIASES:
        raise UnsupportedFormatError(
            f"Unsupported pairing code format: {fmt}",
            supported=list(SUPPORTED_FORMATS),
        )
    return _FORMAT_ALIASES[key]


class PairingCodeCache:
    """
    配对码缓存。

    所有会话共享一个实例，由外部显式构造并注入（测试可构造独立实例）。

    参数:
        ttl_ms: 配对码有效期
        cleanup_interval_ms: 周期清理间隔
        clock: 毫秒时钟，默认为系统时间
    """

    def __init__(
        self,
        ttl_ms: int = 120_000,
        cleanup_interval_ms: int = 300_000,
        clock: Callable[[], int] = now_ms,
    ):
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._records: dict[str, PairingRecord] = {}
        self._sweeper = PeriodicTask("pairing-sweep", cleanup_interval_ms, self._sweep_async)

    def start(self) -> None:
        """启动周期清理。"""
        self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()

    def store(self, session_id: str, payload: dict[str, Any], attempts: int = 1) -> PairingRecord:
        """
        保存配对码，替换该会话已有的记录。

        参数:
            session_id: 会话 ID
            payload: 传输层负载，至少包含 base64 或 url 之一
            attempts: 传输层给出的生成次数

        返回:
            新记录
        """
        if not payload or not (payload.get("base64") or payload.get("url")):
            raise ValidationError("Pairing payload must contain base64 or url", session_id=session_id)

        issued = self._clock()
        record = PairingRecord(
            session_id=session_id,
            attempts=attempts,
            issued_at_ms=issued,
            expires_at_ms=issued + self.ttl_ms,
            original={
                "base64": payload.get("base64"),
                "ascii": payload.get("ascii"),
                "url": payload.get("url"),
            },
            ascii=payload.get("ascii"),
        )

        raw = payload.get("base64")
        if raw:
            b64 = raw[len(DATA_URL_PREFIX):] if raw.startswith(DATA_URL_PREFIX) else raw
            record.base64 = b64
            record.data_url = DATA_URL_PREFIX + b64
            try:
                record.buffer = base64.b64decode(b64)
            except (binascii.Error, ValueError) as e:
                logger.warning(f"Pairing code for {session_id} is not valid base64: {e}")

        self._records[session_id] = record
        logger.info(f"Pairing code stored for session {session_id} (attempt {attempts})")
        return record

    def _live(self, session_id: str) -> PairingRecord | None:
        record = self._records.get(session_id)
        if record is None:
            return None
        if record.is_expired(self._clock()):
            del self._records[session_id]
            logger.debug(f"Pairing code for {session_id} expired")
            return None
        return record

    def get(self, session_id: str, fmt: str = "dataURL") -> dict[str, Any] | None:
        """
        读取配对码。

        返回:
            {session_id, format, data, attempts, issued_at, expires_at, scanned,
             time_remaining_ms}；不存在或已过期时返回 None
        """
        normalized = normalize_format(fmt)
        record = self._live(session_id)
        if record is None:
            return None
        return {
            "session_id": session_id,
            "format": normalized,
            "data": record.render(normalized),
            "attempts": record.attempts,
            "issued_at": ms_to_iso(record.issued_at_ms),
            "expires_at": ms_to_iso(record.expires_at_ms),
            "scanned": record.scanned,
            "time_remaining_ms": max(0, record.expires_at_ms - self._clock()),
        }

    def get_record(self, session_id: str) -> PairingRecord | None:
        return self._live(session_id)

    def has(self, session_id: str) -> bool:
        return self._live(session_id) is not None

    def mark_scanned(self, session_id: str) -> bool:
        """标记已扫描。记录不存在或已过期时返回 False。"""
        record = self._live(session_id)
        if record is None:
            return False
        record.scanned = True
        record.scanned_at_ms = self._clock()
        logger.info(f"Pairing code for session {session_id} marked as scanned")
        return True

    def clear(self, session_id: str) -> bool:
        return self._records.pop(session_id, None) is not None

    def sweep(self) -> int:
        """删除所有过期记录，返回删除条数。"""
        now = self._clock()
        expired = [sid for sid, r in self._records.items() if r.is_expired(now)]
        for sid in expired:
            del self._records[sid]
        if expired:
            logger.debug(f"Swept {len(expired)} expired pairing code(s)")
        return len(expired)

    async def _sweep_async(self) -> None:
        self.sweep()

    def list_active(self) -> list[dict[str, Any]]:
        """列出未过期的配对码，按生成时间倒序。"""
        now = self._clock()
        active = [r for r in self._records.values() if not r.is_expired(now)]
        active.sort(key=lambda r: r.issued_at_ms, reverse=True)
        return [
            {
                "session_id": r.session_id,
                "attempts": r.attempts,
                "issued_at": ms_to_iso(r.issued_at_ms),
                "expires_at": ms_to_iso(r.expires_at_ms),
                "scanned": r.scanned,
                "time_remaining_ms": r.expires_at_ms - now,
            }
            for r in active
        ]

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        active = [r for r in self._records.values() if not r.is_expired(now)]
        scanned = sum(1 for r in active if r.scanned)
        return {
            "total_active": len(active),
            "scanned": scanned,
            "pending": len(active) - scanned,
            "average_attempts": (
                round(sum(r.attempts for r in active) / len(active), 2) if active else 0
            ),
            "ttl_ms": self.ttl_ms,
        }

    def destroy(self) -> None:
        self.stop()
        self._records.clear()
