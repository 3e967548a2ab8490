"""
工具函数集合 - sessionmux 项目全局通用的辅助函数。

函数分类：
- 路径管理：ensure_dir, get_data_path
- 时间工具：now_ms, timestamp, ms_to_iso
- 字符串工具：truncate_string, safe_filename
- 标识工具：is_valid_session_id, generate_message_id
- 号码工具：normalize_recipient, extract_phone
"""

import random
import re
import string
import time
from datetime import datetime
from pathlib import Path

# 会话 ID 规则：3~50 个字母、数字、下划线或连字符
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,50}$")

# 单聊地址后缀 / 群聊地址后缀
CONTACT_SUFFIX = "@c.us"
GROUP_SUFFIX = "@g.us"

_BASE36 = string.digits + string.ascii_lowercase


def ensure_dir(path: Path) -> Path:
    """
    确保目录存在，不存在则递归创建。

    参数:
        path: 目标目录路径

    返回:
        创建后的目录路径（原样返回）
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """获取 sessionmux 数据目录（~/.sessionmux）。自动创建不存在的目录。"""
    return ensure_dir(Path.home() / ".sessionmux")


def now_ms() -> int:
    """当前时间的毫秒时间戳。"""
    return int(time.time() * 1000)


def timestamp() -> str:
    """获取当前时间的 ISO 8601 格式字符串。"""
    return datetime.now().isoformat()


def ms_to_iso(ms: int | None) -> str | None:
    """毫秒时间戳转 ISO 字符串，None 原样返回。"""
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000).isoformat()


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """截断字符串到指定最大长度（包含后缀），超出时添加后缀。"""
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def safe_filename(name: str) -> str:
    """将字符串转为安全的文件名，替换文件系统不允许的字符为下划线。"""
    unsafe = '<>:"/\\|?*@'
    for char in unsafe:
        name = name.replace(char, "_")
    return name.strip()


def is_valid_session_id(session_id: object) -> bool:
    """检查会话 ID 是否符合 ^[A-Za-z0-9_-]{3,50}$。"""
    return isinstance(session_id, str) and bool(SESSION_ID_PATTERN.match(session_id))


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_message_id() -> str:
    """
    生成出站消息 ID，形如 msg_<毫秒时间戳base36>_<5位随机串>。

    同一毫秒内依靠随机后缀区分，进程内足够唯一。
    """
    suffix = "".join(random.choices(_BASE36, k=5))
    return f"msg_{_to_base36(now_ms())}_{suffix}"


def normalize_recipient(recipient: str, country_code: str = "54") -> str:
    """
    把任意格式的电话号码规范化为传输层地址。

    规则：
    1. 去掉所有非数字字符（包括已有的 @c.us 后缀中的字母）
    2. 恰好 10 位数字时视为本地号码，补上国家码
    3. 追加 @c.us 后缀

    群聊地址（@g.us）原样保留。

    参数:
        recipient: 原始号码或地址
        country_code: 默认国家码，默认 "54"

    返回:
        形如 "5491122334455@c.us" 的地址
    """
    if recipient.endswith(GROUP_SUFFIX):
        return recipient
    digits = re.sub(r"\D", "", recipient)
    if len(digits) == 10 and country_code:
        digits = country_code + digits
    return f"{digits}{CONTACT_SUFFIX}"


def extract_phone(address: str, country_code: str = "54") -> str:
    """从 "xxx@c.us" / "xxx@g.us" 地址中提取纯号码，10 位本地号码补国家码。"""
    phone = address.replace(CONTACT_SUFFIX, "").replace(GROUP_SUFFIX, "")
    phone = re.sub(r"\D", "", phone)
    if len(phone) == 10 and country_code:
        phone = country_code + phone
    return phone
