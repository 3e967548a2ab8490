"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 sessionmux 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── connection  - 会话连接配置（会话上限、重连策略、空闲清理）
├── pairing     - 配对码缓存配置（TTL、清理间隔）
├── sender      - 出站队列配置（限流、重试、超时、队列容量）
├── listener    - 入站路由配置（过滤开关、持久化、自动回复）
├── transport   - 传输层配置（Bridge 地址与令牌）
├── store       - 记录存储配置（内存 / JSON 文件）
├── responder   - 自动回复生成器配置（关键词 / LiteLLM）
└── service     - 门面服务配置（启动时自动创建的会话）

时间类配置统一以毫秒为单位（*_ms 后缀）。

对于 Java 开发者：
- BaseSettings 类似于 Spring 的 @ConfigurationProperties，额外支持从环境变量读取配置
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


class ConnectionConfig(BaseModel):
    """会话连接配置。"""
    max_sessions: int = 10  # 同时存活的会话上限
    session_timeout_ms: int = 300_000  # error 状态会话的空闲超时，超时后被清理
    max_reconnect_attempts: int = 3  # 连续重连次数上限
    reconnect_delay_ms: int = 30_000  # 重连前的固定等待
    sessions_path: str = "~/.sessionmux/tokens"  # 传输层保存登录凭据的目录
    cleanup_interval_ms: int = 60_000  # 空闲会话清理间隔
    headless: bool = True  # 传输层是否以无界面方式运行


class PairingConfig(BaseModel):
    """配对码缓存配置。"""
    pairing_code_ttl_ms: int = 120_000  # 配对码有效期
    cleanup_interval_ms: int = 300_000  # 过期配对码清理间隔


class SenderConfig(BaseModel):
    """出站队列配置。"""
    max_messages_per_minute: int = 20  # 每个会话每分钟最多发送条数
    inter_message_delay_ms: int = 3_000  # 两条消息之间的间隔
    max_retries: int = 3  # 单条消息最大尝试次数
    retry_base_delay_ms: int = 5_000  # 重试退避基数
    retry_multiplier: float = 1.5  # 重试退避倍数
    max_retry_delay_ms: int = 300_000  # 单次退避上限
    max_queue_size: int = 1_000  # 每个会话的队列容量
    message_timeout_ms: int = 30_000  # 单次发送超时
    queue_message_ttl_ms: int = 3_600_000  # 消息在队列中的最长存活时间
    max_message_length: int = 4_096  # 消息正文最大字符数
    cleanup_interval_ms: int = 300_000  # 过期消息清理间隔
    default_country_code: str = "54"  # 10 位本地号码补全的国家码


class ListenerConfig(BaseModel):
    """入站路由配置。"""
    ai_enabled: bool = False  # 是否启用自动回复
    save_messages: bool = True  # 是否持久化入站消息
    save_conversations: bool = True  # 是否记录对话日志（供自动回复使用上下文）
    ignore_broadcast: bool = True
    ignore_groups: bool = True
    ignore_status: bool = True
    text_only: bool = True  # 丢弃非文本消息
    ai_max_history: int = 10  # 传给自动回复生成器的历史条数
    response_delay_ms: int = 2_000  # 自动回复前的固定等待
    max_responses_per_minute: int = 30  # 每个会话每分钟自动回复上限
    user_cache_ttl_ms: int = 300_000  # 用户缓存过期时间
    max_user_cache_size: int = 1_000  # 用户缓存容量
    auto_start_listening: bool = False  # 创建会话后是否自动开始监听


class TransportConfig(BaseModel):
    """传输层配置。通过 WebSocket 连接到 WhatsApp Bridge 服务。"""
    bridge_url: str = "ws://localhost:3001"
    bridge_token: str = ""  # Bridge 认证令牌（可选）
    connect_timeout_ms: int = 120_000  # 等待会话连接完成（含扫码）的超时


class StoreConfig(BaseModel):
    """记录存储配置。kind: memory | json"""
    kind: str = "json"
    path: str = "~/.sessionmux/data"


class ResponderConfig(BaseModel):
    """自动回复生成器配置。kind: none | keyword | litellm"""
    kind: str = "keyword"
    model: str = "openai/gpt-4o-mini"
    api_key: str = ""
    api_base: str | None = None
    max_tokens: int = 300
    temperature: float = 0.7
    system_prompt: str = (
        "You are a friendly customer service assistant. "
        "Answer briefly and in the same language the customer writes in."
    )


class ServiceConfig(BaseModel):
    """门面服务配置。"""
    autostart_sessions: list[str] = Field(default_factory=list)  # gateway 启动时自动创建的会话


class Config(BaseSettings):
    """
    sessionmux 根配置类。

    除了从 JSON 文件加载外，还支持从环境变量读取配置：
    - 环境变量前缀: SESSIONMUX_
    - 嵌套分隔符: __ (双下划线)
    - 示例: SESSIONMUX_SENDER__MAX_RETRIES=5 可覆盖 sender.max_retries
    """
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    pairing: PairingConfig = Field(default_factory=PairingConfig)
    sender: SenderConfig = Field(default_factory=SenderConfig)
    listener: ListenerConfig = Field(default_factory=ListenerConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    responder: ResponderConfig = Field(default_factory=ResponderConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)

    @property
    def sessions_path(self) -> Path:
        """展开后的凭据目录。"""
        return Path(self.connection.sessions_path).expanduser()

    @property
    def store_path(self) -> Path:
        """展开后的记录存储目录。"""
        return Path(self.store.path).expanduser()

    model_config = ConfigDict(
        env_prefix="SESSIONMUX_",
        env_nested_delimiter="__"
    )
