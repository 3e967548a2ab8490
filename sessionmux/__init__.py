"""
sessionmux - 多会话消息客户端编排框架

模块概述：
    本文件是 sessionmux 包的入口文件（__init__.py），定义了包的元信息。
    sessionmux 在单个进程内复用多个相互独立的消息客户端会话（每个租户/营销活动一个），
    负责会话生命周期、配对码缓存、带限流与重试的出站队列，以及入站消息分发。

    整个框架的核心功能包括：
    - 会话生命周期管理（创建、扫码配对、连接、断线重连、关闭）
    - 配对码缓存（带 TTL 的多格式配对码）
    - 出站消息队列（优先级、固定窗口限流、指数退避重试、发送超时）
    - 入站消息路由（过滤、用户缓存、持久化、自动回复）
"""

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "📡"
