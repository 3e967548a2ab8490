"""门面服务模块 - 组合所有子组件，对外提供统一的生命周期 API。"""

from sessionmux.service.facade import OrchestrationFacade

__all__ = ["OrchestrationFacade"]
