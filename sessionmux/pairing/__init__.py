"""配对码缓存模块。"""

from sessionmux.pairing.cache import PairingCodeCache, PairingRecord

__all__ = ["PairingCodeCache", "PairingRecord"]
