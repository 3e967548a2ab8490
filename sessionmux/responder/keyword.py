"""关键词回复 - 按关键词规则匹配固定回复，不依赖外部服务。"""

from typing import Any

from sessionmux.responder.base import AutoResponder

# (关键词, 回复)，按顺序匹配第一条命中的规则
DEFAULT_RULES: list[tuple[tuple[str, ...], str]] = [
    (
        ("hola", "buenos", "buenas", "hello", "hi"),
        "¡Hola! Gracias por escribirnos. ¿En qué podemos ayudarte?",
    ),
    (
        ("precio", "costo", "price", "cost"),
        "Con gusto te compartimos nuestros precios. ¿Qué producto te interesa?",
    ),
    (
        ("info", "información", "informacion", "information"),
        "Te enviamos la información enseguida. ¿Sobre qué tema necesitás saber más?",
    ),
]


class KeywordResponder(AutoResponder):
    """
    关键词回复生成器。

    参数:
        rules: 自定义规则列表，默认使用 DEFAULT_RULES
    """

    name = "keyword"

    def __init__(self, rules: list[tuple[tuple[str, ...], str]] | None = None):
        self.rules = rules if rules is not None else DEFAULT_RULES

    async def generate(self, text: str, history: list[dict[str, Any]]) -> str | None:
        words = text.lower().split()
        lowered = text.lower()
        for keywords, reply in self.rules:
            for keyword in keywords:
                # 短关键词按整词匹配，避免 "hi" 命中 "this"
                if (len(keyword) <= 3 and keyword in words) or (len(keyword) > 3 and keyword in lowered):
                    return reply
        return None
