"""
Order Service: ローカルエミッタ

LoggingEmitter はイベントをログに書くだけで、どこにも届けない。
テスト以外で使うと Saga はここで止まる。InMemoryEmitter は送った
イベントを保持し、テストやローカル実行で中身を確認できるようにする。
"""

import json
import logging

from .base import EventEmitter

logger = logging.getLogger(__name__)


def redact(payload: bytes) -> str:
    """カード番号と CVV を伏せたペイロード文字列"""
    try:
        message = json.loads(payload)
        card = message["data"]["card"]
    except (ValueError, KeyError, TypeError):
        return payload.decode(errors="replace")
    number = str(card.get("number", ""))
    card["number"] = "*" * max(len(number) - 4, 0) + number[-4:]
    card["cvv"] = "***"
    return json.dumps(message)


class LoggingEmitter(EventEmitter):
    async def _send(self, topic: str, payload: bytes) -> None:
        logger.info("Payload [%s]: %s", topic, redact(payload))


class InMemoryEmitter(EventEmitter):
    def __init__(self, timeout: float = 5.0) -> None:
        super().__init__(timeout)
        self.sent: list[tuple[str, bytes]] = []

    async def _send(self, topic: str, payload: bytes) -> None:
        self.sent.append((topic, payload))

    def messages(self, topic: str | None = None) -> list[dict]:
        return [json.loads(p) for t, p in self.sent if topic is None or t == topic]
