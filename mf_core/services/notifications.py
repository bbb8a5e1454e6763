"""
通知发送（邮件/短信投递不在本系统内，这里只记录通知事件）
"""
from typing import Any, Optional

from mf_core.utils.logger import get_logger

logger = get_logger(__name__)


class Notifier:
    """通知接口：默认实现只写日志，发送失败不影响业务流程"""

    async def send(self, recipient_id: Optional[int], template: str, **context: Any) -> None:
        try:
            await self._deliver(recipient_id, template, context)
        except Exception:
            logger.warning("Notification delivery failed", recipient_id=recipient_id,
                           template=template, exc_info=True)

    async def _deliver(self, recipient_id: Optional[int], template: str, context: dict) -> None:
        logger.info("Notification queued", recipient_id=recipient_id, template=template,
                    **{k: v for k, v in context.items() if isinstance(v, (str, int, float, bool))})


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier


def set_notifier(notifier: Optional[Notifier]) -> None:
    global _notifier
    _notifier = notifier
