"""
Broadcaster：lane 範圍的推播

只在 transaction commit 之後呼叫 publish，訂閱者因此不會看到
之後被 rollback 的狀態。

訂閱者是一般的 callable（WebSocket 端會把它包成 asyncio queue 的投遞）。
單一訂閱者拋出的異常只記 log，不影響其他訂閱者，也不影響已經 commit 的操作。
"""
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List
import logging
import threading

logger = logging.getLogger(__name__)

Subscriber = Callable[[Dict[str, Any]], None]

# 退房事件不屬於任何一條 lane，所有員工端都訂閱這個頻道
CHECKOUT_CHANNEL = "checkout"
LANE_CHANNEL_PREFIX = "lane:"


def lane_channel(lane_id: str) -> str:
    """lane 的頻道名稱（加前綴，lane id 不會撞到 CHECKOUT_CHANNEL）"""
    return f"{LANE_CHANNEL_PREFIX}{lane_id}"


class Broadcaster:
    """以頻道名稱為 key 的 publish / subscribe registry（lane 頻道見 lane_channel）"""

    def __init__(self):
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, channel: str, callback: Subscriber) -> Callable[[], None]:
        """
        訂閱一個頻道

        返回：
            取消訂閱的函式
        """
        with self._lock:
            self._subscribers[channel].append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(channel, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(channel, None)

        return unsubscribe

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, []))

    def publish(self, channel: str, event_type: str, payload: Dict[str, Any]) -> int:
        """
        推播一個事件

        返回：
            成功送達的訂閱者數
        """
        event = {
            "type": event_type,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            callbacks = list(self._subscribers.get(channel, []))

        if not callbacks:
            logger.debug(f"No subscribers on {channel} for {event_type}")
            return 0

        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
                delivered += 1
            except Exception as e:
                logger.warning(f"Subscriber on {channel} failed for {event_type}: {e}", exc_info=True)
        return delivered

    def publish_session_updated(self, lane_id: str, payload: Dict[str, Any]) -> int:
        return self.publish(lane_channel(lane_id), "SESSION_UPDATED", payload)

    def publish_checkout_event(self, event_type: str, payload: Dict[str, Any]) -> int:
        return self.publish(CHECKOUT_CHANNEL, event_type, payload)


broadcaster = Broadcaster()
