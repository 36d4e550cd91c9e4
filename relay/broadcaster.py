"""
日志广播器

把诊断事件和状态变更推送给所有已连接的观察者（Web 层中的 WebSocket 连接）：
- 观察者是任何带有 send(str) 方法的对象
- 每个观察者有独立的有界发件箱和发送线程，publish() 从不直接调用 send()
- 发件箱已满或发送失败的观察者被移除，不影响其他观察者
- 新观察者只能收到连接之后的事件，没有历史回放
"""

import json
import time
import queue
import threading
import logging
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 256


class _ObserverChannel:
    """单个观察者的发件箱

    同一连接上的 send() 只由本通道的发送线程调用，因此按入队顺序串行发送。
    """

    def __init__(self, observer, max_pending: int, on_error: Callable[["_ObserverChannel", Exception], None]):
        """初始化通道并启动发送线程

        Args:
            observer: 观察者对象
            max_pending: 发件箱容量
            on_error: 发送失败时的回调
        """
        self.observer = observer
        self._outbox: "queue.Queue[Optional[str]]" = queue.Queue(maxsize=max_pending)
        self._on_error = on_error
        self._closed = threading.Event()
        self._idle = threading.Condition()
        self._pending = 0

        self._sender = threading.Thread(
            target=self._send_loop,
            daemon=True,
            name=f"LogObserver-{id(observer):x}"
        )
        self._sender.start()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, payload: str) -> bool:
        """非阻塞入队

        Args:
            payload: 已序列化的消息

        Returns:
            是否入队成功；通道已关闭或发件箱已满时返回 False
        """
        if self.closed:
            return False
        with self._idle:
            self._pending += 1
        try:
            self._outbox.put_nowait(payload)
        except queue.Full:
            self._done()
            return False
        return True

    def close(self):
        """关闭通道，发送线程处理完当前消息后退出"""
        self._closed.set()
        with self._idle:
            self._idle.notify_all()
        try:
            self._outbox.put_nowait(None)
        except queue.Full:
            # 队列非空，发送线程取到下一条消息时会看到关闭标记
            logger.debug("Observer outbox full while closing")

    def wait_idle(self, timeout: float) -> bool:
        """等待已入队的消息发送完毕

        Args:
            timeout: 最长等待时间（秒）

        Returns:
            是否已全部发送；通道关闭时也返回 True
        """
        deadline = time.time() + timeout
        with self._idle:
            while self._pending > 0 and not self.closed:
                remaining = deadline - time.time()
                if remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def _done(self):
        with self._idle:
            self._pending -= 1
            if self._pending <= 0:
                self._idle.notify_all()

    def _send_loop(self):
        while True:
            payload = self._outbox.get()
            if payload is None or self.closed:
                return
            try:
                self.observer.send(payload)
            except Exception as e:
                self._closed.set()
                self._on_error(self, e)
                return
            finally:
                self._done()


class LogBroadcaster:
    """日志广播器"""

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING):
        """初始化广播器

        Args:
            max_pending: 每个观察者最多积压的消息数，超过后该观察者被移除
        """
        self.max_pending = max_pending
        self._lock = threading.Lock()
        self._channels: Dict[int, _ObserverChannel] = {}

    def add(self, observer) -> None:
        """注册观察者，重复注册无效

        Args:
            observer: 带有 send(str) 方法的对象
        """
        with self._lock:
            if id(observer) in self._channels:
                return
            self._channels[id(observer)] = _ObserverChannel(observer, self.max_pending, self._on_send_error)
        logger.info(f"Log observer connected ({self.observer_count} total)")

    def remove(self, observer) -> bool:
        """注销观察者并关闭其发件箱

        Args:
            observer: 观察者对象

        Returns:
            是否确实移除了观察者
        """
        with self._lock:
            channel = self._channels.pop(id(observer), None)
        if channel is None:
            return False
        channel.close()
        logger.info(f"Log observer disconnected ({self.observer_count} total)")
        return True

    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._channels)

    def publish(self, event) -> int:
        """把事件放入每个观察者的发件箱

        Args:
            event: 带有 to_dict() 方法的事件

        Returns:
            成功入队的观察者数量
        """
        payload = json.dumps(event.to_dict(), ensure_ascii=False)
        with self._lock:
            channels = list(self._channels.values())

        delivered = 0
        for channel in channels:
            if channel.offer(payload):
                delivered += 1
            elif not channel.closed:
                logger.warning(f"Log observer fell behind ({self.max_pending} pending), dropping it")
                self.remove(channel.observer)
        return delivered

    def send_to(self, observer, event) -> bool:
        """只发给一个观察者（连接时的欢迎消息）

        Args:
            observer: 已注册的观察者
            event: 带有 to_dict() 方法的事件

        Returns:
            是否入队成功
        """
        return self.send_text(observer, json.dumps(event.to_dict(), ensure_ascii=False))

    def send_text(self, observer, text: str) -> bool:
        """经由观察者的发件箱发送原始文本（如心跳回复）

        Args:
            observer: 已注册的观察者
            text: 文本消息

        Returns:
            是否入队成功；未注册的观察者返回 False
        """
        with self._lock:
            channel = self._channels.get(id(observer))
        if channel is None:
            return False
        if not channel.offer(text):
            logger.warning("Log observer fell behind, dropping it")
            self.remove(observer)
            return False
        return True

    def flush(self, timeout: float = 2.0) -> bool:
        """等待所有观察者的发件箱清空

        Args:
            timeout: 每个观察者的最长等待时间（秒）

        Returns:
            是否全部发送完毕
        """
        with self._lock:
            channels = list(self._channels.values())
        return all([channel.wait_idle(timeout) for channel in channels])

    def _on_send_error(self, channel: _ObserverChannel, error: Exception):
        logger.warning(f"Error sending log to observer, dropping it: {error}")
        self.remove(channel.observer)
