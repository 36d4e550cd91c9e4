"""
推流目标仲裁器

同一推流目标最多被一个槽位占用：
- 占用、释放和抢占都在同一把锁内完成
- 抢占回调在释放锁之后调用，回调中可以获取监管器的锁
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


def normalize_destination(destination: str) -> str:
    """去掉首尾空白和末尾斜杠，作为占用表的键"""
    return (destination or "").strip().rstrip("/")


@dataclass(frozen=True)
class ClaimToken:
    """目标占用令牌"""

    destination: str
    slot_id: str
    granted_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ClaimResult:
    granted: bool
    token: Optional[ClaimToken] = None
    evicted_slot_id: Optional[str] = None


class DestinationArbiter:
    """推流目标仲裁器"""

    def __init__(self, on_evict: Optional[Callable[[str, str], None]] = None):
        """初始化仲裁器

        Args:
            on_evict: 抢占回调，签名为 (被抢占的槽位 ID, 目标)
        """
        self._lock = threading.Lock()
        self._claims: Dict[str, ClaimToken] = {}
        self.on_evict = on_evict

    def claim(self, destination: str, slot_id: str) -> ClaimResult:
        """占用目标，其他槽位的占用被抢占

        Args:
            destination: 推流目标
            slot_id: 槽位 ID

        Returns:
            占用结果；目标为空时 granted 为 False
        """
        key = normalize_destination(destination)
        if not key:
            return ClaimResult(granted=False)

        with self._lock:
            current = self._claims.get(key)
            if current is not None and current.slot_id == slot_id:
                return ClaimResult(granted=True, token=current)
            token = ClaimToken(destination=key, slot_id=slot_id)
            self._claims[key] = token

        evicted = current.slot_id if current is not None else None
        if evicted is not None:
            logger.warning(f"Destination {mask_destination(key)} moved from slot {evicted} to slot {slot_id}")
            if self.on_evict is not None:
                self.on_evict(evicted, key)
        return ClaimResult(granted=True, token=token, evicted_slot_id=evicted)

    def reclaim(self, destination: str, slot_id: str) -> bool:
        """重启前重新确认占用，从不抢占

        Args:
            destination: 推流目标
            slot_id: 槽位 ID

        Returns:
            目标空闲或仍由该槽位占用时返回 True
        """
        key = normalize_destination(destination)
        with self._lock:
            current = self._claims.get(key)
            if current is None:
                self._claims[key] = ClaimToken(destination=key, slot_id=slot_id)
                return True
            return current.slot_id == slot_id

    def release(self, destination: str, slot_id: str) -> bool:
        """释放占用，只有持有者才能释放"""
        key = normalize_destination(destination)
        with self._lock:
            current = self._claims.get(key)
            if current is None or current.slot_id != slot_id:
                return False
            del self._claims[key]
        return True

    def holder(self, destination: str) -> Optional[str]:
        with self._lock:
            current = self._claims.get(normalize_destination(destination))
        return current.slot_id if current else None

    def claims(self) -> Dict[str, str]:
        with self._lock:
            return {key: token.slot_id for key, token in self._claims.items()}


def mask_destination(destination: str) -> str:
    """隐藏推流地址中的串流密钥（最后一段路径），用于日志"""
    if not destination or "/" not in destination:
        return destination
    head, _, key = destination.rpartition("/")
    if not key or head.endswith(":/"):
        return destination
    return f"{head}/{key[:3]}***" if len(key) > 3 else f"{head}/***"
