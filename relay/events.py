"""
诊断事件与状态变更记录

两者创建后均不可修改，附加槽位 ID 时返回副本。
序列化字段沿用日志面板的格式（processId、毫秒时间戳）。
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional


class Level(str, Enum):
    """日志级别"""
    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"


class FailureCategory(str, Enum):
    """故障归类：源、目标或主机"""
    SOURCE = "source"
    DESTINATION = "destination"
    HOST = "host"


SYSTEM_SLOT = "system"


@dataclass(frozen=True)
class DiagnosticEvent:
    """诊断事件

    由分类器从 FFmpeg 输出生成，或由监管器在状态变化时生成。
    """

    level: Level
    message: str
    category: Optional[FailureCategory] = None
    detail: Optional[str] = None
    slot_id: Optional[str] = None
    progress: bool = False
    stats: Optional[Dict[str, Any]] = None
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_failure(self) -> bool:
        return self.level == Level.ERROR

    def for_slot(self, slot_id: str) -> "DiagnosticEvent":
        """返回附加了槽位 ID 的副本"""
        return replace(self, slot_id=slot_id)

    def to_dict(self) -> Dict[str, Any]:
        """转换为推送给观察者的字典

        Returns:
            type 为 "log" 的消息，分类、详情和进度统计放在 details 中
        """
        result = {
            "type": "log",
            "id": self.id,
            "timestamp": int(self.timestamp * 1000),
            "processId": self.slot_id,
            "level": self.level.value,
            "message": self.message,
        }
        details = {}
        if self.category is not None:
            details["category"] = self.category.value
        if self.detail:
            details["detail"] = self.detail
        if self.stats:
            details["stats"] = dict(self.stats)
        result["details"] = details or None
        return result


@dataclass(frozen=True)
class StateChange:
    """状态变更记录，每次监管器状态转换时交给监听器"""

    slot_id: str
    state: str
    message: str
    category: Optional[FailureCategory] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "state",
            "processId": self.slot_id,
            "status": self.state,
            "message": self.message,
            "category": self.category.value if self.category else None,
            "timestamp": int(self.timestamp * 1000),
        }


def system_event(level: Level, message: str, detail: Optional[str] = None) -> DiagnosticEvent:
    """创建不属于任何槽位的系统事件"""
    return DiagnosticEvent(level=level, message=message, detail=detail, slot_id=SYSTEM_SLOT)
