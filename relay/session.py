"""
转播会话数据模型

定义会话状态和一次受监管的 FFmpeg 运行所需的全部信息。
"""

import time
from collections import deque
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Deque
from subprocess import Popen

from .arbiter import ClaimToken, mask_destination
from .events import DiagnosticEvent
from .policy import ArgumentTemplate, Resolution
from .source import SourceDescriptor


class SessionState(Enum):
    """会话状态枚举"""
    IDLE = "idle"              # 空闲（无进程）
    STARTING = "starting"      # 进程已启动，尚未看到进度输出
    RUNNING = "running"        # 已看到至少一次进度输出
    STOPPING = "stopping"      # 调用方请求停止
    RESTARTING = "restarting"  # 异常退出，等待退避后重启
    ERROR = "error"            # 重启次数耗尽或不可重试的启动失败


@dataclass
class Session:
    """转播会话

    一次从启动到结束的受监管运行。进程、目标占用都归会话所有。
    """

    # 基本信息
    slot_id: str
    source: SourceDescriptor
    destination: str
    template: ArgumentTemplate
    claim: ClaimToken
    resolution: Optional[Resolution] = None

    # 代数：每个会话唯一，用于丢弃旧进程的迟到事件
    generation: int = 0

    # 状态信息
    state: SessionState = SessionState.STARTING
    restart_count: int = 0
    max_restarts: int = 3

    # 进程信息
    process: Optional[Popen] = None
    command: List[str] = field(default_factory=list)

    # 时间戳
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None  # 最近一次进入 running
    spawned_at: Optional[float] = None  # 最近一次启动进程

    # 诊断信息
    recent_lines: Deque[str] = field(default_factory=lambda: deque(maxlen=50))
    last_progress: Optional[Dict[str, Any]] = None
    last_failure: Optional[DiagnosticEvent] = None

    @classmethod
    def create(
        cls,
        slot_id: str,
        source: SourceDescriptor,
        destination: str,
        template: ArgumentTemplate,
        claim: ClaimToken,
        generation: int,
        max_restarts: int,
        recent_lines: int = 50,
        resolution: Optional[Resolution] = None,
    ) -> 'Session':
        """创建会话

        Args:
            slot_id: 槽位 ID
            source: 源描述
            destination: 推流目标
            template: 参数模板
            claim: 目标占用令牌
            generation: 会话代数
            max_restarts: 最大重启次数
            recent_lines: 保留的诊断行数
            resolution: 探测到的分辨率

        Returns:
            Session 实例
        """
        return cls(
            slot_id=slot_id,
            source=source,
            destination=destination,
            template=template,
            claim=claim,
            generation=generation,
            max_restarts=max_restarts,
            resolution=resolution,
            recent_lines=deque(maxlen=max(1, recent_lines)),
        )

    def remember(self, line: str):
        """记录一行原始诊断输出（超出上限时丢弃最旧的）"""
        line = line.rstrip()
        if line:
            self.recent_lines.append(line)

    def attach_process(self, process: Popen, command: List[str]):
        """绑定新启动的进程"""
        self.process = process
        self.command = list(command)
        self.spawned_at = time.time()

    def can_restart(self) -> bool:
        """判断是否还有重启额度"""
        return self.restart_count < self.max_restarts

    def is_process_alive(self) -> bool:
        """判断进程是否仍在运行

        Returns:
            是否存活
        """
        if self.process is None:
            return False
        try:
            return self.process.poll() is None
        except OSError:
            return False

    def get_pid(self) -> Optional[int]:
        if self.process is None:
            return None
        return getattr(self.process, "pid", None)

    def get_uptime(self) -> float:
        """获取本次进入 running 以来的时长（秒）"""
        if self.started_at is None:
            return 0.0
        return time.time() - self.started_at

    def to_dict(self, include_log: bool = False) -> Dict[str, Any]:
        """转换为字典（用于 API 响应）

        Args:
            include_log: 是否包含最近诊断行

        Returns:
            字典表示
        """
        result = {
            "state": self.state.value,
            "process_running": self.is_process_alive(),
            "pid": self.get_pid(),
            "mode": self.template.mode.value,
            "resolution": str(self.resolution) if self.resolution else None,
            "restart_count": self.restart_count,
            "max_restarts": self.max_restarts,
            "created_at": self.created_at,
            "uptime": round(self.get_uptime(), 1),
            "destination": mask_destination(self.destination),
        }

        if self.started_at:
            result["started_at"] = self.started_at
        if self.last_progress:
            result["last_progress"] = dict(self.last_progress)
        if self.last_failure:
            result["last_failure"] = failure_to_dict(self.last_failure)
        if include_log:
            result["recent_lines"] = list(self.recent_lines)

        return result


def failure_to_dict(event: Optional[DiagnosticEvent]) -> Optional[Dict[str, Any]]:
    if event is None:
        return None
    return {
        "category": event.category.value if event.category else None,
        "detail": event.detail,
        "message": event.message,
        "timestamp": event.timestamp,
    }
