"""
槽位注册表

固定容量的槽位 ID -> 监管器映射，向 Web 层提供启动、停止、查询操作：
- 校验启动参数
- 探测分辨率并选择编码策略
- 通过仲裁器占用推流目标（必要时抢占其他槽位）
- 交给对应槽位的监管器启动会话
"""

import threading
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Any, Union, Iterable

from .arbiter import DestinationArbiter, normalize_destination, mask_destination
from .broadcaster import LogBroadcaster
from .classifier import DiagnosticClassifier
from .config import RelayConfig
from .errors import ConfigurationError, UnknownSlotError
from .events import Level, StateChange, system_event
from .ffmpeg import FFmpegRunner
from .ffprobe import FFprobeRunner
from .policy import RecodeProfile, select_policy
from .source import SourceDescriptor
from .supervisor import SlotSupervisor

logger = logging.getLogger(__name__)


@dataclass
class Slot:
    """槽位：固定身份，持有源、目标和监管器"""
    slot_id: str
    supervisor: SlotSupervisor
    source: Optional[SourceDescriptor] = None
    destination: Optional[str] = None
    preview_path: Optional[str] = None


class SlotRegistry:
    """槽位注册表

    同一槽位的 start/stop 通过槽位锁串行化；不同槽位互不阻塞。
    探测在任何锁之外进行。
    """

    def __init__(
        self,
        config: RelayConfig,
        runner: Optional[FFmpegRunner] = None,
        prober: Optional[FFprobeRunner] = None,
        classifier: Optional[DiagnosticClassifier] = None,
        broadcaster: Optional[LogBroadcaster] = None
    ):
        """初始化注册表

        Args:
            config: 转播配置
            runner: FFmpeg 运行器
            prober: FFprobe 运行器
            classifier: 诊断分类器，默认按配置加载规则表
            broadcaster: 日志广播器
        """
        self.config = config
        self.runner = runner or FFmpegRunner(config)
        self.prober = prober or FFprobeRunner(config.ffprobe_path)
        self.classifier = classifier or DiagnosticClassifier.from_file(config.classifier_rules)
        self.broadcaster = broadcaster or LogBroadcaster()
        self.arbiter = DestinationArbiter(on_evict=self._on_evict)
        self.profile = RecodeProfile.from_config(config)

        self.slots: Dict[str, Slot] = {}
        self._slot_locks: Dict[str, threading.Lock] = {}
        for slot_id in config.slot_ids():
            supervisor = SlotSupervisor(
                slot_id,
                config,
                self.runner,
                self.arbiter,
                classifier=self.classifier,
                broadcaster=self.broadcaster,
            )
            self.slots[slot_id] = Slot(slot_id=slot_id, supervisor=supervisor)
            self._slot_locks[slot_id] = threading.Lock()

    def add_change_listener(self, listener: Callable[[StateChange], None]):
        """注册状态变更监听器（持久化钩子），作用于所有槽位"""
        for slot in self.slots.values():
            slot.supervisor.add_listener(listener)

    def get_slot(self, slot_id: Union[str, int]) -> Slot:
        """获取槽位

        Args:
            slot_id: 槽位 ID（整数会转为字符串）

        Returns:
            Slot 对象

        Raises:
            UnknownSlotError: 槽位不存在
        """
        key = str(slot_id).strip()
        slot = self.slots.get(key)
        if slot is None:
            raise UnknownSlotError(f"Unknown slot '{key}' (valid: {', '.join(self.slots)})")
        return slot

    def start(
        self,
        slot_id: Union[str, int],
        source: Union[SourceDescriptor, str, Iterable[str], None],
        destination: Optional[str],
        preview_path: Optional[str] = None
    ) -> Dict[str, Any]:
        """启动槽位转播

        槽位已有会话时先同步停止；目标被其他槽位占用时抢占。
        进程启动后立即返回，不等待进入 running。

        Args:
            slot_id: 槽位 ID
            source: 源描述、播放列表 URL 或本地文件列表
            destination: 推流目标
            preview_path: 预览路径后缀（仅展示）

        Returns:
            启动后的槽位状态

        Raises:
            ConfigurationError: 缺少必需参数
            UnknownSlotError: 槽位不存在
        """
        slot = self.get_slot(slot_id)
        if not normalize_destination(destination or ""):
            raise ConfigurationError("Missing required parameter: target_rtmp")
        source = SourceDescriptor.coerce(source)
        destination = destination.strip()

        self.broadcaster.publish(system_event(Level.INFO, f"Start requested for slot {slot.slot_id}",
                                              detail=source.describe()).for_slot(slot.slot_id))

        # 探测可能较慢，放在锁外
        resolution = self.prober.probe_source(source, timeout=self.config.probe_timeout)
        template = select_policy(resolution, source.kind, self.profile)
        logger.info(f"Slot {slot.slot_id}: resolution={resolution or 'unknown'}, policy={template.mode.value}")

        with self._slot_locks[slot.slot_id]:
            supervisor = slot.supervisor
            if supervisor.is_active():
                supervisor.stop(reason="restart")

            result = self.arbiter.claim(destination, slot.slot_id)
            if result.evicted_slot_id is not None:
                logger.info(f"Slot {slot.slot_id} evicted slot {result.evicted_slot_id} "
                            f"from {mask_destination(destination)}")

            slot.source = source
            slot.destination = destination
            slot.preview_path = preview_path
            supervisor.launch(source, destination, template, result.token, resolution=resolution)

        return self.get_slot_status(slot.slot_id)

    def stop(self, slot_id: Union[str, int], reason: str = "manual") -> Tuple[bool, str]:
        """停止槽位转播（空闲槽位视为成功）

        Args:
            slot_id: 槽位 ID
            reason: 停止原因

        Returns:
            (成功标志, 消息)
        """
        slot = self.get_slot(slot_id)
        with self._slot_locks[slot.slot_id]:
            stopped = slot.supervisor.stop(reason=reason)
        if stopped:
            return True, f"Emission {slot.slot_id} stopped"
        return True, f"No active emission for slot {slot.slot_id}"

    def get_slot_status(self, slot_id: Union[str, int], include_log: bool = False) -> Dict[str, Any]:
        """获取单个槽位状态

        Args:
            slot_id: 槽位 ID
            include_log: 是否包含最近诊断行

        Returns:
            状态字典
        """
        slot = self.get_slot(slot_id)
        result = slot.supervisor.status(include_log=include_log)
        result["source"] = slot.source.to_dict() if slot.source else None
        result["preview_path"] = slot.preview_path
        if slot.destination:
            result["destination"] = mask_destination(slot.destination)
        return result

    def status(self, slot_id: Optional[Union[str, int]] = None, include_log: bool = False) -> Dict[str, Any]:
        """查询状态：指定槽位返回该槽位，否则返回全部槽位

        Args:
            slot_id: 槽位 ID，可选
            include_log: 是否包含最近诊断行

        Returns:
            状态字典
        """
        if slot_id is not None and str(slot_id) != "":
            return self.get_slot_status(slot_id, include_log=include_log)
        return {sid: self.get_slot_status(sid, include_log=include_log) for sid in self.slots}

    def get_status_summary(self) -> Dict[str, Any]:
        """获取状态摘要

        Returns:
            各状态的槽位数量、目标占用数
        """
        summary: Dict[str, Any] = {"total": len(self.slots)}
        for slot in self.slots.values():
            state = slot.supervisor.state.value
            summary[state] = summary.get(state, 0) + 1
        summary["claims"] = len(self.arbiter.claims())
        return summary

    def get_active_pids(self) -> Dict[str, int]:
        """获取正在运行的 FFmpeg 进程 PID"""
        pids = {}
        for slot_id, slot in self.slots.items():
            status = slot.supervisor.status()
            if status.get("process_running") and status.get("pid"):
                pids[slot_id] = status["pid"]
        return pids

    def shutdown(self, reason: str = "shutdown"):
        """停止所有槽位（服务关闭时调用）"""
        self.broadcaster.publish(system_event(Level.WARN, "Shutting down, stopping all emissions"))
        for slot in self.slots.values():
            with self._slot_locks[slot.slot_id]:
                if slot.supervisor.is_active():
                    logger.info(f"Stopping FFmpeg for slot {slot.slot_id} ({reason})")
                slot.supervisor.shutdown()
        self.broadcaster.flush(timeout=1.0)

    def _on_evict(self, slot_id: str, destination: str):
        """仲裁器回调：目标被其他槽位抢占"""
        slot = self.slots.get(slot_id)
        if slot is None:
            return
        slot.supervisor.evict(destination)
