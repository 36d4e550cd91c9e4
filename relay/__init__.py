"""
RTMP 转播模块

把 HLS 播放列表或本地文件通过 FFmpeg 推送到 RTMP 目标，按固定槽位管理。

核心特性：
- ffprobe 探测源分辨率，720p 及以下直接复制流，更高分辨率重新编码到 720p
- 同一推流目标同时只允许一个槽位占用，后来者抢占
- 按诊断输出区分源、目标、主机三类故障
- 异常退出按线性退避自动重启，超过上限进入 error
- 诊断事件通过 WebSocket 实时广播
"""

from .config import RelayConfig, get_relay_config
from .errors import RelayError, ConfigurationError, UnknownSlotError, SpawnError
from .events import DiagnosticEvent, StateChange, Level, FailureCategory
from .source import SourceDescriptor, SourceKind
from .policy import EncodeMode, Resolution, ArgumentTemplate, select_policy
from .classifier import DiagnosticClassifier
from .arbiter import DestinationArbiter
from .broadcaster import LogBroadcaster
from .session import Session, SessionState
from .ffprobe import FFprobeRunner
from .ffmpeg import FFmpegRunner
from .supervisor import SlotSupervisor
from .registry import SlotRegistry

__all__ = [
    'RelayConfig',
    'get_relay_config',
    'RelayError',
    'ConfigurationError',
    'UnknownSlotError',
    'SpawnError',
    'DiagnosticEvent',
    'StateChange',
    'Level',
    'FailureCategory',
    'SourceDescriptor',
    'SourceKind',
    'EncodeMode',
    'Resolution',
    'ArgumentTemplate',
    'select_policy',
    'DiagnosticClassifier',
    'DestinationArbiter',
    'LogBroadcaster',
    'Session',
    'SessionState',
    'FFprobeRunner',
    'FFmpegRunner',
    'SlotSupervisor',
    'SlotRegistry',
]
