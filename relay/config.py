"""
转播配置模块

定义槽位监管、重启策略和编码参数的配置项及默认值。
"""

import os
from typing import List, Optional
from dataclasses import dataclass


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


@dataclass
class RelayConfig:
    """转播配置

    从全局配置的 "relay" 节读取参数，未配置的项使用默认值。
    """

    # 可执行文件
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # 槽位数量（固定，不动态增长）
    max_slots: int = 5

    # 自动重启策略
    max_restarts: int = 3
    restart_delay: float = 3.0  # 每次重启递增的等待（秒）
    restart_delay_max: float = 15.0  # 等待上限（秒）

    # 停止时的宽限期，超时后强制结束（秒）
    stop_grace_period: float = 5.0

    # ffprobe 探测超时（秒）
    probe_timeout: int = 10

    # 每个会话保留的最近诊断行数（仅用于展示）
    recent_lines: int = 50

    # FFmpeg 日志级别，需保留 info 才能看到流描述
    loglevel: str = "info"

    # 工作目录（存放 concat 列表文件）
    work_dir: str = "data/relay"

    # 拉流时使用的 User-Agent
    user_agent: str = DEFAULT_USER_AGENT

    # 自定义诊断规则表（JSON 文件路径）
    classifier_rules: Optional[str] = None

    # 重新编码目标参数
    recode_height: int = 720
    recode_fps: int = 30
    video_encoder: str = "libx264"
    video_bitrate: str = "2500k"
    maxrate: str = "3000k"
    bufsize: str = "6000k"
    x264_preset: str = "veryfast"
    audio_encoder: str = "aac"
    audio_bitrate: str = "128k"
    audio_sample_rate: int = 44100

    @classmethod
    def from_app_config(cls, app_config: dict) -> 'RelayConfig':
        """从应用配置创建 RelayConfig

        Args:
            app_config: 全局配置字典

        Returns:
            RelayConfig 实例
        """
        relay_config = (app_config or {}).get("relay", {}) or {}

        config = cls()

        # 字符串项
        for key in ("ffmpeg_path", "ffprobe_path", "loglevel", "work_dir", "user_agent",
                    "video_encoder", "video_bitrate", "maxrate", "bufsize", "x264_preset",
                    "audio_encoder", "audio_bitrate"):
            if relay_config.get(key):
                setattr(config, key, str(relay_config[key]))

        if "classifier_rules" in relay_config:
            config.classifier_rules = relay_config["classifier_rules"] or None

        # 整数项
        if "max_slots" in relay_config:
            config.max_slots = int(relay_config["max_slots"] or 5)
        if "max_restarts" in relay_config:
            config.max_restarts = int(relay_config["max_restarts"] or 0)
        if "probe_timeout" in relay_config:
            config.probe_timeout = int(relay_config["probe_timeout"] or 10)
        if "recent_lines" in relay_config:
            config.recent_lines = int(relay_config["recent_lines"] or 50)
        if "recode_height" in relay_config:
            config.recode_height = int(relay_config["recode_height"] or 720)
        if "recode_fps" in relay_config:
            config.recode_fps = int(relay_config["recode_fps"] or 30)
        if "audio_sample_rate" in relay_config:
            config.audio_sample_rate = int(relay_config["audio_sample_rate"] or 44100)

        # 时间项
        if "restart_delay" in relay_config:
            config.restart_delay = float(relay_config["restart_delay"] or 0)
        if "restart_delay_max" in relay_config:
            config.restart_delay_max = float(relay_config["restart_delay_max"] or 0)
        if "stop_grace_period" in relay_config:
            config.stop_grace_period = float(relay_config["stop_grace_period"] or 5.0)

        config.apply_env()
        return config

    def apply_env(self, environ: Optional[dict] = None) -> None:
        """环境变量优先于配置文件

        Args:
            environ: 环境变量字典，默认 os.environ
        """
        environ = os.environ if environ is None else environ
        if environ.get("FFMPEG_PATH"):
            self.ffmpeg_path = environ["FFMPEG_PATH"]
        if environ.get("FFPROBE_PATH"):
            self.ffprobe_path = environ["FFPROBE_PATH"]
        if environ.get("RELAY_MAX_SLOTS"):
            self.max_slots = int(environ["RELAY_MAX_SLOTS"])

    def slot_ids(self) -> List[str]:
        """获取固定的槽位 ID 列表

        Returns:
            槽位 ID 列表，如 ["0", "1", "2", "3", "4"]
        """
        return [str(i) for i in range(self.max_slots)]

    def get_backoff_delay(self, attempt: int) -> float:
        """获取第 attempt 次重启前的等待时间（线性递增，有上限）

        Args:
            attempt: 即将进行的重启序号（从 1 开始）

        Returns:
            等待秒数
        """
        if attempt <= 0:
            return 0.0
        return min(self.restart_delay * attempt, self.restart_delay_max)

    def get_concat_list_path(self, slot_id: str) -> str:
        """获取槽位的 concat 列表文件路径

        Args:
            slot_id: 槽位 ID

        Returns:
            列表文件路径
        """
        return os.path.join(self.work_dir, f"slot{slot_id}_concat.txt")


def get_relay_config(app_config: dict) -> RelayConfig:
    """获取转播配置的便捷函数

    Args:
        app_config: 全局配置字典

    Returns:
        RelayConfig 实例
    """
    return RelayConfig.from_app_config(app_config)
