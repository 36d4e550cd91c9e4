"""
编码策略选择

根据探测到的分辨率和源类型选择参数模板：
- 未知分辨率或不高于 720p：直接复制音视频流
- 高于 720p：重编码为 720p

select_policy() 没有副作用，相同输入总是得到相同模板。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .source import SourceKind

PASSTHROUGH_MAX_HEIGHT = 720


class EncodeMode(str, Enum):
    """编码模式"""
    PASSTHROUGH = "passthrough"
    RECODE = "recode"


@dataclass(frozen=True)
class Resolution:
    width: int
    height: int

    def __str__(self):
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class RecodeProfile:
    """重编码参数"""

    height: int = 720
    fps: int = 30
    video_encoder: str = "libx264"
    preset: str = "veryfast"
    video_bitrate: str = "2500k"
    maxrate: str = "3000k"
    bufsize: str = "6000k"
    audio_encoder: str = "aac"
    audio_bitrate: str = "128k"
    audio_sample_rate: int = 44100

    @classmethod
    def from_config(cls, config) -> "RecodeProfile":
        """从转播配置创建重编码参数

        Args:
            config: RelayConfig 实例

        Returns:
            重编码参数
        """
        return cls(
            height=config.recode_height,
            fps=config.recode_fps,
            video_encoder=config.video_encoder,
            preset=config.x264_preset,
            video_bitrate=config.video_bitrate,
            maxrate=config.maxrate,
            bufsize=config.bufsize,
            audio_encoder=config.audio_encoder,
            audio_bitrate=config.audio_bitrate,
            audio_sample_rate=config.audio_sample_rate,
        )


DEFAULT_PROFILE = RecodeProfile()


@dataclass(frozen=True)
class ArgumentTemplate:
    """参数模板

    只包含输入封装和输出编码参数，不含源地址和推流目标。
    """

    mode: EncodeMode
    source_kind: SourceKind
    input_args: Tuple[str, ...]
    output_args: Tuple[str, ...]
    output_format: str = "flv"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "source_kind": self.source_kind.value,
            "input_args": list(self.input_args),
            "output_args": list(self.output_args),
            "output_format": self.output_format,
        }


def _input_framing(source_kind: SourceKind) -> Tuple[str, ...]:
    if source_kind == SourceKind.PLAYLIST:
        return (
            "-reconnect", "1",
            "-reconnect_streamed", "1",
            "-reconnect_delay_max", "4",
            "-fflags", "+genpts+discardcorrupt",
        )
    # 本地文件按实时速率读取
    if source_kind == SourceKind.CONCAT:
        return ("-re", "-f", "concat", "-safe", "0")
    return ("-re",)


def _passthrough_output() -> Tuple[str, ...]:
    return (
        "-c:v", "copy",
        "-c:a", "copy",
        "-avoid_negative_ts", "make_zero",
        "-flvflags", "no_duration_filesize",
    )


def _recode_output(profile: RecodeProfile) -> Tuple[str, ...]:
    gop = str(profile.fps * 2)
    return (
        "-vf", f"scale=-2:{profile.height},fps={profile.fps}",
        "-c:v", profile.video_encoder,
        "-preset", profile.preset,
        "-b:v", profile.video_bitrate,
        "-maxrate", profile.maxrate,
        "-bufsize", profile.bufsize,
        "-pix_fmt", "yuv420p",
        "-g", gop,
        "-keyint_min", gop,
        "-sc_threshold", "0",
        "-c:a", profile.audio_encoder,
        "-b:a", profile.audio_bitrate,
        "-ar", str(profile.audio_sample_rate),
        "-ac", "2",
        "-flvflags", "no_duration_filesize",
    )


def select_mode(resolution: Optional[Resolution]) -> EncodeMode:
    """根据分辨率选择编码模式"""
    if resolution is None or resolution.height <= PASSTHROUGH_MAX_HEIGHT:
        return EncodeMode.PASSTHROUGH
    return EncodeMode.RECODE


def select_policy(
    resolution: Optional[Resolution],
    source_kind: SourceKind,
    profile: RecodeProfile = DEFAULT_PROFILE,
) -> ArgumentTemplate:
    """选择参数模板

    Args:
        resolution: 探测到的分辨率，未知为 None
        source_kind: 源类型，决定输入封装参数
        profile: 重编码参数

    Returns:
        参数模板
    """
    mode = select_mode(resolution)
    if mode == EncodeMode.PASSTHROUGH:
        output_args = _passthrough_output()
    else:
        output_args = _recode_output(profile)
    return ArgumentTemplate(
        mode=mode,
        source_kind=source_kind,
        input_args=_input_framing(source_kind),
        output_args=output_args,
    )
