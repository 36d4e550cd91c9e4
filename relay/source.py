"""
源描述

推流源可以是远程播放列表 URL，也可以是按顺序播放的本地文件列表。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from .errors import ConfigurationError


class SourceKind(str, Enum):
    """源类型"""
    PLAYLIST = "playlist"  # 远程播放列表
    FILE = "file"  # 单个本地文件
    CONCAT = "concat"  # 多个本地文件依次播放


@dataclass(frozen=True)
class SourceDescriptor:
    """源描述"""

    url: Optional[str] = None
    files: Tuple[str, ...] = ()
    user_agent: Optional[str] = None
    referer: Optional[str] = None

    @classmethod
    def from_request(
        cls,
        source_m3u8: Optional[str] = None,
        source_files: Optional[Iterable[str]] = None,
        user_agent: Optional[str] = None,
        referer: Optional[str] = None,
    ) -> "SourceDescriptor":
        """从 /api/emit 请求参数创建源描述

        Args:
            source_m3u8: 播放列表 URL
            source_files: 本地文件路径列表，空白项被忽略
            user_agent: 拉流 User-Agent
            referer: 拉流 Referer

        Returns:
            源描述

        Raises:
            ConfigurationError: 两种源都未提供，或同时提供
        """
        url = (source_m3u8 or "").strip() or None
        files = tuple(str(f).strip() for f in (source_files or ()) if str(f).strip())
        if url and files:
            raise ConfigurationError("Provide either source_m3u8 or source_files, not both")
        if not url and not files:
            raise ConfigurationError("Missing required parameter: source_m3u8")
        return cls(url=url, files=files, user_agent=user_agent or None, referer=referer or None)

    @classmethod
    def coerce(cls, value: Union["SourceDescriptor", str, Iterable[str], None]) -> "SourceDescriptor":
        """接受源描述、URL 字符串或文件列表"""
        if isinstance(value, SourceDescriptor):
            return value
        if value is None:
            raise ConfigurationError("Missing required parameter: source_m3u8")
        if isinstance(value, str):
            return cls.from_request(source_m3u8=value)
        return cls.from_request(source_files=list(value))

    @property
    def kind(self) -> SourceKind:
        if self.url:
            return SourceKind.PLAYLIST
        if len(self.files) > 1:
            return SourceKind.CONCAT
        return SourceKind.FILE

    @property
    def probe_target(self) -> str:
        """用于分辨率探测的地址（文件列表取第一个）"""
        return self.url or self.files[0]

    def describe(self) -> str:
        if self.url:
            return self.url
        if len(self.files) == 1:
            return self.files[0]
        return f"{self.files[0]} (+{len(self.files) - 1} more)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "url": self.url,
            "files": list(self.files),
            "user_agent": self.user_agent,
            "referer": self.referer,
        }
