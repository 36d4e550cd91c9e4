"""
FFprobe 分辨率探测模块

使用 ffprobe 获取源的首个视频流的宽高，用于选择编码策略。
探测失败不影响启动：任何失败都返回 None（未知）。
"""

import json
import subprocess
import logging
from typing import Optional, Dict, Any, Tuple

from .policy import Resolution
from .source import SourceDescriptor

logger = logging.getLogger(__name__)


class FFprobeRunner:
    """FFprobe 运行器

    一次性、有超时地运行 ffprobe，不做重试。
    """

    def __init__(self, ffprobe_path: str = "ffprobe"):
        """初始化 FFprobe 运行器

        Args:
            ffprobe_path: ffprobe 可执行文件路径
        """
        self.ffprobe_path = ffprobe_path

    def build_command(
        self,
        source_ref: str,
        user_agent: Optional[str] = None,
        referer: Optional[str] = None
    ) -> list:
        """构建 ffprobe 命令

        Args:
            source_ref: 源 URL 或本地文件路径
            user_agent: HTTP User-Agent（仅 URL 源）
            referer: HTTP Referer（仅 URL 源）

        Returns:
            ffprobe 命令列表
        """
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "stream=width,height",
            "-of", "json",
        ]

        # 添加 HTTP 头（仅对网络源）
        if "://" in source_ref:
            if user_agent:
                cmd.extend(["-user_agent", user_agent])
            if referer:
                cmd.extend(["-headers", f"Referer: {referer}\r\n"])

        cmd.append(source_ref)
        return cmd

    def get_stream_info(
        self,
        source_ref: str,
        timeout: int = 10,
        user_agent: Optional[str] = None,
        referer: Optional[str] = None
    ) -> Tuple[bool, Dict[str, Any], Optional[str]]:
        """获取首个视频流信息

        Args:
            source_ref: 源 URL 或本地文件路径
            timeout: 超时时间（秒）
            user_agent: HTTP User-Agent
            referer: HTTP Referer

        Returns:
            (成功标志, 视频流信息字典, 错误信息)
        """
        cmd = self.build_command(source_ref, user_agent, referer)
        preview = source_ref[:80] + "..." if len(source_ref) > 80 else source_ref

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"ffprobe timeout after {timeout}s for {preview}")
            return False, {}, f"ffprobe timeout ({timeout}s)"
        except FileNotFoundError:
            logger.error("ffprobe executable not found")
            return False, {}, "ffprobe not found"
        except OSError as e:
            logger.error(f"Error running ffprobe: {e}")
            return False, {}, str(e)

        if result.returncode != 0:
            error_msg = (result.stderr or "").strip() or "Unknown ffprobe error"
            logger.warning(f"ffprobe error (code {result.returncode}) for {preview}: {error_msg}")
            return False, {}, f"ffprobe failed: {error_msg}"

        try:
            raw_info = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse ffprobe output: {e}, stdout: {(result.stdout or '')[:200]}")
            return False, {}, f"Failed to parse ffprobe output: {e}"

        streams = raw_info.get("streams") or []
        if not streams:
            logger.warning(f"ffprobe found no video stream in {preview}")
            return False, {}, "No video stream"

        return True, streams[0], None

    def probe_resolution(
        self,
        source_ref: str,
        timeout: int = 10,
        user_agent: Optional[str] = None,
        referer: Optional[str] = None
    ) -> Optional[Resolution]:
        """探测分辨率

        Args:
            source_ref: 源 URL 或本地文件路径
            timeout: 超时时间（秒）
            user_agent: HTTP User-Agent
            referer: HTTP Referer

        Returns:
            Resolution，未知时返回 None
        """
        success, stream, error = self.get_stream_info(source_ref, timeout, user_agent, referer)
        if not success:
            return None

        try:
            width = int(stream.get("width") or 0)
            height = int(stream.get("height") or 0)
        except (TypeError, ValueError):
            logger.warning(f"ffprobe returned invalid dimensions: {stream}")
            return None

        if width <= 0 or height <= 0:
            return None

        resolution = Resolution(width=width, height=height)
        logger.info(f"ffprobe got resolution {resolution} for {source_ref[:80]}")
        return resolution

    def probe_source(self, source: SourceDescriptor, timeout: int = 10) -> Optional[Resolution]:
        """探测源描述对应的分辨率（多文件源探测第一个文件）

        Args:
            source: 源描述
            timeout: 超时时间（秒）

        Returns:
            Resolution，未知时返回 None
        """
        return self.probe_resolution(
            source.probe_target,
            timeout=timeout,
            user_agent=source.user_agent,
            referer=source.referer,
        )
