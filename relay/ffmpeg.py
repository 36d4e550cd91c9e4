"""
FFmpeg 进程管理模块

负责把参数模板渲染成 FFmpeg 命令，并启动、终止转播进程。
"""

import os
import subprocess
import threading
import logging
from typing import List, Optional, Tuple

from .arbiter import mask_destination
from .config import RelayConfig
from .errors import SpawnError
from .policy import ArgumentTemplate
from .source import SourceDescriptor, SourceKind

logger = logging.getLogger(__name__)


class FFmpegRunner:
    """FFmpeg 进程管理器

    构建 FFmpeg 命令并管理转播进程。
    """

    def __init__(self, config: RelayConfig, ffmpeg_path: Optional[str] = None):
        """初始化 FFmpeg 运行器

        Args:
            config: 转播配置
            ffmpeg_path: ffmpeg 可执行文件路径，默认取配置
        """
        self.config = config
        self.ffmpeg_path = ffmpeg_path or config.ffmpeg_path

    def build_command(
        self,
        slot_id: str,
        template: ArgumentTemplate,
        source: SourceDescriptor,
        destination: str
    ) -> List[str]:
        """构建 FFmpeg 命令

        Args:
            slot_id: 槽位 ID（用于 concat 列表文件命名）
            template: 参数模板
            source: 源描述
            destination: 推流目标

        Returns:
            FFmpeg 命令列表

        Raises:
            SpawnError: 本地源文件不存在或列表文件无法写入（不可重试）
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-loglevel", self.config.loglevel,
        ]

        # 输入参数（-i 之前）
        cmd.extend(template.input_args)

        # 网络源的 HTTP 头
        if template.source_kind == SourceKind.PLAYLIST:
            cmd.extend(["-user_agent", source.user_agent or self.config.user_agent])
            if source.referer:
                cmd.extend(["-headers", f"Referer: {source.referer}\r\n"])

        # 输入
        cmd.extend(["-i", self._resolve_input(slot_id, template, source)])

        # 输出参数
        cmd.extend(template.output_args)
        cmd.extend(["-f", template.output_format, destination])

        return cmd

    def _resolve_input(self, slot_id: str, template: ArgumentTemplate, source: SourceDescriptor) -> str:
        """获取 -i 的参数值

        Args:
            slot_id: 槽位 ID
            template: 参数模板
            source: 源描述

        Returns:
            输入 URL、文件路径或 concat 列表路径
        """
        if template.source_kind == SourceKind.PLAYLIST:
            return source.url

        missing = [path for path in source.files if not os.path.isfile(path)]
        if missing:
            raise SpawnError(f"Source file not found: {missing[0]}", retryable=False)

        if template.source_kind == SourceKind.FILE:
            return source.files[0]

        return self.write_concat_list(slot_id, source.files)

    def write_concat_list(self, slot_id: str, files) -> str:
        """写入 concat 分离器使用的列表文件

        Args:
            slot_id: 槽位 ID
            files: 按播放顺序排列的文件路径

        Returns:
            列表文件路径
        """
        list_path = self.config.get_concat_list_path(slot_id)
        try:
            os.makedirs(os.path.dirname(list_path) or ".", exist_ok=True)
            with open(list_path, "w", encoding="utf-8") as f:
                for path in files:
                    # concat 列表中单引号需转义为 '\''
                    escaped = os.path.abspath(path).replace("'", "'\\''")
                    f.write(f"file '{escaped}'\n")
        except OSError as e:
            raise SpawnError(f"Cannot write concat list {list_path}: {e}", retryable=False)
        return list_path

    def start_process(self, command: List[str]) -> subprocess.Popen:
        """启动 FFmpeg 进程

        诊断输出走 stderr，文本模式按行读取（\\r 结尾的进度行也会被切分）。

        Args:
            command: FFmpeg 命令

        Returns:
            subprocess.Popen 对象

        Raises:
            SpawnError: 可执行文件不存在、无权限等
        """
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1
            )
        except OSError as e:
            logger.error(f"Failed to start FFmpeg: {e}")
            raise SpawnError(f"Failed to start FFmpeg: {e}")

        logger.info(f"Started FFmpeg process with PID {process.pid}")
        return process

    def terminate(self, process: Optional[subprocess.Popen], grace_period: float) -> Optional[threading.Timer]:
        """先发 SIGTERM，宽限期后仍未退出则 SIGKILL

        不等待进程退出，强制结束由定时器完成。

        Args:
            process: 进程对象
            grace_period: 宽限期（秒）

        Returns:
            强制结束定时器，进程已退出时返回 None
        """
        if process is None or process.poll() is not None:
            return None

        try:
            process.terminate()
        except OSError as e:
            logger.warning(f"Error terminating FFmpeg process {process.pid}: {e}")
            return None

        timer = threading.Timer(grace_period, self._force_kill, args=(process,))
        timer.daemon = True
        timer.start()
        return timer

    def _force_kill(self, process: subprocess.Popen):
        if process.poll() is not None:
            return
        logger.warning(f"Forcing FFmpeg termination (PID {process.pid})")
        try:
            process.kill()
        except OSError as e:
            logger.warning(f"Error killing FFmpeg process {process.pid}: {e}")

    def check_available(self, timeout: int = 10) -> Tuple[bool, str]:
        """检查 ffmpeg 是否可用

        Returns:
            (是否可用, 版本行或错误信息)
        """
        try:
            result = subprocess.run(
                [self.ffmpeg_path, "-version"],
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            return False, str(e)

        if result.returncode != 0:
            return False, (result.stderr or "").strip() or f"exit code {result.returncode}"
        first_line = (result.stdout or "").splitlines()[:1]
        return True, first_line[0] if first_line else "ffmpeg"

    def get_command_line_string(self, command: List[str]) -> str:
        """获取命令行字符串（用于日志记录）

        Args:
            command: FFmpeg 命令列表

        Returns:
            脱敏后的命令行字符串
        """
        sanitized = []
        for i, arg in enumerate(command):
            if i > 0 and command[i - 1] == "-headers":
                sanitized.append("<headers>")
            elif i == len(command) - 1:
                sanitized.append(mask_destination(arg))
            else:
                sanitized.append(arg)
        return " ".join(sanitized)
