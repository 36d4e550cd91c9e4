"""
转播异常定义

- ConfigurationError: 启动参数缺失或非法，不会创建会话
- UnknownSlotError: 槽位 ID 不在配置范围内
- SpawnError: FFmpeg 进程无法启动
"""


class RelayError(Exception):
    """转播异常基类"""

    def __init__(self, message: str):
        """初始化异常

        Args:
            message: 错误信息（同时作为 API 返回的 error 字段）
        """
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"{self.__class__.__name__}: {self.message}"


class ConfigurationError(RelayError):
    """启动请求缺少必要参数"""


class UnknownSlotError(RelayError):
    """槽位 ID 不存在"""


class SpawnError(RelayError):
    """FFmpeg 进程启动失败

    在 exec 之前发现的问题（源文件不存在、工作目录不可写）重试也会同样失败，
    此时 retryable 为 False。
    """

    def __init__(self, message: str, retryable: bool = True):
        """初始化异常

        Args:
            message: 错误信息
            retryable: 是否可以按重启策略重试
        """
        super().__init__(message)
        self.retryable = retryable
