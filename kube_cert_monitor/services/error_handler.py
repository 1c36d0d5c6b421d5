"""
错误定义与重试、轮询工具
"""
import time
from typing import Callable, Any, Optional
import logging

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError


# 集群 API 调用可能抛出的错误：服务端返回的错误和连接层错误
CLUSTER_API_ERRORS = (ApiException, HTTPError)


class CertificateMonitorError(Exception):
    """所有错误的基类"""


class ParseError(CertificateMonitorError):
    """PEM 或 X.509 解析失败"""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(message)


class ExecError(CertificateMonitorError):
    """远程命令执行失败"""

    def __init__(self, command, reason: str):
        self.command = list(command)
        self.reason = reason
        super().__init__(f"{' '.join(self.command)}: {reason}")


class ResolutionError(CertificateMonitorError):
    """无法确定权威证书路径"""


class DeploymentError(CertificateMonitorError):
    """采集代理无法创建或观测"""


class DeploymentTimeout(DeploymentError):
    """采集代理在期限内未就绪"""


class DiscoveryError(CertificateMonitorError):
    """必需的控制平面组件无法列出"""


class AggregationError(CertificateMonitorError):
    """结果队列中出现未知类型"""


class ConfigurationError(CertificateMonitorError):
    """运行配置无效"""


class RetryHandler:
    """固定间隔重试处理器"""

    def __init__(self, max_attempts: int = 5, delay: float = 0.5,
                 retryable: tuple = (ExecError,)):
        """
        初始化重试处理器

        Args:
            max_attempts: 最大尝试次数（包含第一次）
            delay: 每次重试之间的固定等待时间（秒）
            retryable: 可重试的异常类型
        """
        self.max_attempts = max_attempts
        self.delay = delay
        self.retryable = retryable
        self.logger = logging.getLogger(__name__)

    def with_retry(self, func: Callable, *args, **kwargs) -> Any:
        """
        带重试机制执行函数，第一次成功即返回

        Args:
            func: 要执行的函数
            *args: 函数参数
            **kwargs: 函数关键字参数

        Returns:
            Any: 函数执行结果

        Raises:
            Exception: 重试次数用尽后的最后一个异常，或不可重试的异常
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args, **kwargs)

            except self.retryable as e:
                if attempt == self.max_attempts:
                    self.logger.error(f"重试次数用尽，最终失败: {type(e).__name__}: {str(e)}")
                    raise

                self.logger.warning(
                    f"尝试 {attempt}/{self.max_attempts} 失败: {type(e).__name__}: {str(e)}，"
                    f"{self.delay:.1f}秒后重试"
                )

                time.sleep(self.delay)


def poll_until(predicate: Callable[[], Any], interval: float, timeout: Optional[float],
               description: str = "条件") -> Any:
    """
    按固定间隔轮询，直到谓词返回真值

    Args:
        predicate: 轮询函数，返回真值时结束
        interval: 轮询间隔（秒）
        timeout: 截止时间（秒），None 表示不限
        description: 用于超时错误信息的描述

    Returns:
        Any: 谓词最后返回的真值

    Raises:
        DeploymentTimeout: 超过截止时间
    """
    deadline = None if timeout is None else time.monotonic() + timeout

    while True:
        time.sleep(interval)

        value = predicate()
        if value:
            return value

        if deadline is not None and time.monotonic() >= deadline:
            raise DeploymentTimeout(f"等待{description}超时（{timeout}秒）")


def describe_api_error(error: Exception) -> str:
    """把集群 API 错误转换为简短描述"""
    if isinstance(error, ApiException):
        return f"{error.status} {error.reason}"
    return f"{type(error).__name__}: {str(error)}"
