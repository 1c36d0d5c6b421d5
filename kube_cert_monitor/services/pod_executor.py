"""
Pod 远程命令执行服务
"""
import time
from typing import List, Optional
import logging

from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from websocket import WebSocketException

from ..interfaces import CommandExecutorInterface
from ..models import RawCommandOutput
from .error_handler import ExecError


class PodCommandExecutor(CommandExecutorInterface):
    """通过 exec 子资源在 Pod 内执行命令"""

    def __init__(self, core_api: client.CoreV1Api, timeout: Optional[float] = 60.0,
                 poll_interval: float = 1.0):
        """
        初始化命令执行器

        Args:
            core_api: CoreV1Api 客户端
            timeout: 单次命令的截止时间（秒），None 表示不限
            poll_interval: 读取数据流的等待间隔（秒）
        """
        self.core_api = core_api
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(__name__)

    def execute(self, pod, namespace: str, command: List[str]) -> RawCommandOutput:
        """
        在 Pod 的第一个容器中执行命令，不写入标准输入

        Args:
            pod: V1Pod 对象
            namespace: 命名空间
            command: 命令及参数

        Returns:
            RawCommandOutput: 采集到的标准输出和标准错误

        Raises:
            ExecError: 连接失败、命令返回非零或超时
        """
        pod_name = pod.metadata.name
        container = pod.spec.containers[0].name

        try:
            resp = stream(
                self.core_api.connect_get_namespaced_pod_exec,
                pod_name,
                namespace,
                container=container,
                command=command,
                stdin=False,
                stdout=True,
                stderr=True,
                tty=False,
                _preload_content=False,
            )
        except ApiException as e:
            raise ExecError(command, f"{namespace}/{pod_name}: {e.status} {e.reason}") from e
        except (WebSocketException, OSError) as e:
            raise ExecError(command, f"{namespace}/{pod_name}: {str(e)}") from e

        try:
            stdout, stderr = self._collect(resp, command)
            returncode = self._returncode(resp)
        except (WebSocketException, OSError) as e:
            raise ExecError(command, str(e)) from e
        finally:
            resp.close()

        if returncode:
            output = (stderr or stdout).strip()
            raise ExecError(command, f"command terminated with exit code {returncode}: {output}")

        if stderr:
            self.logger.warning(f"{namespace}/{pod_name} 标准错误输出: {stderr.strip()}")

        return RawCommandOutput(stdout=stdout, stderr=stderr)

    def read_file(self, pod, namespace: str, path: str) -> str:
        """读取 Pod 内的文件内容"""
        return self.execute(pod, namespace, ["cat", path]).stdout

    def _collect(self, resp, command: List[str]):
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        stdout, stderr = [], []

        while resp.is_open():
            resp.update(timeout=self.poll_interval)
            if resp.peek_stdout():
                stdout.append(resp.read_stdout())
            if resp.peek_stderr():
                stderr.append(resp.read_stderr())

            if deadline is not None and time.monotonic() >= deadline:
                raise ExecError(command, f"命令执行超时（{self.timeout}秒）")

        # 连接关闭后缓冲区里可能还有数据
        if resp.peek_stdout():
            stdout.append(resp.read_stdout())
        if resp.peek_stderr():
            stderr.append(resp.read_stderr())

        return ''.join(stdout), ''.join(stderr)

    def _returncode(self, resp) -> Optional[int]:
        """读取 error 通道中的退出状态，没有状态时返回 None"""
        try:
            return resp.returncode
        except (TypeError, KeyError, IndexError, ValueError) as e:
            self.logger.debug(f"无法读取退出状态: {type(e).__name__}: {str(e)}")
            return None
