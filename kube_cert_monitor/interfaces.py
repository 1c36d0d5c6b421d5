"""
服务接口定义
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple, Union
from .models import CollectionResult, RawCommandOutput, Target


class CertificateParserInterface(ABC):
    """证书解析器接口"""

    @abstractmethod
    def parse(self, pem_text: Union[str, bytes]) -> Tuple[datetime, int]:
        """解析PEM证书，返回过期时间和剩余天数"""
        pass


class CommandExecutorInterface(ABC):
    """远程命令执行器接口"""

    @abstractmethod
    def execute(self, pod, namespace: str, command: List[str]) -> RawCommandOutput:
        """在Pod的第一个容器中执行命令"""
        pass


class TargetDiscoveryInterface(ABC):
    """检查目标发现接口"""

    @abstractmethod
    def control_plane_targets(self) -> List[Target]:
        """获取控制平面组件的检查目标"""
        pass

    @abstractmethod
    def agent_targets(self) -> List[Target]:
        """获取采集代理的检查目标"""
        pass

    @abstractmethod
    def pod_phase(self, target: Target) -> Optional[str]:
        """读取目标 Pod 的当前阶段"""
        pass


class LoggerServiceInterface(ABC):
    """日志服务接口"""

    @abstractmethod
    def log_run_start(self, check_kubelet: bool):
        """记录采集开始"""
        pass

    @abstractmethod
    def log_collection_result(self, result: CollectionResult):
        """记录单个采集结果"""
        pass

    @abstractmethod
    def log_error(self, target: str, error: Exception):
        """记录错误信息"""
        pass
