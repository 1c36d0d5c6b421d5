"""
数据模型定义
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from dateutil import parser as date_parser


# 失败行使用的零值时间，报告中显示为 "-"
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


class CertType:
    """证书所属组件类型"""
    APISERVER = "apiserver"
    CONTROLLER_MANAGER = "controller-manager"
    SCHEDULER = "scheduler"
    KUBELET = "kubelet"


class TargetKind(Enum):
    """检查目标种类"""
    CONTROL_PLANE = "control-plane"
    AGENT = "agent"


class DeploymentState(Enum):
    """采集代理 DaemonSet 的生命周期状态"""
    ABSENT = "absent"
    CREATING = "creating"
    WAITING_READY = "waiting-ready"
    READY = "ready"
    TEARING_DOWN = "tearing-down"


class WorkerState(Enum):
    """单个采集任务的状态"""
    DISPATCHED = "dispatched"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    WARNED = "warned"
    FAILED = "failed"


@dataclass(frozen=True)
class CertificateEntry:
    """证书条目"""
    type: str
    node: str
    name: str
    path: str
    days: int
    due: datetime

    def to_dict(self) -> Dict[str, Any]:
        """转换为代理输出的 JSON 结构"""
        due = self.due.astimezone(timezone.utc)
        return {
            'type': self.type,
            'node': self.node,
            'name': self.name,
            'days': self.days,
            'due': due.strftime('%Y-%m-%dT%H:%M:%SZ'),
            'path': self.path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CertificateEntry':
        """
        从代理输出的 JSON 条目构建证书条目

        Raises:
            KeyError, TypeError, ValueError: 条目结构不合法
        """
        days = data['days']
        if isinstance(days, bool) or not isinstance(days, int):
            raise TypeError(f"days 字段类型无效: {days!r}")

        due = date_parser.isoparse(str(data['due']))
        if due.tzinfo is None:
            due = due.replace(tzinfo=timezone.utc)

        return cls(
            type=str(data['type']),
            node=str(data['node']),
            name=str(data['name']),
            path=str(data.get('path', '')),
            days=days,
            due=due,
        )


@dataclass(frozen=True)
class CollectionResult:
    """采集结果：证书条目加可选警告（空字符串表示成功）"""
    entry: CertificateEntry
    warning: str = ""

    @property
    def is_success(self) -> bool:
        return not self.warning

    @property
    def key(self) -> tuple:
        return (self.entry.type, self.entry.node, self.entry.name)

    @classmethod
    def failure(cls, cert_type: str, node: str, name: str, path: str, warning: str) -> 'CollectionResult':
        """构建失败行：days 为 0，due 为零值时间"""
        return cls(
            entry=CertificateEntry(
                type=cert_type,
                node=node,
                name=name,
                path=path,
                days=0,
                due=ZERO_TIME,
            ),
            warning=warning,
        )


@dataclass
class Target:
    """检查目标：控制平面 Pod 或节点上的采集代理 Pod"""
    kind: TargetKind
    cert_type: str
    pod: Any
    namespace: str

    @property
    def pod_name(self) -> str:
        return self.pod.metadata.name

    @property
    def node(self) -> str:
        return self.pod.spec.node_name or ""

    @property
    def container_name(self) -> str:
        return self.pod.spec.containers[0].name

    @property
    def command(self) -> List[str]:
        """第一个容器的完整命令行（command + args）"""
        container = self.pod.spec.containers[0]
        return list(container.command or []) + list(container.args or [])

    def __str__(self) -> str:
        return f"{self.cert_type}/{self.namespace}/{self.pod_name}"


@dataclass
class RawCommandOutput:
    """远程命令的标准输出和标准错误"""
    stdout: str
    stderr: str = ""


@dataclass
class RunOptions:
    """单次运行的配置"""
    check_kubelet: bool = False
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    agent_namespace: str = "default"
    control_plane_namespace: str = "kube-system"
    agent_image: str = "leoh0/krawler"
    workers: int = 10
    deploy_timeout: float = 300.0
    exec_timeout: float = 60.0
    require_control_plane: bool = False
    log_level: str = "INFO"


@dataclass
class ExecutionSummary:
    """执行统计"""
    total_targets: int
    successful_results: int
    warned_results: int
    duration_seconds: float
    errors: List[str] = field(default_factory=list)
