"""
采集代理 DaemonSet 生命周期管理
"""
import time
from typing import Optional
import logging

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..models import DeploymentState
from .error_handler import CLUSTER_API_ERRORS, DeploymentError, describe_api_error, poll_until
from .target_discovery import AGENT_NAME


# (卷名, 宿主机路径, 容器内挂载路径, hostPath 类型)
HOST_MOUNTS = [
    ("etc-kubernetes", "/etc/kubernetes/", "/etc/kubernetes/", "Directory"),
    ("var-lib-kubelet", "/var/lib/kubelet/", "/var/lib/kubelet/", "Directory"),
    ("hostname", "/etc/hostname", "/etc/hostname", "File"),
    ("tmp-proc", "/proc/", "/tmp/proc/", "Directory"),
]


class AgentLifecycleManager:
    """创建、等待就绪并删除每节点一个的采集代理"""

    def __init__(self, apps_api: client.AppsV1Api, namespace: str = "default",
                 image: str = "leoh0/krawler", timeout: Optional[float] = 300.0,
                 poll_interval: float = 0.5, grace_period: float = 1.0):
        """
        初始化生命周期管理器

        Args:
            apps_api: AppsV1Api 客户端
            namespace: 部署代理的命名空间
            image: 代理镜像
            timeout: 每个轮询阶段的截止时间（秒），None 表示不限
            poll_interval: 轮询间隔（秒）
            grace_period: 全部就绪后额外等待的时间（秒）
        """
        self.apps_api = apps_api
        self.namespace = namespace
        self.image = image
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.grace_period = grace_period
        self.state = DeploymentState.ABSENT
        self.desired = 0
        self.logger = logging.getLogger(__name__)

    def build_daemon_set(self) -> client.V1DaemonSet:
        """构建代理 DaemonSet 定义"""
        labels = {"app": AGENT_NAME}

        volumes = [
            client.V1Volume(
                name=name,
                host_path=client.V1HostPathVolumeSource(path=host_path, type=path_type),
            )
            for name, host_path, _, path_type in HOST_MOUNTS
        ]
        mounts = [
            client.V1VolumeMount(name=name, mount_path=mount_path, read_only=True)
            for name, _, mount_path, _ in HOST_MOUNTS
        ]

        container = client.V1Container(
            name=AGENT_NAME,
            image=self.image,
            image_pull_policy="Always",
            command=["sleep", "infinity"],
            env=[
                client.V1EnvVar(
                    name="NODENAME",
                    value_from=client.V1EnvVarSource(
                        field_ref=client.V1ObjectFieldSelector(field_path="spec.nodeName")
                    ),
                )
            ],
            volume_mounts=mounts,
        )

        return client.V1DaemonSet(
            api_version="apps/v1",
            kind="DaemonSet",
            metadata=client.V1ObjectMeta(name=AGENT_NAME, labels=labels),
            spec=client.V1DaemonSetSpec(
                selector=client.V1LabelSelector(match_labels=labels),
                update_strategy=client.V1DaemonSetUpdateStrategy(
                    type="RollingUpdate",
                    rolling_update=client.V1RollingUpdateDaemonSet(max_unavailable="100%"),
                ),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(
                        host_pid=True,
                        host_network=True,
                        restart_policy="Always",
                        tolerations=[client.V1Toleration(operator="Exists")],
                        containers=[container],
                        volumes=volumes,
                    ),
                ),
            ),
        )

    def deploy(self):
        """
        创建代理 DaemonSet

        Raises:
            DeploymentError: 创建失败，或已存在同名 DaemonSet
        """
        self.state = DeploymentState.CREATING
        self.logger.info(f"在命名空间 {self.namespace} 中创建采集代理 {AGENT_NAME}")

        try:
            self.apps_api.create_namespaced_daemon_set(self.namespace, self.build_daemon_set())
        except CLUSTER_API_ERRORS as e:
            self.state = DeploymentState.ABSENT
            if isinstance(e, ApiException) and e.status == 409:
                raise DeploymentError(
                    f"采集代理 {self.namespace}/{AGENT_NAME} 已存在，可能有其他检查正在运行"
                ) from e
            raise DeploymentError(f"创建采集代理失败: {describe_api_error(e)}") from e

        self.state = DeploymentState.WAITING_READY

    def _read_status(self) -> client.V1DaemonSetStatus:
        try:
            daemon_set = self.apps_api.read_namespaced_daemon_set(AGENT_NAME, self.namespace)
        except CLUSTER_API_ERRORS as e:
            raise DeploymentError(f"读取采集代理状态失败: {describe_api_error(e)}") from e
        return daemon_set.status

    def wait_until_scheduled(self) -> int:
        """
        等待 DaemonSet 报告非零的期望副本数

        Returns:
            int: 期望调度的节点数

        Raises:
            DeploymentTimeout: 超过截止时间
        """
        def scheduled():
            status = self._read_status()
            return status.desired_number_scheduled if status and status.desired_number_scheduled else 0

        self.desired = poll_until(scheduled, self.poll_interval, self.timeout, "采集代理调度")
        self.logger.info(f"采集代理将运行在 {self.desired} 个节点上")
        return self.desired

    def wait_until_ready(self):
        """
        等待就绪副本数等于期望副本数且非零，再等待一个宽限期

        Raises:
            DeploymentTimeout: 超过截止时间
        """
        def ready():
            status = self._read_status()
            if status is None:
                return False
            desired = status.desired_number_scheduled or 0
            return desired > 0 and (status.number_available or 0) == desired

        poll_until(ready, self.poll_interval, self.timeout, "采集代理就绪")
        time.sleep(self.grace_period)

        self.state = DeploymentState.READY
        self.logger.info("采集代理已全部就绪")

    def teardown(self):
        """删除代理 DaemonSet，失败只记录日志"""
        if self.state == DeploymentState.ABSENT:
            return

        self.state = DeploymentState.TEARING_DOWN
        try:
            self.apps_api.delete_namespaced_daemon_set(
                AGENT_NAME,
                self.namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
            )
            self.logger.info(f"已删除采集代理 {self.namespace}/{AGENT_NAME}")
        except Exception as e:
            # 删除失败不能影响已采集的报告
            self.logger.error(f"删除采集代理失败，请手动删除 {self.namespace}/{AGENT_NAME}: {describe_api_error(e)}")

        self.state = DeploymentState.ABSENT

    def __enter__(self) -> 'AgentLifecycleManager':
        self.deploy()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.teardown()
        return False
