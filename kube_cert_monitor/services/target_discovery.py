"""
检查目标发现服务
"""
from typing import List, Dict, Optional
import logging

from kubernetes import client

from ..interfaces import TargetDiscoveryInterface
from ..models import CertType, Target, TargetKind
from .error_handler import CLUSTER_API_ERRORS, DiscoveryError, DeploymentError, describe_api_error


CONTROL_PLANE_SELECTORS: Dict[str, str] = {
    CertType.APISERVER: "component=kube-apiserver,tier=control-plane",
    CertType.CONTROLLER_MANAGER: "component=kube-controller-manager,tier=control-plane",
    CertType.SCHEDULER: "component=kube-scheduler,tier=control-plane",
}

AGENT_NAME = "krawler"
AGENT_SELECTOR = f"app={AGENT_NAME}"


class TargetDiscovery(TargetDiscoveryInterface):
    """通过标签选择器列出要检查的 Pod"""

    def __init__(self, core_api: client.CoreV1Api, control_plane_namespace: str = "kube-system",
                 agent_namespace: str = "default", require_control_plane: bool = False):
        """
        初始化目标发现服务

        Args:
            core_api: CoreV1Api 客户端
            control_plane_namespace: 控制平面组件所在命名空间
            agent_namespace: 采集代理所在命名空间
            require_control_plane: 控制平面组件缺失时是否视为致命错误
        """
        self.core_api = core_api
        self.control_plane_namespace = control_plane_namespace
        self.agent_namespace = agent_namespace
        self.require_control_plane = require_control_plane
        self.logger = logging.getLogger(__name__)

    def list_pods(self, namespace: str, label_selector: str) -> list:
        """按标签选择器列出 Pod"""
        pods = self.core_api.list_namespaced_pod(namespace, label_selector=label_selector)
        return list(pods.items or [])

    def control_plane_targets(self) -> List[Target]:
        """
        列出 apiserver、controller-manager 和 scheduler 的 Pod

        Returns:
            List[Target]: 控制平面检查目标

        Raises:
            DiscoveryError: require_control_plane 开启且某个组件无法列出
        """
        targets = []

        for cert_type, selector in CONTROL_PLANE_SELECTORS.items():
            try:
                pods = self.list_pods(self.control_plane_namespace, selector)
            except CLUSTER_API_ERRORS as e:
                if self.require_control_plane:
                    raise DiscoveryError(f"无法列出 {cert_type} Pod: {describe_api_error(e)}") from e
                self.logger.warning(f"列出 {cert_type} Pod 失败，跳过: {describe_api_error(e)}")
                continue

            if not pods:
                if self.require_control_plane:
                    raise DiscoveryError(f"{cert_type} 不存在")
                self.logger.info(f"{cert_type} 不存在，跳过")
                continue

            for pod in pods:
                targets.append(Target(
                    kind=TargetKind.CONTROL_PLANE,
                    cert_type=cert_type,
                    pod=pod,
                    namespace=self.control_plane_namespace,
                ))

        self.logger.info(f"发现 {len(targets)} 个控制平面检查目标")
        return targets

    def agent_targets(self) -> List[Target]:
        """
        列出采集代理 Pod

        Raises:
            DeploymentError: 无法列出代理 Pod
        """
        try:
            pods = self.list_pods(self.agent_namespace, AGENT_SELECTOR)
        except CLUSTER_API_ERRORS as e:
            raise DeploymentError(f"无法列出采集代理 Pod: {describe_api_error(e)}") from e

        targets = [
            Target(kind=TargetKind.AGENT, cert_type=CertType.KUBELET, pod=pod, namespace=self.agent_namespace)
            for pod in pods
        ]

        self.logger.info(f"发现 {len(targets)} 个采集代理")
        return targets

    def pod_phase(self, target: Target) -> Optional[str]:
        """读取目标 Pod 的当前阶段，读取失败时返回 None"""
        try:
            pod = self.core_api.read_namespaced_pod(target.pod_name, target.namespace)
        except CLUSTER_API_ERRORS as e:
            self.logger.debug(f"读取 {target} 状态失败: {describe_api_error(e)}")
            return None

        return pod.status.phase if pod.status else None
