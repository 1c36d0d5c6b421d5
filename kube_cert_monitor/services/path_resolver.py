"""
kubelet 证书路径解析策略（在节点上的采集代理中运行）
"""
import posixpath
from dataclasses import dataclass
from typing import Dict, Any, Optional, Callable
import logging

import yaml

from .error_handler import ResolutionError
from .kubeconfig_loader import ClientCertificate, resolve_client_certificate


# 仅作为命令行参数
CONFIG_FLAG = "config"
CERT_DIR_FLAG = "cert-dir"

# 命令行参数及其在配置文件中的对应项
KUBECONFIG_FLAG = "kubeconfig"
ROTATE_CERT_FLAG = "rotate-certificates"
ROTATE_SERVER_CERT_FLAG = "rotate-server-certificates"
TLS_CERT_FLAG = "tls-cert-file"
TLS_KEY_FLAG = "tls-key-file"
FEATURE_GATES_FLAG = "feature-gates"

KUBECONFIG_OPTION = "kubeconfig"
ROTATE_CERT_OPTION = "rotateCertificates"
ROTATE_SERVER_CERT_OPTION = "serverTLSBootstrap"
TLS_CERT_OPTION = "tlsCertFile"
TLS_KEY_OPTION = "tlsKeyFile"
FEATURE_GATES_OPTION = "featureGates"

ROTATE_KUBELET_SERVER_CERT_FEATURE = "RotateKubeletServerCertificate"

DEFAULT_KUBELET_CERT_DIR = "/var/lib/kubelet/pki/"
DEFAULT_SERVER_CERT_PATH = posixpath.join(DEFAULT_KUBELET_CERT_DIR, "kubelet.crt")
ROTATED_SERVER_CERT_PATH = posixpath.join(DEFAULT_KUBELET_CERT_DIR, "kubelet-server-current.pem")

TRUE_STRINGS = {"1", "t", "T", "TRUE", "true", "True"}


def to_bool(value: Any) -> bool:
    """1、t、true 等视为 True，无法识别的值视为 False"""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if value is None:
        return False
    return str(value).strip() in TRUE_STRINGS


def parse_cmdline(raw: str) -> Dict[str, str]:
    """
    把进程命令行解析为参数映射

    /proc/<pid>/cmdline 以 NUL 分隔；没有 NUL 时按空白分隔。
    ``--flag=value`` 取第一个等号之后的全部内容，单独的 ``--flag`` 取 "true"。

    Args:
        raw: 原始命令行

    Returns:
        Dict[str, str]: 参数名到值的映射
    """
    if '\x00' in raw:
        tokens = raw.split('\x00')
    else:
        tokens = raw.split()

    flags = {}
    for token in tokens:
        token = token.strip('\n')
        if not token.startswith('--'):
            continue

        name, sep, value = token[2:].partition('=')
        flags[name] = value if sep else "true"

    return flags


def parse_feature_gates(value: str) -> Dict[str, str]:
    """解析 ``A=true,B=false`` 形式的 feature gate 列表"""
    gates = {}
    for item in (value or "").split(','):
        name, sep, gate_value = item.strip().partition('=')
        if name and sep:
            gates[name] = gate_value
    return gates


@dataclass
class ResolvedPaths:
    """解析结果"""
    server_cert_path: str
    server_rotation: bool
    client_rotation: bool
    kubeconfig_path: Optional[str]


class KubeletPathResolver:
    """根据 kubelet 的命令行参数和配置文件确定权威证书路径"""

    def __init__(self, flags: Dict[str, str], config: Optional[Dict[str, Any]] = None):
        """
        Args:
            flags: kubelet 命令行参数映射
            config: --config 指向的 KubeletConfiguration 内容
        """
        self.flags = flags
        self.config = config or {}
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_cmdline(cls, cmdline: str, read_file: Callable[[str], str]) -> 'KubeletPathResolver':
        """
        从原始命令行构建，存在 --config 时读取并解析配置文件

        Raises:
            ResolutionError: 配置文件无法解析
        """
        flags = parse_cmdline(cmdline)
        config = {}

        config_path = flags.get(CONFIG_FLAG)
        if config_path:
            try:
                config = yaml.safe_load(read_file(config_path)) or {}
            except yaml.YAMLError as e:
                raise ResolutionError(f"kubelet 配置文件解析失败 {config_path}: {str(e)}") from e

            if not isinstance(config, dict):
                raise ResolutionError(f"kubelet 配置文件不是有效的映射: {config_path}")

        return cls(flags, config)

    def _lookup(self, flag: str, option: Optional[str] = None) -> Optional[Any]:
        """命令行参数优先，其次是配置文件"""
        if flag in self.flags:
            return self.flags[flag]
        if option is not None and option in self.config:
            return self.config[option]
        return None

    def feature_gate(self, name: str) -> bool:
        flag_gates = parse_feature_gates(self.flags.get(FEATURE_GATES_FLAG, ""))
        if name in flag_gates:
            return to_bool(flag_gates[name])

        config_gates = self.config.get(FEATURE_GATES_OPTION)
        if isinstance(config_gates, dict) and name in config_gates:
            return to_bool(config_gates[name])

        return False

    def server_rotation_enabled(self) -> bool:
        """旧参数和 feature gate 必须同时开启"""
        legacy = to_bool(self._lookup(ROTATE_SERVER_CERT_FLAG, ROTATE_SERVER_CERT_OPTION))
        return legacy and self.feature_gate(ROTATE_KUBELET_SERVER_CERT_FEATURE)

    def client_rotation_enabled(self) -> bool:
        return to_bool(self._lookup(ROTATE_CERT_FLAG, ROTATE_CERT_OPTION))

    def server_cert_path(self) -> str:
        """
        解析服务端证书路径

        Returns:
            str: 证书文件路径
        """
        cert_file = self._lookup(TLS_CERT_FLAG, TLS_CERT_OPTION)
        key_file = self._lookup(TLS_KEY_FLAG, TLS_KEY_OPTION)

        if cert_file and key_file:
            return str(cert_file)

        if self.server_rotation_enabled():
            return ROTATED_SERVER_CERT_PATH

        cert_dir = self.flags.get(CERT_DIR_FLAG)
        if cert_dir:
            return posixpath.join(cert_dir, "kubelet.crt")

        return DEFAULT_SERVER_CERT_PATH

    def kubeconfig_path(self) -> Optional[str]:
        value = self._lookup(KUBECONFIG_FLAG, KUBECONFIG_OPTION)
        return str(value) if value else None

    def client_certificate(self, read_file: Callable[[str], str]) -> ClientCertificate:
        """
        从 kubeconfig 解析客户端证书

        Raises:
            ResolutionError: 没有 kubeconfig 或其中找不到证书
        """
        kubeconfig_path = self.kubeconfig_path()
        if not kubeconfig_path:
            raise ResolutionError("kubelet 未指定 --kubeconfig，无法确定客户端证书")

        return resolve_client_certificate(read_file(kubeconfig_path), kubeconfig_path, read_file)

    def resolve(self) -> ResolvedPaths:
        resolved = ResolvedPaths(
            server_cert_path=self.server_cert_path(),
            server_rotation=self.server_rotation_enabled(),
            client_rotation=self.client_rotation_enabled(),
            kubeconfig_path=self.kubeconfig_path(),
        )
        self.logger.debug(f"kubelet 证书路径解析结果: {resolved}")
        return resolved
