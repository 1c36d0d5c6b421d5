"""
kubeconfig 客户端证书加载
"""
import base64
import binascii
import posixpath
from dataclasses import dataclass
from typing import Callable, Dict, Any, Optional

import yaml

from .error_handler import ResolutionError


@dataclass
class ClientCertificate:
    """客户端证书内容及其来源路径"""
    pem: str
    path: str


def load_kubeconfig(text: str) -> Dict[str, Any]:
    """
    解析 kubeconfig 文本

    Raises:
        ResolutionError: YAML 无效或不是映射
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ResolutionError(f"kubeconfig 解析失败: {str(e)}") from e

    if not isinstance(data, dict):
        raise ResolutionError("kubeconfig 内容不是有效的映射")

    return data


def _find_named(items, name: Optional[str], kind: str) -> Dict[str, Any]:
    for item in items or []:
        if isinstance(item, dict) and item.get('name') == name:
            return item.get(kind) or {}
    raise ResolutionError(f"kubeconfig 中找不到 {kind}: {name}")


def resolve_client_certificate(kubeconfig_text: str, kubeconfig_path: str,
                               read_file: Callable[[str], str]) -> ClientCertificate:
    """
    根据 current-context 找到用户并取出客户端证书

    内嵌的 client-certificate-data 优先，其次读取 client-certificate 指向的文件。

    Args:
        kubeconfig_text: kubeconfig 内容
        kubeconfig_path: kubeconfig 所在路径
        read_file: 读取证书文件的函数（本地读取或远程 cat）

    Returns:
        ClientCertificate: 证书内容和报告用路径

    Raises:
        ResolutionError: 无法确定客户端证书
    """
    config = load_kubeconfig(kubeconfig_text)

    current_context = config.get('current-context')
    if not current_context:
        raise ResolutionError(f"kubeconfig 未设置 current-context: {kubeconfig_path}")

    context = _find_named(config.get('contexts'), current_context, 'context')
    user = _find_named(config.get('users'), context.get('user'), 'user')

    cert_data = user.get('client-certificate-data')
    if cert_data:
        try:
            pem = base64.b64decode(''.join(str(cert_data).split()), validate=True).decode('utf-8')
        except (binascii.Error, ValueError) as e:
            raise ResolutionError(f"client-certificate-data 解码失败: {str(e)}") from e
        return ClientCertificate(pem=pem, path=kubeconfig_path)

    cert_file = (user.get('client-certificate') or '').strip('\n')
    if cert_file:
        if not posixpath.isabs(cert_file):
            cert_file = posixpath.join(posixpath.dirname(kubeconfig_path), cert_file)
        return ClientCertificate(pem=read_file(cert_file), path=cert_file)

    raise ResolutionError(f"kubeconfig 用户 {context.get('user')} 未配置客户端证书: {kubeconfig_path}")
