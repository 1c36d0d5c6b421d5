"""
配置验证服务
"""
import os
import re
from typing import Dict, List, Any, Optional
import logging

from ..models import RunOptions
from .error_handler import ConfigurationError


# 环境变量及其对应的 RunOptions 字段
ENV_OVERRIDES = {
    'KCM_WORKERS': ('workers', int),
    'KCM_DEPLOY_TIMEOUT': ('deploy_timeout', float),
    'KCM_EXEC_TIMEOUT': ('exec_timeout', float),
    'KCM_AGENT_IMAGE': ('agent_image', str),
    'KCM_AGENT_NAMESPACE': ('agent_namespace', str),
    'LOG_LEVEL': ('log_level', str),
}

VALID_LOG_LEVELS = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}

NAMESPACE_PATTERN = re.compile(r'^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$')
IMAGE_PATTERN = re.compile(
    r'^(?:[a-zA-Z0-9.-]+(?::[0-9]+)?/)?[a-z0-9]+(?:[._/-][a-z0-9]+)*(?::[\w][\w.-]{0,127})?(?:@sha256:[a-f0-9]{64})?$'
)


def defaults_from_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    从环境变量读取默认配置

    Args:
        environ: 环境变量映射，默认为 os.environ

    Returns:
        Dict[str, Any]: RunOptions 字段到值的映射

    Raises:
        ConfigurationError: 环境变量值格式无效
    """
    environ = os.environ if environ is None else environ
    values = {}

    for var_name, (field_name, convert) in ENV_OVERRIDES.items():
        raw = environ.get(var_name)
        if not raw:
            continue
        try:
            values[field_name] = convert(raw)
        except ValueError as e:
            raise ConfigurationError(f"环境变量 {var_name} 格式无效: {raw}") from e

    return values


class ConfigValidator:
    """配置验证器"""

    def __init__(self):
        """初始化配置验证器"""
        self.logger = logging.getLogger(__name__)

    def validate(self, options: RunOptions) -> Dict[str, Any]:
        """
        验证运行配置

        Args:
            options: 运行配置

        Returns:
            Dict[str, Any]: 验证结果，包含 is_valid、errors 和 warnings
        """
        errors: List[str] = []
        warnings: List[str] = []

        if options.workers < 1:
            errors.append(f"并发数必须大于 0: {options.workers}")
        elif options.workers > 100:
            warnings.append(f"并发数较大: {options.workers}，可能给 API Server 带来压力")

        for name, value in (('deploy_timeout', options.deploy_timeout), ('exec_timeout', options.exec_timeout)):
            if value <= 0:
                errors.append(f"{name} 必须大于 0: {value}")

        for name, namespace in (('agent_namespace', options.agent_namespace),
                                ('control_plane_namespace', options.control_plane_namespace)):
            if not NAMESPACE_PATTERN.match(namespace or ''):
                errors.append(f"{name} 格式无效: {namespace}")

        if options.check_kubelet:
            if not IMAGE_PATTERN.match(options.agent_image or ''):
                errors.append(f"代理镜像格式无效: {options.agent_image}")
            elif ':' not in options.agent_image.rsplit('/', 1)[-1]:
                warnings.append(f"代理镜像未指定标签，将使用 latest: {options.agent_image}")

        if options.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"日志级别无效: {options.log_level}")

        if options.kubeconfig and not os.path.isfile(os.path.expanduser(options.kubeconfig)):
            errors.append(f"kubeconfig 文件不存在: {options.kubeconfig}")

        for warning in warnings:
            self.logger.warning(warning)

        return {
            'is_valid': not errors,
            'errors': errors,
            'warnings': warnings,
        }

    def ensure_valid(self, options: RunOptions):
        """
        验证运行配置，无效时抛出异常

        Raises:
            ConfigurationError: 配置无效
        """
        result = self.validate(options)
        if not result['is_valid']:
            raise ConfigurationError("; ".join(result['errors']))
