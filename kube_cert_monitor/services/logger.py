"""
日志服务
"""
import os
import logging
import traceback
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from ..interfaces import LoggerServiceInterface
from ..models import CollectionResult, ExecutionSummary


class LoggerService(LoggerServiceInterface):
    """日志服务实现"""

    def __init__(self, logger_name: str = "kube_cert_monitor", log_level: Optional[str] = None):
        """
        初始化日志服务

        Args:
            logger_name: 日志器名称，各模块的日志器都是它的子日志器
            log_level: 日志级别，如果为None则从环境变量读取
        """
        self.logger_name = logger_name
        self.log_level = log_level or os.getenv('LOG_LEVEL', 'INFO')

        # 配置日志器
        self.logger = logging.getLogger(logger_name)
        self._configure_logger()

        self.reset_stats()

    def _configure_logger(self):
        """配置日志器"""
        level = getattr(logging, self.log_level.upper(), logging.INFO)
        self.logger.setLevel(level)

        # 避免重复添加处理器
        if not self.logger.handlers:
            # 报告输出到标准输出，日志输出到标准错误
            handler = logging.StreamHandler()
            handler.setLevel(level)

            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            handler.setFormatter(formatter)

            self.logger.addHandler(handler)

        # 防止日志传播到根日志器
        self.logger.propagate = False

    def log_run_start(self, check_kubelet: bool):
        """
        记录采集开始

        Args:
            check_kubelet: 是否同时检查 kubelet
        """
        self.execution_stats['start_time'] = datetime.now(timezone.utc)

        scope = "控制平面和 kubelet" if check_kubelet else "控制平面"
        self.logger.info(f"开始证书过期检查，范围: {scope}")

    def log_collection_result(self, result: CollectionResult):
        """
        记录单个采集结果

        Args:
            result: 采集结果
        """
        entry = result.entry
        label = f"{entry.type}/{entry.node}/{entry.name}"

        if not result.is_success:
            self.execution_stats['warned_results'] += 1
            self.execution_stats['errors'].append(f"{label}: {result.warning}")
            self.logger.warning(f"证书检查失败 - {label}, 路径: {entry.path}, 错误: {result.warning}")
            return

        self.execution_stats['successful_results'] += 1

        if entry.days < 0:
            self.logger.warning(
                f"证书已过期 - {label}, 过期时间: {entry.due.isoformat()}, "
                f"已过期: {abs(entry.days)} 天, 路径: {entry.path}"
            )
        else:
            self.logger.info(
                f"证书正常 - {label}, 过期时间: {entry.due.isoformat()}, "
                f"剩余天数: {entry.days} 天, 路径: {entry.path}"
            )

    def log_error(self, target: str, error: Exception):
        """
        记录错误信息

        Args:
            target: 检查目标或运行阶段
            error: 异常对象
        """
        self.execution_stats['errors'].append(f"{target}: {type(error).__name__}: {str(error)}")

        self.logger.error(f"{target} 发生错误: {type(error).__name__}: {str(error)}")
        self.logger.debug(f"{target} 错误堆栈跟踪:\n{traceback.format_exc()}")

    def log_run_end(self, target_count: int):
        """
        记录采集结束

        Args:
            target_count: 实际检查的目标数量
        """
        self.execution_stats['end_time'] = datetime.now(timezone.utc)
        self.execution_stats['total_targets'] = target_count
        self.logger.info(f"证书过期检查完成，共 {target_count} 个目标，用时 {self._duration():.2f} 秒")

    def log_configuration_info(self, options: Dict[str, Any]):
        """
        以单行形式记录运行配置，未设置的项不输出

        Args:
            options: 运行配置字典
        """
        shown = ", ".join(f"{key}={value}" for key, value in options.items() if value not in (None, ""))
        self.logger.info(f"运行配置: {shown}")

    def _duration(self) -> float:
        start, end = self.execution_stats['start_time'], self.execution_stats['end_time']
        if start and end:
            return (end - start).total_seconds()
        return 0.0

    def get_execution_summary(self) -> ExecutionSummary:
        """
        获取执行摘要

        Returns:
            ExecutionSummary: 执行摘要信息
        """
        return ExecutionSummary(
            total_targets=self.execution_stats['total_targets'],
            successful_results=self.execution_stats['successful_results'],
            warned_results=self.execution_stats['warned_results'],
            duration_seconds=self._duration(),
            errors=list(self.execution_stats['errors']),
        )

    def log_execution_summary(self):
        """记录执行摘要，错误明细最多输出前 5 条"""
        summary = self.get_execution_summary()

        self.logger.info(
            f"执行摘要: 目标 {summary.total_targets} 个, 正常 {summary.successful_results} 行, "
            f"警告 {summary.warned_results} 行, 用时 {summary.duration_seconds:.2f} 秒"
        )

        for error in summary.errors[:5]:
            self.logger.warning(f"  {error}")
        if len(summary.errors) > 5:
            self.logger.warning(f"  ... 还有 {len(summary.errors) - 5} 个错误")

    def reset_stats(self):
        """重置执行统计"""
        self.execution_stats = {
            'start_time': None,
            'end_time': None,
            'total_targets': 0,
            'successful_results': 0,
            'warned_results': 0,
            'errors': []
        }
