"""
证书采集调度服务

每个检查目标由线程池中的一个任务处理，所有结果汇入同一个队列，
由 collect() 在全部任务完成后统一返回。
"""
import json
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterator, List, Optional, Tuple
import logging

from ..interfaces import CertificateParserInterface, CommandExecutorInterface, TargetDiscoveryInterface
from ..models import (
    CertificateEntry,
    CertType,
    CollectionResult,
    RunOptions,
    Target,
    TargetKind,
    WorkerState,
)
from .agent_lifecycle import AgentLifecycleManager
from .cert_parser import CertificateParser
from .error_handler import AggregationError, ExecError, ParseError, ResolutionError, RetryHandler
from .kubeconfig_loader import resolve_client_certificate


APISERVER_CERT_FLAGS = ["etcd-certfile", "tls-cert-file", "kubelet-client-certificate", "proxy-client-cert-file"]
KUBELET_CA_FLAG = "kubelet-certificate-authority"
KUBECONFIG_FLAG = "kubeconfig"

AGENT_COMMAND = ["krawler"]
AGENT_ERROR_NAME = "Error"
CLIENT_CERT_NAME = "client-cert"

# 等待代理 Pod 进入 Running 的次数和间隔
POD_RUNNING_CHECKS = 10
POD_RUNNING_INTERVAL = 0.5

_CLOSED = object()


def command_flags(command: List[str]) -> Iterator[Tuple[str, str]]:
    """遍历命令行中的 ``--flag=value`` 参数"""
    for arg in command:
        if arg.startswith('--'):
            name, _, value = arg[2:].partition('=')
            yield name, value


def parse_agent_output(text: str) -> Optional[List[CertificateEntry]]:
    """
    解析采集代理输出的 JSON

    Args:
        text: 代理的标准输出

    Returns:
        Optional[List[CertificateEntry]]: 证书条目列表；输出不是合法报告时返回 None
    """
    try:
        document = json.loads(text)
        raw_entries = document['entry']
        if not isinstance(raw_entries, list):
            return None
        return [CertificateEntry.from_dict(item) for item in raw_entries]
    except (ValueError, KeyError, TypeError):
        return None


class RunContext:
    """单次运行共享的状态"""

    def __init__(self, options: RunOptions, progress_callback: Optional[Callable[[int, int], None]] = None):
        """
        Args:
            options: 运行配置
            progress_callback: 进度变化时调用，参数为 (已完成数, 总数)
        """
        self.options = options
        self.progress_callback = progress_callback

        self._ca_lock = threading.Lock()
        self._kubelet_ca_seen = False

        self._progress_lock = threading.Lock()
        self.completed = 0
        self.total = 0
        self.worker_states: Dict[str, WorkerState] = {}

    @property
    def kubelet_ca_seen(self) -> bool:
        with self._ca_lock:
            return self._kubelet_ca_seen

    def mark_kubelet_ca_seen(self):
        with self._ca_lock:
            self._kubelet_ca_seen = True

    def add_total(self, count: int):
        with self._progress_lock:
            self.total += count
            self._notify()

    def advance(self):
        with self._progress_lock:
            self.completed += 1
            self._notify()

    def set_worker_state(self, target: Target, state: WorkerState):
        with self._progress_lock:
            self.worker_states[str(target)] = state

    def _notify(self):
        if self.progress_callback is not None:
            self.progress_callback(self.completed, self.total)


class CertificateCollector:
    """证书采集调度器"""

    def __init__(self, run_context: RunContext, executor: CommandExecutorInterface,
                 discovery: TargetDiscoveryInterface,
                 lifecycle: Optional[AgentLifecycleManager] = None,
                 parser: Optional[CertificateParserInterface] = None,
                 retry_handler: Optional[RetryHandler] = None):
        """
        初始化采集调度器

        Args:
            run_context: 运行上下文
            executor: 远程命令执行器
            discovery: 检查目标发现服务
            lifecycle: 采集代理生命周期管理器，None 表示不检查 kubelet
            parser: 证书解析器
            retry_handler: 代理命令的重试处理器，默认最多 5 次、间隔 0.5 秒
        """
        self.run_context = run_context
        self.executor = executor
        self.discovery = discovery
        self.lifecycle = lifecycle
        self.parser = parser or CertificateParser()
        self.retry_handler = retry_handler or RetryHandler(max_attempts=5, delay=0.5)
        self.logger = logging.getLogger(__name__)

    def collect(self) -> List[CollectionResult]:
        """
        采集全部证书信息

        Returns:
            List[CollectionResult]: 未排序的采集结果

        Raises:
            DeploymentError: 采集代理无法就绪或无法列出
            AggregationError: 结果队列中出现未知类型
        """
        results_queue: queue.Queue = queue.Queue()
        control_plane = self.discovery.control_plane_targets()
        self.run_context.add_total(len(control_plane))

        with ThreadPoolExecutor(max_workers=self.run_context.options.workers,
                                thread_name_prefix="collector") as pool:
            futures = [pool.submit(self._run_worker, target, results_queue) for target in control_plane]

            if self.lifecycle is not None:
                self.lifecycle.wait_until_scheduled()
                self.lifecycle.wait_until_ready()

                agents = self.discovery.agent_targets()
                self.run_context.add_total(len(agents))
                futures.extend(pool.submit(self._run_worker, target, results_queue) for target in agents)

            closer = threading.Thread(
                target=self._close_when_done, args=(futures, results_queue), daemon=True
            )
            closer.start()

            return self._drain(results_queue)

    def _close_when_done(self, futures, results_queue: queue.Queue):
        wait(futures)
        results_queue.put(_CLOSED)

    def _drain(self, results_queue: queue.Queue) -> List[CollectionResult]:
        results = []
        while True:
            item = results_queue.get()
            if item is _CLOSED:
                return results
            if not isinstance(item, CollectionResult):
                raise AggregationError(f"未知的结果类型 {type(item).__name__}: {item!r}")
            results.append(item)

    def _run_worker(self, target: Target, results_queue: queue.Queue):
        emitted: List[CollectionResult] = []

        def emit(result: CollectionResult):
            emitted.append(result)
            results_queue.put(result)

        self.run_context.set_worker_state(target, WorkerState.DISPATCHED)
        try:
            self.run_context.set_worker_state(target, WorkerState.EXECUTING)

            if target.kind is TargetKind.AGENT:
                self._inspect_agent(target, emit)
            elif target.cert_type == CertType.APISERVER:
                self._inspect_apiserver(target, emit)
            else:
                self._inspect_kubeconfig_client(target, emit)

            if not emitted:
                emit(CollectionResult.failure(
                    target.cert_type, target.node, AGENT_ERROR_NAME, "-",
                    f"{target.pod_name} 中没有找到证书"
                ))

            state = WorkerState.SUCCEEDED if all(r.is_success for r in emitted) else WorkerState.WARNED
            self.run_context.set_worker_state(target, state)

        except Exception as e:
            # 任何目标都必须产生一行结果
            self.logger.error(f"检查 {target} 时发生错误: {type(e).__name__}: {str(e)}")
            if not emitted:
                emit(CollectionResult.failure(target.cert_type, target.node, AGENT_ERROR_NAME, "-", str(e)))
            self.run_context.set_worker_state(target, WorkerState.FAILED)

        finally:
            self.run_context.advance()

    def _cat(self, target: Target, path: str) -> str:
        return self.executor.execute(target.pod, target.namespace, ["cat", path]).stdout

    def _inspect_apiserver(self, target: Target, emit):
        for name, value in command_flags(target.command):
            if name == KUBELET_CA_FLAG and value:
                self.run_context.mark_kubelet_ca_seen()

            if name in APISERVER_CERT_FLAGS:
                emit(self._inspect_file(target, name, value))

    def _inspect_file(self, target: Target, name: str, path: str) -> CollectionResult:
        try:
            expiry_date, days = self.parser.parse(self._cat(target, path))
        except (ExecError, ParseError) as e:
            self.logger.warning(f"{target} 的 {name} 检查失败: {str(e)}")
            return CollectionResult.failure(target.cert_type, target.node, name, path, str(e))

        return CollectionResult(entry=CertificateEntry(
            type=target.cert_type,
            node=target.node,
            name=name,
            path=path,
            days=days,
            due=expiry_date,
        ))

    def _inspect_kubeconfig_client(self, target: Target, emit):
        for name, kubeconfig_path in command_flags(target.command):
            if name != KUBECONFIG_FLAG:
                continue

            try:
                certificate = resolve_client_certificate(
                    self._cat(target, kubeconfig_path),
                    kubeconfig_path,
                    lambda path: self._cat(target, path),
                )
                expiry_date, days = self.parser.parse(certificate.pem)
            except (ExecError, ResolutionError, ParseError) as e:
                self.logger.warning(f"{target} 的客户端证书检查失败: {str(e)}")
                emit(CollectionResult.failure(target.cert_type, target.node, CLIENT_CERT_NAME, "-", str(e)))
                return

            emit(CollectionResult(entry=CertificateEntry(
                type=target.cert_type,
                node=target.node,
                name=CLIENT_CERT_NAME,
                path=certificate.path,
                days=days,
                due=expiry_date,
            )))
            return

    def _wait_for_running(self, target: Target):
        for _ in range(POD_RUNNING_CHECKS):
            if self.discovery.pod_phase(target) == "Running":
                return
            time.sleep(POD_RUNNING_INTERVAL)

        self.logger.warning(f"{target} 尚未进入 Running 状态，继续尝试执行")

    def _inspect_agent(self, target: Target, emit):
        self._wait_for_running(target)

        try:
            output = self.retry_handler.with_retry(
                self.executor.execute, target.pod, target.namespace, AGENT_COMMAND
            )
        except ExecError as e:
            emit(CollectionResult.failure(CertType.KUBELET, target.node, AGENT_ERROR_NAME, "", str(e)))
            return

        entries = parse_agent_output(output.stdout)
        if entries is None:
            emit(CollectionResult.failure(
                CertType.KUBELET, target.node, AGENT_ERROR_NAME, "", output.stdout.strip()
            ))
            return

        for entry in entries:
            emit(CollectionResult(entry=entry))
