"""
命令行入口点
"""
import argparse
import sys
from dataclasses import asdict
from typing import List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn

from .models import CollectionResult, RunOptions
from .services.agent_lifecycle import AgentLifecycleManager
from .services.collector import CertificateCollector, RunContext
from .services.config_validator import ConfigValidator, defaults_from_env
from .services.error_handler import CertificateMonitorError
from .services.logger import LoggerService
from .services.pod_executor import PodCommandExecutor
from .services.report import build_report, render_table
from .services.target_discovery import TargetDiscovery


EXAMPLES = """
examples:
  # view expiration days of certifications about control plane (e.g. apiserver, controller-manager, scheduler)
  kubectl check-cert

  # view expiration days of certifications about control plane and also kubelets by installing crawling daemon-set
  kubectl check-cert --also-check-kubelet
"""

OVERRIDABLE_OPTIONS = ('agent_namespace', 'agent_image', 'workers', 'deploy_timeout', 'exec_timeout', 'log_level')


def build_api_client(kubeconfig: Optional[str] = None, context: Optional[str] = None) -> client.ApiClient:
    """
    构建集群客户端，没有 kubeconfig 时尝试集群内配置

    Raises:
        ConfigException: 两种方式都无法加载配置
    """
    try:
        return config.new_client_from_config(config_file=kubeconfig, context=context)
    except ConfigException:
        if kubeconfig or context:
            raise

    configuration = client.Configuration()
    config.load_incluster_config(client_configuration=configuration)
    return client.ApiClient(configuration)


class CertificateExpirationChecker:
    """证书过期检查主类"""

    def __init__(self, options: RunOptions, api_client: Optional[client.ApiClient] = None,
                 console: Optional[Console] = None):
        """
        初始化检查器

        Args:
            options: 运行配置
            api_client: 集群客户端，None 时根据配置构建
            console: 报告输出目标
        """
        self.options = options
        self.logger_service = LoggerService(log_level=options.log_level)
        self.console = console or Console()

        self.api_client = api_client or build_api_client(options.kubeconfig, options.context)
        core_api = client.CoreV1Api(self.api_client)

        self.executor = PodCommandExecutor(core_api, timeout=options.exec_timeout)
        self.discovery = TargetDiscovery(
            core_api,
            control_plane_namespace=options.control_plane_namespace,
            agent_namespace=options.agent_namespace,
            require_control_plane=options.require_control_plane,
        )
        self.lifecycle = None
        if options.check_kubelet:
            self.lifecycle = AgentLifecycleManager(
                client.AppsV1Api(self.api_client),
                namespace=options.agent_namespace,
                image=options.agent_image,
                timeout=options.deploy_timeout,
            )

        self.logger_service.log_configuration_info(asdict(options))

    def run(self) -> List[CollectionResult]:
        """
        执行检查并输出报告

        Returns:
            List[CollectionResult]: 排序后的报告行

        Raises:
            CertificateMonitorError: 致命错误
        """
        self.logger_service.log_run_start(self.options.check_kubelet)

        progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(bar_width=80),
            MofNCompleteColumn(),
            console=Console(stderr=True),
            transient=True,
        )

        if self.lifecycle is not None:
            self.lifecycle.deploy()

        # 先输出报告再删除采集代理，删除失败不影响报告
        try:
            with progress:
                task = progress.add_task("Checking certificates", total=None)

                def on_progress(completed: int, total: int):
                    progress.update(task, completed=completed, total=total)

                run_context = RunContext(self.options, progress_callback=on_progress)
                collector = CertificateCollector(run_context, self.executor, self.discovery, self.lifecycle)
                results = collector.collect()

            for result in results:
                self.logger_service.log_collection_result(result)
            self.logger_service.log_run_end(len(run_context.worker_states))

            report = build_report(results, run_context.kubelet_ca_seen)
            render_table(report, self.console)
        finally:
            if self.lifecycle is not None:
                self.lifecycle.teardown()

        self.logger_service.log_execution_summary()
        return report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kube-cert-monitor",
        description="View expiration days of certifications in kubernetes cluster",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    check = subparsers.add_parser(
        "check-cert",
        help="View expiration days of certifications in kubernetes cluster",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    check.add_argument("--also-check-kubelet", dest="check_kubelet", action="store_true",
                       help="if true, also check kubelet certification")
    check.add_argument("--kubeconfig", help="Path to the kubeconfig file to use for CLI requests")
    check.add_argument("--context", help="The name of the kubeconfig context to use")
    check.add_argument("-n", "--namespace", dest="agent_namespace",
                       help="Namespace for the kubelet collection agent")
    check.add_argument("--agent-image", help="Image of the kubelet collection agent")
    check.add_argument("--workers", type=int, help="Maximum number of concurrent collection workers")
    check.add_argument("--deploy-timeout", type=float,
                       help="Seconds to wait for each phase of the agent rollout")
    check.add_argument("--exec-timeout", type=float, help="Seconds to wait for a single remote command")
    check.add_argument("--require-control-plane", action="store_true",
                       help="fail when a control plane component cannot be listed")
    check.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")

    return parser


def options_from_args(args: argparse.Namespace) -> RunOptions:
    """命令行参数覆盖环境变量，环境变量覆盖默认值"""
    values = defaults_from_env()

    for field_name in OVERRIDABLE_OPTIONS:
        value = getattr(args, field_name)
        if value is not None:
            values[field_name] = value

    return RunOptions(
        check_kubelet=args.check_kubelet,
        kubeconfig=args.kubeconfig,
        context=args.context,
        require_control_plane=args.require_control_plane,
        **values,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    命令行入口点

    Returns:
        int: 退出码，致命错误时为 1
    """
    args = build_parser().parse_args(argv)
    stderr = Console(stderr=True)

    try:
        options = options_from_args(args)
        ConfigValidator().ensure_valid(options)
        CertificateExpirationChecker(options).run()
    except (CertificateMonitorError, ConfigException, ApiException, HTTPError) as e:
        stderr.print(f"[red]Error:[/red] {escape(str(e))}", highlight=False)
        return 1

    return 0


def plugin_main() -> int:
    """kubectl 插件入口点（kubectl check-cert）"""
    return main(["check-cert"] + sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
