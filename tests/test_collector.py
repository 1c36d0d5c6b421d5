"""
证书采集调度服务测试
"""
import queue
import pytest
from datetime import datetime, timezone
from unittest.mock import patch, MagicMock

from kube_cert_monitor.models import (
    CertType,
    CollectionResult,
    RawCommandOutput,
    RunOptions,
    Target,
    TargetKind,
    WorkerState,
    ZERO_TIME,
)
from kube_cert_monitor.services.collector import (
    CertificateCollector,
    RunContext,
    command_flags,
    parse_agent_output,
)
from kube_cert_monitor.services.error_handler import AggregationError, DeploymentError, ExecError, ParseError, RetryHandler


AGENT_OUTPUT = (
    '{"entry":[{"type":"kubelet","node":"n1","name":"server-cert","days":10,'
    '"due":"2030-01-01T00:00:00Z","path":"/p"}]}'
)

ADMIN_KUBECONFIG = """
current-context: admin@kubernetes
contexts:
- name: admin@kubernetes
  context:
    user: admin
users:
- name: admin
  user:
    client-certificate: /etc/kubernetes/pki/client.crt
"""


def make_target(kind, cert_type, name, node="master-1", command=None, args=None, namespace="kube-system"):
    pod = MagicMock()
    pod.metadata.name = name
    pod.spec.node_name = node
    container = MagicMock()
    container.name = name.split("-")[0]
    container.command = command or []
    container.args = args or []
    pod.spec.containers = [container]
    return Target(kind=kind, cert_type=cert_type, pod=pod, namespace=namespace)


class FakeExecutor:
    """按命令返回预设输出的执行器"""

    def __init__(self, files=None, agent_outputs=None):
        self.files = files or {}
        self.agent_outputs = agent_outputs or {}
        self.calls = []

    def execute(self, pod, namespace, command):
        self.calls.append((pod.metadata.name, tuple(command)))

        if command[0] == "cat":
            if command[1] not in self.files:
                raise ExecError(command, "command terminated with exit code 1: No such file or directory")
            return RawCommandOutput(stdout=self.files[command[1]])

        output = self.agent_outputs[pod.metadata.name]
        if isinstance(output, Exception):
            raise output
        return RawCommandOutput(stdout=output)


class TestHelpers:
    """采集辅助函数测试类"""

    def test_command_flags(self):
        """测试遍历命令行参数"""
        flags = list(command_flags(["kube-apiserver", "--tls-cert-file=/a.crt", "--allow-privileged", "-v"]))

        assert flags == [("tls-cert-file", "/a.crt"), ("allow-privileged", "")]

    def test_parse_agent_output(self):
        """测试解析代理输出"""
        entries = parse_agent_output(AGENT_OUTPUT)

        assert len(entries) == 1
        assert entries[0].type == CertType.KUBELET
        assert entries[0].node == "n1"
        assert entries[0].name == "server-cert"
        assert entries[0].days == 10
        assert entries[0].due == datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert entries[0].path == "/p"

    @pytest.mark.parametrize("text", [
        "Read file fail: /var/lib/kubelet/pki/kubelet.crt",
        "",
        '{"entry": "x"}',
        '{"other": []}',
        '{"entry": [{"type": "kubelet"}]}',
        '{"entry": [{"type": "kubelet", "node": "n1", "name": "x", "days": "10", "due": "2030-01-01T00:00:00Z"}]}',
        '[1, 2]',
    ])
    def test_parse_agent_output_invalid(self, text):
        """测试不是合法报告的输出"""
        assert parse_agent_output(text) is None


class TestRunContext:
    """运行上下文测试类"""

    def test_progress_callback(self):
        """测试进度回调"""
        callback = MagicMock()
        context = RunContext(RunOptions(), progress_callback=callback)

        context.add_total(3)
        context.advance()

        callback.assert_called_with(1, 3)
        assert context.completed == 1
        assert context.total == 3

    def test_kubelet_ca_flag(self):
        """测试 kubelet CA 标记"""
        context = RunContext(RunOptions())

        assert context.kubelet_ca_seen is False
        context.mark_kubelet_ca_seen()
        assert context.kubelet_ca_seen is True


class TestCertificateCollector:
    """采集调度器测试类"""

    def setup_method(self):
        """测试前准备"""
        self.context = RunContext(RunOptions(workers=4))
        self.discovery = MagicMock()
        self.discovery.control_plane_targets.return_value = []
        self.discovery.agent_targets.return_value = []
        self.discovery.pod_phase.return_value = "Running"
        self.parser = MagicMock()
        self.due = datetime(2025, 6, 1, tzinfo=timezone.utc)
        self.parser.parse.side_effect = lambda pem: (self.due, 100) if pem.startswith("PEM") else self._bad_pem()
        self.retry = RetryHandler(max_attempts=5, delay=0)

    def _bad_pem(self):
        raise ParseError("pem", "failed to parse certificate PEM")

    def make_collector(self, executor, lifecycle=None):
        return CertificateCollector(self.context, executor, self.discovery, lifecycle,
                                    parser=self.parser, retry_handler=self.retry)

    def test_apiserver_flags(self):
        """测试 apiserver 按参数检查证书文件"""
        target = make_target(TargetKind.CONTROL_PLANE, CertType.APISERVER, "kube-apiserver-master-1", command=[
            "kube-apiserver",
            "--etcd-certfile=/pki/etcd.crt",
            "--tls-cert-file=/pki/apiserver.crt",
            "--kubelet-client-certificate=/pki/kubelet-client.crt",
            "--proxy-client-cert-file=/pki/missing.crt",
            "--kubelet-certificate-authority=/pki/ca.crt",
            "--client-ca-file=/pki/ca.crt",
        ])
        self.discovery.control_plane_targets.return_value = [target]
        executor = FakeExecutor(files={
            "/pki/etcd.crt": "PEM etcd",
            "/pki/apiserver.crt": "PEM apiserver",
            "/pki/kubelet-client.crt": "garbage",
        })

        results = {r.entry.name: r for r in self.make_collector(executor).collect()}

        assert set(results) == {"etcd-certfile", "tls-cert-file", "kubelet-client-certificate", "proxy-client-cert-file"}
        assert results["tls-cert-file"].is_success
        assert results["tls-cert-file"].entry.days == 100
        assert results["tls-cert-file"].entry.path == "/pki/apiserver.crt"
        assert results["kubelet-client-certificate"].warning == "failed to parse certificate PEM"
        assert results["kubelet-client-certificate"].entry.due == ZERO_TIME
        assert "No such file" in results["proxy-client-cert-file"].warning
        assert results["proxy-client-cert-file"].entry.days == 0
        assert self.context.kubelet_ca_seen is True
        assert self.context.worker_states[str(target)] == WorkerState.WARNED

    def test_kubeconfig_client_certificate(self):
        """测试 controller-manager 的客户端证书"""
        target = make_target(TargetKind.CONTROL_PLANE, CertType.CONTROLLER_MANAGER, "kcm-master-1",
                             command=["kube-controller-manager"],
                             args=["--kubeconfig=/etc/kubernetes/controller-manager.conf"])
        self.discovery.control_plane_targets.return_value = [target]
        executor = FakeExecutor(files={
            "/etc/kubernetes/controller-manager.conf": ADMIN_KUBECONFIG,
            "/etc/kubernetes/pki/client.crt": "PEM client",
        })

        results = self.make_collector(executor).collect()

        assert len(results) == 1
        assert results[0].is_success
        assert results[0].entry.name == "client-cert"
        assert results[0].entry.path == "/etc/kubernetes/pki/client.crt"
        assert self.context.kubelet_ca_seen is False
        assert self.context.worker_states[str(target)] == WorkerState.SUCCEEDED

    def test_kubeconfig_unreadable(self):
        """测试 kubeconfig 无法读取时产生一行警告"""
        target = make_target(TargetKind.CONTROL_PLANE, CertType.SCHEDULER, "sched-master-1",
                             command=["kube-scheduler", "--kubeconfig=/etc/kubernetes/scheduler.conf"])
        self.discovery.control_plane_targets.return_value = [target]

        results = self.make_collector(FakeExecutor()).collect()

        assert len(results) == 1
        assert results[0].entry.name == "client-cert"
        assert results[0].entry.path == "-"
        assert "No such file" in results[0].warning

    def test_no_recognized_flags(self):
        """测试没有可识别参数时也产生一行"""
        target = make_target(TargetKind.CONTROL_PLANE, CertType.SCHEDULER, "sched-master-1",
                             command=["kube-scheduler"])
        self.discovery.control_plane_targets.return_value = [target]

        results = self.make_collector(FakeExecutor()).collect()

        assert len(results) == 1
        assert not results[0].is_success

    @patch('time.sleep')
    def test_agent_output(self, mock_sleep):
        """测试代理输出解析为一个无警告的结果"""
        lifecycle = MagicMock()
        agent = make_target(TargetKind.AGENT, CertType.KUBELET, "krawler-abc", node="n1", namespace="default")
        self.discovery.agent_targets.return_value = [agent]
        executor = FakeExecutor(agent_outputs={"krawler-abc": AGENT_OUTPUT})

        results = self.make_collector(executor, lifecycle).collect()

        assert len(results) == 1
        assert results[0].warning == ""
        assert results[0].entry.node == "n1"
        lifecycle.wait_until_scheduled.assert_called_once()
        lifecycle.wait_until_ready.assert_called_once()
        assert executor.calls == [("krawler-abc", ("krawler",))]

    @patch('time.sleep')
    def test_agent_exec_always_fails(self, mock_sleep):
        """测试代理命令每次都失败时只产生一行，带最后一次的错误"""
        lifecycle = MagicMock()
        agent = make_target(TargetKind.AGENT, CertType.KUBELET, "krawler-abc", node="n1", namespace="default")
        self.discovery.agent_targets.return_value = [agent]

        attempts = iter(range(1, 100))

        class FailingExecutor(FakeExecutor):
            def execute(self, pod, namespace, command):
                self.calls.append(tuple(command))
                raise ExecError(command, f"attempt {next(attempts)}")

        executor = FailingExecutor()
        results = self.make_collector(executor, lifecycle).collect()

        assert len(results) == 1
        assert len(executor.calls) == 5
        assert results[0].warning == "krawler: attempt 5"
        assert results[0].entry.type == CertType.KUBELET
        assert results[0].entry.node == "n1"
        assert results[0].entry.days == 0
        assert self.context.worker_states[str(agent)] == WorkerState.WARNED

    @patch('time.sleep')
    def test_agent_diagnostic_output(self, mock_sleep):
        """测试代理输出诊断信息"""
        lifecycle = MagicMock()
        agent = make_target(TargetKind.AGENT, CertType.KUBELET, "krawler-abc", node="n1", namespace="default")
        self.discovery.agent_targets.return_value = [agent]
        executor = FakeExecutor(agent_outputs={"krawler-abc": "Read file fail: /var/lib/kubelet/pki/kubelet.crt\n"})

        results = self.make_collector(executor, lifecycle).collect()

        assert len(results) == 1
        assert results[0].warning == "Read file fail: /var/lib/kubelet/pki/kubelet.crt"
        assert results[0].entry.name == "Error"

    @patch('time.sleep')
    def test_agent_waits_for_running(self, mock_sleep):
        """测试等待代理 Pod 进入 Running"""
        lifecycle = MagicMock()
        agent = make_target(TargetKind.AGENT, CertType.KUBELET, "krawler-abc", node="n1", namespace="default")
        self.discovery.agent_targets.return_value = [agent]
        self.discovery.pod_phase.side_effect = ["Pending", "Pending", "Running"]
        executor = FakeExecutor(agent_outputs={"krawler-abc": AGENT_OUTPUT})

        self.make_collector(executor, lifecycle).collect()

        assert self.discovery.pod_phase.call_count == 3

    def test_mixed_targets_and_progress(self):
        """测试多个目标并发采集与进度统计"""
        targets = [
            make_target(TargetKind.CONTROL_PLANE, CertType.SCHEDULER, f"sched-{i}", node=f"m{i}",
                        command=["kube-scheduler", "--kubeconfig=/etc/kubernetes/scheduler.conf"])
            for i in range(6)
        ]
        self.discovery.control_plane_targets.return_value = targets
        executor = FakeExecutor(files={
            "/etc/kubernetes/scheduler.conf": ADMIN_KUBECONFIG,
            "/etc/kubernetes/pki/client.crt": "PEM client",
        })

        results = self.make_collector(executor).collect()

        assert sorted(r.entry.node for r in results) == [f"m{i}" for i in range(6)]
        assert self.context.completed == 6
        assert self.context.total == 6
        assert set(self.context.worker_states.values()) == {WorkerState.SUCCEEDED}

    def test_unexpected_error_becomes_row(self):
        """测试意外异常也会产生一行结果"""
        target = make_target(TargetKind.CONTROL_PLANE, CertType.APISERVER, "kube-apiserver-master-1",
                             command=["kube-apiserver", "--tls-cert-file=/pki/apiserver.crt"])
        self.discovery.control_plane_targets.return_value = [target]
        executor = MagicMock()
        executor.execute.side_effect = RuntimeError("unexpected")

        results = self.make_collector(executor).collect()

        assert len(results) == 1
        assert results[0].warning == "unexpected"
        assert self.context.worker_states[str(target)] == WorkerState.FAILED

    def test_deployment_error_propagates(self):
        """测试代理无法就绪时中止运行"""
        lifecycle = MagicMock()
        lifecycle.wait_until_ready.side_effect = DeploymentError("timeout")

        with pytest.raises(DeploymentError):
            self.make_collector(FakeExecutor(), lifecycle).collect()

    def test_drain_rejects_unknown_payload(self):
        """测试结果队列中出现未知类型"""
        collector = self.make_collector(FakeExecutor())
        results_queue = queue.Queue()
        results_queue.put("not a result")

        with pytest.raises(AggregationError):
            collector._drain(results_queue)
