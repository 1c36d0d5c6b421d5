"""
节点采集代理测试
"""
import json
import pytest
from datetime import datetime, timezone
from unittest.mock import patch

from kube_cert_monitor import agent
from kube_cert_monitor.agent import KubeletCertificateAgent
from kube_cert_monitor.services.error_handler import ResolutionError


KUBELET_CONFIG = """
apiVersion: kubelet.config.k8s.io/v1beta1
kind: KubeletConfiguration
rotateCertificates: true
serverTLSBootstrap: true
"""

KUBELET_KUBECONFIG = """
apiVersion: v1
kind: Config
current-context: system:node:n1@kubernetes
contexts:
- name: system:node:n1@kubernetes
  context:
    cluster: kubernetes
    user: system:node:n1
users:
- name: system:node:n1
  user:
    client-certificate: {client_cert}
    client-key: {client_cert}
"""


class TestKubeletCertificateAgent:
    """采集代理测试类"""

    @pytest.fixture(autouse=True)
    def host(self, tmp_path, cert_factory):
        """构建模拟的宿主机文件系统"""
        self.root = tmp_path
        self.proc = tmp_path / "proc"
        self.server_due = datetime(2030, 1, 1, tzinfo=timezone.utc)
        self.client_due = datetime(2031, 1, 1, tzinfo=timezone.utc)

        self.add_process("1", "systemd", "/sbin/init")
        (self.proc / "self").mkdir()

        server_cert = tmp_path / "kubelet.crt"
        server_cert.write_text(cert_factory(self.server_due))
        client_cert = tmp_path / "kubelet-client-current.pem"
        client_cert.write_text(cert_factory(self.client_due))
        kubeconfig = tmp_path / "kubelet.conf"
        kubeconfig.write_text(KUBELET_KUBECONFIG.format(client_cert=client_cert))
        config = tmp_path / "config.yaml"
        config.write_text(KUBELET_CONFIG)
        hostname = tmp_path / "hostname"
        hostname.write_text("node-from-file\n")

        self.paths = {
            "server_cert": str(server_cert),
            "client_cert": str(client_cert),
            "kubeconfig": str(kubeconfig),
            "config": str(config),
            "hostname": str(hostname),
        }

    def add_process(self, pid, comm, *argv):
        directory = self.proc / pid
        directory.mkdir(parents=True)
        (directory / "comm").write_text(comm + "\n")
        (directory / "cmdline").write_bytes(("\x00".join(argv) + "\x00").encode("utf-8"))

    def make_agent(self, environ=None):
        return KubeletCertificateAgent(
            proc_root=str(self.proc),
            hostname_path=self.paths["hostname"],
            environ={"NODENAME": "n1"} if environ is None else environ,
        )

    def test_collect(self):
        """测试采集服务端和客户端证书"""
        self.add_process("812", "kubelet", "/usr/bin/kubelet",
                         f"--kubeconfig={self.paths['kubeconfig']}",
                         f"--tls-cert-file={self.paths['server_cert']}",
                         "--tls-key-file=/unused.key")

        entries = self.make_agent().collect()

        assert [e.name for e in entries] == ["server-cert", "client-cert"]
        assert all(e.type == "kubelet" and e.node == "n1" for e in entries)
        assert entries[0].path == self.paths["server_cert"]
        assert entries[0].due == self.server_due
        assert entries[1].path == self.paths["client_cert"]
        assert entries[1].due == self.client_due

    def test_report_json(self):
        """测试 JSON 报告格式"""
        self.add_process("812", "kubelet", "/usr/bin/kubelet",
                         f"--kubeconfig={self.paths['kubeconfig']}",
                         f"--tls-cert-file={self.paths['server_cert']}",
                         "--tls-key-file=/unused.key")

        document = json.loads(self.make_agent().report())

        assert len(document["entry"]) == 2
        assert document["entry"][0]["due"] == "2030-01-01T00:00:00Z"
        assert set(document["entry"][0]) == {"type", "node", "name", "days", "due", "path"}

    def test_rotated_path_missing(self):
        """测试轮换证书路径不存在时报错"""
        self.add_process("812", "kubelet", "/usr/bin/kubelet",
                         f"--kubeconfig={self.paths['kubeconfig']}",
                         f"--config={self.paths['config']}",
                         "--feature-gates=RotateKubeletServerCertificate=true")

        with pytest.raises(ResolutionError) as exc_info:
            self.make_agent().collect()

        assert "Read file fail: /var/lib/kubelet/pki/kubelet-server-current.pem" in str(exc_info.value)

    def test_no_kubelet_process(self):
        """测试找不到 kubelet 进程"""
        with pytest.raises(ResolutionError):
            self.make_agent().find_kubelet_pid()

    def test_node_name_from_hostname(self):
        """测试没有 NODENAME 时读取 hostname 文件"""
        assert self.make_agent(environ={}).node_name() == "node-from-file"

    def test_main_success(self, capsys):
        """测试入口点成功时输出 JSON"""
        self.add_process("812", "kubelet", "/usr/bin/kubelet",
                         f"--kubeconfig={self.paths['kubeconfig']}",
                         f"--tls-cert-file={self.paths['server_cert']}",
                         "--tls-key-file=/unused.key")

        with patch.object(agent, "KubeletCertificateAgent", lambda: self.make_agent()):
            assert agent.main() == 0

        assert json.loads(capsys.readouterr().out)["entry"][0]["name"] == "server-cert"

    def test_main_failure(self, capsys):
        """测试入口点失败时输出诊断信息"""
        with patch.object(agent, "KubeletCertificateAgent", lambda: self.make_agent()):
            assert agent.main() == 1

        assert "kubelet" in capsys.readouterr().out
