"""
节点采集代理入口点

在 DaemonSet 的每个 Pod 中运行，找到宿主机上的 kubelet 进程，
解析其证书路径，并把两个证书条目以 JSON 输出到标准输出。
"""
import json
import os
import sys
from typing import Dict, List, Optional

from .models import CertificateEntry, CertType
from .services.cert_parser import CertificateParser
from .services.error_handler import CertificateMonitorError, ResolutionError
from .services.logger import LoggerService
from .services.path_resolver import KubeletPathResolver


PROC_ROOT = "/tmp/proc"
HOSTNAME_PATH = "/etc/hostname"
KUBELET_COMM = "kubelet"


class KubeletCertificateAgent:
    """kubelet 证书采集代理"""

    def __init__(self, proc_root: str = PROC_ROOT, hostname_path: str = HOSTNAME_PATH,
                 environ: Optional[Dict[str, str]] = None, parser: Optional[CertificateParser] = None):
        """
        初始化采集代理

        Args:
            proc_root: 宿主机 /proc 的挂载位置
            hostname_path: 宿主机 hostname 文件
            environ: 环境变量映射，默认为 os.environ
            parser: 证书解析器
        """
        self.proc_root = proc_root
        self.hostname_path = hostname_path
        self.environ = os.environ if environ is None else environ
        self.parser = parser or CertificateParser()
        self.logger_service = LoggerService(log_level=self.environ.get('LOG_LEVEL', 'WARNING'))
        self.logger = self.logger_service.logger

    def read_file(self, path: str) -> str:
        """
        读取文件并去掉首尾换行

        Raises:
            ResolutionError: 文件无法读取
        """
        try:
            with open(path, encoding='utf-8', errors='replace') as f:
                return f.read().strip('\n')
        except OSError as e:
            raise ResolutionError(f"Read file fail: {path}: {str(e)}") from e

    def node_name(self) -> str:
        """优先使用 NODENAME 环境变量，其次是宿主机 hostname"""
        return self.environ.get('NODENAME') or self.read_file(self.hostname_path).strip()

    def find_kubelet_pid(self) -> str:
        """
        在宿主机进程中查找 kubelet

        Raises:
            ResolutionError: 找不到 kubelet 进程
        """
        try:
            pids = sorted((name for name in os.listdir(self.proc_root) if name.isdigit()), key=int)
        except OSError as e:
            raise ResolutionError(f"无法读取进程目录 {self.proc_root}: {str(e)}") from e

        for pid in pids:
            try:
                with open(os.path.join(self.proc_root, pid, 'comm'), encoding='utf-8') as f:
                    if f.read().strip() == KUBELET_COMM:
                        return pid
            except OSError:
                # 进程可能已经退出
                continue

        raise ResolutionError("找不到 kubelet 进程")

    def collect(self) -> List[CertificateEntry]:
        """
        采集 kubelet 服务端证书和客户端证书

        Returns:
            List[CertificateEntry]: server-cert 和 client-cert 两个条目

        Raises:
            CertificateMonitorError: 路径解析或证书解析失败
        """
        node = self.node_name()
        pid = self.find_kubelet_pid()
        cmdline = self.read_file(os.path.join(self.proc_root, pid, 'cmdline'))

        resolver = KubeletPathResolver.from_cmdline(cmdline, self.read_file)
        resolved = resolver.resolve()
        self.logger.info(
            f"节点 {node} 的 kubelet(pid {pid}): 服务端证书 {resolved.server_cert_path}, "
            f"服务端证书轮换 {resolved.server_rotation}, 客户端证书轮换 {resolved.client_rotation}"
        )

        due, days = self.parser.parse(self.read_file(resolved.server_cert_path))
        entries = [CertificateEntry(
            type=CertType.KUBELET, node=node, name="server-cert",
            path=resolved.server_cert_path, days=days, due=due,
        )]

        client_cert = resolver.client_certificate(self.read_file)
        due, days = self.parser.parse(client_cert.pem)
        entries.append(CertificateEntry(
            type=CertType.KUBELET, node=node, name="client-cert",
            path=client_cert.path, days=days, due=due,
        ))

        return entries

    def report(self) -> str:
        """生成 JSON 报告"""
        return json.dumps({'entry': [entry.to_dict() for entry in self.collect()]})


def main() -> int:
    """
    代理入口点：成功时输出 JSON 报告，失败时输出诊断信息并返回 1
    """
    agent = KubeletCertificateAgent()

    try:
        output = agent.report()
    except CertificateMonitorError as e:
        agent.logger_service.log_error("kubelet 证书采集", e)
        print(str(e))
        return 1

    print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
