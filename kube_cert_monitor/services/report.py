"""
结果汇总与报告输出
"""
from functools import cmp_to_key
from typing import Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..models import CertType, CollectionResult, ZERO_TIME


REPORT_COLUMNS = ["Type", "Node", "Name", "Days", "Due", "Path", "Warning"]
SERVER_CERT_NAME = "server-cert"
KUBELET_CA_WARNING = "Can be ignored this."


def deduplicate(results: List[CollectionResult]) -> List[CollectionResult]:
    """
    每个 (type, node, name) 只保留一行，成功行优先于警告行

    Args:
        results: 采集结果

    Returns:
        List[CollectionResult]: 去重后的结果，保持首次出现的顺序
    """
    unique: Dict[tuple, CollectionResult] = {}
    for result in results:
        existing = unique.get(result.key)
        if existing is None or (not existing.is_success and result.is_success):
            unique[result.key] = result
    return list(unique.values())


def annotate_kubelet_ca(results: List[CollectionResult], kubelet_ca_seen: bool) -> List[CollectionResult]:
    """apiserver 没有设置 --kubelet-certificate-authority 时，给 kubelet 服务端证书加上提示"""
    if kubelet_ca_seen:
        return list(results)

    annotated = []
    for result in results:
        if (result.entry.type == CertType.KUBELET and result.entry.name == SERVER_CERT_NAME
                and result.is_success):
            result = CollectionResult(entry=result.entry, warning=KUBELET_CA_WARNING)
        annotated.append(result)
    return annotated


def compare_results(a: CollectionResult, b: CollectionResult) -> int:
    """scheduler 排在 kubelet 之前，其余按 type、node、name 的字典序"""
    left, right = a.entry, b.entry

    if left.type == CertType.SCHEDULER and right.type == CertType.KUBELET:
        return -1
    if left.type == CertType.KUBELET and right.type == CertType.SCHEDULER:
        return 1

    for x, y in ((left.type, right.type), (left.node, right.node), (left.name, right.name)):
        if x < y:
            return -1
        if x > y:
            return 1
    return 0


def sort_results(results: List[CollectionResult]) -> List[CollectionResult]:
    return sorted(results, key=cmp_to_key(compare_results))


def build_report(results: List[CollectionResult], kubelet_ca_seen: bool) -> List[CollectionResult]:
    """去重、标注并排序，得到最终报告行"""
    return sort_results(annotate_kubelet_ca(deduplicate(results), kubelet_ca_seen))


def format_due(result: CollectionResult) -> str:
    due = result.entry.due
    if due == ZERO_TIME:
        return "-"
    return due.strftime('%Y-%m-%d %H:%M:%S %z')


def render_table(results: List[CollectionResult], console: Optional[Console] = None) -> Table:
    """
    以表格形式输出报告

    Args:
        results: 已排序的报告行
        console: 输出目标，默认为标准输出

    Returns:
        Table: 渲染的表格
    """
    table = Table(title="Certificate Expiration")
    for column in REPORT_COLUMNS:
        table.add_column(column, justify="right" if column == "Days" else "left")

    for result in results:
        entry = result.entry
        table.add_row(*(escape(value) for value in (
            entry.type,
            entry.node,
            entry.name,
            str(entry.days),
            format_due(result),
            entry.path,
            result.warning,
        )))

    (console or Console()).print(table)
    return table
