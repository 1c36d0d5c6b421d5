"""
Kubernetes 控制平面与 kubelet 证书过期检查工具
"""
