"""
证书采集、解析与报告服务
"""
