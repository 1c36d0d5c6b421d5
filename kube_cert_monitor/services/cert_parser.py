"""
证书解析服务
"""
import base64
import binascii
import re
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

from cryptography import x509

from ..interfaces import CertificateParserInterface
from .error_handler import ParseError


PEM_BLOCK_PATTERN = re.compile(
    r'-----BEGIN ([^-\r\n]+)-----\s*(.*?)\s*-----END \1-----',
    re.DOTALL
)


class CertificateParser(CertificateParserInterface):
    """PEM证书解析器"""

    def parse(self, pem_text: Union[str, bytes], now: Optional[datetime] = None) -> Tuple[datetime, int]:
        """
        解析第一个PEM块并计算剩余天数

        Args:
            pem_text: PEM文本
            now: 当前时间，默认为当前UTC时间

        Returns:
            Tuple[datetime, int]: 过期时间（UTC）和剩余天数（负数表示已过期）

        Raises:
            ParseError: stage 为 "pem" 表示没有PEM块，"x509" 表示证书内容无效
        """
        der = self._decode_first_block(pem_text)

        try:
            certificate = x509.load_der_x509_certificate(der)
        except ValueError as e:
            raise ParseError("x509", f"failed to parse certificate: {str(e)}") from e

        expiry_date = certificate.not_valid_after_utc
        return expiry_date, self.calculate_days_until_expiry(expiry_date, now)

    def calculate_days_until_expiry(self, expiry_date: datetime, now: Optional[datetime] = None) -> int:
        """
        计算距离过期的天数，向下取整

        Args:
            expiry_date: 过期时间
            now: 当前时间

        Returns:
            int: 剩余天数（负数表示已过期）
        """
        now = now or datetime.now(timezone.utc)
        delta = expiry_date - now
        return delta.days

    def _decode_first_block(self, pem_text: Union[str, bytes]) -> bytes:
        # 带头部（如 Proc-Type:）的PEM块不是纯base64，按 pem 阶段失败处理
        if isinstance(pem_text, bytes):
            pem_text = pem_text.decode('utf-8', errors='replace')

        match = PEM_BLOCK_PATTERN.search(pem_text or "")
        if match is None:
            raise ParseError("pem", "failed to parse certificate PEM")

        try:
            return base64.b64decode(''.join(match.group(2).split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ParseError("pem", "failed to parse certificate PEM") from e
