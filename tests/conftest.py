"""
测试公共夹具
"""
import pytest
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def build_certificate_pem(not_after: datetime, common_name: str = "test") -> str:
    """生成指定过期时间的自签名证书"""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=3650))
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )

    return certificate.public_bytes(serialization.Encoding.PEM).decode('utf-8')


@pytest.fixture
def fixed_now():
    return datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def cert_factory():
    return build_certificate_pem
