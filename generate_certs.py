#!/usr/bin/env python3
"""
为转发代理的 TLS 监听生成自签名证书

版本: 1.0.0

功能说明:
- 生成 RSA 私钥
- 生成自签名服务器证书（SAN 包含主机名、localhost，主机名为 IP 时包含该 IP）
- 输出 server.pem / server.key，私钥权限设置为 0600
"""

import argparse
import ipaddress
import os
import re
import sys
from datetime import datetime, timedelta, timezone
from typing import Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

MIN_KEY_SIZE = 2048
MAX_KEY_SIZE = 8192

_HOSTNAME_PATTERN = re.compile(
    r'^[a-zA-Z0-9]([a-zA-Z0-9\-]*[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]*[a-zA-Z0-9])?)*$'
)


def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """
    生成 RSA 私钥

    参数:
        key_size: RSA 密钥大小 (位数),默认为 2048 位

    返回:
        rsa.RSAPrivateKey: 生成的 RSA 私钥对象
    """
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def _subject_alt_names(hostname: str) -> x509.SubjectAlternativeName:
    names = []
    try:
        names.append(x509.IPAddress(ipaddress.ip_address(hostname)))
    except ValueError:
        names.append(x509.DNSName(hostname))
    if hostname != "localhost":
        names.append(x509.DNSName("localhost"))
    return x509.SubjectAlternativeName(names)


def generate_server_certificate(
    private_key: rsa.RSAPrivateKey,
    hostname: str = "localhost",
    days_valid: int = 3650
) -> x509.Certificate:
    """
    生成自签名服务器证书

    参数:
        private_key: 服务器私钥，同时用于签名
        hostname: 证书的通用名称 (CN) 及 SAN
        days_valid: 证书有效期 (天数),默认为 3650 天 (10 年)

    返回:
        x509.Certificate: 生成的证书对象
    """
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Forward Proxy"),
        x509.NameAttribute(NameOID.COMMON_NAME, hostname),
    ])

    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))  # 容忍少量时钟偏差
        .not_valid_after(now + timedelta(days=days_valid))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(_subject_alt_names(hostname), critical=False)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(private_key.public_key()),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )


def save_private_key(key: rsa.RSAPrivateKey, path: str):
    """保存私钥到 PEM 文件（仅所有者可读）"""
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    with open(path, 'wb') as f:
        f.write(pem)

    try:
        os.chmod(path, 0o600)
    except (OSError, AttributeError):
        pass  # Windows 系统不支持 chmod,忽略错误


def save_certificate(cert: x509.Certificate, path: str):
    """保存证书到 PEM 文件"""
    with open(path, 'wb') as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))


def validate_hostname(hostname: str) -> bool:
    if len(hostname) > 253:
        return False
    try:
        ipaddress.ip_address(hostname)
        return True
    except ValueError:
        return bool(_HOSTNAME_PATTERN.match(hostname))


def generate(output_dir: str, hostname: str = "localhost", days: int = 3650,
             key_size: int = 2048) -> Tuple[str, str]:
    """
    生成证书和私钥并写入输出目录

    返回:
        Tuple[str, str]: (证书路径, 私钥路径)
    """
    os.makedirs(output_dir, exist_ok=True)
    key = generate_private_key(key_size)
    cert = generate_server_certificate(key, hostname, days)

    cert_path = os.path.join(output_dir, "server.pem")
    key_path = os.path.join(output_dir, "server.key")
    save_private_key(key, key_path)
    save_certificate(cert, cert_path)
    return cert_path, key_path


def main(argv=None):
    """
    主函数 - 解析命令行参数并生成证书

    命令行参数:
        --hostname: 服务器主机名 (默认: localhost)
        --output-dir: 证书输出目录 (默认: 当前目录)
        --days: 证书有效期天数 (默认: 3650)
        --key-size: RSA 密钥大小 (默认: 2048 位)
    """
    parser = argparse.ArgumentParser(description='为转发代理生成 TLS 证书')
    parser.add_argument('--hostname', default='localhost', help='证书的服务器主机名 (默认: localhost)')
    parser.add_argument('--output-dir', default='.', help='证书输出目录 (默认: 当前目录)')
    parser.add_argument('--days', type=int, default=3650, help='证书有效期天数 (默认: 3650)')
    parser.add_argument('--key-size', type=int, default=2048, help='RSA 密钥大小 (位) (默认: 2048)')
    args = parser.parse_args(argv)

    if not validate_hostname(args.hostname):
        print(f"错误: 无效的主机名: {args.hostname}")
        return 1

    if args.key_size < MIN_KEY_SIZE:
        print(f"警告: 密钥大小 {args.key_size} 位太小，自动调整为 {MIN_KEY_SIZE} 位")
        args.key_size = MIN_KEY_SIZE
    elif args.key_size > MAX_KEY_SIZE:
        print(f"警告: 密钥大小 {args.key_size} 位太大，自动调整为 {MAX_KEY_SIZE} 位")
        args.key_size = MAX_KEY_SIZE

    if args.days < 1:
        print(f"错误: 有效期天数必须为正数: {args.days}")
        return 1

    cert_path, key_path = generate(args.output_dir, args.hostname, args.days, args.key_size)
    print(f"证书: {cert_path}")
    print(f"私钥: {key_path}")
    print(f"启动代理: python server.py --addr :8888 --cert {cert_path} --key {key_path}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
