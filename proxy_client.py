#!/usr/bin/env python3
"""
CONNECT 客户端辅助模块

通过转发代理打开到目标的隧道，也可作为命令行工具检查目标是否可达。

使用示例:
    reader, writer = await open_tunnel('127.0.0.1', 8888, 'example.com:443',
                                       username='user', password='pass')
"""

import argparse
import asyncio
import logging
import ssl
import sys
from typing import Optional, Tuple

from auth import PROXY_AUTH_HEADER, basic_auth_value

logger = logging.getLogger('forward-proxy-client')


class ProxyError(Exception):
    """代理拒绝了 CONNECT 请求"""

    def __init__(self, status: int, reason: str, body: bytes = b''):
        super().__init__(f"proxy returned {status} {reason}".strip())
        self.status = status
        self.reason = reason
        self.body = body


async def read_response_head(reader: asyncio.StreamReader) -> Tuple[int, str, dict]:
    """读取响应状态行和响应头"""
    status_line = await reader.readline()
    if not status_line:
        raise ConnectionResetError("proxy closed the connection")
    parts = status_line.decode('latin-1').rstrip('\r\n').split(' ', 2)
    if len(parts) < 2 or not parts[1].isdigit():
        raise ProxyError(0, f"malformed status line: {status_line!r}")
    status = int(parts[1])
    reason = parts[2] if len(parts) > 2 else ""

    headers = {}
    while True:
        line = await reader.readline()
        if line in (b'\r\n', b'\n', b''):
            break
        name, _, value = line.decode('latin-1').partition(':')
        headers[name.strip().lower()] = value.strip()
    return status, reason, headers


async def open_tunnel(
    proxy_host: str,
    proxy_port: int,
    target: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    ssl_context: Optional[ssl.SSLContext] = None,
    server_hostname: Optional[str] = None,
    timeout: float = 10.0,
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    通过代理打开到目标的隧道

    Args:
        proxy_host: 代理地址
        proxy_port: 代理端口
        target: host:port 形式的目标
        username: 认证用户名（可选）
        password: 认证密码（可选）
        ssl_context: 代理监听使用 TLS 时的客户端上下文
        server_hostname: TLS 校验使用的主机名
        timeout: 建立隧道的超时（秒）

    Returns:
        Tuple[StreamReader, StreamWriter]: 隧道的读写器

    Raises:
        ProxyError: 代理返回非 200 状态
    """
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(proxy_host, proxy_port, ssl=ssl_context,
                                server_hostname=server_hostname if ssl_context else None),
        timeout=timeout
    )

    try:
        lines = [f"CONNECT {target} HTTP/1.1", f"Host: {target}"]
        if username is not None and password is not None:
            lines.append(f"{PROXY_AUTH_HEADER}: {basic_auth_value(username, password)}")
        writer.write(("\r\n".join(lines) + "\r\n\r\n").encode('latin-1'))
        await writer.drain()

        status, reason, headers = await asyncio.wait_for(read_response_head(reader), timeout=timeout)
        if status != 200:
            body = b''
            length = headers.get('content-length')
            if length and length.isdigit():
                body = await asyncio.wait_for(reader.readexactly(int(length)), timeout=timeout)
            raise ProxyError(status, reason, body)
    except BaseException:
        writer.close()
        raise

    return reader, writer


async def check(args) -> int:
    ssl_context = None
    if args.tls:
        ssl_context = ssl.create_default_context(cafile=args.ca_cert)
    try:
        reader, writer = await open_tunnel(
            args.proxy_host, args.proxy_port, args.target,
            username=args.user, password=args.password,
            ssl_context=ssl_context, server_hostname=args.server_hostname,
            timeout=args.timeout,
        )
    except ProxyError as e:
        logger.error(f"隧道建立失败: {e} {e.body.decode('utf-8', 'replace').strip()}")
        return 1
    except (OSError, asyncio.TimeoutError) as e:
        logger.error(f"无法连接代理: {e}")
        return 1

    logger.info(f"隧道已建立: {args.target}")
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionResetError, BrokenPipeError, OSError):
        pass
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description='通过转发代理检查目标是否可达')
    parser.add_argument('target', help='目标 host:port')
    parser.add_argument('--proxy-host', default='127.0.0.1', help='代理地址')
    parser.add_argument('--proxy-port', type=int, default=8888, help='代理端口')
    parser.add_argument('--user', default=None, help='认证用户名')
    parser.add_argument('--pass', dest='password', default=None, help='认证密码')
    parser.add_argument('--tls', action='store_true', help='代理监听使用 TLS')
    parser.add_argument('--ca-cert', default=None, help='校验代理证书使用的 CA 文件')
    parser.add_argument('--server-hostname', default=None, help='TLS 校验使用的主机名')
    parser.add_argument('--timeout', type=float, default=10.0, help='超时（秒）')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    return asyncio.run(check(args))


if __name__ == '__main__':
    sys.exit(main())
