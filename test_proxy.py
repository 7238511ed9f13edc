#!/usr/bin/env python3
"""
转发代理端到端测试

测试内容:
1. 非 CONNECT 方法返回 405，且不拨号目标
2. 认证缺失/格式错误/错误凭据返回 407，且不拨号目标
3. 认证正确或未配置认证时返回 200 并建立隧道
4. 隧道双向逐字节、按序转发
5. 一端关闭后另一端在有限时间内被关闭
6. 拨号失败返回 503，连接未被接管，仍可继续使用
7. 不支持接管返回 500，接管失败返回 503，两者都关闭已拨通的目标连接
8. 截止时间到达后隧道被关闭

使用方法:
    python3 test_proxy.py
    或 pytest test_proxy.py
"""

import asyncio
import base64
import logging
import socket

from config import ProxyConfig, ServerConfig
from http_protocol import InboundRequest, ResponseWriter, StreamResponseWriter
from logger import ContextFilter, add_context, clear_context
from proxy import Proxy
from proxy_client import ProxyError, open_tunnel, read_response_head
from server import ProxyServer

GENEROUS = dict(
    dest_dial_timeout=5.0,
    dest_read_timeout=30.0,
    dest_write_timeout=30.0,
    client_read_timeout=30.0,
    client_write_timeout=30.0,
)


class Destination:
    """
    测试用目标服务器

    mode:
        echo: 回显收到的数据
        close: 发送 b"bye" 后立即关闭
        sink: 读取直到 EOF
    """

    def __init__(self, mode: str = "echo"):
        self.mode = mode
        self.accepted = 0
        self.eof = asyncio.Event()
        self.server = None

    async def handle(self, reader, writer):
        self.accepted += 1
        try:
            if self.mode == "close":
                writer.write(b"bye")
                await writer.drain()
                return
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                if self.mode == "echo":
                    writer.write(data)
                    await writer.drain()
            self.eof.set()
        except (ConnectionResetError, BrokenPipeError, OSError):
            self.eof.set()
        finally:
            writer.close()

    async def start(self) -> str:
        self.server = await asyncio.start_server(self.handle, '127.0.0.1', 0)
        return f"127.0.0.1:{self.server.sockets[0].getsockname()[1]}"

    async def stop(self):
        self.server.close()


async def start_proxy(**overrides) -> ProxyServer:
    proxy_config = ProxyConfig(**dict(GENEROUS, **overrides))
    server = ProxyServer(ServerConfig(host='127.0.0.1', port=0, read_header_timeout=5.0), proxy_config)
    await server.start()
    return server


def proxy_port(server: ProxyServer) -> int:
    return server.sockets[0].getsockname()[1]


def _unused_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


async def read_response(reader):
    status, reason, headers = await asyncio.wait_for(read_response_head(reader), 5)
    body = b''
    if headers.get('content-length'):
        body = await asyncio.wait_for(reader.readexactly(int(headers['content-length'])), 5)
    return status, headers, body


async def _expect_status(port: int, target: str, status: int, **auth) -> ProxyError:
    try:
        reader, writer = await open_tunnel('127.0.0.1', port, target, timeout=5, **auth)
    except ProxyError as e:
        assert e.status == status, (e.status, e.body)
        return e
    writer.close()
    raise AssertionError(f"期望状态 {status}，实际建立了隧道")


def test_non_connect_methods_rejected():
    async def scenario():
        dest = Destination()
        target = await dest.start()
        server = await start_proxy()
        try:
            reader, writer = await asyncio.open_connection('127.0.0.1', proxy_port(server))
            # 同一连接上依次发送多个请求（keep-alive）
            for method in ("GET", "POST", "PUT", "DELETE", "OPTIONS"):
                writer.write(
                    f"{method} http://{target}/ HTTP/1.1\r\nHost: {target}\r\nContent-Length: 0\r\n\r\n".encode()
                )
                await writer.drain()
                status, headers, body = await read_response(reader)
                assert status == 405, (method, status)
                assert body == b"Method Not Allowed\n"
            writer.close()

            await asyncio.sleep(0.1)
            assert dest.accepted == 0
        finally:
            await server.stop()
            await dest.stop()

    asyncio.run(scenario())


def test_log_records_carry_connection_context():
    class Collect(logging.Handler):
        def __init__(self):
            super().__init__()
            self.contexts = []

        def emit(self, record):
            self.contexts.append(record.context)

    async def scenario():
        # 启动服务前设置的字段不会带入连接的上下文
        add_context(stale="yes")
        server = await start_proxy()
        try:
            reader, writer = await asyncio.open_connection('127.0.0.1', proxy_port(server))
            writer.write(b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n")
            await writer.drain()
            status, headers, body = await read_response(reader)
            assert status == 405
            writer.close()
        finally:
            await server.stop()
            clear_context()

    proxy_logger = logging.getLogger('forward-proxy')
    handler = Collect()
    handler.addFilter(ContextFilter(["host", "peer", "stale"]))
    saved_level = proxy_logger.level
    proxy_logger.setLevel(logging.INFO)
    proxy_logger.addHandler(handler)
    try:
        asyncio.run(scenario())
    finally:
        proxy_logger.removeHandler(handler)
        proxy_logger.setLevel(saved_level)

    assert handler.contexts
    context = handler.contexts[0]
    assert context.startswith("host=example.com | peer=127.0.0.1:")
    assert context.endswith("stale=-")


def test_authentication_failures_return_407():
    async def scenario():
        dest = Destination()
        target = await dest.start()
        server = await start_proxy(auth_user="user", auth_pass="secret")
        port = proxy_port(server)
        try:
            await _expect_status(port, target, 407)
            error = await _expect_status(port, target, 407, username="user", password="wrong")
            assert error.body == b"Proxy Authentication Required\n"
            await _expect_status(port, target, 407, username="other", password="secret")

            for header in ("Bearer abc", "Basic !!!", "Basic " + base64.b64encode(b"nocolon").decode()):
                reader, writer = await asyncio.open_connection('127.0.0.1', port)
                writer.write(
                    f"CONNECT {target} HTTP/1.1\r\nHost: {target}\r\nProxy-Authenticate: {header}\r\n\r\n".encode()
                )
                await writer.drain()
                status, headers, body = await read_response(reader)
                assert status == 407, (header, status)
                writer.close()

            await asyncio.sleep(0.1)
            assert dest.accepted == 0
        finally:
            await server.stop()
            await dest.stop()

    asyncio.run(scenario())


def test_authenticated_tunnel_established():
    async def scenario():
        dest = Destination()
        target = await dest.start()
        server = await start_proxy(auth_user="user", auth_pass="pa:ss")
        try:
            reader, writer = await open_tunnel('127.0.0.1', proxy_port(server), target,
                                               username="user", password="pa:ss", timeout=5)
            writer.write(b"ping")
            await writer.drain()
            assert await asyncio.wait_for(reader.readexactly(4), 5) == b"ping"
            assert dest.accepted == 1
            writer.close()
        finally:
            await server.stop()
            await dest.stop()

    asyncio.run(scenario())


def test_partial_credentials_disable_auth():
    async def scenario():
        dest = Destination()
        target = await dest.start()
        server = await start_proxy(auth_user="user", auth_pass="")
        try:
            reader, writer = await open_tunnel('127.0.0.1', proxy_port(server), target, timeout=5)
            writer.close()
            assert dest.accepted == 1
        finally:
            await server.stop()
            await dest.stop()

    asyncio.run(scenario())


def test_tunnel_relays_bytes_in_order():
    async def scenario():
        dest = Destination()
        target = await dest.start()
        server = await start_proxy()
        try:
            reader, writer = await open_tunnel('127.0.0.1', proxy_port(server), target, timeout=5)
            payload = bytes(i % 251 for i in range(1024 * 1024))

            async def send():
                for offset in range(0, len(payload), 8192):
                    writer.write(payload[offset:offset + 8192])
                    await writer.drain()

            _, received = await asyncio.wait_for(
                asyncio.gather(send(), reader.readexactly(len(payload))), 20
            )
            assert received == payload
            assert server.proxy.active_tunnels == 1
            writer.close()
        finally:
            await server.stop()
            await dest.stop()

    asyncio.run(scenario())


def test_early_data_after_connect_is_forwarded():
    async def scenario():
        dest = Destination()
        target = await dest.start()
        server = await start_proxy()
        try:
            reader, writer = await asyncio.open_connection('127.0.0.1', proxy_port(server))
            writer.write(f"CONNECT {target} HTTP/1.1\r\nHost: {target}\r\n\r\nhello".encode())
            await writer.drain()
            status, reason, headers = await asyncio.wait_for(read_response_head(reader), 5)
            assert status == 200
            assert 'content-length' not in headers
            assert await asyncio.wait_for(reader.readexactly(5), 5) == b"hello"
            writer.close()
        finally:
            await server.stop()
            await dest.stop()

    asyncio.run(scenario())


def test_destination_close_propagates_to_client():
    async def scenario():
        dest = Destination(mode="close")
        target = await dest.start()
        server = await start_proxy()
        try:
            reader, writer = await open_tunnel('127.0.0.1', proxy_port(server), target, timeout=5)
            assert await asyncio.wait_for(reader.read(), 5) == b"bye"
            writer.close()

            for _ in range(50):
                if server.proxy.active_tunnels == 0:
                    break
                await asyncio.sleep(0.05)
            assert server.proxy.active_tunnels == 0
        finally:
            await server.stop()
            await dest.stop()

    asyncio.run(scenario())


def test_client_close_propagates_to_destination():
    async def scenario():
        dest = Destination(mode="sink")
        target = await dest.start()
        server = await start_proxy()
        try:
            reader, writer = await open_tunnel('127.0.0.1', proxy_port(server), target, timeout=5)
            writer.write(b"data")
            await writer.drain()
            writer.close()
            await asyncio.wait_for(dest.eof.wait(), 5)
        finally:
            await server.stop()
            await dest.stop()

    asyncio.run(scenario())


def test_dial_failure_returns_503_and_keeps_connection():
    async def scenario():
        server = await start_proxy()
        target = f"127.0.0.1:{_unused_port()}"
        try:
            reader, writer = await asyncio.open_connection('127.0.0.1', proxy_port(server))
            writer.write(f"CONNECT {target} HTTP/1.1\r\nHost: {target}\r\n\r\n".encode())
            await writer.drain()
            status, headers, body = await read_response(reader)
            assert status == 503
            assert body.startswith(f"dial tcp {target}:".encode())
            assert server.proxy.active_tunnels == 0

            # 连接未被接管，仍然按 HTTP 处理后续请求
            writer.write(b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n")
            await writer.drain()
            status, headers, body = await read_response(reader)
            assert status == 405
            writer.close()
        finally:
            await server.stop()

    asyncio.run(scenario())


def test_unencodable_hostname_returns_503():
    async def scenario():
        server = await start_proxy()
        target = "a" * 64 + ".example.com:443"
        try:
            reader, writer = await asyncio.open_connection('127.0.0.1', proxy_port(server))
            writer.write(f"CONNECT {target} HTTP/1.1\r\nHost: {target}\r\n\r\n".encode())
            await writer.drain()
            status, headers, body = await read_response(reader)
            assert status == 503
            assert body.startswith(f"dial tcp {target}:".encode())

            writer.write(b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n")
            await writer.drain()
            status, headers, body = await read_response(reader)
            assert status == 405
            writer.close()
        finally:
            await server.stop()

    asyncio.run(scenario())


def test_malformed_request_returns_400():
    async def scenario():
        server = await start_proxy()
        try:
            reader, writer = await asyncio.open_connection('127.0.0.1', proxy_port(server))
            writer.write(b"NONSENSE\r\n\r\n")
            await writer.drain()
            status, headers, body = await read_response(reader)
            assert status == 400
            assert headers.get('connection') == 'close'
            assert await asyncio.wait_for(reader.read(), 5) == b""
        finally:
            await server.stop()

    asyncio.run(scenario())


class FakeWriter:
    def __init__(self, closing: bool = False):
        self.data = bytearray()
        self.closing = closing

    def write(self, data: bytes):
        self.data += data

    async def drain(self):
        pass

    def is_closing(self) -> bool:
        return self.closing


def test_hijack_unsupported_returns_500_and_closes_destination():
    async def scenario():
        dest = Destination(mode="sink")
        target = await dest.start()
        proxy = Proxy(ProxyConfig(**GENEROUS))
        try:
            request = InboundRequest("CONNECT", target)
            writer = FakeWriter()
            w = ResponseWriter(writer, request)
            await proxy.serve_http(request, w)
            await w.finish()
            assert bytes(writer.data).startswith(b"HTTP/1.1 500 Internal Server Error\r\n")
            assert bytes(writer.data).endswith(b"Hijacking not supported\n")
            await asyncio.wait_for(dest.eof.wait(), 5)
            assert proxy.active_tunnels == 0
        finally:
            await dest.stop()

    asyncio.run(scenario())


def test_hijack_failure_returns_503_and_closes_destination():
    async def scenario():
        dest = Destination(mode="sink")
        target = await dest.start()
        proxy = Proxy(ProxyConfig(**GENEROUS))
        try:
            request = InboundRequest("CONNECT", target)
            writer = FakeWriter(closing=True)
            w = StreamResponseWriter(asyncio.StreamReader(), writer, request)
            await proxy.serve_http(request, w)
            await w.finish()
            assert bytes(writer.data).startswith(b"HTTP/1.1 503 Service Unavailable\r\n")
            await asyncio.wait_for(dest.eof.wait(), 5)
            assert proxy.active_tunnels == 0
        finally:
            await dest.stop()

    asyncio.run(scenario())


def test_deadline_expiry_closes_tunnel():
    async def scenario():
        dest = Destination()
        target = await dest.start()
        server = await start_proxy(client_read_timeout=0.3, dest_read_timeout=0.3)
        try:
            reader, writer = await open_tunnel('127.0.0.1', proxy_port(server), target, timeout=5)
            writer.write(b"x")
            await writer.drain()
            assert await asyncio.wait_for(reader.readexactly(1), 5) == b"x"

            # 截止时间不会刷新，空闲后隧道被强制关闭
            assert await asyncio.wait_for(reader.read(), 5) == b""
            await asyncio.wait_for(dest.eof.wait(), 5)
            writer.close()
        finally:
            await server.stop()
            await dest.stop()

    asyncio.run(scenario())


def test_stop_closes_open_tunnels():
    async def scenario():
        dest = Destination(mode="sink")
        target = await dest.start()
        server = await start_proxy()
        try:
            reader, writer = await open_tunnel('127.0.0.1', proxy_port(server), target, timeout=5)
            assert server.proxy.active_tunnels == 1
            await asyncio.wait_for(server.stop(), 5)
            assert server.proxy.active_tunnels == 0
            assert await asyncio.wait_for(reader.read(), 5) == b""
            writer.close()
        finally:
            await server.stop()
            await dest.stop()

    asyncio.run(scenario())


if __name__ == '__main__':
    for name, func in list(globals().items()):
        if name.startswith('test_') and callable(func):
            func()
            print(f"✓ PASS | {name}")
