"""
HTTP/1.x 请求/响应抽象

本模块在 asyncio 流之上实现代理所需的最小 HTTP 服务端层：
- 请求头解析（InboundRequest）
- 缓冲式响应写入器（ResponseWriter）
- 连接接管能力（Hijacker / StreamResponseWriter）

接管（hijack）之后，HTTP 层不再读写该连接，原始读写器的所有权
转移给调用方。
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger('forward-proxy-http')

MAX_REQUEST_LINE = 8192
DISCARD_CHUNK = 64 * 1024


class BadRequestError(Exception):
    """请求格式错误"""


class HijackError(Exception):
    """连接接管失败（传输层）"""


# ============================================================================
# 请求
# ============================================================================

@dataclass
class InboundRequest:
    """
    一次传入的 HTTP 请求

    Attributes:
        method: 请求方法
        target: 请求目标（CONNECT 时为 host:port）
        version: 协议版本（如 "HTTP/1.1"）
        headers: 按到达顺序保存的 (名称, 值) 列表
        peer: 客户端地址字符串
        chunked: 请求体是否为分块编码（无法继续 keep-alive）
    """
    method: str
    target: str
    version: str = "HTTP/1.1"
    headers: List[Tuple[str, str]] = field(default_factory=list)
    peer: str = "unknown"
    chunked: bool = False

    def get_header(self, name: str) -> str:
        """返回第一个同名请求头的值（不区分大小写），不存在时返回空字符串"""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return ""

    @property
    def host(self) -> str:
        if self.method == "CONNECT":
            return self.target
        return self.get_header("Host") or self.target

    @property
    def keep_alive(self) -> bool:
        if self.chunked:
            return False
        connection = self.get_header("Connection").lower()
        if self.version == "HTTP/1.0":
            return connection == "keep-alive"
        return connection != "close"


async def read_request(reader: asyncio.StreamReader, max_header_bytes: int = 1 << 20,
                       peer: str = "unknown") -> Optional[InboundRequest]:
    """
    从流中读取一个请求头

    Args:
        reader: 异步流读取器
        max_header_bytes: 请求头最大字节数
        peer: 客户端地址（用于日志）

    Returns:
        Optional[InboundRequest]: 解析出的请求，连接在任何字节到达前关闭时返回 None

    Raises:
        BadRequestError: 请求格式错误或超长
    """
    total = 0
    # 容忍请求之间多余的空行
    while True:
        line = await _read_line(reader)
        if line is None:
            return None
        total += len(line)
        if total > max_header_bytes:
            raise BadRequestError("request header too large")
        if line.strip():
            break

    request_line = line.decode('latin-1').rstrip('\r\n')
    parts = request_line.split(' ')
    if len(parts) != 3 or not all(parts):
        raise BadRequestError(f"malformed request line: {request_line!r}")
    method, target, version = parts
    if not version.startswith("HTTP/1."):
        raise BadRequestError(f"unsupported protocol version: {version!r}")

    headers = []
    while True:
        line = await _read_line(reader)
        if line is None:
            raise BadRequestError("unexpected EOF in header")
        total += len(line)
        if total > max_header_bytes:
            raise BadRequestError("request header too large")
        text = line.decode('latin-1').rstrip('\r\n')
        if not text:
            break
        name, sep, value = text.partition(':')
        if not sep or not name or name != name.strip():
            raise BadRequestError(f"malformed header line: {text!r}")
        headers.append((name, value.strip()))

    request = InboundRequest(method=method, target=target, version=version,
                             headers=headers, peer=peer)

    if "chunked" in request.get_header("Transfer-Encoding").lower():
        request.chunked = True
    elif request.get_header("Content-Length"):
        await _discard_body(reader, request.get_header("Content-Length"))

    return request


async def _read_line(reader: asyncio.StreamReader) -> Optional[bytes]:
    try:
        line = await reader.readuntil(b'\n')
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise BadRequestError("unexpected EOF in header")
    except asyncio.LimitOverrunError:
        raise BadRequestError("header line too long")
    if len(line) > MAX_REQUEST_LINE:
        raise BadRequestError("header line too long")
    return line


async def _discard_body(reader: asyncio.StreamReader, content_length: str):
    """丢弃请求体，使连接可以继续处理下一个请求"""
    try:
        length = int(content_length)
    except ValueError:
        raise BadRequestError(f"invalid Content-Length: {content_length!r}")
    if length < 0:
        raise BadRequestError(f"invalid Content-Length: {content_length!r}")
    remaining = length
    while remaining > 0:
        # 分块读取丢弃，缓冲区不随 Content-Length 增长
        chunk = await reader.read(min(remaining, DISCARD_CHUNK))
        if not chunk:
            raise BadRequestError("unexpected EOF in body")
        remaining -= len(chunk)


# ============================================================================
# 响应
# ============================================================================

def status_text(status: int) -> str:
    """返回状态码的标准原因短语"""
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


class ResponseWriter:
    """
    缓冲式响应写入器

    状态行、响应头和响应体在 finish() 时一次性提交。
    提交前再次设置状态码会覆盖之前的值。
    """

    def __init__(self, writer: asyncio.StreamWriter, request: Optional[InboundRequest] = None):
        self.writer = writer
        self.request = request
        self.headers: Dict[str, str] = {}
        self.status: Optional[int] = None
        self.reason: Optional[str] = None
        self.body = bytearray()
        self.committed = False

    def write_header(self, status: int, reason: Optional[str] = None):
        """设置待发送的状态码"""
        if self.committed:
            logger.debug(f"响应已提交，忽略多余的状态码 {status}")
            return
        if self.status is not None and self.status != status:
            logger.debug(f"覆盖待发送的状态码 {self.status} -> {status}")
        self.status = status
        self.reason = reason

    def write(self, data: bytes):
        """追加响应体"""
        if self.committed:
            raise RuntimeError("response already committed")
        if self.status is None:
            self.status = HTTPStatus.OK
        self.body += data

    def _head(self, with_length: bool) -> bytes:
        status = self.status if self.status is not None else HTTPStatus.OK
        reason = self.reason if self.reason is not None else status_text(status)
        version = self.request.version if self.request else "HTTP/1.1"
        lines = [f"{version} {int(status)} {reason}"]
        for name, value in self.headers.items():
            lines.append(f"{name}: {value}")
        if with_length:
            lines.append(f"Content-Length: {len(self.body)}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode('latin-1')

    async def finish(self):
        """提交完整响应"""
        if self.committed:
            return
        self.committed = True
        if self.request is not None and not self.request.keep_alive:
            self.headers.setdefault("Connection", "close")
        data = self._head(with_length=True)
        if self.request is None or self.request.method != "HEAD":
            data += bytes(self.body)
        self.writer.write(data)
        await self.writer.drain()


def http_error(w: ResponseWriter, error: str, status: int):
    """
    以纯文本错误回复请求

    响应体为错误文本加换行符。
    """
    if w.committed:
        logger.debug(f"响应已提交，无法发送错误 {status}: {error}")
        return
    w.headers.pop("Content-Length", None)
    w.headers["Content-Type"] = "text/plain; charset=utf-8"
    w.headers["X-Content-Type-Options"] = "nosniff"
    w.body = bytearray()
    w.write_header(status)
    w.write(f"{error}\n".encode('utf-8'))


# ============================================================================
# 连接接管
# ============================================================================

class Hijacker(ABC):
    """支持接管底层连接的响应写入器"""

    @abstractmethod
    async def hijack(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        接管底层连接

        Returns:
            Tuple[StreamReader, StreamWriter]: 原始读写器，所有权转移给调用方

        Raises:
            HijackError: 无法接管
        """


class StreamResponseWriter(ResponseWriter, Hijacker):
    """基于 asyncio 流、支持接管的响应写入器"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 request: Optional[InboundRequest] = None):
        super().__init__(writer, request)
        self.reader = reader
        self.hijacked = False

    async def finish(self):
        if self.hijacked:
            return
        await super().finish()

    async def hijack(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if self.hijacked:
            raise HijackError("connection has already been hijacked")
        if self.writer.is_closing():
            raise HijackError("connection is closed")

        # 先提交已设置的状态行；CONNECT 的 2xx 响应不带 Content-Length
        if not self.committed and self.status is not None:
            self.committed = True
            self.writer.write(self._head(with_length=False))
            try:
                await self.writer.drain()
            except (ConnectionResetError, BrokenPipeError, OSError) as e:
                raise HijackError(str(e)) from e

        self.hijacked = True
        self.committed = True
        return self.reader, self.writer
