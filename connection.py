"""
连接管理模块 - 目标拨号与带截止时间的连接

此模块负责:
- 解析 host:port 形式的目标地址
- 在拨号超时内建立到目标主机的 TCP 连接
- 为连接的读、写分别设置绝对截止时间
- 提供幂等的关闭操作，供两个转发方向独立调用
"""

import asyncio
import logging
import socket
from typing import Optional, Tuple

logger = logging.getLogger('forward-proxy-connection')


class DialError(OSError):
    """目标拨号失败，消息即返回给客户端的错误文本"""


def split_host_port(address: str) -> Tuple[str, int]:
    """
    将 "host:port" 或 "[ipv6]:port" 拆分为主机和端口

    Args:
        address: 目标地址

    Returns:
        Tuple[str, int]: (主机, 端口)

    Raises:
        ValueError: 地址格式错误
    """
    if address.startswith('['):
        end = address.find(']')
        if end < 0:
            raise ValueError(f"address {address}: missing ']' in address")
        host = address[1:end]
        rest = address[end + 1:]
        if not rest:
            raise ValueError(f"address {address}: missing port in address")
        if not rest.startswith(':') or ':' in rest[1:]:
            raise ValueError(f"address {address}: too many colons in address")
        port_text = rest[1:]
    else:
        host, sep, port_text = address.rpartition(':')
        if not sep:
            raise ValueError(f"address {address}: missing port in address")
        if ':' in host:
            raise ValueError(f"address {address}: too many colons in address")

    if not port_text:
        raise ValueError(f"address {address}: missing port in address")

    if port_text.isdigit():
        port = int(port_text)
        if port > 65535:
            raise ValueError(f"address {address}: invalid port")
    else:
        try:
            port = socket.getservbyname(port_text, 'tcp')
        except OSError:
            raise ValueError(f"address {address}: unknown port")
    return host, port


async def dial(address: str, timeout: float = 0) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    建立到目标地址的 TCP 连接

    Args:
        address: host:port 形式的目标地址，原样使用
        timeout: 拨号超时（秒），<= 0 表示不限制

    Returns:
        Tuple[StreamReader, StreamWriter]: 目标连接的读写器

    Raises:
        DialError: 地址无效、超时或连接失败
    """
    try:
        host, port = split_host_port(address)
    except ValueError as e:
        raise DialError(f"dial tcp {e}") from e

    try:
        return await asyncio.wait_for(
            asyncio.open_connection(host or None, port),
            timeout=timeout if timeout > 0 else None
        )
    except asyncio.TimeoutError as e:
        raise DialError(f"dial tcp {address}: i/o timeout") from e
    except OSError as e:
        reason = e.strerror or str(e) or type(e).__name__
        raise DialError(f"dial tcp {address}: {reason}") from e
    except ValueError as e:
        # 主机名无法编码（如 IDNA 标签过长）或包含 NUL
        raise DialError(f"dial tcp {address}: {e}") from e


class DeadlineConnection:
    """
    带读写截止时间的连接

    截止时间是事件循环时钟上的绝对时间，设置一次后不会自动刷新。
    截止时间到达后，挂起或新发起的读写操作以 TimeoutError 失败。
    close() 可重复调用，只有第一次生效。
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, name: str = "conn"):
        self.reader = reader
        self.writer = writer
        self.name = name
        self.read_deadline: Optional[float] = None
        self.write_deadline: Optional[float] = None
        self.closed = False

    def set_read_deadline(self, deadline: Optional[float]):
        self.read_deadline = deadline

    def set_write_deadline(self, deadline: Optional[float]):
        self.write_deadline = deadline

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise TimeoutError("i/o timeout")
        return remaining

    async def read(self, n: int) -> bytes:
        remaining = self._remaining(self.read_deadline)
        try:
            return await asyncio.wait_for(self.reader.read(n), timeout=remaining)
        except asyncio.TimeoutError:
            raise TimeoutError(f"read {self.name}: i/o timeout")

    async def write(self, data: bytes):
        remaining = self._remaining(self.write_deadline)
        if self.writer.is_closing():
            raise ConnectionResetError(f"write {self.name}: use of closed connection")
        self.writer.write(data)
        try:
            await asyncio.wait_for(self.writer.drain(), timeout=remaining)
        except asyncio.TimeoutError:
            raise TimeoutError(f"write {self.name}: i/o timeout")

    async def close(self):
        """关闭连接（幂等）"""
        if self.closed:
            return
        self.closed = True
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError, OSError):
            pass  # 连接已断开，忽略错误
        except Exception as e:
            logger.debug(f"关闭 {self.name} 时出错: {e}")
