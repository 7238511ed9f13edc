"""
HTTPS 转发代理核心

处理流程:
1. 请求检查 - 只允许 CONNECT 方法
2. 认证 - 配置了凭据时校验 Basic 认证头
3. 建立隧道 - 拨号目标、回复 200、接管客户端连接、设置截止时间
4. 双向转发 - 启动两个独立任务后立即返回

隧道建立后不再解析或修改任何字节。
"""

import asyncio
import logging
from http import HTTPStatus
from typing import Set

from auth import PROXY_AUTH_HEADER, parse_basic_proxy_auth
from config import ProxyConfig
from connection import DeadlineConnection, DialError, dial
from http_protocol import Hijacker, HijackError, InboundRequest, ResponseWriter, http_error, status_text
from relay import transfer

logger = logging.getLogger('forward-proxy')


def _deadline(now: float, timeout: float):
    return now + timeout if timeout > 0 else None


class Proxy:
    """HTTPS 转发代理"""

    def __init__(self, config: ProxyConfig):
        self.config = config
        # 转发任务不等待结束，这里只保存引用，防止任务被垃圾回收
        self._relay_tasks: Set[asyncio.Task] = set()
        self.active_tunnels = 0

    async def serve_http(self, request: InboundRequest, w: ResponseWriter):
        """处理一个请求"""
        logger.info(f"收到请求: host={request.host}")

        if request.method != "CONNECT":
            logger.info(f"不允许的方法: {request.method}")
            http_error(w, status_text(HTTPStatus.METHOD_NOT_ALLOWED), HTTPStatus.METHOD_NOT_ALLOWED)
            return

        credentials = self.config.credentials
        if credentials.enabled:
            user, password, ok = parse_basic_proxy_auth(request.get_header(PROXY_AUTH_HEADER))
            if not ok or not credentials.matches(user, password):
                logger.warning("使用无效凭据的认证尝试")
                http_error(w, status_text(HTTPStatus.PROXY_AUTHENTICATION_REQUIRED),
                           HTTPStatus.PROXY_AUTHENTICATION_REQUIRED)
                return

        await self.connect(request, w)

    async def connect(self, request: InboundRequest, w: ResponseWriter):
        """拨号目标并把客户端连接转换为隧道"""
        host = request.host
        logger.debug(f"正在连接: {host}")

        try:
            dest_reader, dest_writer = await dial(host, self.config.dest_dial_timeout)
        except DialError as e:
            logger.error(f"目标拨号失败: {e}")
            http_error(w, str(e), HTTPStatus.SERVICE_UNAVAILABLE)
            return

        dest_conn = DeadlineConnection(dest_reader, dest_writer, name=f"dest {host}")
        logger.debug(f"已连接: {host}")

        w.write_header(HTTPStatus.OK, "Connection established")

        logger.debug(f"正在接管连接: {host}")

        if not isinstance(w, Hijacker):
            logger.error("不支持连接接管")
            await dest_conn.close()
            http_error(w, "Hijacking not supported", HTTPStatus.INTERNAL_SERVER_ERROR)
            return

        try:
            client_reader, client_writer = await w.hijack()
        except HijackError as e:
            logger.error(f"连接接管失败: {e}")
            await dest_conn.close()
            http_error(w, str(e), HTTPStatus.SERVICE_UNAVAILABLE)
            return

        logger.debug(f"已接管连接: {host}")

        client_conn = DeadlineConnection(client_reader, client_writer, name=f"client {request.peer}")

        now = asyncio.get_running_loop().time()
        client_conn.set_read_deadline(_deadline(now, self.config.client_read_timeout))
        client_conn.set_write_deadline(_deadline(now, self.config.client_write_timeout))
        dest_conn.set_read_deadline(_deadline(now, self.config.dest_read_timeout))
        dest_conn.set_write_deadline(_deadline(now, self.config.dest_write_timeout))

        self._start_relay(client_conn, dest_conn)

    def _start_relay(self, client_conn: DeadlineConnection, dest_conn: DeadlineConnection):
        self.active_tunnels += 1
        remaining = 2

        def done(task: asyncio.Task):
            nonlocal remaining
            self._relay_tasks.discard(task)
            remaining -= 1
            if remaining == 0:
                self.active_tunnels -= 1
                logger.debug(f"隧道已关闭: {dest_conn.name}")

        for coro in (transfer(dest_conn, client_conn), transfer(client_conn, dest_conn)):
            task = asyncio.create_task(coro)
            self._relay_tasks.add(task)
            task.add_done_callback(done)

    async def shutdown(self):
        """进程退出时取消仍在运行的转发任务"""
        tasks = list(self._relay_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
