#!/usr/bin/env python3
"""
HTTPS 转发代理服务端

版本: 1.0.0

协议:
1. 客户端发送 HTTP CONNECT host:port（可选 Basic 认证）
2. 代理拨号目标，回复 200
3. 此后连接成为不透明的双向字节隧道

功能:
- 可选的 Basic 认证
- 可选的 TLS 监听（证书由 generate_certs.py 生成）
- 目标拨号超时及客户端/目标各自的读写截止时间
- 非 CONNECT 请求支持 HTTP/1.1 keep-alive
"""

import argparse
import asyncio
import logging
import os
import ssl
from http import HTTPStatus
from typing import Optional, Set

from config import ProxyConfig, ServerConfig, load_config, parse_listen_address
from http_protocol import (
    BadRequestError, ResponseWriter, StreamResponseWriter, http_error, read_request, status_text
)
from logger import LoggerManager, add_context, clear_context
from proxy import Proxy

logger = logging.getLogger('forward-proxy-server')


class ProxyServer:
    """HTTPS 转发代理服务端"""

    def __init__(self, config: ServerConfig, proxy_config: ProxyConfig):
        self.config = config
        self.proxy = Proxy(proxy_config)
        self.ssl_context = self._create_ssl_context() if config.tls_enabled else None
        self.server: Optional[asyncio.AbstractServer] = None
        self._client_tasks: Set[asyncio.Task] = set()

    def _create_ssl_context(self) -> ssl.SSLContext:
        """创建 SSL 上下文"""
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2  # 最低 TLS 1.2
        ctx.load_cert_chain(self.config.cert_file, self.config.key_file)
        return ctx

    @property
    def sockets(self):
        return self.server.sockets if self.server else ()

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """处理客户端连接，按顺序服务其上的请求，直到连接被接管或关闭"""
        task = asyncio.current_task()
        self._client_tasks.add(task)

        peer = writer.get_extra_info('peername')
        peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        clear_context()
        add_context(peer=peer_str)
        logger.debug(f"来自 {peer_str} 的连接")

        timeout = self.config.read_header_timeout
        hijacked = False
        try:
            while True:
                try:
                    request = await asyncio.wait_for(
                        read_request(reader, self.config.max_header_bytes, peer_str),
                        timeout=timeout if timeout > 0 else None
                    )
                except asyncio.TimeoutError:
                    logger.debug(f"读取请求超时: {peer_str}")
                    break
                except BadRequestError as e:
                    logger.warning(f"错误的请求: {e}")
                    w = ResponseWriter(writer)
                    w.headers["Connection"] = "close"
                    http_error(w, status_text(HTTPStatus.BAD_REQUEST), HTTPStatus.BAD_REQUEST)
                    await w.finish()
                    break

                if request is None:
                    break

                add_context(host=request.host)
                w = StreamResponseWriter(reader, writer, request)
                await self.proxy.serve_http(request, w)

                if w.hijacked:
                    # 连接的所有权已转移给转发任务
                    hijacked = True
                    return

                await w.finish()
                if not request.keep_alive:
                    break

        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            logger.debug(f"连接错误: {e}")
        except Exception as e:
            logger.error(f"处理连接时出错: {e}", exc_info=True)
        finally:
            self._client_tasks.discard(task)
            if not hijacked:
                try:
                    writer.close()
                    await writer.wait_closed()
                except (ConnectionResetError, BrokenPipeError, OSError):
                    pass  # 连接已断开，忽略错误

    async def start(self):
        """启动监听"""
        self.server = await asyncio.start_server(
            self.handle_client,
            self.config.host,
            self.config.port,
            ssl=self.ssl_context,
        )
        addr = self.server.sockets[0].getsockname()
        scheme = "https" if self.ssl_context else "http"
        logger.info(f"转发代理运行在 {scheme}://{addr[0]}:{addr[1]}")
        if self.proxy.config.credentials.enabled:
            logger.info("已启用 Basic 认证")

    async def stop(self):
        """停止监听并关闭所有连接"""
        if self.server is None:
            return
        self.server.close()

        tasks = list(self._client_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.proxy.shutdown()
        await self.server.wait_closed()
        self.server = None
        logger.info("转发代理已停止")

    async def run(self):
        """启动并持续服务"""
        await self.start()
        try:
            await self.server.serve_forever()
        finally:
            await self.stop()


def build_configs(args, config_data: dict):
    """合并配置文件和命令行参数，命令行优先"""
    server_config = ServerConfig.from_dict(config_data.get('server'))
    proxy_config = ProxyConfig.from_dict(config_data.get('proxy'))

    if args.addr:
        server_config.host, server_config.port = parse_listen_address(args.addr)
    if args.cert:
        server_config.cert_file = args.cert
    if args.key:
        server_config.key_file = args.key
    if args.user is not None:
        proxy_config = proxy_config.replace(auth_user=args.user)
    if args.password is not None:
        proxy_config = proxy_config.replace(auth_pass=args.password)

    return server_config, proxy_config


def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='HTTPS 转发代理服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--addr', default=None, help='监听地址（如 :8888）')
    parser.add_argument('--cert', default=None, help='TLS 证书文件')
    parser.add_argument('--key', default=None, help='TLS 私钥文件')
    parser.add_argument('--user', default=None, help='认证用户名（为空则禁用认证）')
    parser.add_argument('--pass', dest='password', default=None, help='认证密码（为空则禁用认证）')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args(argv)

    config_data = load_config(args.config)
    LoggerManager().initialize(log_config=config_data.get('logging'))

    # 设置调试级别
    if args.debug:
        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)
        for handler in root_logger.handlers:
            handler.setLevel(logging.DEBUG)

    try:
        server_config, proxy_config = build_configs(args, config_data)
    except ValueError as e:
        logger.error(f"配置无效: {e}")
        return 1

    # 检查证书文件是否存在
    if server_config.tls_enabled:
        for path in (server_config.cert_file, server_config.key_file):
            if not os.path.exists(path):
                logger.error(f"未找到证书文件: {path}")
                return 1
    elif server_config.cert_file or server_config.key_file:
        logger.error("TLS 需要同时配置证书和私钥")
        return 1

    server = ProxyServer(server_config, proxy_config)

    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        logger.info("服务端已停止")

    return 0


if __name__ == '__main__':
    exit(main())
