"""
HTTPS 转发代理 - 配置管理模块
加载配置文件，构建进程级只读配置。

版本: 1.0.0

功能概述:
本模块提供了配置管理功能，包括：
1. 代理核心配置（认证凭据、拨号/读写超时）
2. 监听服务器配置（地址、端口、TLS 证书）
3. YAML 配置文件加载
4. 时长字符串解析（如 "10s"、"1m30s"、"500ms"）

配置文件格式:
- 使用 YAML 格式，包含 server / proxy / logging 三个段
- 凭据可由环境变量 PROXY_AUTH_USER / PROXY_AUTH_PASS 覆盖
"""

import dataclasses
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import yaml

from auth import Credentials

logger = logging.getLogger('forward-proxy-config')


# ============================================================================
# 时长解析
# ============================================================================

_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}

_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')


def parse_duration(value: Union[str, int, float, None]) -> float:
    """
    将时长解析为秒数

    支持以下格式:
    - 数字（int/float），单位为秒
    - 纯数字字符串，单位为秒（如 "30"）
    - 带单位的组合字符串（如 "1h2m3.5s"、"500ms"）

    Args:
        value: 时长值

    Returns:
        float: 秒数，None 或空字符串返回 0

    Raises:
        ValueError: 格式无效或为负数
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ValueError(f"无效的时长: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        if not text:
            return 0.0
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    raise ValueError(f"无效的时长: {value!r}")
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos == 0 or pos != len(text):
                raise ValueError(f"无效的时长: {value!r}")

    if seconds < 0:
        raise ValueError(f"时长不能为负数: {value!r}")
    return seconds


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass(frozen=True)
class ProxyConfig:
    """
    代理核心配置（进程启动时创建一次，之后只读）

    所有请求处理任务共享同一个实例，无需加锁。
    超时值 <= 0 表示不设上限。

    Attributes:
        auth_user: 认证用户名（空字符串表示禁用认证）
        auth_pass: 认证密码（空字符串表示禁用认证）
        dest_dial_timeout: 目标拨号超时（秒，默认: 10）
        dest_read_timeout: 目标读超时（秒，默认: 5）
        dest_write_timeout: 目标写超时（秒，默认: 5）
        client_read_timeout: 客户端读超时（秒，默认: 5）
        client_write_timeout: 客户端写超时（秒，默认: 5）
    """
    auth_user: str = ""
    auth_pass: str = ""
    dest_dial_timeout: float = 10.0
    dest_read_timeout: float = 5.0
    dest_write_timeout: float = 5.0
    client_read_timeout: float = 5.0
    client_write_timeout: float = 5.0

    @property
    def credentials(self) -> Credentials:
        return Credentials(self.auth_user, self.auth_pass)

    def replace(self, **changes) -> 'ProxyConfig':
        """返回修改了部分字段的新配置"""
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ProxyConfig':
        """
        从配置字典创建代理配置

        Args:
            data: 配置文件中的 proxy 段

        Returns:
            ProxyConfig: 代理配置对象
        """
        data = data or {}
        defaults = cls()

        def duration(key: str) -> float:
            if key not in data:
                return getattr(defaults, key)
            return parse_duration(data[key])

        return cls(
            auth_user=str(data.get('auth_user') or ''),
            auth_pass=str(data.get('auth_pass') or ''),
            dest_dial_timeout=duration('dest_dial_timeout'),
            dest_read_timeout=duration('dest_read_timeout'),
            dest_write_timeout=duration('dest_write_timeout'),
            client_read_timeout=duration('client_read_timeout'),
            client_write_timeout=duration('client_write_timeout'),
        )


@dataclass
class ServerConfig:
    """
    监听服务器配置数据类

    Attributes:
        host: 监听地址（默认: "0.0.0.0"）
        port: 监听端口（默认: 8888）
        cert_file: TLS 证书文件路径（可选，与 key_file 同时设置时启用 TLS）
        key_file: TLS 私钥文件路径（可选）
        read_header_timeout: 读取请求头及 keep-alive 空闲的超时（秒，默认: 30）
        max_header_bytes: 请求头最大字节数（默认: 1MB）
    """
    host: str = "0.0.0.0"
    port: int = 8888
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    read_header_timeout: float = 30.0
    max_header_bytes: int = 1 << 20

    @property
    def tls_enabled(self) -> bool:
        return bool(self.cert_file and self.key_file)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ServerConfig':
        """从配置字典创建服务器配置"""
        data = data or {}
        defaults = cls()
        return cls(
            host=data.get('host', defaults.host),
            port=int(data.get('port', defaults.port)),
            cert_file=data.get('cert_file') or None,
            key_file=data.get('key_file') or None,
            read_header_timeout=parse_duration(
                data.get('read_header_timeout', defaults.read_header_timeout)),
            max_header_bytes=int(data.get('max_header_bytes', defaults.max_header_bytes)),
        )


def parse_listen_address(addr: str) -> tuple:
    """
    解析监听地址（如 ":8888"、"127.0.0.1:8888"、"[::1]:8888"）

    Returns:
        tuple: (主机, 端口)，主机为空时使用 "0.0.0.0"
    """
    host, sep, port = addr.rpartition(':')
    if not sep:
        raise ValueError(f"监听地址缺少端口: {addr}")
    host = host.strip('[]') or '0.0.0.0'
    return host, int(port)


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据，并应用环境变量覆盖

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        data = {}

    if not isinstance(data, dict):
        logger.warning(f"配置文件顶层必须是映射: {config_file}")
        data = {}

    proxy_conf = dict(data.get('proxy') or {})
    if os.getenv('PROXY_AUTH_USER') is not None:
        proxy_conf['auth_user'] = os.getenv('PROXY_AUTH_USER')
    if os.getenv('PROXY_AUTH_PASS') is not None:
        proxy_conf['auth_pass'] = os.getenv('PROXY_AUTH_PASS')
    data['proxy'] = proxy_conf

    return data
