"""
HTTP Basic 代理认证

提供凭据数据类以及 Basic 认证头的解析与构造。

认证头格式:
    "Basic " + base64(用户名 ":" 密码)
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Tuple

BASIC_PREFIX = "Basic "

# 代理读取凭据的请求头
PROXY_AUTH_HEADER = "Proxy-Authenticate"


@dataclass(frozen=True)
class Credentials:
    """
    用户名/密码对

    仅当用户名和密码都非空时才启用认证。
    """
    username: str = ""
    password: str = ""

    @property
    def enabled(self) -> bool:
        return self.username != "" and self.password != ""

    def matches(self, username: str, password: str) -> bool:
        """逐字节精确比较"""
        return username == self.username and password == self.password


def parse_basic_proxy_auth(auth: str) -> Tuple[str, str, bool]:
    """
    解析 HTTP Basic 认证字符串

    "Basic QWxhZGRpbjpvcGVuIHNlc2FtZQ==" 返回 ("Aladdin", "open sesame", True)。
    只在第一个冒号处分割，密码中可以包含冒号。

    Args:
        auth: 认证头的值

    Returns:
        Tuple[str, str, bool]: (用户名, 密码, 是否成功)，失败时返回 ("", "", False)
    """
    if not auth or not auth.startswith(BASIC_PREFIX):
        return "", "", False

    try:
        decoded = base64.b64decode(auth[len(BASIC_PREFIX):], validate=True)
    except (binascii.Error, ValueError):
        return "", "", False

    text = decoded.decode('utf-8', errors='surrogateescape')
    username, sep, password = text.partition(':')
    if not sep:
        return "", "", False
    return username, password, True


def basic_auth_value(username: str, password: str) -> str:
    """构造 Basic 认证头的值（parse_basic_proxy_auth 的逆操作）"""
    token = base64.b64encode(f"{username}:{password}".encode('utf-8')).decode('ascii')
    return BASIC_PREFIX + token
