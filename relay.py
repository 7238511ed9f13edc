"""
双向转发

每条隧道运行两个 transfer 任务（客户端 -> 目标、目标 -> 客户端），
两者之间没有同步。任一方向结束时关闭它接触的两个端点，
另一方向阻塞中的读写随之失败或读到 EOF，进而执行自己的关闭。
"""

import asyncio
import logging

from connection import DeadlineConnection

logger = logging.getLogger('forward-proxy-relay')

BUFFER_SIZE = 32 * 1024


async def transfer(dest: DeadlineConnection, src: DeadlineConnection, buffer_size: int = BUFFER_SIZE) -> int:
    """
    将 src 的数据复制到 dest，直到 EOF 或出错

    无论以何种方式结束都会关闭两个端点；复制和关闭的错误不会向上传播。

    Returns:
        int: 复制的字节数
    """
    copied = 0
    try:
        while True:
            data = await src.read(buffer_size)
            if not data:
                break
            await dest.write(data)
            copied += len(data)
    except (ConnectionResetError, BrokenPipeError, asyncio.TimeoutError, OSError) as e:
        logger.debug(f"转发 {src.name} -> {dest.name} 中止: {e}")
    except Exception as e:
        logger.debug(f"转发 {src.name} -> {dest.name} 意外错误: {e}")
    finally:
        await dest.close()
        await src.close()

    logger.debug(f"转发 {src.name} -> {dest.name} 结束，共 {copied} 字节")
    return copied
