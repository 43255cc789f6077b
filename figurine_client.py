"""
xxapi 手办化接口客户端
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

import aiohttp

from astrbot import logger

from .settings import FIGURINE_API_URL


class ErrorKind(str, Enum):
    UNSUPPORTED_FORMAT = "unsupported_format"
    REMOTE_TRANSPORT = "remote_transport"
    REMOTE_REJECTED = "remote_rejected"
    EMPTY_RESULT = "empty_result"
    INTERNAL = "internal"


# 接口返回码 -> 提示信息
ERROR_MESSAGES: Dict[int, str] = {
    -2: "请求参数错误，请检查风格编号后重试",
    -4: "图片链接无效，请确认发送的是图片本身而不是网页链接",
    -6: "图片未通过审核或大小不符合要求，请更换图片",
    -8: "API 密钥无效或已过期，请联系管理员检查配置",
}

MSG_TRANSPORT = "手办化请求失败，图片可能过大或网络较慢，请稍后重试"
MSG_EMPTY = "手办化失败: 未获取到生成图片"


def message_for_code(code: int, server_msg: str = "") -> str:
    if code in ERROR_MESSAGES:
        return f"手办化失败: {ERROR_MESSAGES[code]}"
    if server_msg:
        return f"手办化失败: {server_msg}"
    return f"手办化失败: 错误码 {code}"


@dataclass
class FigurineResult:
    success: bool
    data: str = ""
    kind: Optional[ErrorKind] = None
    message: str = ""
    code: Optional[int] = None
    request_id: str = ""

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, code: Optional[int] = None,
                request_id: str = "") -> "FigurineResult":
        return cls(False, kind=kind, message=message, code=code, request_id=request_id)


class FigurineClient:
    """调用手办化接口 (GET style/url/key)"""

    def __init__(self, api_key: str, timeout: int,
                 session_getter: Callable[[], Awaitable[aiohttp.ClientSession]],
                 api_url: str = FIGURINE_API_URL):
        self.api_key = api_key
        self.timeout = timeout
        self.api_url = api_url
        self._get_session = session_getter

    async def generate(self, style: int, image_url: str) -> FigurineResult:
        params = {"style": style, "url": image_url, "key": self.api_key}
        try:
            session = await self._get_session()
            async with session.get(self.api_url, params=params,
                                   timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                status = resp.status
                try:
                    payload = await resp.json(content_type=None)
                except ValueError:
                    payload = None
        except asyncio.TimeoutError:
            logger.warning(f"[Figurine] 接口请求超时 ({self.timeout}s)")
            return FigurineResult.failure(ErrorKind.REMOTE_TRANSPORT, MSG_TRANSPORT)
        except aiohttp.ClientError as e:
            logger.warning(f"[Figurine] 接口请求异常: {e}")
            return FigurineResult.failure(ErrorKind.REMOTE_TRANSPORT, MSG_TRANSPORT)

        if not isinstance(payload, dict):
            logger.error(f"[Figurine] 接口返回无法解析 (HTTP {status})")
            return FigurineResult.failure(
                ErrorKind.REMOTE_REJECTED, f"手办化失败: 接口返回异常 (HTTP {status})", code=status)

        request_id = str(payload.get("request_id") or "")
        try:
            code = int(payload.get("code"))
        except (TypeError, ValueError):
            code = status
        msg = str(payload.get("msg") or "")

        if code != 200:
            logger.error(f"[Figurine] 接口返回错误: code={code}, msg={msg}, request_id={request_id}")
            return FigurineResult.failure(
                ErrorKind.REMOTE_REJECTED, message_for_code(code, msg), code=code, request_id=request_id)

        data = payload.get("data")
        if not data or not isinstance(data, str):
            logger.error(f"[Figurine] 接口返回数据为空, request_id={request_id}")
            return FigurineResult.failure(ErrorKind.EMPTY_RESULT, MSG_EMPTY, code=code, request_id=request_id)

        return FigurineResult(True, data=data, code=code, request_id=request_id)
