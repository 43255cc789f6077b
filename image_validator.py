"""
图片引用校验
决定一张图片能否交给手办化接口，并把本地文件转换为 base64
"""
import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple

import aiohttp

from astrbot import logger

from .image_locator import ImageReference, InlineImage, LocalPath, RemoteUrl
from .settings import FigurineSettings

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp", "image/bmp"}

EXTENSION_MIME = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
}

PROBE_TIMEOUT = 5

MSG_UNSUPPORTED = "❌ 不支持的图片格式"
MSG_INLINE_FORBIDDEN = "❌ 请直接发送图片附件，不要粘贴 base64 编码的图片数据"
MSG_LOCAL_FORBIDDEN = "❌ 无法使用本地图片，请重新发送图片附件"
MSG_LOCAL_UNREADABLE = "❌ 读取图片失败，请重新发送"

SessionGetter = Callable[[], Awaitable[aiohttp.ClientSession]]


def guess_mime(path: str) -> str:
    """根据扩展名确定 MIME 类型，无法识别时使用 image/jpeg"""
    ext = Path(path).suffix.lower().lstrip(".")
    return EXTENSION_MIME.get(ext, "image/jpeg")


class ImageValidator:
    """图片引用校验器，返回 (是否通过, 规范化后的引用 或 拒绝原因)"""

    def __init__(self, settings: FigurineSettings, session_getter: Optional[SessionGetter] = None):
        self.settings = settings
        self._get_session = session_getter

    def _size_ok(self, size: int) -> bool:
        return 1 <= size <= self.settings.max_image_bytes

    def _too_large_message(self) -> str:
        return f"❌ 图片大小不符合要求（上限 {self.settings.max_image_size_mb:g}MB）"

    async def validate(self, reference: ImageReference) -> Tuple[bool, Any]:
        if isinstance(reference, RemoteUrl):
            return await self._validate_remote(reference)

        if isinstance(reference, InlineImage):
            if not self.settings.allow_inline_images:
                return False, MSG_INLINE_FORBIDDEN
            if not self._size_ok(len(reference.data)):
                return False, self._too_large_message()
            return True, reference

        if isinstance(reference, LocalPath):
            if not self.settings.allow_inline_images:
                return False, MSG_LOCAL_FORBIDDEN
            return await self._load_local(reference)

        logger.warning(f"[Figurine] 不支持的图片格式: {str(reference)[:100]}")
        return False, MSG_UNSUPPORTED

    async def _load_local(self, reference: LocalPath) -> Tuple[bool, Any]:
        try:
            data = await asyncio.to_thread(Path(reference.path).read_bytes)
        except OSError as e:
            logger.warning(f"[Figurine] 读取本地图片失败: {reference.path}, 错误: {e}")
            return False, MSG_LOCAL_UNREADABLE

        if not self._size_ok(len(data)):
            return False, self._too_large_message()
        mime = guess_mime(reference.path)
        logger.debug(f"[Figurine] 本地图片转换为base64: size={len(data)}, mime={mime}")
        return True, InlineImage(data, mime)

    async def _validate_remote(self, reference: RemoteUrl) -> Tuple[bool, Any]:
        if not self.settings.probe_image_url or self._get_session is None:
            return True, reference

        content_type, length = await self.probe(reference.url)
        if content_type and content_type not in ALLOWED_CONTENT_TYPES:
            return False, f"❌ 链接内容不是支持的图片类型 ({content_type})"
        if length is not None and not self._size_ok(length):
            return False, self._too_large_message()
        return True, reference

    async def probe(self, url: str) -> Tuple[Optional[str], Optional[int]]:
        """
        用 HEAD 请求获取图片类型和大小

        任何失败都返回 (None, None)，即"信息未知"，不阻止请求
        """
        try:
            session = await self._get_session()
            async with session.head(url, allow_redirects=True,
                                    timeout=aiohttp.ClientTimeout(total=PROBE_TIMEOUT)) as resp:
                if resp.status >= 400:
                    return None, None
                content_type = resp.headers.get("Content-Type", "")
                content_type = content_type.split(";", 1)[0].strip().lower() or None
                raw_length = resp.headers.get("Content-Length")
                length = int(raw_length) if raw_length and raw_length.isdigit() else None
                return content_type, length
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.debug(f"[Figurine] 图片探测失败，按允许处理: {url[:100]}, 错误: {e}")
            return None, None
