"""
手办化流程编排
指令入口 / 等待图片入口 -> 定位 -> 校验 -> 调用接口 -> 发送结果
"""
import re
import time
from typing import Iterable, Optional, Protocol

from astrbot import logger

from .figurine_client import ErrorKind, FigurineClient
from .image_locator import InlineImage, RemoteUrl, locate_image
from .image_validator import ImageValidator
from .session_registry import SessionRegistry
from .settings import FigurineSettings

MSG_BUSY = "⏳ 手办化正在处理中，请等待当前任务完成后再试"
MSG_PROCESSING = "🎨 正在生成手办化图片，请稍候..."
MSG_EXPIRED = "⌛ 等待超时，请重新发送指令"
MSG_INTERNAL = "❌ 手办化处理失败，请稍后重试"
MSG_RESET = "✅ 已重置手办化状态，可以重新发送指令"
MSG_NOTHING_TO_RESET = "当前没有进行中的手办化任务"

STYLE_PATTERN = re.compile(r'^(?:style\s*=?\s*|风格\s*)?(\d+)(?=\s|$)', re.IGNORECASE)


class Replier(Protocol):
    async def send_text(self, text: str) -> None: ...

    async def send_image(self, data: str) -> None: ...


def parse_style(text: str, default: int = 1) -> Optional[int]:
    """解析风格参数，支持 "2" / "style=2" / "风格2"；参数格式错误时返回 None"""
    text = (text or "").strip()
    if not text:
        return default
    match = STYLE_PATTERN.match(text)
    if match:
        return int(match.group(1))
    if text.lower().startswith(("style", "风格")):
        return None
    # 其余内容（图片链接等）不是风格参数
    return default


class FigurineOrchestrator:
    """单次手办化请求的状态机"""

    def __init__(self, settings: FigurineSettings, registry: SessionRegistry,
                 validator: ImageValidator, client: FigurineClient):
        self.settings = settings
        self.registry = registry
        self.validator = validator
        self.client = client

    def _log_info(self, message: str):
        if self.settings.enable_log:
            logger.info(message)

    def usage(self) -> str:
        return f"❌ 风格编号应为 1-{self.settings.style_count}\n用法: #手办化 [风格] [图片]"

    def wait_prompt(self, style: int) -> str:
        return f"📷 请在{self.settings.wait_seconds:g}秒内发送一张图片，我将使用风格{style}进行手办化处理"

    # ================== 入口 ==================

    async def handle_command(self, user_id: str, style: Optional[int], chain: Optional[Iterable],
                             content: str, replier: Replier) -> Optional[str]:
        """
        指令入口

        返回需要立即回复的文本（忙碌提示、等待提示等）；已直接处理完时返回 None
        """
        if style is None or not 1 <= style <= self.settings.style_count:
            return self.usage()

        if not self.registry.try_begin_in_flight(user_id):
            self._log_info(f"[Figurine] 用户 {user_id} 正在处理中，拒绝新请求")
            return MSG_BUSY

        self._log_info(f"[Figurine] 用户 {user_id} 请求手办化风格{style}")
        try:
            reference = locate_image(chain, content)
            if reference is None:
                self.registry.begin_wait(
                    user_id, style, self.settings.wait_seconds,
                    on_expire=lambda: replier.send_text(MSG_EXPIRED),
                )
                return self.wait_prompt(style)
        except Exception:
            logger.error(f"[Figurine] 处理手办化指令失败 (user={user_id})", exc_info=True)
            self.registry.reset_user(user_id)
            return MSG_INTERNAL

        await self.process(user_id, style, reference, replier, self.registry.in_flight_token(user_id))
        return None

    async def handle_message(self, user_id: str, chain: Optional[Iterable], content: str,
                             replier: Replier) -> bool:
        """等待图片入口：消息中找到图片并成功取出等待时返回 True"""
        if not user_id or not self.registry.has_wait(user_id):
            return False

        reference = locate_image(chain, content)
        if reference is None:
            return False

        style = self.registry.consume_wait(user_id)
        if style is None:
            return False

        self._log_info(f"[Figurine] 收到用户 {user_id} 等待中的图片，风格{style}")
        await self.process(user_id, style, reference, replier, self.registry.in_flight_token(user_id))
        return True

    def reset(self, user_id: str) -> str:
        if self.registry.reset_user(user_id):
            self._log_info(f"[Figurine] 用户 {user_id} 的状态已重置")
            return MSG_RESET
        return MSG_NOTHING_TO_RESET

    # ================== 处理 ==================

    async def process(self, user_id: str, style: int, reference, replier: Replier,
                      token: Optional[int] = None) -> Optional[ErrorKind]:
        """
        校验并提交一张图片，调用方必须已将用户标记为处理中

        成功时返回 None 并在冷却后解除处理中标记；失败时返回错误类别并立即解除。
        token 是准入时拿到的令牌，重置后被新请求取代时不会误清新请求的标记
        """
        cooling_down = False
        try:
            await replier.send_text(MSG_PROCESSING)

            ok, value = await self.validator.validate(reference)
            if not ok:
                self._log_info(f"[Figurine] 图片校验未通过 (user={user_id}): {value}")
                await replier.send_text(value)
                return ErrorKind.UNSUPPORTED_FORMAT

            if isinstance(value, InlineImage):
                image_url = value.to_data_url()
            elif isinstance(value, RemoteUrl):
                image_url = value.url
            else:
                raise TypeError(f"unexpected validated reference: {type(value).__name__}")

            start = time.time()
            result = await self.client.generate(style, image_url)
            elapsed = time.time() - start

            if not result.success:
                self._log_info(f"[Figurine] 手办化失败 (user={user_id}, {elapsed:.1f}s): "
                               f"{result.kind.value} code={result.code}")
                await replier.send_text(f"❌ {result.message}")
                return result.kind

            await replier.send_image(result.data)
            self._log_info(f"[Figurine] 手办化成功 (user={user_id}, 风格{style}, {elapsed:.1f}s, "
                           f"request_id={result.request_id})")
            self.registry.defer_end_in_flight(user_id, self.settings.cooldown_seconds, token)
            cooling_down = True
            return None
        except Exception:
            logger.error(f"[Figurine] 手办化处理异常 (user={user_id}, 风格{style})", exc_info=True)
            try:
                await replier.send_text(MSG_INTERNAL)
            except Exception as e:
                logger.warning(f"[Figurine] 发送失败提示失败: {e}")
            return ErrorKind.INTERNAL
        finally:
            if not cooling_down:
                self.registry.end_in_flight(user_id, token)
