"""
手办化插件
发送指令后使用附带/引用的图片，或在限定时间内等待用户发送图片，调用 xxapi 生成手办化图片
版本: 1.0.0
"""
import re

import aiohttp

from astrbot import logger
from astrbot.api.event import filter
from astrbot.api.star import Context, Star, register
from astrbot.core.message.components import Image
from astrbot.core.platform.astr_message_event import AstrMessageEvent

from .figurine_client import FigurineClient
from .image_validator import ImageValidator
from .orchestrator import FigurineOrchestrator, parse_style
from .session_registry import SessionRegistry
from .settings import ConfigError, FigurineSettings

COMMAND_PREFIX = re.compile(r'^[/#]?\s*(手办化\d*|figurine)\s*', re.IGNORECASE)


class EventReplier:
    """把编排器的回复发回消息来源会话"""

    def __init__(self, event: AstrMessageEvent):
        self.event = event

    async def send_text(self, text: str):
        await self.event.send(self.event.plain_result(text))

    async def send_image(self, data: str):
        if data.startswith(("http://", "https://")):
            image = Image.fromURL(data)
        elif data.startswith("data:image/") and "," in data:
            image = Image.fromBase64(data.split(",", 1)[1])
        elif data.startswith("base64://"):
            image = Image.fromBase64(data[9:])
        else:
            image = Image(file=data)
        await self.event.send(self.event.chain_result([image]))


@register(
    "astrbot_plugin_figurine",
    "aka",
    "手办化插件 - 将图片转换为手办风格",
    "1.0.0",
)
class Main(Star):
    """手办化插件"""

    # ================== 初始化 ==================

    def __init__(self, context: Context, config: dict):
        super().__init__(context)
        self.config = config
        try:
            self.settings = FigurineSettings.from_config(config)
        except ConfigError as e:
            logger.error(f"[Figurine] ERROR: {e}")
            logger.error("[Figurine] 请在插件配置中填写 api_key 后重新加载插件")
            raise

        self._http_session = None
        self.registry = SessionRegistry()
        self.orchestrator = FigurineOrchestrator(
            self.settings,
            self.registry,
            ImageValidator(self.settings, self._get_session),
            FigurineClient(self.settings.api_key, self.settings.api_timeout_seconds,
                           self._get_session, self.settings.api_url),
        )

    async def initialize(self):
        """插件激活时调用"""
        logger.info(f"[Figurine] 插件已激活，风格数: {self.settings.style_count}，"
                    f"等待时间: {self.settings.wait_seconds:g}s，冷却时间: {self.settings.cooldown_seconds:g}s")

    async def _get_session(self) -> aiohttp.ClientSession:
        """获取或创建HTTP session"""
        if not self._http_session or self._http_session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                ttl_dns_cache=300,
            )
            self._http_session = aiohttp.ClientSession(connector=connector)
        return self._http_session

    # ================== 手办化命令 ==================

    async def _handle_figurine(self, event: AstrMessageEvent, style):
        reply = await self.orchestrator.handle_command(
            event.get_sender_id(),
            style,
            event.message_obj.message,
            event.get_message_str(),
            EventReplier(event),
        )
        if reply:
            yield event.plain_result(reply)

    @filter.command("手办化", alias={"figurine"})
    async def cmd_figurine(self, event: AstrMessageEvent):
        """手办化 [风格]"""
        raw = event.get_message_str().strip()
        style = parse_style(COMMAND_PREFIX.sub("", raw, count=1))
        async for r in self._handle_figurine(event, style):
            yield r

    @filter.command("手办化1")
    async def cmd_figurine_1(self, event: AstrMessageEvent):
        async for r in self._handle_figurine(event, 1):
            yield r

    @filter.command("手办化2")
    async def cmd_figurine_2(self, event: AstrMessageEvent):
        async for r in self._handle_figurine(event, 2):
            yield r

    @filter.command("手办化3")
    async def cmd_figurine_3(self, event: AstrMessageEvent):
        async for r in self._handle_figurine(event, 3):
            yield r

    @filter.command("手办化4")
    async def cmd_figurine_4(self, event: AstrMessageEvent):
        async for r in self._handle_figurine(event, 4):
            yield r

    @filter.command("手办化重置")
    async def cmd_reset(self, event: AstrMessageEvent):
        """清除自己的等待/处理中状态"""
        yield event.plain_result(self.orchestrator.reset(event.get_sender_id()))

    @filter.command("手办化帮助")
    async def cmd_help(self, event: AstrMessageEvent):
        """显示帮助"""
        count = self.settings.style_count
        yield event.plain_result(
            "🎨 手办化插件\n"
            "━━━━━━━━━━\n"
            f"#手办化 [1-{count}] [图片]  使用指定风格\n"
            "#手办化1 ~ #手办化4      快捷指令\n"
            "#手办化重置             清除卡住的任务\n"
            "━━━━━━━━━━\n"
            "可以直接附带图片、引用一张图片，\n"
            f"或发送指令后在{self.settings.wait_seconds:g}秒内补发图片"
        )

    # ================== 等待图片 ==================

    @filter.event_message_type(filter.EventMessageType.ALL)
    async def on_message(self, event: AstrMessageEvent):
        """收到等待中用户的图片时继续处理"""
        user_id = event.get_sender_id()
        if not user_id or not self.registry.has_wait(user_id):
            return

        text = event.get_message_str().strip()
        if COMMAND_PREFIX.match(text):
            # 指令消息由指令处理器负责
            return

        await self.orchestrator.handle_message(
            user_id, event.message_obj.message, text, EventReplier(event))

    # ================== 生命周期 ==================

    async def terminate(self):
        """插件卸载"""
        self.registry.shutdown()

        if self._http_session and not self._http_session.closed:
            await self._http_session.close()

        logger.info("[Figurine] 插件已卸载，资源已清理")
