"""
图片定位
从指令消息、引用消息或消息文本中找出第一张图片
"""
import base64
import binascii
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Union

from astrbot import logger
from astrbot.core.message.components import Image, Reply

URL_PATTERN = re.compile(r'https?://[^\s<>"\']+?\.(?:jpg|jpeg|png|gif|webp)(?![\w./-])(?:\?[^\s<>"\']*)?', re.IGNORECASE)
DATA_URL_PATTERN = re.compile(r'data:(image/[\w.+-]+);base64,([A-Za-z0-9+/=]+)', re.IGNORECASE)


@dataclass(frozen=True)
class RemoteUrl:
    url: str


@dataclass(frozen=True)
class InlineImage:
    data: bytes
    mime: str = "image/jpeg"

    def to_data_url(self) -> str:
        return f"data:{self.mime};base64,{base64.b64encode(self.data).decode()}"


@dataclass(frozen=True)
class LocalPath:
    path: str


@dataclass(frozen=True)
class UnsupportedReference:
    raw: str


ImageReference = Union[RemoteUrl, InlineImage, LocalPath, UnsupportedReference]


def _decode_base64(payload: str) -> Optional[bytes]:
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None


def classify_reference(raw: str) -> Optional[ImageReference]:
    """把原始字符串归类为图片引用；无法识别时返回 None"""
    if not raw:
        return None
    src = raw.strip()

    if src.startswith(("http://", "https://")):
        return RemoteUrl(src)

    if src.startswith("data:image/"):
        match = DATA_URL_PATTERN.fullmatch(src)
        data = _decode_base64(match.group(2)) if match else None
        if data:
            return InlineImage(data, match.group(1).lower())
        return UnsupportedReference(src)

    if src.startswith("base64://"):
        data = _decode_base64(src[9:])
        if data:
            return InlineImage(data)
        return UnsupportedReference(src)

    if src.startswith("file://"):
        path = src[7:]
        if re.match(r'^/+[A-Za-z]:', path):
            path = path.lstrip("/")
        elif path.startswith("//"):
            path = "/" + path.lstrip("/")
        return LocalPath(path)

    try:
        if Path(src).is_absolute() and Path(src).is_file():
            return LocalPath(src)
    except (OSError, ValueError):
        pass
    return None


def _from_component(seg: Image) -> Optional[ImageReference]:
    candidates = [getattr(seg, attr, None) for attr in ("url", "file", "path")]
    candidates = [c for c in candidates if isinstance(c, str) and c]
    for src in candidates:
        ref = classify_reference(src)
        if ref is not None:
            return ref
    if candidates:
        # 有图片但格式无法识别，交给校验环节拒绝
        return UnsupportedReference(candidates[0])
    return None


def _first_in_chain(chain: Iterable) -> Optional[ImageReference]:
    for seg in chain:
        if isinstance(seg, Image):
            ref = _from_component(seg)
            if ref is not None:
                return ref
    return None


def find_in_text(content: str) -> List[ImageReference]:
    """从消息文本中匹配图片链接和 base64 图片"""
    found: List[ImageReference] = []
    if not content:
        return found
    for match in URL_PATTERN.finditer(content):
        found.append(RemoteUrl(match.group(0)))
    for match in DATA_URL_PATTERN.finditer(content):
        data = _decode_base64(match.group(2))
        if data:
            found.append(InlineImage(data, match.group(1).lower()))
        else:
            found.append(UnsupportedReference(match.group(0)))
    return found


def locate_image(chain: Optional[Iterable], content: str = "") -> Optional[ImageReference]:
    """
    按优先级查找图片：
    1. 指令消息中附带的图片
    2. 引用（回复）消息中的第一张图片
    3. 消息文本中的图片链接 / base64 图片
    都没有时返回 None，由调用方转入等待
    """
    chain = list(chain or [])

    ref = _first_in_chain(chain)
    if ref is not None:
        logger.debug(f"[Figurine] 从消息附件中找到图片: {type(ref).__name__}")
        return ref

    for seg in chain:
        if isinstance(seg, Reply) and getattr(seg, "chain", None):
            ref = _first_in_chain(seg.chain)
            if ref is not None:
                logger.debug(f"[Figurine] 从引用消息中找到图片: {type(ref).__name__}")
                return ref

    found = find_in_text(content)
    if found:
        logger.debug(f"[Figurine] 从消息文本中找到 {len(found)} 张图片")
        return found[0]

    return None
