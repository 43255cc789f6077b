"""
手办化插件配置
把 AstrBot 插件配置解析为只读的 FigurineSettings
"""
from dataclasses import dataclass
from typing import Any, Mapping

FIGURINE_API_URL = "https://v2.xxapi.cn/api/generateFigurineImage"


class ConfigError(ValueError):
    """插件配置无效，插件不应被激活"""


def _unwrap(value: Any) -> Any:
    """兼容 {"default": ...} 形式的配置项"""
    if isinstance(value, dict) and "default" in value:
        return value["default"]
    return value


def _as_number(config: Mapping[str, Any], key: str, default: float,
               low: float = None, high: float = None) -> float:
    raw = _unwrap(config.get(key, default))
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"配置项 {key} 必须是数字，当前值: {raw!r}")
    if low is not None:
        value = max(low, value)
    if high is not None:
        value = min(high, value)
    return value


def _as_bool(config: Mapping[str, Any], key: str, default: bool) -> bool:
    raw = _unwrap(config.get(key, default))
    if isinstance(raw, str):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return bool(raw)


@dataclass(frozen=True)
class FigurineSettings:
    api_key: str
    api_url: str = FIGURINE_API_URL
    cooldown_seconds: float = 5.0
    wait_seconds: float = 10.0
    api_timeout_seconds: int = 30
    max_image_size_mb: float = 10.0
    allow_inline_images: bool = False
    probe_image_url: bool = True
    style_count: int = 4
    enable_log: bool = True

    @property
    def max_image_bytes(self) -> int:
        return int(self.max_image_size_mb * 1024 * 1024)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "FigurineSettings":
        """
        解析插件配置

        缺少 api_key 时抛出 ConfigError
        """
        api_key = _unwrap(config.get("api_key", ""))
        if not isinstance(api_key, str) or not api_key.strip():
            raise ConfigError("未配置 api_key，手办化插件无法启用")

        api_url = str(_unwrap(config.get("api_url", "")) or FIGURINE_API_URL).strip()

        max_size = _as_number(config, "max_image_size_mb", 10)
        if max_size <= 0:
            raise ConfigError(f"max_image_size_mb 必须大于 0，当前值: {max_size}")

        return cls(
            api_key=api_key.strip(),
            api_url=api_url,
            cooldown_seconds=_as_number(config, "cooldown_seconds", 5, 1, 60),
            wait_seconds=_as_number(config, "wait_seconds", 10, 3, 120),
            # 接口超时按整秒计
            api_timeout_seconds=int(_as_number(config, "api_timeout_seconds", 30, 5, 300)),
            max_image_size_mb=max_size,
            allow_inline_images=_as_bool(config, "allow_inline_images", False),
            probe_image_url=_as_bool(config, "probe_image_url", True),
            style_count=int(_as_number(config, "style_count", 4, 1)),
            enable_log=_as_bool(config, "enable_log", True),
        )
