"""
手办化会话登记表
记录每个用户的"等待图片"状态和"处理中"标记，并管理对应的定时器
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Set

from astrbot import logger

ExpireCallback = Callable[[], Awaitable[None]]


@dataclass
class PendingWait:
    """等待用户发送图片的状态（每个用户最多一个）"""
    style: int
    expires_at: float
    on_expire: Optional[ExpireCallback] = None
    handle: Optional[asyncio.TimerHandle] = None
    token: Optional[int] = None


class SessionRegistry:
    """
    进程内的用户会话登记表

    所有操作都是同步的，在事件循环中一步完成，调用方在检查和修改之间不会被其他事件打断。
    用户从指令被接受开始就处于"处理中"，等待图片期间也保持该标记，直到出结果、超时或重置。
    """

    def __init__(self):
        self._waits: Dict[str, PendingWait] = {}
        self._in_flight: Dict[str, int] = {}
        self._next_token = 0
        self._release_handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ================== 等待图片 ==================

    def begin_wait(self, user_id: str, style: int, ttl: float,
                   on_expire: Optional[ExpireCallback] = None) -> PendingWait:
        """开始等待图片，替换该用户已有的等待"""
        if self._closed:
            raise RuntimeError("session registry is shut down")

        self._cancel_wait(user_id)
        loop = asyncio.get_running_loop()
        wait = PendingWait(style=style, expires_at=loop.time() + ttl, on_expire=on_expire)
        wait.handle = loop.call_later(ttl, self._expire, user_id, wait)
        self._waits[user_id] = wait
        if user_id not in self._in_flight:
            self._next_token += 1
            self._in_flight[user_id] = self._next_token
        wait.token = self._in_flight[user_id]
        return wait

    def has_wait(self, user_id: str) -> bool:
        return user_id in self._waits

    def consume_wait(self, user_id: str) -> Optional[int]:
        """取出等待中的风格；没有等待时返回 None"""
        wait = self._waits.pop(user_id, None)
        if wait is None:
            return None
        wait.handle.cancel()
        return wait.style

    def _cancel_wait(self, user_id: str) -> bool:
        wait = self._waits.pop(user_id, None)
        if wait is None:
            return False
        wait.handle.cancel()
        return True

    def _expire(self, user_id: str, wait: PendingWait):
        if self._waits.get(user_id) is not wait:
            # 已被消费、替换或重置
            return
        del self._waits[user_id]
        self.end_in_flight(user_id, wait.token)
        logger.debug(f"[Figurine] 用户 {user_id} 等待图片超时")

        if wait.on_expire is not None:
            task = asyncio.create_task(self._notify(user_id, wait.on_expire))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _notify(self, user_id: str, callback: ExpireCallback):
        try:
            await callback()
        except Exception as e:
            logger.warning(f"[Figurine] 发送超时提示失败 (user={user_id}): {e}")

    # ================== 处理中标记 ==================

    def try_begin_in_flight(self, user_id: str) -> bool:
        """准入检查：用户已在处理中时返回 False 且不做任何修改"""
        if user_id in self._in_flight:
            return False
        self._next_token += 1
        self._in_flight[user_id] = self._next_token
        return True

    def is_in_flight(self, user_id: str) -> bool:
        return user_id in self._in_flight

    def in_flight_token(self, user_id: str) -> Optional[int]:
        """当前处理中请求的令牌；释放时传回，避免旧请求清除新请求的标记"""
        return self._in_flight.get(user_id)

    def end_in_flight(self, user_id: str, token: Optional[int] = None):
        """清除处理中标记（可重复调用）；令牌已过期时不做任何事"""
        if token is not None and self._in_flight.get(user_id) != token:
            return
        handle = self._release_handles.pop(user_id, None)
        if handle is not None:
            handle.cancel()
        self._in_flight.pop(user_id, None)

    def defer_end_in_flight(self, user_id: str, delay: float, token: Optional[int] = None):
        """冷却 delay 秒后再清除处理中标记"""
        if self._closed:
            return
        current = self._in_flight.get(user_id)
        if current is None or token is not None and current != token:
            return
        old = self._release_handles.pop(user_id, None)
        if old is not None:
            old.cancel()
        loop = asyncio.get_running_loop()
        self._release_handles[user_id] = loop.call_later(delay, self._release, user_id, current)

    def _release(self, user_id: str, token: int):
        if self._in_flight.get(user_id) != token:
            return
        self._release_handles.pop(user_id, None)
        self._in_flight.pop(user_id, None)
        logger.debug(f"[Figurine] 用户 {user_id} 处理状态已清除")

    # ================== 重置/清理 ==================

    def reset_user(self, user_id: str) -> bool:
        """清除用户的等待和处理中状态，返回是否有状态被清除"""
        had_wait = self._cancel_wait(user_id)
        was_in_flight = user_id in self._in_flight
        self.end_in_flight(user_id)
        return had_wait or was_in_flight

    def shutdown(self):
        """取消所有定时器并清空状态（插件卸载时调用一次）"""
        self._closed = True
        for wait in self._waits.values():
            wait.handle.cancel()
        for handle in self._release_handles.values():
            handle.cancel()
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        self._waits.clear()
        self._release_handles.clear()
        self._in_flight.clear()
        self._tasks.clear()
