"""
认证挑战的内存缓存。

- 每个挑战只能使用一次：验证成功或失败后都会被移除。
- 过期的挑战在读取时被视为不存在并顺带移除。
- 后台清理线程按固定周期移除所有过期挑战，限制内存占用。
- 进程重启后所有未完成的挑战都会丢失。
"""

from __future__ import annotations

import secrets
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from loguru import logger

from .schemas import Challenge

CHALLENGE_SIZE = 32
SALT_SIZE = 16


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChallengeStore:
    """线程安全的挑战缓存，附带周期清理线程。"""

    def __init__(
        self,
        ttl: timedelta = timedelta(minutes=5),
        sweep_interval: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._challenges: Dict[str, Challenge] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def issue(self, username: str) -> Challenge:
        """
        生成并保存一个新的挑战。
        :param username: 与挑战绑定的用户名。
        :return: 新生成的挑战。
        """
        challenge = Challenge(
            challenge_id=str(uuid.uuid4()),
            nonce=secrets.token_bytes(CHALLENGE_SIZE),
            salt=secrets.token_bytes(SALT_SIZE),
            username=username,
            expires_at=self._clock() + self._ttl,
        )
        with self._lock:
            self._challenges[challenge.challenge_id] = challenge
        logger.debug(f"挑战已保存: {challenge.challenge_id}, 过期时间: {challenge.expires_at.isoformat()}")
        return challenge

    def retrieve(self, challenge_id: str) -> Challenge | None:
        """
        获取未过期的挑战。
        :return: 挑战；不存在或已过期时返回 None。
        """
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            if challenge is None:
                logger.debug(f"挑战不存在: {challenge_id}")
                return None
            if challenge.is_expired(self._clock()):
                del self._challenges[challenge_id]
                logger.debug(f"挑战已过期: {challenge_id}")
                return None
            return challenge

    def consume(self, challenge_id: str) -> Challenge | None:
        """
        原子地取出并移除挑战，同一挑战只有一个调用方能拿到。
        :return: 挑战；不存在或已过期时返回 None。
        """
        with self._lock:
            challenge = self._challenges.pop(challenge_id, None)
        if challenge is None:
            logger.debug(f"挑战不存在: {challenge_id}")
            return None
        if challenge.is_expired(self._clock()):
            logger.debug(f"挑战已过期: {challenge_id}")
            return None
        return challenge

    def invalidate(self, challenge_id: str) -> None:
        """移除挑战（幂等）。"""
        with self._lock:
            removed = self._challenges.pop(challenge_id, None)
        if removed is not None:
            logger.debug(f"挑战已作废: {challenge_id}")

    def sweep(self) -> int:
        """
        执行一次清理。
        :return: 本次移除的过期挑战数量。
        """
        now = self._clock()
        with self._lock:
            expired = [cid for cid, c in self._challenges.items() if c.is_expired(now)]
            for cid in expired:
                del self._challenges[cid]
        if expired:
            logger.debug(f"已清理 {len(expired)} 个过期挑战")
        return len(expired)

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self._sweep_interval):
            try:
                self.sweep()
            except Exception as e:
                logger.warning(f"清理过期挑战失败: {e}")

    def start(self) -> None:
        """启动后台清理线程（重复调用无副作用）。"""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="challenge-sweeper", daemon=True)
        self._sweeper.start()
        logger.info(f"挑战缓存清理任务已启动，interval={self._sweep_interval}s")

    def stop(self) -> None:
        """停止后台清理线程。"""
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
            logger.info("挑战缓存清理任务已停止")

    def clear(self) -> None:
        with self._lock:
            self._challenges.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)
