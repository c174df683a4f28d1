"""
公钥登记表：记录被列入黑名单的公钥指纹，以及已经绑定到证书请求的指纹。

同一指纹只要出现在黑名单中，或已绑定到一个未被拒绝的证书请求，就不能再次提交。
claim() 在同一把锁内完成检查与绑定，两个并发提交同一新公钥时只有一个能成功。
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from loguru import logger

from src.ra.errors import ConflictError
from .schemas import BlacklistEntry


class PublicKeyRegistry:
    def __init__(self):
        self._blacklist: Dict[str, BlacklistEntry] = {}
        self._bindings: Dict[str, str] = {}
        self._lock = threading.Lock()

    def is_blacklisted(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._blacklist

    def is_used(self, fingerprint: str) -> bool:
        """黑名单中或已绑定到未被拒绝的请求时返回 True。"""
        with self._lock:
            return fingerprint in self._blacklist or fingerprint in self._bindings

    def bound_request(self, fingerprint: str) -> Optional[str]:
        with self._lock:
            return self._bindings.get(fingerprint)

    def add_to_blacklist(self, fingerprint: str, reason: str, added_by: str) -> BlacklistEntry:
        """
        将指纹加入黑名单（已存在时返回原条目）。
        """
        with self._lock:
            existing = self._blacklist.get(fingerprint)
            if existing is not None:
                logger.warning(f"公钥指纹已在黑名单中: {fingerprint}")
                return existing
            entry = BlacklistEntry(
                public_key_hash=fingerprint,
                reason=reason,
                added_by=added_by,
                added_at=datetime.now(timezone.utc),
            )
            self._blacklist[fingerprint] = entry
        logger.info(f"公钥指纹已加入黑名单: {fingerprint}, by={added_by}, reason={reason}")
        return entry

    def remove_from_blacklist(self, fingerprint: str) -> bool:
        with self._lock:
            removed = self._blacklist.pop(fingerprint, None)
        if removed is not None:
            logger.info(f"公钥指纹已移出黑名单: {fingerprint}")
        return removed is not None

    def blacklist(self) -> List[BlacklistEntry]:
        with self._lock:
            return sorted(self._blacklist.values(), key=lambda e: e.added_at)

    def claim(self, fingerprint: str, request_id: str) -> None:
        """
        原子地将指纹绑定到证书请求。
        :raises ConflictError: 指纹已在黑名单中或已被其他请求占用。
        """
        with self._lock:
            if fingerprint in self._blacklist:
                raise ConflictError("该公钥已被列入黑名单")
            owner = self._bindings.get(fingerprint)
            if owner is not None and owner != request_id:
                raise ConflictError("该公钥已被其他证书请求使用")
            self._bindings[fingerprint] = request_id

    def release(self, fingerprint: str, request_id: str) -> None:
        """解除绑定（仅当指纹仍属于该请求时）。"""
        with self._lock:
            if self._bindings.get(fingerprint) == request_id:
                del self._bindings[fingerprint]
