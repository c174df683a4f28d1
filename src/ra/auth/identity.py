"""
身份声明、角色映射以及外部身份提供方的接口约定。

公开接口：
- Role: 封闭的角色枚举
- map_groups_to_roles: 目录组 -> 角色的静态映射
- IdentityProvider: 外部身份提供方需要满足的协议
- StaticDirectory: 基于内存/JSON 文件的身份目录（开发与测试环境使用）
- build_challenge_response: 客户端计算挑战应答的辅助函数
"""

from __future__ import annotations

import base64
import json
import os
import secrets
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger
from pydantic import BaseModel, Field

from .schemas import IdentityClaims, Role

PBKDF2_ITERATIONS = 10000
KEY_LENGTH_BYTES = 32
GCM_IV_LENGTH = 12

# 组名大小写不敏感
GROUP_ROLE_MAP: Dict[str, Role] = {
    "pki-ra-admins": Role.RA_ADMIN,
    "pki-ra-officers": Role.RA_OFFICER,
    "pki-ra-operators": Role.RA_OPERATOR,
    "pki-auditors": Role.AUDITOR,
}


def map_groups_to_roles(groups: Iterable[str]) -> List[Role]:
    """
    将目录组映射为应用角色。所有已识别的身份都会额外获得 REQUESTER 角色。
    :param groups: 组名集合。
    :return: 去重且顺序稳定的角色列表。
    """
    roles: List[Role] = []
    for group in sorted(groups):
        role = GROUP_ROLE_MAP.get(group.lower())
        if role is not None and role not in roles:
            roles.append(role)
    roles.append(Role.REQUESTER)
    return roles


class IdentityProvider(Protocol):
    """外部身份提供方。RA 只依赖这两个调用，不关心其背后的目录协议。"""

    def verify_response(self, username: str, response: str, challenge: bytes, salt: bytes) -> bool:
        ...

    def get_identity(self, username: str) -> Optional[IdentityClaims]:
        ...


def _derive_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH_BYTES,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def build_challenge_response(password: str, challenge: bytes, salt: bytes) -> str:
    """
    客户端侧：使用口令派生密钥，以 AES-GCM 加密挑战。
    :return: Base64(iv || ciphertext || tag)。
    """
    key = _derive_key(password, salt)
    iv = secrets.token_bytes(GCM_IV_LENGTH)
    ciphertext = AESGCM(key).encrypt(iv, challenge, None)
    return base64.b64encode(iv + ciphertext).decode("utf-8")


class DirectoryEntry(BaseModel):
    """静态目录中的一个账户。"""
    username: str
    password: str
    display_name: str
    email: Optional[str] = None
    organizational_unit: Optional[str] = None
    organization: Optional[str] = None
    country: Optional[str] = None
    groups: List[str] = Field(default_factory=list)
    disabled: bool = False


class StaticDirectory:
    """
    内存中的身份目录，满足 IdentityProvider 协议。
    账户可以直接传入，也可以从 JSON 文件（对象数组）加载。
    """

    def __init__(self, entries: Iterable[DirectoryEntry] = ()):
        self._entries: Dict[str, DirectoryEntry] = {}
        self._lock = threading.Lock()
        for entry in entries:
            self.add(entry)

    @classmethod
    def from_file(cls, path: str | os.PathLike) -> "StaticDirectory":
        """
        从 JSON 文件加载目录。
        :raises ValueError: 文件内容不是账户数组时。
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"身份目录文件格式错误，应为数组: {path}")
        directory = cls(DirectoryEntry(**item) for item in data)
        logger.info(f"已从 {path} 加载 {len(directory)} 个目录账户")
        return directory

    def add(self, entry: DirectoryEntry) -> None:
        with self._lock:
            self._entries[entry.username] = entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _lookup(self, username: str) -> Optional[DirectoryEntry]:
        with self._lock:
            return self._entries.get(username)

    def verify_response(self, username: str, response: str, challenge: bytes, salt: bytes) -> bool:
        entry = self._lookup(username)
        if entry is None:
            logger.warning(f"目录中不存在该用户: {username}")
            return False
        if entry.disabled:
            logger.warning(f"目录账户已禁用: {username}")
            return False
        try:
            raw = base64.b64decode(response, validate=True)
            if len(raw) <= GCM_IV_LENGTH:
                return False
            iv, ciphertext = raw[:GCM_IV_LENGTH], raw[GCM_IV_LENGTH:]
            plaintext = AESGCM(_derive_key(entry.password, salt)).decrypt(iv, ciphertext, None)
        except (ValueError, InvalidTag):
            return False
        return secrets.compare_digest(plaintext, challenge)

    def get_identity(self, username: str) -> Optional[IdentityClaims]:
        entry = self._lookup(username)
        if entry is None or entry.disabled:
            return None
        return IdentityClaims(
            username=entry.username,
            display_name=entry.display_name,
            email=entry.email,
            organizational_unit=entry.organizational_unit,
            organization=entry.organization,
            country=entry.country,
            groups=set(entry.groups),
            roles=map_groups_to_roles(entry.groups),
        )
