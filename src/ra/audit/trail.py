"""
审计轨迹：记录所有与安全相关的操作。

- 记录只追加，从不修改或删除。
- 写入失败只记录日志，不影响被审计的业务操作。
- 除内存列表外，可选地以 JSON Lines 形式追加写入文件（audit_log_file）。
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from loguru import logger

from .schemas import AuditAction, AuditOutcome, AuditRecord, ClientInfo

_USER_AGENT_MAX_LENGTH = 500


class AuditTrail:
    """只追加的审计记录器。"""

    def __init__(self, log_file: str | Path | None = None):
        self._records: List[AuditRecord] = []
        self._lock = threading.Lock()
        self._log_file = Path(log_file) if log_file else None

    def record(
        self,
        username: Optional[str],
        action: AuditAction | str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        detail: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Optional[AuditRecord]:
        """
        追加一条审计记录。
        内存中的记录总会保留；文件写入失败只记录错误日志。
        :return: 写入的记录；记录无法构造时返回 None（不抛出异常）。
        """
        try:
            user_agent = client.user_agent if client else None
            if user_agent and len(user_agent) > _USER_AGENT_MAX_LENGTH:
                user_agent = user_agent[:_USER_AGENT_MAX_LENGTH]

            entry = AuditRecord(
                record_id=str(uuid.uuid4()),
                timestamp=datetime.now(timezone.utc),
                username=username,
                action=action.value if isinstance(action, AuditAction) else str(action),
                resource_type=resource_type,
                resource_id=resource_id,
                outcome=outcome,
                detail=detail,
                ip_address=client.ip_address if client else None,
                user_agent=user_agent,
            )
        except Exception as e:
            logger.error(f"构造审计记录失败: action={action}, username={username}, error={e}")
            return None

        with self._lock:
            self._records.append(entry)
            try:
                self._append_to_file(entry)
            except Exception as e:
                logger.error(f"写入审计日志文件失败: record_id={entry.record_id}, error={e}")
        logger.debug(f"审计记录已写入: action={entry.action}, username={username}, outcome={entry.outcome.value}")
        return entry

    def _append_to_file(self, entry: AuditRecord) -> None:
        if self._log_file is None:
            return
        self._log_file.parent.mkdir(parents=True, exist_ok=True)
        with self._log_file.open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    def records(
        self,
        username: Optional[str] = None,
        action: Optional[str] = None,
        outcome: Optional[AuditOutcome] = None,
        limit: Optional[int] = None,
    ) -> List[AuditRecord]:
        """按条件查询审计记录，最新的记录在前。"""
        with self._lock:
            snapshot = list(self._records)
        result = [
            r
            for r in reversed(snapshot)
            if (username is None or r.username == username)
            and (action is None or r.action == action)
            and (outcome is None or r.outcome == outcome)
        ]
        if limit is not None:
            result = result[:limit]
        return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
