"""
测试审计轨迹：只追加、过滤查询、文件落盘与文件写入失败时保留内存记录。
"""

import json
import threading

from src.ra.audit.schemas import AuditAction, AuditOutcome, ClientInfo
from src.ra.audit.trail import AuditTrail


def test_record_captures_client_info():
    trail = AuditTrail()
    client = ClientInfo(ip_address="10.0.0.7", user_agent="curl/8.0")

    entry = trail.record("alice", AuditAction.AUTHENTICATION, "USER", "alice", AuditOutcome.SUCCESS, None, client)

    assert entry is not None
    assert entry.action == "AUTHENTICATION"
    assert entry.ip_address == "10.0.0.7"
    assert entry.user_agent == "curl/8.0"
    assert entry.timestamp.tzinfo is not None
    assert len(trail) == 1


def test_long_user_agent_is_truncated():
    trail = AuditTrail()
    entry = trail.record("alice", AuditAction.LOGOUT, client=ClientInfo(user_agent="x" * 2000))
    assert len(entry.user_agent) == 500


def test_records_filter_newest_first():
    trail = AuditTrail()
    trail.record("alice", AuditAction.AUTHENTICATION, outcome=AuditOutcome.FAILURE)
    trail.record("alice", AuditAction.AUTHENTICATION)
    trail.record("bob", AuditAction.CSR_SUBMISSION)
    trail.record(None, "CUSTOM_EVENT")

    assert [r.username for r in trail.records()] == [None, "bob", "alice", "alice"]
    assert [r.outcome for r in trail.records(username="alice")] == [AuditOutcome.SUCCESS, AuditOutcome.FAILURE]
    assert len(trail.records(action="AUTHENTICATION", outcome=AuditOutcome.FAILURE)) == 1
    assert trail.records(action="CUSTOM_EVENT")[0].username is None
    assert len(trail.records(limit=2)) == 2


def test_records_are_written_as_json_lines(tmp_path):
    log_file = tmp_path / "audit" / "audit.jsonl"
    trail = AuditTrail(log_file)
    trail.record("alice", AuditAction.CSR_SUBMISSION, "CERTIFICATE_REQUEST", "REQ-1")
    trail.record("olivia", AuditAction.REQUEST_APPROVAL, "CERTIFICATE_REQUEST", "REQ-1")

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["action"] for line in lines] == ["CSR_SUBMISSION", "REQUEST_APPROVAL"]
    assert json.loads(lines[1])["username"] == "olivia"


def test_file_write_failure_keeps_in_memory_record(monkeypatch):
    trail = AuditTrail()

    def broken(entry):
        raise OSError("disk full")

    monkeypatch.setattr(trail, "_append_to_file", broken)
    entry = trail.record("alice", AuditAction.AUTHENTICATION, outcome=AuditOutcome.FAILURE)
    assert entry is not None
    assert len(trail) == 1
    assert trail.records(username="alice")[0].record_id == entry.record_id


def test_concurrent_appends_are_all_kept():
    trail = AuditTrail()

    def worker(n):
        for i in range(50):
            trail.record(f"user-{n}", AuditAction.REQUEST_QUERY, resource_id=str(i))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(trail) == 400
    assert len({r.record_id for r in trail.records()}) == 400
