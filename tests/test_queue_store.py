from __future__ import annotations

import json
from pathlib import Path
import threading

import pytest

from sandbox_relay.core.errors import QueueReadError
from sandbox_relay.queue.models import Message, MessageResponse
from sandbox_relay.queue.store import InMemoryMessageStore, JsonFileMessageStore


def _msg(action: str = "ping", *, origin: str = "sandbox", ts: int = 1_000) -> Message:
    return Message(id=f"id-{action}-{ts}", origin=origin, action=action, timestamp=ts)


def test_read_missing_file_is_empty(tmp_path: Path) -> None:
    store = JsonFileMessageStore(tmp_path / "nope" / "messages.json")
    snap = store.load()
    assert snap.messages == []
    assert snap.ok is True


def test_write_creates_parent_dirs_and_uses_wire_keys(tmp_path: Path) -> None:
    path = tmp_path / ".sandbox_relay" / "messages.json"
    store = JsonFileMessageStore(path)
    store.write([_msg("notify")])

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw == [{"id": "id-notify-1000", "from": "sandbox", "action": "notify", "timestamp": 1000, "status": "pending"}]
    # 2-space indented JSON
    assert '\n  {' in path.read_text(encoding="utf-8")
    assert not (path.parent / "messages.json.tmp").exists()


def test_corrupt_file_is_empty_with_distinguishable_error(tmp_path: Path, caplog) -> None:  # type: ignore[no-untyped-def]
    path = tmp_path / "messages.json"
    path.write_text("{not json", encoding="utf-8")

    snap = JsonFileMessageStore(path).load()
    assert snap.messages == []
    assert isinstance(snap.error, QueueReadError)
    assert snap.error.code == "QUEUE_READ_FAILED"
    assert any("unreadable" in r.getMessage() for r in caplog.records)


def test_non_array_root_is_read_error(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    path.write_text('{"id": "x"}', encoding="utf-8")
    assert JsonFileMessageStore(path).load().error is not None


def test_strict_store_raises_on_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    path.write_text("[{]", encoding="utf-8")
    with pytest.raises(QueueReadError):
        JsonFileMessageStore(path, strict=True).read()


def test_unknown_keys_survive_rewrite(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    path.write_text(
        json.dumps([{"id": "a", "from": "host", "action": "exec", "timestamp": 5, "status": "pending", "source": "telegram"}]),
        encoding="utf-8",
    )
    store = JsonFileMessageStore(path)
    store.write(store.read())
    assert json.loads(path.read_text(encoding="utf-8"))[0]["source"] == "telegram"


def test_update_skips_write_when_mutation_returns_none(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    store = JsonFileMessageStore(path)
    result = store.update(lambda messages: (None, len(messages)))
    assert result == 0
    assert not path.exists()


def test_update_is_serialized_across_threads(tmp_path: Path) -> None:
    """并发 read-modify-write 不丢更新（文件锁 + 进程内锁）。"""

    store = JsonFileMessageStore(tmp_path / "messages.json")

    def _append(i: int) -> None:
        def _fn(messages):  # type: ignore[no-untyped-def]
            messages.append(_msg(f"a{i}", ts=i))
            return messages, None

        store.update(_fn)

    threads = [threading.Thread(target=_append, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(store.read()) == 20


def test_in_memory_store_returns_copies() -> None:
    store = InMemoryMessageStore([_msg()])
    first = store.read()
    first[0].status = "done"
    first[0].response = MessageResponse.ok("x")
    assert store.read()[0].status == "pending"


def test_invalid_record_is_skipped_and_kept_on_rewrite(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    path = tmp_path / "messages.json"
    good = {"id": "a", "from": "sandbox", "action": "notify", "timestamp": 1, "status": "pending"}
    broken = {"id": "b", "from": "sandbox", "action": "notify", "status": "pending"}
    path.write_text(json.dumps([good, broken]), encoding="utf-8")

    store = JsonFileMessageStore(path)
    snap = store.load()
    assert snap.ok is True
    assert [m.id for m in snap.messages] == ["a"]
    assert snap.unparsed == [(1, broken)]
    assert any("invalid message record #1" in r.getMessage() for r in caplog.records)

    def _append(messages):  # type: ignore[no-untyped-def]
        messages.append(_msg("ping", ts=2))
        return messages, None

    store.update(_append)
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert [r["id"] for r in raw] == ["a", "b", "id-ping-2"]
    assert raw[1] == broken


def test_invalid_record_does_not_fail_strict_store(tmp_path: Path) -> None:
    path = tmp_path / "messages.json"
    path.write_text(json.dumps([{"id": "x", "from": "nobody"}]), encoding="utf-8")
    snap = JsonFileMessageStore(path, strict=True).load()
    assert snap.messages == []
    assert len(snap.unparsed) == 1
