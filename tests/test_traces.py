import pytest

from reqpulse.observability.traces import TraceBuffer, TraceRecord


def _record(i: int) -> TraceRecord:
    return TraceRecord(operation=f"GET /{i}", duration_ms=float(i), status_code=200, trace_id=f"{i:032x}")


def test_buffer_keeps_newest_records_up_to_capacity() -> None:
    buffer = TraceBuffer(capacity=3)
    for i in range(5):
        buffer.append(_record(i))

    assert len(buffer) == 3
    assert [r.operation for r in buffer.recent()] == ["GET /2", "GET /3", "GET /4"]
    assert [r.operation for r in buffer.recent(2)] == ["GET /3", "GET /4"]
    assert buffer.recent(0) == ()


def test_clear_and_capacity() -> None:
    buffer = TraceBuffer(capacity=2)
    buffer.append(_record(1))
    buffer.clear()
    assert len(buffer) == 0
    assert buffer.capacity == 2

    with pytest.raises(ValueError):
        TraceBuffer(capacity=0)


def test_record_serializes_to_plain_dict() -> None:
    record = TraceRecord(operation="GET /", duration_ms=1.5, status_code=404, trace_id="ab", timestamp=10.0)
    assert record.to_dict() == {
        "operation": "GET /",
        "duration_ms": 1.5,
        "status_code": 404,
        "trace_id": "ab",
        "timestamp": 10.0,
    }
